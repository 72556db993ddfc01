"""
Chain source implementations.

Available backends:
- EsploraBackend: Esplora REST API (Blockstream, mempool.space or self-hosted electrs)
"""

from descwallet.backends.base import ChainSource, ChainUtxo, TxRef
from descwallet.backends.esplora import DEFAULT_ESPLORA_URLS, EsploraBackend

__all__ = [
    "ChainSource",
    "ChainUtxo",
    "DEFAULT_ESPLORA_URLS",
    "EsploraBackend",
    "TxRef",
]
