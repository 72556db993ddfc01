"""
Balance queries over the synced UTXO set.
"""

from __future__ import annotations

from descwallet.wallet.models import UTXO, Balance
from descwallet.wallet.utxo_index import UtxoIndex


def confirmed_balance(index: UtxoIndex) -> int:
    """Sum of UTXOs with at least one confirmation."""
    return sum(utxo.value for utxo in index if utxo.is_confirmed)


def unconfirmed_balance(index: UtxoIndex) -> int:
    return sum(utxo.value for utxo in index if not utxo.is_confirmed)


def list_unspent(index: UtxoIndex) -> list[UTXO]:
    return index.list()


def get_balance(index: UtxoIndex) -> Balance:
    return Balance(confirmed=confirmed_balance(index), unconfirmed=unconfirmed_balance(index))
