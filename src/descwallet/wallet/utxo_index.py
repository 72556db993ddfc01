"""
In-memory set of the wallet's unspent outputs.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from descwallet.wallet.models import UTXO
from descwallet.wallet.transaction import Transaction


class UtxoIndex:
    """
    Ordered UTXO container keyed by outpoint.

    Iteration follows insertion order. ``replace`` swaps the whole content in
    one step so readers never observe a half-synced set.
    """

    def __init__(self, utxos: Iterable[UTXO] = ()):
        self._utxos: dict[str, UTXO] = {}
        self._transactions: dict[str, Transaction] = {}
        for utxo in utxos:
            self.insert(utxo)

    def replace(
        self,
        utxos: Iterable[UTXO],
        transactions: dict[str, Transaction] | None = None,
    ) -> None:
        """Atomically replace all UTXOs (and cached parent transactions)."""
        new_utxos = {utxo.outpoint: utxo for utxo in utxos}
        self._utxos = new_utxos
        self._transactions = dict(transactions or {})

    def insert(self, utxo: UTXO) -> None:
        """Add or overwrite a UTXO. An existing outpoint keeps its position."""
        self._utxos[utxo.outpoint] = utxo

    def remove(self, txid: str, vout: int) -> UTXO | None:
        return self._utxos.pop(f"{txid}:{vout}", None)

    def get(self, txid: str, vout: int) -> UTXO | None:
        return self._utxos.get(f"{txid}:{vout}")

    def list(self) -> list[UTXO]:
        return list(self._utxos.values())

    def add_transaction(self, tx: Transaction) -> None:
        self._transactions[tx.txid] = tx

    def get_transaction(self, txid: str) -> Transaction | None:
        """Parent transaction fetched during sync (legacy descriptors only)."""
        return self._transactions.get(txid)

    def __len__(self) -> int:
        return len(self._utxos)

    def __iter__(self) -> Iterator[UTXO]:
        return iter(list(self._utxos.values()))

    def __contains__(self, outpoint: object) -> bool:
        return outpoint in self._utxos
