"""
Base chain source interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class TxRef:
    """A transaction touching a script."""

    txid: str
    height: int | None = None  # None while unconfirmed


@dataclass
class ChainUtxo:
    """An unspent output paying to a queried script."""

    txid: str
    vout: int
    value: int
    height: int | None = None  # None while unconfirmed

    def confirmations(self, tip_height: int) -> int:
        if self.height is None or self.height <= 0:
            return 0
        return max(tip_height - self.height + 1, 0)


class ChainSource(ABC):
    """
    Abstract chain data source.

    Implementations answer script-indexed queries (history and unspent
    outputs) and relay transactions. They raise their transport's errors
    (or ValueError for unexpected responses); the wallet engine wraps them
    into ChainSyncError or BroadcastError.
    """

    @abstractmethod
    async def get_history(self, script_pubkey: bytes) -> list[TxRef]:
        """Transactions that paid to or spent from script_pubkey"""

    @abstractmethod
    async def get_unspent(self, script_pubkey: bytes) -> list[ChainUtxo]:
        """Unspent outputs paying to script_pubkey"""

    @abstractmethod
    async def get_raw_transaction(self, txid: str) -> bytes:
        """Serialized transaction by txid"""

    @abstractmethod
    async def broadcast(self, raw_tx: bytes) -> str:
        """Relay a serialized transaction, returns txid"""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> float:
        """Estimate fee in sat/vbyte for target confirmation blocks"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current blockchain height"""

    async def close(self) -> None:
        """Close backend connection"""
        pass
