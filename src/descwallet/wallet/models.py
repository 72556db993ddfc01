"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class KeychainKind(str, Enum):
    """Which descriptor an address was derived from."""

    EXTERNAL = "external"  # receive addresses, primary descriptor
    INTERNAL = "internal"  # change addresses, change descriptor


@dataclass(frozen=True)
class UTXO:
    """Unspent output owned by one of the wallet's derived scripts"""

    txid: str
    vout: int
    value: int
    script_pubkey: bytes
    confirmations: int
    index: int
    keychain: KeychainKind
    height: int | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    @property
    def is_confirmed(self) -> bool:
        return self.confirmations >= 1


@dataclass(frozen=True)
class Recipient:
    """Transaction output request"""

    script_pubkey: bytes
    amount: int


@dataclass
class CoinSelection:
    """Result of coin selection"""

    utxos: list[UTXO]
    total_value: int
    change_value: int
    fee: int


@dataclass(frozen=True)
class Balance:
    confirmed: int
    unconfirmed: int

    @property
    def total(self) -> int:
        return self.confirmed + self.unconfirmed


@dataclass
class TransactionDetails:
    """Summary of a transaction built by the wallet"""

    txid: str
    sent: int  # sum of wallet inputs spent
    received: int  # sum of outputs paying back to the wallet
    fee: int
    vsize: int
    change: int = 0
    change_address: str | None = None

    @property
    def amount(self) -> int:
        """Value that leaves the wallet, excluding the fee."""
        return self.sent - self.received - self.fee

    @property
    def fee_rate(self) -> float:
        return self.fee / self.vsize if self.vsize else 0.0

    def __str__(self) -> str:
        lines = [
            f"txid:     {self.txid}",
            f"sent:     {self.sent:,} sats",
            f"received: {self.received:,} sats",
            f"amount:   {self.amount:,} sats",
            f"fee:      {self.fee:,} sats ({self.fee_rate:.2f} sat/vB, {self.vsize} vB)",
        ]
        if self.change_address:
            lines.append(f"change:   {self.change:,} sats -> {self.change_address}")
        else:
            lines.append("change:   none")
        return "\n".join(lines)
