"""
Wallet engine error taxonomy.

Every error raised by the engine derives from WalletError so the CLI can
report it as a one-line diagnostic and exit non-zero.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all wallet engine errors."""


class ArgumentError(WalletError):
    """Invalid or missing user supplied argument."""


class DescriptorParseError(WalletError):
    """Malformed descriptor, unsupported script type or bad checksum."""


class ChainSyncError(WalletError):
    """The chain source failed while syncing the wallet."""


class InsufficientFundsError(WalletError):
    """Available UTXOs cannot cover the target amount plus fee."""

    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        self.shortfall = needed - available
        super().__init__(
            f"Insufficient funds: need {needed} sats, have {available} sats "
            f"(short by {self.shortfall} sats)"
        )


class InvalidRecipientError(WalletError):
    """Destination address or amount is not acceptable."""


class DecodeError(WalletError):
    """Malformed PSBT, transaction or transport encoding."""


class NotFinalizedError(WalletError):
    """Transaction extraction attempted on a PSBT with unfinalized inputs."""


class BroadcastError(WalletError):
    """The chain source rejected a transaction."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Broadcast failed: {reason}")
