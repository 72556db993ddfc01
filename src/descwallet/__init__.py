"""
descwallet - Ephemeral descriptor-based Bitcoin wallet

Parses output descriptors, syncs their scripts against a chain source and
builds, finalizes and broadcasts PSBTs. No state is kept between runs.
"""

__version__ = "0.1.0"

from descwallet.errors import (
    ArgumentError,
    BroadcastError,
    ChainSyncError,
    DecodeError,
    DescriptorParseError,
    InsufficientFundsError,
    InvalidRecipientError,
    NotFinalizedError,
    WalletError,
)

__all__ = [
    "ArgumentError",
    "BroadcastError",
    "ChainSyncError",
    "DecodeError",
    "DescriptorParseError",
    "InsufficientFundsError",
    "InvalidRecipientError",
    "NotFinalizedError",
    "WalletError",
]
