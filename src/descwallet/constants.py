"""
Bitcoin protocol and wallet policy constants.

Dust thresholds follow Bitcoin Core's dust relay policy: an output is dust
when spending it would cost more than a third of its value at the
3 sat/vB dust relay fee.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core, also the floor for change outputs
STANDARD_DUST_LIMIT = 546  # satoshis

# Dust relay fee used by Bitcoin Core to compute per-script dust limits
DUST_RELAY_FEE = 3  # sat/vbyte

# Sequence numbers
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_ENABLE_LOCKTIME = 0xFFFFFFFE
# Anything below 0xFFFFFFFE signals replaceability (BIP125)
SEQUENCE_RBF = 0xFFFFFFFD

DEFAULT_TX_VERSION = 2

# Lookahead window used during sync (see gap_limit in config)
DEFAULT_GAP_LIMIT = 100

# Default fee rate when the user does not pass one
DEFAULT_FEE_RATE = 1.0  # sat/vbyte

# Highest non-hardened BIP32 child index + 1
HARDENED_OFFSET = 0x80000000

# Sighash flags
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

# Weight units per virtual byte
WITNESS_SCALE_FACTOR = 4

# Worst-case DER signature (with sighash byte) and compressed pubkey sizes
MAX_SIGNATURE_SIZE = 73
COMPRESSED_PUBKEY_SIZE = 33

# Multisig limits
MAX_MULTISIG_KEYS_P2SH = 15
MAX_MULTISIG_KEYS_WSH = 20
