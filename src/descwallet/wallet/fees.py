"""
Transaction size, fee and dust calculations.

Sizes are tracked in weight units (BIP141) and converted to virtual bytes
only when a fee is computed.
"""

from __future__ import annotations

from descwallet.constants import DUST_RELAY_FEE, STANDARD_DUST_LIMIT, WITNESS_SCALE_FACTOR
from descwallet.wallet.script import classify_script, encode_varint

# version (4) + locktime (4)
TX_FIXED_SIZE = 8

# segwit marker and flag, counted at witness scale
SEGWIT_MARKER_WEIGHT = 2

# Size of the input that spends an output, as assumed by Bitcoin Core's
# GetDustThreshold: outpoint + scriptSig length + sequence + typical
# spending data (107 bytes legacy, a quarter of that for witness programs)
_DUST_SPEND_SIZE_LEGACY = 32 + 4 + 1 + 107 + 4
_DUST_SPEND_SIZE_WITNESS = 32 + 4 + 1 + 107 // WITNESS_SCALE_FACTOR + 4


def weight_to_vsize(weight: int) -> int:
    """Virtual size in vbytes, rounded up."""
    return -(-weight // WITNESS_SCALE_FACTOR)


def fee_for_vsize(vsize: int, fee_rate: float) -> int:
    """
    Fee in satoshis for vsize vbytes at fee_rate sat/vB, rounded up.

    The rate is handled in millisatoshi per vbyte so decimal rates such as
    1.1 sat/vB do not pick up an extra satoshi from float error.
    """
    if fee_rate < 0:
        raise ValueError(f"Fee rate must not be negative: {fee_rate}")
    rate_msat = round(fee_rate * 1000)
    return -(-(vsize * rate_msat) // 1000)


def fee_for_weight(weight: int, fee_rate: float) -> int:
    return fee_for_vsize(weight_to_vsize(weight), fee_rate)


def output_size(script_pubkey: bytes) -> int:
    """Serialized size of an output: value + script length + script."""
    return 8 + len(encode_varint(len(script_pubkey))) + len(script_pubkey)


def output_weight(script_pubkey: bytes) -> int:
    return output_size(script_pubkey) * WITNESS_SCALE_FACTOR


def tx_overhead_weight(num_inputs: int, num_outputs: int, segwit: bool) -> int:
    """Weight of everything in a transaction except its inputs and outputs."""
    size = (
        TX_FIXED_SIZE
        + len(encode_varint(num_inputs))
        + len(encode_varint(num_outputs))
    )
    weight = size * WITNESS_SCALE_FACTOR
    if segwit:
        weight += SEGWIT_MARKER_WEIGHT
    return weight


def dust_threshold(script_pubkey: bytes, dust_relay_fee: int = DUST_RELAY_FEE) -> int:
    """
    Smallest non-dust value for an output paying to script_pubkey.

    Same formula as Bitcoin Core's GetDustThreshold: 546 for P2PKH, 540 for
    P2SH, 294 for P2WPKH and 330 for P2WSH/P2TR at the default relay fee.
    """
    size = output_size(script_pubkey)
    if classify_script(script_pubkey) in ("p2wpkh", "p2wsh", "p2tr"):
        size += _DUST_SPEND_SIZE_WITNESS
    else:
        size += _DUST_SPEND_SIZE_LEGACY
    return size * dust_relay_fee


def is_dust(value: int, script_pubkey: bytes) -> bool:
    return value < dust_threshold(script_pubkey)


def change_dust_threshold(script_pubkey: bytes) -> int:
    """
    Smallest change value worth creating.

    The script's dust threshold, floored at the 546 sat P2PKH limit so a
    P2WPKH change output below 546 sats is folded into the fee instead.
    """
    return max(dust_threshold(script_pubkey), STANDARD_DUST_LIMIT)
