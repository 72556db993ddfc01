"""
Bitcoin script primitives: hashing, varints, push encoding and the standard
output script templates the wallet knows how to create and spend.
"""

from __future__ import annotations

import hashlib
import struct
from collections.abc import Iterator
from typing import Literal

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1 = 0x51
OP_16 = 0x60
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKMULTISIG = 0xAE

ScriptKind = Literal["p2pkh", "p2sh", "p2wpkh", "p2wsh", "p2tr", "unknown"]


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read a varint at offset, returning (value, new_offset)."""
    if offset >= len(data):
        raise ValueError("Unexpected end of data reading varint")
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + size > len(data):
        raise ValueError("Unexpected end of data reading varint")
    value = int.from_bytes(data[offset : offset + size], "little")
    return value, offset + size


def push_data(data: bytes) -> bytes:
    """Encode a minimal push of data onto the stack."""
    length = len(data)
    if length == 0:
        return bytes([OP_0])
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", length) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", length) + data


def push_small_int(n: int) -> int:
    """Opcode for a small integer 0-16."""
    if n == 0:
        return OP_0
    if not 1 <= n <= 16:
        raise ValueError(f"Small integer out of range: {n}")
    return OP_1 + n - 1


def iter_script(script: bytes) -> Iterator[tuple[int, bytes | None]]:
    """
    Iterate over script operations.

    Yields (opcode, pushed_data). pushed_data is None for non-push opcodes.
    """
    offset = 0
    while offset < len(script):
        opcode = script[offset]
        offset += 1

        if 0 < opcode < OP_PUSHDATA1:
            size = opcode
        elif opcode == OP_PUSHDATA1:
            size = script[offset]
            offset += 1
        elif opcode == OP_PUSHDATA2:
            size = struct.unpack("<H", script[offset : offset + 2])[0]
            offset += 2
        elif opcode == OP_PUSHDATA4:
            size = struct.unpack("<I", script[offset : offset + 4])[0]
            offset += 4
        elif opcode == OP_0:
            yield opcode, b""
            continue
        else:
            yield opcode, None
            continue

        if offset + size > len(script):
            raise ValueError("Push past end of script")
        yield opcode, script[offset : offset + size]
        offset += size


def build_push_script(items: list[bytes]) -> bytes:
    """Script made only of data pushes (scriptSig layout)."""
    return b"".join(push_data(item) for item in items)


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    """OP_HASH160 <20-byte-hash> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """OP_0 <20-byte-hash>"""
    return bytes([OP_0, 0x14]) + pubkey_hash


def p2wsh_script(witness_script: bytes) -> bytes:
    """OP_0 <32-byte-sha256(witness_script)>"""
    return bytes([OP_0, 0x20]) + sha256(witness_script)


def p2sh_wrap(redeem_script: bytes) -> bytes:
    return p2sh_script(hash160(redeem_script))


def multisig_script(threshold: int, pubkeys: list[bytes]) -> bytes:
    """OP_k <pubkey>... OP_n OP_CHECKMULTISIG"""
    if not 1 <= threshold <= len(pubkeys) <= 20:
        raise ValueError(f"Invalid multisig threshold {threshold} of {len(pubkeys)}")

    if threshold <= 16:
        result = bytes([push_small_int(threshold)])
    else:
        result = push_data(bytes([threshold]))
    for pubkey in pubkeys:
        result += push_data(pubkey)
    n = len(pubkeys)
    result += bytes([push_small_int(n)]) if n <= 16 else push_data(bytes([n]))
    return result + bytes([OP_CHECKMULTISIG])


def classify_script(script: bytes) -> ScriptKind:
    """Classify a scriptPubKey by template."""
    if (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 0x14])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return "p2pkh"
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 0x14]) and script[22] == OP_EQUAL:
        return "p2sh"
    if len(script) == 22 and script[:2] == bytes([OP_0, 0x14]):
        return "p2wpkh"
    if len(script) == 34 and script[:2] == bytes([OP_0, 0x20]):
        return "p2wsh"
    if len(script) == 34 and script[:2] == bytes([OP_1, 0x20]):
        return "p2tr"
    return "unknown"


def _decode_small_int(opcode: int, data: bytes | None) -> int | None:
    if OP_1 <= opcode <= OP_16:
        return opcode - OP_1 + 1
    if data is not None and len(data) == 1:
        return data[0]
    return None


def parse_multisig(script: bytes) -> tuple[int, list[bytes]] | None:
    """
    Parse a bare multisig script.

    Returns (threshold, pubkeys) or None if script is not a multisig template.
    """
    try:
        ops = list(iter_script(script))
    except (ValueError, IndexError, struct.error):
        return None

    if len(ops) < 4 or ops[-1][0] != OP_CHECKMULTISIG:
        return None

    threshold = _decode_small_int(*ops[0])
    n = _decode_small_int(*ops[-2])
    pubkeys = [data for _, data in ops[1:-2]]

    if threshold is None or n is None:
        return None
    if any(pk is None or len(pk) not in (33, 65) for pk in pubkeys):
        return None
    if len(pubkeys) != n or not 1 <= threshold <= n:
        return None
    return threshold, [pk for pk in pubkeys if pk is not None]
