"""
Bitcoin address encoding and decoding.

Witness programs use bech32/bech32m (BIP173/BIP350), legacy outputs use
base58check.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

import base58
import bech32

from descwallet.errors import InvalidRecipientError
from descwallet.wallet.script import (
    classify_script,
    p2pkh_script,
    p2sh_script,
    p2wpkh_script,
)

# Checksum constant of bech32m (BIP350), used for witness version 1 and up
BECH32M_CONST = 0x2BC830A3


@dataclass(frozen=True)
class NetworkParams:
    """Per-network encoding parameters."""

    name: str
    hrp: str
    p2pkh_version: int
    p2sh_version: int
    xpub_version: bytes
    xprv_version: bytes


_MAINNET = NetworkParams(
    name="mainnet",
    hrp="bc",
    p2pkh_version=0x00,
    p2sh_version=0x05,
    xpub_version=bytes.fromhex("0488b21e"),
    xprv_version=bytes.fromhex("0488ade4"),
)
_TESTNET = NetworkParams(
    name="testnet",
    hrp="tb",
    p2pkh_version=0x6F,
    p2sh_version=0xC4,
    xpub_version=bytes.fromhex("043587cf"),
    xprv_version=bytes.fromhex("04358394"),
)

NETWORKS: dict[str, NetworkParams] = {
    "mainnet": _MAINNET,
    "testnet": _TESTNET,
    "signet": replace(_TESTNET, name="signet"),
    "regtest": replace(_TESTNET, name="regtest", hrp="bcrt"),
}


def get_network(network: str) -> NetworkParams:
    """Look up encoding parameters for a network name."""
    try:
        return NETWORKS[network.value if isinstance(network, Enum) else network]
    except KeyError:
        raise ValueError(f"Unknown network: {network}") from None


def _encode_bech32m(hrp: str, witver: int, program: bytes) -> str:
    """bech32m witness address, built on the bech32 package's primitives."""
    data = [witver] + bech32.convertbits(list(program), 8, 5)
    polymod = bech32.bech32_polymod(bech32.bech32_hrp_expand(hrp) + data + [0] * 6)
    polymod ^= BECH32M_CONST
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(bech32.CHARSET[d] for d in data + checksum)


def _decode_bech32m(hrp: str, address: str) -> tuple[int, bytes] | None:
    """(witness version, program) of a bech32m address, None if invalid."""
    if address.lower() != address and address.upper() != address:
        return None
    address = address.lower()
    pos = address.rfind("1")
    if address[:pos] != hrp or pos + 7 > len(address) or len(address) > 90:
        return None
    if any(c not in bech32.CHARSET for c in address[pos + 1 :]):
        return None
    data = [bech32.CHARSET.find(c) for c in address[pos + 1 :]]
    if bech32.bech32_polymod(bech32.bech32_hrp_expand(hrp) + data) != BECH32M_CONST:
        return None

    witver = data[0]
    program = bech32.convertbits(data[1:-6], 5, 8, False)
    if not 1 <= witver <= 16 or program is None or not 2 <= len(program) <= 40:
        return None
    return witver, bytes(program)


def script_to_address(script: bytes, network: str = "mainnet") -> str:
    """Convert a standard scriptPubKey to its address."""
    params = get_network(network)
    kind = classify_script(script)

    if kind == "p2tr":
        return _encode_bech32m(params.hrp, 1, script[2:])
    if kind in ("p2wpkh", "p2wsh"):
        result = bech32.encode(params.hrp, 0, list(script[2:]))
        if result is None:
            raise ValueError(f"Failed to encode witness address: {script.hex()}")
        return result

    if kind == "p2pkh":
        payload = bytes([params.p2pkh_version]) + script[3:23]
    elif kind == "p2sh":
        payload = bytes([params.p2sh_version]) + script[2:22]
    else:
        raise ValueError(f"Unsupported scriptPubKey: {script.hex()}")

    return base58.b58encode_check(payload).decode("ascii")


def address_to_script(address: str, network: str = "mainnet") -> bytes:
    """
    Parse an address into the scriptPubKey that pays to it.

    Supports:
    - P2WPKH / P2WSH (bech32, witness v0)
    - P2TR and future witness versions (bech32m)
    - P2PKH / P2SH (base58check)

    Raises:
        InvalidRecipientError: if the address is malformed or belongs to
            another network
    """
    params = get_network(network)
    address = address.strip()
    if not address:
        raise InvalidRecipientError("Empty destination address")

    if address.lower().startswith(params.hrp + "1"):
        witver, witprog = bech32.decode(params.hrp, address)
        if witver == 0 and witprog is not None:
            program = bytes(witprog)
            if len(program) == 20:
                return p2wpkh_script(program)
            return bytes([0x00, 0x20]) + program
        if witver is not None:
            # bech32 checksum on a v1+ program (BIP350 requires bech32m)
            raise InvalidRecipientError(f"Witness v{witver} address must use bech32m: {address}")

        segwit = _decode_bech32m(params.hrp, address)
        if segwit is None:
            raise InvalidRecipientError(f"Invalid bech32 address: {address}")
        witver, program = segwit
        # OP_1..OP_16 <program>
        return bytes([0x50 + witver, len(program)]) + program

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidRecipientError(
            f"Invalid address for {params.name}: {address} ({e})"
        ) from e

    if len(decoded) != 21:
        raise InvalidRecipientError(f"Invalid base58 payload length: {len(decoded)}")

    version, payload = decoded[0], decoded[1:]
    if version == params.p2pkh_version:
        return p2pkh_script(payload)
    if version == params.p2sh_version:
        return p2sh_script(payload)

    raise InvalidRecipientError(f"Address version {version} is not valid for {params.name}")
