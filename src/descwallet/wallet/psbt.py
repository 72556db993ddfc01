"""
Partially Signed Bitcoin Transactions (BIP174, version 0).

Provides the creator/updater data model, the binary and base64 codec, the
finalizer and the transaction extractor. Key-value pairs this module does
not understand are kept in the ``unknown`` maps and written back unchanged.

Finalization supports the script templates the wallet can derive:
p2pkh, p2wpkh, p2sh-p2wpkh, p2sh multisig, p2wsh multisig and
p2sh-p2wsh multisig.
"""

from __future__ import annotations

import base64
import binascii
import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from coincurve import PublicKey
from loguru import logger

from descwallet.constants import SIGHASH_ALL
from descwallet.errors import DecodeError, NotFinalizedError
from descwallet.wallet.script import (
    build_push_script,
    classify_script,
    encode_varint,
    hash160,
    p2pkh_script,
    parse_multisig,
    push_data,
    read_varint,
    sha256,
)
from descwallet.wallet.transaction import Transaction, TxOut

if TYPE_CHECKING:
    from descwallet.wallet.service import WalletSession

PSBT_MAGIC = b"psbt\xff"

# Global types
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_XPUB = 0x01
PSBT_GLOBAL_VERSION = 0xFB

# Input types
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

# Output types
PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02

# fingerprint + path, keyed by public key
KeySource = tuple[bytes, tuple[int, ...]]


class InputState(str, Enum):
    """Forward-only signing progress of a PSBT input."""

    UNSIGNED = "unsigned"
    PARTIALLY_SIGNED = "partially_signed"
    FINALIZED = "finalized"


@dataclass
class PSBTInput:
    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOut | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeySource] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    @property
    def state(self) -> InputState:
        if self.is_finalized:
            return InputState.FINALIZED
        if self.partial_sigs:
            return InputState.PARTIALLY_SIGNED
        return InputState.UNSIGNED


@dataclass
class PSBTOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeySource] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)


@dataclass
class PSBT:
    tx: Transaction
    inputs: list[PSBTInput] = field(default_factory=list)
    outputs: list[PSBTOutput] = field(default_factory=list)
    xpubs: dict[bytes, KeySource] = field(default_factory=dict)
    version: int | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_transaction(cls, tx: Transaction) -> PSBT:
        """Creator role: wrap an unsigned transaction with empty maps."""
        if any(inp.script_sig or inp.witness for inp in tx.inputs):
            raise ValueError("PSBT transactions must be unsigned")
        return cls(
            tx=tx,
            inputs=[PSBTInput() for _ in tx.inputs],
            outputs=[PSBTOutput() for _ in tx.outputs],
        )

    @classmethod
    def from_base64(cls, text: str) -> PSBT:
        return deserialize(text)

    @classmethod
    def from_bytes(cls, data: bytes) -> PSBT:
        return deserialize_bytes(data)

    def to_base64(self) -> str:
        return serialize(self)

    def to_bytes(self) -> bytes:
        return serialize_bytes(self)

    def __str__(self) -> str:
        return self.to_base64()

    @property
    def is_finalized(self) -> bool:
        return all(inp.is_finalized for inp in self.inputs)

    def input_states(self) -> list[InputState]:
        return [inp.state for inp in self.inputs]

    def spent_output(self, index: int) -> TxOut | None:
        """The output spent by input index, if the PSBT carries it."""
        inp = self.inputs[index]
        if inp.witness_utxo is not None:
            return inp.witness_utxo
        if inp.non_witness_utxo is not None:
            txin = self.tx.inputs[index]
            if inp.non_witness_utxo.txid != txin.txid:
                return None
            if txin.vout >= len(inp.non_witness_utxo.outputs):
                return None
            return inp.non_witness_utxo.outputs[txin.vout]
        return None

    def fee(self) -> int | None:
        """Absolute fee, or None when a spent output value is unknown."""
        total_in = 0
        for i in range(len(self.inputs)):
            spent = self.spent_output(i)
            if spent is None:
                return None
            total_in += spent.value
        return total_in - sum(out.value for out in self.tx.outputs)

    def sighash(self, index: int, sighash_type: int = SIGHASH_ALL) -> bytes | None:
        """
        Signature hash for input index.

        Returns None when the PSBT lacks the data needed to compute it
        (spent output, redeem script or witness script).
        """
        inp = self.inputs[index]
        spent = self.spent_output(index)
        if spent is None:
            return None

        script = spent.script_pubkey
        kind = classify_script(script)
        if kind == "p2sh":
            if inp.redeem_script is None or hash160(inp.redeem_script) != script[2:22]:
                return None
            script = inp.redeem_script
            kind = classify_script(script)
            if kind not in ("p2wpkh", "p2wsh"):
                return self.tx.legacy_sighash(index, script, sighash_type)

        if kind == "p2wpkh":
            script_code = p2pkh_script(script[2:22])
            return self.tx.segwit_sighash(index, script_code, spent.value, sighash_type)
        if kind == "p2wsh":
            if inp.witness_script is None or sha256(inp.witness_script) != script[2:34]:
                return None
            return self.tx.segwit_sighash(index, inp.witness_script, spent.value, sighash_type)
        if kind == "p2pkh":
            return self.tx.legacy_sighash(index, script, sighash_type)
        return None

    def verify_signature(self, index: int, pubkey: bytes, signature: bytes) -> bool:
        """Check a DER signature with trailing sighash byte against input index."""
        if len(signature) < 2:
            return False
        sighash_type = signature[-1]
        required = self.inputs[index].sighash_type
        if required is not None and required != sighash_type:
            return False

        digest = self.sighash(index, sighash_type)
        if digest is None:
            return False
        try:
            return PublicKey(pubkey).verify(signature[:-1], digest, hasher=None)
        except ValueError:
            return False


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


def _encode_key_source(source: KeySource) -> bytes:
    fingerprint, path = source
    return fingerprint + b"".join(struct.pack("<I", index) for index in path)


def _decode_key_source(value: bytes) -> KeySource:
    if len(value) < 4 or len(value) % 4 != 0:
        raise DecodeError(f"Invalid BIP32 derivation value length: {len(value)}")
    path = tuple(
        struct.unpack("<I", value[i : i + 4])[0] for i in range(4, len(value), 4)
    )
    return value[:4], path


def _encode_witness(stack: list[bytes]) -> bytes:
    result = encode_varint(len(stack))
    for item in stack:
        result += encode_varint(len(item)) + item
    return result


def _decode_witness(value: bytes) -> list[bytes]:
    count, offset = read_varint(value, 0)
    stack = []
    for _ in range(count):
        size, offset = read_varint(value, offset)
        if offset + size > len(value):
            raise ValueError("Witness item past end of data")
        stack.append(value[offset : offset + size])
        offset += size
    if offset != len(value):
        raise ValueError("Trailing data after witness stack")
    return stack


def _decode_tx_out(value: bytes) -> TxOut:
    if len(value) < 9:
        raise ValueError("Witness UTXO too short")
    amount = struct.unpack("<Q", value[:8])[0]
    script_len, offset = read_varint(value, 8)
    if offset + script_len != len(value):
        raise ValueError("Witness UTXO script length mismatch")
    return TxOut(amount, value[offset:])


def _write_pair(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def serialize_bytes(psbt: PSBT) -> bytes:
    out = bytearray(PSBT_MAGIC)

    out += _write_pair(bytes([PSBT_GLOBAL_UNSIGNED_TX]), psbt.tx.serialize(include_witness=False))
    for xpub, source in psbt.xpubs.items():
        out += _write_pair(bytes([PSBT_GLOBAL_XPUB]) + xpub, _encode_key_source(source))
    if psbt.version is not None:
        out += _write_pair(bytes([PSBT_GLOBAL_VERSION]), struct.pack("<I", psbt.version))
    for key, value in psbt.unknown.items():
        out += _write_pair(key, value)
    out += b"\x00"

    for inp in psbt.inputs:
        if inp.non_witness_utxo is not None:
            out += _write_pair(bytes([PSBT_IN_NON_WITNESS_UTXO]), inp.non_witness_utxo.serialize())
        if inp.witness_utxo is not None:
            out += _write_pair(bytes([PSBT_IN_WITNESS_UTXO]), inp.witness_utxo.serialize())
        for pubkey, sig in inp.partial_sigs.items():
            out += _write_pair(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
        if inp.sighash_type is not None:
            out += _write_pair(bytes([PSBT_IN_SIGHASH_TYPE]), struct.pack("<I", inp.sighash_type))
        if inp.redeem_script is not None:
            out += _write_pair(bytes([PSBT_IN_REDEEM_SCRIPT]), inp.redeem_script)
        if inp.witness_script is not None:
            out += _write_pair(bytes([PSBT_IN_WITNESS_SCRIPT]), inp.witness_script)
        for pubkey, source in inp.bip32_derivations.items():
            out += _write_pair(
                bytes([PSBT_IN_BIP32_DERIVATION]) + pubkey, _encode_key_source(source)
            )
        if inp.final_script_sig is not None:
            out += _write_pair(bytes([PSBT_IN_FINAL_SCRIPTSIG]), inp.final_script_sig)
        if inp.final_script_witness is not None:
            out += _write_pair(
                bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), _encode_witness(inp.final_script_witness)
            )
        for key, value in inp.unknown.items():
            out += _write_pair(key, value)
        out += b"\x00"

    for output in psbt.outputs:
        if output.redeem_script is not None:
            out += _write_pair(bytes([PSBT_OUT_REDEEM_SCRIPT]), output.redeem_script)
        if output.witness_script is not None:
            out += _write_pair(bytes([PSBT_OUT_WITNESS_SCRIPT]), output.witness_script)
        for pubkey, source in output.bip32_derivations.items():
            out += _write_pair(
                bytes([PSBT_OUT_BIP32_DERIVATION]) + pubkey, _encode_key_source(source)
            )
        for key, value in output.unknown.items():
            out += _write_pair(key, value)
        out += b"\x00"

    return bytes(out)


def serialize(psbt: PSBT) -> str:
    """Base64 text form of a PSBT."""
    return base64.b64encode(serialize_bytes(psbt)).decode("ascii")


def deserialize(text: str) -> PSBT:
    """
    Parse a base64 PSBT.

    Raises:
        DecodeError: on invalid base64 or any structural problem in the PSBT
    """
    try:
        data = base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 PSBT: {e}") from e
    return deserialize_bytes(data)


def deserialize_bytes(data: bytes) -> PSBT:
    """Parse a binary PSBT, raising DecodeError on malformed input."""
    if not data.startswith(PSBT_MAGIC):
        raise DecodeError("Invalid PSBT magic bytes")

    try:
        return _PSBTReader(data, len(PSBT_MAGIC)).read()
    except DecodeError:
        raise
    except (ValueError, IndexError, struct.error) as e:
        raise DecodeError(f"Malformed PSBT: {e}") from e


class _PSBTReader:
    def __init__(self, data: bytes, offset: int):
        self.data = data
        self.offset = offset

    def read(self) -> PSBT:
        global_map = self._read_map("global")

        unsigned = global_map.pop(bytes([PSBT_GLOBAL_UNSIGNED_TX]), None)
        if unsigned is None:
            raise DecodeError("PSBT is missing the unsigned transaction")
        tx = Transaction.parse(unsigned)
        if any(inp.script_sig or inp.witness for inp in tx.inputs):
            raise DecodeError("PSBT unsigned transaction has scriptSigs or witnesses")

        psbt = PSBT(tx=tx)
        for key, value in global_map.items():
            key_type = key[0]
            if key_type == PSBT_GLOBAL_XPUB:
                if len(key) != 79:
                    raise DecodeError(f"Invalid global xpub key length: {len(key)}")
                psbt.xpubs[key[1:]] = _decode_key_source(value)
            elif key_type == PSBT_GLOBAL_VERSION and len(key) == 1:
                if len(value) != 4:
                    raise DecodeError("Invalid PSBT version field")
                psbt.version = struct.unpack("<I", value)[0]
                if psbt.version != 0:
                    raise DecodeError(f"Unsupported PSBT version: {psbt.version}")
            else:
                psbt.unknown[key] = value

        for i in range(len(tx.inputs)):
            psbt.inputs.append(self._parse_input(self._read_map(f"input {i}"), tx, i))
        for i in range(len(tx.outputs)):
            psbt.outputs.append(self._parse_output(self._read_map(f"output {i}")))

        if self.offset != len(self.data):
            raise DecodeError("Trailing data after PSBT maps")
        return psbt

    def _read_bytes(self, size: int) -> bytes:
        if self.offset + size > len(self.data):
            raise DecodeError("Truncated PSBT")
        value = self.data[self.offset : self.offset + size]
        self.offset += size
        return value

    def _read_map(self, name: str) -> dict[bytes, bytes]:
        entries: dict[bytes, bytes] = {}
        while True:
            if self.offset >= len(self.data):
                raise DecodeError(f"Truncated PSBT: {name} map has no separator")
            key_len, self.offset = read_varint(self.data, self.offset)
            if key_len == 0:
                return entries
            key = self._read_bytes(key_len)
            value_len, self.offset = read_varint(self.data, self.offset)
            value = self._read_bytes(value_len)
            if key in entries:
                raise DecodeError(f"Duplicate key in {name} map: {key.hex()}")
            entries[key] = value

    @staticmethod
    def _expect_single_byte_key(key: bytes, name: str) -> None:
        if len(key) != 1:
            raise DecodeError(f"Invalid {name} key length: {len(key)}")

    @staticmethod
    def _expect_pubkey_key(key: bytes, name: str) -> bytes:
        if len(key) - 1 not in (33, 65):
            raise DecodeError(f"Invalid public key in {name} key")
        return key[1:]

    def _parse_input(self, entries: dict[bytes, bytes], tx: Transaction, index: int) -> PSBTInput:
        inp = PSBTInput()
        for key, value in entries.items():
            key_type = key[0]
            if key_type == PSBT_IN_NON_WITNESS_UTXO:
                self._expect_single_byte_key(key, "non-witness utxo")
                prev_tx = Transaction.parse(value)
                if prev_tx.txid != tx.inputs[index].txid:
                    raise DecodeError(f"Non-witness UTXO of input {index} has the wrong txid")
                inp.non_witness_utxo = prev_tx
            elif key_type == PSBT_IN_WITNESS_UTXO:
                self._expect_single_byte_key(key, "witness utxo")
                inp.witness_utxo = _decode_tx_out(value)
            elif key_type == PSBT_IN_PARTIAL_SIG:
                inp.partial_sigs[self._expect_pubkey_key(key, "partial signature")] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE:
                self._expect_single_byte_key(key, "sighash type")
                if len(value) != 4:
                    raise DecodeError("Invalid sighash type value")
                inp.sighash_type = struct.unpack("<I", value)[0]
            elif key_type == PSBT_IN_REDEEM_SCRIPT:
                self._expect_single_byte_key(key, "redeem script")
                inp.redeem_script = value
            elif key_type == PSBT_IN_WITNESS_SCRIPT:
                self._expect_single_byte_key(key, "witness script")
                inp.witness_script = value
            elif key_type == PSBT_IN_BIP32_DERIVATION:
                pubkey = self._expect_pubkey_key(key, "BIP32 derivation")
                inp.bip32_derivations[pubkey] = _decode_key_source(value)
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
                self._expect_single_byte_key(key, "final scriptSig")
                inp.final_script_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                self._expect_single_byte_key(key, "final scriptWitness")
                inp.final_script_witness = _decode_witness(value)
            else:
                inp.unknown[key] = value
        return inp

    def _parse_output(self, entries: dict[bytes, bytes]) -> PSBTOutput:
        output = PSBTOutput()
        for key, value in entries.items():
            key_type = key[0]
            if key_type == PSBT_OUT_REDEEM_SCRIPT:
                self._expect_single_byte_key(key, "output redeem script")
                output.redeem_script = value
            elif key_type == PSBT_OUT_WITNESS_SCRIPT:
                self._expect_single_byte_key(key, "output witness script")
                output.witness_script = value
            elif key_type == PSBT_OUT_BIP32_DERIVATION:
                pubkey = self._expect_pubkey_key(key, "output BIP32 derivation")
                output.bip32_derivations[pubkey] = _decode_key_source(value)
            else:
                output.unknown[key] = value
        return output


# ---------------------------------------------------------------------------
# Finalizer and extractor
# ---------------------------------------------------------------------------


def finalize(psbt: PSBT, wallet: WalletSession | None = None) -> bool:
    """
    Finalize every input that has enough valid signatures.

    When wallet is given, missing spent outputs, scripts and key origins are
    filled in from the wallet's derived scripts and UTXO set first. Inputs
    that are already finalized are left untouched; inputs lacking data or
    signatures stay as they are.

    Returns:
        True if every input is finalized afterwards
    """
    for index, inp in enumerate(psbt.inputs):
        if inp.is_finalized:
            continue
        if wallet is not None:
            wallet.update_psbt_input(psbt, index)
        if _finalize_input(psbt, index):
            logger.debug(f"Finalized PSBT input {index}")
        else:
            logger.debug(f"PSBT input {index} left unfinalized ({inp.state.value})")

    return psbt.is_finalized


def _valid_signature(psbt: PSBT, index: int) -> Callable[[bytes], bytes | None]:
    """Lookup of a verified partial signature by public key."""
    inp = psbt.inputs[index]

    def lookup(pubkey: bytes) -> bytes | None:
        sig = inp.partial_sigs.get(pubkey)
        if sig is None:
            return None
        if not psbt.verify_signature(index, pubkey, sig):
            logger.warning(f"Ignoring invalid signature on input {index} for {pubkey.hex()}")
            return None
        return sig

    return lookup


def _multisig_signatures(
    script: bytes, lookup: Callable[[bytes], bytes | None]
) -> list[bytes] | None:
    """Threshold signatures in script key order, or None if not enough."""
    parsed = parse_multisig(script)
    if parsed is None:
        return None
    threshold, pubkeys = parsed
    sigs = []
    for pubkey in pubkeys:
        sig = lookup(pubkey)
        if sig is not None:
            sigs.append(sig)
        if len(sigs) == threshold:
            return sigs
    return None


def _single_key_signature(
    psbt: PSBT, index: int, pubkey_hash: bytes, lookup: Callable[[bytes], bytes | None]
) -> tuple[bytes, bytes] | None:
    for pubkey in psbt.inputs[index].partial_sigs:
        if hash160(pubkey) == pubkey_hash:
            sig = lookup(pubkey)
            if sig is not None:
                return sig, pubkey
    return None


def _finalize_input(psbt: PSBT, index: int) -> bool:
    inp = psbt.inputs[index]
    spent = psbt.spent_output(index)
    if spent is None or not inp.partial_sigs:
        return False

    lookup = _valid_signature(psbt, index)
    script = spent.script_pubkey
    kind = classify_script(script)
    script_sig: bytes | None = None
    witness: list[bytes] | None = None

    redeem_push = b""
    if kind == "p2sh":
        if inp.redeem_script is None or hash160(inp.redeem_script) != script[2:22]:
            return False
        redeem_push = push_data(inp.redeem_script)
        script = inp.redeem_script
        kind = classify_script(script)

    if redeem_push and kind not in ("p2wpkh", "p2wsh"):
        # Multisig redeem script: OP_0 <sig>... <redeem_script>
        sigs = _multisig_signatures(script, lookup)
        if sigs is None:
            return False
        script_sig = build_push_script([b""] + sigs) + redeem_push
    elif kind == "p2pkh":
        found = _single_key_signature(psbt, index, script[3:23], lookup)
        if found is None:
            return False
        script_sig = build_push_script(list(found))
    elif kind == "p2wpkh":
        found = _single_key_signature(psbt, index, script[2:22], lookup)
        if found is None:
            return False
        witness = list(found)
        script_sig = redeem_push or None
    elif kind == "p2wsh":
        ws = inp.witness_script
        if ws is None or sha256(ws) != script[2:34]:
            return False
        sigs = _multisig_signatures(ws, lookup)
        if sigs is None:
            return False
        # Empty first element consumed by the CHECKMULTISIG off-by-one
        witness = [b""] + sigs + [ws]
        script_sig = redeem_push or None
    else:
        return False

    inp.final_script_sig = script_sig
    inp.final_script_witness = witness
    inp.partial_sigs = {}
    inp.sighash_type = None
    inp.redeem_script = None
    inp.witness_script = None
    inp.bip32_derivations = {}
    return True


def extract_transaction(psbt: PSBT) -> Transaction:
    """
    Build the network transaction from a fully finalized PSBT.

    Raises:
        NotFinalizedError: if any input is not finalized
    """
    pending = [i for i, inp in enumerate(psbt.inputs) if not inp.is_finalized]
    if pending:
        raise NotFinalizedError(
            f"Cannot extract transaction: inputs {pending} are not finalized"
        )

    tx = psbt.tx.copy()
    for txin, inp in zip(tx.inputs, psbt.inputs):
        txin.script_sig = inp.final_script_sig or b""
        txin.witness = list(inp.final_script_witness or [])
    return tx
