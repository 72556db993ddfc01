"""
Bitcoin transaction model, serialization and signature hashing.

Covers legacy and segwit (BIP144) serialization, txid/wtxid, weight and the
two signature hash algorithms the wallet needs: the original one for
non-witness inputs and BIP143 for witness v0 inputs.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from descwallet.constants import (
    DEFAULT_TX_VERSION,
    SEQUENCE_FINAL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_NONE,
    SIGHASH_SINGLE,
    WITNESS_SCALE_FACTOR,
)
from descwallet.errors import DecodeError
from descwallet.wallet.script import encode_varint, hash256, read_varint


@dataclass
class TxIn:
    """Transaction input."""

    txid: str
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    def serialize_outpoint(self) -> bytes:
        # txid is displayed big-endian, serialized little-endian
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def serialize(self) -> bytes:
        return (
            self.serialize_outpoint()
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOut:
    """Transaction output."""

    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            struct.pack("<Q", self.value)
            + encode_varint(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass
class Transaction:
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    version: int = DEFAULT_TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """Serialize the transaction, with BIP144 witness data if any input has it."""
        segwit = include_witness and self.has_witness

        result = struct.pack("<I", self.version)
        if segwit:
            result += bytes([0x00, 0x01])

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if segwit:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, displayed reversed."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @property
    def weight(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize())
        return base_size * (WITNESS_SCALE_FACTOR - 1) + total_size

    @property
    def vsize(self) -> int:
        return -(-self.weight // WITNESS_SCALE_FACTOR)

    def copy(self) -> Transaction:
        return Transaction(
            inputs=[
                TxIn(inp.txid, inp.vout, inp.script_sig, inp.sequence, list(inp.witness))
                for inp in self.inputs
            ],
            outputs=[TxOut(out.value, out.script_pubkey) for out in self.outputs],
            version=self.version,
            locktime=self.locktime,
        )

    @classmethod
    def parse(cls, data: bytes) -> Transaction:
        """
        Parse a serialized transaction.

        Raises:
            DecodeError: if data is truncated, malformed or has trailing bytes
        """
        try:
            tx, offset = _parse_tx(data, 0)
        except (ValueError, IndexError, struct.error) as e:
            raise DecodeError(f"Failed to parse transaction: {e}") from e

        if offset != len(data):
            raise DecodeError(f"Trailing data after transaction ({len(data) - offset} bytes)")
        return tx

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        try:
            data = bytes.fromhex(tx_hex)
        except ValueError as e:
            raise DecodeError(f"Invalid transaction hex: {e}") from e
        return cls.parse(data)

    def legacy_sighash(self, input_index: int, script_code: bytes, sighash_type: int) -> bytes:
        """Original signature hash for non-witness inputs."""
        if not 0 <= input_index < len(self.inputs):
            raise ValueError(f"Input index out of range: {input_index}")

        base_type = sighash_type & 0x1F
        if base_type == SIGHASH_SINGLE and input_index >= len(self.outputs):
            # Consensus quirk: hash of one
            return b"\x01" + b"\x00" * 31

        tx = self.copy()
        for i, inp in enumerate(tx.inputs):
            inp.script_sig = script_code if i == input_index else b""
            inp.witness = []

        if base_type == SIGHASH_NONE:
            tx.outputs = []
        elif base_type == SIGHASH_SINGLE:
            tx.outputs = [TxOut(0xFFFFFFFFFFFFFFFF, b"") for _ in range(input_index)] + [
                tx.outputs[input_index]
            ]

        if base_type in (SIGHASH_NONE, SIGHASH_SINGLE):
            for i, inp in enumerate(tx.inputs):
                if i != input_index:
                    inp.sequence = 0

        if sighash_type & SIGHASH_ANYONECANPAY:
            tx.inputs = [tx.inputs[input_index]]

        preimage = tx.serialize(include_witness=False) + struct.pack("<I", sighash_type)
        return hash256(preimage)

    def segwit_sighash(
        self,
        input_index: int,
        script_code: bytes,
        value: int,
        sighash_type: int,
    ) -> bytes:
        """BIP143 signature hash for witness v0 inputs."""
        if not 0 <= input_index < len(self.inputs):
            raise ValueError(f"Input index out of range: {input_index}")

        base_type = sighash_type & 0x1F
        anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)
        zero = b"\x00" * 32

        hash_prevouts = zero
        if not anyone_can_pay:
            hash_prevouts = hash256(b"".join(inp.serialize_outpoint() for inp in self.inputs))

        hash_sequence = zero
        if not anyone_can_pay and base_type not in (SIGHASH_NONE, SIGHASH_SINGLE):
            hash_sequence = hash256(
                b"".join(struct.pack("<I", inp.sequence) for inp in self.inputs)
            )

        if base_type not in (SIGHASH_NONE, SIGHASH_SINGLE):
            hash_outputs = hash256(b"".join(out.serialize() for out in self.outputs))
        elif base_type == SIGHASH_SINGLE and input_index < len(self.outputs):
            hash_outputs = hash256(self.outputs[input_index].serialize())
        else:
            hash_outputs = zero

        target = self.inputs[input_index]
        preimage = (
            struct.pack("<I", self.version)
            + hash_prevouts
            + hash_sequence
            + target.serialize_outpoint()
            + encode_varint(len(script_code))
            + script_code
            + struct.pack("<Q", value)
            + struct.pack("<I", target.sequence)
            + hash_outputs
            + struct.pack("<I", self.locktime)
            + struct.pack("<I", sighash_type)
        )
        return hash256(preimage)


def _read(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    if offset + size > len(data):
        raise ValueError("Unexpected end of data")
    return data[offset : offset + size], offset + size


def _parse_tx(data: bytes, offset: int) -> tuple[Transaction, int]:
    raw, offset = _read(data, offset, 4)
    version = struct.unpack("<I", raw)[0]

    segwit = False
    if offset + 1 < len(data) and data[offset] == 0x00 and data[offset + 1] == 0x01:
        segwit = True
        offset += 2

    input_count, offset = read_varint(data, offset)
    inputs: list[TxIn] = []
    for _ in range(input_count):
        txid_le, offset = _read(data, offset, 32)
        raw, offset = _read(data, offset, 4)
        vout = struct.unpack("<I", raw)[0]
        script_len, offset = read_varint(data, offset)
        script_sig, offset = _read(data, offset, script_len)
        raw, offset = _read(data, offset, 4)
        sequence = struct.unpack("<I", raw)[0]
        inputs.append(TxIn(txid_le[::-1].hex(), vout, script_sig, sequence))

    output_count, offset = read_varint(data, offset)
    outputs: list[TxOut] = []
    for _ in range(output_count):
        raw, offset = _read(data, offset, 8)
        value = struct.unpack("<Q", raw)[0]
        script_len, offset = read_varint(data, offset)
        script_pubkey, offset = _read(data, offset, script_len)
        outputs.append(TxOut(value, script_pubkey))

    if segwit:
        for inp in inputs:
            stack_count, offset = read_varint(data, offset)
            for _ in range(stack_count):
                item_len, offset = read_varint(data, offset)
                item, offset = _read(data, offset, item_len)
                inp.witness.append(item)

    raw, offset = _read(data, offset, 4)
    locktime = struct.unpack("<I", raw)[0]

    tx = Transaction(inputs=inputs, outputs=outputs, version=version, locktime=locktime)
    return tx, offset
