"""
Tests for script primitives and address encoding.
"""

from __future__ import annotations

import pytest

from descwallet.errors import InvalidRecipientError
from descwallet.wallet.address import address_to_script, script_to_address
from descwallet.wallet.script import (
    classify_script,
    encode_varint,
    hash160,
    multisig_script,
    p2pkh_script,
    p2wpkh_script,
    parse_multisig,
    push_data,
    read_varint,
)


class TestVarint:
    """Tests for varint encoding."""

    def test_encode(self) -> None:
        assert encode_varint(0) == b"\x00"
        assert encode_varint(252) == b"\xfc"
        assert encode_varint(253) == b"\xfd\xfd\x00"
        assert encode_varint(0x10000) == b"\xfe\x00\x00\x01\x00"
        assert encode_varint(0x100000000)[0] == 0xFF

    def test_read(self) -> None:
        assert read_varint(b"\xfd\x01\x00", 0) == (1, 3)
        assert read_varint(b"\x05\xff", 0) == (5, 1)

    def test_read_truncated(self) -> None:
        with pytest.raises(ValueError):
            read_varint(b"\xfd\x01", 0)


class TestScripts:
    """Tests for script templates."""

    def test_push_data_sizes(self) -> None:
        assert push_data(b"") == b"\x00"
        assert push_data(b"\x01" * 75)[0] == 75
        assert push_data(b"\x01" * 76)[:2] == b"\x4c\x4c"
        assert push_data(b"\x01" * 256)[:3] == b"\x4d\x00\x01"

    def test_classify(self) -> None:
        h = bytes(20)
        assert classify_script(p2pkh_script(h)) == "p2pkh"
        assert classify_script(p2wpkh_script(h)) == "p2wpkh"
        assert classify_script(b"\x6a") == "unknown"

    def test_multisig_roundtrip(self) -> None:
        keys = [bytes([2]) + bytes([i]) * 32 for i in range(1, 4)]
        script = multisig_script(2, keys)
        assert script[0] == 0x52
        assert script[-2:] == b"\x53\xae"
        assert parse_multisig(script) == (2, keys)

    def test_parse_multisig_rejects_other_scripts(self) -> None:
        assert parse_multisig(p2wpkh_script(bytes(20))) is None

    def test_invalid_threshold(self) -> None:
        with pytest.raises(ValueError):
            multisig_script(3, [bytes([2]) * 33, bytes([3]) * 33])


class TestAddresses:
    """Tests for address encoding and decoding."""

    def test_bip173_mainnet_p2wpkh(self) -> None:
        pubkey = bytes.fromhex(
            "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
        )
        script = p2wpkh_script(hash160(pubkey))
        assert script_to_address(script, "mainnet") == (
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        )

    def test_bip173_testnet_p2wsh(self) -> None:
        address = "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7"
        script = address_to_script(address, "testnet")
        assert script == bytes.fromhex(
            "00201863143c14c5166804bd19203356da136c985678cd4d27a1b8c6329604903262"
        )
        assert script_to_address(script, "testnet") == address

    def test_bip350_testnet_p2tr(self) -> None:
        address = "tb1pqqqqp399et2xygdj5xreqhjjvcmzhxw4aywxecjdzew6hylgvsesf3hn0c"
        script = address_to_script(address, "testnet")
        assert script == bytes.fromhex(
            "5120000000c4a5cad46221b2a187905e5266362b99d5e91c6ce24d165dab93e86433"
        )
        assert classify_script(script) == "p2tr"
        assert script_to_address(script, "testnet") == address

    def test_bip350_mainnet_p2tr(self) -> None:
        address = "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0"
        script = address_to_script(address.upper(), "mainnet")
        assert script == bytes.fromhex(
            "512079be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
        )
        assert script_to_address(script, "mainnet") == address

    def test_witness_v1_requires_bech32m(self) -> None:
        # Same program as the mainnet P2TR vector, but with a bech32 checksum
        with pytest.raises(InvalidRecipientError):
            address_to_script(
                "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqh2y7hd", "mainnet"
            )
        with pytest.raises(InvalidRecipientError):
            address_to_script(
                "tb1pqqqqp399et2xygdj5xreqhjjvcmzhxw4aywxecjdzew6hylgvsesf3hn0d", "testnet"
            )

    def test_uppercase_bech32(self) -> None:
        script = address_to_script("BC1QW508D6QEJXTDG4Y5R3ZARVARY0C5XW7KV8F3T4", "mainnet")
        assert classify_script(script) == "p2wpkh"

    def test_regtest_hrp(self) -> None:
        script = p2wpkh_script(bytes(20))
        assert script_to_address(script, "regtest").startswith("bcrt1q")

    def test_base58_roundtrip(self) -> None:
        address = "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2"
        script = address_to_script(address, "mainnet")
        assert classify_script(script) == "p2pkh"
        assert script_to_address(script, "mainnet") == address

    def test_p2sh_mainnet(self) -> None:
        address = "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy"
        script = address_to_script(address, "mainnet")
        assert classify_script(script) == "p2sh"

    def test_wrong_network(self) -> None:
        with pytest.raises(InvalidRecipientError):
            address_to_script("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", "testnet")
        with pytest.raises(InvalidRecipientError):
            address_to_script("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", "testnet")

    def test_bad_checksum(self) -> None:
        with pytest.raises(InvalidRecipientError):
            address_to_script("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5", "mainnet")
        with pytest.raises(InvalidRecipientError):
            address_to_script("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN3", "mainnet")

    def test_empty(self) -> None:
        with pytest.raises(InvalidRecipientError):
            address_to_script("  ", "mainnet")

    def test_unknown_network(self) -> None:
        with pytest.raises(ValueError):
            script_to_address(p2wpkh_script(bytes(20)), "litecoin")
