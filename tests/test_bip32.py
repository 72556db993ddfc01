"""
Tests for BIP32 key derivation.
"""

from __future__ import annotations

import pytest

from descwallet.wallet.bip32 import HDKey, format_path, mnemonic_to_seed, parse_path

VECTOR_1_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")


class TestPaths:
    """Tests for derivation path parsing."""

    def test_parse(self) -> None:
        assert parse_path("m/84'/1'/0'/0/5") == [
            0x80000054,
            0x80000001,
            0x80000000,
            0,
            5,
        ]
        assert parse_path("84h/1H/0") == [0x80000054, 0x80000001, 0]

    def test_format(self) -> None:
        assert format_path([0x80000054, 0, 1]) == "m/84'/0/1"
        assert format_path([0x80000054], prefix="") == "84'"

    def test_invalid(self) -> None:
        with pytest.raises(ValueError):
            parse_path("m/abc")
        with pytest.raises(ValueError):
            parse_path("m/2147483648")


class TestHDKey:
    """Tests for HD key derivation and serialization."""

    def test_bip32_vector_1_master(self) -> None:
        master = HDKey.from_seed(VECTOR_1_SEED)
        assert master.neuter().to_base58("mainnet") == (
            "xpub661MyMwAqRbcFtXgS5sYJABqqG9YLmC4Q1Rdap9gSE8NqtwybGhePY2gZ29ESFjqJo"
            "Cu1Rupje8YtGqsefD265TMg7usUDFdp6W1EGMcet8"
        )

    def test_bip32_vector_1_hardened_child(self) -> None:
        master = HDKey.from_seed(VECTOR_1_SEED)
        child = master.derive("m/0'")
        assert child.to_base58("mainnet", private=False) == (
            "xpub68Gmy5EdvgibQVfPdqkBBCHxA5htiqg55crXYuXoQRKfDBFA1WEjWgP6LHhwBZeNK1"
            "VTsfTFUHCdrfp1bgwQ9xv5ski8PX9rL2dZXvgGDnw"
        )
        assert child.depth == 1
        assert child.parent_fingerprint == master.fingerprint

    def test_base58_roundtrip(self, master_key: HDKey) -> None:
        text = master_key.to_base58("testnet")
        assert text.startswith("tprv")
        parsed, network = HDKey.from_base58(text)
        assert network == "testnet"
        assert parsed.to_base58("testnet") == text

    def test_public_derivation_matches_private(self, master_key: HDKey) -> None:
        account = master_key.derive("m/84'/0'/0'")
        from_private = account.derive_path([0, 7]).get_public_key_bytes()
        from_public = account.neuter().derive_path([0, 7]).get_public_key_bytes()
        assert from_private == from_public

    def test_watch_only_cannot_derive_hardened(self, master_key: HDKey) -> None:
        with pytest.raises(ValueError):
            master_key.neuter().derive("m/0'")

    def test_watch_only_has_no_private_key(self, master_key: HDKey) -> None:
        watch_only = master_key.neuter()
        assert not watch_only.is_private
        with pytest.raises(ValueError):
            watch_only.get_private_key_bytes()
        with pytest.raises(ValueError):
            watch_only.to_base58("mainnet", private=True)

    def test_invalid_base58(self) -> None:
        with pytest.raises(ValueError):
            HDKey.from_base58("xpubnotakey")

    def test_mnemonic_seed(self, sample_mnemonic: str) -> None:
        seed = mnemonic_to_seed(sample_mnemonic)
        assert seed.hex().startswith("5eb00bbddcf069084889a8ab9155568165f5c453")
