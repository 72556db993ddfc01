"""
Tests for output descriptor parsing and derivation.
"""

from __future__ import annotations

import pytest

from descwallet.errors import DescriptorParseError
from descwallet.wallet.bip32 import HDKey
from descwallet.wallet.descriptor import (
    Descriptor,
    ScriptType,
    add_checksum,
    descriptor_checksum,
)
from descwallet.wallet.fees import dust_threshold

MULTI_XPRV = (
    "sh(multi(2,[00000000/111h/222]xprvA1RpRA33e1JQ7ifknakTFpgNXPmW2YvmhqLQ"
    "YMmrj4xJXXWYpDPS3xz7iAxn8L39njGVyuoseXzU6rcxFLJ8HFsTjSyQbLYnMpCqE2VbFWc,"
    "xprv9uPDJpEQgRQfDcW7BkF7eTya6RPxXeJCqCJGHuCJ4GiRVLzkTXBAJMu2qaMWPrS7AA"
    "NYqdq6vcBcBUdJCVVFceUvJFjaPdGZ2y9WACViL4L/0))"
)
MULTI_XPUB = (
    "sh(multi(2,[00000000/111h/222]xpub6ERApfZwUNrhLCkDtcHTcxd75RbzS1ed54G1"
    "LkBUHQVHQKqhMkhgbmJbZRkrgZw4koxb5JaHWkY4ALHY2grBGRjaDMzQLcgJvLJuZZvRcEL,"
    "xpub68NZiKmJWnxxS6aaHmn81bvJeTESw724CRDs6HbuccFQN9Ku14VQrADWgqbhhTHBao"
    "hPX4CjNLf9fq9MYo6oDaPPLPxSb7gwQN3ih19Zm4Y/0))"
)

PUBKEY_A = "03a34b99f22c790c4e36b2b3c2c35a36db06226e41c692fc82b8b56ac1c540c5bd"
PUBKEY_B = "02f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"


class TestChecksum:
    """Tests for the descriptor checksum."""

    def test_known_checksums(self) -> None:
        assert descriptor_checksum(MULTI_XPUB) == "hgmsckna"
        assert descriptor_checksum(MULTI_XPRV) == "5js07kwj"

    def test_parse_with_valid_checksum(self) -> None:
        desc = Descriptor.parse(f"{MULTI_XPUB}#hgmsckna", "mainnet")
        assert desc.script_type == ScriptType.SH
        assert desc.threshold == 2

    def test_parse_with_bad_checksum(self) -> None:
        with pytest.raises(DescriptorParseError, match="Checksum mismatch"):
            Descriptor.parse(f"{MULTI_XPRV}#5js07kej", "mainnet")

    def test_parse_with_wrong_checksum_length(self) -> None:
        with pytest.raises(DescriptorParseError):
            Descriptor.parse(f"{MULTI_XPRV}#5js07kwjq", "mainnet")

    def test_invalid_character(self) -> None:
        with pytest.raises(DescriptorParseError):
            descriptor_checksum("wpkh(é)")


class TestParse:
    """Tests for descriptor parsing."""

    def test_wpkh(self, wpkh_descriptor: str) -> None:
        desc = Descriptor.parse(wpkh_descriptor)
        assert desc.script_type == ScriptType.WPKH
        assert desc.is_range
        assert desc.is_segwit
        assert not desc.has_private_keys

    def test_nested_and_multisig_templates(self) -> None:
        assert Descriptor.parse(f"sh(wpkh({PUBKEY_A}))").script_type == ScriptType.SH_WPKH
        assert (
            Descriptor.parse(f"wsh(multi(1,{PUBKEY_A},{PUBKEY_B}))").script_type
            == ScriptType.WSH
        )
        sorted_desc = Descriptor.parse(f"sh(wsh(sortedmulti(2,{PUBKEY_A},{PUBKEY_B})))")
        assert sorted_desc.script_type == ScriptType.SH_WSH
        assert sorted_desc.sorted_keys

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "wpkh(",
            f"tr({PUBKEY_A})",
            f"wpkh({PUBKEY_A}))",
            f"sh(pkh({PUBKEY_A}))",
            f"wsh(multi(3,{PUBKEY_A},{PUBKEY_B}))",
            f"wsh(multi(0,{PUBKEY_A}))",
            f"wpkh({PUBKEY_A}/0)",
            "wpkh(02deadbeef)",
            "wpkh([0000/0]03a34b99f22c790c4e36b2b3c2c35a36db06226e41c692fc82b8b56ac1c540c5bd)",
        ],
    )
    def test_malformed(self, text: str) -> None:
        with pytest.raises(DescriptorParseError):
            Descriptor.parse(text)

    def test_key_network_mismatch(self, wpkh_descriptor: str) -> None:
        with pytest.raises(DescriptorParseError, match="not valid for mainnet"):
            Descriptor.parse(wpkh_descriptor, "mainnet")

    def test_hardened_step_needs_private_key(self, account_tpub: str) -> None:
        with pytest.raises(DescriptorParseError):
            Descriptor.parse(f"wpkh({account_tpub}/0h/*)")

    def test_wildcard_must_be_last(self, account_tpub: str) -> None:
        with pytest.raises(DescriptorParseError):
            Descriptor.parse(f"wpkh({account_tpub}/*/0)")


class TestDerive:
    """Tests for script derivation."""

    def test_bip84_vectors(self, master_key: HDKey) -> None:
        xprv = master_key.to_base58("mainnet")
        receive = Descriptor.parse(f"wpkh({xprv}/84h/0h/0h/0/*)", "mainnet")
        change = Descriptor.parse(f"wpkh({xprv}/84h/0h/0h/1/*)", "mainnet")

        assert receive.derive(0).address == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        assert receive.derive(1).address == "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"
        assert change.derive(0).address == "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"

    def test_bip49_testnet_vector(self, tprv: str) -> None:
        desc = Descriptor.parse(f"sh(wpkh({tprv}/49h/1h/0h/0/*))", "testnet")
        derived = desc.derive(0)
        assert derived.address == "2Mww8dCYPUpKHofjgcXcBCEGmniw9CoaiD2"
        assert derived.redeem_script is not None

    def test_bip44_vector(self, master_key: HDKey) -> None:
        xprv = master_key.to_base58("mainnet")
        desc = Descriptor.parse(f"pkh({xprv}/44h/0h/0h/0/*)", "mainnet")
        assert desc.derive(0).address == "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"

    def test_deterministic(self, wpkh_descriptor: str) -> None:
        a = Descriptor.parse(wpkh_descriptor).derive(42)
        b = Descriptor.parse(wpkh_descriptor).derive(42)
        assert a == b

    def test_watch_only_matches_private(
        self, wpkh_descriptor: str, wpkh_private_descriptor: str
    ) -> None:
        public = Descriptor.parse(wpkh_descriptor)
        private = Descriptor.parse(wpkh_private_descriptor)
        for index in (0, 1, 19):
            assert public.derive(index).script_pubkey == private.derive(index).script_pubkey

    def test_key_origin(self, wpkh_descriptor: str, master_key: HDKey) -> None:
        derived = Descriptor.parse(wpkh_descriptor).derive(3)
        (key,) = derived.keys
        assert key.fingerprint == master_key.fingerprint
        assert key.path == (0x80000054, 0x80000001, 0x80000000, 0, 3)
        assert key.private_key is None

    def test_private_key_available(self, wpkh_private_descriptor: str) -> None:
        derived = Descriptor.parse(wpkh_private_descriptor).derive(0)
        assert derived.keys[0].private_key is not None

    def test_non_range_ignores_index(self) -> None:
        desc = Descriptor.parse(f"wpkh({PUBKEY_A})")
        assert not desc.is_range
        assert desc.derive(0).script_pubkey == desc.derive(5).script_pubkey

    def test_sortedmulti_orders_keys(self) -> None:
        unsorted = Descriptor.parse(f"wsh(multi(1,{PUBKEY_A},{PUBKEY_B}))").derive(0)
        reordered = Descriptor.parse(f"wsh(sortedmulti(1,{PUBKEY_A},{PUBKEY_B}))").derive(0)
        swapped = Descriptor.parse(f"wsh(sortedmulti(1,{PUBKEY_B},{PUBKEY_A}))").derive(0)
        assert reordered.script_pubkey == swapped.script_pubkey
        assert unsorted.script_pubkey != reordered.script_pubkey
        assert reordered.witness_script is not None

    def test_hardened_wildcard_rejected_at_derivation(self, tprv: str) -> None:
        desc = Descriptor.parse(f"wpkh({tprv}/84h/1h/0h/*h)")
        with pytest.raises(DescriptorParseError):
            desc.derive(0)

    def test_index_out_of_range(self, wpkh_descriptor: str) -> None:
        with pytest.raises(ValueError):
            Descriptor.parse(wpkh_descriptor).derive(2**31)


class TestRender:
    """Tests for descriptor string forms."""

    def test_roundtrip(self, wpkh_descriptor: str) -> None:
        desc = Descriptor.parse(wpkh_descriptor)
        text = str(desc)
        assert text.startswith("wpkh([")
        assert Descriptor.parse(text) == desc

    def test_public_hides_private_keys(self, wpkh_private_descriptor: str) -> None:
        desc = Descriptor.parse(wpkh_private_descriptor)
        public = desc.public()
        assert not public.has_private_keys
        assert "tprv" not in str(desc)
        for index in (0, 5):
            assert public.derive(index).script_pubkey == desc.derive(index).script_pubkey

    def test_public_moves_hardened_path_to_origin(
        self, wpkh_private_descriptor: str, master_key: HDKey
    ) -> None:
        (key,) = Descriptor.parse(wpkh_private_descriptor).public().keys
        assert key.origin is not None
        assert key.origin.fingerprint == master_key.fingerprint
        assert key.origin.path == (0x80000054, 0x80000001, 0x80000000)
        assert key.path == (0,)

    def test_xprv_multisig_public_form(self) -> None:
        desc = Descriptor.parse(MULTI_XPRV, "mainnet")
        expected = add_checksum(MULTI_XPUB.replace("111h", "111'"))
        assert desc.to_string(public=True) == expected

    def test_derived_string(self, wpkh_descriptor: str) -> None:
        desc = Descriptor.parse(wpkh_descriptor)
        text = desc.derived_string(7)
        assert "/0/7)" in text
        assert "*" not in text
        fixed = Descriptor.parse(text)
        assert not fixed.is_range
        assert fixed.derive(0).address == desc.derive(7).address

    def test_dust_threshold(self, wpkh_descriptor: str) -> None:
        desc = Descriptor.parse(wpkh_descriptor)
        assert desc.dust_threshold() == dust_threshold(desc.derive(0).script_pubkey) == 294


class TestSatisfactionWeight:
    """Tests for worst-case input weights."""

    def test_wpkh(self) -> None:
        assert Descriptor.parse(f"wpkh({PUBKEY_A})").max_satisfaction_weight() == 273

    def test_pkh(self) -> None:
        # 40 + 1 + 74 + 34 = 149 bytes, plus the empty witness
        assert Descriptor.parse(f"pkh({PUBKEY_A})").max_satisfaction_weight() == 149 * 4 + 1

    def test_sh_wpkh(self) -> None:
        assert Descriptor.parse(f"sh(wpkh({PUBKEY_A}))").max_satisfaction_weight() == 64 * 4 + 109

    def test_multisig_grows_with_threshold(self) -> None:
        one = Descriptor.parse(f"wsh(multi(1,{PUBKEY_A},{PUBKEY_B}))")
        two = Descriptor.parse(f"wsh(multi(2,{PUBKEY_A},{PUBKEY_B}))")
        assert two.max_satisfaction_weight() - one.max_satisfaction_weight() == 74
