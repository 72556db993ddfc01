"""
BIP32 HD key derivation.

Supports private and public-only (watch-only) extended keys, xprv/xpub/tprv/tpub
serialization and non-hardened public child derivation (CKDpub), which is what
descriptor wallets built on account xpubs rely on.
"""

from __future__ import annotations

import hashlib
import hmac
import struct

import base58
from coincurve import PrivateKey, PublicKey

from descwallet.constants import HARDENED_OFFSET
from descwallet.wallet.address import NETWORKS, get_network
from descwallet.wallet.script import hash160

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

EXTENDED_KEY_LENGTH = 78


def parse_path(path: str) -> list[int]:
    """
    Parse a derivation path ("m/84'/1'/0'/0" or "84h/1h/0h") into child indexes.
    ' and h both mark hardened derivation.
    """
    parts = path.split("/")
    if parts and parts[0] == "m":
        parts = parts[1:]

    indexes = []
    for part in parts:
        if not part:
            continue
        hardened = part.endswith("'") or part.endswith("h") or part.endswith("H")
        index_str = part.rstrip("'hH")
        if not index_str.isdigit():
            raise ValueError(f"Invalid path element: {part}")
        index = int(index_str)
        if index >= HARDENED_OFFSET:
            raise ValueError(f"Path element out of range: {part}")
        indexes.append(index + HARDENED_OFFSET if hardened else index)
    return indexes


def format_path(indexes: list[int], prefix: str = "m") -> str:
    """Format child indexes as a path string, hardened steps marked with '."""
    parts = [prefix] if prefix else []
    for index in indexes:
        if index >= HARDENED_OFFSET:
            parts.append(f"{index - HARDENED_OFFSET}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 derivation.
    """

    def __init__(
        self,
        chain_code: bytes,
        private_key: PrivateKey | None = None,
        public_key: PublicKey | None = None,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        if private_key is None and public_key is None:
            raise ValueError("HDKey needs a private or a public key")
        self._private_key = private_key
        self._public_key = private_key.public_key if private_key is not None else public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @property
    def private_key(self) -> PrivateKey | None:
        """Return the coincurve PrivateKey instance (None for watch-only keys)."""
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        assert self._public_key is not None
        return self._public_key

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of HASH160 of the compressed public key."""
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        private_key = PrivateKey(key_bytes)

        return cls(chain_code, private_key=private_key)

    @classmethod
    def from_base58(cls, text: str) -> tuple[HDKey, str]:
        """
        Parse an xpub/xprv/tpub/tprv string.

        Returns:
            (key, network) where network is "mainnet" or "testnet"
            (testnet version bytes are shared by testnet, signet and regtest)
        """
        try:
            raw = base58.b58decode_check(text)
        except ValueError as e:
            raise ValueError(f"Invalid extended key encoding: {e}") from e

        if len(raw) != EXTENDED_KEY_LENGTH:
            raise ValueError(f"Invalid extended key length: {len(raw)}")

        version = raw[0:4]
        depth = raw[4]
        parent_fingerprint = raw[5:9]
        child_number = struct.unpack(">I", raw[9:13])[0]
        chain_code = raw[13:45]
        key_data = raw[45:78]

        for network in ("mainnet", "testnet"):
            params = NETWORKS[network]
            if version == params.xprv_version:
                if key_data[0] != 0x00:
                    raise ValueError("Invalid private key prefix in extended key")
                secret = int.from_bytes(key_data[1:], "big")
                if not 0 < secret < SECP256K1_N:
                    raise ValueError("Private key out of range")
                key = cls(
                    chain_code,
                    private_key=PrivateKey(key_data[1:]),
                    depth=depth,
                    parent_fingerprint=parent_fingerprint,
                    child_number=child_number,
                )
                return key, network
            if version == params.xpub_version:
                try:
                    public_key = PublicKey(key_data)
                except ValueError as e:
                    raise ValueError(f"Invalid public key in extended key: {e}") from e
                key = cls(
                    chain_code,
                    public_key=public_key,
                    depth=depth,
                    parent_fingerprint=parent_fingerprint,
                    child_number=child_number,
                )
                return key, network

        raise ValueError(f"Unknown extended key version: {version.hex()}")

    def to_base58(self, network: str = "mainnet", private: bool | None = None) -> str:
        """Serialize as xprv/xpub (mainnet) or tprv/tpub (test networks)."""
        params = get_network(network)
        if private is None:
            private = self.is_private
        if private and self._private_key is None:
            raise ValueError("Cannot serialize watch-only key as private")

        if private:
            assert self._private_key is not None
            version = params.xprv_version
            key_data = b"\x00" + self._private_key.secret
        else:
            version = params.xpub_version
            key_data = self.get_public_key_bytes()

        raw = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + struct.pack(">I", self.child_number)
            + self.chain_code
            + key_data
        )
        return base58.b58encode_check(raw).decode("ascii")

    def neuter(self) -> HDKey:
        """Return the public-only version of this key."""
        return HDKey(
            self.chain_code,
            public_key=self.public_key,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
        )

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        return self.derive_path(parse_path(path))

    def derive_path(self, indexes: list[int]) -> HDKey:
        key = self
        for index in indexes:
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= HARDENED_OFFSET

        if hardened:
            if self._private_key is None:
                raise ValueError("Cannot derive hardened child from a public key")
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        if self._private_key is not None:
            parent_key_int = int.from_bytes(self._private_key.secret, "big")
            child_key_int = (parent_key_int + offset_int) % SECP256K1_N

            if child_key_int == 0:
                raise ValueError("Invalid child key")

            return HDKey(
                child_chain,
                private_key=PrivateKey(child_key_int.to_bytes(32, "big")),
                depth=self.depth + 1,
                parent_fingerprint=self.fingerprint,
                child_number=index,
            )

        # CKDpub: child = point(IL) + K_par
        child_public_key = self.public_key.add(key_offset)
        return HDKey(
            child_chain,
            public_key=child_public_key,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        if self._private_key is None:
            raise ValueError("Watch-only key has no private key")
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self.public_key.format(compressed=compressed)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to seed.
    Does not validate the mnemonic checksum.
    """
    from hashlib import pbkdf2_hmac

    mnemonic_bytes = mnemonic.encode("utf-8")
    salt = ("mnemonic" + passphrase).encode("utf-8")

    seed = pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)
    return seed
