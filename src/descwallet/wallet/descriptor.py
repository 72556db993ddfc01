"""
Output descriptor parsing and derivation.

Supported templates (a closed set, see ScriptType):

    pkh(KEY)
    wpkh(KEY)
    sh(wpkh(KEY))
    sh(multi(k,KEY,...))        sh(sortedmulti(k,KEY,...))
    wsh(multi(k,KEY,...))       wsh(sortedmulti(k,KEY,...))
    sh(wsh(multi(k,KEY,...)))   sh(wsh(sortedmulti(k,KEY,...)))

KEY is an optional origin ``[fingerprint/path]`` followed by a hex compressed
public key or an extended key (xpub/xprv/tpub/tprv) with an optional
derivation suffix ending in a ``*`` wildcard.

The checksum algorithm is the one from Bitcoin Core's descriptor.cpp.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from coincurve import PrivateKey, PublicKey

from descwallet.constants import (
    COMPRESSED_PUBKEY_SIZE,
    HARDENED_OFFSET,
    MAX_MULTISIG_KEYS_P2SH,
    MAX_MULTISIG_KEYS_WSH,
    MAX_SIGNATURE_SIZE,
    WITNESS_SCALE_FACTOR,
)
from descwallet.errors import DescriptorParseError
from descwallet.wallet.address import script_to_address
from descwallet.wallet.bip32 import HDKey, format_path, parse_path
from descwallet.wallet.fees import dust_threshold
from descwallet.wallet.script import (
    encode_varint,
    hash160,
    multisig_script,
    p2pkh_script,
    p2sh_wrap,
    p2wpkh_script,
    p2wsh_script,
    push_data,
)

INPUT_CHARSET = (
    "0123456789()[],'/*abcdefgh@:$%{}"
    "IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~"
    'ijklmnopqrstuvwxyzABCDEFGH`#"\\ '
)
CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
CHECKSUM_LENGTH = 8

# Outpoint (36) + sequence (4)
_INPUT_BASE_SIZE = 40


def _polymod(c: int, val: int) -> int:
    c0 = c >> 35
    c = ((c & 0x7FFFFFFFF) << 5) ^ val
    if c0 & 1:
        c ^= 0xF5DEE51989
    if c0 & 2:
        c ^= 0xA9FDCA3312
    if c0 & 4:
        c ^= 0x1BAB10E32D
    if c0 & 8:
        c ^= 0x3706B1677A
    if c0 & 16:
        c ^= 0x644D626FFD
    return c


def descriptor_checksum(desc: str) -> str:
    """
    Compute the 8 character descriptor checksum.

    Raises:
        DescriptorParseError: if desc contains characters outside INPUT_CHARSET
    """
    c = 1
    cls = 0
    clscount = 0
    for ch in desc:
        pos = INPUT_CHARSET.find(ch)
        if pos == -1:
            raise DescriptorParseError(f"Invalid character in descriptor: {ch!r}")
        c = _polymod(c, pos & 31)
        cls = cls * 3 + (pos >> 5)
        clscount += 1
        if clscount == 3:
            c = _polymod(c, cls)
            cls = 0
            clscount = 0
    if clscount > 0:
        c = _polymod(c, cls)
    for _ in range(CHECKSUM_LENGTH):
        c = _polymod(c, 0)
    c ^= 1

    return "".join(CHECKSUM_CHARSET[(c >> (5 * (7 - j))) & 31] for j in range(CHECKSUM_LENGTH))


def add_checksum(desc: str) -> str:
    return f"{desc}#{descriptor_checksum(desc)}"


class ScriptType(str, Enum):
    PKH = "pkh"
    WPKH = "wpkh"
    SH_WPKH = "sh-wpkh"
    SH = "sh"  # multisig in P2SH
    WSH = "wsh"  # multisig in P2WSH
    SH_WSH = "sh-wsh"  # multisig in P2WSH nested in P2SH

    @property
    def is_multisig(self) -> bool:
        return self in (ScriptType.SH, ScriptType.WSH, ScriptType.SH_WSH)

    @property
    def is_segwit(self) -> bool:
        return self not in (ScriptType.PKH, ScriptType.SH)


@dataclass(frozen=True)
class KeyOrigin:
    fingerprint: bytes
    path: tuple[int, ...] = ()

    def to_string(self) -> str:
        path = format_path(list(self.path), prefix="")
        return self.fingerprint.hex() + (f"/{path}" if path else "")


@dataclass(frozen=True)
class DerivedKey:
    """A concrete public key with its BIP32 origin."""

    pubkey: bytes
    fingerprint: bytes
    path: tuple[int, ...]
    private_key: PrivateKey | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class KeyExpression:
    """One KEY argument of a descriptor."""

    origin: KeyOrigin | None
    key_text: str
    pubkey: bytes | None = None  # raw hex key
    hd_key: HDKey | None = field(default=None, compare=False, repr=False)
    key_network: str | None = None  # "mainnet" or "testnet" for extended keys
    path: tuple[int, ...] = ()
    wildcard: bool = False
    hardened_wildcard: bool = False
    _base_key: HDKey | None = field(default=None, init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.hd_key is not None:
            # Derive the fixed part of the path once; only the wildcard step varies
            object.__setattr__(self, "_base_key", self.hd_key.derive_path(list(self.path)))

    @property
    def is_private(self) -> bool:
        return self.hd_key is not None and self.hd_key.is_private

    def derive(self, index: int) -> DerivedKey:
        if self.hd_key is None:
            assert self.pubkey is not None
            if self.origin is not None:
                return DerivedKey(self.pubkey, self.origin.fingerprint, self.origin.path)
            return DerivedKey(self.pubkey, hash160(self.pubkey)[:4], ())

        assert self._base_key is not None
        key = self._base_key
        suffix = list(self.path)
        if self.hardened_wildcard:
            raise DescriptorParseError("Hardened wildcard derivation is not supported")
        if self.wildcard:
            key = key.derive_path([index])
            suffix.append(index)

        if self.origin is not None:
            fingerprint = self.origin.fingerprint
            full_path = self.origin.path + tuple(suffix)
        else:
            fingerprint = self.hd_key.fingerprint
            full_path = tuple(suffix)

        return DerivedKey(key.get_public_key_bytes(), fingerprint, full_path, key.private_key)

    def to_string(self, index: int | None = None) -> str:
        result = f"[{self.origin.to_string()}]" if self.origin is not None else ""
        result += self.key_text

        if self.path:
            result += "/" + format_path(list(self.path), prefix="")
        if self.wildcard:
            marker = "'" if self.hardened_wildcard else ""
            result += f"/{index}{marker}" if index is not None else f"/*{marker}"
        return result


@dataclass(frozen=True)
class DerivedScript:
    """Concrete output script for a descriptor at one index."""

    index: int
    script_pubkey: bytes
    address: str
    keys: tuple[DerivedKey, ...]
    redeem_script: bytes | None = None
    witness_script: bytes | None = None


@dataclass(frozen=True)
class Descriptor:
    """Parsed output descriptor. Immutable."""

    script_type: ScriptType
    keys: tuple[KeyExpression, ...]
    network: str = "testnet"
    threshold: int | None = None
    sorted_keys: bool = False

    @classmethod
    def parse(cls, text: str, network: str = "testnet") -> Descriptor:
        return parse_descriptor(text, network)

    @property
    def is_range(self) -> bool:
        return any(key.wildcard for key in self.keys)

    @property
    def is_segwit(self) -> bool:
        return self.script_type.is_segwit

    @property
    def has_private_keys(self) -> bool:
        return any(key.is_private for key in self.keys)

    def public(self) -> Descriptor:
        """Same descriptor with every private key replaced by its public key."""
        if not self.has_private_keys:
            return self
        keys = []
        for key in self.keys:
            if key.is_private:
                keys.append(_neuter_key(key))
            else:
                keys.append(key)
        return replace(self, keys=tuple(keys))

    def derive(self, index: int) -> DerivedScript:
        """
        Derive the concrete script at index.

        Deterministic and side-effect free. Non-range descriptors ignore index.
        """
        if not 0 <= index < HARDENED_OFFSET:
            raise ValueError(f"Derivation index out of range: {index}")

        derived = tuple(key.derive(index) for key in self.keys)
        redeem_script = None
        witness_script = None

        if self.script_type == ScriptType.PKH:
            script_pubkey = p2pkh_script(hash160(derived[0].pubkey))
        elif self.script_type == ScriptType.WPKH:
            script_pubkey = p2wpkh_script(hash160(derived[0].pubkey))
        elif self.script_type == ScriptType.SH_WPKH:
            redeem_script = p2wpkh_script(hash160(derived[0].pubkey))
            script_pubkey = p2sh_wrap(redeem_script)
        else:
            multisig = self._multisig_script(derived)
            if self.script_type == ScriptType.SH:
                redeem_script = multisig
                script_pubkey = p2sh_wrap(redeem_script)
            elif self.script_type == ScriptType.WSH:
                witness_script = multisig
                script_pubkey = p2wsh_script(witness_script)
            else:
                witness_script = multisig
                redeem_script = p2wsh_script(witness_script)
                script_pubkey = p2sh_wrap(redeem_script)

        return DerivedScript(
            index=index,
            script_pubkey=script_pubkey,
            address=script_to_address(script_pubkey, self.network),
            keys=derived,
            redeem_script=redeem_script,
            witness_script=witness_script,
        )

    def _multisig_script(self, derived: tuple[DerivedKey, ...]) -> bytes:
        assert self.threshold is not None
        pubkeys = [key.pubkey for key in derived]
        if self.sorted_keys:
            pubkeys.sort()
        return multisig_script(self.threshold, pubkeys)

    def _body(self, index: int | None = None) -> str:
        keys = [key.to_string(index) for key in self.keys]

        if not self.script_type.is_multisig:
            inner = f"{self.script_type.value.split('-')[-1]}({keys[0]})"
            return f"sh({inner})" if self.script_type == ScriptType.SH_WPKH else inner

        name = "sortedmulti" if self.sorted_keys else "multi"
        inner = f"{name}({self.threshold},{','.join(keys)})"
        if self.script_type == ScriptType.SH:
            return f"sh({inner})"
        if self.script_type == ScriptType.WSH:
            return f"wsh({inner})"
        return f"sh(wsh({inner}))"

    def to_string(self, public: bool = False) -> str:
        """Canonical descriptor string with checksum."""
        source = self.public() if public else self
        return add_checksum(source._body())

    def derived_string(self, index: int, public: bool = True) -> str:
        """Descriptor with the wildcard replaced by index (for signer display)."""
        if not 0 <= index < HARDENED_OFFSET:
            raise ValueError(f"Derivation index out of range: {index}")
        source = self.public() if public else self
        return add_checksum(source._body(index=index))

    def __str__(self) -> str:
        return self.to_string(public=True)

    def dust_threshold(self) -> int:
        """Smallest non-dust value for outputs paying to this descriptor."""
        return dust_threshold(self.derive(0).script_pubkey)

    def max_satisfaction_weight(self) -> int:
        """
        Worst-case weight of a full input spending an output of this descriptor.

        Counts outpoint, scriptSig and sequence at 4 WU per byte and the
        witness stack (including its item count) at 1 WU per byte. Legacy
        inputs include one byte for the empty witness of a segwit transaction.
        """
        sig_push = 1 + MAX_SIGNATURE_SIZE
        key_push = 1 + COMPRESSED_PUBKEY_SIZE

        if self.script_type == ScriptType.PKH:
            script_sig_len = sig_push + key_push
            witness_len = 1
        elif self.script_type == ScriptType.WPKH:
            script_sig_len = 0
            witness_len = 1 + sig_push + key_push
        elif self.script_type == ScriptType.SH_WPKH:
            script_sig_len = 1 + 22
            witness_len = 1 + sig_push + key_push
        else:
            assert self.threshold is not None
            dummy_keys = [b"\x02" + b"\x00" * 32] * len(self.keys)
            multisig = multisig_script(self.threshold, dummy_keys)
            # OP_0 dummy element for the CHECKMULTISIG off-by-one
            sigs_len = 1 + self.threshold * sig_push

            if self.script_type == ScriptType.SH:
                script_sig_len = sigs_len + len(push_data(multisig))
                witness_len = 1
            else:
                items = self.threshold + 2
                witness_len = (
                    len(encode_varint(items))
                    + sigs_len
                    + len(encode_varint(len(multisig)))
                    + len(multisig)
                )
                script_sig_len = 1 + 34 if self.script_type == ScriptType.SH_WSH else 0

        non_witness = _INPUT_BASE_SIZE + len(encode_varint(script_sig_len)) + script_sig_len
        return non_witness * WITNESS_SCALE_FACTOR + witness_len


def _neuter_key(key: KeyExpression) -> KeyExpression:
    """Public version of a private key expression."""
    assert key.hd_key is not None and key.key_network is not None

    if not any(i >= HARDENED_OFFSET for i in key.path):
        neutered = key.hd_key.neuter()
        return replace(key, key_text=neutered.to_base58(key.key_network), hd_key=neutered)

    # Move the hardened part of the path into the origin and neuter below it
    last_hardened = max(i for i, step in enumerate(key.path) if step >= HARDENED_OFFSET)
    hardened_steps = key.path[: last_hardened + 1]
    derived = key.hd_key.derive_path(list(hardened_steps)).neuter()
    if key.origin is not None:
        origin = KeyOrigin(key.origin.fingerprint, key.origin.path + hardened_steps)
    else:
        origin = KeyOrigin(key.hd_key.fingerprint, hardened_steps)

    return replace(
        key,
        origin=origin,
        key_text=derived.to_base58(key.key_network),
        hd_key=derived,
        path=key.path[last_hardened + 1 :],
    )


def parse_descriptor(text: str, network: str = "testnet") -> Descriptor:
    """
    Parse a descriptor string.

    Raises:
        DescriptorParseError: on malformed syntax, unsupported script type,
            invalid keys, keys for the wrong network or checksum mismatch
    """
    text = text.strip()
    network = str(network.value if isinstance(network, Enum) else network)

    if "#" in text:
        body, checksum = text.rsplit("#", 1)
        if len(checksum) != CHECKSUM_LENGTH:
            raise DescriptorParseError(f"Invalid checksum length: {checksum!r}")
        expected = descriptor_checksum(body)
        if checksum != expected:
            raise DescriptorParseError(
                f"Checksum mismatch: got {checksum}, expected {expected}"
            )
    else:
        body = text
        # Validates the character set
        descriptor_checksum(body)

    name, inner = _split_call(body)

    if name == "pkh":
        return Descriptor(ScriptType.PKH, (_parse_key(inner, network),), network)
    if name == "wpkh":
        return Descriptor(ScriptType.WPKH, (_parse_key(inner, network),), network)
    if name == "sh":
        inner_name, inner_args = _split_call(inner)
        if inner_name == "wpkh":
            return Descriptor(ScriptType.SH_WPKH, (_parse_key(inner_args, network),), network)
        if inner_name == "wsh":
            return _parse_multisig(ScriptType.SH_WSH, *_split_call(inner_args), network)
        return _parse_multisig(ScriptType.SH, inner_name, inner_args, network)
    if name == "wsh":
        return _parse_multisig(ScriptType.WSH, *_split_call(inner), network)

    raise DescriptorParseError(f"Unsupported script type: {name}")


def _split_call(expr: str) -> tuple[str, str]:
    """Split "name(args)" into (name, args), checking parentheses balance."""
    open_pos = expr.find("(")
    if open_pos <= 0 or not expr.endswith(")"):
        raise DescriptorParseError(f"Malformed descriptor expression: {expr!r}")

    name = expr[:open_pos]
    inner = expr[open_pos + 1 : -1]

    depth = 0
    for ch in inner:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise DescriptorParseError(f"Unbalanced parentheses in {expr!r}")
    if depth != 0:
        raise DescriptorParseError(f"Unbalanced parentheses in {expr!r}")

    return name, inner


def _parse_multisig(script_type: ScriptType, name: str, args: str, network: str) -> Descriptor:
    if name not in ("multi", "sortedmulti"):
        raise DescriptorParseError(f"Unsupported script type inside {script_type.value}: {name}")
    if "(" in args:
        raise DescriptorParseError(f"Unexpected nested expression in {name}")

    parts = args.split(",")
    if len(parts) < 2:
        raise DescriptorParseError(f"{name} needs a threshold and at least one key")
    if not parts[0].isdigit():
        raise DescriptorParseError(f"Invalid multisig threshold: {parts[0]!r}")

    threshold = int(parts[0])
    keys = tuple(_parse_key(part, network) for part in parts[1:])

    max_keys = MAX_MULTISIG_KEYS_P2SH if script_type == ScriptType.SH else MAX_MULTISIG_KEYS_WSH
    if len(keys) > max_keys:
        raise DescriptorParseError(f"Too many keys for {script_type.value}: {len(keys)}")
    if not 1 <= threshold <= len(keys):
        raise DescriptorParseError(f"Invalid multisig threshold {threshold} of {len(keys)}")

    return Descriptor(
        script_type,
        keys,
        network,
        threshold=threshold,
        sorted_keys=name == "sortedmulti",
    )


def _parse_key(text: str, network: str) -> KeyExpression:
    if not text:
        raise DescriptorParseError("Missing key expression")

    origin = None
    if text.startswith("["):
        close = text.find("]")
        if close == -1:
            raise DescriptorParseError(f"Unterminated key origin: {text!r}")
        origin = _parse_origin(text[1:close])
        text = text[close + 1 :]

    parts = text.split("/")
    key_text, path_parts = parts[0], parts[1:]

    if len(key_text) in (66, 130) and all(c in "0123456789abcdefABCDEF" for c in key_text):
        return _parse_raw_pubkey(key_text, path_parts, origin)

    try:
        hd_key, key_network = HDKey.from_base58(key_text)
    except ValueError as e:
        raise DescriptorParseError(f"Invalid key {key_text[:12]}...: {e}") from e

    if (key_network == "mainnet") != (network == "mainnet"):
        raise DescriptorParseError(f"Key {key_text[:12]}... is not valid for {network}")

    wildcard = False
    hardened_wildcard = False
    if path_parts and path_parts[-1] in ("*", "*'", "*h", "*H"):
        wildcard = True
        hardened_wildcard = path_parts[-1] != "*"
        path_parts = path_parts[:-1]

    if any("*" in part for part in path_parts):
        raise DescriptorParseError("Wildcard is only allowed as the last path element")

    try:
        path = tuple(parse_path("/".join(path_parts))) if path_parts else ()
    except ValueError as e:
        raise DescriptorParseError(f"Invalid derivation path: {e}") from e

    if len(path) != len(path_parts):
        raise DescriptorParseError(f"Empty derivation path element in {text!r}")

    if any(i >= HARDENED_OFFSET for i in path) and not hd_key.is_private:
        raise DescriptorParseError("Hardened derivation requires a private extended key")

    try:
        return KeyExpression(
            origin=origin,
            key_text=key_text,
            hd_key=hd_key,
            key_network=key_network,
            path=path,
            wildcard=wildcard,
            hardened_wildcard=hardened_wildcard,
        )
    except ValueError as e:
        raise DescriptorParseError(f"Cannot derive key {key_text[:12]}...: {e}") from e


def _parse_raw_pubkey(
    key_text: str, path_parts: list[str], origin: KeyOrigin | None
) -> KeyExpression:
    if path_parts:
        raise DescriptorParseError("Derivation path not allowed after a raw public key")
    if len(key_text) == 130:
        raise DescriptorParseError("Uncompressed public keys are not supported")

    pubkey = bytes.fromhex(key_text)
    try:
        PublicKey(pubkey)
    except ValueError as e:
        raise DescriptorParseError(f"Invalid public key {key_text}: {e}") from e

    return KeyExpression(origin=origin, key_text=key_text.lower(), pubkey=pubkey)


def _parse_origin(text: str) -> KeyOrigin:
    parts = text.split("/")
    fingerprint_hex = parts[0]
    if len(fingerprint_hex) != 8:
        raise DescriptorParseError(f"Invalid key origin fingerprint: {fingerprint_hex!r}")
    try:
        fingerprint = bytes.fromhex(fingerprint_hex)
        path = tuple(parse_path("/".join(parts[1:])))
    except ValueError as e:
        raise DescriptorParseError(f"Invalid key origin [{text}]: {e}") from e

    if len(path) != len(parts) - 1:
        raise DescriptorParseError(f"Empty path element in key origin [{text}]")
    return KeyOrigin(fingerprint, path)
