"""
Test configuration and shared fixtures.
"""

from __future__ import annotations

import hashlib

import pytest

from descwallet.backends.base import ChainSource, ChainUtxo, TxRef
from descwallet.wallet.bip32 import HDKey, mnemonic_to_seed
from descwallet.wallet.transaction import Transaction, TxIn, TxOut


class FakeChainSource(ChainSource):
    """
    In-memory chain source.

    Scripts are funded with ``fund``; every query is counted in ``calls`` and
    any method named in ``fail_on`` raises ConnectionError.
    """

    def __init__(self, height: int = 800_000):
        self.height = height
        self.utxos: dict[bytes, list[ChainUtxo]] = {}
        self.history: dict[bytes, list[TxRef]] = {}
        self.transactions: dict[str, bytes] = {}
        self.broadcasted: list[bytes] = []
        self.broadcast_error: str | None = None
        self.fail_on: set[str] = set()
        self.calls: dict[str, int] = {}
        self.closed = False

    def _call(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.fail_on:
            raise ConnectionError(f"{name} unavailable")

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def fund(
        self,
        script_pubkey: bytes,
        value: int,
        height: int | None = None,
        vout: int = 0,
        txid: str | None = None,
    ) -> str:
        """Create a parent transaction paying value to script_pubkey."""
        if txid is None:
            parent = Transaction(
                inputs=[TxIn(hashlib.sha256(script_pubkey + bytes([vout])).hexdigest(), 0)],
                outputs=[TxOut(1_000, b"\x6a")] * vout + [TxOut(value, script_pubkey)],
            )
            txid = parent.txid
            self.transactions[txid] = parent.serialize()
        self.utxos.setdefault(script_pubkey, []).append(ChainUtxo(txid, vout, value, height))
        self.history.setdefault(script_pubkey, []).append(TxRef(txid, height))
        return txid

    def mark_used(self, script_pubkey: bytes) -> None:
        """History without unspent outputs (funds already spent)."""
        self.history.setdefault(script_pubkey, []).append(TxRef("ab" * 32, self.height - 10))

    async def get_history(self, script_pubkey: bytes) -> list[TxRef]:
        self._call("get_history")
        return list(self.history.get(script_pubkey, []))

    async def get_unspent(self, script_pubkey: bytes) -> list[ChainUtxo]:
        self._call("get_unspent")
        return list(self.utxos.get(script_pubkey, []))

    async def get_raw_transaction(self, txid: str) -> bytes:
        self._call("get_raw_transaction")
        if txid not in self.transactions:
            raise ValueError(f"Unknown transaction {txid}")
        return self.transactions[txid]

    async def broadcast(self, raw_tx: bytes) -> str:
        self._call("broadcast")
        if self.broadcast_error is not None:
            raise ValueError(self.broadcast_error)
        self.broadcasted.append(raw_tx)
        return Transaction.parse(raw_tx).txid

    async def estimate_fee(self, target_blocks: int) -> float:
        self._call("estimate_fee")
        return 1.0

    async def get_block_height(self) -> int:
        self._call("get_block_height")
        return self.height

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def master_key(sample_mnemonic: str) -> HDKey:
    return HDKey.from_seed(mnemonic_to_seed(sample_mnemonic))


@pytest.fixture
def tprv(master_key: HDKey) -> str:
    """Testnet master private key of the test mnemonic."""
    return master_key.to_base58("testnet")


@pytest.fixture
def account_tpub(master_key: HDKey) -> str:
    """BIP84 testnet account xpub (m/84'/1'/0')."""
    return master_key.derive("m/84'/1'/0'").neuter().to_base58("testnet")


@pytest.fixture
def wpkh_descriptor(master_key: HDKey, account_tpub: str) -> str:
    fingerprint = master_key.fingerprint.hex()
    return f"wpkh([{fingerprint}/84h/1h/0h]{account_tpub}/0/*)"


@pytest.fixture
def wpkh_change_descriptor(master_key: HDKey, account_tpub: str) -> str:
    fingerprint = master_key.fingerprint.hex()
    return f"wpkh([{fingerprint}/84h/1h/0h]{account_tpub}/1/*)"


@pytest.fixture
def wpkh_private_descriptor(tprv: str) -> str:
    return f"wpkh({tprv}/84h/1h/0h/0/*)"


@pytest.fixture
def wpkh_private_change_descriptor(tprv: str) -> str:
    return f"wpkh({tprv}/84h/1h/0h/1/*)"


@pytest.fixture
def fake_chain() -> FakeChainSource:
    return FakeChainSource()


# BIP173 example P2WPKH address on testnet (not owned by the test wallet)
FOREIGN_TESTNET_ADDRESS = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"
