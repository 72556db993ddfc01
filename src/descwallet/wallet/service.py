"""
Ephemeral descriptor wallet session.
"""

from __future__ import annotations

import os
from enum import Enum
from types import TracebackType

from loguru import logger

from descwallet.backends.base import ChainSource
from descwallet.constants import DEFAULT_GAP_LIMIT
from descwallet.errors import ArgumentError
from descwallet.wallet.balance import get_balance, list_unspent
from descwallet.wallet.broadcast import broadcast
from descwallet.wallet.builder import TxBuilder
from descwallet.wallet.descriptor import DerivedScript, Descriptor
from descwallet.wallet.models import UTXO, Balance, KeychainKind
from descwallet.wallet.psbt import PSBT, finalize
from descwallet.wallet.signing import sign_psbt
from descwallet.wallet.sync import sync_wallet
from descwallet.wallet.transaction import Transaction, TxOut
from descwallet.wallet.utxo_index import UtxoIndex

# Environment variable to enable sensitive logging (descriptors, addresses, etc.)
# WARNING: Enabling this will log wallet descriptors and addresses to the log
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class WalletSession:
    """
    Wallet built from a descriptor and an optional change descriptor.

    Holds everything one CLI invocation needs: the parsed descriptors, the
    chain source, the synced UTXO set, the next unused index of each
    keychain and a cache of derived scripts. Nothing is persisted.

    Without a change descriptor, change goes to the external keychain.
    """

    def __init__(
        self,
        descriptor: Descriptor | str,
        change_descriptor: Descriptor | str | None = None,
        backend: ChainSource | None = None,
        network: str = "testnet",
        gap_limit: int = DEFAULT_GAP_LIMIT,
    ):
        self.network = network.value if isinstance(network, Enum) else network
        self.descriptor = self._parse(descriptor)
        self.change_descriptor = (
            self._parse(change_descriptor) if change_descriptor is not None else None
        )
        self._backend = backend
        self.gap_limit = gap_limit

        self.utxos = UtxoIndex()
        self.next_index: dict[KeychainKind, int] = {kc: 0 for kc in self.keychains}
        self._scripts: dict[tuple[KeychainKind, int], DerivedScript] = {}
        self._by_script: dict[bytes, tuple[KeychainKind, DerivedScript]] = {}

        logger.debug(
            f"Initialized wallet on {self.network} "
            f"({'with' if self.change_descriptor else 'without'} change descriptor)"
        )
        if SENSITIVE_LOGGING:
            logger.debug(f"Descriptor: {self.descriptor}")

    def _parse(self, descriptor: Descriptor | str) -> Descriptor:
        if isinstance(descriptor, Descriptor):
            if descriptor.network != self.network:
                raise ArgumentError(
                    f"Descriptor is for {descriptor.network}, wallet is on {self.network}"
                )
            return descriptor
        return Descriptor.parse(descriptor, self.network)

    @property
    def backend(self) -> ChainSource:
        if self._backend is None:
            raise ArgumentError("Wallet has no chain source configured")
        return self._backend

    @property
    def keychains(self) -> list[KeychainKind]:
        if self.change_descriptor is None:
            return [KeychainKind.EXTERNAL]
        return [KeychainKind.EXTERNAL, KeychainKind.INTERNAL]

    @property
    def change_keychain(self) -> KeychainKind:
        return KeychainKind.INTERNAL if self.change_descriptor else KeychainKind.EXTERNAL

    def descriptor_for(self, keychain: KeychainKind) -> Descriptor:
        if keychain == KeychainKind.INTERNAL and self.change_descriptor is not None:
            return self.change_descriptor
        return self.descriptor

    # Addresses

    def derive(self, keychain: KeychainKind, index: int) -> DerivedScript:
        """Derived script at index of keychain, cached for script lookups."""
        cached = self._scripts.get((keychain, index))
        if cached is not None:
            return cached

        derived = self.descriptor_for(keychain).derive(index)
        self._scripts[(keychain, index)] = derived
        self._by_script.setdefault(derived.script_pubkey, (keychain, derived))
        return derived

    def get_address(
        self, index: int, keychain: KeychainKind = KeychainKind.EXTERNAL
    ) -> DerivedScript:
        """Peek at the address at index without changing the next unused index."""
        return self.derive(keychain, index)

    def get_new_address(self, keychain: KeychainKind = KeychainKind.EXTERNAL) -> DerivedScript:
        """Hand out the next unused address of keychain and advance past it."""
        keychain = keychain if keychain in self.next_index else KeychainKind.EXTERNAL
        if not self.descriptor_for(keychain).is_range:
            return self.derive(keychain, 0)

        index = self.next_index[keychain]
        self.next_index[keychain] = index + 1
        derived = self.derive(keychain, index)
        if SENSITIVE_LOGGING:
            logger.debug(f"Revealed {keychain.value} address {index}: {derived.address}")
        return derived

    def reveal_change_address(self) -> tuple[KeychainKind, DerivedScript]:
        keychain = self.change_keychain
        return keychain, self.get_new_address(keychain)

    def mark_used(self, keychain: KeychainKind, last_used: int) -> None:
        """Never hand out index last_used or anything before it as new again."""
        if keychain in self.next_index:
            self.next_index[keychain] = max(self.next_index[keychain], last_used + 1)

    def lookup_script(self, script_pubkey: bytes) -> DerivedScript | None:
        found = self._lookup(script_pubkey)
        return found[1] if found else None

    def keychain_of(self, script_pubkey: bytes) -> KeychainKind | None:
        found = self._lookup(script_pubkey)
        return found[0] if found else None

    def is_mine(self, script_pubkey: bytes) -> bool:
        return self._lookup(script_pubkey) is not None

    def _lookup(self, script_pubkey: bytes) -> tuple[KeychainKind, DerivedScript] | None:
        found = self._by_script.get(script_pubkey)
        if found is not None:
            return found

        # Derive up to one gap past the next unused index before giving up
        for keychain in self.keychains:
            limit = self.next_index[keychain] + self.gap_limit
            if not self.descriptor_for(keychain).is_range:
                limit = 1
            for index in range(limit):
                self.derive(keychain, index)
        return self._by_script.get(script_pubkey)

    # Chain state

    async def sync(self) -> None:
        await sync_wallet(self)

    def get_balance(self) -> Balance:
        return get_balance(self.utxos)

    def list_unspent(self) -> list[UTXO]:
        return list_unspent(self.utxos)

    # Transactions

    def build_tx(self) -> TxBuilder:
        return TxBuilder(self)

    def update_psbt_input(self, psbt: PSBT, index: int) -> None:
        """
        Fill in what the wallet knows about input index.

        Adds the spent output (witness_utxo for segwit scripts, the parent
        transaction when cached), redeem and witness scripts and BIP32
        key origins. Existing fields are kept.
        """
        inp = psbt.inputs[index]
        if inp.is_finalized:
            return
        txin = psbt.tx.inputs[index]

        utxo = self.utxos.get(txin.txid, txin.vout)
        if utxo is not None:
            keychain_descriptor = self.descriptor_for(utxo.keychain)
            if inp.witness_utxo is None and keychain_descriptor.is_segwit:
                inp.witness_utxo = TxOut(utxo.value, utxo.script_pubkey)
            if inp.non_witness_utxo is None:
                parent = self.utxos.get_transaction(utxo.txid)
                if parent is not None:
                    inp.non_witness_utxo = parent
                elif not keychain_descriptor.is_segwit:
                    logger.warning(f"Parent transaction of {utxo.outpoint} is not available")

        spent = psbt.spent_output(index)
        if spent is None:
            return
        derived = self.lookup_script(spent.script_pubkey)
        if derived is None:
            return

        if inp.redeem_script is None and derived.redeem_script is not None:
            inp.redeem_script = derived.redeem_script
        if inp.witness_script is None and derived.witness_script is not None:
            inp.witness_script = derived.witness_script
        for key in derived.keys:
            inp.bip32_derivations.setdefault(key.pubkey, (key.fingerprint, key.path))

    def sign(self, psbt: PSBT) -> int:
        """Add signatures for every input the descriptors hold private keys for."""
        return sign_psbt(psbt, self)

    def finalize_psbt(self, psbt: PSBT) -> bool:
        return finalize(psbt, self)

    async def broadcast(self, tx: Transaction) -> str:
        return await broadcast(tx, self.backend)

    async def close(self) -> None:
        if self._backend is not None:
            await self._backend.close()

    async def __aenter__(self) -> WalletSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

