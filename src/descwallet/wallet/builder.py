"""
Transaction builder.

Builds an unsigned transaction paying the requested recipients from the
wallet's UTXOs and wraps it in a PSBT carrying everything a signer needs:
spent outputs, redeem/witness scripts and BIP32 key origins.
"""

from __future__ import annotations

import random
from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

from descwallet.constants import (
    DEFAULT_FEE_RATE,
    DEFAULT_TX_VERSION,
    SEQUENCE_ENABLE_LOCKTIME,
    SEQUENCE_FINAL,
    SEQUENCE_RBF,
)
from descwallet.errors import ArgumentError, InvalidRecipientError
from descwallet.wallet.address import address_to_script
from descwallet.wallet.coin_selection import CoinSelectionStrategy, WeightedUtxo, select_coins
from descwallet.wallet.fees import (
    change_dust_threshold,
    dust_threshold,
    fee_for_weight,
    is_dust,
    output_weight,
    tx_overhead_weight,
    weight_to_vsize,
)
from descwallet.wallet.models import UTXO, CoinSelection, Recipient, TransactionDetails
from descwallet.wallet.psbt import PSBT
from descwallet.wallet.script import encode_varint
from descwallet.wallet.transaction import Transaction, TxIn, TxOut

if TYPE_CHECKING:
    from descwallet.wallet.service import WalletSession


class TxOrdering(str, Enum):
    """Order of inputs and outputs in the built transaction."""

    UNTOUCHED = "untouched"  # selection order, recipients then change
    SHUFFLE = "shuffle"
    BIP69 = "bip69"  # lexicographic (BIP69)


def _parse_outpoint(outpoint: str | tuple[str, int]) -> str:
    if isinstance(outpoint, tuple):
        txid, vout = outpoint
        return f"{txid}:{vout}"
    txid, sep, vout = outpoint.rpartition(":")
    if not sep or not vout.isdigit() or len(txid) != 64:
        raise ArgumentError(f"Invalid outpoint: {outpoint!r}")
    return f"{txid.lower()}:{int(vout)}"


class TxBuilder:
    """
    Fluent transaction builder bound to a wallet session.

    Usage:
        psbt, details = (
            wallet.build_tx()
            .add_recipient(script_pubkey, 50_000)
            .fee_rate(2.0)
            .enable_rbf()
            .finish()
        )
    """

    def __init__(self, wallet: WalletSession):
        self.wallet = wallet
        self._recipients: list[Recipient] = []
        self._fee_rate: float = DEFAULT_FEE_RATE
        self._fee_absolute: int | None = None
        self._rbf_sequence: int | None = None
        self._strategy: CoinSelectionStrategy | None = None
        self._include_output_scripts = False
        self._ordering = TxOrdering.UNTOUCHED
        self._version = DEFAULT_TX_VERSION
        self._locktime = 0
        self._must_spend: list[str] = []
        self._unspendable: set[str] = set()
        self._min_confirmations = 0

    # Options

    def add_recipient(self, script_pubkey: bytes, amount: int) -> TxBuilder:
        self._recipients.append(Recipient(script_pubkey, amount))
        return self

    def add_recipient_address(self, address: str, amount: int) -> TxBuilder:
        """Add a recipient by address; raises InvalidRecipientError if it is invalid."""
        return self.add_recipient(address_to_script(address, self.wallet.network), amount)

    def fee_rate(self, sat_per_vb: float) -> TxBuilder:
        if sat_per_vb < 0:
            raise ArgumentError(f"Fee rate must not be negative: {sat_per_vb}")
        self._fee_rate = sat_per_vb
        self._fee_absolute = None
        return self

    def fee_absolute(self, sats: int) -> TxBuilder:
        if sats < 0:
            raise ArgumentError(f"Fee must not be negative: {sats}")
        self._fee_absolute = sats
        return self

    def enable_rbf(self) -> TxBuilder:
        return self.enable_rbf_with_sequence(SEQUENCE_RBF)

    def enable_rbf_with_sequence(self, sequence: int) -> TxBuilder:
        if not 0 <= sequence < SEQUENCE_ENABLE_LOCKTIME:
            raise ArgumentError(f"Sequence {sequence:#x} does not signal replaceability")
        self._rbf_sequence = sequence
        return self

    def coin_selection(self, strategy: CoinSelectionStrategy) -> TxBuilder:
        self._strategy = strategy
        return self

    def include_output_redeem_witness_script(self) -> TxBuilder:
        """Add redeem/witness scripts to our own outputs (some hardware signers need them)."""
        self._include_output_scripts = True
        return self

    def ordering(self, ordering: TxOrdering) -> TxBuilder:
        self._ordering = ordering
        return self

    def version(self, version: int) -> TxBuilder:
        if version < 1:
            raise ArgumentError(f"Invalid transaction version: {version}")
        self._version = version
        return self

    def nlocktime(self, locktime: int) -> TxBuilder:
        if not 0 <= locktime <= 0xFFFFFFFF:
            raise ArgumentError(f"Invalid locktime: {locktime}")
        self._locktime = locktime
        return self

    def add_utxos(self, outpoints: list[str | tuple[str, int]]) -> TxBuilder:
        """UTXOs that must be spent."""
        self._must_spend.extend(_parse_outpoint(o) for o in outpoints)
        return self

    def unspendable(self, outpoints: list[str | tuple[str, int]]) -> TxBuilder:
        """UTXOs that must not be spent."""
        self._unspendable.update(_parse_outpoint(o) for o in outpoints)
        return self

    def min_confirmations(self, confirmations: int) -> TxBuilder:
        self._min_confirmations = max(confirmations, 0)
        return self

    # Build

    def _weighted(self, utxo: UTXO) -> WeightedUtxo:
        descriptor = self.wallet.descriptor_for(utxo.keychain)
        return WeightedUtxo(utxo, descriptor.max_satisfaction_weight())

    def _candidates(self) -> tuple[list[WeightedUtxo], list[WeightedUtxo]]:
        """(optional, required) spendable UTXOs."""
        by_outpoint = {utxo.outpoint: utxo for utxo in self.wallet.utxos}

        required = []
        for outpoint in dict.fromkeys(self._must_spend):
            if outpoint in self._unspendable:
                raise ArgumentError(f"UTXO {outpoint} is both required and unspendable")
            utxo = by_outpoint.get(outpoint)
            if utxo is None:
                raise ArgumentError(f"UTXO {outpoint} is not in the wallet")
            required.append(self._weighted(utxo))

        required_set = {c.utxo.outpoint for c in required}
        optional = [
            self._weighted(utxo)
            for utxo in by_outpoint.values()
            if utxo.outpoint not in self._unspendable
            and utxo.outpoint not in required_set
            and utxo.confirmations >= self._min_confirmations
        ]
        return optional, required

    def _validate_recipients(self) -> None:
        if not self._recipients:
            raise InvalidRecipientError("No recipients")
        for recipient in self._recipients:
            if is_dust(recipient.amount, recipient.script_pubkey):
                raise InvalidRecipientError(
                    f"Amount {recipient.amount} sats is below the dust threshold "
                    f"of {dust_threshold(recipient.script_pubkey)} sats for this destination"
                )

    def _sequence(self) -> int:
        if self._rbf_sequence is not None:
            return self._rbf_sequence
        if self._locktime:
            return SEQUENCE_ENABLE_LOCKTIME
        return SEQUENCE_FINAL

    def _base_weight(self, num_inputs: int, segwit: bool) -> int:
        """Weight of the transaction without inputs or change."""
        return tx_overhead_weight(num_inputs, len(self._recipients) + 1, segwit) + sum(
            output_weight(r.script_pubkey) for r in self._recipients
        )

    def _select(
        self,
        optional: list[WeightedUtxo],
        required: list[WeightedUtxo],
        recipients_total: int,
        base_weight: int,
    ) -> CoinSelection:
        if self._fee_absolute is not None:
            return select_coins(
                optional,
                recipients_total + self._fee_absolute,
                0,
                self._strategy,
                base_weight=base_weight,
                required=required,
            )
        return select_coins(
            optional,
            recipients_total,
            self._fee_rate,
            self._strategy,
            base_weight=base_weight,
            required=required,
        )

    def finish(self) -> tuple[PSBT, TransactionDetails]:
        """
        Select coins and build the PSBT.

        Raises:
            InvalidRecipientError: no recipient, or an amount below dust
            InsufficientFundsError: the spendable UTXOs cannot pay for it
        """
        self._validate_recipients()
        wallet = self.wallet

        optional, required = self._candidates()
        recipients_total = sum(r.amount for r in self._recipients)
        segwit = any(wallet.descriptor_for(k).is_segwit for k in wallet.keychains)

        base_weight = self._base_weight(1, segwit)
        selection = self._select(optional, required, recipients_total, base_weight)
        if len(encode_varint(len(selection.utxos))) > 1:
            # Input count needs a wider varint, select again with the real overhead
            base_weight = self._base_weight(len(selection.utxos), segwit)
            selection = self._select(optional, required, recipients_total, base_weight)
            base_weight = self._base_weight(len(selection.utxos), segwit)

        weights = {c.utxo.outpoint: c.satisfaction_weight for c in optional + required}
        inputs_weight = sum(weights[u.outpoint] for u in selection.utxos)

        # Change candidate: next unused index of the change keychain, revealed only if used
        change_keychain = wallet.change_keychain
        change_descriptor = wallet.descriptor_for(change_keychain)
        change_index = wallet.next_index[change_keychain] if change_descriptor.is_range else 0
        change_script = wallet.derive(change_keychain, change_index)

        change_output_weight = output_weight(change_script.script_pubkey)
        if self._fee_absolute is not None:
            fee_with_change = self._fee_absolute
        else:
            fee_with_change = fee_for_weight(
                base_weight + inputs_weight + change_output_weight, self._fee_rate
            )
        change_value = selection.total_value - recipients_total - fee_with_change
        change_dust = change_dust_threshold(change_script.script_pubkey)

        outputs = [TxOut(r.amount, r.script_pubkey) for r in self._recipients]
        change_output: TxOut | None = None
        weight = base_weight + inputs_weight
        if change_value > change_dust:
            change_output = TxOut(change_value, change_script.script_pubkey)
            outputs.append(change_output)
            weight += change_output_weight
            fee = fee_with_change
            wallet.reveal_change_address()
            logger.debug(f"Adding change output of {change_value} sats")
        else:
            fee = selection.total_value - recipients_total
            logger.debug(
                f"Change of {max(change_value, 0)} sats is below dust ({change_dust}), "
                f"adding it to the fee"
            )

        sequence = self._sequence()
        inputs = [TxIn(u.txid, u.vout, sequence=sequence) for u in selection.utxos]
        self._apply_ordering(inputs, outputs)

        tx = Transaction(
            inputs=inputs, outputs=outputs, version=self._version, locktime=self._locktime
        )
        psbt = PSBT.from_transaction(tx)
        for index in range(len(inputs)):
            wallet.update_psbt_input(psbt, index)
        received = self._update_outputs(psbt)

        details = TransactionDetails(
            txid=tx.txid,
            sent=selection.total_value,
            received=received,
            fee=fee,
            vsize=weight_to_vsize(weight),
            change=change_output.value if change_output else 0,
            change_address=change_script.address if change_output else None,
        )
        logger.info(
            f"Built transaction {details.txid}: {len(inputs)} input(s), "
            f"{len(outputs)} output(s), fee {fee} sats"
        )
        return psbt, details

    def _apply_ordering(self, inputs: list[TxIn], outputs: list[TxOut]) -> None:
        if self._ordering == TxOrdering.SHUFFLE:
            random.shuffle(inputs)
            random.shuffle(outputs)
        elif self._ordering == TxOrdering.BIP69:
            inputs.sort(key=lambda i: (i.txid, i.vout))
            outputs.sort(key=lambda o: (o.value, o.script_pubkey))

    def _update_outputs(self, psbt: PSBT) -> int:
        """Add key origins (and optionally scripts) to outputs paying the wallet."""
        received = 0
        for txout, output in zip(psbt.tx.outputs, psbt.outputs):
            derived = self.wallet.lookup_script(txout.script_pubkey)
            if derived is None:
                continue
            received += txout.value
            for key in derived.keys:
                output.bip32_derivations[key.pubkey] = (key.fingerprint, key.path)
            if self._include_output_scripts:
                output.redeem_script = derived.redeem_script
                output.witness_script = derived.witness_script
        return received
