"""
PSBT signer for inputs owned by descriptors with private keys.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from coincurve import PrivateKey
from loguru import logger

from descwallet.constants import SIGHASH_ALL
from descwallet.errors import WalletError
from descwallet.wallet.psbt import PSBT

if TYPE_CHECKING:
    from descwallet.wallet.service import WalletSession


class TransactionSigningError(WalletError):
    pass


def sign_input(
    psbt: PSBT,
    index: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Sign one PSBT input and record the partial signature.

    Args:
        psbt: The PSBT to update
        index: Index of the input to sign
        private_key: coincurve PrivateKey instance
        sighash_type: Sighash type (default SIGHASH_ALL = 1)

    Returns:
        DER-encoded signature with sighash type byte appended
    """
    inp = psbt.inputs[index]
    if inp.is_finalized:
        raise TransactionSigningError(f"Input {index} is already finalized")
    if inp.sighash_type is not None and inp.sighash_type != sighash_type:
        raise TransactionSigningError(
            f"Input {index} requires sighash type {inp.sighash_type}, got {sighash_type}"
        )

    sighash = psbt.sighash(index, sighash_type)
    if sighash is None:
        raise TransactionSigningError(f"Input {index} lacks the data needed to sign it")

    # coincurve's sign() with hasher=None signs the precomputed digest
    signature = private_key.sign(sighash, hasher=None) + bytes([sighash_type])

    pubkey = private_key.public_key.format(compressed=True)
    inp.partial_sigs[pubkey] = signature
    return signature


def sign_psbt(psbt: PSBT, wallet: WalletSession) -> int:
    """
    Sign every input the wallet holds private keys for.

    Inputs are matched by the script they spend; the wallet fills missing
    PSBT metadata before signing. Returns the number of signatures added.
    """
    added = 0
    for index, inp in enumerate(psbt.inputs):
        if inp.is_finalized:
            continue
        wallet.update_psbt_input(psbt, index)
        spent = psbt.spent_output(index)
        if spent is None:
            continue

        derived = wallet.lookup_script(spent.script_pubkey)
        if derived is None:
            continue

        for key in derived.keys:
            if key.private_key is None or key.pubkey in inp.partial_sigs:
                continue
            sign_input(psbt, index, key.private_key, inp.sighash_type or SIGHASH_ALL)
            added += 1

    logger.debug(f"Added {added} signature(s) to PSBT")
    return added
