"""
Wallet synchronization against a chain source.

Each keychain is scanned from index 0 in windows of ``gap_limit`` scripts.
All queries of a window run concurrently; results are then inspected in
index order and the scan stops once ``gap_limit`` consecutive scripts past
the last used one have no history. Nothing is written to the wallet until
every keychain has been scanned successfully.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from descwallet.backends.base import ChainSource, ChainUtxo, TxRef
from descwallet.errors import ChainSyncError, DecodeError, WalletError
from descwallet.wallet.descriptor import DerivedScript, Descriptor
from descwallet.wallet.models import UTXO, KeychainKind
from descwallet.wallet.transaction import Transaction

if TYPE_CHECKING:
    from descwallet.wallet.service import WalletSession


@dataclass
class KeychainScan:
    """Result of scanning one keychain."""

    keychain: KeychainKind
    utxos: list[UTXO] = field(default_factory=list)
    last_used: int = -1
    scanned: int = 0


async def _query_script(
    chain_source: ChainSource, script: DerivedScript
) -> tuple[list[TxRef], list[ChainUtxo]]:
    history, unspent = await asyncio.gather(
        chain_source.get_history(script.script_pubkey),
        chain_source.get_unspent(script.script_pubkey),
    )
    return history, unspent


async def scan_keychain(
    wallet: WalletSession,
    keychain: KeychainKind,
    chain_source: ChainSource,
    gap_limit: int,
    tip_height: int,
) -> KeychainScan:
    """Scan one keychain without touching wallet state beyond its script cache."""
    descriptor = wallet.descriptor_for(keychain)
    result = KeychainScan(keychain)

    window = gap_limit if descriptor.is_range else 1
    start = 0
    bound = window

    while start < bound:
        scripts = [wallet.derive(keychain, i) for i in range(start, start + window)]
        responses = await asyncio.gather(*(_query_script(chain_source, s) for s in scripts))

        for script, (history, unspent) in zip(scripts, responses):
            if history or unspent:
                result.last_used = script.index
            for entry in unspent:
                result.utxos.append(
                    UTXO(
                        txid=entry.txid,
                        vout=entry.vout,
                        value=entry.value,
                        script_pubkey=script.script_pubkey,
                        confirmations=entry.confirmations(tip_height),
                        index=script.index,
                        keychain=keychain,
                        height=entry.height,
                    )
                )

        start += window
        result.scanned = start
        if descriptor.is_range:
            bound = result.last_used + 1 + gap_limit

    logger.debug(
        f"Scanned {keychain.value} keychain: {result.scanned} scripts, "
        f"last used index {result.last_used}, {len(result.utxos)} UTXOs"
    )
    return result


async def _fetch_parents(
    chain_source: ChainSource, utxos: list[UTXO], descriptors: dict[KeychainKind, Descriptor]
) -> dict[str, Transaction]:
    """Parent transactions of UTXOs owned by non-segwit descriptors."""
    txids = sorted(
        {utxo.txid for utxo in utxos if not descriptors[utxo.keychain].is_segwit}
    )
    if not txids:
        return {}

    raw_txs = await asyncio.gather(*(chain_source.get_raw_transaction(t) for t in txids))
    parents = {}
    for txid, raw in zip(txids, raw_txs):
        tx = Transaction.parse(raw)
        if tx.txid != txid:
            raise ChainSyncError(f"Chain source returned transaction {tx.txid} for {txid}")
        parents[txid] = tx
    return parents


async def sync_wallet(
    wallet: WalletSession,
    chain_source: ChainSource | None = None,
    gap_limit: int | None = None,
) -> None:
    """
    Refresh the wallet's UTXO set and next unused indexes.

    Raises:
        ChainSyncError: if any chain source query fails; the wallet keeps
            its previous state
    """
    chain_source = chain_source or wallet.backend
    gap_limit = gap_limit or wallet.gap_limit
    if gap_limit < 1:
        raise ValueError(f"gap_limit must be at least 1, got {gap_limit}")

    logger.info("Syncing wallet...")
    try:
        tip_height = await chain_source.get_block_height()
        scans = []
        for keychain in wallet.keychains:
            scans.append(await scan_keychain(wallet, keychain, chain_source, gap_limit, tip_height))

        staged = [utxo for scan in scans for utxo in scan.utxos]
        descriptors = {k: wallet.descriptor_for(k) for k in wallet.keychains}
        parents = await _fetch_parents(chain_source, staged, descriptors)
    except ChainSyncError:
        raise
    except DecodeError as e:
        raise ChainSyncError(f"Chain source returned malformed data: {e}") from e
    except WalletError:
        raise
    except Exception as e:
        logger.error(f"Wallet sync failed: {type(e).__name__}: {e}")
        raise ChainSyncError(f"Chain source query failed: {e}") from e

    # Commit: only reached when every keychain scanned successfully
    wallet.utxos.replace(staged, parents)
    for scan in scans:
        wallet.mark_used(scan.keychain, scan.last_used)

    logger.info(f"Sync complete: {len(staged)} UTXOs at height {tip_height}")
