"""
Transaction broadcasting.
"""

from __future__ import annotations

from loguru import logger

from descwallet.backends.base import ChainSource
from descwallet.errors import BroadcastError
from descwallet.wallet.transaction import Transaction


async def broadcast(tx: Transaction, chain_source: ChainSource) -> str:
    """
    Submit a fully signed transaction. No retries.

    Returns:
        txid reported by the chain source

    Raises:
        BroadcastError: if the chain source rejects the transaction or fails
    """
    txid = tx.txid
    logger.info(f"Broadcasting transaction {txid} ({tx.vsize} vB)")
    try:
        reported = await chain_source.broadcast(tx.serialize())
    except BroadcastError:
        raise
    except Exception as e:
        logger.error(f"Broadcast of {txid} failed: {e}")
        raise BroadcastError(str(e) or type(e).__name__) from e

    if reported and reported != txid:
        logger.warning(f"Chain source reported txid {reported}, expected {txid}")
    return reported or txid
