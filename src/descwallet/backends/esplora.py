"""
Esplora REST API chain source.

Works against Blockstream's and mempool.space's public Esplora instances or
a self-hosted electrs/esplora. Scripts are looked up by their Electrum-style
scripthash (SHA256 of the script, byte-reversed).
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from descwallet.backends.base import ChainSource, ChainUtxo, TxRef
from descwallet.wallet.script import sha256

# Timeout for regular API calls (seconds)
DEFAULT_REQUEST_TIMEOUT = 30.0

# Upper bound on in-flight requests; public instances rate limit aggressively
DEFAULT_MAX_CONCURRENT_REQUESTS = 8

DEFAULT_ESPLORA_URLS = {
    "mainnet": "https://blockstream.info/api",
    "testnet": "https://blockstream.info/testnet/api",
    "signet": "https://mempool.space/signet/api",
    "regtest": "http://127.0.0.1:3002",
}


def script_hash(script_pubkey: bytes) -> str:
    return sha256(script_pubkey)[::-1].hex()


class EsploraBackend(ChainSource):
    """Chain source backed by an Esplora HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Make an API call.

        Raises:
            ValueError: On non-2xx responses (the body is included in the message)
            httpx.HTTPError: On connection/timeout errors
        """
        async with self._semaphore:
            try:
                response = await self.client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                logger.error(f"Esplora request timed out: {method} {path} - {e}")
                raise
            except httpx.HTTPError as e:
                logger.error(f"Esplora request failed: {method} {path} - {e}")
                raise

        if response.is_error:
            body = response.text.strip()
            raise ValueError(f"Esplora error {response.status_code} on {path}: {body}")
        return response

    async def _get_json(self, path: str) -> Any:
        response = await self._request("GET", path)
        try:
            return response.json()
        except ValueError as e:
            raise ValueError(f"Invalid JSON from {path}: {e}") from e

    async def get_history(self, script_pubkey: bytes) -> list[TxRef]:
        # First page only: 50 mempool + 25 confirmed entries, enough to tell
        # whether a script was ever used
        data = await self._get_json(f"/scripthash/{script_hash(script_pubkey)}/txs")
        refs = []
        for entry in data:
            status = entry.get("status", {})
            height = status.get("block_height") if status.get("confirmed") else None
            refs.append(TxRef(txid=entry["txid"], height=height))
        return refs

    async def get_unspent(self, script_pubkey: bytes) -> list[ChainUtxo]:
        data = await self._get_json(f"/scripthash/{script_hash(script_pubkey)}/utxo")
        utxos = []
        for entry in data:
            status = entry.get("status", {})
            height = status.get("block_height") if status.get("confirmed") else None
            utxos.append(
                ChainUtxo(
                    txid=entry["txid"],
                    vout=int(entry["vout"]),
                    value=int(entry["value"]),
                    height=height,
                )
            )
        return utxos

    async def get_raw_transaction(self, txid: str) -> bytes:
        response = await self._request("GET", f"/tx/{txid}/hex")
        try:
            return bytes.fromhex(response.text.strip())
        except ValueError as e:
            raise ValueError(f"Invalid transaction hex for {txid}: {e}") from e

    async def broadcast(self, raw_tx: bytes) -> str:
        response = await self._request("POST", "/tx", content=raw_tx.hex())
        txid = response.text.strip()
        logger.info(f"Transaction relayed via Esplora: {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        """
        Fee estimate in sat/vB for the closest available confirmation target.

        Esplora returns a map of target (blocks) to rate; the smallest target
        not below target_blocks is used, the largest available otherwise.
        """
        data = await self._get_json("/fee-estimates")
        estimates = {int(k): float(v) for k, v in data.items()}
        if not estimates:
            raise ValueError("Esplora returned no fee estimates")

        eligible = sorted(t for t in estimates if t >= target_blocks)
        target = eligible[0] if eligible else max(estimates)
        return estimates[target]

    async def get_block_height(self) -> int:
        response = await self._request("GET", "/blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError as e:
            raise ValueError(f"Invalid block height response: {response.text!r}") from e

    async def close(self) -> None:
        await self.client.aclose()
