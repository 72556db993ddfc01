"""
descwallet CLI - balance, receive, send and broadcast from an output descriptor.

Every invocation builds a fresh wallet from the descriptor(s) on the command
line, syncs it against an Esplora server and exits. Nothing is stored.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from typing import Any

import typer
from loguru import logger
from pydantic import ValidationError

from descwallet.backends.esplora import EsploraBackend
from descwallet.config import Settings, get_settings
from descwallet.errors import ArgumentError, WalletError
from descwallet.wallet.descriptor import Descriptor
from descwallet.wallet.psbt import PSBT, extract_transaction
from descwallet.wallet.service import WalletSession

app = typer.Typer(
    name="descwallet",
    help="Ephemeral descriptor-based Bitcoin wallet",
    add_completion=False,
)


def setup_logging(level: str = "WARNING") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def fail(error: Exception) -> typer.Exit:
    """Report error on one line and return the exit to raise."""
    typer.echo(f"Error: {error}", err=True)
    return typer.Exit(1)


def load_settings(**overrides: object) -> Settings:
    try:
        settings = get_settings(**overrides)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise fail(ArgumentError(f"Invalid configuration: {details}"))
    setup_logging(settings.log_level)
    return settings


def open_wallet(
    settings: Settings, descriptor: str, change_descriptor: str | None = None
) -> WalletSession:
    """Parse the descriptors, then attach an Esplora backend."""
    network = settings.network.value
    parsed = Descriptor.parse(descriptor, network)
    parsed_change = Descriptor.parse(change_descriptor, network) if change_descriptor else None
    backend = EsploraBackend(
        settings.get_esplora_url(),
        timeout=settings.request_timeout,
        max_concurrent_requests=settings.max_concurrent_requests,
    )
    return WalletSession(
        parsed, parsed_change, backend=backend, network=network, gap_limit=settings.gap_limit
    )


def run(coro: Coroutine[Any, Any, None]) -> None:
    try:
        asyncio.run(coro)
    except WalletError as e:
        logger.debug(f"{type(e).__name__}: {e}")
        raise fail(e)


async def _sync(wallet: WalletSession) -> None:
    typer.echo("Syncing...")
    await wallet.sync()


# Common options

NetworkOption = typer.Option(
    None, "--network", "-n", help="mainnet | testnet | signet | regtest (default testnet)"
)
EsploraOption = typer.Option(None, "--esplora-url", help="Esplora API base URL")
GapLimitOption = typer.Option(
    None, "--gap-limit", help="Unused addresses scanned past the last used one"
)
LogLevelOption = typer.Option(None, "--log-level", "-l")


@app.command()
def balance(
    descriptor: str = typer.Argument(..., help="Output descriptor"),
    change: str = typer.Option(..., "--change", "-c", help="Change descriptor"),
    network: str | None = NetworkOption,
    esplora_url: str | None = EsploraOption,
    gap_limit: int | None = GapLimitOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Sync the wallet and print its balance and unspent outputs."""
    settings = load_settings(
        network=network, esplora_url=esplora_url, gap_limit=gap_limit, log_level=log_level
    )
    run(_balance(settings, descriptor, change))


async def _balance(settings: Settings, descriptor: str, change: str) -> None:
    async with open_wallet(settings, descriptor, change) as wallet:
        await _sync(wallet)
        bal = wallet.get_balance()
        typer.echo(f"{bal.total} sats")
        typer.echo(f"  confirmed:   {bal.confirmed} sats")
        typer.echo(f"  unconfirmed: {bal.unconfirmed} sats")
        for utxo in wallet.list_unspent():
            typer.echo(
                f"{utxo.outpoint} {utxo.value} sats "
                f"({utxo.confirmations} conf, {utxo.keychain.value} #{utxo.index})"
            )


@app.command()
def receive(
    descriptor: str = typer.Argument(..., help="Output descriptor"),
    index: int = typer.Option(..., "--index", "-i", min=0, max=2**31 - 1),
    network: str | None = NetworkOption,
    esplora_url: str | None = EsploraOption,
    gap_limit: int | None = GapLimitOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show the address at an index together with its descriptor."""
    settings = load_settings(
        network=network, esplora_url=esplora_url, gap_limit=gap_limit, log_level=log_level
    )
    run(_receive(settings, descriptor, index))


async def _receive(settings: Settings, descriptor: str, index: int) -> None:
    async with open_wallet(settings, descriptor) as wallet:
        await _sync(wallet)
        derived = wallet.get_address(index)
        typer.echo(f"underived descriptor: {wallet.descriptor}")
        typer.echo(f"derived descriptor: {wallet.descriptor.derived_string(derived.index)}")
        typer.echo(f"index: {derived.index}")
        typer.echo(f"address: {derived.address}")


@app.command()
def send(
    descriptor: str = typer.Argument(..., help="Output descriptor"),
    change: str = typer.Option(..., "--change", "-c", help="Change descriptor"),
    amount: int = typer.Option(..., "--amount", "-a", min=1, help="Amount in sats"),
    dest: str = typer.Option(..., "--dest", "-d", help="Destination address"),
    fee_rate: float | None = typer.Option(None, "--fee-rate", "-f", help="sat/vB"),
    no_rbf: bool = typer.Option(False, "--no-rbf", help="Do not signal replaceability"),
    network: str | None = NetworkOption,
    esplora_url: str | None = EsploraOption,
    gap_limit: int | None = GapLimitOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Build an unsigned PSBT paying amount to dest."""
    settings = load_settings(
        network=network,
        esplora_url=esplora_url,
        gap_limit=gap_limit,
        log_level=log_level,
        fee_rate=fee_rate,
        rbf=False if no_rbf else None,
    )
    run(_send(settings, descriptor, change, amount, dest))


async def _send(settings: Settings, descriptor: str, change: str, amount: int, dest: str) -> None:
    async with open_wallet(settings, descriptor, change) as wallet:
        await _sync(wallet)
        builder = (
            wallet.build_tx()
            .add_recipient_address(dest, amount)
            .fee_rate(settings.fee_rate)
            .include_output_redeem_witness_script()
        )
        if settings.rbf:
            builder.enable_rbf()
        psbt, details = builder.finish()
        typer.echo(str(details))
        typer.echo(psbt.to_base64())


@app.command()
def broadcast(
    descriptor: str = typer.Argument(..., help="Output descriptor"),
    psbt: str = typer.Option(..., "--psbt", "-p", help="Base64 encoded PSBT"),
    network: str | None = NetworkOption,
    esplora_url: str | None = EsploraOption,
    gap_limit: int | None = GapLimitOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Finalize a signed PSBT and broadcast the transaction."""
    settings = load_settings(
        network=network, esplora_url=esplora_url, gap_limit=gap_limit, log_level=log_level
    )
    # Decode before touching the network
    try:
        decoded = PSBT.from_base64(psbt)
    except WalletError as e:
        raise fail(e)
    run(_broadcast(settings, descriptor, decoded))


async def _broadcast(settings: Settings, descriptor: str, psbt: PSBT) -> None:
    async with open_wallet(settings, descriptor) as wallet:
        await _sync(wallet)
        if wallet.descriptor.has_private_keys:
            wallet.sign(psbt)
        wallet.finalize_psbt(psbt)
        tx = extract_transaction(psbt)
        txid = await wallet.broadcast(tx)
        typer.echo(txid)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
