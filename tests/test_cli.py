"""
Tests for the descwallet CLI.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from conftest import FOREIGN_TESTNET_ADDRESS, FakeChainSource
from loguru import logger
from typer.testing import CliRunner

from descwallet.cli import app
from descwallet.wallet.descriptor import Descriptor
from descwallet.wallet.psbt import PSBT
from descwallet.wallet.transaction import Transaction

runner = CliRunner()


@pytest.fixture
def chain(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[FakeChainSource]:
    """Fake chain source handed to every wallet the CLI opens."""
    monkeypatch.chdir(tmp_path)
    for name in ("NETWORK", "ESPLORA_URL", "GAP_LIMIT", "FEE_RATE", "RBF", "LOG_LEVEL"):
        monkeypatch.delenv(f"DESCWALLET_{name}", raising=False)

    fake = FakeChainSource()
    created: list[str] = []

    def factory(url: str, **kwargs: object) -> FakeChainSource:
        created.append(url)
        return fake

    monkeypatch.setattr("descwallet.cli.EsploraBackend", factory)
    fake.created = created  # type: ignore[attr-defined]
    yield fake
    # The CLI logs to the runner's stderr, which is closed after each invoke
    logger.remove()


def script_at(descriptor: str, index: int) -> bytes:
    return Descriptor.parse(descriptor).derive(index).script_pubkey


class TestBalance:
    """Tests for the balance command."""

    def test_prints_balance_and_utxos(
        self, chain: FakeChainSource, wpkh_descriptor: str, wpkh_change_descriptor: str
    ) -> None:
        txid = chain.fund(script_at(wpkh_descriptor, 0), 10_000, height=799_000)
        chain.fund(script_at(wpkh_change_descriptor, 0), 5_000)

        result = runner.invoke(
            app, ["balance", wpkh_descriptor, "--change", wpkh_change_descriptor]
        )

        assert result.exit_code == 0, result.output
        assert "Syncing..." in result.output
        assert "15000 sats" in result.output
        assert "confirmed:   10000 sats" in result.output
        assert "unconfirmed: 5000 sats" in result.output
        assert f"{txid}:0 10000 sats (1001 conf, external #0)" in result.output
        assert chain.closed

    def test_change_is_required(self, chain: FakeChainSource, wpkh_descriptor: str) -> None:
        result = runner.invoke(app, ["balance", wpkh_descriptor])
        assert result.exit_code != 0
        assert chain.total_calls == 0

    def test_invalid_descriptor(self, chain: FakeChainSource) -> None:
        result = runner.invoke(app, ["balance", "wpkh(nonsense)", "--change", "wpkh(x)"])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert chain.created == []  # type: ignore[attr-defined]

    def test_sync_failure(
        self, chain: FakeChainSource, wpkh_descriptor: str, wpkh_change_descriptor: str
    ) -> None:
        chain.fail_on.add("get_history")
        result = runner.invoke(
            app, ["balance", wpkh_descriptor, "--change", wpkh_change_descriptor]
        )
        assert result.exit_code == 1
        assert "Error: Chain source query failed" in result.output

    def test_invalid_network(
        self, chain: FakeChainSource, wpkh_descriptor: str, wpkh_change_descriptor: str
    ) -> None:
        result = runner.invoke(
            app,
            ["balance", wpkh_descriptor, "--change", wpkh_change_descriptor, "-n", "dogecoin"],
        )
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestReceive:
    """Tests for the receive command."""

    def test_prints_address_at_index(self, chain: FakeChainSource, wpkh_descriptor: str) -> None:
        result = runner.invoke(app, ["receive", wpkh_descriptor, "--index", "3"])

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        expected = Descriptor.parse(wpkh_descriptor).derive(3).address
        assert "index: 3" in lines
        assert f"address: {expected}" in lines
        underived = next(line for line in lines if line.startswith("underived descriptor: "))
        derived = next(line for line in lines if line.startswith("derived descriptor: "))
        assert "/0/*)" in underived
        assert "/0/3)" in derived

    def test_negative_index(self, chain: FakeChainSource, wpkh_descriptor: str) -> None:
        result = runner.invoke(app, ["receive", wpkh_descriptor, "--index", "-1"])
        assert result.exit_code != 0


class TestSend:
    """Tests for the send command."""

    def test_prints_psbt(
        self, chain: FakeChainSource, wpkh_descriptor: str, wpkh_change_descriptor: str
    ) -> None:
        chain.fund(script_at(wpkh_descriptor, 0), 10_000, height=799_000)

        result = runner.invoke(
            app,
            [
                "send",
                wpkh_descriptor,
                "--change",
                wpkh_change_descriptor,
                "--amount",
                "3000",
                "--dest",
                FOREIGN_TESTNET_ADDRESS,
            ],
        )

        assert result.exit_code == 0, result.output
        psbt = PSBT.from_base64(result.output.strip().splitlines()[-1])
        assert [out.value for out in psbt.tx.outputs] == [3_000, 6_859]
        assert psbt.tx.inputs[0].sequence == 0xFFFFFFFD
        assert psbt.outputs[1].bip32_derivations
        assert "fee:      141 sats" in result.output

    def test_insufficient_funds(
        self, chain: FakeChainSource, wpkh_descriptor: str, wpkh_change_descriptor: str
    ) -> None:
        chain.fund(script_at(wpkh_descriptor, 0), 1_000, height=799_000)

        result = runner.invoke(
            app,
            [
                "send",
                wpkh_descriptor,
                "-c",
                wpkh_change_descriptor,
                "-a",
                "3000",
                "-d",
                FOREIGN_TESTNET_ADDRESS,
                "--no-rbf",
            ],
        )

        assert result.exit_code == 1
        assert "short by 2110 sats" in result.output

    def test_invalid_destination(
        self, chain: FakeChainSource, wpkh_descriptor: str, wpkh_change_descriptor: str
    ) -> None:
        result = runner.invoke(
            app,
            ["send", wpkh_descriptor, "-c", wpkh_change_descriptor, "-a", "3000", "-d", "nope"],
        )
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestBroadcast:
    """Tests for the broadcast command."""

    def test_malformed_psbt_makes_no_network_call(
        self, chain: FakeChainSource, wpkh_descriptor: str
    ) -> None:
        result = runner.invoke(app, ["broadcast", wpkh_descriptor, "--psbt", "bm90IGEgcHNidA=="])

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert chain.created == []  # type: ignore[attr-defined]
        assert chain.total_calls == 0

    def test_unsigned_psbt_with_watch_only_descriptor(
        self, chain: FakeChainSource, wpkh_descriptor: str, wpkh_change_descriptor: str
    ) -> None:
        chain.fund(script_at(wpkh_descriptor, 0), 10_000, height=799_000)
        sent = runner.invoke(
            app,
            [
                "send",
                wpkh_descriptor,
                "-c",
                wpkh_change_descriptor,
                "-a",
                "3000",
                "-d",
                FOREIGN_TESTNET_ADDRESS,
            ],
        )
        psbt_text = sent.output.strip().splitlines()[-1]

        result = runner.invoke(app, ["broadcast", wpkh_descriptor, "--psbt", psbt_text])

        assert result.exit_code == 1
        assert "not finalized" in result.output
        assert chain.broadcasted == []

    def test_sign_and_broadcast(
        self,
        chain: FakeChainSource,
        wpkh_private_descriptor: str,
        wpkh_private_change_descriptor: str,
    ) -> None:
        chain.fund(script_at(wpkh_private_descriptor, 0), 10_000, height=799_000)
        sent = runner.invoke(
            app,
            [
                "send",
                wpkh_private_descriptor,
                "-c",
                wpkh_private_change_descriptor,
                "-a",
                "3000",
                "-d",
                FOREIGN_TESTNET_ADDRESS,
            ],
        )
        assert sent.exit_code == 0, sent.output
        psbt_text = sent.output.strip().splitlines()[-1]

        result = runner.invoke(app, ["broadcast", wpkh_private_descriptor, "--psbt", psbt_text])

        assert result.exit_code == 0, result.output
        assert len(chain.broadcasted) == 1
        txid = Transaction.parse(chain.broadcasted[0]).txid
        assert result.output.strip().splitlines()[-1] == txid

    def test_rejected_broadcast(
        self,
        chain: FakeChainSource,
        wpkh_private_descriptor: str,
        wpkh_private_change_descriptor: str,
    ) -> None:
        chain.fund(script_at(wpkh_private_descriptor, 0), 10_000, height=799_000)
        sent = runner.invoke(
            app,
            [
                "send",
                wpkh_private_descriptor,
                "-c",
                wpkh_private_change_descriptor,
                "-a",
                "3000",
                "-d",
                FOREIGN_TESTNET_ADDRESS,
            ],
        )
        chain.broadcast_error = "txn-mempool-conflict"

        result = runner.invoke(
            app,
            ["broadcast", wpkh_private_descriptor, "--psbt", sent.output.strip().splitlines()[-1]],
        )

        assert result.exit_code == 1
        assert "Error: Broadcast failed: txn-mempool-conflict" in result.output
