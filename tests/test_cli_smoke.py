from datetime import UTC, datetime

from click.testing import CliRunner

from copy_trading import __version__
from copy_trading.main import cli
from copy_trading.types import ScanResult


def test_cli_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_scan_smoke(monkeypatch: object) -> None:
    seen = {}

    async def _fake_scan_once(settings: object, config: object) -> ScanResult:
        seen["symbols"] = config.symbols
        seen["trader_id"] = config.trader_id
        return ScanResult(
            timestamp=datetime.now(UTC),
            symbols_scanned=2,
            signals_generated=1,
            errors=["ETHUSDT: unknown trading pair: ETHUSDT"],
            signals=[
                {"symbol": "BTCUSDT", "signal_type": "BUY", "price": 50000.0, "confidence": 60.0}
            ],
            elapsed_ms=12.0,
        )

    monkeypatch.setattr("copy_trading.main._scan_once", _fake_scan_once)
    runner = CliRunner()
    result = runner.invoke(cli, ["scan", "--symbols", "btcusdt, ethusdt", "--trader-id", "trader-1"])

    assert result.exit_code == 0
    assert seen == {"symbols": ["BTCUSDT", "ETHUSDT"], "trader_id": "trader-1"}
    assert "generated 1 signals" in result.output
    assert "[ERROR] ETHUSDT" in result.output


def test_cli_status_smoke() -> None:
    result = CliRunner().invoke(cli, ["status"])
    assert result.exit_code == 0
    assert "[Risk Parameters]" in result.output


def test_cli_reconcile_smoke(monkeypatch: object) -> None:
    async def _fake_reconcile(settings: object, user_id: str) -> list:
        assert user_id == "alice"
        return []

    monkeypatch.setattr("copy_trading.main._reconcile", _fake_reconcile)
    result = CliRunner().invoke(cli, ["reconcile", "--user-id", "alice"])

    assert result.exit_code == 0
    assert "Settled 0 pending orders" in result.output
