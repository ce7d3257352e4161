from __future__ import annotations

import asyncio

import pytest

from conftest import FakeExchange
from copy_trading.app import App
from copy_trading.errors import InvalidScheduleError
from copy_trading.events.broadcast import SIGNAL_NEW, SIGNALS_TOPIC, symbol_topic
from copy_trading.scheduler.scanner import ScanJobConfig, parse_schedule
from copy_trading.schemas import CopyTradeConfig


@pytest.mark.parametrize(
    ("expression", "seconds"),
    [("30s", 30.0), ("15m", 900.0), ("1h", 3600.0), ("1d", 86400.0), ("2.5", 2.5), (10, 10.0)],
)
def test_parse_schedule(expression: str | int, seconds: float) -> None:
    assert parse_schedule(expression) == seconds


@pytest.mark.parametrize("expression", ["", "every hour", "0m", "-5", "*/15 * * * *"])
def test_parse_schedule_rejects(expression: str) -> None:
    with pytest.raises(InvalidScheduleError):
        parse_schedule(expression)


@pytest.mark.asyncio
async def test_invalid_job_is_not_created(app: App) -> None:
    with pytest.raises(InvalidScheduleError):
        app.scanner.start_job("bad", ScanJobConfig(symbols=["BTCUSDT"], schedule="soon"))
    with pytest.raises(InvalidScheduleError):
        app.scanner.start_job("empty", ScanJobConfig(symbols=[], schedule="1m"))

    assert app.scanner.status()["jobs"] == {}


@pytest.mark.asyncio
async def test_run_scan_publishes_in_symbol_order(app: App) -> None:
    feed = app.broadcaster.subscribe(SIGNALS_TOPIC)
    eth_feed = app.broadcaster.subscribe(symbol_topic("ETHUSDT"))

    result = await app.scanner.run_scan(
        ScanJobConfig(symbols=["ETHUSDT", "DOGEUSDT", "BTCUSDT"], trader_id="trader-1")
    )

    assert result.symbols_scanned == 3
    assert result.signals_generated == 2
    assert len(result.errors) == 1
    assert result.errors[0].startswith("DOGEUSDT:")
    assert [s["symbol"] for s in result.signals] == ["ETHUSDT", "BTCUSDT"]

    published = [feed.get_nowait(), feed.get_nowait()]
    assert [e.payload["symbol"] for e in published] == ["ETHUSDT", "BTCUSDT"]
    assert all(e.event_type == SIGNAL_NEW for e in published)
    assert eth_feed.get_nowait().payload["symbol"] == "ETHUSDT"
    assert eth_feed.empty()
    assert app.scanner.last_scan_result is result


@pytest.mark.asyncio
async def test_run_scan_dispatches_to_followers(app: App, exchange: FakeExchange) -> None:
    # Flat prices give NEUTRAL signals, which auto followers cannot copy.
    await app.follows.follow("alice", "trader-1", CopyTradeConfig(auto_execute=True))

    result = await app.scanner.run_scan(ScanJobConfig(symbols=["BTCUSDT"], trader_id="trader-1"))

    assert result.signals_generated == 1
    assert any("follower alice" in error for error in result.errors)
    assert exchange.submitted == []


@pytest.mark.asyncio
async def test_timer_job_ticks_until_stopped(app: App) -> None:
    app.scanner.start_job("fast", ScanJobConfig(symbols=["BTCUSDT"], schedule="0.05"))

    for _ in range(100):
        if app.scanner.status()["jobs"]["fast"]["ticks"] >= 2:
            break
        await asyncio.sleep(0.02)

    status = app.scanner.status()
    assert status["running"]
    assert status["jobs"]["fast"]["ticks"] >= 2

    assert app.scanner.stop_job("fast")
    assert not app.scanner.stop_job("fast")
    await app.scanner.shutdown()
    assert not app.scanner.status()["running"]


@pytest.mark.asyncio
async def test_start_job_replaces_same_name(app: App) -> None:
    app.scanner.start_job("job", ScanJobConfig(symbols=["BTCUSDT"], schedule="1h"))
    app.scanner.start_job("job", ScanJobConfig(symbols=["ETHUSDT"], schedule="30m"))

    jobs = app.scanner.status()["jobs"]
    assert list(jobs) == ["job"]
    assert jobs["job"]["symbols"] == ["ETHUSDT"]
    assert jobs["job"]["period_sec"] == 1800.0

    await app.scanner.shutdown()
    assert app.scanner.status()["jobs"] == {}
