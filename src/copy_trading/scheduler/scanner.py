"""Recurring signal scans with per-job timer loops."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from copy_trading.config import Settings
from copy_trading.errors import InvalidScheduleError
from copy_trading.events.broadcast import SIGNAL_NEW, SIGNALS_TOPIC, symbol_topic
from copy_trading.ports import Broadcaster
from copy_trading.signals.generator import SignalGenerator
from copy_trading.trading.decision import CopyTradeDispatcher
from copy_trading.types import ScanResult
from copy_trading.utils.logging import get_logger

DEFAULT_JOB_NAME = "default"

_SCHEDULE_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_schedule(schedule: str | int | float) -> float:
    """Parse an interval expression (``"30s"``, ``"15m"``, ``"1h"``, ``"1d"`` or seconds)."""
    if isinstance(schedule, int | float) and not isinstance(schedule, bool):
        seconds = float(schedule)
    else:
        text = str(schedule).strip()
        match = _SCHEDULE_RE.match(text)
        if match:
            seconds = float(int(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()])
        else:
            try:
                seconds = float(text)
            except ValueError as exc:
                raise InvalidScheduleError(f"invalid schedule expression: {schedule!r}") from exc
    if seconds <= 0:
        raise InvalidScheduleError(f"schedule must be positive: {schedule!r}")
    return seconds


@dataclass(slots=True)
class ScanJobConfig:
    symbols: list[str]
    interval: str = "1h"
    schedule: str = "15m"
    kline_limit: int = 100
    trader_id: str | None = None
    strategy_id: str | None = None
    run_immediately: bool = False


@dataclass(slots=True)
class _ScanJob:
    name: str
    config: ScanJobConfig
    period_sec: float
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    ticks: int = 0

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done() and not self.stop_event.is_set()


class SignalScanner:
    """Owns named scan jobs.

    Ticks of one job never overlap: the next wait only starts after the
    current scan returns. Stopping a job lets an in-flight tick finish.
    """

    def __init__(
        self,
        generator: SignalGenerator,
        dispatcher: CopyTradeDispatcher,
        broadcaster: Broadcaster,
        settings: Settings,
    ) -> None:
        self._generator = generator
        self._dispatcher = dispatcher
        self._broadcaster = broadcaster
        self._settings = settings
        self._jobs: dict[str, _ScanJob] = {}
        self._stopping: set[asyncio.Task[None]] = set()
        self.last_scan_result: ScanResult | None = None
        self._logger = get_logger("copy_trading.scheduler.scanner")

    def start_job(self, name: str, config: ScanJobConfig) -> None:
        """Start a named job, replacing any job with the same name."""
        period = parse_schedule(config.schedule)
        if not config.symbols:
            raise InvalidScheduleError("scan job requires at least one symbol")

        if name in self._jobs:
            self._logger.info("scan_job_replaced", name=name)
            self.stop_job(name)

        job = _ScanJob(name=name, config=config, period_sec=period)
        job.task = asyncio.create_task(self._run_job(job), name=f"scan-job-{name}")
        self._jobs[name] = job
        self._logger.info(
            "scan_job_started",
            name=name,
            schedule=config.schedule,
            period_sec=period,
            symbols=config.symbols,
            interval=config.interval,
        )

    def start_default_job(self) -> None:
        self.start_job(
            DEFAULT_JOB_NAME,
            ScanJobConfig(
                symbols=list(self._settings.scanner_symbols),
                interval=self._settings.scanner_interval,
                schedule=self._settings.scanner_schedule,
                kline_limit=self._settings.scanner_kline_limit,
                trader_id=self._settings.scanner_trader_id,
                run_immediately=True,
            ),
        )

    def stop_job(self, name: str) -> bool:
        """Stop scheduling ``name``. Returns False when no such job exists."""
        job = self._jobs.pop(name, None)
        if job is None:
            return False
        job.stop_event.set()
        if job.task is not None and not job.task.done():
            self._stopping.add(job.task)
            job.task.add_done_callback(self._stopping.discard)
        self._logger.info("scan_job_stopped", name=name, ticks=job.ticks)
        return True

    async def shutdown(self) -> None:
        """Stop every job and wait for in-flight ticks to finish."""
        for name in list(self._jobs):
            self.stop_job(name)
        if self._stopping:
            await asyncio.gather(*list(self._stopping), return_exceptions=True)
        self._logger.info("scanner_shutdown")

    def status(self) -> dict[str, Any]:
        return {
            "running": any(job.running for job in self._jobs.values()),
            "jobs": {
                name: {
                    "running": job.running,
                    "schedule": job.config.schedule,
                    "period_sec": job.period_sec,
                    "symbols": list(job.config.symbols),
                    "interval": job.config.interval,
                    "ticks": job.ticks,
                }
                for name, job in self._jobs.items()
            },
            "last_scan": self.last_scan_result,
        }

    async def run_scan(self, config: ScanJobConfig) -> ScanResult:
        """Scan once: generate, publish in scan order, then dispatch each signal."""
        started = time.perf_counter()
        timestamp = datetime.now(UTC)
        self._logger.info("scan_started", symbols=config.symbols, interval=config.interval)

        batch = await self._generator.generate_batch(
            config.symbols,
            interval=config.interval,
            limit=config.kline_limit,
            strategy_id=config.strategy_id,
            trader_id=config.trader_id,
        )
        errors = [f"{symbol}: {message}" for symbol, message in batch.errors.items()]

        events = []
        for signal in batch.signals:
            event = signal.as_event()
            self._broadcaster.publish(SIGNALS_TOPIC, SIGNAL_NEW, event)
            self._broadcaster.publish(symbol_topic(signal.symbol), SIGNAL_NEW, event)
            events.append(event)

        for signal in batch.signals:
            try:
                dispatch = await self._dispatcher.dispatch(signal)
            except Exception as exc:  # noqa: BLE001 - one signal must not stop the scan.
                errors.append(f"{signal.symbol}: dispatch failed: {exc}")
                self._logger.exception("scan_dispatch_failed", signal_id=signal.id, error=str(exc))
                continue
            errors.extend(
                f"{signal.symbol}: follower {follower_id}: {message}"
                for follower_id, message in dispatch.errors.items()
            )

        result = ScanResult(
            timestamp=timestamp,
            symbols_scanned=len(config.symbols),
            signals_generated=len(batch.signals),
            errors=errors,
            signals=events,
            elapsed_ms=(time.perf_counter() - started) * 1000,
        )
        self.last_scan_result = result
        self._logger.info(
            "scan_completed",
            symbols_scanned=result.symbols_scanned,
            signals_generated=result.signals_generated,
            errors=len(result.errors),
            elapsed_ms=round(result.elapsed_ms, 2),
        )
        return result

    async def _run_job(self, job: _ScanJob) -> None:
        if job.config.run_immediately:
            await self._tick(job)
        while not job.stop_event.is_set():
            try:
                await asyncio.wait_for(job.stop_event.wait(), timeout=job.period_sec)
            except TimeoutError:
                await self._tick(job)

    async def _tick(self, job: _ScanJob) -> None:
        job.ticks += 1
        try:
            await self.run_scan(job.config)
        except Exception as exc:  # noqa: BLE001 - keep the job alive.
            self._logger.exception("scan_tick_failed", name=job.name, tick=job.ticks, error=str(exc))
