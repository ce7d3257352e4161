"""Signal generation: market data -> indicators -> scored, persisted signal."""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from copy_trading.config import Settings
from copy_trading.errors import CopyTradingError, SignalNotFoundError, SymbolUnresolvedError
from copy_trading.features.indicators import closes_from_ohlcv, compute_indicator_frame
from copy_trading.ports import MarketDataProvider
from copy_trading.signals.scoring import score_indicators
from copy_trading.storage.database import Database
from copy_trading.types import BatchResult, Signal, SignalStatus, SignalType, TradingPair
from copy_trading.utils.logging import get_logger, log_signal_generated
from copy_trading.utils.timeouts import call_with_timeout


class SignalGenerator:
    """Turns one symbol's market data into a persisted ``pending`` signal."""

    def __init__(
        self,
        market_data: MarketDataProvider,
        database: Database,
        settings: Settings,
    ) -> None:
        self._market_data = market_data
        self._database = database
        self._settings = settings
        self._logger = get_logger("copy_trading.signals.generator")

    async def generate(
        self,
        symbol: str,
        interval: str = "1h",
        limit: int = 100,
        strategy_id: str | None = None,
        trader_id: str | None = None,
    ) -> Signal:
        symbol = symbol.upper()
        await self.resolve_trading_pair(symbol)

        timeout = self._settings.market_data_timeout_sec
        klines, current_price = await asyncio.gather(
            call_with_timeout(
                self._market_data.get_klines(symbol, interval, limit), timeout, "get_klines"
            ),
            call_with_timeout(
                self._market_data.get_current_price(symbol), timeout, "get_current_price"
            ),
        )

        frame = compute_indicator_frame(closes_from_ohlcv(klines))
        analysis = score_indicators(frame, current_price, self._settings.scoring)

        created_at = datetime.now(UTC)
        signal = Signal(
            id=str(uuid.uuid4()),
            symbol=symbol,
            signal_type=analysis.signal_type,
            price=float(current_price),
            confidence=analysis.confidence / 100.0,
            indicators=analysis.payload,
            status=SignalStatus.PENDING,
            created_at=created_at,
            expires_at=created_at + timedelta(hours=self._settings.signal_expiry_hours),
            interval=interval,
            strategy_id=strategy_id,
            trader_id=trader_id,
        )
        await self._database.add_signal(signal)
        log_signal_generated(
            self._logger,
            signal_id=signal.id,
            symbol=symbol,
            signal_type=signal.signal_type.value,
            confidence=signal.confidence,
            score=analysis.score,
            trader_id=trader_id,
        )
        return signal

    async def generate_batch(
        self,
        symbols: list[str],
        interval: str = "1h",
        limit: int = 100,
        strategy_id: str | None = None,
        trader_id: str | None = None,
    ) -> BatchResult:
        """Generate signals concurrently; results keep the order of ``symbols``.

        A failing symbol is recorded in ``errors`` and never aborts the batch.
        """
        semaphore = asyncio.Semaphore(self._settings.scan_concurrency)

        async def _one(symbol: str) -> Signal:
            async with semaphore:
                return await self.generate(symbol, interval, limit, strategy_id, trader_id)

        outcomes = await asyncio.gather(*(_one(symbol) for symbol in symbols), return_exceptions=True)

        result = BatchResult()
        for symbol, outcome in zip(symbols, outcomes, strict=True):
            if isinstance(outcome, Signal):
                result.signals.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            result.errors[symbol] = str(outcome)
            if isinstance(outcome, CopyTradingError):
                self._logger.warning(
                    "signal_generation_skipped",
                    symbol=symbol,
                    code=outcome.code,
                    error=str(outcome),
                )
            else:
                self._logger.error(
                    "signal_generation_failed",
                    symbol=symbol,
                    error=str(outcome),
                    exc_info=outcome,
                )
        return result

    async def resolve_trading_pair(self, symbol: str) -> TradingPair:
        """Return the known pair, registering it from exchange info on first use."""
        pair = await self._database.get_trading_pair(symbol)
        if pair is not None:
            return pair
        info = await call_with_timeout(
            self._market_data.get_symbol_info(symbol),
            self._settings.market_data_timeout_sec,
            "get_symbol_info",
        )
        if info is None:
            raise SymbolUnresolvedError(symbol)
        await self._database.upsert_trading_pair(info)
        self._logger.info("trading_pair_registered", symbol=symbol, step_size=info.step_size)
        return info

    async def expire_stale_signals(self) -> int:
        """Mark pending signals older than the expiry window as expired."""
        cutoff = datetime.now(UTC) - timedelta(hours=self._settings.signal_expiry_hours)
        count = await self._database.expire_pending_signals(cutoff)
        self._logger.info("signals_expired", count=count, cutoff=cutoff.isoformat())
        return count

    async def query_signals(
        self,
        *,
        symbol: str | None = None,
        signal_type: SignalType | None = None,
        status: SignalStatus | None = None,
        trader_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        signals, total = await self._database.query_signals(
            symbol=symbol,
            signal_type=signal_type,
            status=status,
            trader_id=trader_id,
            since=since,
            until=until,
            page=page,
            limit=limit,
        )
        return {
            "signals": signals,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": -(-total // limit) if limit else 0,
            },
        }

    async def get_signal(self, signal_id: str) -> Signal:
        signal = await self._database.get_signal(signal_id)
        if signal is None:
            raise SignalNotFoundError(f"signal {signal_id} not found")
        return signal

    async def update_signal_status(
        self,
        signal_id: str,
        status: SignalStatus,
        executed_price: float | None = None,
    ) -> bool:
        """Move a pending signal forward. Returns False if it was no longer pending."""
        await self.get_signal(signal_id)
        changed = await self._database.transition_signal_status(
            signal_id, status, executed_price=executed_price
        )
        if not changed:
            self._logger.info("signal_status_unchanged", signal_id=signal_id, target=status.value)
        return changed

    async def signal_statistics(
        self,
        symbol: str | None = None,
        since: datetime | None = None,
    ) -> dict[str, Any]:
        return await self._database.signal_statistics(symbol=symbol, since=since)
