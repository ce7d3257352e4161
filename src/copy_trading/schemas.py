"""Strict schemas for persisted JSON payloads.

Indicator snapshots and follower configs are stored as JSON columns; every
read goes back through these models so unknown or malformed fields are
rejected at the storage boundary.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from copy_trading.types import SignalType


class TrendIndicator(BaseModel):
    """Trend oscillator (MACD) values at the latest step."""

    model_config = ConfigDict(extra="forbid")

    family: Literal["trend"] = "trend"
    value: float | None = None
    signal: float | None = None
    histogram: float | None = None
    trend: Literal["bullish", "bearish", "neutral"] = "neutral"
    crossover: Literal["golden", "death", "none"] = "none"


class MomentumIndicator(BaseModel):
    """Momentum oscillator (RSI) value at the latest step."""

    model_config = ConfigDict(extra="forbid")

    family: Literal["momentum"] = "momentum"
    value: float | None = Field(default=None, ge=0.0, le=100.0)
    condition: Literal["overbought", "oversold", "neutral"] = "neutral"


class VolatilityIndicator(BaseModel):
    """Volatility bands (Bollinger) at the latest step."""

    model_config = ConfigDict(extra="forbid")

    family: Literal["volatility"] = "volatility"
    upper: float | None = None
    middle: float | None = None
    lower: float | None = None
    bandwidth: float | None = None
    position: Literal["above_upper", "below_lower", "within", "unknown"] = "unknown"
    squeeze: bool = False


class IndicatorPayload(BaseModel):
    """Indicator snapshot and scoring reasons stored with a signal."""

    model_config = ConfigDict(extra="forbid")

    trend: TrendIndicator = Field(default_factory=TrendIndicator)
    momentum: MomentumIndicator = Field(default_factory=MomentumIndicator)
    volatility: VolatilityIndicator = Field(default_factory=VolatilityIndicator)
    reasons: list[str] = Field(default_factory=list)


class CopyTradeConfig(BaseModel):
    """A follower's personal copy-trade configuration."""

    model_config = ConfigDict(extra="forbid")

    auto_execute: bool = False
    symbols_filter: list[str] | None = None
    max_amount_per_trade: float | None = Field(default=None, gt=0)
    min_confidence: float | None = Field(default=None, ge=0.0, le=100.0)
    signal_type_filter: list[SignalType] | None = None

    @field_validator("symbols_filter")
    @classmethod
    def normalize_symbols(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        return [symbol.strip().upper() for symbol in v if symbol.strip()]

    def merged(self, changes: dict[str, Any]) -> "CopyTradeConfig":
        """Return a validated copy with ``changes`` applied on top."""
        payload = self.model_dump()
        payload.update(changes)
        return CopyTradeConfig.model_validate(payload)
