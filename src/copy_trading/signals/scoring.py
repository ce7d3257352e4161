"""Deterministic signal scoring over an indicator frame."""

from __future__ import annotations

import math
from dataclasses import dataclass

import pandas as pd  # type: ignore[import-untyped]

from copy_trading.config import ScoringRules
from copy_trading.schemas import (
    IndicatorPayload,
    MomentumIndicator,
    TrendIndicator,
    VolatilityIndicator,
)
from copy_trading.types import SignalType

NO_SIGNAL_REASON = "no significant signal"


@dataclass(slots=True)
class SignalAnalysis:
    """Score, classification and explanation for one symbol."""

    score: int
    signal_type: SignalType
    confidence: float
    reasons: list[str]
    payload: IndicatorPayload


def classify_score(score: int, rules: ScoringRules) -> tuple[SignalType, float]:
    """Map a score to a classification and a 0-100 confidence."""
    if score >= rules.strong_threshold:
        return SignalType.STRONG_BUY, float(min(50 + score, 95))
    if score >= rules.threshold:
        return SignalType.BUY, float(min(60 + score, 85))
    if score <= -rules.strong_threshold:
        return SignalType.STRONG_SELL, float(min(50 + abs(score), 95))
    if score <= -rules.threshold:
        return SignalType.SELL, float(min(60 + abs(score), 85))
    return SignalType.NEUTRAL, 50 + abs(score) / 2


def score_indicators(
    frame: pd.DataFrame,
    current_price: float,
    rules: ScoringRules,
) -> SignalAnalysis:
    """Score the last row of an indicator frame against the current price.

    Null indicator values never fire a rule.
    """
    if frame.empty:
        raise ValueError("indicator_frame_empty")

    last = frame.iloc[-1]
    prev = frame.iloc[-2] if len(frame) > 1 else None
    score = 0
    reasons: list[str] = []

    # Trend
    histogram = _value(last, "macd_histogram")
    prev_histogram = _value(prev, "macd_histogram") if prev is not None else None
    trend = TrendIndicator(
        value=_value(last, "macd"),
        signal=_value(last, "macd_signal"),
        histogram=histogram,
    )
    if histogram is not None:
        if prev_histogram is not None and prev_histogram < 0 < histogram:
            score += rules.golden_cross
            trend.crossover = "golden"
            reasons.append("MACD golden cross")
        elif prev_histogram is not None and prev_histogram > 0 > histogram:
            score -= rules.golden_cross
            trend.crossover = "death"
            reasons.append("MACD death cross")
        elif histogram > 0:
            score += rules.trend
            reasons.append("MACD bullish trend")
        elif histogram < 0:
            score -= rules.trend
            reasons.append("MACD bearish trend")
        trend.trend = "bullish" if histogram > 0 else "bearish" if histogram < 0 else "neutral"

    # Momentum
    rsi = _value(last, "rsi")
    momentum = MomentumIndicator(value=rsi)
    if rsi is not None:
        if rsi < rules.oversold:
            score += rules.momentum_extreme
            momentum.condition = "oversold"
            reasons.append(f"RSI oversold ({rsi:.2f})")
        elif rsi > rules.overbought:
            score -= rules.momentum_extreme
            momentum.condition = "overbought"
            reasons.append(f"RSI overbought ({rsi:.2f})")

    # Volatility
    upper = _value(last, "bb_upper")
    lower = _value(last, "bb_lower")
    bandwidth = _value(last, "bb_bandwidth")
    volatility = VolatilityIndicator(
        upper=upper,
        middle=_value(last, "bb_middle"),
        lower=lower,
        bandwidth=bandwidth,
    )
    if upper is not None and lower is not None:
        if current_price < lower:
            score += rules.band_break
            volatility.position = "below_lower"
            reasons.append("price below lower Bollinger band")
        elif current_price > upper:
            score -= rules.band_break
            volatility.position = "above_upper"
            reasons.append("price above upper Bollinger band")
        else:
            volatility.position = "within"
    if bandwidth is not None and bandwidth < rules.squeeze_bandwidth:
        volatility.squeeze = True
        reasons.append("Bollinger squeeze, breakout possible")

    if not reasons:
        reasons.append(NO_SIGNAL_REASON)

    signal_type, confidence = classify_score(score, rules)
    payload = IndicatorPayload(
        trend=trend,
        momentum=momentum,
        volatility=volatility,
        reasons=reasons,
    )
    return SignalAnalysis(
        score=score,
        signal_type=signal_type,
        confidence=confidence,
        reasons=reasons,
        payload=payload,
    )


def _value(row: pd.Series | None, column: str) -> float | None:
    if row is None or column not in row.index:
        return None
    value = row[column]
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return float(value)
