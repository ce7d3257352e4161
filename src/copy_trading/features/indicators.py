"""Indicator computation: MACD, RSI and Bollinger bands over a close series."""

from __future__ import annotations

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

from copy_trading.errors import InsufficientDataError

MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
RSI_PERIOD = 14
BB_PERIOD = 20
BB_STD_DEV = 2.0

INDICATOR_COLUMNS = [
    "macd",
    "macd_signal",
    "macd_histogram",
    "rsi",
    "bb_upper",
    "bb_middle",
    "bb_lower",
    "bb_bandwidth",
]


def macd_warm_up(slow: int = MACD_SLOW, signal: int = MACD_SIGNAL) -> int:
    return slow + signal


def rsi_warm_up(period: int = RSI_PERIOD) -> int:
    return period + 1


def bollinger_warm_up(period: int = BB_PERIOD) -> int:
    return period


def compute_macd(
    closes: pd.Series,
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> pd.DataFrame:
    """Compute MACD line, signal line and histogram.

    Output is aligned with ``closes``; the first ``slow + signal - 1`` rows
    are NaN.
    """
    prices = _validate_closes(closes, macd_warm_up(slow, signal), "macd")
    ema_fast = _ema(prices, fast)
    ema_slow = _ema(prices, slow)
    macd_line = ema_fast - ema_slow
    # The signal line starts smoothing from the first defined MACD value.
    signal_line = _ema(macd_line.dropna(), signal).reindex(prices.index)
    frame = pd.DataFrame(
        {
            "macd": macd_line,
            "signal": signal_line,
            "histogram": macd_line - signal_line,
        },
        index=prices.index,
    )
    return _mask_warm_up(frame, macd_warm_up(slow, signal))


def compute_rsi(closes: pd.Series, period: int = RSI_PERIOD) -> pd.Series:
    """Compute Wilder RSI bounded to [0, 100].

    The first average is a simple mean of ``period`` changes; later values use
    Wilder smoothing. A window with no gains and no losses is neutral (50).
    """
    prices = _validate_closes(closes, rsi_warm_up(period), "rsi")
    delta = prices.diff().to_numpy()
    gains = np.where(delta > 0, delta, 0.0)
    losses = np.where(delta < 0, -delta, 0.0)

    values = np.full(len(prices), np.nan)
    avg_gain = float(gains[1 : period + 1].mean())
    avg_loss = float(losses[1 : period + 1].mean())
    values[period] = _rsi_value(avg_gain, avg_loss)
    for i in range(period + 1, len(prices)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        values[i] = _rsi_value(avg_gain, avg_loss)

    return pd.Series(values, index=prices.index, name="rsi")


def compute_bollinger(
    closes: pd.Series,
    period: int = BB_PERIOD,
    std_dev: float = BB_STD_DEV,
) -> pd.DataFrame:
    """Compute Bollinger bands with population standard deviation."""
    prices = _validate_closes(closes, bollinger_warm_up(period), "bollinger")
    middle = prices.rolling(window=period, min_periods=period).mean()
    std = prices.rolling(window=period, min_periods=period).std(ddof=0)
    upper = middle + std_dev * std
    lower = middle - std_dev * std
    frame = pd.DataFrame(
        {
            "upper": upper,
            "middle": middle,
            "lower": lower,
            "bandwidth": (upper - lower) / middle,
        },
        index=prices.index,
    )
    return _mask_warm_up(frame, bollinger_warm_up(period))


def compute_indicator_frame(closes: pd.Series) -> pd.DataFrame:
    """Compute every indicator family into one time-aligned frame.

    A family whose warm-up is not met contributes NaN columns. Raises
    ``InsufficientDataError`` only when no family can be computed.
    """
    prices = _validate_closes(closes, 1, "indicators")
    minimum = min(macd_warm_up(), rsi_warm_up(), bollinger_warm_up())
    if len(prices) < minimum:
        raise InsufficientDataError(required=minimum, actual=len(prices))

    frame = pd.DataFrame(index=prices.index, columns=INDICATOR_COLUMNS, dtype=float)
    if len(prices) >= macd_warm_up():
        macd = compute_macd(prices)
        frame["macd"] = macd["macd"]
        frame["macd_signal"] = macd["signal"]
        frame["macd_histogram"] = macd["histogram"]
    if len(prices) >= rsi_warm_up():
        frame["rsi"] = compute_rsi(prices)
    if len(prices) >= bollinger_warm_up():
        bands = compute_bollinger(prices)
        frame["bb_upper"] = bands["upper"]
        frame["bb_middle"] = bands["middle"]
        frame["bb_lower"] = bands["lower"]
        frame["bb_bandwidth"] = bands["bandwidth"]
    return frame


def closes_from_ohlcv(df: pd.DataFrame) -> pd.Series:
    """Extract the close series from normalized OHLCV candles."""
    if df.empty:
        raise InsufficientDataError(required=1, actual=0)
    if not _is_time_ascending(df):
        raise ValueError("ohlcv_timestamp_not_ascending")
    return df["close"].astype(float).reset_index(drop=True)


def _validate_closes(closes: pd.Series, required: int, indicator: str) -> pd.Series:
    prices = pd.Series(closes, dtype=float)
    if prices.empty or len(prices) < required:
        raise InsufficientDataError(required=required, actual=len(prices), indicator=indicator)
    if prices.isna().any() or (prices <= 0).any():
        raise ValueError("close_price_non_positive")
    return prices


def _mask_warm_up(frame: pd.DataFrame, warm_up: int) -> pd.DataFrame:
    frame.iloc[: warm_up - 1] = np.nan
    return frame


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def _is_time_ascending(df: pd.DataFrame) -> bool:
    open_time = df.get("open_time")
    if open_time is None:
        return False
    return bool(pd.Series(open_time).is_monotonic_increasing)


def _ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False, min_periods=period).mean()
