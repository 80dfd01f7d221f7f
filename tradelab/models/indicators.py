# tradelab/models/indicators.py
"""
Stateless indicator helpers (pandas in, pandas out).

Every function is causal: the value at position i only depends on rows <= i,
so callers that pass "history up to yesterday" can never see the future.
Warm-up positions are NaN rather than a neutral placeholder.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

MACD_FAST, MACD_SLOW, MACD_SIGNAL = 12, 26, 9


def sma(close: pd.Series, period: int) -> pd.Series:
    return close.rolling(window=period, min_periods=period).mean()


def ema(close: pd.Series, period: int) -> pd.Series:
    """EMA seeded with the SMA of the first ``period`` values."""
    values = close.astype(float)
    out = pd.Series(np.nan, index=values.index, dtype=float)
    if len(values) < period or period < 1:
        return out
    seed = values.iloc[:period].mean()
    alpha = 2.0 / (period + 1.0)
    tail = values.iloc[period - 1 :].copy()
    tail.iloc[0] = seed
    out.iloc[period - 1 :] = tail.ewm(alpha=alpha, adjust=False).mean().to_numpy()
    return out


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """RSI using Wilder's smoothing; 100 when there were no losses."""

    delta = close.astype(float).diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss.where(avg_loss != 0.0, np.nan)
    out = 100.0 - (100.0 / (1.0 + rs))
    out = out.where(~(avg_loss == 0.0) | avg_gain.isna(), 100.0)
    return out.clip(lower=0.0, upper=100.0)


def macd(
    close: pd.Series,
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> pd.DataFrame:
    """MACD line, signal line and histogram."""
    line = ema(close, fast) - ema(close, slow)
    valid = line.dropna()
    sig = pd.Series(np.nan, index=close.index, dtype=float)
    if len(valid) >= signal:
        sig.loc[valid.index] = ema(valid, signal)
    return pd.DataFrame({"macd": line, "signal": sig, "histogram": line - sig})


def bollinger(close: pd.Series, period: int = 20, stddevs: float = 2.0) -> pd.DataFrame:
    middle = sma(close, period)
    deviation = close.rolling(window=period, min_periods=period).std(ddof=0)
    upper = middle + stddevs * deviation
    lower = middle - stddevs * deviation
    bandwidth = ((upper - lower) / middle * 100.0).replace([np.inf, -np.inf], np.nan)
    return pd.DataFrame({"upper": upper, "middle": middle, "lower": lower, "bandwidth": bandwidth})


def true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> pd.Series:
    prev_close = close.shift(1)
    return pd.concat([
        (high - low).abs(),
        (high - prev_close).abs(),
        (low - prev_close).abs(),
    ], axis=1).max(axis=1)


def adx(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.DataFrame:
    """Average Directional Index with +DI / -DI (Wilder smoothing)."""
    up_move = high.diff()
    down_move = -low.diff()
    plus_dm = up_move.where((up_move > down_move) & (up_move > 0), 0.0)
    minus_dm = down_move.where((down_move > up_move) & (down_move > 0), 0.0)
    tr = true_range(high, low, close)
    tr.iloc[:1] = np.nan

    alpha = 1.0 / period
    atr_s = tr.ewm(alpha=alpha, adjust=False, min_periods=period).mean()
    plus_di = 100.0 * plus_dm.ewm(alpha=alpha, adjust=False, min_periods=period).mean() / atr_s
    minus_di = 100.0 * minus_dm.ewm(alpha=alpha, adjust=False, min_periods=period).mean() / atr_s
    di_sum = (plus_di + minus_di).replace(0.0, np.nan)
    dx = (100.0 * (plus_di - minus_di).abs() / di_sum).fillna(0.0).where(plus_di.notna())
    adx_line = dx.ewm(alpha=alpha, adjust=False, min_periods=period).mean()
    frame = pd.DataFrame({"adx": adx_line, "plus_di": plus_di, "minus_di": minus_di})
    return frame.replace([np.inf, -np.inf], np.nan)


def range_pct(df: pd.DataFrame) -> pd.Series:
    """Bar range as a fraction of the close: (high - low) / close."""
    out = (df["high"] - df["low"]) / df["close"]
    return out.replace([np.inf, -np.inf], np.nan)


__all__ = [
    "MACD_FAST",
    "MACD_SLOW",
    "MACD_SIGNAL",
    "sma",
    "ema",
    "rsi",
    "macd",
    "bollinger",
    "true_range",
    "adx",
    "range_pct",
]
