# tradelab/models/patterns.py
"""
Candlestick pattern detectors.

Each detector is a pure predicate over the last one to three candles (the
breakout detectors look at a short trailing window). ``detect_patterns`` runs
all of them against the *last* candle of the window it is given and returns
every match with its polarity and a fixed confidence score.

Callers decide which window to pass; the signal generator hands in bars up to
and including yesterday, so nothing here can see the bar being traded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence

import pandas as pd

BUY = "buy"
SELL = "sell"

BREAKOUT_LOOKBACK = 5
DEFAULT_WINDOW = 10


@dataclass(frozen=True)
class Candle:
    open: float
    high: float
    low: float
    close: float

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def upper_shadow(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_shadow(self) -> float:
        return min(self.open, self.close) - self.low

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def bullish(self) -> bool:
        return self.close > self.open

    @property
    def bearish(self) -> bool:
        return self.close < self.open


@dataclass(frozen=True)
class PatternResult:
    pattern: str
    signal: str  # "buy" | "sell"
    confidence: float  # 0-100
    description: str


# name -> (polarity, confidence, description)
PATTERN_INFO = {
    "hammer": (BUY, 70.0, "Hammer: small body, long lower shadow; bullish reversal"),
    "inverted_hammer": (BUY, 65.0, "Inverted hammer: small body, long upper shadow; bullish reversal"),
    "shooting_star": (SELL, 70.0, "Shooting star after an up move; bearish reversal"),
    "gravestone_doji": (SELL, 75.0, "Gravestone doji: open/close at the low; bearish reversal"),
    "bullish_engulfing": (BUY, 80.0, "Bullish engulfing: up candle swallows prior down candle"),
    "bearish_engulfing": (SELL, 80.0, "Bearish engulfing: down candle swallows prior up candle"),
    "evening_star": (SELL, 85.0, "Evening star: three-candle bearish reversal"),
    "bullish_breakout": (BUY, 75.0, "Close above the recent highs with momentum"),
    "bearish_breakout": (SELL, 75.0, "Close below the recent lows with momentum"),
}


def is_hammer(c: Candle) -> bool:
    if c.range <= 0:
        return False
    body = c.body
    return (
        c.lower_shadow >= body * 2.0
        and c.upper_shadow <= body * 0.3
        and body <= c.range * 0.35
        and body > 0
    )


def is_inverted_hammer(c: Candle) -> bool:
    if c.range <= 0:
        return False
    body = c.body
    return (
        c.upper_shadow >= body * 2.0
        and c.lower_shadow <= body * 0.3
        and body <= c.range * 0.35
        and body > 0
    )


def is_shooting_star(c: Candle, prev: Candle | None = None) -> bool:
    # same shape as the inverted hammer, but it has to follow strength
    if not is_inverted_hammer(c):
        return False
    if prev is None:
        return True
    return prev.bullish or c.open > prev.close


def is_gravestone_doji(c: Candle) -> bool:
    if c.range <= 0:
        return False
    return (
        c.body <= c.range * 0.1
        and c.upper_shadow >= c.range * 0.6
        and c.lower_shadow <= c.range * 0.1
    )


def is_bullish_engulfing(current: Candle, previous: Candle) -> bool:
    return (
        previous.bearish
        and current.bullish
        and current.open <= previous.close
        and current.close >= previous.open
        and current.body >= previous.body * 1.1
        and previous.body > 0
    )


def is_bearish_engulfing(current: Candle, previous: Candle) -> bool:
    return (
        previous.bullish
        and current.bearish
        and current.open >= previous.close
        and current.close <= previous.open
        and current.body >= previous.body * 1.1
        and previous.body > 0
    )


def is_evening_star(current: Candle, middle: Candle, first: Candle) -> bool:
    return (
        first.bullish
        and first.body > middle.body * 2
        and middle.body < middle.range * 0.3
        and middle.low > first.close
        and current.bearish
        and current.body > middle.body * 2
        and current.close < (first.open + first.close) / 2.0
    )


def is_bullish_breakout(candles: Sequence[Candle], lookback: int = BREAKOUT_LOOKBACK) -> bool:
    if len(candles) < lookback + 1:
        return False
    current = candles[-1]
    highest = max(c.high for c in candles[-lookback - 1 : -1])
    return (
        current.close > highest
        and current.bullish
        and (current.close - current.open) / current.open > 0.003
        and current.close > highest * 1.001
    )


def is_bearish_breakout(candles: Sequence[Candle], lookback: int = BREAKOUT_LOOKBACK) -> bool:
    if len(candles) < lookback + 1:
        return False
    current = candles[-1]
    lowest = min(c.low for c in candles[-lookback - 1 : -1])
    return (
        current.close < lowest
        and current.bearish
        and (current.open - current.close) / current.open > 0.003
        and current.close < lowest * 0.999
    )


def to_candles(window: pd.DataFrame | Iterable) -> List[Candle]:
    """Build candles from a bar frame (gap rows dropped) or an iterable of candles."""
    if isinstance(window, pd.DataFrame):
        if window.empty:
            return []
        clean = window[["open", "high", "low", "close"]].dropna()
        return [
            Candle(float(o), float(h), float(l), float(c))
            for o, h, l, c in clean.itertuples(index=False, name=None)
        ]
    return [c if isinstance(c, Candle) else Candle(**c) for c in window]


def _result(name: str) -> PatternResult:
    signal, confidence, description = PATTERN_INFO[name]
    return PatternResult(pattern=name, signal=signal, confidence=confidence, description=description)


def detect_patterns(window: pd.DataFrame | Iterable) -> List[PatternResult]:
    """Return every pattern that completes on the last candle of ``window``."""
    candles = to_candles(window)
    results: List[PatternResult] = []
    if not candles:
        return results

    current = candles[-1]
    previous = candles[-2] if len(candles) > 1 else None
    two_before = candles[-3] if len(candles) > 2 else None

    if is_hammer(current):
        results.append(_result("hammer"))
    if is_inverted_hammer(current) and (previous is None or not previous.bullish):
        results.append(_result("inverted_hammer"))
    if previous is not None and is_shooting_star(current, previous):
        results.append(_result("shooting_star"))
    if is_gravestone_doji(current):
        results.append(_result("gravestone_doji"))

    if previous is not None:
        if is_bullish_engulfing(current, previous):
            results.append(_result("bullish_engulfing"))
        if is_bearish_engulfing(current, previous):
            results.append(_result("bearish_engulfing"))

    if previous is not None and two_before is not None:
        if is_evening_star(current, previous, two_before):
            results.append(_result("evening_star"))

    if is_bullish_breakout(candles):
        results.append(_result("bullish_breakout"))
    if is_bearish_breakout(candles):
        results.append(_result("bearish_breakout"))

    return results


__all__ = [
    "BUY",
    "SELL",
    "Candle",
    "PatternResult",
    "PATTERN_INFO",
    "is_hammer",
    "is_inverted_hammer",
    "is_shooting_star",
    "is_gravestone_doji",
    "is_bullish_engulfing",
    "is_bearish_engulfing",
    "is_evening_star",
    "is_bullish_breakout",
    "is_bearish_breakout",
    "to_candles",
    "detect_patterns",
]
