# tradelab/models/rsi_reversion.py
"""
RSI threshold strategy.

Entry on the bar *after* RSI crosses a threshold: a cross below ``oversold``
buys, a cross above ``overbought`` sells short (when shorts are allowed). The
RSI is computed over closes strictly before the entry bar. Optional filters:

- ``trend_sma``: longs only above the SMA, shorts only below it
- ``confirm_bollinger``: the last close has to sit outside the band

Exit on reversal: a long leaves once RSI (now including the current bar's
close) reaches ``overbought``; a short once it falls to ``oversold``.
"""

from __future__ import annotations

from typing import Any, Optional

import pandas as pd

from tradelab.models import indicators
from tradelab.models._signal import LONG, SHORT, Signal

MODEL_KEY = "rsi"


def _confidence(distance: float) -> float:
    return float(min(95.0, 60.0 + 2.0 * max(0.0, distance)))


def _passes_filters(closes: pd.Series, side: str, params) -> bool:
    last_close = float(closes.iloc[-1])
    if params.trend_sma:
        trend = indicators.sma(closes, int(params.trend_sma)).iloc[-1]
        if pd.isna(trend):
            return False
        if side == LONG and not last_close > trend:
            return False
        if side == SHORT and not last_close < trend:
            return False
    if params.confirm_bollinger:
        bands = indicators.bollinger(closes, int(params.bollinger_period), float(params.bollinger_stddev)).iloc[-1]
        if pd.isna(bands["lower"]) or pd.isna(bands["upper"]):
            return False
        if side == LONG and not last_close <= bands["lower"]:
            return False
        if side == SHORT and not last_close >= bands["upper"]:
            return False
    return True


def evaluate(history: pd.DataFrame, open_price: float, cfg) -> Optional[Signal]:
    params = cfg.rsi
    if history is None or len(history) < int(params.period) + 2:
        return None
    closes = history["close"].astype(float)
    series = indicators.rsi(closes, int(params.period))
    last, prev = series.iloc[-1], series.iloc[-2]
    if pd.isna(last) or pd.isna(prev):
        return None

    if prev >= params.oversold > last:
        side, distance = LONG, params.oversold - last
    elif cfg.allow_short and prev <= params.overbought < last:
        side, distance = SHORT, last - params.overbought
    else:
        return None

    if not _passes_filters(closes, side, params):
        return None
    return Signal(side, _confidence(distance), MODEL_KEY, f"rsi {prev:.1f}->{last:.1f}")


def should_exit(history: pd.DataFrame, position: Any, cfg) -> Optional[str]:
    params = cfg.rsi
    if not params.exit_on_reversal or history is None or len(history) < int(params.period) + 1:
        return None
    value = indicators.rsi(history["close"].astype(float), int(params.period)).iloc[-1]
    if pd.isna(value):
        return None
    if position.side == LONG and value >= params.overbought:
        return "rsi_reversal"
    if position.side == SHORT and value <= params.oversold:
        return "rsi_reversal"
    return None
