# tradelab/models/pattern_signals.py
"""
Candlestick pattern strategy.

The detectors run on the trailing window that ends with yesterday's bar. Of
the patterns that pass the confidence floor and the allow-list, the strongest
one sets the direction; when the strongest bullish and bearish matches tie the
bar is skipped.
"""

from __future__ import annotations

from typing import Any, Optional

import pandas as pd

from tradelab.models._signal import LONG, SHORT, Signal
from tradelab.models.patterns import BUY, SELL, PatternResult, detect_patterns

MODEL_KEY = "pattern"


def strongest_pattern(window: pd.DataFrame, filters) -> Optional[PatternResult]:
    matches = [
        r for r in detect_patterns(window)
        if r.confidence >= filters.min_confidence and filters.allows(r.pattern)
    ]
    if not matches:
        return None
    best = max(r.confidence for r in matches)
    top = [r for r in matches if r.confidence == best]
    if len({r.signal for r in top}) > 1:
        return None
    return top[0]


def evaluate(history: pd.DataFrame, open_price: float, cfg) -> Optional[Signal]:
    if history is None or history.empty:
        return None
    filters = cfg.pattern
    found = strongest_pattern(history.tail(int(filters.window)), filters)
    if found is None:
        return None
    if found.signal == BUY:
        return Signal(LONG, found.confidence, MODEL_KEY, found.pattern)
    if found.signal == SELL and cfg.allow_short:
        return Signal(SHORT, found.confidence, MODEL_KEY, found.pattern)
    return None


def should_exit(history: pd.DataFrame, position: Any, cfg) -> Optional[str]:
    filters = cfg.pattern
    if not filters.exit_on_opposite or history is None or history.empty:
        return None
    found = strongest_pattern(history.tail(int(filters.window)), filters)
    if found is None:
        return None
    if position.side == LONG and found.signal == SELL:
        return f"opposite_pattern:{found.pattern}"
    if position.side == SHORT and found.signal == BUY:
        return f"opposite_pattern:{found.pattern}"
    return None
