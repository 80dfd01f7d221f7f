# tradelab/models/orb.py
"""
Opening-range breakout.

Long when today's open clears yesterday's high (optionally by a minimum
margin); short, when enabled, when the open drops under yesterday's low. The
strategy is a day trade by default: the engine closes it at the target, the
stop or the session close, so there is no generator-specific exit.
"""

from __future__ import annotations

from typing import Any, Optional

import pandas as pd

from tradelab.models._signal import LONG, SHORT, Signal

MODEL_KEY = "orb"

BASE_CONFIDENCE = 60.0
CONFIDENCE_PER_PCT = 10.0
MAX_CONFIDENCE = 95.0


def _confidence(breakout_pct: float) -> float:
    return float(min(MAX_CONFIDENCE, BASE_CONFIDENCE + CONFIDENCE_PER_PCT * abs(breakout_pct)))


def evaluate(history: pd.DataFrame, open_price: float, cfg) -> Optional[Signal]:
    if history is None or history.empty:
        return None
    prev = history.iloc[-1]
    prev_high = float(prev["high"])
    prev_low = float(prev["low"])
    margin = float(cfg.orb.min_breakout_pct) / 100.0

    if open_price > prev_high * (1.0 + margin):
        move = (open_price / prev_high - 1.0) * 100.0
        return Signal(LONG, _confidence(move), MODEL_KEY, f"open {open_price:.4f} > prior high {prev_high:.4f}")
    if cfg.allow_short and open_price < prev_low * (1.0 - margin):
        move = (1.0 - open_price / prev_low) * 100.0
        return Signal(SHORT, _confidence(move), MODEL_KEY, f"open {open_price:.4f} < prior low {prev_low:.4f}")
    return None


def should_exit(history: pd.DataFrame, position: Any, cfg) -> Optional[str]:
    return None
