# tradelab/models/hybrid.py
"""
Weighted-vote combination of the ORB, RSI and pattern generators.

A direction is accepted when at least ``min_agreeing`` components with a
positive weight point the same way, or when the configured ``dominant``
component alone is confident enough (>= floor) and nothing points the other
way. Optional gates: ADX trend strength and MACD-histogram agreement, both
computed on bars before the entry bar.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import pandas as pd

from tradelab.models import indicators, orb, pattern_signals, rsi_reversion
from tradelab.models._signal import LONG, SHORT, Signal

MODEL_KEY = "hybrid"

_COMPONENTS = {
    "orb": orb,
    "rsi": rsi_reversion,
    "pattern": pattern_signals,
}


def component_signals(history: pd.DataFrame, open_price: float, cfg) -> Dict[str, Signal]:
    out: Dict[str, Signal] = {}
    for name in cfg.hybrid.active_components():
        sig = _COMPONENTS[name].evaluate(history, open_price, cfg)
        if sig is not None:
            out[name] = sig
    return out


def _weighted_confidence(votes: Dict[str, Signal], weights) -> float:
    total_w = sum(weights.weight_of(name) for name in votes)
    if total_w <= 0:
        return 0.0
    return float(sum(weights.weight_of(name) * sig.confidence for name, sig in votes.items()) / total_w)


def _accepted(side_votes: Dict[str, Signal], opposing: Dict[str, Signal], weights) -> bool:
    if len(side_votes) >= int(weights.min_agreeing):
        return True
    dom = weights.dominant
    return (
        dom is not None
        and dom in side_votes
        and side_votes[dom].confidence >= weights.dominant_confidence_floor
        and not opposing
    )


def _passes_gates(history: pd.DataFrame, side: str, weights) -> bool:
    if weights.adx_min is not None:
        frame = indicators.adx(history["high"], history["low"], history["close"], int(weights.adx_period))
        value = frame["adx"].iloc[-1] if len(frame) else float("nan")
        if pd.isna(value) or value < weights.adx_min:
            return False
    if weights.macd_confirm:
        hist = indicators.macd(history["close"].astype(float))["histogram"].iloc[-1]
        if pd.isna(hist):
            return False
        if side == LONG and not hist > 0:
            return False
        if side == SHORT and not hist < 0:
            return False
    return True


def evaluate(history: pd.DataFrame, open_price: float, cfg) -> Optional[Signal]:
    if history is None or history.empty:
        return None
    weights = cfg.hybrid
    votes = component_signals(history, open_price, cfg)
    if not votes:
        return None
    longs = {k: v for k, v in votes.items() if v.side == LONG}
    shorts = {k: v for k, v in votes.items() if v.side == SHORT}

    candidates = []
    if _accepted(longs, shorts, weights):
        candidates.append((LONG, longs))
    if _accepted(shorts, longs, weights):
        candidates.append((SHORT, shorts))
    if not candidates:
        return None
    if len(candidates) == 2:
        long_w = sum(weights.weight_of(k) for k in longs)
        short_w = sum(weights.weight_of(k) for k in shorts)
        if long_w == short_w:
            return None
        candidates = [candidates[0] if long_w > short_w else candidates[1]]

    side, side_votes = candidates[0]
    if not _passes_gates(history, side, weights):
        return None
    names = [n for n in _COMPONENTS if n in side_votes]
    return Signal(
        side,
        _weighted_confidence(side_votes, weights),
        f"{MODEL_KEY}:{'+'.join(names)}",
        "; ".join(f"{n}={side_votes[n].reason}" for n in names),
    )


def should_exit(history: pd.DataFrame, position: Any, cfg) -> Optional[str]:
    for name in cfg.hybrid.active_components():
        reason = _COMPONENTS[name].should_exit(history, position, cfg)
        if reason:
            return reason
    return None
