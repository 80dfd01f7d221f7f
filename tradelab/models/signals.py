# tradelab/models/signals.py
"""
Strategy dispatch.

Every generator module exposes the same two callables:

    evaluate(history, open_price, cfg) -> Signal | None
        history: valid bars strictly before the entry bar (bounded window)
    should_exit(history, position, cfg) -> str | None
        history: valid bars up to and including the current bar

The engine looks them up by ``StrategyConfig.kind``; adding a strategy means
adding a module and a registry entry.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, NamedTuple, Optional

import pandas as pd

from tradelab.errors import ConfigurationError
from tradelab.models import hybrid, orb, pattern_signals, rsi_reversion
from tradelab.models._signal import LONG, SHORT, Signal, opposite


class Generator(NamedTuple):
    key: str
    evaluate: Callable[[pd.DataFrame, float, Any], Optional[Signal]]
    should_exit: Callable[[pd.DataFrame, Any, Any], Optional[str]]


REGISTRY: Dict[str, Generator] = {
    mod.MODEL_KEY: Generator(mod.MODEL_KEY, mod.evaluate, mod.should_exit)
    for mod in (orb, rsi_reversion, pattern_signals, hybrid)
}


def get_generator(kind: str) -> Generator:
    key = str(kind).strip().lower()
    try:
        return REGISTRY[key]
    except KeyError:
        raise ConfigurationError(f"no signal generator registered for '{kind}'") from None


__all__ = ["LONG", "SHORT", "Signal", "Generator", "REGISTRY", "get_generator", "opposite"]
