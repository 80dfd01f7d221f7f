# tradelab/models/_signal.py
from __future__ import annotations

from dataclasses import dataclass

LONG = "long"
SHORT = "short"


@dataclass(frozen=True)
class Signal:
    """Entry intent produced by a generator for one symbol on one bar."""

    side: str               # "long" | "short"
    confidence: float       # 0-100
    source: str             # generator key, e.g. "orb" or "hybrid:orb+rsi"
    reason: str = ""

    @property
    def sign(self) -> float:
        return 1.0 if self.side == LONG else -1.0


def opposite(side: str) -> str:
    return SHORT if side == LONG else LONG
