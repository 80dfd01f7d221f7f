from __future__ import annotations

import numpy as np
import pytest

from tradelab.models.patterns import (
    BUY,
    PATTERN_INFO,
    SELL,
    Candle,
    detect_patterns,
    is_bearish_breakout,
    is_bearish_engulfing,
    is_bullish_breakout,
    is_bullish_engulfing,
    is_evening_star,
    is_gravestone_doji,
    is_hammer,
    is_inverted_hammer,
    is_shooting_star,
)
from tests._bars_test_utils import ohlc_frame

HAMMER = Candle(100.0, 100.6, 98.0, 100.5)
INVERTED = Candle(100.0, 102.5, 99.95, 100.5)
DOJI = Candle(100.0, 102.0, 100.0, 100.05)


def test_hammer_shapes() -> None:
    assert is_hammer(HAMMER)
    assert not is_hammer(INVERTED)
    assert is_inverted_hammer(INVERTED)
    assert not is_inverted_hammer(HAMMER)
    assert not is_hammer(Candle(100.0, 100.0, 100.0, 100.0))


def test_shooting_star_needs_prior_strength() -> None:
    up_day = Candle(98.0, 100.2, 97.8, 100.0)
    down_day = Candle(102.0, 102.2, 100.4, 100.6)
    assert is_shooting_star(INVERTED, up_day)
    assert not is_shooting_star(INVERTED, down_day)


def test_gravestone_doji() -> None:
    assert is_gravestone_doji(DOJI)
    assert not is_gravestone_doji(HAMMER)


def test_engulfing_pairs() -> None:
    down = Candle(101.0, 101.5, 99.5, 100.0)
    up_engulf = Candle(99.8, 102.0, 99.5, 101.5)
    assert is_bullish_engulfing(up_engulf, down)
    assert not is_bearish_engulfing(up_engulf, down)

    up = Candle(100.0, 101.5, 99.5, 101.0)
    down_engulf = Candle(101.2, 101.5, 99.0, 99.5)
    assert is_bearish_engulfing(down_engulf, up)
    assert not is_bullish_engulfing(down_engulf, up)


def test_evening_star() -> None:
    first = Candle(100.0, 105.2, 99.8, 105.0)
    middle = Candle(105.6, 106.2, 105.4, 105.8)
    current = Candle(105.5, 105.6, 101.0, 101.5)
    assert is_evening_star(current, middle, first)
    assert not is_evening_star(Candle(105.5, 106.0, 105.0, 105.9), middle, first)


def test_breakouts() -> None:
    flat = [Candle(100.0, 101.0, 99.0, 100.0)] * 5
    assert is_bullish_breakout(flat + [Candle(101.0, 102.2, 100.9, 102.0)])
    assert is_bearish_breakout(flat + [Candle(99.0, 99.1, 97.8, 98.0)])
    assert not is_bullish_breakout(flat[:3] + [Candle(101.0, 102.2, 100.9, 102.0)])


def test_detect_patterns_reports_polarity_and_confidence() -> None:
    window = ohlc_frame([(101.0, 101.5, 99.5, 100.0), (99.8, 102.0, 99.5, 101.5)])
    found = {r.pattern: r for r in detect_patterns(window)}
    assert "bullish_engulfing" in found
    hit = found["bullish_engulfing"]
    assert hit.signal == BUY
    assert hit.confidence == PATTERN_INFO["bullish_engulfing"][1] == 80.0
    assert hit.description


def test_detect_patterns_skips_gap_rows() -> None:
    gap = (np.nan, np.nan, np.nan, np.nan)
    window = ohlc_frame([(101.0, 101.5, 99.5, 100.0), (99.8, 102.0, 99.5, 101.5), gap])
    assert "bullish_engulfing" in {r.pattern for r in detect_patterns(window)}
    assert detect_patterns(ohlc_frame([])) == []


@pytest.mark.parametrize("name", sorted(PATTERN_INFO))
def test_pattern_table_is_well_formed(name: str) -> None:
    polarity, confidence, description = PATTERN_INFO[name]
    assert polarity in (BUY, SELL)
    assert 0.0 < confidence <= 100.0
    assert description
