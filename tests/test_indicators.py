from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from tradelab.models import indicators
from tests._bars_test_utils import random_walk_frame


def test_sma_and_ema_seed() -> None:
    s = pd.Series([1.0, 2.0, 3.0, 4.0, 5.0])
    assert indicators.sma(s, 3).tolist()[2:] == [2.0, 3.0, 4.0]
    assert indicators.sma(s, 3).iloc[:2].isna().all()

    e = indicators.ema(s, 3)
    assert e.iloc[:2].isna().all()
    assert e.iloc[2] == pytest.approx(2.0)
    assert e.iloc[3] == pytest.approx(3.0)
    assert e.iloc[4] == pytest.approx(4.0)
    assert indicators.ema(pd.Series([1.0, 2.0]), 3).isna().all()


def test_rsi_bounds_and_warmup() -> None:
    close = random_walk_frame(n=200, seed=9)["close"]
    values = indicators.rsi(close, 14)
    assert values.iloc[:14].isna().all()
    assert values.iloc[14:].notna().all()
    assert ((values.dropna() >= 0.0) & (values.dropna() <= 100.0)).all()


def test_rsi_extremes() -> None:
    rising = pd.Series(np.arange(1.0, 40.0))
    assert indicators.rsi(rising, 14).iloc[-1] == pytest.approx(100.0)
    falling = pd.Series(np.arange(40.0, 1.0, -1.0))
    assert indicators.rsi(falling, 14).iloc[-1] == pytest.approx(0.0)


def test_macd_columns_and_signal_warmup() -> None:
    close = random_walk_frame(n=120, seed=2)["close"]
    out = indicators.macd(close)
    assert list(out.columns) == ["macd", "signal", "histogram"]
    assert len(out) == len(close)
    # slow EMA needs 26 values, the signal line 9 more
    assert out["macd"].iloc[:25].isna().all()
    assert out["signal"].iloc[:33].isna().all()
    assert out["signal"].iloc[33:].notna().all()
    np.testing.assert_allclose(
        out["histogram"].dropna(), (out["macd"] - out["signal"]).dropna()
    )


def test_bollinger_flat_series_collapses() -> None:
    out = indicators.bollinger(pd.Series([10.0] * 30), 20, 2.0)
    last = out.iloc[-1]
    assert last["upper"] == pytest.approx(10.0)
    assert last["lower"] == pytest.approx(10.0)
    assert last["bandwidth"] == pytest.approx(0.0)
    assert out["middle"].iloc[:19].isna().all()


def test_adx_trend_direction() -> None:
    n = 80
    base = pd.Series(np.linspace(100.0, 160.0, n))
    out = indicators.adx(base + 1.0, base - 1.0, base, 14)
    assert list(out.columns) == ["adx", "plus_di", "minus_di"]
    assert out["plus_di"].iloc[-1] > out["minus_di"].iloc[-1]
    assert out["adx"].iloc[-1] > 25.0


def test_indicators_are_causal() -> None:
    close = random_walk_frame(n=100, seed=4)["close"]
    full = indicators.rsi(close, 14)
    head = indicators.rsi(close.iloc[:60], 14)
    pd.testing.assert_series_equal(full.iloc[:60], head)


def test_range_pct() -> None:
    df = pd.DataFrame({"high": [11.0], "low": [9.0], "close": [10.0]})
    assert indicators.range_pct(df).iloc[0] == pytest.approx(0.2)
