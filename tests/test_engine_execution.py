from __future__ import annotations

import math
import warnings

import numpy as np
import pandas as pd
import pytest

from tradelab.backtest.config import RiskConfig, StrategyConfig
from tradelab.backtest.engine import CostModel, TRADE_COLUMNS, run_backtest
from tradelab.errors import BacktestCancelled, ConfigurationError, DataGapWarning, InputError
from tests._bars_test_utils import ORB_DAY1, ORB_DAY2, ohlc_frame, orb_breakout_frame, random_walk_frame


def _leg_cost(price: float, shares: int, bps: float = 2.0) -> float:
    return price * shares * bps / 10_000.0


def test_orb_breakout_day_trade_closes_at_session_end() -> None:
    report = run_backtest({"aaa": orb_breakout_frame()}, StrategyConfig(kind="orb"))

    trades = report["trades"]
    assert len(trades) == 1
    t = trades[0]
    assert t.symbol == "AAA"
    assert t.side == "long"
    assert t.entry_price == pytest.approx(101.0)
    assert t.exit_price == pytest.approx(102.5)
    assert t.exit_reason == "end_of_day"
    # 10% of 100k at 101 -> 99 whole shares
    assert t.shares == 99
    costs = _leg_cost(101.0, 99) + _leg_cost(102.5, 99)
    assert t.costs == pytest.approx(costs)
    assert t.gross_pnl == pytest.approx(1.5 * 99)
    assert t.pnl == pytest.approx(1.5 * 99 - costs)
    assert t.signal_source == "orb"

    equity = report["equity"]
    assert len(equity) == 2
    assert equity.iloc[0] == pytest.approx(100_000.0)
    assert equity.iloc[-1] == pytest.approx(100_000.0 + t.pnl)

    raw = report["raw"]
    assert raw.total_trades == 1
    assert raw.winning_trades == 1
    assert raw.win_rate_pct == pytest.approx(100.0)
    assert raw.ending_equity == pytest.approx(100_000.0 + t.pnl)
    assert raw.total_costs == pytest.approx(costs)

    # one trade: only the execution haircut applies
    assert report["haircut"].combined_multiplier == pytest.approx(0.88)
    assert report["realistic"].ending_equity == pytest.approx(100_000.0 + t.pnl * 0.88)
    assert report["realistic"].ending_equity < raw.ending_equity
    assert list(report["trades_df"].columns) == TRADE_COLUMNS
    assert report["meta"]["runtime_counters"]["entries"] == 1
    assert report["meta"]["runtime_counters"]["exit_end_of_day"] == 1


def test_stop_wins_when_stop_and_target_share_a_bar() -> None:
    frame = ohlc_frame([ORB_DAY1, (101.0, 104.0, 99.0, 102.0)])
    report = run_backtest({"AAA": frame}, StrategyConfig(kind="orb"))

    (t,) = report["trades"]
    assert t.exit_reason == "stop_loss"
    assert t.exit_price == pytest.approx(101.0 * 0.99)
    assert t.pnl < 0


def test_gap_through_stop_fills_at_open() -> None:
    frame = orb_breakout_frame((95.0, 96.0, 94.0, 95.5))
    strategy = StrategyConfig(kind="orb", day_trade=False)
    report = run_backtest({"AAA": frame}, strategy)

    (t,) = report["trades"]
    assert t.exit_reason == "stop_loss"
    assert t.exit_price == pytest.approx(95.0)
    assert t.bars_held == 2


def test_profit_target_fill() -> None:
    frame = ohlc_frame([ORB_DAY1, (101.0, 103.5, 100.8, 103.2)])
    report = run_backtest({"AAA": frame}, StrategyConfig(kind="orb"))

    (t,) = report["trades"]
    assert t.exit_reason == "profit_target"
    assert t.exit_price == pytest.approx(101.0 * 1.02)


def test_short_breakdown_when_shorts_allowed() -> None:
    frame = ohlc_frame([(100.0, 101.0, 99.0, 100.0), (98.0, 98.5, 96.5, 97.0)])

    no_short = run_backtest({"AAA": frame}, StrategyConfig(kind="orb"))
    assert no_short["trades"] == []

    report = run_backtest({"AAA": frame}, StrategyConfig(kind="orb", allow_short=True))
    (t,) = report["trades"]
    assert t.side == "short"
    assert t.shares == 102
    costs = _leg_cost(98.0, 102) + _leg_cost(97.0, 102)
    assert t.gross_pnl == pytest.approx(102.0)
    assert t.pnl == pytest.approx(102.0 - costs)
    assert report["equity"].iloc[-1] == pytest.approx(100_000.0 + t.pnl)


def test_trailing_stop_uses_extreme_of_earlier_bars() -> None:
    frame = ohlc_frame([ORB_DAY1, (101.0, 104.0, 100.5, 103.5), (103.4, 103.6, 102.0, 102.5)])
    strategy = StrategyConfig(
        kind="orb", day_trade=False, profit_target_pct=10.0, stop_loss_pct=5.0, trailing_stop_pct=1.5
    )
    report = run_backtest({"AAA": frame}, strategy)

    (t,) = report["trades"]
    assert t.exit_reason == "trailing_stop"
    assert t.exit_price == pytest.approx(104.0 * 0.985)


def test_time_stop_after_max_hold_bars() -> None:
    frame = ohlc_frame([ORB_DAY1, (101.0, 102.0, 100.5, 101.5), (101.5, 102.0, 101.0, 101.8), (101.8, 102.2, 101.2, 102.0)])
    strategy = StrategyConfig(kind="orb", day_trade=False, max_hold_bars=2)
    report = run_backtest({"AAA": frame}, strategy)

    t = report["trades"][0]
    assert t.exit_reason == "time_stop"
    assert t.exit_price == pytest.approx(101.8)
    assert t.bars_held == 2


def test_open_position_closed_at_end_of_data() -> None:
    frame = ohlc_frame([ORB_DAY1, (101.0, 102.0, 100.5, 101.5), (101.5, 102.0, 101.0, 101.8)])
    report = run_backtest({"AAA": frame}, StrategyConfig(kind="orb", day_trade=False))

    (t,) = report["trades"]
    assert t.exit_reason == "end_of_data"
    assert t.exit_price == pytest.approx(101.8)
    assert report["equity"].iloc[-1] == pytest.approx(100_000.0 + t.pnl)


def test_entries_do_not_depend_on_the_entry_bar_high_low_close() -> None:
    base = random_walk_frame(n=120, seed=11)
    t = 60
    mutated = base.copy()
    mutated.iloc[t, mutated.columns.get_loc("high")] *= 1.10
    mutated.iloc[t, mutated.columns.get_loc("low")] *= 0.90
    mutated.iloc[t, mutated.columns.get_loc("close")] *= 0.95

    strategy = StrategyConfig(kind="orb")
    cut = base.index[t]

    def entries(report):
        return [
            (tr.symbol, tr.entry_date, tr.entry_price, tr.shares, tr.side)
            for tr in report["trades"]
            if tr.entry_date <= cut
        ]

    assert entries(run_backtest({"AAA": base}, strategy)) == entries(run_backtest({"AAA": mutated}, strategy))


def test_rerun_is_deterministic() -> None:
    bars = {"AAA": random_walk_frame(seed=1), "BBB": random_walk_frame(seed=2)}
    strategy = StrategyConfig(kind="hybrid", allow_short=True)
    first = run_backtest(bars, strategy)
    second = run_backtest(bars, strategy)

    pd.testing.assert_frame_equal(first["trades_df"], second["trades_df"])
    pd.testing.assert_series_equal(first["equity"], second["equity"])
    assert first["raw"] == second["raw"]
    assert first["haircut"] == second["haircut"]


def test_one_open_position_per_symbol() -> None:
    bars = {"AAA": random_walk_frame(seed=3), "BBB": random_walk_frame(seed=4)}
    strategy = StrategyConfig(kind="orb", day_trade=False, max_hold_bars=5, allow_short=True)
    report = run_backtest(bars, strategy)
    assert report["trades"]

    for sym in ("AAA", "BBB"):
        own = sorted((t for t in report["trades"] if t.symbol == sym), key=lambda t: t.entry_date)
        for prev, nxt in zip(own, own[1:]):
            assert nxt.entry_date > prev.exit_date


@pytest.mark.parametrize("kind", ["orb", "rsi", "pattern", "hybrid"])
def test_every_strategy_kind_produces_consistent_report(kind: str) -> None:
    bars = {"AAA": random_walk_frame(seed=5), "BBB": random_walk_frame(seed=6, vol=0.03)}
    report = run_backtest(bars, StrategyConfig(kind=kind, allow_short=True))

    dates = bars["AAA"].index.union(bars["BBB"].index)
    assert len(report["equity_curve"]) == len(dates)
    assert report["realistic"].ending_equity <= report["raw"].ending_equity + 1e-9
    assert (report["realistic_equity"] <= report["equity"] + 1e-9).all()
    assert report["raw"].total_trades == len(report["trades"])
    assert math.isfinite(report["raw"].sharpe)
    counters = report["meta"]["runtime_counters"]
    assert counters["entries"] == counters["exits"] == len(report["trades"])
    for key in ("execution_slippage_pct", "frequency_penalty_pct", "crisis_penalty_pct", "simulated_data_penalty_pct"):
        assert 0.0 <= getattr(report["haircut"], key) <= 1.0


def test_gap_bar_is_skipped_and_reported() -> None:
    gap = (np.nan, np.nan, np.nan, np.nan)
    frame = ohlc_frame([ORB_DAY1, gap, ORB_DAY2])

    with pytest.warns(DataGapWarning, match="AAA"):
        report = run_backtest({"AAA": frame}, StrategyConfig(kind="orb"))

    assert report["meta"]["warnings"]["data_gaps"] == 1
    assert report["meta"]["warnings"]["data_gaps_by_symbol"] == {"AAA": 1}
    assert report["meta"]["runtime_counters"]["data_gaps"] == 1
    # the breakout is measured against the last valid bar before the gap
    (t,) = report["trades"]
    assert t.entry_date == frame.index[2]
    assert len(report["equity"]) == 3


def test_empty_input_yields_zero_activity_report() -> None:
    for bars in ({}, {"AAA": ohlc_frame([])}):
        report = run_backtest(bars, StrategyConfig())
        assert report["trades"] == []
        assert report["raw"].total_trades == 0
        assert report["raw"].ending_equity == pytest.approx(100_000.0)
        assert report["raw"].total_return_pct == 0.0
        assert report["haircut"].combined_haircut_pct == 0.0
        assert report["realistic"].ending_equity == pytest.approx(100_000.0)
        assert report["trades_df"].empty


def test_pdt_floor_blocks_day_trades() -> None:
    report = run_backtest({"AAA": orb_breakout_frame()}, StrategyConfig(kind="orb"), RiskConfig(initial_capital=20_000.0))
    assert report["trades"] == []
    counters = report["meta"]["runtime_counters"]
    assert counters["signals"] == 1
    assert counters["blocked_pdt_capital"] == 1

    swing = run_backtest(
        {"AAA": orb_breakout_frame()},
        StrategyConfig(kind="orb", day_trade=False),
        RiskConfig(initial_capital=20_000.0),
    )
    assert len(swing["trades"]) == 1


def test_position_too_small_for_one_share_is_counted() -> None:
    risk = RiskConfig(initial_capital=1_000.0, min_capital_for_day_trading=0.0, risk_per_trade_pct=5.0)
    report = run_backtest({"AAA": orb_breakout_frame()}, StrategyConfig(kind="orb"), risk)
    assert report["trades"] == []
    assert report["meta"]["runtime_counters"]["blocked_size"] == 1


def test_cost_model_disabled_means_no_costs() -> None:
    report = run_backtest(
        {"AAA": orb_breakout_frame()}, StrategyConfig(kind="orb"), costs=CostModel.from_inputs(enabled=False)
    )
    (t,) = report["trades"]
    assert t.costs == 0.0
    assert t.pnl == pytest.approx(1.5 * 99)


def test_isolated_mode_splits_capital_per_symbol() -> None:
    bars = {"AAA": orb_breakout_frame(), "BBB": orb_breakout_frame()}
    report = run_backtest(bars, StrategyConfig(kind="orb"), isolated=True)

    assert report["meta"]["mode"] == "isolated"
    assert [t.symbol for t in report["trades"]] == ["AAA", "BBB"]
    for t in report["trades"]:
        assert t.shares == 49
    expected = 2 * (1.5 * 49 - _leg_cost(101.0, 49) - _leg_cost(102.5, 49))
    assert report["equity"].iloc[0] == pytest.approx(100_000.0)
    assert report["raw"].ending_equity == pytest.approx(100_000.0 + expected)


def test_shared_mode_sizes_from_one_portfolio() -> None:
    bars = {"AAA": orb_breakout_frame(), "BBB": orb_breakout_frame()}
    report = run_backtest(bars, StrategyConfig(kind="orb"))
    assert report["meta"]["mode"] == "shared"
    assert [t.shares for t in report["trades"]] == [99, 99]


def test_should_stop_cancels_the_run() -> None:
    with pytest.raises(BacktestCancelled):
        run_backtest({"AAA": random_walk_frame(n=50)}, StrategyConfig(), should_stop=lambda: True)

    calls = {"n": 0}

    def stop_later() -> bool:
        calls["n"] += 1
        return calls["n"] > 10

    with pytest.raises(BacktestCancelled):
        run_backtest({"AAA": random_walk_frame(n=50)}, StrategyConfig(), should_stop=stop_later)


def test_progress_events_and_broken_sink() -> None:
    events = []
    run_backtest({"AAA": orb_breakout_frame()}, StrategyConfig(), progress_cb=lambda e, p: events.append(e))
    assert events[0] == "run_start"
    assert events[-1] == "run_done"
    assert "bar_progress" in events

    def boom(event, payload):
        raise RuntimeError("sink down")

    report = run_backtest({"AAA": orb_breakout_frame()}, StrategyConfig(), progress_cb=boom)
    assert len(report["trades"]) == 1


def test_invalid_inputs_fail_before_simulation() -> None:
    with pytest.raises(ConfigurationError):
        run_backtest({"AAA": orb_breakout_frame()}, StrategyConfig(stop_loss_pct=3.0, profit_target_pct=2.0))
    with pytest.raises(ConfigurationError):
        run_backtest({"AAA": orb_breakout_frame()}, {"kind": "macd_cross"})

    frame = orb_breakout_frame()
    with pytest.raises(InputError, match="AAA"):
        run_backtest({"AAA": frame.iloc[::-1]}, StrategyConfig())


def test_strategy_accepts_plain_dict() -> None:
    report = run_backtest({"AAA": orb_breakout_frame()}, {"kind": "orb", "profit_target_pct": 3, "stop_loss_pct": 1})
    assert report["meta"]["strategy"]["profit_target_pct"] == 3.0
    assert len(report["trades"]) == 1


def test_no_warning_without_gaps() -> None:
    with warnings.catch_warnings():
        warnings.simplefilter("error", DataGapWarning)
        report = run_backtest({"AAA": orb_breakout_frame()}, StrategyConfig())
    assert report["meta"]["warnings"]["data_gaps"] == 0


def test_same_open_entries_ignore_other_symbols_later_in_the_bar() -> None:
    risk = RiskConfig(risk_per_trade_pct=60.0)
    costs = CostModel.from_inputs(enabled=False)
    crashed = ohlc_frame([ORB_DAY1, (101.0, 101.5, 69.0, 70.0)])

    def bbb_entry(aaa_frame):
        report = run_backtest({"AAA": aaa_frame, "BBB": orb_breakout_frame()}, StrategyConfig(kind="orb"), risk, costs=costs)
        by_symbol = {t.symbol: t for t in report["trades"]}
        return by_symbol["AAA"], by_symbol["BBB"]

    aaa_up, bbb_up = bbb_entry(orb_breakout_frame())
    aaa_down, bbb_down = bbb_entry(crashed)

    assert aaa_up.shares == aaa_down.shares == 594
    assert aaa_down.exit_reason == "stop_loss"
    # BBB only has the cash left after AAA's fill at the same open
    assert bbb_up.shares == bbb_down.shares == 396
    assert (aaa_up.shares + bbb_up.shares) * 101.0 <= 100_000.0


def test_drawdown_halt_blocks_rest_of_year_then_resumes() -> None:
    bars = ohlc_frame(
        [
            ORB_DAY1,
            (101.0, 101.5, 81.0, 81.0),     # breakout entry, closes -19.8 %
            (102.0, 103.0, 101.0, 102.5),   # breakout, halted
            (104.0, 105.0, 103.0, 104.5),   # breakout, halted
            (106.0, 107.0, 105.5, 106.5),   # 2024-01-01: new risk year
        ],
        start="2023-12-26",
    )
    strategy = StrategyConfig(kind="orb", profit_target_pct=50.0, stop_loss_pct=20.0)
    risk = RiskConfig(risk_per_trade_pct=100.0, min_capital_for_day_trading=0.0)
    report = run_backtest({"AAA": bars}, strategy, risk, costs=CostModel.from_inputs(enabled=False))

    first, second = report["trades"]
    assert first.pnl == pytest.approx(-20.0 * 990)
    assert report["equity"].iloc[1] == pytest.approx(80_200.0)

    counters = report["meta"]["runtime_counters"]
    assert counters["signals"] == 4
    assert counters["drawdown_halts"] == 1
    assert counters["blocked_yearly_drawdown_halt"] == 2

    assert second.entry_date == pd.Timestamp("2024-01-01", tz="UTC")
    assert second.shares == 756
    assert second.pnl == pytest.approx(0.5 * 756)


def test_realistic_trade_log_adds_up_to_realistic_equity() -> None:
    # day 2 wins at the close, day 3 breaks out again and is stopped out
    bars = {"AAA": orb_breakout_frame((103.5, 104.0, 102.0, 103.0))}
    report = run_backtest(bars, StrategyConfig(kind="orb"))

    raw_pnl = [t.pnl for t in report["trades"]]
    assert len(raw_pnl) == 2
    assert raw_pnl[0] > 0 > raw_pnl[1]
    assert [t.exit_reason for t in report["trades"]] == ["end_of_day", "stop_loss"]

    realistic = report["realistic"]
    realistic_pnl = sum(t.pnl for t in report["realistic_trades"])
    assert realistic_pnl == pytest.approx(realistic.ending_equity - 100_000.0)
    assert report["realistic_equity"].iloc[-1] == pytest.approx(realistic.ending_equity)
    assert sum(raw_pnl) == pytest.approx(report["raw"].ending_equity - 100_000.0)
    assert realistic.ending_equity < report["raw"].ending_equity
    assert realistic.win_rate_pct == pytest.approx(50.0)
