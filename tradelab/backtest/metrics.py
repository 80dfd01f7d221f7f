# tradelab/backtest/metrics.py
"""
Result aggregation and performance metrics.

Input contracts:
- equity: pd.Series (cumulative equity; index=DatetimeIndex)
- trades: list of TradeRecord or trade dicts (see backtest/state.py)

``aggregate_stats`` reduces one view (raw or realistic) into ``AggregateStats``.
Everything here is numpy/pandas only and safe on empty inputs: an empty trade
log is a valid zero-activity result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from typing import Any, Iterable, List, Mapping

import numpy as np
import pandas as pd

TRADING_DAYS = 252

logger = logging.getLogger("backtest.metrics")


def _to_float(x, default=0.0):
    try:
        v = float(x)
        if np.isnan(v) or np.isinf(v):
            return default
        return v
    except Exception:
        return default


def _trade_dicts(trades: Iterable[Any] | None) -> List[Mapping[str, Any]]:
    if not trades:
        return []
    return [t.as_dict() if hasattr(t, "as_dict") else t for t in trades]


# ---------- Baseline performance ----------

def sharpe_ratio(daily_returns: pd.Series, risk_free_daily: float = 0.0) -> float:
    r = daily_returns.dropna().astype(float) - risk_free_daily
    sd = r.std(ddof=0)
    if len(r) == 0 or sd == 0:
        return 0.0
    return float((r.mean() / sd) * np.sqrt(TRADING_DAYS))

def cagr(equity: pd.Series) -> float:
    if equity is None or len(equity) < 2:
        return 0.0
    start_val = _to_float(equity.iloc[0], default=np.nan)
    end_val = _to_float(equity.iloc[-1], default=np.nan)
    if not np.isfinite(start_val) or not np.isfinite(end_val) or start_val <= 0:
        return 0.0
    days = (equity.index[-1] - equity.index[0]).days
    if days <= 0:
        return 0.0
    years = days / 365.25
    ratio = end_val / start_val
    if ratio <= 0:
        return 0.0
    try:
        value = ratio ** (1 / years) - 1.0
    except (OverflowError, ValueError):
        return 0.0
    if isinstance(value, complex):
        return 0.0
    return float(value)

def max_drawdown(equity: pd.Series) -> float:
    """Worst peak-to-trough move as a (non-positive) fraction."""
    if equity is None or len(equity) == 0:
        return 0.0
    running_max = equity.cummax()
    dd = equity / running_max - 1.0
    return float(min(0.0, dd.min()))

# ---------- Trade summaries ----------

def summarize_trades(trades) -> dict:
    rows = _trade_dicts(trades)
    if not rows:
        return {"trades": 0, "win_rate": 0.0, "avg_return": 0.0, "avg_holding_days": 0.0}
    rets = np.array([_to_float(t.get("return_pct", 0.0)) for t in rows], dtype=float)
    holds = np.array([_to_float(t.get("holding_days", 0.0)) for t in rows], dtype=float)
    wins = (rets > 0).sum()
    return {
        "trades": int(len(rows)),
        "win_rate": float(wins / len(rows)),
        "avg_return": float(np.nanmean(rets)) if len(rets) else 0.0,
        "avg_holding_days": float(np.nanmean(holds)) if len(holds) else 0.0,
    }

def profit_factor(trades) -> float:
    """Gross dollar profit over gross dollar loss."""
    rows = _trade_dicts(trades)
    if not rows:
        return 0.0
    pnl = np.array([_to_float(t.get("pnl", 0.0)) for t in rows], dtype=float)
    gp = pnl[pnl > 0].sum()
    gl = -pnl[pnl < 0].sum()
    if gl == 0:
        return float(gp) if gp > 0 else 0.0
    return float(gp / gl)

def summarize_costs(trades, equity: pd.Series | None) -> dict:
    """Turnover and cost drag of a trade log relative to the starting equity."""
    rows = _trade_dicts(trades)
    turnover = 0.0
    total_cost = 0.0
    for t in rows:
        shares = _to_float(t.get("shares", 0.0))
        turnover += abs(_to_float(t.get("entry_price", 0.0)) * shares)
        turnover += abs(_to_float(t.get("exit_price", 0.0)) * shares)
        total_cost += _to_float(t.get("costs", 0.0))
    start_equity = _to_float(equity.iloc[0], 0.0) if equity is not None and len(equity) else 0.0
    turnover_multiple = turnover / start_equity if start_equity > 0 else 0.0
    cost_bps = total_cost / turnover * 10_000.0 if turnover > 0 else 0.0
    if rows and logger.isEnabledFor(logging.INFO):
        logger.info(
            "summarize_costs turnover=%.2f multiple=%.2f cost=%.2f cost_bps=%.2f",
            turnover,
            turnover_multiple,
            total_cost,
            cost_bps,
        )
    return {
        "turnover_gross": float(turnover),
        "turnover_multiple": float(turnover_multiple),
        "total_cost": float(total_cost),
        "cost_bps_weighted": float(cost_bps),
    }


# ---------- Aggregate view ----------

@dataclass(frozen=True)
class AggregateStats:
    starting_equity: float
    ending_equity: float
    total_return_pct: float
    win_rate_pct: float
    avg_win_pct: float
    avg_loss_pct: float
    max_drawdown_pct: float      # positive number, e.g. 12.5 for -12.5 %
    total_trades: int
    winning_trades: int
    losing_trades: int
    total_costs: float
    profit_factor: float
    largest_win: float
    largest_loss: float
    avg_holding_days: float
    sharpe: float
    cagr: float

    def as_dict(self) -> dict:
        return asdict(self)


def aggregate_stats(trades, equity: pd.Series | None, starting_equity: float) -> AggregateStats:
    rows = _trade_dicts(trades)
    start = float(starting_equity)
    curve = equity if equity is not None and len(equity) else None
    ending = _to_float(curve.iloc[-1], start) if curve is not None else start

    pnl = np.array([_to_float(t.get("pnl", 0.0)) for t in rows], dtype=float)
    rets = np.array([_to_float(t.get("return_pct", 0.0)) for t in rows], dtype=float)
    costs = float(sum(_to_float(t.get("costs", 0.0)) for t in rows))
    wins = pnl > 0
    losses = pnl < 0
    n = int(len(rows))

    daily = curve.pct_change().dropna() if curve is not None and len(curve) > 1 else pd.Series(dtype=float)
    anchored = None
    if curve is not None:
        # anchor the curve at the starting equity so a first-bar loss counts
        anchored = pd.concat([pd.Series([start], index=curve.index[:1]), curve])

    return AggregateStats(
        starting_equity=start,
        ending_equity=float(ending),
        total_return_pct=float((ending / start - 1.0) * 100.0) if start > 0 else 0.0,
        win_rate_pct=float(wins.sum() / n * 100.0) if n else 0.0,
        avg_win_pct=float(rets[wins].mean()) if wins.any() else 0.0,
        avg_loss_pct=float(rets[losses].mean()) if losses.any() else 0.0,
        max_drawdown_pct=float(abs(max_drawdown(anchored)) * 100.0) if anchored is not None else 0.0,
        total_trades=n,
        winning_trades=int(wins.sum()),
        losing_trades=int(losses.sum()),
        total_costs=costs,
        profit_factor=profit_factor(rows),
        largest_win=float(pnl.max()) if wins.any() else 0.0,
        largest_loss=float(pnl.min()) if losses.any() else 0.0,
        avg_holding_days=summarize_trades(rows)["avg_holding_days"],
        sharpe=sharpe_ratio(daily) if len(daily) else 0.0,
        cagr=cagr(curve) if curve is not None else 0.0,
    )


__all__ = [
    "TRADING_DAYS",
    "AggregateStats",
    "aggregate_stats",
    "sharpe_ratio",
    "cagr",
    "max_drawdown",
    "summarize_trades",
    "profit_factor",
    "summarize_costs",
]
