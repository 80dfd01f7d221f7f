# tradelab/backtest/haircut.py
"""
Post-hoc haircut: turn the raw simulation into a "realistic" estimate.

Four independent discounts are estimated once from the raw trade log and bars:

- execution slippage: flat, whenever the run traded at all
- trade frequency: grows with trades beyond a baseline, capped
- crisis periods: share of trades entered in symbol-months whose annualised
  close-to-close volatility crossed a threshold, weighted and capped
- simulated data: flat, scaled by the share of |P&L| earned on bars flagged
  synthetic or dated before the real-data cutover

Factor fields hold discounts as fractions in [0, 1]; they combine
multiplicatively. A gain ``x`` maps to ``x * combined``; a loss maps to
``x * (1 + haircut)`` so the realistic view is never better than the raw one.
The realistic equity curve is the raw curve less the cumulative per-trade
haircut, booked on each exit date.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np
import pandas as pd

from tradelab.backtest.config import HaircutConfig
from tradelab.backtest.metrics import TRADING_DAYS

logger = logging.getLogger("backtest.haircut")

MIN_RETURNS_PER_MONTH = 5


@dataclass(frozen=True)
class HaircutFactors:
    execution_slippage_pct: float = 0.0
    frequency_penalty_pct: float = 0.0
    crisis_penalty_pct: float = 0.0
    simulated_data_penalty_pct: float = 0.0
    crisis_trades: int = 0
    simulated_pnl_share: float = 0.0

    @property
    def execution_slippage_multiplier(self) -> float:
        return 1.0 - self.execution_slippage_pct

    @property
    def frequency_penalty_multiplier(self) -> float:
        return 1.0 - self.frequency_penalty_pct

    @property
    def crisis_penalty_multiplier(self) -> float:
        return 1.0 - self.crisis_penalty_pct

    @property
    def simulated_data_penalty_multiplier(self) -> float:
        return 1.0 - self.simulated_data_penalty_pct

    @property
    def combined_multiplier(self) -> float:
        return float(
            self.execution_slippage_multiplier
            * self.frequency_penalty_multiplier
            * self.crisis_penalty_multiplier
            * self.simulated_data_penalty_multiplier
        )

    @property
    def combined_haircut_pct(self) -> float:
        return float((1.0 - self.combined_multiplier) * 100.0)

    def adjust(self, value):
        """Map a raw P&L amount (scalar or array) to its realistic counterpart."""
        m = self.combined_multiplier
        h = 1.0 - m
        return np.where(np.asarray(value) >= 0, np.asarray(value) * m, np.asarray(value) * (1.0 + h))

    def as_dict(self) -> dict:
        return {
            "execution_slippage_pct": float(self.execution_slippage_pct),
            "frequency_penalty_pct": float(self.frequency_penalty_pct),
            "crisis_penalty_pct": float(self.crisis_penalty_pct),
            "simulated_data_penalty_pct": float(self.simulated_data_penalty_pct),
            "combined_multiplier": self.combined_multiplier,
            "combined_haircut_pct": self.combined_haircut_pct,
            "crisis_trades": int(self.crisis_trades),
            "simulated_pnl_share": float(self.simulated_pnl_share),
        }


def _clip01(x: float) -> float:
    return float(min(1.0, max(0.0, x)))


def _rows(trades: Iterable[Any] | None) -> List[Mapping[str, Any]]:
    if not trades:
        return []
    return [t.as_dict() if hasattr(t, "as_dict") else t for t in trades]


def _month_key(ts) -> Tuple[int, int]:
    ts = pd.Timestamp(ts)
    return ts.year, ts.month


def crisis_months(bars: Mapping[str, pd.DataFrame], vol_threshold: float) -> Set[Tuple[str, int, int]]:
    """(symbol, year, month) triples whose annualised volatility >= threshold."""
    out: Set[Tuple[str, int, int]] = set()
    for symbol, df in bars.items():
        if df is None or df.empty:
            continue
        closes = df["close"].dropna().astype(float)
        rets = closes.pct_change().dropna()
        if rets.empty:
            continue
        grouped = rets.groupby([rets.index.year, rets.index.month])
        vol = grouped.std(ddof=1) * np.sqrt(TRADING_DAYS)
        counts = grouped.count()
        for (year, month), value in vol.items():
            if counts[(year, month)] < MIN_RETURNS_PER_MONTH or pd.isna(value):
                continue
            if value >= vol_threshold:
                out.add((str(symbol), int(year), int(month)))
    return out


def frequency_penalty(total_trades: int, cfg: HaircutConfig) -> float:
    excess = max(0, int(total_trades) - int(cfg.frequency_baseline_trades))
    pct = min(float(cfg.frequency_penalty_cap_pct), excess * float(cfg.frequency_penalty_per_trade_pct))
    return _clip01(pct / 100.0)


def estimate_haircut(
    trades,
    bars: Mapping[str, pd.DataFrame] | None,
    raw_stats: Any,
    cfg: Optional[HaircutConfig] = None,
) -> HaircutFactors:
    cfg = cfg or HaircutConfig()
    rows = _rows(trades)
    total = int(getattr(raw_stats, "total_trades", len(rows)) or len(rows))
    if not rows or total <= 0:
        return HaircutFactors()

    execution = _clip01(float(cfg.execution_slippage_pct) / 100.0)
    frequency = frequency_penalty(total, cfg)

    months = crisis_months(bars or {}, float(cfg.crisis_vol_threshold))
    in_crisis = sum(
        1 for t in rows if (str(t.get("symbol")), *_month_key(t.get("entry_date"))) in months
    )
    crisis_fraction = in_crisis / len(rows)
    crisis = _clip01(min(float(cfg.crisis_penalty_cap_pct), float(cfg.crisis_weight_pct) * crisis_fraction) / 100.0)

    abs_pnl = np.array([abs(float(t.get("pnl", 0.0) or 0.0)) for t in rows], dtype=float)
    synthetic = np.array([bool(t.get("synthetic", False)) for t in rows], dtype=bool)
    denom = float(abs_pnl.sum())
    share = float(abs_pnl[synthetic].sum() / denom) if denom > 0 else 0.0
    simulated = _clip01(float(cfg.simulated_data_penalty_pct) / 100.0 * share)

    factors = HaircutFactors(
        execution_slippage_pct=execution,
        frequency_penalty_pct=frequency,
        crisis_penalty_pct=crisis,
        simulated_data_penalty_pct=simulated,
        crisis_trades=int(in_crisis),
        simulated_pnl_share=share,
    )
    logger.info(
        "haircut trades=%d execution=%.4f frequency=%.4f crisis=%.4f (months=%d trades=%d) simulated=%.4f combined_pct=%.2f",
        total,
        execution,
        frequency,
        crisis,
        len(months),
        in_crisis,
        simulated,
        factors.combined_haircut_pct,
    )
    return factors


def apply_haircut(
    trades,
    equity: pd.Series | None,
    factors: HaircutFactors,
) -> Dict[str, Any]:
    """Realistic trade log and equity curve for ``factors``."""
    realistic_trades = []
    for t in trades or []:
        pnl = float(t.pnl)
        adj = float(factors.adjust(pnl))
        notional = float(t.entry_price * t.shares)
        realistic_trades.append(
            replace(
                t,
                pnl=adj,
                return_pct=adj / notional * 100.0 if notional > 0 else 0.0,
                costs=float(t.costs + (pnl - adj)),
            )
        )

    if equity is None or len(equity) == 0:
        curve = pd.Series(dtype=float, name="realistic_equity")
    else:
        # each trade's haircut lands on its exit date
        curve = equity.astype(float).copy()
        if realistic_trades:
            cut = pd.Series(
                [r.pnl - t.pnl for r, t in zip(realistic_trades, trades)],
                index=pd.DatetimeIndex([pd.Timestamp(t.exit_date) for t in trades]),
                dtype=float,
            )
            cum = cut.groupby(level=0).sum().sort_index().cumsum()
            curve = curve + cum.reindex(curve.index, method="ffill").fillna(0.0).to_numpy()
        curve.name = "realistic_equity"
    return {"trades": realistic_trades, "equity": curve}


__all__ = [
    "HaircutFactors",
    "crisis_months",
    "frequency_penalty",
    "estimate_haircut",
    "apply_haircut",
]
