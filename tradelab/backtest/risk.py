# tradelab/backtest/risk.py
"""
Portfolio-level risk overlay.

``evaluate_entry`` is a pure decision consulted before every entry. The three
gates, in order:

1. PDT floor: day-trade entries need equity >= ``min_capital_for_day_trading``
2. Yearly drawdown halt: once equity drops below
   ``year_start_equity * (1 - yearly_drawdown_halt_pct)`` every new entry is
   refused until the first bar of the next calendar year
3. Goal: once equity reaches ``goal_capital`` day-trade entries stop for good

The sticky parts (halt, goal) are recorded on the state by ``update_after_mark``
which the engine calls after each equity mark; ``roll_year`` clears the halt.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from tradelab.backtest.config import RiskConfig
from tradelab.backtest.state import PortfolioState

logger = logging.getLogger("backtest.risk")

PDT_CAPITAL = "pdt_capital"
DRAWDOWN_HALT = "yearly_drawdown_halt"
GOAL_REACHED = "goal_reached"


@dataclass(frozen=True)
class RiskDecision:
    allow: bool
    reason: str = ""


ALLOW = RiskDecision(True, "ok")


def drawdown_floor(state: PortfolioState, risk: RiskConfig) -> Optional[float]:
    if risk.yearly_drawdown_halt_pct is None:
        return None
    return float(state.year_start_equity) * (1.0 - float(risk.yearly_drawdown_halt_pct) / 100.0)


def evaluate_entry(
    state: PortfolioState,
    risk: RiskConfig,
    *,
    day_trade: bool,
    equity: float,
) -> RiskDecision:
    if day_trade and equity < risk.min_capital_for_day_trading:
        return RiskDecision(False, PDT_CAPITAL)

    if state.halted_year is not None and state.halted_year == state.year:
        return RiskDecision(False, DRAWDOWN_HALT)
    floor = drawdown_floor(state, risk)
    if floor is not None and equity < floor:
        return RiskDecision(False, DRAWDOWN_HALT)

    if day_trade:
        if state.goal_reached:
            return RiskDecision(False, GOAL_REACHED)
        if risk.goal_capital is not None and equity >= risk.goal_capital:
            return RiskDecision(False, GOAL_REACHED)
    return ALLOW


def roll_year(state: PortfolioState, year: int) -> bool:
    """Start a new risk year at the current equity. Returns True on rollover."""
    if state.year == year:
        return False
    if state.halted_year is not None:
        logger.info("drawdown_halt_cleared year=%s equity=%.2f", year, state.equity)
    state.year = int(year)
    state.year_start_equity = float(state.equity)
    state.halted_year = None
    return True


def update_after_mark(state: PortfolioState, risk: RiskConfig) -> None:
    floor = drawdown_floor(state, risk)
    if floor is not None and state.halted_year != state.year and state.equity < floor:
        state.halted_year = state.year
        state.bump("drawdown_halts")
        logger.info(
            "drawdown_halt year=%s equity=%.2f year_start=%.2f floor=%.2f",
            state.year,
            state.equity,
            state.year_start_equity,
            floor,
        )
    if risk.goal_capital is not None and not state.goal_reached and state.equity >= risk.goal_capital:
        state.goal_reached = True
        logger.info("goal_reached equity=%.2f goal=%.2f", state.equity, risk.goal_capital)


def sizing_fraction(equity: float, risk: RiskConfig) -> float:
    frac = float(risk.risk_per_trade_pct) / 100.0
    if risk.scaling_threshold is not None and equity > risk.scaling_threshold:
        frac *= float(risk.scaling_factor)
    return frac


def position_shares(equity: float, cash: float, price: float, side: str, risk: RiskConfig) -> int:
    """Whole shares for a new entry; 0 means the entry cannot be funded."""
    if not (price > 0 and equity > 0 and cash > 0):
        return 0
    budget = min(equity * sizing_fraction(equity, risk), cash)
    return max(0, int(math.floor(budget / price + 1e-9)))


__all__ = [
    "RiskDecision",
    "ALLOW",
    "PDT_CAPITAL",
    "DRAWDOWN_HALT",
    "GOAL_REACHED",
    "drawdown_floor",
    "evaluate_entry",
    "roll_year",
    "update_after_mark",
    "sizing_fraction",
    "position_shares",
]
