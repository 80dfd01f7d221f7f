# tradelab/backtest/state.py
"""
Simulation state and ledger records.

``PortfolioState`` is mutable and owned by exactly one simulation; everything
else here is a value object. Trades and equity points are frozen once written.

Cash accounting:
- long entry debits ``entry_price * shares``; the exit credits the proceeds
- short entry leaves cash untouched; the exit credits the realised P&L
- short notional is reserved as collateral and is not available for sizing
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

import pandas as pd

from tradelab.models._signal import LONG


@dataclass
class OpenPosition:
    symbol: str
    side: str
    entry_price: float
    entry_date: pd.Timestamp
    entry_index: int
    shares: int
    stop_price: float
    target_price: float
    day_trade: bool = False
    entry_cost_multiplier: float = 1.0
    synthetic: bool = False
    signal_source: str = ""
    signal_confidence: float = 0.0
    highest: float = 0.0
    lowest: float = 0.0
    bars_held: int = 0

    def __post_init__(self) -> None:
        if not self.highest:
            self.highest = float(self.entry_price)
        if not self.lowest:
            self.lowest = float(self.entry_price)

    @property
    def sign(self) -> float:
        return 1.0 if self.side == LONG else -1.0

    @property
    def notional(self) -> float:
        return float(self.entry_price * self.shares)

    def unrealized(self, price: float) -> float:
        return float((price - self.entry_price) * self.shares * self.sign)

    def equity_value(self, price: float) -> float:
        """Contribution of this position to account equity at ``price``."""
        if self.side == LONG:
            return float(self.shares * price)
        return self.unrealized(price)


@dataclass(frozen=True)
class TradeRecord:
    symbol: str
    entry_date: pd.Timestamp
    exit_date: pd.Timestamp
    entry_price: float
    exit_price: float
    shares: int
    side: str
    pnl: float              # net of costs
    gross_pnl: float
    return_pct: float       # net, percent of entry notional
    exit_reason: str
    costs: float
    entry_cost: float = 0.0
    exit_cost: float = 0.0
    holding_days: int = 0
    bars_held: int = 0
    signal_source: str = ""
    synthetic: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EquityPoint:
    date: pd.Timestamp
    equity: float


@dataclass
class PortfolioState:
    cash: float
    positions: Dict[str, OpenPosition] = field(default_factory=dict)
    last_close: Dict[str, float] = field(default_factory=dict)
    equity: float = 0.0
    year: Optional[int] = None
    year_start_equity: float = 0.0
    halted_year: Optional[int] = None
    goal_reached: bool = False
    counters: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def start(cls, capital: float) -> "PortfolioState":
        capital = float(capital)
        return cls(cash=capital, equity=capital, year_start_equity=capital)

    def bump(self, name: str, by: int = 1) -> None:
        self.counters[name] = int(self.counters.get(name, 0)) + by

    def reserved_collateral(self) -> float:
        return float(sum(p.notional for p in self.positions.values() if p.side != LONG))

    def available_cash(self) -> float:
        return max(0.0, float(self.cash) - self.reserved_collateral())

    def open(self, position: OpenPosition) -> None:
        if position.symbol in self.positions:
            raise ValueError(f"{position.symbol}: a position is already open")
        self.positions[position.symbol] = position
        if position.side == LONG:
            self.cash -= position.notional

    def close(self, symbol: str, exit_price: float, costs: float) -> OpenPosition:
        position = self.positions.pop(symbol)
        if position.side == LONG:
            self.cash += float(exit_price * position.shares) - costs
        else:
            self.cash += position.unrealized(exit_price) - costs
        return position

    def mark(self) -> float:
        """Mark every position at its last known close; gaps keep the old mark."""
        value = float(self.cash)
        for sym, pos in self.positions.items():
            price = self.last_close.get(sym, pos.entry_price)
            value += pos.equity_value(price)
        self.equity = value
        return value


__all__ = ["OpenPosition", "TradeRecord", "EquityPoint", "PortfolioState"]
