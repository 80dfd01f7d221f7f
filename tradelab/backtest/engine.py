# tradelab/backtest/engine.py
"""
Bar-by-bar execution simulator.

This file defines:
- CostModel: volatility-scaled slippage/commission per fill
- simulate(): the per-bar state machine over one shared portfolio
- run_backtest(): validation, shared or isolated (per-symbol sleeve) runs,
  haircut and aggregation into the final report

The engine never loads data and never does UI; bars arrive fully materialised
(see tradelab.data.bars) and the report is returned in memory.

Per date t, every symbol goes through each step before any symbol moves on:
1. gap bar (missing OHLC): counted, skipped, positions keep their old mark
2. flat: the generator sees valid bars < t plus open[t]; if it signals and the
   risk overlay approves, enter at open[t], sized from the mark before t
3. in a position: stop, then target, then trailing stop, then forced exits
   (end of day for day trades, max hold, generator reversal); stop wins a
   stop/target tie on the same bar
4. after every date: mark to market and append one EquityPoint
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
import os
import logging
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

from tradelab.backtest.config import (
    HaircutConfig,
    RiskConfig,
    StrategyConfig,
    _coerce_float,
    _env_flag,
    _env_float,
)
from tradelab.backtest.haircut import apply_haircut, estimate_haircut
from tradelab.backtest.metrics import aggregate_stats, summarize_costs
from tradelab.backtest.risk import evaluate_entry, position_shares, roll_year, update_after_mark
from tradelab.backtest.state import EquityPoint, OpenPosition, PortfolioState, TradeRecord
from tradelab.data.bars import gap_mask, prepare_universe
from tradelab.errors import BacktestCancelled, ConfigurationError, DataGapWarning
from tradelab.models._signal import LONG
from tradelab.models.indicators import range_pct
from tradelab.models.signals import Generator, get_generator
from tradelab.utils.logging_setup import LOG_FORMAT, log_dir
from tradelab.utils.progress import ProgressCallback, emit

# ---------- CONTRACTS ----------

"""
Report = {
    "raw": AggregateStats,
    "realistic": AggregateStats,
    "haircut": HaircutFactors,
    "trades": list[TradeRecord],          # raw ledger, ordered by exit
    "equity_curve": list[EquityPoint],    # one point per processed date
    "equity": pd.Series,                  # raw equity (index=date, UTC)
    "realistic_equity": pd.Series,
    "realistic_trades": list[TradeRecord],
    "trades_df": pd.DataFrame,            # TradeRecord fields as columns
    "meta": dict,                         # symbols, configs, cost model, mode,
                                          # warnings, runtime_counters, costs
}
"""

TRADE_COLUMNS = [f.name for f in fields(TradeRecord)]

# ---------- Logging ----------

logger = logging.getLogger("backtest.engine")
_ENGINE_LOGGER_CONFIGURED = False


def _ensure_engine_logger() -> None:
    """Attach a rotating file handler for the engine when ENGINE_LOG_FILE is on (idempotent)."""

    global _ENGINE_LOGGER_CONFIGURED
    log_level_name = str(os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, log_level_name, logging.INFO))
    if _ENGINE_LOGGER_CONFIGURED or not _env_flag("ENGINE_LOG_FILE", False):
        return
    try:
        directory = log_dir()
        os.makedirs(directory, exist_ok=True)
        has_rotating = any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
        if not has_rotating:
            has_rotating = any(isinstance(h, RotatingFileHandler) for h in logging.getLogger().handlers)
        if not has_rotating:
            handler = RotatingFileHandler(
                os.path.join(directory, "engine.log"), maxBytes=5 * 1024 * 1024, backupCount=3
            )
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
    except OSError:
        # Logging is best-effort; failures should not break the engine.
        pass
    _ENGINE_LOGGER_CONFIGURED = True


class _TradeLogSampler:
    """Per-trade DEBUG lines, gated by LOG_TRADES and sampled by LOG_TRADES_SAMPLE / LOG_TRADES_HEAD."""

    def __init__(self) -> None:
        self.enabled = logger.isEnabledFor(logging.DEBUG) and _env_flag("LOG_TRADES", False)
        try:
            self.every = max(1, int(os.getenv("LOG_TRADES_SAMPLE", "1")))
        except ValueError:
            self.every = 1
        try:
            self.head = max(0, int(os.getenv("LOG_TRADES_HEAD", "0")))
        except ValueError:
            self.head = 0
        self.counter = 0

    def should_log(self) -> bool:
        if not self.enabled:
            return False
        self.counter += 1
        if self.head > 0 and self.counter <= self.head:
            return True
        return self.every <= 1 or self.counter % self.every == 0


# ---------- Cost model ----------

@dataclass
class CostModel:
    base_slippage_bps: float = 2.0      # 0.02 % per leg
    commission_bps: float = 0.0         # commission-free broker
    vol_window: int = 20
    vol_threshold_ratio: float = 1.5
    max_vol_multiplier: float = 3.0
    enabled: bool = True

    @classmethod
    def from_inputs(
        cls,
        base_slippage_bps: float | None = None,
        commission_bps: float | None = None,
        vol_window: int | None = None,
        vol_threshold_ratio: float | None = None,
        max_vol_multiplier: float | None = None,
        enabled: bool = True,
    ) -> "CostModel":
        base = cls()
        slip = max(0.0, _coerce_float(base_slippage_bps, base.base_slippage_bps)) if base_slippage_bps is not None else base.base_slippage_bps
        comm = max(0.0, _coerce_float(commission_bps, 0.0)) if commission_bps is not None else base.commission_bps
        window = max(1, int(_coerce_float(vol_window, base.vol_window))) if vol_window is not None else base.vol_window
        ratio = (
            max(1.0, _coerce_float(vol_threshold_ratio, base.vol_threshold_ratio))
            if vol_threshold_ratio is not None
            else base.vol_threshold_ratio
        )
        cap = (
            max(1.0, _coerce_float(max_vol_multiplier, base.max_vol_multiplier))
            if max_vol_multiplier is not None
            else base.max_vol_multiplier
        )
        return cls(
            base_slippage_bps=slip,
            commission_bps=comm,
            vol_window=window,
            vol_threshold_ratio=ratio,
            max_vol_multiplier=cap,
            enabled=bool(enabled),
        )

    @classmethod
    def from_env(cls) -> "CostModel":
        base = cls()
        return cls.from_inputs(
            base_slippage_bps=_env_float("COST_BASE_SLIPPAGE_BPS", base.base_slippage_bps),
            commission_bps=_env_float("COST_COMMISSION_BPS", base.commission_bps),
            vol_window=int(_env_float("COST_VOL_WINDOW", base.vol_window)),
            vol_threshold_ratio=_env_float("COST_VOL_THRESHOLD", base.vol_threshold_ratio),
            max_vol_multiplier=_env_float("COST_MAX_VOL_MULT", base.max_vol_multiplier),
            enabled=_env_flag("COST_ENABLED", True),
        )

    def validate(self) -> "CostModel":
        if self.base_slippage_bps < 0 or self.commission_bps < 0:
            raise ConfigurationError("cost bps must be >= 0")
        if int(self.vol_window) < 1:
            raise ConfigurationError("vol_window must be >= 1")
        if self.vol_threshold_ratio < 1.0 or self.max_vol_multiplier < 1.0:
            raise ConfigurationError("vol_threshold_ratio and max_vol_multiplier must be >= 1")
        return self

    def total_bps(self) -> float:
        return float(self.base_slippage_bps + self.commission_bps)

    def as_dict(self) -> dict:
        return {
            "base_slippage_bps": float(self.base_slippage_bps),
            "commission_bps": float(self.commission_bps),
            "vol_window": int(self.vol_window),
            "vol_threshold_ratio": float(self.vol_threshold_ratio),
            "max_vol_multiplier": float(self.max_vol_multiplier),
            "enabled": bool(self.enabled),
        }

    def volatility_multipliers(self, df: pd.DataFrame) -> pd.Series:
        """Per-bar cost multiplier from the bar range vs. its trailing average.

        1.0 unless (high-low)/close exceeds ``vol_threshold_ratio`` times the
        mean range of the previous ``vol_window`` valid bars; then the ratio
        itself, capped at ``max_vol_multiplier``.
        """
        if df.empty:
            return pd.Series(dtype=float)
        rp = range_pct(df).dropna()
        avg = rp.shift(1).rolling(int(self.vol_window), min_periods=int(self.vol_window)).mean()
        ratio = (rp / avg).replace([np.inf, -np.inf], np.nan)
        mult = ratio.where(ratio > self.vol_threshold_ratio, 1.0).clip(upper=self.max_vol_multiplier)
        return mult.reindex(df.index).fillna(1.0).astype(float)

    def compute_fill(self, price: float, qty: float, multiplier: float = 1.0) -> dict:
        price = _coerce_float(price, 0.0)
        qty = _coerce_float(qty, 0.0)
        if not self.enabled or price <= 0.0 or qty <= 0.0:
            return {"slippage_cost": 0.0, "commission_cost": 0.0, "total_cost": 0.0, "slippage_bps": 0.0}
        mult = max(1.0, _coerce_float(multiplier, 1.0))
        notional = abs(price * qty)
        slip_bps = self.base_slippage_bps * mult
        comm_bps = self.commission_bps * mult
        slippage_cost = notional * slip_bps / 10_000.0
        commission_cost = notional * comm_bps / 10_000.0
        return {
            "slippage_cost": float(slippage_cost),
            "commission_cost": float(commission_cost),
            "total_cost": float(slippage_cost + commission_cost),
            "slippage_bps": float(slip_bps),
        }


# ---------- Per-symbol bar arrays ----------

class _SymbolBars:
    """Column arrays plus the valid-bar history used for signal windows."""

    def __init__(self, symbol: str, df: pd.DataFrame, costs: CostModel, cutover: Optional[pd.Timestamp]) -> None:
        self.symbol = symbol
        self.index = df.index
        self.row_of = {ts: i for i, ts in enumerate(df.index)}
        self.open = df["open"].to_numpy(dtype=float)
        self.high = df["high"].to_numpy(dtype=float)
        self.low = df["low"].to_numpy(dtype=float)
        self.close = df["close"].to_numpy(dtype=float)
        self.valid = ~gap_mask(df).to_numpy(dtype=bool)
        synthetic = df["synthetic"].to_numpy(dtype=bool)
        if cutover is not None:
            synthetic = synthetic | (df.index < cutover)
        self.synthetic = synthetic
        self.vol_mult = costs.volatility_multipliers(df).to_numpy(dtype=float)
        self.valid_frame = df[self.valid]
        # number of valid rows strictly before row i
        self.valid_before = np.cumsum(self.valid) - self.valid.astype(int)
        valid_rows = np.flatnonzero(self.valid)
        self.last_valid = int(valid_rows[-1]) if len(valid_rows) else -1

    def history_before(self, i: int, lookback: int) -> pd.DataFrame:
        k = int(self.valid_before[i])
        return self.valid_frame.iloc[max(0, k - lookback):k]

    def history_through(self, i: int, lookback: int) -> pd.DataFrame:
        k = int(self.valid_before[i]) + 1
        return self.valid_frame.iloc[max(0, k - lookback):k]


# ---------- Simulation ----------

def _close_position(
    state: PortfolioState,
    sb: _SymbolBars,
    i: int,
    exit_price: float,
    reason: str,
    costs: CostModel,
    sampler: _TradeLogSampler,
) -> TradeRecord:
    pos = state.positions[sb.symbol]
    entry_leg = costs.compute_fill(pos.entry_price, pos.shares, pos.entry_cost_multiplier)
    exit_leg = costs.compute_fill(exit_price, pos.shares, sb.vol_mult[i])
    total_cost = entry_leg["total_cost"] + exit_leg["total_cost"]
    gross = pos.unrealized(exit_price)
    state.close(sb.symbol, exit_price, total_cost)
    pnl = gross - total_cost
    exit_date = sb.index[i]
    trade = TradeRecord(
        symbol=sb.symbol,
        entry_date=pos.entry_date,
        exit_date=exit_date,
        entry_price=float(pos.entry_price),
        exit_price=float(exit_price),
        shares=int(pos.shares),
        side=pos.side,
        pnl=float(pnl),
        gross_pnl=float(gross),
        return_pct=float(pnl / pos.notional * 100.0) if pos.notional > 0 else 0.0,
        exit_reason=reason,
        costs=float(total_cost),
        entry_cost=float(entry_leg["total_cost"]),
        exit_cost=float(exit_leg["total_cost"]),
        holding_days=int((exit_date - pos.entry_date).days),
        bars_held=int(pos.bars_held + 1),
        signal_source=pos.signal_source,
        synthetic=bool(pos.synthetic),
    )
    state.bump("exits")
    state.bump(f"exit_{reason.split(':')[0]}")
    if sampler.should_log():
        logger.debug(
            "%s,%s,%s,qty=%d,%.4f->%.4f,pnl=%.2f,costs=%.2f,reason=%s",
            exit_date.isoformat(),
            sb.symbol,
            pos.side,
            pos.shares,
            pos.entry_price,
            exit_price,
            pnl,
            total_cost,
            reason,
        )
    return trade


def _check_exit(
    pos: OpenPosition,
    sb: _SymbolBars,
    i: int,
    strategy: StrategyConfig,
    generator: Generator,
) -> Optional[tuple]:
    """(exit_price, reason) for bar i, or None to keep holding."""
    o, h, lo, c = sb.open[i], sb.high[i], sb.low[i], sb.close[i]
    is_long = pos.side == LONG

    # (a) stop, gap-through fills at the open
    if is_long and lo <= pos.stop_price:
        return min(o, pos.stop_price), "stop_loss"
    if not is_long and h >= pos.stop_price:
        return max(o, pos.stop_price), "stop_loss"

    # (b) target
    if is_long and h >= pos.target_price:
        return pos.target_price, "profit_target"
    if not is_long and lo <= pos.target_price:
        return pos.target_price, "profit_target"

    # (c) trailing stop from the extreme of earlier bars
    if strategy.trailing_stop_pct:
        trail = float(strategy.trailing_stop_pct) / 100.0
        if is_long:
            level = pos.highest * (1.0 - trail)
            if lo <= level:
                return min(o, level), "trailing_stop"
        else:
            level = pos.lowest * (1.0 + trail)
            if h >= level:
                return max(o, level), "trailing_stop"

    # (d) forced exits at the close
    if pos.day_trade:
        return c, "end_of_day"
    if strategy.max_hold_bars and pos.bars_held + 1 >= int(strategy.max_hold_bars):
        return c, "time_stop"
    if i != pos.entry_index:
        reason = generator.should_exit(sb.history_through(i, int(strategy.lookback_bars)), pos, strategy)
        if reason:
            return c, reason
    return None


def _try_entry(
    state: PortfolioState,
    sb: _SymbolBars,
    i: int,
    strategy: StrategyConfig,
    risk: RiskConfig,
    generator: Generator,
    sampler: _TradeLogSampler,
) -> Optional[OpenPosition]:
    history = sb.history_before(i, int(strategy.lookback_bars))
    if history.empty:
        return None
    open_price = float(sb.open[i])
    signal = generator.evaluate(history, open_price, strategy)
    if signal is None:
        return None
    state.bump("signals")

    equity = float(state.equity)
    decision = evaluate_entry(state, risk, day_trade=strategy.is_day_trade, equity=equity)
    if not decision.allow:
        state.bump(f"blocked_{decision.reason}")
        return None
    shares = position_shares(equity, state.available_cash(), open_price, signal.side, risk)
    if shares < 1:
        state.bump("blocked_size")
        return None

    tp = float(strategy.profit_target_pct) / 100.0
    sl = float(strategy.stop_loss_pct) / 100.0
    if signal.side == LONG:
        stop, target = open_price * (1.0 - sl), open_price * (1.0 + tp)
    else:
        stop, target = open_price * (1.0 + sl), open_price * (1.0 - tp)

    pos = OpenPosition(
        symbol=sb.symbol,
        side=signal.side,
        entry_price=open_price,
        entry_date=sb.index[i],
        entry_index=i,
        shares=int(shares),
        stop_price=float(stop),
        target_price=float(target),
        day_trade=strategy.is_day_trade,
        entry_cost_multiplier=float(sb.vol_mult[i]),
        synthetic=bool(sb.synthetic[i]),
        signal_source=signal.source,
        signal_confidence=float(signal.confidence),
    )
    state.open(pos)
    state.bump("entries")
    if sampler.should_log():
        logger.debug(
            "%s,%s,%s,qty=%d,open=%.4f,stop=%.4f,target=%.4f,reason=enter,source=%s,conf=%.1f",
            sb.index[i].isoformat(),
            sb.symbol,
            pos.side,
            pos.shares,
            open_price,
            stop,
            target,
            signal.source,
            signal.confidence,
        )
    return pos


def _empty_sim() -> Dict[str, Any]:
    return {"trades": [], "equity": [], "counters": {}, "gaps": {}}


def simulate(
    universe: Mapping[str, pd.DataFrame],
    strategy: StrategyConfig,
    risk: RiskConfig,
    costs: CostModel,
    *,
    cutover: Optional[pd.Timestamp] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> Dict[str, Any]:
    """Run one shared portfolio over ``universe`` (already normalised)."""
    generator = get_generator(strategy.kind)
    symbols = sorted(universe)
    books = {s: _SymbolBars(s, universe[s], costs, cutover) for s in symbols}
    if not symbols:
        return _empty_sim()
    calendar = pd.DatetimeIndex(sorted(set().union(*(set(b.index) for b in books.values()))))
    if len(calendar) == 0:
        return _empty_sim()

    state = PortfolioState.start(risk.initial_capital)
    sampler = _TradeLogSampler()
    trades: List[TradeRecord] = []
    points: List[EquityPoint] = []
    gaps = {s: 0 for s in symbols}
    total = len(calendar)
    report_every = max(1, total // 20)

    for step, ts in enumerate(calendar):
        if should_stop is not None and should_stop():
            logger.info("run_cancelled at=%s step=%d/%d", ts.isoformat(), step, total)
            raise BacktestCancelled(f"cancelled at {ts.isoformat()} after {step} of {total} bars")
        roll_year(state, ts.year)

        live = []
        for sym in symbols:
            sb = books[sym]
            i = sb.row_of.get(ts)
            if i is None:
                continue
            if not sb.valid[i]:
                gaps[sym] += 1
                state.bump("data_gaps")
                continue
            live.append((sb, i))

        # at the open: every entry sees cash and equity from before bar ts
        for sb, i in live:
            if sb.symbol not in state.positions:
                _try_entry(state, sb, i, strategy, risk, generator, sampler)

        # through the bar: exits, then marks
        for sb, i in live:
            sym = sb.symbol
            pos = state.positions.get(sym)
            if pos is not None:
                hit = _check_exit(pos, sb, i, strategy, generator)
                if hit is not None:
                    price, reason = hit
                    trades.append(_close_position(state, sb, i, float(price), reason, costs, sampler))
                else:
                    pos.highest = max(pos.highest, float(sb.high[i]))
                    pos.lowest = min(pos.lowest, float(sb.low[i]))
                    pos.bars_held += 1
            state.last_close[sym] = float(sb.close[i])

        equity = state.mark()
        points.append(EquityPoint(ts, equity))
        update_after_mark(state, risk)
        if progress_cb is not None and (step % report_every == 0 or step == total - 1):
            emit(progress_cb, "bar_progress", {"idx": step + 1, "total": total, "date": ts, "equity": equity})

    for sym in sorted(state.positions):
        sb = books[sym]
        k = sb.last_valid
        trades.append(_close_position(state, sb, k, float(sb.close[k]), "end_of_data", costs, sampler))
    if points:
        points[-1] = EquityPoint(points[-1].date, state.mark())

    return {"trades": trades, "equity": points, "counters": dict(state.counters), "gaps": gaps}


# ---------- Isolated sleeves ----------

def sleeve_risk(risk: RiskConfig, n: int) -> RiskConfig:
    """Every dollar threshold scaled to a 1/n sleeve."""
    n = max(1, int(n))
    return replace(
        risk,
        initial_capital=risk.initial_capital / n,
        min_capital_for_day_trading=risk.min_capital_for_day_trading / n,
        scaling_threshold=risk.scaling_threshold / n if risk.scaling_threshold is not None else None,
        goal_capital=risk.goal_capital / n if risk.goal_capital is not None else None,
    )


def _simulate_sleeve(
    symbol: str,
    df: pd.DataFrame,
    strategy: StrategyConfig,
    risk: RiskConfig,
    costs: CostModel,
    cutover: Optional[pd.Timestamp],
) -> Dict[str, Any]:
    out = simulate({symbol: df}, strategy, risk, costs, cutover=cutover)
    out["symbol"] = symbol
    return out


def _merge_sleeves(results: List[Dict[str, Any]], sleeve_capital: float) -> Dict[str, Any]:
    results = sorted(results, key=lambda r: r["symbol"])
    trades: List[TradeRecord] = []
    for r in results:
        trades.extend(r["trades"])
    # stable: per-symbol order survives equal exit dates
    trades.sort(key=lambda t: (t.exit_date, t.symbol))

    curves = []
    for r in results:
        if r["equity"]:
            curves.append(pd.Series([p.equity for p in r["equity"]], index=pd.DatetimeIndex([p.date for p in r["equity"]])))
    points: List[EquityPoint] = []
    if curves:
        calendar = curves[0].index
        for c in curves[1:]:
            calendar = calendar.union(c.index)
        total = sum(c.reindex(calendar).ffill().fillna(sleeve_capital) for c in curves)
        # sleeves without any bars still hold their cash
        total = total + sleeve_capital * (len(results) - len(curves))
        points = [EquityPoint(ts, float(v)) for ts, v in total.items()]

    counters: Dict[str, int] = {}
    gaps: Dict[str, int] = {}
    for r in results:
        for k, v in r["counters"].items():
            counters[k] = counters.get(k, 0) + int(v)
        gaps.update(r["gaps"])
    return {"trades": trades, "equity": points, "counters": counters, "gaps": gaps}


def _run_isolated(
    universe: Mapping[str, pd.DataFrame],
    strategy: StrategyConfig,
    risk: RiskConfig,
    costs: CostModel,
    *,
    cutover: Optional[pd.Timestamp],
    n_jobs: int,
    should_stop: Optional[Callable[[], bool]],
    progress_cb: Optional[ProgressCallback],
) -> Dict[str, Any]:
    symbols = sorted(universe)
    sleeve = sleeve_risk(risk, len(symbols))
    results: List[Dict[str, Any]] = []

    if n_jobs > 1 and len(symbols) > 1:
        workers = min(int(n_jobs), len(symbols))
        with ProcessPoolExecutor(max_workers=workers) as ex:
            futs = {
                ex.submit(_simulate_sleeve, s, universe[s], strategy, sleeve, costs, cutover): s
                for s in symbols
            }
            for fut in as_completed(futs):
                if should_stop is not None and should_stop():
                    for f in futs:
                        f.cancel()
                    raise BacktestCancelled(f"cancelled after {len(results)} of {len(symbols)} symbols")
                res = fut.result()
                results.append(res)
                emit(progress_cb, "symbol_done", {"symbol": futs[fut], "trades": len(res["trades"])})
    else:
        for s in symbols:
            if should_stop is not None and should_stop():
                raise BacktestCancelled(f"cancelled after {len(results)} of {len(symbols)} symbols")
            res = simulate({s: universe[s]}, strategy, sleeve, costs, cutover=cutover, should_stop=should_stop)
            res["symbol"] = s
            results.append(res)
            emit(progress_cb, "symbol_done", {"symbol": s, "trades": len(res["trades"])})

    return _merge_sleeves(results, sleeve.initial_capital)


# ---------- Report ----------

def _equity_series(points: List[EquityPoint], name: str = "equity") -> pd.Series:
    if not points:
        return pd.Series(dtype=float, index=pd.DatetimeIndex([], tz="UTC", name="date"), name=name)
    idx = pd.DatetimeIndex([p.date for p in points], name="date")
    return pd.Series([float(p.equity) for p in points], index=idx, name=name, dtype=float)


def _trades_frame(trades: List[TradeRecord]) -> pd.DataFrame:
    return pd.DataFrame([t.as_dict() for t in trades], columns=TRADE_COLUMNS)


def _coerce_strategy(strategy: StrategyConfig | Mapping[str, Any]) -> StrategyConfig:
    if isinstance(strategy, StrategyConfig):
        return strategy
    if isinstance(strategy, Mapping):
        return StrategyConfig.from_dict(strategy)
    raise ConfigurationError(f"strategy must be a StrategyConfig, got {type(strategy).__name__}")


def run_backtest(
    bars: Mapping[str, Any] | None,
    strategy: StrategyConfig | Mapping[str, Any],
    risk: Optional[RiskConfig] = None,
    costs: Optional[CostModel] = None,
    haircut: Optional[HaircutConfig] = None,
    *,
    isolated: bool = False,
    n_jobs: int = 1,
    should_stop: Optional[Callable[[], bool]] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> Dict[str, Any]:
    """
    Run one backtest and return the raw + realistic report (see Report above).

    Configuration is validated (ConfigurationError) and bars are normalised
    (InputError) before any bar is processed. Empty input produces a
    zero-activity report.
    """

    _ensure_engine_logger()

    strategy = _coerce_strategy(strategy).validate()
    risk = (risk if risk is not None else RiskConfig()).validate()
    costs = (costs if costs is not None else CostModel()).validate()
    haircut = (haircut if haircut is not None else HaircutConfig()).validate()

    universe = prepare_universe(bars)
    n_bars = int(sum(len(df) for df in universe.values()))
    mode = "isolated" if isolated else "shared"
    cutover = haircut.cutover_ts()
    emit(progress_cb, "run_start", {"symbols": list(universe), "bars": n_bars, "mode": mode})

    if n_bars == 0:
        sim = _empty_sim()
    elif isolated:
        sim = _run_isolated(
            universe,
            strategy,
            risk,
            costs,
            cutover=cutover,
            n_jobs=int(n_jobs or 1),
            should_stop=should_stop,
            progress_cb=progress_cb,
        )
    else:
        sim = simulate(universe, strategy, risk, costs, cutover=cutover, should_stop=should_stop, progress_cb=progress_cb)

    report = _build_report(universe, sim, strategy, risk, costs, haircut, mode)
    emit(
        progress_cb,
        "run_done",
        {
            "trades": len(report["trades"]),
            "ending_equity": report["raw"].ending_equity,
            "realistic_equity": report["realistic"].ending_equity,
        },
    )
    return report


def _build_report(
    universe: Mapping[str, pd.DataFrame],
    sim: Dict[str, Any],
    strategy: StrategyConfig,
    risk: RiskConfig,
    costs: CostModel,
    haircut: HaircutConfig,
    mode: str,
) -> Dict[str, Any]:
    trades: List[TradeRecord] = list(sim["trades"])
    points: List[EquityPoint] = list(sim["equity"])
    start = float(risk.initial_capital)

    equity = _equity_series(points)
    raw_stats = aggregate_stats(trades, equity, start)
    factors = estimate_haircut(trades, universe, raw_stats, haircut)
    realistic = apply_haircut(trades, equity, factors)
    realistic_stats = aggregate_stats(realistic["trades"], realistic["equity"], start)

    gaps = {s: int(n) for s, n in sorted(sim["gaps"].items()) if n}
    for sym, n in gaps.items():
        logger.warning("data_gap symbol=%s bars=%d", sym, n)
        warnings.warn(f"{sym}: {n} bar(s) with missing OHLC skipped", DataGapWarning, stacklevel=3)

    counters = dict(sim["counters"])
    counters.setdefault("entries", 0)
    counters.setdefault("exits", 0)
    counters.setdefault("signals", 0)
    counters.setdefault("blocked_size", 0)

    meta = {
        "symbols": list(universe),
        "mode": mode,
        "bars": {s: int(len(df)) for s, df in universe.items()},
        "strategy": strategy.as_dict(),
        "risk": risk.as_dict(),
        "cost_model": costs.as_dict(),
        "haircut_config": haircut.as_dict(),
        "costs": summarize_costs(trades, equity),
        "warnings": {"data_gaps": int(sum(gaps.values())), "data_gaps_by_symbol": gaps},
        "runtime_counters": counters,
        "stop_target_tie": "stop",
    }

    if logger.isEnabledFor(logging.INFO):
        logger.info(
            "run_complete kind=%s mode=%s symbols=%d trades=%d entries=%d exits=%d risk_blocks=%d size_blocks=%d gaps=%d raw_end=%.2f realistic_end=%.2f haircut_pct=%.2f",
            strategy.kind_key,
            mode,
            len(universe),
            len(trades),
            int(counters.get("entries", 0)),
            int(counters.get("exits", 0)),
            int(sum(v for k, v in counters.items() if k.startswith("blocked_") and k != "blocked_size")),
            int(counters.get("blocked_size", 0)),
            int(meta["warnings"]["data_gaps"]),
            raw_stats.ending_equity,
            realistic_stats.ending_equity,
            factors.combined_haircut_pct,
        )

    return {
        "raw": raw_stats,
        "realistic": realistic_stats,
        "haircut": factors,
        "trades": trades,
        "realistic_trades": realistic["trades"],
        "equity_curve": points,
        "equity": equity,
        "realistic_equity": realistic["equity"],
        "trades_df": _trades_frame(trades),
        "meta": meta,
    }


__all__ = [
    "CostModel",
    "TRADE_COLUMNS",
    "simulate",
    "sleeve_risk",
    "run_backtest",
]
