# tradelab/backtest/config.py
"""
Run configuration objects.

All of these are frozen dataclasses: a run receives them once and never mutates
them. Percent fields use percent units throughout (``2.0`` means 2 %).

``validate()`` is called by the engine before any bar is processed and raises
``ConfigurationError`` for out-of-range or contradictory settings. ``from_dict``
helpers accept loosely typed payloads (UI forms, JSON files) and silently drop
keys they do not know.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, Mapping, Optional, Tuple

import pandas as pd

from tradelab.errors import ConfigurationError
from tradelab.models.indicators import MACD_SIGNAL, MACD_SLOW
from tradelab.models.patterns import PATTERN_INFO

STRATEGY_KINDS = ("orb", "rsi", "pattern", "hybrid")
HYBRID_COMPONENTS = ("orb", "rsi", "pattern")
PATTERN_WARMUP = 3  # longest candlestick formation


# ---------- coercion helpers ----------


def _coerce_float(value, default: float = 0.0) -> float:
    try:
        f = float(value)
    except Exception:
        return default
    if not math.isfinite(f):
        return default
    return f


def _coerce_optional_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    f = _coerce_float(value, float("nan"))
    return None if math.isnan(f) else f


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    return _coerce_float(raw, default=default)


def _known_fields(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(cls)}
    return {k: payload[k] for k in payload if k in known}


def _check_pct(name: str, value: float, *, allow_zero: bool = True, upper: float = 100.0) -> None:
    if value is None or not math.isfinite(float(value)):
        raise ConfigurationError(f"{name} must be a finite number")
    lower_ok = value >= 0.0 if allow_zero else value > 0.0
    if not lower_ok or value > upper:
        bound = "[0" if allow_zero else "(0"
        raise ConfigurationError(f"{name}={value} outside {bound}, {upper}]")


# ---------- strategy parameters ----------


@dataclass(frozen=True)
class ORBParams:
    min_breakout_pct: float = 0.0  # open must clear prior high by this much

    def validate(self) -> None:
        _check_pct("orb.min_breakout_pct", self.min_breakout_pct)


@dataclass(frozen=True)
class RSIParams:
    period: int = 14
    oversold: float = 30.0
    overbought: float = 70.0
    exit_on_reversal: bool = True
    trend_sma: Optional[int] = None     # long only above SMA, short only below
    confirm_bollinger: bool = False     # require close outside the band
    bollinger_period: int = 20
    bollinger_stddev: float = 2.0

    def validate(self) -> None:
        if int(self.period) < 2:
            raise ConfigurationError("rsi.period must be >= 2")
        if not (0.0 < self.oversold < self.overbought < 100.0):
            raise ConfigurationError(
                f"rsi thresholds must satisfy 0 < oversold ({self.oversold}) "
                f"< overbought ({self.overbought}) < 100"
            )
        if self.trend_sma is not None and int(self.trend_sma) < 2:
            raise ConfigurationError("rsi.trend_sma must be >= 2 when set")
        if int(self.bollinger_period) < 2:
            raise ConfigurationError("rsi.bollinger_period must be >= 2")
        if not self.bollinger_stddev > 0:
            raise ConfigurationError("rsi.bollinger_stddev must be > 0")

    def warmup_bars(self) -> int:
        """Closes needed before a threshold cross and every enabled filter can be read."""
        need = int(self.period) + 2
        if self.trend_sma:
            need = max(need, int(self.trend_sma))
        if self.confirm_bollinger:
            need = max(need, int(self.bollinger_period))
        return need


@dataclass(frozen=True)
class PatternFilters:
    min_confidence: float = 70.0
    patterns: Optional[Tuple[str, ...]] = None  # None = every known pattern
    window: int = 10
    exit_on_opposite: bool = True

    def validate(self) -> None:
        _check_pct("pattern.min_confidence", self.min_confidence)
        if int(self.window) < 1:
            raise ConfigurationError("pattern.window must be >= 1")
        if self.patterns is not None:
            if not self.patterns:
                raise ConfigurationError("pattern.patterns is empty; use None for all patterns")
            unknown = sorted(set(self.patterns) - set(PATTERN_INFO))
            if unknown:
                raise ConfigurationError(f"unknown pattern(s): {unknown}")

    def allows(self, name: str) -> bool:
        return self.patterns is None or name in self.patterns


@dataclass(frozen=True)
class HybridWeights:
    orb: float = 1.0
    rsi: float = 1.0
    pattern: float = 1.0
    min_agreeing: int = 2
    dominant: Optional[str] = None
    dominant_confidence_floor: float = 80.0
    adx_period: int = 14
    adx_min: Optional[float] = None     # skip entries in trendless tape
    macd_confirm: bool = False          # histogram sign must agree

    def weight_of(self, component: str) -> float:
        return float(getattr(self, component))

    def active_components(self) -> Tuple[str, ...]:
        return tuple(c for c in HYBRID_COMPONENTS if self.weight_of(c) > 0.0)

    def gate_warmup_bars(self) -> int:
        need = 1
        if self.macd_confirm:
            need = max(need, MACD_SLOW + MACD_SIGNAL - 1)
        if self.adx_min is not None:
            need = max(need, 2 * int(self.adx_period))
        return need

    def validate(self) -> None:
        for comp in HYBRID_COMPONENTS:
            w = self.weight_of(comp)
            if not math.isfinite(w) or w < 0.0:
                raise ConfigurationError(f"hybrid.{comp} weight must be >= 0")
        active = self.active_components()
        if not active:
            raise ConfigurationError("hybrid needs at least one component with weight > 0")
        if int(self.min_agreeing) < 1:
            raise ConfigurationError("hybrid.min_agreeing must be >= 1")
        if self.dominant is not None:
            if self.dominant not in HYBRID_COMPONENTS:
                raise ConfigurationError(f"hybrid.dominant must be one of {HYBRID_COMPONENTS}")
            if self.dominant not in active:
                raise ConfigurationError(f"hybrid.dominant '{self.dominant}' has zero weight")
        if int(self.min_agreeing) > len(active) and self.dominant is None:
            raise ConfigurationError(
                f"hybrid.min_agreeing={self.min_agreeing} can never be met with "
                f"{len(active)} active component(s)"
            )
        _check_pct("hybrid.dominant_confidence_floor", self.dominant_confidence_floor)
        if int(self.adx_period) < 2:
            raise ConfigurationError("hybrid.adx_period must be >= 2")
        if self.adx_min is not None:
            _check_pct("hybrid.adx_min", self.adx_min)


# ---------- strategy ----------


@dataclass(frozen=True)
class StrategyConfig:
    kind: str = "orb"
    profit_target_pct: float = 2.0
    stop_loss_pct: float = 1.0
    allow_short: bool = False
    day_trade: Optional[bool] = None    # None -> True for ORB, False otherwise
    trailing_stop_pct: Optional[float] = None
    max_hold_bars: Optional[int] = None
    lookback_bars: int = 250
    orb: ORBParams = field(default_factory=ORBParams)
    rsi: RSIParams = field(default_factory=RSIParams)
    pattern: PatternFilters = field(default_factory=PatternFilters)
    hybrid: HybridWeights = field(default_factory=HybridWeights)

    @property
    def kind_key(self) -> str:
        return str(self.kind).strip().lower()

    @property
    def is_day_trade(self) -> bool:
        if self.day_trade is None:
            return self.kind_key == "orb"
        return bool(self.day_trade)

    def validate(self) -> "StrategyConfig":
        if self.kind_key not in STRATEGY_KINDS:
            raise ConfigurationError(f"unknown strategy kind '{self.kind}' (expected one of {STRATEGY_KINDS})")
        _check_pct("profit_target_pct", self.profit_target_pct, allow_zero=False, upper=1_000.0)
        _check_pct("stop_loss_pct", self.stop_loss_pct, allow_zero=False, upper=99.99)
        if self.stop_loss_pct >= self.profit_target_pct:
            raise ConfigurationError(
                f"stop_loss_pct ({self.stop_loss_pct}) must be smaller than "
                f"profit_target_pct ({self.profit_target_pct})"
            )
        if self.trailing_stop_pct is not None:
            _check_pct("trailing_stop_pct", self.trailing_stop_pct, allow_zero=False, upper=99.99)
        if self.max_hold_bars is not None and int(self.max_hold_bars) < 1:
            raise ConfigurationError("max_hold_bars must be >= 1 when set")
        if int(self.lookback_bars) < 2:
            raise ConfigurationError("lookback_bars must be >= 2")

        kind = self.kind_key
        if kind == "orb":
            self.orb.validate()
        elif kind == "rsi":
            self.rsi.validate()
        elif kind == "pattern":
            self.pattern.validate()
        else:
            self.hybrid.validate()
            active = self.hybrid.active_components()
            if "orb" in active:
                self.orb.validate()
            if "rsi" in active:
                self.rsi.validate()
            if "pattern" in active:
                self.pattern.validate()

        need = self.warmup_bars()
        if int(self.lookback_bars) < need:
            raise ConfigurationError(
                f"lookback_bars={self.lookback_bars} can never warm up {kind} "
                f"(needs at least {need} bars)"
            )
        return self

    def warmup_bars(self) -> int:
        """Shortest history window on which the configured entry rules can fire."""
        per_kind = {"orb": 1, "rsi": self.rsi.warmup_bars(), "pattern": PATTERN_WARMUP}
        kind = self.kind_key
        if kind != "hybrid":
            return per_kind.get(kind, 1)
        need = [per_kind[c] for c in self.hybrid.active_components()]
        return max([self.hybrid.gate_warmup_bars(), *need])

    def as_dict(self) -> dict:
        out = asdict(self)
        out["kind"] = self.kind_key
        out["day_trade"] = self.is_day_trade
        return out

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StrategyConfig":
        data = _known_fields(cls, payload)
        nested = {"orb": ORBParams, "rsi": RSIParams, "pattern": PatternFilters, "hybrid": HybridWeights}
        for key, sub_cls in nested.items():
            raw = data.get(key)
            if isinstance(raw, Mapping):
                sub = _known_fields(sub_cls, raw)
                if sub_cls is PatternFilters and sub.get("patterns") is not None:
                    sub["patterns"] = tuple(str(p) for p in sub["patterns"])
                data[key] = sub_cls(**sub)
        for key in ("profit_target_pct", "stop_loss_pct"):
            if key in data:
                data[key] = _coerce_float(data[key], getattr(cls, key))
        if "trailing_stop_pct" in data:
            data["trailing_stop_pct"] = _coerce_optional_float(data["trailing_stop_pct"])
        return cls(**data)


# ---------- risk ----------


@dataclass(frozen=True)
class RiskConfig:
    initial_capital: float = 100_000.0
    min_capital_for_day_trading: float = 25_000.0  # PDT floor
    yearly_drawdown_halt_pct: Optional[float] = 15.0
    risk_per_trade_pct: float = 10.0     # share of equity committed per entry
    scaling_threshold: Optional[float] = None
    scaling_factor: float = 1.0
    goal_capital: Optional[float] = None

    def validate(self) -> "RiskConfig":
        if not self.initial_capital > 0:
            raise ConfigurationError("initial_capital must be > 0")
        if self.min_capital_for_day_trading < 0:
            raise ConfigurationError("min_capital_for_day_trading must be >= 0")
        if self.yearly_drawdown_halt_pct is not None:
            _check_pct("yearly_drawdown_halt_pct", self.yearly_drawdown_halt_pct, allow_zero=False)
        _check_pct("risk_per_trade_pct", self.risk_per_trade_pct, allow_zero=False)
        if self.scaling_threshold is not None and not self.scaling_threshold > 0:
            raise ConfigurationError("scaling_threshold must be > 0 when set")
        if not (0.0 < self.scaling_factor <= 1.0):
            raise ConfigurationError("scaling_factor must be in (0, 1]")
        if self.goal_capital is not None and not self.goal_capital > 0:
            raise ConfigurationError("goal_capital must be > 0 when set")
        return self

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RiskConfig":
        data = _known_fields(cls, payload)
        for key in ("yearly_drawdown_halt_pct", "scaling_threshold", "goal_capital"):
            if key in data:
                data[key] = _coerce_optional_float(data[key])
        for key in ("initial_capital", "min_capital_for_day_trading", "risk_per_trade_pct", "scaling_factor"):
            if key in data:
                data[key] = _coerce_float(data[key], getattr(cls, key))
        return cls(**data)


# ---------- haircut ----------


@dataclass(frozen=True)
class HaircutConfig:
    execution_slippage_pct: float = 12.0
    frequency_baseline_trades: int = 50
    frequency_penalty_per_trade_pct: float = 0.05
    frequency_penalty_cap_pct: float = 10.0
    crisis_vol_threshold: float = 0.40   # annualised close-to-close vol
    crisis_weight_pct: float = 30.0
    crisis_penalty_cap_pct: float = 20.0
    simulated_data_penalty_pct: float = 15.0
    data_cutover: Optional[pd.Timestamp] = None  # bars before this count as simulated

    def cutover_ts(self) -> Optional[pd.Timestamp]:
        if self.data_cutover is None:
            return None
        ts = pd.Timestamp(self.data_cutover)
        return ts.tz_localize("UTC") if ts.tz is None else ts.tz_convert("UTC")

    def validate(self) -> "HaircutConfig":
        _check_pct("execution_slippage_pct", self.execution_slippage_pct)
        if int(self.frequency_baseline_trades) < 0:
            raise ConfigurationError("frequency_baseline_trades must be >= 0")
        _check_pct("frequency_penalty_per_trade_pct", self.frequency_penalty_per_trade_pct)
        _check_pct("frequency_penalty_cap_pct", self.frequency_penalty_cap_pct)
        if not self.crisis_vol_threshold > 0:
            raise ConfigurationError("crisis_vol_threshold must be > 0")
        _check_pct("crisis_weight_pct", self.crisis_weight_pct)
        _check_pct("crisis_penalty_cap_pct", self.crisis_penalty_cap_pct)
        _check_pct("simulated_data_penalty_pct", self.simulated_data_penalty_pct)
        if self.data_cutover is not None:
            try:
                self.cutover_ts()
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"data_cutover is not a date: {self.data_cutover!r}") from exc
        return self

    def as_dict(self) -> dict:
        out = asdict(self)
        cut = self.cutover_ts() if self.data_cutover is not None else None
        out["data_cutover"] = cut.isoformat() if cut is not None else None
        return out

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "HaircutConfig":
        return cls(**_known_fields(cls, payload))

    @classmethod
    def from_env(cls) -> "HaircutConfig":
        base = cls()
        cutover = os.getenv("HAIRCUT_DATA_CUTOVER") or None
        return cls(
            execution_slippage_pct=max(0.0, _env_float("HAIRCUT_EXECUTION_PCT", base.execution_slippage_pct)),
            frequency_baseline_trades=int(
                max(0.0, _env_float("HAIRCUT_FREQ_BASELINE", base.frequency_baseline_trades))
            ),
            frequency_penalty_per_trade_pct=max(
                0.0, _env_float("HAIRCUT_FREQ_PER_TRADE_PCT", base.frequency_penalty_per_trade_pct)
            ),
            frequency_penalty_cap_pct=max(0.0, _env_float("HAIRCUT_FREQ_CAP_PCT", base.frequency_penalty_cap_pct)),
            crisis_vol_threshold=max(1e-6, _env_float("HAIRCUT_CRISIS_VOL", base.crisis_vol_threshold)),
            crisis_weight_pct=max(0.0, _env_float("HAIRCUT_CRISIS_WEIGHT_PCT", base.crisis_weight_pct)),
            crisis_penalty_cap_pct=max(0.0, _env_float("HAIRCUT_CRISIS_CAP_PCT", base.crisis_penalty_cap_pct)),
            simulated_data_penalty_pct=max(0.0, _env_float("HAIRCUT_SIMULATED_PCT", base.simulated_data_penalty_pct)),
            data_cutover=pd.Timestamp(cutover) if cutover else None,
        )


__all__ = [
    "STRATEGY_KINDS",
    "HYBRID_COMPONENTS",
    "ORBParams",
    "RSIParams",
    "PatternFilters",
    "HybridWeights",
    "StrategyConfig",
    "RiskConfig",
    "HaircutConfig",
]
