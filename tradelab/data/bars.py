# tradelab/data/bars.py
"""
Price-series model and validation.

The engine never loads data itself: callers hand in bars that are already in
memory, either as a ``pd.DataFrame`` per symbol or as a list of ``Bar`` /
dict rows. Everything is normalised to:

    index   : UTC DatetimeIndex, strictly increasing
    columns : open, high, low, close, volume, synthetic

Rows with a missing OHLC field are *kept* (they are data gaps that still
advance time); malformed series raise ``InputError`` before any simulation.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Iterable, Mapping

import numpy as np
import pandas as pd

from tradelab.errors import InputError

OHLC_COLUMNS = ("open", "high", "low", "close")
BAR_COLUMNS = ("open", "high", "low", "close", "volume", "synthetic")

_ALIASES = {
    "open": ("open", "o", "open_price"),
    "high": ("high", "h", "high_price"),
    "low": ("low", "l", "low_price"),
    "close": ("close", "c", "close_price", "adj_close"),
    "volume": ("volume", "v", "vol"),
    "synthetic": ("synthetic", "is_synthetic", "simulated"),
}
_DATE_COLUMNS = ("date", "datetime", "timestamp", "time")


@dataclass(frozen=True)
class Bar:
    date: datetime
    open: float | None
    high: float | None
    low: float | None
    close: float | None
    volume: float = 0.0
    synthetic: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


def to_utc_index(idx_like) -> pd.DatetimeIndex:
    """Return a UTC DatetimeIndex from any datetime-like input (NaT for junk)."""
    converted = pd.to_datetime(idx_like, errors="coerce", utc=False)

    if isinstance(converted, pd.DatetimeIndex):
        di = converted
    elif isinstance(converted, pd.Series):
        di = pd.DatetimeIndex(converted.array)
    else:
        di = pd.DatetimeIndex(pd.Index(converted))

    if di.tz is None:
        return di.tz_localize("UTC")
    return di.tz_convert("UTC")


def bars_to_frame(bars: Iterable[Bar | Mapping[str, Any]]) -> pd.DataFrame:
    rows = []
    for bar in bars:
        if isinstance(bar, Bar):
            rows.append(bar.as_dict())
        elif isinstance(bar, Mapping):
            rows.append(dict(bar))
        else:
            raise InputError(f"unsupported bar row type {type(bar).__name__}")
    if not rows:
        return pd.DataFrame(columns=["date", *BAR_COLUMNS])
    return pd.DataFrame(rows)


def _empty_frame() -> pd.DataFrame:
    df = pd.DataFrame(columns=list(BAR_COLUMNS), index=pd.DatetimeIndex([], tz="UTC"))
    for c in OHLC_COLUMNS + ("volume",):
        df[c] = df[c].astype(float)
    df["synthetic"] = df["synthetic"].astype(bool)
    return df


def normalize_bars(data: pd.DataFrame | Iterable, symbol: str = "") -> pd.DataFrame:
    """Coerce ``data`` into the canonical frame and validate it.

    Raises ``InputError`` for missing columns, unparseable / unsorted /
    duplicated dates and non-positive prices. An empty input yields an empty
    (valid) frame.
    """
    if data is None:
        return _empty_frame()
    df = data.copy() if isinstance(data, pd.DataFrame) else bars_to_frame(data)
    if df.empty:
        return _empty_frame()

    df.columns = [str(c).lower() for c in df.columns]
    ren: dict[str, str] = {}
    for std, aliases in _ALIASES.items():
        if std in df.columns:
            continue
        for a in aliases:
            if a in df.columns:
                ren[a] = std
                break
    if ren:
        df = df.rename(columns=ren)

    missing = [c for c in OHLC_COLUMNS if c not in df.columns]
    if missing:
        raise InputError(f"missing required column(s) {missing}", symbol)

    idx_source: Any = df.index
    if not isinstance(df.index, pd.DatetimeIndex):
        for c in _DATE_COLUMNS:
            if c in df.columns:
                idx_source = df[c]
                df = df.drop(columns=[c])
                break
        else:
            raise InputError("bars need a DatetimeIndex or a date/timestamp column", symbol)

    df.index = to_utc_index(idx_source)
    if df.index.hasnans:
        raise InputError("unparseable bar dates", symbol)
    if df.index.has_duplicates:
        raise InputError("duplicate bar dates", symbol)
    if not df.index.is_monotonic_increasing:
        raise InputError("bar dates must be strictly increasing", symbol)

    if "volume" not in df.columns:
        df["volume"] = 0.0
    if "synthetic" not in df.columns:
        df["synthetic"] = False

    for c in OHLC_COLUMNS + ("volume",):
        df[c] = pd.to_numeric(df[c], errors="coerce").astype(float)
    df["synthetic"] = df["synthetic"].fillna(False).astype(bool)

    prices = df[list(OHLC_COLUMNS)].to_numpy(dtype=float)
    finite = np.isfinite(prices)
    if (prices[finite] <= 0.0).any():
        raise InputError("prices must be positive", symbol)

    df.index.name = "date"
    return df[list(BAR_COLUMNS)]


def gap_mask(df: pd.DataFrame) -> pd.Series:
    """True where a bar is missing any OHLC field."""
    if df.empty:
        return pd.Series(dtype=bool)
    return df[list(OHLC_COLUMNS)].isna().any(axis=1)


def prepare_universe(bars: Mapping[str, Any] | None) -> dict[str, pd.DataFrame]:
    """Normalise every symbol's bars; symbols are upper-cased and sorted."""
    if not bars:
        return {}
    out: dict[str, pd.DataFrame] = {}
    for raw_symbol in sorted(bars, key=lambda s: str(s).upper()):
        symbol = str(raw_symbol).strip().upper()
        if not symbol:
            raise InputError("empty symbol name")
        if symbol in out:
            raise InputError("symbol supplied twice", symbol)
        out[symbol] = normalize_bars(bars[raw_symbol], symbol)
    return out


__all__ = [
    "Bar",
    "OHLC_COLUMNS",
    "BAR_COLUMNS",
    "to_utc_index",
    "bars_to_frame",
    "normalize_bars",
    "gap_mask",
    "prepare_universe",
]
