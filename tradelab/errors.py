# tradelab/errors.py
"""Error taxonomy shared by the data, config and engine layers."""

from __future__ import annotations


class TradelabError(Exception):
    """Base class for every error raised by tradelab."""


class InputError(TradelabError, ValueError):
    """Bars are empty-but-malformed, unsorted, duplicated or otherwise unusable."""

    def __init__(self, message: str, symbol: str | None = None) -> None:
        self.symbol = symbol
        if symbol:
            message = f"{symbol}: {message}"
        super().__init__(message)


class ConfigurationError(TradelabError, ValueError):
    """A strategy/risk/cost/haircut configuration is contradictory or out of range."""


class BacktestCancelled(TradelabError):
    """Raised when a cooperative ``should_stop`` check asks a run to stop."""


class DataGapWarning(UserWarning):
    """A bar is missing one or more OHLC fields; it was skipped for signals."""


__all__ = [
    "TradelabError",
    "InputError",
    "ConfigurationError",
    "BacktestCancelled",
    "DataGapWarning",
]
