"""Utility helpers for configuring backtest logging outputs."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

_LOG_INITIALIZED = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class SafeRotatingFileHandler(RotatingFileHandler):
    """Rotating handler that tolerates missing rollover files."""

    def doRollover(self) -> None:  # type: ignore[override]
        if self.stream:
            try:
                self.stream.close()
            finally:
                self.stream = None

        for i in range(self.backupCount - 1, 0, -1):
            sfn = f"{self.baseFilename}.{i}"
            dfn = f"{self.baseFilename}.{i + 1}"
            try:
                os.replace(sfn, dfn)
            except OSError:
                continue

        try:
            os.replace(self.baseFilename, f"{self.baseFilename}.1")
        except OSError:
            pass

        if not self.delay:
            self.stream = self._open()


def log_dir() -> str:
    return os.getenv("TRADELAB_LOG_DIR", os.path.join("storage", "logs"))


def setup_logging(level: Optional[str] = None, *, log_file: Optional[str] = "backtest.log") -> logging.Logger:
    """Configure console + rotating file logging (idempotent).

    ``LOG_LEVEL`` picks the level when ``level`` is not given; ``log_file=None``
    keeps logging console-only.
    """

    global _LOG_INITIALIZED

    log_level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, log_level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    formatter = logging.Formatter(LOG_FORMAT)

    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        directory = log_dir()
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError:
            # Logging remains console-only when the directory cannot be created.
            directory = ""

        file_path = os.path.abspath(os.path.join(directory, log_file)) if directory else ""
        has_file = any(
            isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", "") == file_path
            for h in root_logger.handlers
        )
        if file_path and not has_file:
            try:
                file_handler = SafeRotatingFileHandler(file_path, maxBytes=5 * 1024 * 1024, backupCount=3)
                file_handler.setLevel(log_level)
                file_handler.setFormatter(formatter)
                root_logger.addHandler(file_handler)
            except OSError:
                # File handler is best-effort; fall back to console only if it fails.
                pass

    _LOG_INITIALIZED = True
    return root_logger


__all__ = ["setup_logging", "SafeRotatingFileHandler", "log_dir", "LOG_FORMAT"]
