# tradelab/utils/progress.py
from __future__ import annotations
from typing import Callable, Dict, Any

# Public type alias: a function taking (event, payload)
ProgressCallback = Callable[[str, Dict[str, Any]], None]

# Events emitted by the engine and the sweep runner:
#   run_start       {"symbols", "bars", "mode"}
#   bar_progress    {"idx", "total", "date", "equity"}   (throttled)
#   symbol_done     {"symbol", "trades"}                 (isolated mode)
#   run_done        {"trades", "ending_equity", "realistic_equity"}
#   sweep_run_done  {"idx", "total", "kind", "score", "trades", "error"}
#   sweep_done      {"runs", "failed", "elapsed_sec"}


def emit(cb: ProgressCallback | None, event: str, payload: Dict[str, Any]) -> None:
    """Forward to ``cb`` if set; a failing sink never breaks the run."""
    if cb is None:
        return
    try:
        cb(event, payload)
    except Exception:
        pass


def console_progress(event: str, payload: Dict[str, Any]) -> None:
    """Lightweight progress sink for non-UI contexts (safe in subprocesses)."""
    try:
        key_bits = {
            k: payload.get(k)
            for k in ("idx", "total", "symbol", "kind", "score", "trades", "ending_equity", "error")
            if k in payload
        }
        print(f"[{event}] {key_bits}")
    except Exception:
        # Never let progress crash the caller
        pass


def collecting_progress() -> tuple[ProgressCallback, list]:
    """Return (callback, events) where events accumulates every (event, payload)."""
    events: list = []

    def cb(event: str, payload: Dict[str, Any]) -> None:
        events.append((event, dict(payload)))

    return cb, events


__all__ = ["ProgressCallback", "emit", "console_progress", "collecting_progress"]
