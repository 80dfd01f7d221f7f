# tradelab/utils/run_logger.py
from __future__ import annotations
import json
import time
import logging
from pathlib import Path
from typing import Any, Dict, List


def _json_default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "item"):
        return value.item()
    if hasattr(value, "as_dict"):
        return value.as_dict()
    return str(value)


class RunLogger:
    """Append-only JSONL log of backtest / sweep runs."""

    def __init__(self, log_file: str | Path) -> None:
        self.path = Path(log_file)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._logger = logging.getLogger(f"runs.{self.path.stem}")

    def _write(self, record: Dict[str, Any]) -> None:
        record.setdefault("ts", time.time())
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=_json_default) + "\n")

    def log(self, event: str, payload: Dict[str, Any] | None = None) -> None:
        rec = {"event": event, "payload": payload or {}}
        self._write(rec)

    def log_error(self, context: Dict[str, Any], err: BaseException) -> None:
        rec = {
            "event": "error",
            "payload": {
                "context": context,
                "error_type": type(err).__name__,
                "error_msg": str(err),
            },
        }
        self._logger.error("run error: %s", rec["payload"])
        self._write(rec)

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


__all__ = ["RunLogger"]
