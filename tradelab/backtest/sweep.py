# tradelab/backtest/sweep.py
"""
Parameter sweep: many independent backtests over the same bars.

- Parallel evaluation with ProcessPoolExecutor (n_jobs > 1), sequential otherwise
- Every run owns its own state; a failing run is recorded, never raised
- ``should_stop`` is polled between runs; unscheduled runs come back as cancelled
- Optional JSONL run log (RunLogger) and (event, payload) progress callback

This is a runner, not an optimiser: it evaluates the configurations it is
given and reports them in input order.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from tradelab.backtest.config import HaircutConfig, RiskConfig, StrategyConfig
from tradelab.backtest.engine import CostModel, run_backtest
from tradelab.data.bars import prepare_universe
from tradelab.utils.progress import ProgressCallback, emit
from tradelab.utils.run_logger import RunLogger

logger = logging.getLogger("backtest.sweep")

CANCELLED = "cancelled"


def _eval_one(
    idx: int,
    universe: Mapping[str, Any],
    strategy: StrategyConfig | Mapping[str, Any],
    risk: Optional[RiskConfig],
    costs: Optional[CostModel],
    haircut: Optional[HaircutConfig],
    isolated: bool,
) -> Dict[str, Any]:
    """
    Pure function suitable for multiprocessing.
    Returns a compact summary of one run (no bars, no equity series).
    """
    t1 = time.time()
    report = run_backtest(universe, strategy, risk, costs, haircut, isolated=isolated)
    return {
        "idx": idx,
        "strategy": report["meta"]["strategy"],
        "raw": report["raw"].as_dict(),
        "realistic": report["realistic"].as_dict(),
        "haircut": report["haircut"].as_dict(),
        "trades": len(report["trades"]),
        "warnings": report["meta"]["warnings"],
        "elapsed_sec": time.time() - t1,
        "error": None,
    }


def _failed(idx: int, strategy: Any, err: BaseException | str) -> Dict[str, Any]:
    if isinstance(strategy, StrategyConfig):
        payload = strategy.as_dict()
    else:
        payload = dict(strategy) if isinstance(strategy, Mapping) else {"repr": repr(strategy)}
    msg = err if isinstance(err, str) else f"{type(err).__name__}: {err}"
    return {
        "idx": idx,
        "strategy": payload,
        "raw": None,
        "realistic": None,
        "haircut": None,
        "trades": 0,
        "warnings": {},
        "elapsed_sec": 0.0,
        "error": msg,
    }


def run_sweep(
    bars: Mapping[str, Any],
    strategies: Sequence[StrategyConfig | Mapping[str, Any]],
    risk: Optional[RiskConfig] = None,
    costs: Optional[CostModel] = None,
    haircut: Optional[HaircutConfig] = None,
    *,
    isolated: bool = False,
    n_jobs: int = 1,
    progress_cb: Optional[ProgressCallback] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    log_file: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Evaluate every strategy config; results are returned in input order."""
    t0 = time.time()
    universe = prepare_universe(bars)
    run_log = RunLogger(log_file) if log_file else None
    total = len(strategies)
    results: Dict[int, Dict[str, Any]] = {}

    if run_log is not None:
        run_log.log("sweep_start", {"runs": total, "symbols": list(universe), "n_jobs": int(n_jobs)})

    def _record(idx: int, out: Dict[str, Any]) -> None:
        results[idx] = out
        if run_log is not None:
            run_log.log("run_done", out)
        score = (out.get("realistic") or {}).get("total_return_pct")
        emit(
            progress_cb,
            "sweep_run_done",
            {
                "idx": idx,
                "total": total,
                "kind": (out.get("strategy") or {}).get("kind"),
                "score": score,
                "trades": out.get("trades", 0),
                "error": out.get("error"),
            },
        )

    def _handle_error(idx: int, err: BaseException) -> None:
        ctx = {"idx": idx}
        if run_log is not None:
            run_log.log_error(ctx, err)
        logger.warning("sweep run %d failed: %s: %s", idx, type(err).__name__, err)
        results[idx] = _failed(idx, strategies[idx], err)
        emit(progress_cb, "sweep_run_done", {"idx": idx, "total": total, "error": results[idx]["error"]})

    cancelled = False
    if n_jobs and n_jobs > 1 and total > 1:
        with ProcessPoolExecutor(max_workers=int(n_jobs)) as ex:
            futures = {
                ex.submit(_eval_one, idx, universe, strat, risk, costs, haircut, isolated): idx
                for idx, strat in enumerate(strategies)
            }
            for fut in as_completed(futures):
                idx = futures[fut]
                if fut.cancelled():
                    continue
                try:
                    _record(idx, fut.result())
                except Exception as e:
                    # record as an error entry; continue
                    _handle_error(idx, e)
                if not cancelled and should_stop is not None and should_stop():
                    cancelled = True
                    for f in futures:
                        f.cancel()
    else:
        for idx, strat in enumerate(strategies):
            if should_stop is not None and should_stop():
                cancelled = True
                break
            try:
                _record(idx, _eval_one(idx, universe, strat, risk, costs, haircut, isolated))
            except Exception as e:
                _handle_error(idx, e)

    ordered: List[Dict[str, Any]] = []
    for idx in range(total):
        if idx in results:
            ordered.append(results[idx])
        else:
            ordered.append(_failed(idx, strategies[idx], CANCELLED))

    failed = sum(1 for r in ordered if r["error"] and r["error"] != CANCELLED)
    done_payload = {
        "runs": total,
        "completed": sum(1 for r in ordered if r["error"] is None),
        "failed": failed,
        "cancelled": bool(cancelled),
        "elapsed_sec": time.time() - t0,
    }
    if run_log is not None:
        run_log.log("sweep_done", done_payload)
    logger.info(
        "sweep_complete runs=%d completed=%d failed=%d cancelled=%s elapsed=%.2fs",
        total,
        done_payload["completed"],
        failed,
        cancelled,
        done_payload["elapsed_sec"],
    )
    emit(progress_cb, "sweep_done", done_payload)
    return ordered


def best_run(results: Sequence[Dict[str, Any]], key: str = "total_return_pct", view: str = "realistic") -> Optional[Dict[str, Any]]:
    """Highest-scoring successful run (ties keep input order)."""
    ok = [r for r in results if r.get("error") is None and r.get(view)]
    if not ok:
        return None
    return max(ok, key=lambda r: float(r[view].get(key, 0.0)))


__all__ = ["run_sweep", "best_run", "CANCELLED"]
