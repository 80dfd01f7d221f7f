#!/usr/bin/env python3
"""Command-line harness: run one backtest (or a sweep) over CSV bars and save the report."""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd
from dotenv import find_dotenv, load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tradelab.backtest.config import HaircutConfig, RiskConfig, StrategyConfig
from tradelab.backtest.engine import CostModel, run_backtest
from tradelab.backtest.sweep import best_run, run_sweep
from tradelab.errors import TradelabError
from tradelab.utils.logging_setup import setup_logging
from tradelab.utils.progress import console_progress


def _parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a raw + realistic backtest over CSV bar files.")
    parser.add_argument(
        "bars",
        nargs="+",
        help="CSV files (symbol taken from the file stem) or SYMBOL=path pairs.",
    )
    parser.add_argument("--kind", default=os.getenv("STRATEGY_KIND", "orb"), choices=["orb", "rsi", "pattern", "hybrid"])
    parser.add_argument("--target-pct", type=float, default=float(os.getenv("PROFIT_TARGET_PCT", 2.0)))
    parser.add_argument("--stop-pct", type=float, default=float(os.getenv("STOP_LOSS_PCT", 1.0)))
    parser.add_argument("--allow-short", action="store_true")
    parser.add_argument("--capital", type=float, default=float(os.getenv("INITIAL_CAPITAL", 100_000.0)))
    parser.add_argument(
        "--config",
        default=None,
        help="JSON file with optional 'strategy', 'risk', 'haircut' objects, or 'sweep': [strategy, ...].",
    )
    parser.add_argument("--isolated", action="store_true", help="Run every symbol as an independent sleeve.")
    parser.add_argument("--n-jobs", type=int, default=int(os.getenv("N_JOBS", 1)))
    parser.add_argument("--out", default=os.getenv("BACKTEST_OUT_DIR", str(Path("artifacts") / "backtests")))
    parser.add_argument("--label", default="")
    parser.add_argument("--quiet", action="store_true", help="No console progress lines.")
    return parser.parse_args(argv)


def _load_bars(items: List[str]) -> Dict[str, pd.DataFrame]:
    out: Dict[str, pd.DataFrame] = {}
    for item in items:
        if "=" in item:
            symbol, path = item.split("=", 1)
        else:
            path = item
            symbol = Path(item).stem
        out[symbol.strip().upper()] = pd.read_csv(path)
    return out


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _run_dir(base: str, label: str) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    name = f"{timestamp}_{label.strip().replace(' ', '_')}" if label.strip() else timestamp
    run_dir = Path(base) / name
    suffix = 1
    while run_dir.exists():
        run_dir = Path(base) / f"{name}_{suffix}"
        suffix += 1
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def main(argv: List[str] | None = None) -> int:
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(dotenv_path=env_path, override=False)
    args = _parse_args(argv)
    setup_logging()

    cfg = _load_config(args.config)
    strategy_payload = {
        "kind": args.kind,
        "profit_target_pct": args.target_pct,
        "stop_loss_pct": args.stop_pct,
        "allow_short": bool(args.allow_short),
    }
    strategy_payload.update(cfg.get("strategy", {}))
    risk_payload = {"initial_capital": args.capital}
    risk_payload.update(cfg.get("risk", {}))

    haircut = HaircutConfig.from_env()
    if cfg.get("haircut"):
        haircut = HaircutConfig.from_dict({**haircut.__dict__, **cfg["haircut"]})
    risk = RiskConfig.from_dict(risk_payload)
    costs = CostModel.from_env()
    progress = None if args.quiet else console_progress

    try:
        bars = _load_bars(args.bars)
        run_dir = _run_dir(args.out, args.label)
        if cfg.get("sweep"):
            strategies = [StrategyConfig.from_dict({**strategy_payload, **s}) for s in cfg["sweep"]]
            results = run_sweep(
                bars,
                strategies,
                risk,
                costs,
                haircut,
                isolated=args.isolated,
                n_jobs=args.n_jobs,
                progress_cb=progress,
                log_file=str(run_dir / "sweep.jsonl"),
            )
            with (run_dir / "sweep.json").open("w", encoding="utf-8") as handle:
                json.dump(results, handle, indent=2, default=str)
            best = best_run(results)
            print(f"Sweep saved to {run_dir} | runs={len(results)} | best={best['idx'] if best else None}")
            return 0

        report = run_backtest(
            bars,
            StrategyConfig.from_dict(strategy_payload),
            risk,
            costs,
            haircut,
            isolated=args.isolated,
            n_jobs=args.n_jobs,
            progress_cb=progress,
        )
    except (TradelabError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    summary = {
        "raw": report["raw"].as_dict(),
        "realistic": report["realistic"].as_dict(),
        "haircut": report["haircut"].as_dict(),
        "meta": report["meta"],
    }
    with (run_dir / "summary.json").open("w", encoding="utf-8") as handle:
        json.dump(summary, handle, indent=2, default=str)
    report["trades_df"].to_csv(run_dir / "trades.csv", index=False)
    pd.DataFrame(
        {"raw": report["equity"], "realistic": report["realistic_equity"]}
    ).to_csv(run_dir / "equity.csv", index_label="date")

    raw, real = report["raw"], report["realistic"]
    print(
        f"Backtest saved to {run_dir} | trades={raw.total_trades} | raw_return={raw.total_return_pct:.2f}% "
        f"| realistic_return={real.total_return_pct:.2f}% | haircut={report['haircut'].combined_haircut_pct:.2f}%"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
