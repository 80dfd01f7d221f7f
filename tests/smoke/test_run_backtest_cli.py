from __future__ import annotations

import json
import logging
from pathlib import Path

from scripts.run_backtest import main
from tests._bars_test_utils import orb_breakout_frame


def _restore_root_logging(before, level) -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        if h not in before:
            root.removeHandler(h)
            h.close()
    root.setLevel(level)


def test_cli_writes_summary_trades_and_equity(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TRADELAB_LOG_DIR", str(tmp_path / "logs"))
    csv_path = tmp_path / "aaa.csv"
    orb_breakout_frame().to_csv(csv_path, index_label="date")

    root = logging.getLogger()
    before, level = list(root.handlers), root.level
    try:
        code = main([str(csv_path), "--kind", "orb", "--out", str(tmp_path / "out"), "--label", "smoke", "--quiet"])
    finally:
        _restore_root_logging(before, level)

    assert code == 0
    (run_dir,) = list((tmp_path / "out").iterdir())
    assert run_dir.name.endswith("_smoke")
    summary = json.loads((run_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["raw"]["total_trades"] == 1
    assert summary["meta"]["symbols"] == ["AAA"]
    assert summary["haircut"]["execution_slippage_pct"] > 0
    assert (run_dir / "trades.csv").exists()
    assert (run_dir / "equity.csv").exists()
    assert "trades=1" in capsys.readouterr().out


def test_cli_sweep_from_config(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TRADELAB_LOG_DIR", str(tmp_path / "logs"))
    csv_path = tmp_path / "bars.csv"
    orb_breakout_frame().to_csv(csv_path, index_label="date")
    config = tmp_path / "sweep.json"
    config.write_text(
        json.dumps({"risk": {"initial_capital": 50000}, "sweep": [{"profit_target_pct": 2.0}, {"profit_target_pct": 4.0}]}),
        encoding="utf-8",
    )

    root = logging.getLogger()
    before, level = list(root.handlers), root.level
    try:
        code = main([f"spy={csv_path}", "--config", str(config), "--out", str(tmp_path / "out"), "--quiet"])
    finally:
        _restore_root_logging(before, level)

    assert code == 0
    (run_dir,) = list((tmp_path / "out").iterdir())
    results = json.loads((run_dir / "sweep.json").read_text(encoding="utf-8"))
    assert [r["idx"] for r in results] == [0, 1]
    assert all(r["error"] is None for r in results)
    assert (run_dir / "sweep.jsonl").exists()


def test_cli_reports_bad_input(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TRADELAB_LOG_DIR", str(tmp_path / "logs"))
    csv_path = tmp_path / "bad.csv"
    orb_breakout_frame().iloc[::-1].to_csv(csv_path, index_label="date")

    root = logging.getLogger()
    before, level = list(root.handlers), root.level
    try:
        code = main([str(csv_path), "--out", str(tmp_path / "out"), "--quiet"])
    finally:
        _restore_root_logging(before, level)

    assert code == 2
    assert "BAD" in capsys.readouterr().err
