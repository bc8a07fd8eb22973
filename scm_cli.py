#!/usr/bin/env python3
"""Command-line runner for the supply-chain control tower."""

from __future__ import annotations
import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd

from engine import SCENARIO_FLAGS, ControlTower

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def load_config(path: Optional[Path]) -> dict:
    if path is None:
        return {}
    text = path.read_text()
    data = json.loads(text)
    return data


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Supply Chain Control Tower CLI")
    parser.add_argument("config", type=Path, nargs="?", default=None, help="Path to JSON config file")
    parser.add_argument("--seed", type=int, default=None, help="Baseline random seed")
    parser.add_argument("--days", type=int, default=None, help="Simulated days to advance")
    parser.add_argument("--scenario", action="append", default=[], choices=sorted(SCENARIO_FLAGS),
                        help="Scenario toggle to switch on (repeatable)")
    parser.add_argument("--rebalance", metavar="SKU", default=None, help="Execute the top rebalance for SKU")
    parser.add_argument("--snapshot", type=Path, default=None, help="Write a JSON snapshot here")
    parser.add_argument("--baseline", type=Path, default=None, help="Write the baseline dataset here")
    parser.add_argument("--report", type=Path, default=None, help="Render a PDF audit report here")
    parser.add_argument("--top", type=int, default=10, help="Exceptions to print")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    if args.days is not None:
        cfg.setdefault("Simulation", {})["days"] = int(args.days)
    logging.basicConfig(level=cfg.get("Logging", {}).get("level", "INFO"), format=LOG_FORMAT)
    tower = ControlTower(cfg, seed=args.seed)

    for flag in args.scenario:
        tower.toggle_scenario(flag)

    days = int(tower.cfg["Simulation"]["days"])
    if days > 0:
        history = tower.run_days(days)
        print("Daily KPIs:")
        print(history.round(3).to_string(index=False))

    if args.rebalance:
        best = tower.top_rebalance(args.rebalance)
        if best is None:
            print(f"No positive-value rebalance for {args.rebalance}")
        else:
            entry = tower.execute_action(best.to_action())
            if entry is not None:
                print(f"{entry.type}: {entry.detail}")

    derived = tower.derive_kpis_and_exceptions()
    k = derived.kpis
    print("KPIs:")
    print({
        "day": tower.day,
        "value_at_risk": k.value_at_risk,
        "service_risk": round(k.service_risk, 3),
        "avg_dc_util": round(k.avg_dc_util, 3),
        "late_shipments": k.late_shipments,
    })
    frame = tower.exceptions_frame().head(args.top)
    if not frame.empty:
        print("Top exceptions:")
        with pd.option_context("display.max_colwidth", 60):
            print(frame.drop(columns=["why"]).to_string(index=False))

    if args.baseline:
        print(f"Saved baseline → {tower.export_baseline(args.baseline)}")
    snapshot_path = args.snapshot
    if args.report and snapshot_path is None:
        snapshot_path = args.report.with_suffix(".json")
    if snapshot_path:
        print(f"Saved snapshot → {tower.export_snapshot(snapshot_path)}")
    if args.report:
        from report import make_pdf

        make_pdf(str(snapshot_path), str(args.report))


if __name__ == "__main__":
    main()
