#!/usr/bin/env python3
"""
Run one keeper pass over an explicit trader list (no log scanning).

Traders come from --traders or the TRADERS env var (comma-separated). The same
rules as the daemon apply: liquidation first, stop closes only when the
treasury can pay out, at most max_tx_per_loop submissions.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

from keeper.trader.projection import OpenPositionProjection, parse_trader
from keeper.trader.runner import configure_logging, connect_ledger
from keeper.trader.scheduler import ActionScheduler
from keeper.utils import database
from keeper.utils.config_loader import load_config, load_keeper_settings

logger = logging.getLogger("keepers_once")


def parse_traders(csv: str) -> list[str]:
    out = []
    for part in (csv or "").split(","):
        t = parse_trader(part.strip()) if part.strip() else None
        if t and t not in out:
            out.append(t)
    return out


def main() -> int:
    parser = argparse.ArgumentParser(description="One keeper pass over a fixed set of traders.")
    parser.add_argument("--traders", default=None, help="Comma-separated trader addresses (default: $TRADERS).")
    args = parser.parse_args()

    env_path = Path(__file__).resolve().parents[1] / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)

    traders = parse_traders(args.traders if args.traders is not None else os.getenv("TRADERS", ""))
    if not traders:
        print("No traders provided via --traders or TRADERS. Nothing to do.")
        return 0

    try:
        settings = load_keeper_settings(load_config())
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1
    configure_logging(settings.debug)
    database.configure(settings.database_path)
    database.init_db()

    ledger = connect_ledger(settings)
    if ledger is None:
        logger.error("RPC not reachable")
        return 1

    head = ledger.block_number()
    projection = OpenPositionProjection(ledger, head)
    projection.seed(head, traders)
    scheduler = ActionScheduler(
        ledger,
        projection,
        max_tx_per_loop=settings.max_tx_per_loop,
        scan_enabled=False,
        gas_limit=settings.gas_limit,
        wait_for_receipt=True,
        receipt_timeout_seconds=settings.receipt_timeout_seconds,
        max_attempts=settings.max_attempts,
    )

    print(f"Keeper pass over {len(traders)} trader(s)")
    report = scheduler.run_iteration()
    for r in report.results:
        status = f"tx={r.tx_hash}" if r.ok else f"failed: {r.error}"
        print(f"  {r.action.name} {r.action.trader} {status}")
    print(
        f"Keeper pass finished: submitted={report.submitted} deferred={report.deferred} "
        f"skipped_unaffordable={report.skipped_unaffordable} failures={report.failures}"
    )
    database.close_write_conn()
    return 0


if __name__ == "__main__":
    sys.exit(main())
