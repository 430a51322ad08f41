#!/usr/bin/env python3
"""
Inspect what the keeper would see right now.

Rebuilds the open-trader set from the event log once, then prints one row per
trader with the position, stops, trigger flags and the payout estimate against
the ledger treasury. Optionally lists the most recent StopClosed events.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd
from dotenv import load_dotenv

from keeper.domain.models import PRICE_SCALE, EventKind
from keeper.trader.evaluator import TriggerEvaluator, compute_payout
from keeper.trader.projection import OpenPositionProjection, parse_trader
from keeper.trader.runner import configure_logging, connect_ledger
from keeper.utils.config_loader import load_config, load_keeper_settings

logger = logging.getLogger("verify_keepers")

WEI = 10**18


def inspect_trader(ledger, evaluator: TriggerEvaluator, trader: str, fee_bps: int, price: int, balance: int) -> dict | None:
    pos = ledger.positions(trader)
    if not pos.is_open:
        return None
    sl, tp = ledger.get_stops(trader)
    trigger, hit_sl, hit_tp = evaluator.should_close(trader)
    can_liq = evaluator.can_liquidate(trader)
    est = compute_payout(pos, price, fee_bps)
    return {
        "trader": trader,
        "side": "LONG" if pos.is_long else "SHORT",
        "lev": pos.leverage,
        "margin": pos.margin / WEI,
        "entry": pos.entry_price / PRICE_SCALE,
        "sl": sl / PRICE_SCALE if sl else None,
        "tp": tp / PRICE_SCALE if tp else None,
        "should_close": trigger,
        "hit_sl": hit_sl,
        "hit_tp": hit_tp,
        "can_liquidate": can_liq,
        "payout": est.payout / WEI,
        "treasury": balance / WEI,
        "check": "INSUFFICIENT" if est.payout > balance else "OK",
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect open perps positions as the keeper sees them.")
    parser.add_argument("--start-block", type=int, default=None, help="First block to replay (default: head - lookback).")
    parser.add_argument("--lookback", type=int, default=None, help="Lookback window in blocks.")
    parser.add_argument("--limit-stops", type=int, default=10, help="Recent StopClosed events to list (0 disables).")
    parser.add_argument("--stops-window", type=int, default=50_000, help="Blocks to search for StopClosed events.")
    args = parser.parse_args()

    env_path = Path(__file__).resolve().parents[1] / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)

    try:
        settings = load_keeper_settings(load_config())
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1
    configure_logging(settings.debug)
    ledger = connect_ledger(settings)
    if ledger is None:
        logger.error("RPC not reachable")
        return 1

    latest = ledger.block_number()
    if args.start_block is not None:
        cursor = max(0, args.start_block - 1)
    elif settings.start_block is not None:
        cursor = max(0, settings.start_block - 1)
    else:
        cursor = max(0, latest - (args.lookback or settings.lookback_blocks))

    projection = OpenPositionProjection(ledger, cursor, scan_chunk=settings.scan_chunk, max_attempts=settings.max_attempts)
    print(f"Scanning {cursor + 1} -> {latest}")
    projection.advance(latest)
    traders = projection.snapshot()
    print(f"Open traders detected: {len(traders)}")
    if not traders:
        print(
            "No open positions found in scanned range. If you recently opened positions, "
            "increase the lookback or set --start-block to include those blocks."
        )

    evaluator = TriggerEvaluator(ledger, max_attempts=settings.max_attempts)
    fee_bps = ledger.taker_fee_bps()
    price = ledger.get_price()
    balance = ledger.treasury_balance()
    rows = []
    for trader in traders:
        try:
            row = inspect_trader(ledger, evaluator, trader, fee_bps, price, balance)
        except Exception as e:
            print(f"Error inspecting {trader}: {e}")
            continue
        if row is not None:
            rows.append(row)

    if rows:
        with pd.option_context("display.max_columns", None, "display.width", 200):
            print(pd.DataFrame(rows).to_string(index=False))
    print(f"\nPrice: {price / PRICE_SCALE:.4f}  takerFeeBps: {fee_bps}  Treasury: {balance / WEI:.6f}")

    if args.limit_stops > 0:
        start = max(0, latest - args.stops_window)
        recent = ledger.query_events(EventKind.STOP_CLOSED, start, latest)[-args.limit_stops:]
        print(f"\nRecent StopClosed events (last {len(recent)}):")
        for ev in recent:
            print(f"  {ev.block_number} {ev.tx_hash} trader={parse_trader(ev.trader)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
