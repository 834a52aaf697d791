"""
main.py
--------
Entry point for the Recurring Billing Engine.

Loads subscriptions (and optionally an existing ledger) from CSV into the
in-memory stores, runs the daily bill sweep for an as-of date, and writes
the resulting ledger to the outputs/ folder.

Usage (from the project root):
    python main.py --subscriptions data/subscriptions.csv

    # With optional arguments:
    python main.py --subscriptions subs.csv --records ledger.csv
    python main.py --subscriptions subs.csv --as-of 2024-06-01
    python main.py --subscriptions subs.csv --send-reminders
    python main.py --subscriptions subs.csv --analyze-user USER001 --base-currency USD
"""

import sys
import os
import argparse
import json
import logging
import pandas as pd
from datetime import date, datetime

# Ensure project root is on path (for VS Code runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from billing_engine import BillingEngine
from collaborators.notifications import LoggingNotificationSink
from core.errors import DuplicateRecordError
from core.models import UserProfile
from stores.memory_store import (
    subscriptions_from_frame, records_from_frame, records_to_frame, subscriptions_to_frame,
)


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Recurring Billing Engine — Generate bills from subscription schedules."
    )
    parser.add_argument(
        "--subscriptions", type=str, required=True,
        help="Path to subscriptions CSV (id, user_id, name, price, currency, billing_cycle, start_date, next_payment)."
    )
    parser.add_argument(
        "--records", type=str, default=None,
        help="Optional path to an existing payment-record ledger CSV."
    )
    parser.add_argument(
        "--as-of", type=str, default=None,
        help="Run date (YYYY-MM-DD). Defaults to today."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    parser.add_argument(
        "--send-reminders", action="store_true", default=False,
        help="Also send reminders for overdue pending bills."
    )
    parser.add_argument(
        "--analyze-user", type=str, default=None,
        help="Write an analysis overview (heatmap, projection, sankey, anomalies, dashboard stats) for this user."
    )
    parser.add_argument(
        "--base-currency", type=str, default=None,
        help="Base currency for --analyze-user. Defaults to config value."
    )
    return parser.parse_args()


# =============================================================================
# MAIN
# =============================================================================

def main():
    args = parse_args()

    # --- Resolve run date & paths ---
    run_date = date.fromisoformat(args.as_of) if args.as_of else date.today()
    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    engine = BillingEngine.in_memory(clock=lambda: run_date, sink=LoggingNotificationSink())

    # --- Load subscriptions ---
    logger.info(f"Loading subscriptions from: {args.subscriptions}")
    if not os.path.exists(args.subscriptions):
        logger.error(f"Input file not found: {args.subscriptions}")
        sys.exit(1)

    subscriptions = subscriptions_from_frame(pd.read_csv(args.subscriptions))
    for sub in subscriptions:
        engine.subscriptions.create(sub)
    logger.info(f"Loaded {len(subscriptions):,} subscriptions, {len({s.user_id for s in subscriptions}):,} users.")

    # --- Load existing ledger ---
    if args.records:
        if not os.path.exists(args.records):
            logger.error(f"Ledger file not found: {args.records}")
            sys.exit(1)
        loaded = skipped = 0
        for record in records_from_frame(pd.read_csv(args.records)):
            try:
                engine.records.create(record)
                loaded += 1
            except DuplicateRecordError:
                skipped += 1
        logger.info(f"Loaded {loaded:,} payment records. Skipped duplicates: {skipped:,}.")

    # --- Run sweep ---
    logger.info(f"Running daily sweep as of {run_date}...")
    report = engine.run_daily_sweep()
    for failure in report.failures:
        logger.warning(f"[{failure.reason}] subscription {failure.subscription_id}: {failure.message}")

    if args.send_reminders:
        sent = engine.send_pending_bill_reminders()
        logger.info(f"Pending-bill reminders sent: {sent:,}.")

    # --- Output: ledger & subscriptions ---
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    ledger = records_to_frame(engine.records.all())
    ledger_path = os.path.join(output_dir, f"ledger_{timestamp}.csv")
    ledger.to_csv(ledger_path, index=False)
    logger.info(f"Ledger saved to: {ledger_path}")

    subs_path = os.path.join(output_dir, f"subscriptions_{timestamp}.csv")
    subscriptions_to_frame(engine.subscriptions.all()).to_csv(subs_path, index=False)
    logger.info(f"Subscriptions saved to: {subs_path}")

    _print_summary(report.summary, ledger)

    # --- Optional: Analysis overview ---
    if args.analyze_user:
        if args.base_currency:
            engine.users.add(UserProfile(id=args.analyze_user, currency=args.base_currency.upper()))
        overview = engine.get_analysis_overview(args.analyze_user)
        payload = overview.to_dict()
        payload["dashboard"] = engine.get_dashboard_stats(args.analyze_user).to_dict()
        analysis_path = os.path.join(output_dir, f"analysis_{args.analyze_user}_{timestamp}.json")
        with open(analysis_path, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        logger.info(
            f"Analysis saved to: {analysis_path} "
            f"(YTD {overview.currency} {overview.total_expense:,.2f}, "
            f"projected {overview.currency} {overview.projected_total:,.2f}, "
            f"{len(overview.anomalies)} anomalies)"
        )


def _print_summary(summary: dict, ledger: pd.DataFrame):
    """Prints a clean summary table to the console."""
    print("\n" + "=" * 80)
    print(f"  DAILY BILLING SWEEP — {summary['run_date']}")
    print("=" * 80)

    print("\n  Sweep Outcome:")
    print("  " + "-" * 60)
    for key in ("scanned", "generated", "unchanged", "failed", "timed_out"):
        print(f"    {key:12s}  {summary[key]:>6,}")

    if ledger.empty:
        print("\n  Ledger is empty.\n")
        print("=" * 80 + "\n")
        return

    print("\n  Ledger by Status:")
    print("  " + "-" * 60)
    for status, group in ledger.groupby("status"):
        backfilled = int(group["is_backfilled"].astype(bool).sum())
        print(f"    {status:10s}  {len(group):>6,} records  (backfilled: {backfilled})")

    print(f"\n  Subscriptions with records: {ledger['subscription_id'].nunique():,}")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
