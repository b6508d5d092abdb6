"""
Cron entry points.

  python -m jobs process-payments [--submission ID ...] [--report]
  python -m jobs track-engagement
  python -m jobs apply-schedule
  python -m jobs reconcile [--discrepancy ID ...]

Every job prints one JSON summary line and appends it to
<LOG_DIR>/<job log name>-YYYY-MM-DD.log. Exit code 0 on a completed run
(individual submission failures included), 1 when the job itself could not
run: bad configuration or an unhandled error.
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

import config
from services.engagement import EngagementTracker
from services.errors import ConfigurationError, PayoutError
from services.excel_export import generate_run_report
from services.lifecycle import apply_scheduled_transitions
from services.orchestrator import PayoutEngine, summary_log_entry
from services.store import Store
from services.tracking import track_all
from services.transfers import StripeTransferClient, TransferIssuer, replay_discrepancy

logger = logging.getLogger("jobs")

LOG_NAMES = {
    "process-payments": "payment-processing",
    "track-engagement": "engagement-tracking",
    "apply-schedule": "campaign-schedule",
    "reconcile": "reconciliation",
}


# ===========================================================================
# Jobs — each returns the dict written as the run's summary line
# ===========================================================================

def process_payments(
    settings: config.Settings,
    store: Store,
    submission_ids: Optional[list[str]] = None,
    report: bool = False,
) -> dict:
    client = StripeTransferClient.from_settings(settings)
    try:
        engine = PayoutEngine(store, TransferIssuer(store, client, settings.currency), settings)
        summary = engine.run(submission_ids)
    finally:
        client.close()

    entry = summary_log_entry(summary)
    if report:
        entry["report"] = generate_run_report(summary, settings.output_dir)
    return entry


def track_engagement(settings: config.Settings, store: Store) -> dict:
    tracker = EngagementTracker.from_settings(settings)
    try:
        summary = track_all(store, tracker)
    finally:
        tracker.close()

    return {
        "timestamp": _timestamp(),
        "duration": summary.duration_seconds,
        "tracked": summary.tracked,
        "skipped": summary.skipped,
        "errors": summary.errors,
    }


def apply_schedule(settings: config.Settings, store: Store) -> dict:
    summary = apply_scheduled_transitions(store)
    return {
        "timestamp": _timestamp(),
        "activated": summary.activated,
        "expired": summary.expired,
    }


def reconcile(
    settings: config.Settings,
    store: Store,
    discrepancy_ids: Optional[list[int]] = None,
) -> dict:
    """Replay bookkeeping for the given (default: all open) discrepancies."""
    if discrepancy_ids is None:
        discrepancy_ids = [d.id for d in store.open_discrepancies()]

    resolved, failed = [], []
    for discrepancy_id in discrepancy_ids:
        try:
            replay_discrepancy(store, discrepancy_id)
            resolved.append(discrepancy_id)
        except PayoutError as e:
            logger.error(f"Discrepancy #{discrepancy_id} could not be reconciled: {e}")
            failed.append(discrepancy_id)

    return {
        "timestamp": _timestamp(),
        "resolved": resolved,
        "failed": failed,
        "stillOpen": len(store.open_discrepancies()),
    }


# ===========================================================================
# CLI
# ===========================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jobs", description="Creator payout batch jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    pay = sub.add_parser("process-payments", help="Pay every eligible approved submission")
    pay.add_argument("--submission", action="append", dest="submission_ids",
                     help="Only this submission id (repeatable)")
    pay.add_argument("--report", action="store_true", help="Write the .xlsx run report")

    sub.add_parser("track-engagement", help="Measure submissions and append ledger records")
    sub.add_parser("apply-schedule", help="Activate / expire campaigns by date")

    rec = sub.add_parser("reconcile", help="Replay bookkeeping for open discrepancies")
    rec.add_argument("--discrepancy", action="append", type=int, dest="discrepancy_ids",
                     help="Only this discrepancy id (repeatable)")

    return parser


def run_job(args: argparse.Namespace, settings: config.Settings) -> dict:
    store = Store(settings.database_path)
    try:
        if args.command == "process-payments":
            return process_payments(settings, store, args.submission_ids, args.report)
        if args.command == "track-engagement":
            return track_engagement(settings, store)
        if args.command == "apply-schedule":
            return apply_schedule(settings, store)
        return reconcile(settings, store, args.discrepancy_ids)
    finally:
        store.close()


def write_log_entry(log_dir: str, command: str, entry: dict) -> str:
    os.makedirs(log_dir, exist_ok=True)
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    path = os.path.join(log_dir, f"{LOG_NAMES[command]}-{day}.log")
    with open(path, "a") as f:
        f.write(json.dumps(entry) + "\n")
    return path


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    settings = config.load_settings()
    logger.info(f"Starting {args.command} job")

    try:
        entry = run_job(args, settings)
    except ConfigurationError as e:
        logger.error(f"{args.command} aborted: {e}")
        entry, exit_code = {"timestamp": _timestamp(), "error": str(e)}, 1
    except Exception as e:
        logger.exception(f"{args.command} failed")
        entry, exit_code = {"timestamp": _timestamp(), "error": str(e)}, 1
    else:
        exit_code = 0

    print(json.dumps(entry))
    write_log_entry(settings.log_dir, args.command, entry)
    return exit_code


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


if __name__ == "__main__":
    sys.exit(main())
