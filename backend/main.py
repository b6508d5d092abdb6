"""
Creator Payout Engine — FastAPI application.

Exposes the batch jobs over HTTP:

  POST /api/payouts/run
    1. Open the datastore and the Stripe transfer client (fails fast → 500)
    2. PayoutEngine.run() over every eligible approved submission
       (or the explicit submission_ids in the request body)
    3. Generate the .xlsx run report (excel_export.py)
    4. Return the RunSummary plus the report filename

  POST /api/payouts/submissions/{submission_id}
    Run one payout cycle for a single submission → PayoutOutcome

  POST /api/engagement/track
    Measure every approved submission and append ledger records → TrackingSummary

  POST /api/campaigns/schedule
    Apply date-driven campaign transitions (activate / expire) → ScheduleSummary

  GET /api/download/{filename}
    Serve a generated .xlsx file from the output directory.

Error handling:
  - Missing Stripe credentials    → 500
  - Unknown submission            → 404
  - Transfer call failed (single) → 502
  - Per-submission failures are reported inside the summary, never as errors
"""

import os
import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

import config
from models.schemas import (
    PayoutOutcome,
    PayoutStatus,
    RunPayoutsRequest,
    RunPayoutsResponse,
    ScheduleSummary,
    TrackingSummary,
)
from services.engagement import EngagementTracker
from services.errors import ConfigurationError
from services.excel_export import generate_run_report
from services.lifecycle import apply_scheduled_transitions
from services.orchestrator import PayoutEngine
from services.store import Store
from services.tracking import track_all
from services.transfers import StripeTransferClient, TransferIssuer

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Creator Payout Engine",
    description="Pays creators per view from an append-only engagement ledger",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ===========================================================================
# Wiring — one explicit client per request, built from Settings
# ===========================================================================

def get_settings() -> config.Settings:
    return config.load_settings()


def open_store(settings: config.Settings) -> Store:
    return Store(settings.database_path)


def build_engine(settings: config.Settings, store: Store) -> PayoutEngine:
    """Raises ConfigurationError before anything is paid if Stripe is not set up."""
    client = StripeTransferClient.from_settings(settings)
    issuer = TransferIssuer(store, client, currency=settings.currency)
    return PayoutEngine(store, issuer, settings)


def build_tracker(settings: config.Settings) -> EngagementTracker:
    return EngagementTracker.from_settings(settings)


def _error(status_code: int, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"status": "error", "message": message},
    )


# ===========================================================================
# POST /api/payouts/run — Full payout batch
# ===========================================================================

@app.post("/api/payouts/run", response_model=RunPayoutsResponse)
def run_payouts(request: RunPayoutsRequest = RunPayoutsRequest()):
    """
    Run one payout cycle for every eligible submission.

    Per-submission failures are isolated and reported in the summary; only a
    configuration problem fails the whole request.
    """
    settings = get_settings()
    store = open_store(settings)

    logger.info("=" * 60)
    logger.info("PAYOUT RUN")
    logger.info("=" * 60)

    engine = None
    try:
        engine = build_engine(settings, store)
        summary = engine.run(request.submission_ids)
    except ConfigurationError as e:
        logger.error(f"Payout run aborted: {e}")
        raise _error(500, str(e))
    finally:
        if engine is not None:
            engine.issuer.client.close()
        store.close()

    filename = None
    if request.generate_report:
        filepath = generate_run_report(summary, settings.output_dir)
        filename = os.path.basename(filepath)
        logger.info(f"  Report saved: {filename}")

    logger.info(
        f"Run {summary.run_id} complete: {summary.total_processed} processed, "
        f"${summary.total_transferred:,.2f} transferred"
    )
    return RunPayoutsResponse(status="success", filename=filename, summary=summary)


# ===========================================================================
# POST /api/payouts/submissions/{submission_id} — Single payout cycle
# ===========================================================================

@app.post("/api/payouts/submissions/{submission_id}", response_model=PayoutOutcome)
def pay_submission(submission_id: str):
    settings = get_settings()
    store = open_store(settings)
    engine = None
    try:
        engine = build_engine(settings, store)
        outcome = engine.process_submission(submission_id)
    except ConfigurationError as e:
        raise _error(500, str(e))
    finally:
        if engine is not None:
            engine.issuer.client.close()
        store.close()

    if outcome.status == PayoutStatus.NOT_FOUND:
        raise _error(404, outcome.message or f"Submission not found: {submission_id}")
    if outcome.status == PayoutStatus.TRANSFER_FAILED:
        raise _error(502, outcome.message)
    return outcome


# ===========================================================================
# POST /api/engagement/track — Engagement tracking run
# ===========================================================================

@app.post("/api/engagement/track", response_model=TrackingSummary)
def track_engagement():
    settings = get_settings()
    store = open_store(settings)
    tracker = build_tracker(settings)
    try:
        return track_all(store, tracker)
    finally:
        tracker.close()
        store.close()


# ===========================================================================
# POST /api/campaigns/schedule — Date-driven campaign transitions
# ===========================================================================

@app.post("/api/campaigns/schedule", response_model=ScheduleSummary)
def schedule_campaigns():
    settings = get_settings()
    store = open_store(settings)
    try:
        return apply_scheduled_transitions(store)
    finally:
        store.close()


# ===========================================================================
# GET /api/download/{filename} — Serve generated .xlsx files
# ===========================================================================

@app.get("/api/download/{filename}")
def download_report(filename: str):
    """
    Download a generated .xlsx report from the output directory.

    Returns 404 if the file doesn't exist or the name escapes the directory.
    """
    output_dir = get_settings().output_dir
    file_path = os.path.join(output_dir, os.path.basename(filename))

    if not os.path.exists(file_path):
        raise _error(404, f"Report not found: {filename}")

    return FileResponse(
        file_path,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
        },
    )


# ===========================================================================
# Main entry point
# ===========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
