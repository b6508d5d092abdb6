"""
Excel run report.

Creates a 3-tab .xlsx file per payout run:
  Tab 1: "Run Summary"      — one row per campaign touched by the run
  Tab 2: "Payout Outcomes"  — one row per processed submission
  Tab 3: "Exceptions"       — rejected / failed submissions for review

File naming: "Payout Run {YYYY-MM-DD HHMMSS} {run id prefix}.xlsx"

Formatting:
  - Bold header rows on all tabs
  - Auto-fit column widths (with min/max constraints)
  - Freeze top row (header) on all tabs
  - Currency format for money columns ($#,##0.00)
  - Comma-separated number format for view counts (#,##0)
"""

import os
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from models.schemas import OutcomeKind, PayoutOutcome, RunSummary

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MIN_COL_WIDTH = 10      # Minimum column width (characters)
MAX_COL_WIDTH = 50      # Maximum column width (avoid super-wide columns)
HEADER_FONT = Font(bold=True)
CURRENCY_FORMAT = '$#,##0.00'
NUMBER_FORMAT = '#,##0'
DEFAULT_OUTPUT_DIR = "/tmp/payout_reports"


# ===========================================================================
# Public API
# ===========================================================================

def report_filename(summary: RunSummary) -> str:
    return (
        f"Payout Run {summary.started_at.strftime('%Y-%m-%d %H%M%S')} "
        f"{summary.run_id[:8]}.xlsx"
    )


def generate_run_report(summary: RunSummary, output_dir: Optional[str] = None) -> str:
    """
    Generate the .xlsx report for one payout run.

    Args:
        summary:    The run's aggregated result, outcomes included
        output_dir: Directory to save the file (defaults to /tmp/payout_reports)

    Returns:
        Absolute file path of the generated .xlsx report.
    """
    if output_dir is None:
        output_dir = DEFAULT_OUTPUT_DIR

    os.makedirs(output_dir, exist_ok=True)
    filepath = os.path.abspath(os.path.join(output_dir, report_filename(summary)))

    logger.info(f"Generating report: {filepath}")

    exceptions = [
        o for o in summary.outcomes
        if o.kind in (OutcomeKind.REJECTED, OutcomeKind.FAILED)
    ]

    wb = Workbook()

    ws1 = wb.active
    ws1.title = "Run Summary"
    _build_run_summary(ws1, summary)

    ws2 = wb.create_sheet("Payout Outcomes")
    _build_payout_outcomes(ws2, summary.outcomes)

    ws3 = wb.create_sheet("Exceptions")
    _build_exceptions(ws3, exceptions)

    wb.save(filepath)
    logger.info(
        f"Report saved: {filepath} "
        f"({len(summary.outcomes)} outcomes, {len(exceptions)} exceptions)"
    )

    return filepath


# ===========================================================================
# Tab 1: Run Summary
# ===========================================================================

def _build_run_summary(ws: Worksheet, summary: RunSummary) -> None:
    """
    Tab 1: One row per campaign, sorted by Total Paid descending.

    Columns:
      Campaign ID | Submissions | Paid | Deferred | Rejected | Failed |
      Total Paid | Deferred Amount | Campaign Status

    A final "TOTAL" row carries the run-level counts.
    """
    headers = [
        "Campaign ID",
        "Submissions",
        "Paid",
        "Deferred",
        "Rejected",
        "Failed",
        "Total Paid",
        "Deferred Amount",
        "Campaign Status",
    ]
    ws.append(headers)

    rows = _campaign_rows(summary.outcomes)
    for row in sorted(rows.values(), key=lambda r: r["total_paid"], reverse=True):
        ws.append([
            row["campaign_id"],
            row["submissions"],
            row["paid"],
            row["deferred"],
            row["rejected"],
            row["failed"],
            float(row["total_paid"]),
            float(row["deferred_amount"]),
            row["status"],
        ])

    ws.append([
        "TOTAL",
        summary.total_processed,
        summary.succeeded,
        summary.deferred,
        summary.rejected,
        summary.failed,
        float(summary.total_transferred),
        float(sum((o.deferred_amount for o in summary.outcomes), Decimal("0"))),
        f"run {summary.run_id} in {summary.duration_seconds:.1f}s",
    ])
    for cell in ws[ws.max_row]:
        cell.font = HEADER_FONT

    _format_header_row(ws)
    _freeze_top_row(ws)

    for col_idx in [2, 3, 4, 5, 6]:
        _apply_column_format(ws, col_idx=col_idx, fmt=NUMBER_FORMAT, start_row=2)
    for col_idx in [7, 8]:
        _apply_column_format(ws, col_idx=col_idx, fmt=CURRENCY_FORMAT, start_row=2)

    _auto_fit_columns(ws)


def _campaign_rows(outcomes: list[PayoutOutcome]) -> dict[str, dict]:
    rows: dict[str, dict] = defaultdict(lambda: {
        "campaign_id": "",
        "submissions": 0,
        "paid": 0,
        "deferred": 0,
        "rejected": 0,
        "failed": 0,
        "total_paid": Decimal("0"),
        "deferred_amount": Decimal("0"),
        "status": None,
    })

    for o in outcomes:
        key = o.campaign_id or "(unknown)"
        row = rows[key]
        row["campaign_id"] = key
        row["submissions"] += 1
        row["total_paid"] += o.amount
        row["deferred_amount"] += o.deferred_amount
        if o.kind == OutcomeKind.SUCCEEDED:
            row["paid"] += 1 if o.amount > 0 else 0
        elif o.kind == OutcomeKind.DEFERRED:
            row["deferred"] += 1
        elif o.kind == OutcomeKind.REJECTED:
            row["rejected"] += 1
        else:
            row["failed"] += 1
        # Outcomes are in processing order, so the last one seen is current
        if o.campaign_status is not None:
            row["status"] = o.campaign_status.value

    return rows


# ===========================================================================
# Tab 2: Payout Outcomes
# ===========================================================================

def _build_payout_outcomes(ws: Worksheet, outcomes: list[PayoutOutcome]) -> None:
    """
    Tab 2: One row per processed submission, sorted by Campaign ID then
    Submission ID.
    """
    headers = [
        "Campaign ID",
        "Submission ID",
        "Status",
        "Result",
        "Views Paid",
        "Amount Paid",
        "Deferred Amount",
        "Transfer ID",
        "Campaign Status",
        "Message",
    ]
    ws.append(headers)

    for o in sorted(outcomes, key=_outcome_sort_key):
        ws.append([
            o.campaign_id,
            o.submission_id,
            o.status.value,
            o.kind.value,
            o.units,
            float(o.amount),
            float(o.deferred_amount),
            o.transfer_id,
            o.campaign_status.value if o.campaign_status else None,
            o.message,
        ])

    _format_header_row(ws)
    _freeze_top_row(ws)

    _apply_column_format(ws, col_idx=5, fmt=NUMBER_FORMAT, start_row=2)
    for col_idx in [6, 7]:
        _apply_column_format(ws, col_idx=col_idx, fmt=CURRENCY_FORMAT, start_row=2)

    _auto_fit_columns(ws)


# ===========================================================================
# Tab 3: Exceptions
# ===========================================================================

def _build_exceptions(ws: Worksheet, exceptions: list[PayoutOutcome]) -> None:
    """
    Tab 3: Rejected and failed submissions flagged for manual review.

    RECONCILIATION_REQUIRED rows keep their amount and transfer id: the money
    moved and the books still need the replay.
    """
    headers = [
        "Submission ID",
        "Campaign ID",
        "Status",
        "Amount",
        "Transfer ID",
        "Reason",
    ]
    ws.append(headers)

    for o in exceptions:
        ws.append([
            o.submission_id,
            o.campaign_id,
            o.status.value,
            float(o.amount),
            o.transfer_id,
            o.message,
        ])

    _format_header_row(ws)
    _freeze_top_row(ws)

    _apply_column_format(ws, col_idx=4, fmt=CURRENCY_FORMAT, start_row=2)

    _auto_fit_columns(ws)


# ===========================================================================
# Formatting helpers
# ===========================================================================

def _format_header_row(ws: Worksheet) -> None:
    """Bold the entire header row (row 1)."""
    for cell in ws[1]:
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")


def _freeze_top_row(ws: Worksheet) -> None:
    ws.freeze_panes = "A2"


def _apply_column_format(
    ws: Worksheet,
    col_idx: int,
    fmt: str,
    start_row: int = 2,
) -> None:
    for row in range(start_row, ws.max_row + 1):
        cell = ws.cell(row=row, column=col_idx)
        if cell.value is not None:
            cell.number_format = fmt


def _auto_fit_columns(ws: Worksheet) -> None:
    """
    Auto-fit column widths based on cell content, clamped to
    [MIN_COL_WIDTH, MAX_COL_WIDTH].
    """
    for col_idx in range(1, ws.max_column + 1):
        max_length = 0
        col_letter = get_column_letter(col_idx)

        for row in range(1, ws.max_row + 1):
            cell = ws.cell(row=row, column=col_idx)
            if cell.value is not None:
                max_length = max(max_length, len(str(cell.value)))

        adjusted_width = max_length + 2
        adjusted_width = max(adjusted_width, MIN_COL_WIDTH)
        adjusted_width = min(adjusted_width, MAX_COL_WIDTH)
        ws.column_dimensions[col_letter].width = adjusted_width


def _outcome_sort_key(o: PayoutOutcome) -> tuple:
    return (o.campaign_id or "", o.submission_id)
