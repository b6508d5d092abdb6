"""
Payout orchestrator — the batch driver.

  run()
    1. Select approved submissions whose campaign is payout-eligible
    2. For each, sequentially: process_submission()
    3. Aggregate: succeeded / deferred / rejected / failed, total transferred

  process_submission(id)
    a. Load submission + campaign                 (NotFoundError → NOT_FOUND,
                                                   unapproved → SUBMISSION_NOT_APPROVED)
    b. Refuse if an unresolved discrepancy exists (BLOCKED_PENDING_RECONCILIATION)
    c. Take the campaign lease                    (CAMPAIGN_BUSY if held elsewhere)
    d. Re-read campaign under the lease, read ledger watermarks
    e. quote_payout()   → zero / deferred outcomes end here
    f. enforce()        → StateError outcomes end here
    g. TransferIssuer.issue()
    h. Release the lease

Every per-item error becomes a PayoutOutcome; one bad submission never stops
the batch. ConfigurationError is the only exception allowed out of run().
"""

import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from config import Settings
from models.schemas import (
    OutcomeKind,
    PayoutOutcome,
    PayoutStatus,
    RunSummary,
    SubmissionStatus,
)
from services.enforcer import enforce
from services.errors import (
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    StateError,
    UnreconciledTransferError,
)
from services.ledger import Ledger
from services.lifecycle import is_payout_eligible
from services.payout import quote_payout
from services.store import Store
from services.transfers import TransferIssuer

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
LEASE_ACQUIRE_ATTEMPTS = 3
LEASE_RETRY_DELAY = 1.0    # seconds between lease attempts


class PayoutEngine:
    def __init__(
        self,
        store: Store,
        issuer: TransferIssuer,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.issuer = issuer
        self.settings = settings
        self.ledger = Ledger(store)
        self.run_id = uuid.uuid4().hex
        self._sleep = sleep

    # ======================================================================
    # Batch
    # ======================================================================

    def run(self, submission_ids: Optional[list[str]] = None) -> RunSummary:
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        summary = RunSummary(run_id=self.run_id, started_at=started_at)

        submissions = self._select_submissions(submission_ids)
        logger.info(f"[Payment Processing] Found {len(submissions)} approved submissions to process")

        for submission_id in submissions:
            try:
                outcome = self.process_submission(submission_id)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error processing submission {submission_id}")
                outcome = PayoutOutcome(
                    submission_id=submission_id,
                    status=PayoutStatus.ERROR,
                    message=str(e),
                )
            _add_outcome(summary, outcome)

        summary.duration_seconds = round(time.monotonic() - start, 3)
        logger.info(
            f"[Payment Processing] Completed: {summary.succeeded} success, "
            f"{summary.deferred} deferred, {summary.rejected} rejected, "
            f"{summary.failed} failed, ${summary.total_transferred:,.2f} total paid"
        )
        return summary

    def _select_submissions(self, submission_ids: Optional[list[str]]) -> list[str]:
        if submission_ids is not None:
            return list(submission_ids)

        eligible = [
            c.id
            for c in self.store.list_campaigns()
            if is_payout_eligible(c, self.settings.legacy_payable_campaign_ids)
        ]
        submissions = self.store.list_submissions(
            status=SubmissionStatus.APPROVED, campaign_ids=eligible
        )
        return [s.id for s in submissions]

    # ======================================================================
    # Single submission
    # ======================================================================

    def process_submission(self, submission_id: str) -> PayoutOutcome:
        submission = self.store.get_submission(submission_id)
        if submission is None:
            return PayoutOutcome(
                submission_id=submission_id,
                status=PayoutStatus.NOT_FOUND,
                message="Submission not found",
            )
        if submission.status != SubmissionStatus.APPROVED:
            return PayoutOutcome(
                submission_id=submission_id,
                campaign_id=submission.campaign_id,
                status=PayoutStatus.SUBMISSION_NOT_APPROVED,
                message=f"Submission is not approved (status: {submission.status.value})",
            )

        outcome = PayoutOutcome(
            submission_id=submission_id,
            campaign_id=submission.campaign_id,
            status=PayoutStatus.ERROR,
        )

        if self.store.open_discrepancies(submission_id):
            outcome.status = PayoutStatus.BLOCKED_PENDING_RECONCILIATION
            outcome.message = "Unresolved transfer discrepancy; reconcile before paying again"
            logger.warning(f"Submission {submission_id}: {outcome.message}")
            return outcome

        try:
            with self._campaign_lease(submission.campaign_id):
                return self._pay(submission_id, outcome)
        except StateError as e:
            outcome.status = e.status
            outcome.message = str(e)
        except NotFoundError as e:
            outcome.status = PayoutStatus.NOT_FOUND
            outcome.message = str(e)
        except UnreconciledTransferError as e:
            outcome.status = PayoutStatus.RECONCILIATION_REQUIRED
            outcome.amount = e.amount
            outcome.transfer_id = e.transfer_id
            outcome.message = str(e)
        except ExternalServiceError as e:
            logger.error(f"Transfer failed for submission {submission_id}: {e}")
            outcome.status = PayoutStatus.TRANSFER_FAILED
            outcome.message = str(e)

        logger.info(f"Submission {submission_id}: {outcome.status.value} {outcome.message}")
        return outcome

    def _pay(self, submission_id: str, outcome: PayoutOutcome) -> PayoutOutcome:
        # Fresh reads under the lease: nothing older than this cycle
        submission = self.store.get_submission(submission_id)
        if submission is None:
            raise NotFoundError(f"Submission {submission_id} not found")
        campaign = self.store.get_campaign(submission.campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {submission.campaign_id} not found")

        baseline = self.ledger.baseline(submission_id)
        highest_unpaid = self.ledger.highest_unpaid(submission_id)
        logger.debug(
            f"[Payment Debug] Submission {submission_id}: baseline={baseline}, "
            f"highest_unpaid={highest_unpaid}"
        )

        quote = quote_payout(campaign, submission.payout_amount, baseline, highest_unpaid)
        outcome.units = quote.new_units
        outcome.campaign_status = campaign.status

        if quote.status == PayoutStatus.DEFERRED_BELOW_MINIMUM:
            outcome.status = quote.status
            outcome.deferred_amount = quote.amount
            outcome.message = quote.message
            return outcome
        if quote.status != PayoutStatus.PAID:
            outcome.status = quote.status
            outcome.message = quote.message
            return outcome

        enforcement = enforce(
            campaign,
            submission.payout_amount,
            quote.amount,
            self.settings.legacy_payable_campaign_ids,
        )

        account = self.store.get_creator_account(submission.creator_id)
        payment = self.issuer.issue(submission, campaign, account, quote, enforcement)

        outcome.status = PayoutStatus.PAID
        outcome.amount = payment.amount
        outcome.transfer_id = payment.transfer_id
        outcome.campaign_status = enforcement.new_status
        outcome.message = f"Paid ${payment.amount:,.2f} for {payment.units_paid:,} views"
        if enforcement.clipped_from is not None:
            outcome.message += f" (clipped from ${enforcement.clipped_from:,.2f} at max payout)"
        if enforcement.status_changed:
            logger.info(
                f"Campaign {campaign.id} status changed from "
                f"{enforcement.previous_status.value} to {enforcement.new_status.value}"
            )
        logger.info(f"Submission {submission_id}: {outcome.message}")
        return outcome

    @contextmanager
    def _campaign_lease(self, campaign_id: str) -> Iterator[None]:
        ttl = self.settings.campaign_lease_ttl
        for attempt in range(1, LEASE_ACQUIRE_ATTEMPTS + 1):
            if self.store.acquire_lease(campaign_id, self.run_id, ttl):
                break
            logger.warning(
                f"Campaign {campaign_id} is held by another run, "
                f"attempt {attempt}/{LEASE_ACQUIRE_ATTEMPTS}"
            )
            if attempt < LEASE_ACQUIRE_ATTEMPTS:
                self._sleep(LEASE_RETRY_DELAY)
        else:
            raise StateError(
                PayoutStatus.CAMPAIGN_BUSY,
                f"Campaign {campaign_id} is being paid by another run",
            )
        try:
            yield
        finally:
            self.store.release_lease(campaign_id, self.run_id)


def _add_outcome(summary: RunSummary, outcome: PayoutOutcome) -> None:
    summary.outcomes.append(outcome)
    summary.total_processed += 1
    summary.total_transferred += outcome.amount

    kind = outcome.kind
    if kind == OutcomeKind.SUCCEEDED:
        summary.succeeded += 1
    elif kind == OutcomeKind.DEFERRED:
        summary.deferred += 1
    elif kind == OutcomeKind.REJECTED:
        summary.rejected += 1
    else:
        summary.failed += 1


def summary_log_entry(summary: RunSummary) -> dict:
    """The one structured line per run that log aggregation picks up."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "run_id": summary.run_id,
        "duration": summary.duration_seconds,
        "totalProcessed": summary.total_processed,
        "successCount": summary.succeeded,
        "deferredCount": summary.deferred,
        "rejectedCount": summary.rejected,
        "failureCount": summary.failed,
        "totalPaid": str(summary.total_transferred),
    }
