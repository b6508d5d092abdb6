"""
Pydantic models for the creator view-ledger payout engine.

Domain entities (validated at the datastore boundary):
  - Campaign: sponsor-funded campaign terms + running spend + lifecycle status
  - Submission: a creator's approved post on a campaign + cumulative payout
  - EngagementRecord: one append-only ledger entry (metric value, paid flag)
  - PaymentRecord: immutable audit row for one committed transfer
  - CreatorAccount: the creator's payout destination and onboarding state
  - Discrepancy: money moved but bookkeeping failed; blocks the submission

Engine results:
  - EngagementSnapshot: what the engagement collaborator measured
  - PayoutQuote: the calculator's answer for one submission
  - Enforcement: the enforcer's final amount + campaign status changes
  - PayoutOutcome / RunSummary: per-item and aggregated results of a run
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class CampaignStatus(str, Enum):
    PENDING_FUNDING = "pending_funding"
    FUNDED_BUT_NOT_STARTED = "funded_but_not_started"
    ACTIVE = "active"
    PAUSED_AT_BREAKPOINT = "paused_at_breakpoint"
    PAUSED_BY_ADMIN = "paused_by_admin"
    COMPLETED = "completed"
    EXPIRED = "expired"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Platform(str, Enum):
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    DEFERRED = "deferred"
    REJECTED = "rejected"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    PAID = "paid"
    # Zero-amount successes
    NO_UNPAID_DATA = "no_unpaid_data"
    NO_NEW_UNITS = "no_new_units"
    AMOUNT_TOO_SMALL = "amount_too_small"
    AT_MAX_PAYOUT = "at_max_payout"
    # Entitlement kept for a later cycle
    DEFERRED_BELOW_MINIMUM = "deferred_below_minimum"
    # Campaign state forbids paying (StateError)
    CAMPAIGN_NOT_ACTIVE = "campaign_not_active"
    BUDGET_EXHAUSTED = "budget_exhausted"
    INSUFFICIENT_BUDGET = "insufficient_budget"
    CAMPAIGN_BUSY = "campaign_busy"
    SUBMISSION_NOT_APPROVED = "submission_not_approved"
    # Hard failures
    NOT_FOUND = "not_found"
    ACCOUNT_NOT_ONBOARDED = "account_not_onboarded"
    TRANSFER_FAILED = "transfer_failed"
    RECONCILIATION_REQUIRED = "reconciliation_required"
    BLOCKED_PENDING_RECONCILIATION = "blocked_pending_reconciliation"
    ERROR = "error"

    @property
    def kind(self) -> OutcomeKind:
        return _OUTCOME_KINDS[self]


_OUTCOME_KINDS = {
    PayoutStatus.PAID: OutcomeKind.SUCCEEDED,
    PayoutStatus.NO_UNPAID_DATA: OutcomeKind.SUCCEEDED,
    PayoutStatus.NO_NEW_UNITS: OutcomeKind.SUCCEEDED,
    PayoutStatus.AMOUNT_TOO_SMALL: OutcomeKind.SUCCEEDED,
    PayoutStatus.AT_MAX_PAYOUT: OutcomeKind.SUCCEEDED,
    PayoutStatus.DEFERRED_BELOW_MINIMUM: OutcomeKind.DEFERRED,
    PayoutStatus.CAMPAIGN_NOT_ACTIVE: OutcomeKind.REJECTED,
    PayoutStatus.BUDGET_EXHAUSTED: OutcomeKind.REJECTED,
    PayoutStatus.INSUFFICIENT_BUDGET: OutcomeKind.REJECTED,
    PayoutStatus.CAMPAIGN_BUSY: OutcomeKind.REJECTED,
    PayoutStatus.SUBMISSION_NOT_APPROVED: OutcomeKind.REJECTED,
    PayoutStatus.NOT_FOUND: OutcomeKind.FAILED,
    PayoutStatus.ACCOUNT_NOT_ONBOARDED: OutcomeKind.FAILED,
    PayoutStatus.TRANSFER_FAILED: OutcomeKind.FAILED,
    PayoutStatus.RECONCILIATION_REQUIRED: OutcomeKind.FAILED,
    PayoutStatus.BLOCKED_PENDING_RECONCILIATION: OutcomeKind.FAILED,
    PayoutStatus.ERROR: OutcomeKind.FAILED,
}


# ---------------------------------------------------------------------------
# Campaign — owned by the sponsor; total_paid / status / breakpoint index are
# mutated by the enforcer, status alone by the date-trigger job.
# ---------------------------------------------------------------------------
class Campaign(BaseModel):
    id: str
    title: str = ""
    rate_per_1000_views: Decimal
    budget: Decimal = Decimal("0")          # 0 = unlimited
    total_paid: Decimal = Decimal("0")
    status: CampaignStatus = CampaignStatus.PENDING_FUNDING
    budget_breakpoints: list[Decimal] = Field(default_factory=list)
    current_breakpoint_index: int = 0
    payout_min_per_submission: Optional[Decimal] = None  # None / 0 = no floor
    payout_max_per_submission: Optional[Decimal] = None  # None / 0 = no ceiling
    currency: str = "usd"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Submission — views/likes/comments are the last-known snapshot written by the
# tracking job; payout_amount is the cumulative amount paid to date.
# ---------------------------------------------------------------------------
class Submission(BaseModel):
    id: str
    campaign_id: str
    creator_id: str
    status: SubmissionStatus = SubmissionStatus.PENDING
    asset_url: str = ""
    platform: Optional[Platform] = None
    views: int = 0
    likes: int = 0
    comments: int = 0
    payout_amount: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None


class EngagementRecord(BaseModel):
    id: Optional[int] = None
    submission_id: str
    view_count: int
    likes: Optional[int] = None
    comments: Optional[int] = None
    measured_at: datetime
    paid: bool = False


class PaymentRecord(BaseModel):
    id: Optional[int] = None
    submission_id: str
    campaign_id: str
    creator_id: str
    amount: Decimal
    units_paid: int
    rate_per_unit: Decimal
    baseline_value: int
    target_value: int
    transfer_id: str
    destination_account: str
    idempotency_key: str
    description: str = ""
    created_at: Optional[datetime] = None


class CreatorAccount(BaseModel):
    creator_id: str
    destination_account: Optional[str] = None  # Stripe Connect account id
    onboarded: bool = False


# ---------------------------------------------------------------------------
# Results of the calculator / enforcer
# ---------------------------------------------------------------------------
class PayoutQuote(BaseModel):
    status: PayoutStatus
    baseline: int = 0
    target: Optional[int] = None
    new_units: int = 0
    rate_per_unit: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    message: str = ""


class Enforcement(BaseModel):
    amount: Decimal
    clipped_from: Optional[Decimal] = None   # original amount when clipped at max
    new_total_paid: Decimal
    previous_status: CampaignStatus
    new_status: CampaignStatus
    new_breakpoint_index: int

    @property
    def status_changed(self) -> bool:
        return self.new_status != self.previous_status


class Discrepancy(BaseModel):
    """Money moved, bookkeeping did not. Replayable from `payment` + `enforcement`."""
    id: Optional[int] = None
    submission_id: str
    campaign_id: str
    transfer_id: str
    amount: Decimal
    payment: PaymentRecord
    enforcement: Enforcement
    expected_total_paid: Decimal
    error: str = ""
    resolved: bool = False
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class EngagementSnapshot(BaseModel):
    """None means "unknown" for that metric."""
    views: Optional[int] = None
    likes: Optional[int] = None
    comments: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.views is None and self.likes is None and self.comments is None


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------
class PayoutOutcome(BaseModel):
    submission_id: str
    campaign_id: Optional[str] = None
    status: PayoutStatus
    amount: Decimal = Decimal("0")          # amount actually transferred
    deferred_amount: Decimal = Decimal("0")
    units: int = 0
    transfer_id: Optional[str] = None
    campaign_status: Optional[CampaignStatus] = None
    message: str = ""

    @property
    def kind(self) -> OutcomeKind:
        return self.status.kind


class RunSummary(BaseModel):
    run_id: str
    started_at: datetime
    duration_seconds: float = 0.0
    total_processed: int = 0
    succeeded: int = 0
    deferred: int = 0
    rejected: int = 0
    failed: int = 0
    total_transferred: Decimal = Decimal("0")
    outcomes: list[PayoutOutcome] = Field(default_factory=list)


class TrackingSummary(BaseModel):
    tracked: int = 0
    skipped: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


class ScheduleSummary(BaseModel):
    activated: list[str] = Field(default_factory=list)
    expired: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API request / response models
# ---------------------------------------------------------------------------
class RunPayoutsRequest(BaseModel):
    submission_ids: Optional[list[str]] = None
    generate_report: bool = True


class RunPayoutsResponse(BaseModel):
    status: str
    filename: Optional[str] = None
    summary: RunSummary
