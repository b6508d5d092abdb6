"""
Budget & breakpoint enforcement.

Takes the calculator's proposed amount and the campaign as read under the
campaign lease, and returns the amount to transfer plus the campaign state
to commit alongside it. Raises StateError when nothing may be paid.

Policies:
  - Insufficient budget: REJECT, no partial payment. Paying less than the
    measured units are worth would silently shortchange the creator.
  - Per-submission maximum: CLIP to what is left under the cap. The remainder
    is FORFEITED; the ledger is committed up to the target as usual, so
    those units are never billed again.

Checks, in order:
  1. eligibility      status active (or legacy allow-listed while paused)
  2. budget           budget > 0: remaining <= 0 → BUDGET_EXHAUSTED,
                      amount > remaining → INSUFFICIENT_BUDGET
  3. max per sub      allowed == 0 → AT_MAX_PAYOUT, amount > allowed → clip
  4. completion       new total >= budget (budget > 0) → completed
  5. breakpoints      new total >= breakpoints[index] → paused_at_breakpoint,
                      index moves past every threshold crossed
"""

import logging
from decimal import Decimal
from typing import Iterable

from models.schemas import Campaign, CampaignStatus, Enforcement, PayoutStatus
from services.errors import StateError
from services.lifecycle import Trigger, assert_transition, is_payout_eligible

logger = logging.getLogger(__name__)


def remaining_budget(campaign: Campaign) -> Decimal:
    return campaign.budget - campaign.total_paid


def enforce(
    campaign: Campaign,
    payout_amount: Decimal,
    proposed: Decimal,
    legacy_allow_list: Iterable[str] = (),
) -> Enforcement:
    # ------------------------------------------------------------------
    # 1. Eligibility
    # ------------------------------------------------------------------
    if not is_payout_eligible(campaign, legacy_allow_list):
        raise StateError(
            PayoutStatus.CAMPAIGN_NOT_ACTIVE,
            f"Campaign is not active. Current status: {campaign.status.value}",
        )

    # ------------------------------------------------------------------
    # 2. Campaign budget (0 = unlimited)
    # ------------------------------------------------------------------
    if campaign.budget > 0:
        remaining = remaining_budget(campaign)
        if remaining <= 0:
            raise StateError(PayoutStatus.BUDGET_EXHAUSTED, "Campaign budget exhausted")
        if proposed > remaining:
            raise StateError(
                PayoutStatus.INSUFFICIENT_BUDGET,
                f"Insufficient campaign budget remaining. "
                f"Need ${proposed:,.2f}, have ${remaining:,.2f}",
            )

    # ------------------------------------------------------------------
    # 3. Per-submission maximum
    # ------------------------------------------------------------------
    amount = proposed
    clipped_from = None
    maximum = campaign.payout_max_per_submission
    if maximum and maximum > 0:
        allowed = max(Decimal("0"), maximum - payout_amount)
        if allowed <= 0:
            raise StateError(
                PayoutStatus.AT_MAX_PAYOUT,
                f"Submission has reached max payout limit of ${maximum:,.2f}",
            )
        if amount > allowed:
            logger.info(
                f"Adjusting payment from ${amount:,.2f} to ${allowed:,.2f} "
                f"due to max payout limit"
            )
            clipped_from = amount
            amount = allowed

    # ------------------------------------------------------------------
    # 4 + 5. Resulting campaign state
    # ------------------------------------------------------------------
    new_total = campaign.total_paid + amount
    new_status, index = resulting_state(campaign, new_total)
    assert_transition(campaign.status, new_status, Trigger.ENGINE)

    return Enforcement(
        amount=amount,
        clipped_from=clipped_from,
        new_total_paid=new_total,
        previous_status=campaign.status,
        new_status=new_status,
        new_breakpoint_index=index,
    )


def resulting_state(campaign: Campaign, new_total: Decimal) -> tuple[CampaignStatus, int]:
    """Status and breakpoint index the campaign moves to once new_total is paid."""
    index = campaign.current_breakpoint_index
    breakpoints = campaign.budget_breakpoints
    while index < len(breakpoints) and new_total >= breakpoints[index]:
        index += 1

    if campaign.budget > 0 and new_total >= campaign.budget:
        return CampaignStatus.COMPLETED, index
    if index > campaign.current_breakpoint_index:
        return CampaignStatus.PAUSED_AT_BREAKPOINT, index
    return campaign.status, index
