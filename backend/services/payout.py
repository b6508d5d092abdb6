"""
Incremental payout calculation — pure, no I/O.

CRITICAL: a submission is paid for the views gained SINCE its last paid
watermark, never for its lifetime total. The ledger watermarks come in as
plain integers so this module can be tested without a datastore.

Steps:
  1. target = highest unpaid view_count      → none: NO_UNPAID_DATA
  2. new_units = max(0, target − baseline)   → 0: NO_NEW_UNITS
  3. rate_per_unit = rate_per_1000_views / 1000
  4. amount = round(new_units × rate_per_unit, 2)   (half-up, once, here)
                                             → <= 0: AMOUNT_TOO_SMALL
  5. payout_min_per_submission set and
     payout_amount + amount < min            → DEFERRED_BELOW_MINIMUM
                                               (ledger untouched so the
                                               entitlement carries forward)
  6. otherwise                               → PAYABLE (status PAID), handed
                                               to the enforcer

Amounts are Decimal with two places. Nothing downstream re-rounds.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from models.schemas import Campaign, PayoutQuote, PayoutStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
UNITS_PER_RATE = Decimal("1000")   # rate is quoted per 1,000 views
CENTS = Decimal("0.01")


def rate_per_unit(rate_per_1000_views: Decimal) -> Decimal:
    return Decimal(rate_per_1000_views) / UNITS_PER_RATE


def round_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def calculate_amount(new_units: int, rate_per_1000_views: Decimal) -> Decimal:
    """
    Dollar amount for `new_units` views at the campaign rate.

    >>> calculate_amount(2000, Decimal("5.00"))
    Decimal('10.00')
    """
    return round_money(Decimal(new_units) * rate_per_unit(rate_per_1000_views))


def quote_payout(
    campaign: Campaign,
    payout_amount: Decimal,
    baseline: int,
    highest_unpaid: Optional[int],
) -> PayoutQuote:
    """
    Work out what a submission is owed this cycle.

    Args:
        campaign:       Campaign terms (rate, per-submission minimum)
        payout_amount:  Cumulative amount already paid to the submission
        baseline:       Highest paid view_count in the ledger
        highest_unpaid: Highest unpaid view_count, or None

    Returns:
        PayoutQuote. status PAID means "payable, pending enforcement";
        every other status carries amount 0 except DEFERRED_BELOW_MINIMUM,
        which reports the deferred amount.
    """
    rate = rate_per_unit(campaign.rate_per_1000_views)

    # ------------------------------------------------------------------
    # Step 1: anything unpaid at all?
    # ------------------------------------------------------------------
    if highest_unpaid is None:
        return PayoutQuote(
            status=PayoutStatus.NO_UNPAID_DATA,
            baseline=baseline,
            rate_per_unit=rate,
            message="No eligible unpaid views",
        )

    # ------------------------------------------------------------------
    # Step 2: growth over the paid watermark
    # ------------------------------------------------------------------
    new_units = max(0, highest_unpaid - baseline)
    if new_units == 0:
        return PayoutQuote(
            status=PayoutStatus.NO_NEW_UNITS,
            baseline=baseline,
            target=highest_unpaid,
            rate_per_unit=rate,
            message="No increase from baseline",
        )

    # ------------------------------------------------------------------
    # Steps 3 + 4: price the new units
    # ------------------------------------------------------------------
    amount = calculate_amount(new_units, campaign.rate_per_1000_views)
    if amount <= 0:
        return PayoutQuote(
            status=PayoutStatus.AMOUNT_TOO_SMALL,
            baseline=baseline,
            target=highest_unpaid,
            new_units=new_units,
            rate_per_unit=rate,
            message="Payment amount too small",
        )

    # ------------------------------------------------------------------
    # Step 5: per-submission minimum
    # ------------------------------------------------------------------
    minimum = campaign.payout_min_per_submission
    if minimum and minimum > 0:
        total_earnings = Decimal(payout_amount) + amount
        if total_earnings < minimum:
            logger.info(
                f"Earnings ${total_earnings:,.2f} below minimum threshold "
                f"${minimum:,.2f}; deferring ${amount:,.2f}"
            )
            return PayoutQuote(
                status=PayoutStatus.DEFERRED_BELOW_MINIMUM,
                baseline=baseline,
                target=highest_unpaid,
                new_units=new_units,
                rate_per_unit=rate,
                amount=amount,
                message=(
                    f"Earnings (${total_earnings:,.2f}) below minimum payout "
                    f"threshold (${minimum:,.2f}). Payment deferred."
                ),
            )

    logger.debug(
        f"Quote: {highest_unpaid:,} - {baseline:,} = {new_units:,} new views "
        f"→ ${amount:,.2f}"
    )
    return PayoutQuote(
        status=PayoutStatus.PAID,
        baseline=baseline,
        target=highest_unpaid,
        new_units=new_units,
        rate_per_unit=rate,
        amount=amount,
    )
