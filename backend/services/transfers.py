"""
Transfer issuer — turns an enforced amount into money movement plus records.

Per payout cycle:
  1. Check the creator's destination account is onboarded
     (missing → ACCOUNT_NOT_ONBOARDED, terminal for this cycle)
  2. Issue ONE Stripe Connect transfer, with an idempotency key derived from
     (submission id, baseline, target) so a repeated cycle over the same
     ledger window can never pay twice
  3. Commit bookkeeping in one datastore transaction:
       payment row + ledger commit + submission payout + campaign update

Step 2 is irreversible and is NEVER retried here. If step 3 fails the
transfer stands: a Discrepancy is recorded, the submission is blocked until
it is resolved, and replay_discrepancy() re-applies the bookkeeping later
without touching Stripe.

Stripe API:
  Endpoint:   POST https://api.stripe.com/v1/transfers
  Auth:       Authorization: Bearer <STRIPE_SECRET_KEY>
  Body:       form-encoded amount (minor units), currency, destination,
              description, metadata[...]
  Header:     Idempotency-Key
"""

import hashlib
import json
import logging
from decimal import Decimal
from typing import Optional

import httpx

from config import Settings
from models.schemas import (
    Campaign,
    CreatorAccount,
    Discrepancy,
    Enforcement,
    PaymentRecord,
    PayoutQuote,
    PayoutStatus,
    Submission,
)
from services.errors import (
    ExternalServiceError,
    PersistenceError,
    StateError,
    UnreconciledTransferError,
)
from services.store import Store

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
TRANSFER_TIMEOUT = 30.0    # seconds; a transfer call is never retried
MINOR_UNITS = Decimal("100")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * MINOR_UNITS).to_integral_value())


def idempotency_key(submission_id: str, baseline: int, target: int) -> str:
    digest = hashlib.sha256(f"{submission_id}:{baseline}:{target}".encode()).hexdigest()
    return f"payout-{digest[:32]}"


# ===========================================================================
# Stripe client
# ===========================================================================

class StripeTransferClient:
    """Minimal Stripe Connect transfer client over httpx."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = TRANSFER_TIMEOUT,
        http_client: Optional[httpx.Client] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeTransferClient":
        settings.require_transfer_credentials()
        return cls(settings.stripe_secret_key, settings.stripe_base_url)

    def create_transfer(
        self,
        destination: str,
        amount_minor: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """
        Create a transfer and return its id.

        Raises ExternalServiceError on any network failure or non-2xx reply.
        The caller must not retry: the outcome of a timed-out request is
        unknown, and only the idempotency key on a LATER cycle makes a
        second attempt safe.
        """
        data = {
            "amount": str(amount_minor),
            "currency": currency,
            "destination": destination,
            "description": description,
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = str(value)

        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Idempotency-Key": idempotency_key,
        }

        try:
            response = self._client.post(
                f"{self.base_url}/v1/transfers", data=data, headers=headers
            )
        except httpx.RequestError as e:
            raise ExternalServiceError(f"Stripe transfer request failed: {e}") from e

        if response.status_code >= 300:
            raise ExternalServiceError(
                f"Stripe returned {response.status_code}: {response.text[:200]}"
            )

        transfer_id = response.json().get("id")
        if not transfer_id:
            raise ExternalServiceError("Stripe response did not include a transfer id")
        return transfer_id

    def close(self) -> None:
        self._client.close()


# ===========================================================================
# Transfer issuer
# ===========================================================================

class TransferIssuer:
    def __init__(self, store: Store, client: StripeTransferClient, currency: str = "usd"):
        self.store = store
        self.client = client
        self.currency = currency

    def issue(
        self,
        submission: Submission,
        campaign: Campaign,
        account: Optional[CreatorAccount],
        quote: PayoutQuote,
        enforcement: Enforcement,
    ) -> PaymentRecord:
        """
        Pay `enforcement.amount` to the creator and record it.

        Raises:
            StateError(ACCOUNT_NOT_ONBOARDED): no usable destination account
            ExternalServiceError: the transfer call failed (nothing moved, or
                                  the outcome is unknown)
            UnreconciledTransferError: money moved, bookkeeping did not
        """
        if account is None or not account.destination_account or not account.onboarded:
            raise StateError(
                PayoutStatus.ACCOUNT_NOT_ONBOARDED,
                "Creator has not completed Stripe Connect onboarding",
            )

        key = idempotency_key(submission.id, quote.baseline, quote.target)
        description = f"Payment for {quote.new_units} views on submission {submission.id}"

        # ------------------------------------------------------------------
        # The irreversible step
        # ------------------------------------------------------------------
        transfer_id = self.client.create_transfer(
            destination=account.destination_account,
            amount_minor=to_minor_units(enforcement.amount),
            currency=campaign.currency or self.currency,
            description=description,
            metadata={
                "submission_id": submission.id,
                "campaign_id": campaign.id,
                "user_id": submission.creator_id,
                "views": str(quote.new_units),
                "baseline": str(quote.baseline),
                "target": str(quote.target),
            },
            idempotency_key=key,
        )
        logger.info(
            f"Transfer {transfer_id}: ${enforcement.amount:,.2f} "
            f"to {account.destination_account} for submission {submission.id}"
        )

        payment = PaymentRecord(
            submission_id=submission.id,
            campaign_id=campaign.id,
            creator_id=submission.creator_id,
            amount=enforcement.amount,
            units_paid=quote.new_units,
            rate_per_unit=quote.rate_per_unit,
            baseline_value=quote.baseline,
            target_value=quote.target,
            transfer_id=transfer_id,
            destination_account=account.destination_account,
            idempotency_key=key,
            description=description,
        )

        # ------------------------------------------------------------------
        # Bookkeeping: must eventually succeed, must never re-issue
        # ------------------------------------------------------------------
        try:
            return self.store.record_payout(
                payment, enforcement, expected_total_paid=campaign.total_paid
            )
        except PersistenceError as e:
            raise self._record_discrepancy(payment, enforcement, campaign.total_paid, e)

    def _record_discrepancy(
        self,
        payment: PaymentRecord,
        enforcement: Enforcement,
        expected_total_paid: Decimal,
        error: Exception,
    ) -> UnreconciledTransferError:
        discrepancy = Discrepancy(
            submission_id=payment.submission_id,
            campaign_id=payment.campaign_id,
            transfer_id=payment.transfer_id,
            amount=payment.amount,
            payment=payment,
            enforcement=enforcement,
            expected_total_paid=expected_total_paid,
            error=str(error),
        )
        message = (
            f"Transfer {payment.transfer_id} (${payment.amount:,.2f}) succeeded "
            f"but bookkeeping failed: {error}"
        )
        try:
            discrepancy = self.store.record_discrepancy(discrepancy)
        except PersistenceError as record_error:
            logger.critical(
                f"{message}. Could not record discrepancy either ({record_error}). "
                f"Payload: {json.dumps(discrepancy.model_dump(mode='json'))}"
            )
            return UnreconciledTransferError(message, payment.transfer_id, payment.amount)

        logger.error(f"{message}. Discrepancy #{discrepancy.id} recorded; submission blocked")
        return UnreconciledTransferError(
            message, payment.transfer_id, payment.amount, discrepancy
        )


# ===========================================================================
# Reconciliation
# ===========================================================================

def replay_discrepancy(store: Store, discrepancy_id: int) -> PaymentRecord:
    """
    Apply the bookkeeping of a transfer that went out but was never recorded.

    Safe to run more than once: if the payment row already exists (an earlier
    replay committed but failed to mark resolution) it is only resolved.
    """
    discrepancy = store.get_discrepancy(discrepancy_id)
    if discrepancy is None:
        raise PersistenceError(f"Discrepancy {discrepancy_id} not found")

    existing = store.get_payment_by_transfer(discrepancy.transfer_id)
    if existing is not None:
        logger.info(
            f"Discrepancy #{discrepancy_id}: payment for {discrepancy.transfer_id} "
            f"already recorded"
        )
        store.resolve_discrepancy(discrepancy_id)
        return existing

    payment = store.record_payout(
        discrepancy.payment, discrepancy.enforcement, expected_total_paid=None
    )
    store.resolve_discrepancy(discrepancy_id)
    logger.info(
        f"Discrepancy #{discrepancy_id} reconciled: ${payment.amount:,.2f} "
        f"recorded for submission {payment.submission_id}"
    )
    return payment
