"""
Tests for services/transfers.py.

  1. Helpers: minor units, deterministic idempotency keys
  2. StripeTransferClient against httpx.MockTransport
  3. TransferIssuer: onboarding gate, bookkeeping, discrepancy on failure
  4. replay_discrepancy
"""

import sys
import os
from decimal import Decimal
from unittest.mock import patch
from urllib.parse import parse_qs

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config import Settings
from models.schemas import CampaignStatus, CreatorAccount, PayoutStatus
from services.enforcer import enforce
from services.errors import (
    ConfigurationError,
    ExternalServiceError,
    PersistenceError,
    StateError,
    UnreconciledTransferError,
)
from services.payout import quote_payout
from services.transfers import (
    StripeTransferClient,
    TransferIssuer,
    idempotency_key,
    replay_discrepancy,
    to_minor_units,
)


# ===========================================================================
# 1. Helpers
# ===========================================================================

class TestHelpers:

    @pytest.mark.parametrize("amount,expected", [
        ("10.00", 1000),
        ("0.01", 1),
        ("1234.56", 123456),
        ("5", 500),
    ])
    def test_to_minor_units(self, amount, expected):
        assert to_minor_units(Decimal(amount)) == expected

    def test_idempotency_key_is_deterministic(self):
        assert idempotency_key("sub_1", 0, 2000) == idempotency_key("sub_1", 0, 2000)

    def test_idempotency_key_depends_on_window(self):
        keys = {
            idempotency_key("sub_1", 0, 2000),
            idempotency_key("sub_1", 0, 2500),
            idempotency_key("sub_1", 2000, 2500),
            idempotency_key("sub_2", 0, 2000),
        }
        assert len(keys) == 4

    def test_idempotency_key_format(self):
        key = idempotency_key("sub_1", 0, 2000)
        assert key.startswith("payout-")
        assert len(key) == len("payout-") + 32


# ===========================================================================
# 2. StripeTransferClient
# ===========================================================================

def stripe_client(handler) -> StripeTransferClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return StripeTransferClient("sk_test_123", http_client=http)


def send(client: StripeTransferClient) -> str:
    return client.create_transfer(
        destination="acct_1",
        amount_minor=1000,
        currency="usd",
        description="Payment for 2000 views on submission sub_1",
        metadata={"submission_id": "sub_1", "views": "2000"},
        idempotency_key="payout-abc",
    )


class TestStripeTransferClient:

    def test_posts_form_encoded_transfer(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["headers"] = request.headers
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"id": "tr_123", "object": "transfer"})

        assert send(stripe_client(handler)) == "tr_123"
        assert seen["method"] == "POST"
        assert seen["path"] == "/v1/transfers"
        assert seen["headers"]["Authorization"] == "Bearer sk_test_123"
        assert seen["headers"]["Idempotency-Key"] == "payout-abc"
        assert seen["form"]["amount"] == ["1000"]
        assert seen["form"]["currency"] == ["usd"]
        assert seen["form"]["destination"] == ["acct_1"]
        assert seen["form"]["metadata[submission_id]"] == ["sub_1"]
        assert seen["form"]["metadata[views]"] == ["2000"]

    def test_error_status_raises(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "No such destination"}})

        with pytest.raises(ExternalServiceError, match="400"):
            send(stripe_client(handler))

    def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalServiceError, match="request failed"):
            send(stripe_client(handler))

    def test_missing_id_raises(self):
        def handler(request):
            return httpx.Response(200, json={"object": "transfer"})

        with pytest.raises(ExternalServiceError, match="transfer id"):
            send(stripe_client(handler))

    def test_never_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="internal error")

        with pytest.raises(ExternalServiceError):
            send(stripe_client(handler))
        assert len(calls) == 1

    def test_from_settings_requires_key(self):
        with pytest.raises(ConfigurationError, match="STRIPE_SECRET_KEY"):
            StripeTransferClient.from_settings(Settings())


# ===========================================================================
# 3. TransferIssuer
# ===========================================================================

@pytest.fixture
def payable(store, make_campaign, make_submission, record_views):
    """Active campaign, one submission with 2000 unpaid views ($10.00)."""
    campaign = make_campaign()
    submission = make_submission()
    record_views("sub_1", 2000)
    quote = quote_payout(campaign, submission.payout_amount, 0, 2000)
    enforcement = enforce(campaign, submission.payout_amount, quote.amount)
    account = store.get_creator_account("creator_1")
    return submission, campaign, account, quote, enforcement


class TestTransferIssuer:

    def test_issue_transfers_and_records(self, store, transfer_client, payable):
        submission, campaign, account, quote, enforcement = payable

        payment = TransferIssuer(store, transfer_client).issue(
            submission, campaign, account, quote, enforcement
        )

        assert payment.transfer_id == "tr_1"
        assert payment.amount == Decimal("10.00")
        assert payment.units_paid == 2000
        assert payment.baseline_value == 0
        assert payment.target_value == 2000

        call = transfer_client.calls[0]
        assert call["destination"] == "acct_creator_1"
        assert call["amount_minor"] == 1000
        assert call["currency"] == "usd"
        assert call["idempotency_key"] == idempotency_key("sub_1", 0, 2000)
        assert call["metadata"]["campaign_id"] == "camp_1"

        assert store.get_campaign("camp_1").total_paid == Decimal("10.00")
        assert store.get_submission("sub_1").payout_amount == Decimal("10.00")
        assert all(r.paid for r in store.list_engagement("sub_1"))

    @pytest.mark.parametrize("account", [
        None,
        CreatorAccount(creator_id="creator_1", destination_account=None, onboarded=False),
        CreatorAccount(creator_id="creator_1", destination_account="acct_x", onboarded=False),
    ])
    def test_not_onboarded(self, store, transfer_client, payable, account):
        submission, campaign, _, quote, enforcement = payable

        with pytest.raises(StateError) as exc_info:
            TransferIssuer(store, transfer_client).issue(
                submission, campaign, account, quote, enforcement
            )

        assert exc_info.value.status == PayoutStatus.ACCOUNT_NOT_ONBOARDED
        assert transfer_client.calls == []
        assert store.get_campaign("camp_1").total_paid == Decimal("0")

    def test_transfer_failure_leaves_books_untouched(self, store, transfer_client, payable):
        submission, campaign, account, quote, enforcement = payable
        transfer_client.fail_destinations.add("acct_creator_1")

        with pytest.raises(ExternalServiceError):
            TransferIssuer(store, transfer_client).issue(
                submission, campaign, account, quote, enforcement
            )

        assert store.list_payments() == []
        assert not any(r.paid for r in store.list_engagement("sub_1"))

    def test_bookkeeping_failure_records_discrepancy(self, store, transfer_client, payable):
        submission, campaign, account, quote, enforcement = payable
        # Someone else paid from the campaign after we read it
        stale = campaign.model_copy(update={"total_paid": Decimal("-1")})

        with pytest.raises(UnreconciledTransferError) as exc_info:
            TransferIssuer(store, transfer_client).issue(
                submission, stale, account, quote, enforcement
            )

        err = exc_info.value
        assert err.transfer_id == "tr_1"
        assert err.amount == Decimal("10.00")
        assert err.discrepancy is not None
        assert len(transfer_client.calls) == 1

        open_items = store.open_discrepancies("sub_1")
        assert len(open_items) == 1
        assert open_items[0].transfer_id == "tr_1"
        assert store.list_payments() == []

    def test_discrepancy_write_failure_still_raises(self, store, transfer_client, payable):
        submission, campaign, account, quote, enforcement = payable

        with patch.object(store, "record_payout", side_effect=PersistenceError("disk I/O error")), \
             patch.object(store, "record_discrepancy", side_effect=PersistenceError("disk I/O error")):
            with pytest.raises(UnreconciledTransferError) as exc_info:
                TransferIssuer(store, transfer_client).issue(
                    submission, campaign, account, quote, enforcement
                )

        assert exc_info.value.discrepancy is None
        assert exc_info.value.transfer_id == "tr_1"


# ===========================================================================
# 4. replay_discrepancy
# ===========================================================================

class TestReplayDiscrepancy:

    def _fail_bookkeeping(self, store, transfer_client, payable):
        submission, campaign, account, quote, enforcement = payable
        with patch.object(store, "record_payout", side_effect=PersistenceError("database is locked")):
            with pytest.raises(UnreconciledTransferError) as exc_info:
                TransferIssuer(store, transfer_client).issue(
                    submission, campaign, account, quote, enforcement
                )
        return exc_info.value.discrepancy

    def test_replay_applies_bookkeeping_without_transfer(self, store, transfer_client, payable):
        discrepancy = self._fail_bookkeeping(store, transfer_client, payable)

        payment = replay_discrepancy(store, discrepancy.id)

        assert payment.transfer_id == "tr_1"
        assert len(transfer_client.calls) == 1
        assert store.get_campaign("camp_1").total_paid == Decimal("10.00")
        assert store.get_submission("sub_1").payout_amount == Decimal("10.00")
        assert all(r.paid for r in store.list_engagement("sub_1"))
        assert store.open_discrepancies() == []

    def test_replay_twice_does_not_double_count(self, store, transfer_client, payable):
        discrepancy = self._fail_bookkeeping(store, transfer_client, payable)

        replay_discrepancy(store, discrepancy.id)
        replay_discrepancy(store, discrepancy.id)

        assert store.get_campaign("camp_1").total_paid == Decimal("10.00")
        assert len(store.list_payments()) == 1

    def test_replay_leaves_expired_campaign_expired(
        self, store, transfer_client, make_campaign, make_submission, record_views
    ):
        campaign = make_campaign(total_paid=Decimal("490"), budget_breakpoints=[Decimal("500")])
        submission = make_submission()
        record_views("sub_1", 2000)
        quote = quote_payout(campaign, submission.payout_amount, 0, 2000)
        enforcement = enforce(campaign, submission.payout_amount, quote.amount)
        assert enforcement.new_status == CampaignStatus.PAUSED_AT_BREAKPOINT

        account = store.get_creator_account("creator_1")
        with patch.object(store, "record_payout", side_effect=PersistenceError("database is locked")):
            with pytest.raises(UnreconciledTransferError) as exc_info:
                TransferIssuer(store, transfer_client).issue(
                    submission, campaign, account, quote, enforcement
                )

        # The end date passes before anyone reconciles
        assert store.update_campaign_status("camp_1", CampaignStatus.ACTIVE, CampaignStatus.EXPIRED)
        replay_discrepancy(store, exc_info.value.discrepancy.id)

        c = store.get_campaign("camp_1")
        assert c.status == CampaignStatus.EXPIRED
        assert c.total_paid == Decimal("500.00")
        assert c.current_breakpoint_index == 1
        assert store.open_discrepancies() == []

    def test_replay_unknown_discrepancy(self, store):
        with pytest.raises(PersistenceError, match="not found"):
            replay_discrepancy(store, 999)
