"""
Shared test fixtures for the Creator Payout Engine test suite.

  store              in-memory SQLite Store, fresh per test
  transfer_client    FakeTransferClient: records every create_transfer call
                     and hands out tr_1, tr_2, ... (or raises when told to)
  settings           Settings pointing reports/logs at tmp_path
  engine             PayoutEngine wired to the fake client, no real sleeps
  make_campaign      factory: saves and returns a Campaign (active, $5/1k,
                     $1000 budget unless overridden)
  make_submission    factory: saves an approved Submission plus an onboarded
                     creator account
  record_views       appends ledger records for a submission
"""

import sys
import os
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config import Settings
from models.schemas import (
    Campaign,
    CampaignStatus,
    CreatorAccount,
    EngagementSnapshot,
    Platform,
    Submission,
    SubmissionStatus,
)
from services.errors import ExternalServiceError
from services.orchestrator import PayoutEngine
from services.store import Store
from services.transfers import TransferIssuer


class FakeTransferClient:
    """Stands in for StripeTransferClient. Never touches the network."""

    def __init__(self):
        self.calls: list[dict] = []
        self.fail_destinations: set[str] = set()
        self.closed = False

    def create_transfer(self, **kwargs) -> str:
        if kwargs["destination"] in self.fail_destinations:
            raise ExternalServiceError("Stripe returned 400: account cannot receive transfers")
        self.calls.append(kwargs)
        return f"tr_{len(self.calls)}"

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def store():
    s = Store(":memory:")
    yield s
    s.close()


@pytest.fixture
def transfer_client():
    return FakeTransferClient()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "payouts.db"),
        stripe_secret_key="sk_test_123",
        output_dir=str(tmp_path / "reports"),
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def sleeps():
    """Collects the delays passed to an injected sleep()."""
    return []


@pytest.fixture
def engine(store, transfer_client, settings, sleeps):
    issuer = TransferIssuer(store, transfer_client, currency="usd")
    return PayoutEngine(store, issuer, settings, sleep=sleeps.append)


@pytest.fixture
def make_campaign(store):
    def _make(campaign_id: str = "camp_1", **overrides) -> Campaign:
        fields = dict(
            id=campaign_id,
            title="Spring Launch",
            rate_per_1000_views=Decimal("5.00"),
            budget=Decimal("1000"),
            status=CampaignStatus.ACTIVE,
        )
        fields.update(overrides)
        campaign = Campaign(**fields)
        store.save_campaign(campaign)
        return campaign

    return _make


@pytest.fixture
def make_submission(store):
    def _make(
        submission_id: str = "sub_1",
        campaign_id: str = "camp_1",
        creator_id: str = "creator_1",
        onboarded: bool = True,
        **overrides,
    ) -> Submission:
        fields = dict(
            id=submission_id,
            campaign_id=campaign_id,
            creator_id=creator_id,
            status=SubmissionStatus.APPROVED,
            asset_url=f"https://www.tiktok.com/@creator/video/{submission_id}",
            platform=Platform.TIKTOK,
        )
        fields.update(overrides)
        submission = Submission(**fields)
        store.save_submission(submission)
        store.save_creator_account(CreatorAccount(
            creator_id=creator_id,
            destination_account=f"acct_{creator_id}" if onboarded else None,
            onboarded=onboarded,
        ))
        return submission

    return _make


@pytest.fixture
def record_views(store):
    def _record(submission_id: str, *views: int) -> None:
        for value in views:
            store.append_engagement(submission_id, EngagementSnapshot(views=value))

    return _record
