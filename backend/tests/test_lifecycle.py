"""
Tests for services/lifecycle.py — campaign state machine and the
date-trigger job.
"""

import sys
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from models.schemas import Campaign, CampaignStatus
from services.lifecycle import (
    InvalidTransition,
    Trigger,
    apply_scheduled_transitions,
    assert_transition,
    can_transition,
    is_payout_eligible,
    scheduled_status,
)

S = CampaignStatus
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def campaign(status: CampaignStatus, start=None, end=None, campaign_id="camp_1") -> Campaign:
    return Campaign(
        id=campaign_id,
        rate_per_1000_views=Decimal("5.00"),
        status=status,
        start_date=start,
        end_date=end,
    )


class TestTransitions:

    @pytest.mark.parametrize("old,new", [
        (S.ACTIVE, S.PAUSED_AT_BREAKPOINT),
        (S.ACTIVE, S.COMPLETED),
        (S.PAUSED_AT_BREAKPOINT, S.COMPLETED),
        (S.PAUSED_BY_ADMIN, S.PAUSED_AT_BREAKPOINT),
    ])
    def test_engine_transitions(self, old, new):
        assert can_transition(old, new, Trigger.ENGINE)

    @pytest.mark.parametrize("old,new", [
        (S.ACTIVE, S.EXPIRED),
        (S.ACTIVE, S.PAUSED_BY_ADMIN),
        (S.PAUSED_AT_BREAKPOINT, S.ACTIVE),
        (S.FUNDED_BUT_NOT_STARTED, S.ACTIVE),
        (S.COMPLETED, S.ACTIVE),
    ])
    def test_engine_never_resumes_or_uses_the_clock(self, old, new):
        assert not can_transition(old, new, Trigger.ENGINE)

    def test_schedule_activates_and_expires(self):
        assert can_transition(S.FUNDED_BUT_NOT_STARTED, S.ACTIVE, Trigger.SCHEDULE)
        assert can_transition(S.ACTIVE, S.EXPIRED, Trigger.SCHEDULE)
        assert not can_transition(S.ACTIVE, S.PAUSED_AT_BREAKPOINT, Trigger.SCHEDULE)

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.EXPIRED])
    def test_terminal_states_have_no_exits(self, terminal):
        for target in CampaignStatus:
            if target == terminal:
                continue
            for trigger in Trigger:
                assert not can_transition(terminal, target, trigger)

    def test_same_status_is_always_allowed(self):
        assert can_transition(S.ACTIVE, S.ACTIVE, Trigger.ENGINE)

    def test_assert_transition_raises(self):
        with pytest.raises(InvalidTransition, match="completed -> active"):
            assert_transition(S.COMPLETED, S.ACTIVE, Trigger.ADMIN)


class TestEligibility:

    def test_active_is_eligible(self):
        assert is_payout_eligible(campaign(S.ACTIVE))

    @pytest.mark.parametrize("status", [s for s in CampaignStatus if s != S.ACTIVE])
    def test_everything_else_is_not(self, status):
        assert not is_payout_eligible(campaign(status))

    def test_legacy_allow_list_only_covers_paused(self):
        allow = ["camp_1"]
        assert is_payout_eligible(campaign(S.PAUSED_AT_BREAKPOINT), allow)
        assert is_payout_eligible(campaign(S.PAUSED_BY_ADMIN), allow)
        assert not is_payout_eligible(campaign(S.COMPLETED), allow)
        assert not is_payout_eligible(campaign(S.EXPIRED), allow)
        assert not is_payout_eligible(campaign(S.PENDING_FUNDING), allow)


class TestScheduledStatus:

    def test_funded_campaign_activates_on_start(self):
        c = campaign(S.FUNDED_BUT_NOT_STARTED, start=NOW - timedelta(minutes=1))
        assert scheduled_status(c, NOW) == S.ACTIVE

    def test_funded_campaign_waits_for_start(self):
        c = campaign(S.FUNDED_BUT_NOT_STARTED, start=NOW + timedelta(days=1))
        assert scheduled_status(c, NOW) is None

    def test_funded_campaign_without_start_activates(self):
        assert scheduled_status(campaign(S.FUNDED_BUT_NOT_STARTED), NOW) == S.ACTIVE

    @pytest.mark.parametrize("status", [
        S.ACTIVE, S.PAUSED_AT_BREAKPOINT, S.PAUSED_BY_ADMIN, S.FUNDED_BUT_NOT_STARTED,
    ])
    def test_past_end_date_expires(self, status):
        c = campaign(status, start=NOW - timedelta(days=30), end=NOW - timedelta(seconds=1))
        assert scheduled_status(c, NOW) == S.EXPIRED

    @pytest.mark.parametrize("status", [S.COMPLETED, S.EXPIRED, S.PENDING_FUNDING])
    def test_terminal_and_unfunded_never_move(self, status):
        c = campaign(status, end=NOW - timedelta(days=1))
        assert scheduled_status(c, NOW) is None

    def test_naive_datetimes_are_utc(self):
        c = campaign(S.ACTIVE, end=datetime(2026, 3, 1, 11, 0, 0))
        assert scheduled_status(c, NOW) == S.EXPIRED


class TestApplyScheduledTransitions:

    def test_activates_and_expires(self, store):
        store.save_campaign(campaign(
            S.FUNDED_BUT_NOT_STARTED, start=NOW - timedelta(hours=1), campaign_id="starting",
        ))
        store.save_campaign(campaign(
            S.ACTIVE, end=NOW - timedelta(hours=1), campaign_id="ending",
        ))
        store.save_campaign(campaign(
            S.ACTIVE, end=NOW + timedelta(days=7), campaign_id="running",
        ))

        summary = apply_scheduled_transitions(store, now=NOW)

        assert summary.activated == ["starting"]
        assert summary.expired == ["ending"]
        assert store.get_campaign("starting").status == S.ACTIVE
        assert store.get_campaign("ending").status == S.EXPIRED
        assert store.get_campaign("running").status == S.ACTIVE

    def test_second_run_is_a_no_op(self, store):
        store.save_campaign(campaign(S.ACTIVE, end=NOW - timedelta(hours=1)))
        apply_scheduled_transitions(store, now=NOW)
        summary = apply_scheduled_transitions(store, now=NOW)
        assert summary.activated == []
        assert summary.expired == []

    def test_concurrent_status_change_wins(self, store):
        store.save_campaign(campaign(S.ACTIVE, end=NOW - timedelta(hours=1)))
        with patch.object(store, "update_campaign_status", return_value=False):
            summary = apply_scheduled_transitions(store, now=NOW)
        assert summary.expired == []
