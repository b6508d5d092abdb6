"""
Tests for services/enforcer.py — budget, per-submission max, breakpoints.

Policies under test:
  - insufficient budget rejects the whole amount (no partial payment)
  - the per-submission maximum clips and forfeits the remainder
  - the breakpoint index moves past every threshold a payment crosses
  - reaching the budget completes the campaign, even on a breakpoint
"""

import sys
import os
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from models.schemas import Campaign, CampaignStatus, PayoutStatus
from services.enforcer import enforce, remaining_budget
from services.errors import StateError


def campaign(**overrides) -> Campaign:
    fields = dict(
        id="camp_1",
        rate_per_1000_views=Decimal("5.00"),
        budget=Decimal("1000"),
        status=CampaignStatus.ACTIVE,
    )
    fields.update(overrides)
    return Campaign(**fields)


D = Decimal


class TestEligibility:

    @pytest.mark.parametrize("status", [
        CampaignStatus.PENDING_FUNDING,
        CampaignStatus.FUNDED_BUT_NOT_STARTED,
        CampaignStatus.PAUSED_AT_BREAKPOINT,
        CampaignStatus.PAUSED_BY_ADMIN,
        CampaignStatus.COMPLETED,
        CampaignStatus.EXPIRED,
    ])
    def test_only_active_pays(self, status):
        with pytest.raises(StateError) as exc_info:
            enforce(campaign(status=status), D("0"), D("10.00"))
        assert exc_info.value.status == PayoutStatus.CAMPAIGN_NOT_ACTIVE
        assert status.value in str(exc_info.value)

    @pytest.mark.parametrize("status", [
        CampaignStatus.PAUSED_AT_BREAKPOINT,
        CampaignStatus.PAUSED_BY_ADMIN,
    ])
    def test_legacy_campaign_pays_while_paused(self, status):
        result = enforce(campaign(status=status), D("0"), D("10.00"), ["camp_1"])
        assert result.amount == D("10.00")
        assert result.new_status == status
        assert not result.status_changed

    @pytest.mark.parametrize("status", [CampaignStatus.COMPLETED, CampaignStatus.EXPIRED])
    def test_legacy_campaign_never_pays_once_terminal(self, status):
        with pytest.raises(StateError) as exc_info:
            enforce(campaign(status=status), D("0"), D("10.00"), ["camp_1"])
        assert exc_info.value.status == PayoutStatus.CAMPAIGN_NOT_ACTIVE

    def test_allow_list_is_per_campaign(self):
        with pytest.raises(StateError):
            enforce(
                campaign(status=CampaignStatus.PAUSED_BY_ADMIN), D("0"), D("10.00"), ["camp_2"]
            )


class TestBudget:

    def test_scenario_c_insufficient_budget_rejects(self):
        """budget=100, total_paid=95, amount=10 → rejected, nothing paid."""
        c = campaign(budget=D("100"), total_paid=D("95"))
        with pytest.raises(StateError) as exc_info:
            enforce(c, D("0"), D("10.00"))
        assert exc_info.value.status == PayoutStatus.INSUFFICIENT_BUDGET
        assert "Need $10.00, have $5.00" in str(exc_info.value)

    def test_budget_exhausted(self):
        c = campaign(budget=D("100"), total_paid=D("100"))
        with pytest.raises(StateError) as exc_info:
            enforce(c, D("0"), D("1.00"))
        assert exc_info.value.status == PayoutStatus.BUDGET_EXHAUSTED

    def test_zero_budget_is_unlimited(self):
        c = campaign(budget=D("0"), total_paid=D("50000"))
        result = enforce(c, D("0"), D("9999.99"))
        assert result.amount == D("9999.99")
        assert result.new_status == CampaignStatus.ACTIVE

    def test_exact_remaining_completes_campaign(self):
        c = campaign(budget=D("100"), total_paid=D("90"))
        result = enforce(c, D("0"), D("10.00"))
        assert result.amount == D("10.00")
        assert result.new_total_paid == D("100")
        assert result.new_status == CampaignStatus.COMPLETED
        assert result.status_changed

    def test_budget_checked_before_max(self):
        """The clipped amount would fit, but the budget check sees the full one."""
        c = campaign(
            budget=D("100"), total_paid=D("95"), payout_max_per_submission=D("50")
        )
        with pytest.raises(StateError) as exc_info:
            enforce(c, D("45"), D("20.00"))
        assert exc_info.value.status == PayoutStatus.INSUFFICIENT_BUDGET

    def test_remaining_budget(self):
        assert remaining_budget(campaign(budget=D("100"), total_paid=D("37.50"))) == D("62.50")


class TestPerSubmissionMax:

    def test_scenario_d_clips_to_cap(self):
        """max=50, payout_amount=45, amount=20 → clipped to 5."""
        c = campaign(payout_max_per_submission=D("50"))
        result = enforce(c, D("45"), D("20.00"))
        assert result.amount == D("5")
        assert result.clipped_from == D("20.00")
        assert result.new_total_paid == D("5")

    def test_at_max_is_zero_amount(self):
        c = campaign(payout_max_per_submission=D("50"))
        with pytest.raises(StateError) as exc_info:
            enforce(c, D("50"), D("5.00"))
        assert exc_info.value.status == PayoutStatus.AT_MAX_PAYOUT
        assert exc_info.value.status.kind.value == "succeeded"

    def test_under_cap_not_clipped(self):
        c = campaign(payout_max_per_submission=D("50"))
        result = enforce(c, D("10"), D("20.00"))
        assert result.amount == D("20.00")
        assert result.clipped_from is None

    def test_zero_max_means_no_ceiling(self):
        c = campaign(payout_max_per_submission=D("0"))
        result = enforce(c, D("5000"), D("20.00"))
        assert result.amount == D("20.00")


class TestBreakpoints:

    def test_scenario_b_pauses_and_advances(self):
        """breakpoints=[500], total_paid=490, amount=20 → paused, index 1."""
        c = campaign(budget_breakpoints=[D("500")], total_paid=D("490"))
        result = enforce(c, D("0"), D("20.00"))
        assert result.new_total_paid == D("510.00")
        assert result.new_status == CampaignStatus.PAUSED_AT_BREAKPOINT
        assert result.new_breakpoint_index == 1
        assert result.previous_status == CampaignStatus.ACTIVE

    def test_below_breakpoint_stays_active(self):
        c = campaign(budget_breakpoints=[D("500")], total_paid=D("400"))
        result = enforce(c, D("0"), D("20.00"))
        assert result.new_status == CampaignStatus.ACTIVE
        assert result.new_breakpoint_index == 0

    def test_landing_exactly_on_breakpoint_pauses(self):
        c = campaign(budget_breakpoints=[D("500")], total_paid=D("480"))
        result = enforce(c, D("0"), D("20.00"))
        assert result.new_status == CampaignStatus.PAUSED_AT_BREAKPOINT
        assert result.new_breakpoint_index == 1

    def test_index_skips_every_crossed_threshold(self):
        c = campaign(budget_breakpoints=[D("100"), D("200"), D("300"), D("900")], total_paid=D("50"))
        result = enforce(c, D("0"), D("260.00"))
        assert result.new_breakpoint_index == 3
        assert result.new_status == CampaignStatus.PAUSED_AT_BREAKPOINT

    def test_consumed_breakpoint_never_fires_again(self):
        c = campaign(
            budget_breakpoints=[D("500")], total_paid=D("600"), current_breakpoint_index=1
        )
        result = enforce(c, D("0"), D("20.00"))
        assert result.new_status == CampaignStatus.ACTIVE
        assert result.new_breakpoint_index == 1

    def test_completion_wins_over_breakpoint(self):
        c = campaign(budget=D("500"), budget_breakpoints=[D("500")], total_paid=D("490"))
        result = enforce(c, D("0"), D("10.00"))
        assert result.new_status == CampaignStatus.COMPLETED
        assert result.new_breakpoint_index == 1

    def test_legacy_paused_campaign_crossing_another_breakpoint(self):
        c = campaign(
            status=CampaignStatus.PAUSED_BY_ADMIN,
            budget_breakpoints=[D("100")],
            total_paid=D("95"),
        )
        result = enforce(c, D("0"), D("10.00"), ["camp_1"])
        assert result.new_status == CampaignStatus.PAUSED_AT_BREAKPOINT
        assert result.new_breakpoint_index == 1
