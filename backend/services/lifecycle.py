"""
Campaign lifecycle state machine.

  pending_funding → funded_but_not_started → active
  active → paused_at_breakpoint | paused_by_admin | completed | expired
  paused_at_breakpoint | paused_by_admin → active        (external resume)
  completed, expired                                     (terminal)

Each transition is tagged with who may perform it:
  engine    — the payout engine (breakpoint pause, budget completion)
  schedule  — the date-trigger job (start → active, end → expired)
  admin     — operators (funding, manual pause/resume); never initiated here

The payout engine reads status, performs only `engine` transitions, and never
moves a campaign because of the wall clock. Date-based moves live in
apply_scheduled_transitions(), run as its own job.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from models.schemas import Campaign, CampaignStatus, ScheduleSummary

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    ENGINE = "engine"
    SCHEDULE = "schedule"
    ADMIN = "admin"


class InvalidTransition(Exception):
    pass


S = CampaignStatus

TRANSITIONS: dict[tuple[CampaignStatus, CampaignStatus], set[Trigger]] = {
    (S.PENDING_FUNDING, S.FUNDED_BUT_NOT_STARTED): {Trigger.ADMIN},
    (S.FUNDED_BUT_NOT_STARTED, S.ACTIVE): {Trigger.SCHEDULE, Trigger.ADMIN},
    (S.FUNDED_BUT_NOT_STARTED, S.EXPIRED): {Trigger.SCHEDULE},
    (S.ACTIVE, S.PAUSED_AT_BREAKPOINT): {Trigger.ENGINE},
    (S.ACTIVE, S.PAUSED_BY_ADMIN): {Trigger.ADMIN},
    (S.ACTIVE, S.COMPLETED): {Trigger.ENGINE, Trigger.ADMIN},
    (S.ACTIVE, S.EXPIRED): {Trigger.SCHEDULE},
    (S.PAUSED_AT_BREAKPOINT, S.ACTIVE): {Trigger.ADMIN},
    (S.PAUSED_AT_BREAKPOINT, S.COMPLETED): {Trigger.ENGINE, Trigger.ADMIN},
    (S.PAUSED_AT_BREAKPOINT, S.EXPIRED): {Trigger.SCHEDULE},
    (S.PAUSED_BY_ADMIN, S.ACTIVE): {Trigger.ADMIN},
    (S.PAUSED_BY_ADMIN, S.PAUSED_AT_BREAKPOINT): {Trigger.ENGINE},
    (S.PAUSED_BY_ADMIN, S.COMPLETED): {Trigger.ENGINE, Trigger.ADMIN},
    (S.PAUSED_BY_ADMIN, S.EXPIRED): {Trigger.SCHEDULE},
}

TERMINAL = frozenset({S.COMPLETED, S.EXPIRED})
PAUSED = frozenset({S.PAUSED_AT_BREAKPOINT, S.PAUSED_BY_ADMIN})


def can_transition(old: CampaignStatus, new: CampaignStatus, trigger: Trigger) -> bool:
    if old == new:
        return True
    return trigger in TRANSITIONS.get((old, new), set())


def assert_transition(old: CampaignStatus, new: CampaignStatus, trigger: Trigger) -> None:
    if not can_transition(old, new, trigger):
        raise InvalidTransition(
            f"Illegal campaign transition: {old.value} -> {new.value} ({trigger.value})"
        )


def is_payout_eligible(
    campaign: Campaign,
    legacy_allow_list: Iterable[str] = (),
) -> bool:
    """
    Only active campaigns pay.

    Exception: campaigns on the legacy allow-list keep paying while paused.
    They stop like everyone else once completed or expired.
    """
    if campaign.status == S.ACTIVE:
        return True
    return campaign.id in set(legacy_allow_list) and campaign.status in PAUSED


# ===========================================================================
# Date-trigger job (external to the payout engine)
# ===========================================================================

def scheduled_status(campaign: Campaign, now: datetime) -> Optional[CampaignStatus]:
    """The status the calendar says this campaign should move to, if any."""
    if campaign.status in TERMINAL or campaign.status == S.PENDING_FUNDING:
        return None
    now = _aware(now)

    end = _aware(campaign.end_date)
    if end is not None and end <= now:
        return S.EXPIRED

    start = _aware(campaign.start_date)
    if campaign.status == S.FUNDED_BUT_NOT_STARTED and (start is None or start <= now):
        return S.ACTIVE

    return None


def apply_scheduled_transitions(store, now: Optional[datetime] = None) -> ScheduleSummary:
    """
    Activate campaigns whose start date has arrived and expire campaigns
    whose end date has passed. Each move is a compare-and-swap on status, so
    a concurrent engine or admin change wins and the campaign is re-checked
    on the next run.
    """
    now = _aware(now) or datetime.now(timezone.utc)
    summary = ScheduleSummary()

    for campaign in store.list_campaigns():
        target = scheduled_status(campaign, now)
        if target is None:
            continue
        assert_transition(campaign.status, target, Trigger.SCHEDULE)

        if not store.update_campaign_status(campaign.id, campaign.status, target):
            logger.warning(
                f"Campaign {campaign.id} changed status concurrently; "
                f"skipping {campaign.status.value} -> {target.value}"
            )
            continue

        logger.info(f"Campaign {campaign.id}: {campaign.status.value} -> {target.value}")
        if target == S.ACTIVE:
            summary.activated.append(campaign.id)
        else:
            summary.expired.append(campaign.id)

    return summary


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
