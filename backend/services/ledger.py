"""
Engagement ledger — the append-only view history of each submission.

Watermarks:
  baseline(sid)        = highest view_count already paid for (0 if none)
  highest_unpaid(sid)  = highest view_count not yet paid for (None if none)

commit(sid, target) flips every unpaid record at or below `target` to paid.
It belongs to a successful transfer commit only: marking without paying
loses a creator's units, paying without marking re-bills them next cycle.
The transfer issuer does the same flip inside Store.record_payout(); this
method exists for reconciliation and tests.
"""

import logging
from typing import Optional

from services.store import Store

logger = logging.getLogger(__name__)


class Ledger:
    def __init__(self, store: Store):
        self.store = store

    def baseline(self, submission_id: str) -> int:
        value = self.store.max_engagement_value(submission_id, paid=True)
        return value if value is not None else 0

    def highest_unpaid(self, submission_id: str) -> Optional[int]:
        return self.store.max_engagement_value(submission_id, paid=False)

    def commit(self, submission_id: str, target: int) -> int:
        marked = self.store.mark_engagement_paid(submission_id, target)
        logger.debug(f"Ledger commit for {submission_id}: {marked} record(s) up to {target:,}")
        return marked
