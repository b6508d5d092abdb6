"""
Engagement tracking run — feeds the ledger.

For every approved submission with a platform:
  1. measure() the post (soft-fails to all-unknown)
  2. unknown views                        → skipped
  3. views <= last known snapshot         → skipped (a drop is logged as a
                                            source anomaly, never recorded)
  4. otherwise append_engagement()        → tracked

The ledger only ever sees non-decreasing view counts from here.
"""

import logging
import time
from datetime import datetime, timezone

from models.schemas import Submission, SubmissionStatus, TrackingSummary
from services.engagement import EngagementTracker
from services.errors import PayoutError
from services.store import Store

logger = logging.getLogger(__name__)


def track_all(store: Store, tracker: EngagementTracker) -> TrackingSummary:
    start = time.monotonic()
    summary = TrackingSummary()

    submissions = [
        s for s in store.list_submissions(status=SubmissionStatus.APPROVED)
        if s.platform is not None
    ]
    logger.info(f"Found {len(submissions)} submissions to track")

    for submission in submissions:
        try:
            if track_submission(store, tracker, submission):
                summary.tracked += 1
            else:
                summary.skipped += 1
        except PayoutError as e:
            summary.errors += 1
            logger.error(f"Error processing submission {submission.id}: {e}")
        except Exception:
            summary.errors += 1
            logger.exception(f"Unexpected error tracking submission {submission.id}")

    summary.duration_seconds = round(time.monotonic() - start, 3)
    logger.info(
        f"Engagement tracking complete: tracked={summary.tracked}, "
        f"skipped={summary.skipped}, errors={summary.errors}"
    )
    return summary


def track_submission(store: Store, tracker: EngagementTracker, submission: Submission) -> bool:
    """Returns True when a new ledger record was appended."""
    snapshot = tracker.measure(submission.id, submission.asset_url, submission.platform)

    if snapshot.views is None:
        logger.info(f"Unable to track views for submission {submission.id}")
        return False

    if snapshot.views < submission.views:
        logger.warning(
            f"Submission {submission.id}: views dropped from {submission.views:,} "
            f"to {snapshot.views:,}; ignoring measurement"
        )
        return False

    view_difference = snapshot.views - submission.views
    if view_difference == 0:
        logger.debug(f"No new views for submission {submission.id}")
        return False

    store.append_engagement(submission.id, snapshot, datetime.now(timezone.utc))
    logger.info(
        f"Submission {submission.id} has {view_difference:,} new views "
        f"(total: {snapshot.views:,})"
    )
    return True
