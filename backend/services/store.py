"""
SQLite datastore for campaigns, submissions, the engagement ledger, payments
and reconciliation records.

Primitives the engine relies on:
  - append_engagement():  atomic "append ledger record + advance snapshot"
                          (used by the tracking job, never by the payout engine)
  - acquire_lease() / release_lease():
                          per-campaign single-writer lock with expiry, shared
                          across processes through the database file
  - record_payout():      one transaction for all post-transfer bookkeeping
                          (payment row, ledger commit, submission payout,
                          campaign total/status/breakpoint), guarded by a
                          compare-and-swap on campaigns.total_paid

Money is stored as TEXT so Decimal values round-trip exactly.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from models.schemas import (
    Campaign,
    CampaignStatus,
    CreatorAccount,
    Discrepancy,
    EngagementRecord,
    EngagementSnapshot,
    Enforcement,
    PaymentRecord,
    Submission,
    SubmissionStatus,
)
from services.enforcer import resulting_state
from services.errors import PersistenceError
from services.lifecycle import Trigger, can_transition

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

SCHEMA = """
    CREATE TABLE IF NOT EXISTS campaigns (
        id                          TEXT PRIMARY KEY,
        title                       TEXT NOT NULL DEFAULT '',
        rate_per_1000_views         TEXT NOT NULL,
        budget                      TEXT NOT NULL DEFAULT '0.00',
        total_paid                  TEXT NOT NULL DEFAULT '0.00',
        status                      TEXT NOT NULL,
        budget_breakpoints          TEXT NOT NULL DEFAULT '[]',
        current_breakpoint_index    INTEGER NOT NULL DEFAULT 0,
        payout_min_per_submission   TEXT,
        payout_max_per_submission   TEXT,
        currency                    TEXT NOT NULL DEFAULT 'usd',
        start_date                  TEXT,
        end_date                    TEXT,
        updated_at                  TEXT
    );

    CREATE TABLE IF NOT EXISTS submissions (
        id              TEXT PRIMARY KEY,
        campaign_id     TEXT NOT NULL,
        creator_id      TEXT NOT NULL,
        status          TEXT NOT NULL,
        asset_url       TEXT NOT NULL DEFAULT '',
        platform        TEXT,
        views           INTEGER NOT NULL DEFAULT 0,
        likes           INTEGER NOT NULL DEFAULT 0,
        comments        INTEGER NOT NULL DEFAULT 0,
        payout_amount   TEXT NOT NULL DEFAULT '0.00',
        updated_at      TEXT,
        FOREIGN KEY (campaign_id) REFERENCES campaigns(id)
    );

    CREATE TABLE IF NOT EXISTS creator_accounts (
        creator_id          TEXT PRIMARY KEY,
        destination_account TEXT,
        onboarded           INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS engagement_records (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        submission_id   TEXT NOT NULL,
        view_count      INTEGER NOT NULL,
        likes           INTEGER,
        comments        INTEGER,
        measured_at     TEXT NOT NULL,
        paid            INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (submission_id) REFERENCES submissions(id)
    );
    CREATE INDEX IF NOT EXISTS idx_engagement_submission_paid
        ON engagement_records (submission_id, paid, view_count);

    CREATE TABLE IF NOT EXISTS payments (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        submission_id       TEXT NOT NULL,
        campaign_id         TEXT NOT NULL,
        creator_id          TEXT NOT NULL,
        amount              TEXT NOT NULL,
        units_paid          INTEGER NOT NULL,
        rate_per_unit       TEXT NOT NULL,
        baseline_value      INTEGER NOT NULL,
        target_value        INTEGER NOT NULL,
        transfer_id         TEXT NOT NULL UNIQUE,
        destination_account TEXT NOT NULL,
        idempotency_key     TEXT NOT NULL,
        description         TEXT NOT NULL DEFAULT '',
        created_at          TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS discrepancies (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        submission_id   TEXT NOT NULL,
        campaign_id     TEXT NOT NULL,
        transfer_id     TEXT NOT NULL,
        amount          TEXT NOT NULL,
        payload         TEXT NOT NULL,
        error           TEXT NOT NULL DEFAULT '',
        resolved        INTEGER NOT NULL DEFAULT 0,
        created_at      TEXT NOT NULL,
        resolved_at     TEXT
    );

    CREATE TABLE IF NOT EXISTS campaign_leases (
        campaign_id TEXT PRIMARY KEY,
        holder      TEXT NOT NULL,
        expires_at  REAL NOT NULL
    );
"""


def _money(value) -> str:
    return str(Decimal(value).quantize(CENTS))


def _optional_money(value) -> Optional[str]:
    if value is None:
        return None
    return _money(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Store:
    """
    One SQLite connection guarded by a re-entrant lock.

    Cross-process safety comes from SQLite itself: every write goes through
    transaction(), which opens with BEGIN IMMEDIATE and so takes the database
    write lock up front.
    """

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            path, isolation_level=None, check_same_thread=False, timeout=10
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ======================================================================
    # Transactions
    # ======================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.

        Nested calls join the outer transaction. sqlite3 errors surface as
        PersistenceError.
        """
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                logger.error(f"Database error: {e}")
                self._rollback()
                raise PersistenceError(f"Database operation failed: {e}") from e
            except BaseException:
                self._rollback()
                raise

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                logger.error(f"Database error: {e}")
                raise PersistenceError(f"Database query failed: {e}") from e

    # ======================================================================
    # Campaigns
    # ======================================================================

    def save_campaign(self, campaign: Campaign) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO campaigns (
                    id, title, rate_per_1000_views, budget, total_paid, status,
                    budget_breakpoints, current_breakpoint_index,
                    payout_min_per_submission, payout_max_per_submission,
                    currency, start_date, end_date, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    campaign.id,
                    campaign.title,
                    str(campaign.rate_per_1000_views),
                    _money(campaign.budget),
                    _money(campaign.total_paid),
                    campaign.status.value,
                    json.dumps([str(bp) for bp in campaign.budget_breakpoints]),
                    campaign.current_breakpoint_index,
                    _optional_money(campaign.payout_min_per_submission),
                    _optional_money(campaign.payout_max_per_submission),
                    campaign.currency,
                    _iso(campaign.start_date),
                    _iso(campaign.end_date),
                    _iso(campaign.updated_at or _now()),
                ),
            )

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        rows = self._query("SELECT * FROM campaigns WHERE id = ?", (campaign_id,))
        return _row_to_campaign(rows[0]) if rows else None

    def list_campaigns(
        self, statuses: Optional[list[CampaignStatus]] = None
    ) -> list[Campaign]:
        rows = self._query("SELECT * FROM campaigns ORDER BY id")
        campaigns = [_row_to_campaign(r) for r in rows]
        if statuses is not None:
            campaigns = [c for c in campaigns if c.status in statuses]
        return campaigns

    def update_campaign_status(
        self,
        campaign_id: str,
        expected: CampaignStatus,
        new: CampaignStatus,
    ) -> bool:
        """Compare-and-swap on status. Returns False if the status moved."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE campaigns SET status = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (new.value, _iso(_now()), campaign_id, expected.value),
            )
            return cursor.rowcount == 1

    # ======================================================================
    # Submissions + creator accounts
    # ======================================================================

    def save_submission(self, submission: Submission) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO submissions (
                    id, campaign_id, creator_id, status, asset_url, platform,
                    views, likes, comments, payout_amount, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    submission.id,
                    submission.campaign_id,
                    submission.creator_id,
                    submission.status.value,
                    submission.asset_url,
                    submission.platform.value if submission.platform else None,
                    submission.views,
                    submission.likes,
                    submission.comments,
                    _money(submission.payout_amount),
                    _iso(submission.updated_at or _now()),
                ),
            )

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        rows = self._query("SELECT * FROM submissions WHERE id = ?", (submission_id,))
        return _row_to_submission(rows[0]) if rows else None

    def list_submissions(
        self,
        status: Optional[SubmissionStatus] = None,
        campaign_ids: Optional[list[str]] = None,
    ) -> list[Submission]:
        sql = "SELECT * FROM submissions"
        clauses: list[str] = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if campaign_ids is not None:
            if not campaign_ids:
                return []
            clauses.append(f"campaign_id IN ({', '.join('?' for _ in campaign_ids)})")
            params.extend(campaign_ids)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        return [_row_to_submission(r) for r in self._query(sql, tuple(params))]

    def save_creator_account(self, account: CreatorAccount) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO creator_accounts "
                "(creator_id, destination_account, onboarded) VALUES (?, ?, ?)",
                (account.creator_id, account.destination_account, int(account.onboarded)),
            )

    def get_creator_account(self, creator_id: str) -> Optional[CreatorAccount]:
        rows = self._query(
            "SELECT * FROM creator_accounts WHERE creator_id = ?", (creator_id,)
        )
        if not rows:
            return None
        row = rows[0]
        return CreatorAccount(
            creator_id=row["creator_id"],
            destination_account=row["destination_account"],
            onboarded=bool(row["onboarded"]),
        )

    # ======================================================================
    # Engagement ledger
    # ======================================================================

    def append_engagement(
        self,
        submission_id: str,
        snapshot: EngagementSnapshot,
        measured_at: Optional[datetime] = None,
    ) -> EngagementRecord:
        """
        Append one ledger record and advance the submission's snapshot in the
        same transaction. Requires snapshot.views.
        """
        if snapshot.views is None:
            raise ValueError("append_engagement requires a view count")
        measured_at = measured_at or _now()

        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO engagement_records "
                "(submission_id, view_count, likes, comments, measured_at, paid) "
                "VALUES (?, ?, ?, ?, ?, 0)",
                (
                    submission_id,
                    snapshot.views,
                    snapshot.likes,
                    snapshot.comments,
                    _iso(measured_at),
                ),
            )
            conn.execute(
                """
                UPDATE submissions SET
                    views = ?,
                    likes = COALESCE(?, likes),
                    comments = COALESCE(?, comments),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    snapshot.views,
                    snapshot.likes,
                    snapshot.comments,
                    _iso(measured_at),
                    submission_id,
                ),
            )
            record_id = cursor.lastrowid

        return EngagementRecord(
            id=record_id,
            submission_id=submission_id,
            view_count=snapshot.views,
            likes=snapshot.likes,
            comments=snapshot.comments,
            measured_at=measured_at,
            paid=False,
        )

    def list_engagement(self, submission_id: str) -> list[EngagementRecord]:
        rows = self._query(
            "SELECT * FROM engagement_records WHERE submission_id = ? ORDER BY id",
            (submission_id,),
        )
        return [
            EngagementRecord(
                id=r["id"],
                submission_id=r["submission_id"],
                view_count=r["view_count"],
                likes=r["likes"],
                comments=r["comments"],
                measured_at=r["measured_at"],
                paid=bool(r["paid"]),
            )
            for r in rows
        ]

    def max_engagement_value(self, submission_id: str, paid: bool) -> Optional[int]:
        rows = self._query(
            "SELECT MAX(view_count) AS value FROM engagement_records "
            "WHERE submission_id = ? AND paid = ?",
            (submission_id, int(paid)),
        )
        return rows[0]["value"]

    def mark_engagement_paid(self, submission_id: str, up_to: int) -> int:
        """Flip unpaid records with view_count <= up_to to paid. Returns count."""
        with self.transaction() as conn:
            return _mark_paid(conn, submission_id, up_to)

    # ======================================================================
    # Campaign leases (per-campaign single writer)
    # ======================================================================

    def acquire_lease(self, campaign_id: str, holder: str, ttl: float) -> bool:
        now = time.time()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT holder, expires_at FROM campaign_leases WHERE campaign_id = ?",
                (campaign_id,),
            ).fetchone()
            if row is not None and row["holder"] != holder and row["expires_at"] > now:
                return False
            conn.execute(
                "INSERT OR REPLACE INTO campaign_leases (campaign_id, holder, expires_at) "
                "VALUES (?, ?, ?)",
                (campaign_id, holder, now + ttl),
            )
            return True

    def release_lease(self, campaign_id: str, holder: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM campaign_leases WHERE campaign_id = ? AND holder = ?",
                (campaign_id, holder),
            )

    # ======================================================================
    # Payments
    # ======================================================================

    def record_payout(
        self,
        payment: PaymentRecord,
        enforcement: Enforcement,
        expected_total_paid: Optional[Decimal],
    ) -> PaymentRecord:
        """
        Commit everything that follows a successful transfer, atomically.

        With expected_total_paid set, the campaign update is a compare-and-swap
        and a mismatch raises PersistenceError. With None (reconciliation
        replay), the amount is added to whatever total_paid is now and the
        campaign state is re-derived from the current row: the breakpoint
        index never moves backwards and a status the engine may not leave
        (completed, expired, an admin resume) is kept.
        """
        created_at = payment.created_at or _now()

        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM campaigns WHERE id = ?", (payment.campaign_id,)
            ).fetchone()
            if row is None:
                raise PersistenceError(f"Campaign {payment.campaign_id} vanished")
            current_total = Decimal(row["total_paid"])

            if expected_total_paid is not None:
                if current_total != Decimal(expected_total_paid).quantize(CENTS):
                    raise PersistenceError(
                        f"Campaign {payment.campaign_id} total_paid changed "
                        f"concurrently: expected {_money(expected_total_paid)}, "
                        f"found {_money(current_total)}"
                    )
                new_total = enforcement.new_total_paid
                new_index = enforcement.new_breakpoint_index
                new_status = row["status"]
                if enforcement.status_changed:
                    new_status = enforcement.new_status.value
            else:
                # The campaign may have moved since the transfer; derive the
                # state from the row as it is now.
                current = _row_to_campaign(row)
                new_total = current_total + payment.amount
                target, new_index = resulting_state(current, new_total)
                if not can_transition(current.status, target, Trigger.ENGINE):
                    target = current.status
                new_status = target.value

            conn.execute(
                "UPDATE campaigns SET total_paid = ?, status = ?, "
                "current_breakpoint_index = ?, updated_at = ? "
                "WHERE id = ? AND total_paid = ?",
                (
                    _money(new_total),
                    new_status,
                    new_index,
                    _iso(created_at),
                    payment.campaign_id,
                    row["total_paid"],
                ),
            )

            cursor = conn.execute(
                """
                INSERT INTO payments (
                    submission_id, campaign_id, creator_id, amount, units_paid,
                    rate_per_unit, baseline_value, target_value, transfer_id,
                    destination_account, idempotency_key, description, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payment.submission_id,
                    payment.campaign_id,
                    payment.creator_id,
                    _money(payment.amount),
                    payment.units_paid,
                    str(payment.rate_per_unit),
                    payment.baseline_value,
                    payment.target_value,
                    payment.transfer_id,
                    payment.destination_account,
                    payment.idempotency_key,
                    payment.description,
                    _iso(created_at),
                ),
            )

            _mark_paid(conn, payment.submission_id, payment.target_value)

            sub_row = conn.execute(
                "SELECT payout_amount FROM submissions WHERE id = ?",
                (payment.submission_id,),
            ).fetchone()
            if sub_row is None:
                raise PersistenceError(f"Submission {payment.submission_id} vanished")
            conn.execute(
                "UPDATE submissions SET payout_amount = ?, updated_at = ? WHERE id = ?",
                (
                    _money(Decimal(sub_row["payout_amount"]) + payment.amount),
                    _iso(created_at),
                    payment.submission_id,
                ),
            )
            payment_id = cursor.lastrowid

        return payment.model_copy(update={"id": payment_id, "created_at": created_at})

    def list_payments(
        self,
        campaign_id: Optional[str] = None,
        submission_id: Optional[str] = None,
    ) -> list[PaymentRecord]:
        sql = "SELECT * FROM payments"
        clauses: list[str] = []
        params: list = []
        if campaign_id is not None:
            clauses.append("campaign_id = ?")
            params.append(campaign_id)
        if submission_id is not None:
            clauses.append("submission_id = ?")
            params.append(submission_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        return [_row_to_payment(r) for r in self._query(sql, tuple(params))]

    def get_payment_by_transfer(self, transfer_id: str) -> Optional[PaymentRecord]:
        rows = self._query("SELECT * FROM payments WHERE transfer_id = ?", (transfer_id,))
        return _row_to_payment(rows[0]) if rows else None

    # ======================================================================
    # Reconciliation
    # ======================================================================

    def record_discrepancy(self, discrepancy: Discrepancy) -> Discrepancy:
        created_at = discrepancy.created_at or _now()
        payload = json.dumps({
            "payment": discrepancy.payment.model_dump(mode="json"),
            "enforcement": discrepancy.enforcement.model_dump(mode="json"),
            "expected_total_paid": str(discrepancy.expected_total_paid),
        })
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO discrepancies (submission_id, campaign_id, transfer_id, "
                "amount, payload, error, resolved, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 0, ?)",
                (
                    discrepancy.submission_id,
                    discrepancy.campaign_id,
                    discrepancy.transfer_id,
                    _money(discrepancy.amount),
                    payload,
                    discrepancy.error,
                    _iso(created_at),
                ),
            )
            discrepancy_id = cursor.lastrowid
        return discrepancy.model_copy(update={"id": discrepancy_id, "created_at": created_at})

    def get_discrepancy(self, discrepancy_id: int) -> Optional[Discrepancy]:
        rows = self._query("SELECT * FROM discrepancies WHERE id = ?", (discrepancy_id,))
        return _row_to_discrepancy(rows[0]) if rows else None

    def open_discrepancies(self, submission_id: Optional[str] = None) -> list[Discrepancy]:
        if submission_id is None:
            rows = self._query(
                "SELECT * FROM discrepancies WHERE resolved = 0 ORDER BY id"
            )
        else:
            rows = self._query(
                "SELECT * FROM discrepancies WHERE resolved = 0 AND submission_id = ? "
                "ORDER BY id",
                (submission_id,),
            )
        return [_row_to_discrepancy(r) for r in rows]

    def resolve_discrepancy(self, discrepancy_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE discrepancies SET resolved = 1, resolved_at = ? WHERE id = ?",
                (_iso(_now()), discrepancy_id),
            )


# ===========================================================================
# Row helpers
# ===========================================================================

def _mark_paid(conn: sqlite3.Connection, submission_id: str, up_to: int) -> int:
    cursor = conn.execute(
        "UPDATE engagement_records SET paid = 1 "
        "WHERE submission_id = ? AND paid = 0 AND view_count <= ?",
        (submission_id, up_to),
    )
    return cursor.rowcount


def _row_to_campaign(row: sqlite3.Row) -> Campaign:
    return Campaign(
        id=row["id"],
        title=row["title"],
        rate_per_1000_views=Decimal(row["rate_per_1000_views"]),
        budget=Decimal(row["budget"]),
        total_paid=Decimal(row["total_paid"]),
        status=CampaignStatus(row["status"]),
        budget_breakpoints=[Decimal(bp) for bp in json.loads(row["budget_breakpoints"])],
        current_breakpoint_index=row["current_breakpoint_index"],
        payout_min_per_submission=row["payout_min_per_submission"],
        payout_max_per_submission=row["payout_max_per_submission"],
        currency=row["currency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        updated_at=row["updated_at"],
    )


def _row_to_submission(row: sqlite3.Row) -> Submission:
    return Submission(
        id=row["id"],
        campaign_id=row["campaign_id"],
        creator_id=row["creator_id"],
        status=SubmissionStatus(row["status"]),
        asset_url=row["asset_url"],
        platform=row["platform"],
        views=row["views"],
        likes=row["likes"],
        comments=row["comments"],
        payout_amount=Decimal(row["payout_amount"]),
        updated_at=row["updated_at"],
    )


def _row_to_payment(row: sqlite3.Row) -> PaymentRecord:
    return PaymentRecord(
        id=row["id"],
        submission_id=row["submission_id"],
        campaign_id=row["campaign_id"],
        creator_id=row["creator_id"],
        amount=Decimal(row["amount"]),
        units_paid=row["units_paid"],
        rate_per_unit=Decimal(row["rate_per_unit"]),
        baseline_value=row["baseline_value"],
        target_value=row["target_value"],
        transfer_id=row["transfer_id"],
        destination_account=row["destination_account"],
        idempotency_key=row["idempotency_key"],
        description=row["description"],
        created_at=row["created_at"],
    )


def _row_to_discrepancy(row: sqlite3.Row) -> Discrepancy:
    payload = json.loads(row["payload"])
    return Discrepancy(
        id=row["id"],
        submission_id=row["submission_id"],
        campaign_id=row["campaign_id"],
        transfer_id=row["transfer_id"],
        amount=Decimal(row["amount"]),
        payment=PaymentRecord.model_validate(payload["payment"]),
        enforcement=Enforcement.model_validate(payload["enforcement"]),
        expected_total_paid=Decimal(payload["expected_total_paid"]),
        error=row["error"],
        resolved=bool(row["resolved"]),
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )
