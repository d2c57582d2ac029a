"""
Repository pattern for data access.

Handles schema creation and persistence for accounts, feature usage
counts, cached billing snapshots and drift reports.
"""

import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from entitlement_guard.core.errors import ConflictError
from entitlement_guard.core.tiers import BillingStatus, Plan, Tier
from .db import DEFAULT_DB_PATH, format_timestamp, get_connection, parse_timestamp
from .models import AccountRecord, BillingSnapshot, DriftReport, PaymentMethodSummary


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all entitlement tables if they don't exist.

    The accounts table enforces the trial invariant with a CHECK
    constraint and carries a ``version`` column used as the
    optimistic-concurrency token. Promo activations are unique per
    ``(user_id, code)``.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS accounts (
                user_id TEXT PRIMARY KEY,
                local_status TEXT NOT NULL,
                plan TEXT NOT NULL,
                trial_ends_at TEXT,
                promo_code_used TEXT,
                promo_months_granted INTEGER,
                created_at TEXT NOT NULL,
                billing_customer_ref TEXT UNIQUE,
                email TEXT,
                has_added_card INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT,
                CHECK ((trial_ends_at IS NOT NULL) = (local_status = 'trial'))
            );

            CREATE TABLE IF NOT EXISTS promo_codes (
                code TEXT PRIMARY KEY,
                owner_influencer_id TEXT,
                free_months INTEGER NOT NULL,
                tier TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                times_used INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS promo_activations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES accounts(user_id),
                code TEXT NOT NULL REFERENCES promo_codes(code),
                status TEXT NOT NULL,
                free_months INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, code)
            );

            CREATE TABLE IF NOT EXISTS feature_usage (
                user_id TEXT NOT NULL,
                feature TEXT NOT NULL,
                item_count INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, feature)
            );

            CREATE TABLE IF NOT EXISTS billing_snapshots (
                customer_ref TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                trial_end TEXT,
                current_period_end TEXT,
                payment_brand TEXT,
                payment_last4 TEXT,
                fetched_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS drift_reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                local_status TEXT NOT NULL,
                billing_status TEXT NOT NULL,
                target_tier TEXT NOT NULL,
                trial_end TEXT,
                detected_at TEXT NOT NULL,
                resolved_at TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


_ACCOUNT_COLUMNS = (
    "user_id, local_status, plan, trial_ends_at, promo_code_used, "
    "promo_months_granted, created_at, billing_customer_ref, email, "
    "has_added_card, version, updated_at"
)

# Columns a patch may touch; user_id, created_at and version are managed here
_PATCHABLE_COLUMNS = {
    "local_status", "plan", "trial_ends_at", "promo_code_used",
    "promo_months_granted", "billing_customer_ref", "email", "has_added_card",
}


def _to_column_value(value: Any) -> Any:
    """Convert a model value into its stored representation."""
    if isinstance(value, (Tier, Plan, BillingStatus)):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _row_to_account(row: sqlite3.Row) -> AccountRecord:
    return AccountRecord(
        user_id=row["user_id"],
        local_status=Tier(row["local_status"]),
        plan=Plan(row["plan"]),
        trial_ends_at=parse_timestamp(row["trial_ends_at"]),
        promo_code_used=row["promo_code_used"],
        promo_months_granted=row["promo_months_granted"],
        created_at=parse_timestamp(row["created_at"]),
        billing_customer_ref=row["billing_customer_ref"],
        email=row["email"],
        has_added_card=bool(row["has_added_card"]),
        version=row["version"],
        updated_at=parse_timestamp(row["updated_at"]),
    )


class AccountStore:
    """Persistence for account records.

    Every write bumps ``version``. Callers that must not clobber a
    concurrent writer pass ``expected_version``; the write then only
    lands if nobody changed the row since it was read.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create(self, account: AccountRecord) -> AccountRecord:
        """Insert a new account at signup.

        Raises:
            ConflictError: If the user or billing customer already has an account
        """
        now = datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """, (
                account.user_id,
                account.local_status.value,
                account.plan.value,
                format_timestamp(account.trial_ends_at),
                account.promo_code_used,
                account.promo_months_granted,
                format_timestamp(account.created_at),
                account.billing_customer_ref,
                account.email,
                int(account.has_added_card),
                format_timestamp(now),
            ))
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ConflictError(f"Account {account.user_id} already exists: {e}")
        finally:
            conn.close()
        return self.get(account.user_id)

    def get(self, user_id: str) -> Optional[AccountRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE user_id = ?",
                (user_id,)
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def get_by_customer_ref(self, customer_ref: str) -> Optional[AccountRecord]:
        """Look up the account linked to a billing customer."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE billing_customer_ref = ?",
                (customer_ref,)
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def list_by_status(self, status: Tier) -> List[AccountRecord]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE local_status = ? ORDER BY user_id",
                (status.value,)
            ).fetchall()
            return [_row_to_account(row) for row in rows]
        finally:
            conn.close()

    def update(
        self,
        user_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[int] = None,
        expected_status: Optional[Tier] = None,
    ) -> bool:
        """Apply a partial update to an account.

        Args:
            user_id: Account to update
            patch: Column name to new value
            expected_version: Only write if the row still has this version
            expected_status: Only write if the row still has this status

        Returns:
            True if the row was written, False if it was missing or a
            guard did not match

        Raises:
            ValueError: If the patch names an unknown column or would break
                the trial invariant
        """
        unknown = set(patch) - _PATCHABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot patch account columns: {sorted(unknown)}")
        if not patch:
            return False

        assignments = [f"{column} = ?" for column in patch]
        params = [_to_column_value(value) for value in patch.values()]
        assignments.append("version = version + 1")
        assignments.append("updated_at = ?")
        params.append(format_timestamp(datetime.now(timezone.utc)))

        conditions = ["user_id = ?"]
        params.append(user_id)
        if expected_version is not None:
            conditions.append("version = ?")
            params.append(expected_version)
        if expected_status is not None:
            conditions.append("local_status = ?")
            params.append(expected_status.value)

        query = (
            "UPDATE accounts SET " + ", ".join(assignments)
            + " WHERE " + " AND ".join(conditions)
        )
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount == 1
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ValueError(f"Account update for {user_id} rejected: {e}")
        finally:
            conn.close()

    def record_promo_grant(self, user_id: str, code: str, free_months: int) -> bool:
        """Store a promo grant unless an equal or larger one is already recorded.

        The comparison happens inside the UPDATE so two concurrent grants
        cannot leave the smaller one behind.

        Returns:
            True if the grant was written
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE accounts
                SET promo_code_used = ?,
                    promo_months_granted = ?,
                    version = version + 1,
                    updated_at = ?
                WHERE user_id = ?
                  AND (promo_months_granted IS NULL OR promo_months_granted < ?)
            """, (
                code,
                free_months,
                format_timestamp(datetime.now(timezone.utc)),
                user_id,
                free_months,
            ))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()


class FeatureUsageStore:
    """Per-user item counts for count-limited features."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def count(self, user_id: str, feature: str) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT item_count FROM feature_usage WHERE user_id = ? AND feature = ?",
                (user_id, feature)
            ).fetchone()
            return row["item_count"] if row else 0
        finally:
            conn.close()

    def set_count(self, user_id: str, feature: str, item_count: int) -> None:
        if item_count < 0:
            raise ValueError("item_count cannot be negative")
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO feature_usage (user_id, feature, item_count)
                VALUES (?, ?, ?)
                ON CONFLICT (user_id, feature) DO UPDATE SET item_count = excluded.item_count
            """, (user_id, feature, item_count))
            conn.commit()
        finally:
            conn.close()

    def increment(self, user_id: str, feature: str, delta: int = 1) -> int:
        """Adjust a count by ``delta`` and return the new value (never below zero)."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO feature_usage (user_id, feature, item_count)
                VALUES (?, ?, MAX(?, 0))
                ON CONFLICT (user_id, feature)
                DO UPDATE SET item_count = MAX(item_count + ?, 0)
            """, (user_id, feature, delta, delta))
            row = conn.execute(
                "SELECT item_count FROM feature_usage WHERE user_id = ? AND feature = ?",
                (user_id, feature)
            ).fetchone()
            conn.commit()
            return row["item_count"]
        finally:
            conn.close()


class BillingSnapshotStore:
    """Cache of the last billing snapshot fetched per customer."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, customer_ref: str) -> Optional[BillingSnapshot]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT customer_ref, status, trial_end, current_period_end,
                       payment_brand, payment_last4, fetched_at
                FROM billing_snapshots WHERE customer_ref = ?
            """, (customer_ref,)).fetchone()
            if row is None:
                return None
            summary = None
            if row["payment_brand"] and row["payment_last4"]:
                summary = PaymentMethodSummary(
                    brand=row["payment_brand"],
                    last4=row["payment_last4"]
                )
            return BillingSnapshot(
                customer_ref=row["customer_ref"],
                status=BillingStatus(row["status"]),
                trial_end=parse_timestamp(row["trial_end"]),
                current_period_end=parse_timestamp(row["current_period_end"]),
                payment_method_summary=summary,
                fetched_at=parse_timestamp(row["fetched_at"]),
            )
        finally:
            conn.close()

    def save(self, snapshot: BillingSnapshot) -> None:
        summary = snapshot.payment_method_summary
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO billing_snapshots
                (customer_ref, status, trial_end, current_period_end,
                 payment_brand, payment_last4, fetched_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                snapshot.customer_ref,
                snapshot.status.value,
                format_timestamp(snapshot.trial_end),
                format_timestamp(snapshot.current_period_end),
                summary.brand if summary else None,
                summary.last4 if summary else None,
                format_timestamp(snapshot.fetched_at),
            ))
            conn.commit()
        finally:
            conn.close()


def _row_to_report(row: sqlite3.Row) -> DriftReport:
    return DriftReport(
        id=row["id"],
        user_id=row["user_id"],
        local_status=Tier(row["local_status"]),
        billing_status=BillingStatus(row["billing_status"]),
        target_tier=Tier(row["target_tier"]),
        trial_end=parse_timestamp(row["trial_end"]),
        detected_at=parse_timestamp(row["detected_at"]),
        resolved_at=parse_timestamp(row["resolved_at"]),
    )


class DriftReportStore:
    """Outbox of drift reports awaiting the reconciliation job."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add(self, report: DriftReport) -> DriftReport:
        """Queue a report unless an unresolved one for the same drift exists."""
        conn = get_connection(self.db_path)
        try:
            existing = conn.execute("""
                SELECT * FROM drift_reports
                WHERE user_id = ? AND billing_status = ? AND local_status = ?
                  AND resolved_at IS NULL
            """, (
                report.user_id,
                report.billing_status.value,
                report.local_status.value,
            )).fetchone()
            if existing:
                return _row_to_report(existing)
            cursor = conn.execute("""
                INSERT INTO drift_reports
                (user_id, local_status, billing_status, target_tier, trial_end, detected_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                report.user_id,
                report.local_status.value,
                report.billing_status.value,
                report.target_tier.value,
                format_timestamp(report.trial_end),
                format_timestamp(report.detected_at),
            ))
            conn.commit()
            row = conn.execute(
                "SELECT * FROM drift_reports WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return _row_to_report(row)
        finally:
            conn.close()

    def pending(self, limit: int = 500) -> List[DriftReport]:
        """Unresolved reports, oldest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT * FROM drift_reports
                WHERE resolved_at IS NULL
                ORDER BY detected_at ASC, id ASC
                LIMIT ?
            """, (limit,)).fetchall()
            return [_row_to_report(row) for row in rows]
        finally:
            conn.close()

    def mark_resolved(self, report_id: int, resolved_at: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE drift_reports SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
                (format_timestamp(resolved_at), report_id)
            )
            conn.commit()
        finally:
            conn.close()
