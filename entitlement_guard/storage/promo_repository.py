"""
Promo code and promo activation persistence.

Claims and activations are single conditional statements so concurrent
requests race inside SQLite rather than between a read and a write.
"""

import sqlite3
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from entitlement_guard.core.errors import ConflictError
from .db import DEFAULT_DB_PATH, format_timestamp, get_connection, parse_timestamp
from .models import ActivationStatus, PromoActivation, PromoCode, PromoTier


def _row_to_code(row: sqlite3.Row) -> PromoCode:
    return PromoCode(
        code=row["code"],
        owner_influencer_id=row["owner_influencer_id"],
        free_months=row["free_months"],
        tier=PromoTier(row["tier"]),
        active=bool(row["active"]),
        times_used=row["times_used"],
        created_at=parse_timestamp(row["created_at"]),
    )


def _row_to_activation(row: sqlite3.Row) -> PromoActivation:
    return PromoActivation(
        user_id=row["user_id"],
        code=row["code"],
        status=ActivationStatus(row["status"]),
        free_months=row["free_months"],
        created_at=parse_timestamp(row["created_at"]),
    )


class PromoStore:
    """Persistence for promo codes. Codes are never deleted."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create(self, promo: PromoCode) -> PromoCode:
        """Insert a new code.

        Raises:
            ConflictError: If the code already exists
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO promo_codes
                (code, owner_influencer_id, free_months, tier, active, times_used, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?)
            """, (
                promo.code,
                promo.owner_influencer_id,
                promo.free_months,
                promo.tier.value,
                int(promo.active),
                format_timestamp(promo.created_at or datetime.now(timezone.utc)),
            ))
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise ConflictError(f"Promo code {promo.code} already exists")
        finally:
            conn.close()
        return self.get(promo.code)

    def get(self, code: str) -> Optional[PromoCode]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM promo_codes WHERE code = ?", (code,)
            ).fetchone()
            return _row_to_code(row) if row else None
        finally:
            conn.close()

    def list_by_owner(self, owner_influencer_id: str) -> List[PromoCode]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT * FROM promo_codes
                WHERE owner_influencer_id = ?
                ORDER BY created_at ASC, code ASC
            """, (owner_influencer_id,)).fetchall()
            return [_row_to_code(row) for row in rows]
        finally:
            conn.close()

    def conditional_claim(self, code: str, claimant_id: str) -> bool:
        """Set the owner only if the code is active and still unclaimed.

        This is the compare-and-swap for influencer claims: the
        ``owner_influencer_id IS NULL`` precondition and the write are one
        statement, so exactly one of any number of racing claimants sees a
        row count of 1.

        Returns:
            True if this call claimed the code
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE promo_codes
                SET owner_influencer_id = ?
                WHERE code = ? AND owner_influencer_id IS NULL AND active = 1
            """, (claimant_id, code))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def increment_times_used(self, code: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE promo_codes SET times_used = times_used + 1 WHERE code = ?",
                (code,)
            )
            conn.commit()
        finally:
            conn.close()


class PromoActivationStore:
    """Persistence for promo activations, unique per (user_id, code)."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create_if_absent(
        self,
        user_id: str,
        code: str,
        free_months: int
    ) -> Tuple[PromoActivation, bool]:
        """Create a pending activation or return the existing one.

        Returns:
            Tuple of the stored activation and whether this call created it
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO promo_activations
                (user_id, code, status, free_months, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                user_id,
                code,
                ActivationStatus.PENDING.value,
                free_months,
                format_timestamp(datetime.now(timezone.utc)),
            ))
            created = cursor.rowcount == 1
            row = conn.execute(
                "SELECT * FROM promo_activations WHERE user_id = ? AND code = ?",
                (user_id, code)
            ).fetchone()
            conn.commit()
            return _row_to_activation(row), created
        finally:
            conn.close()

    def get(self, user_id: str, code: str) -> Optional[PromoActivation]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM promo_activations WHERE user_id = ? AND code = ?",
                (user_id, code)
            ).fetchone()
            return _row_to_activation(row) if row else None
        finally:
            conn.close()

    def list_for_user(
        self,
        user_id: str,
        status: Optional[ActivationStatus] = None
    ) -> List[PromoActivation]:
        """Activations for a user, largest grant first."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM promo_activations WHERE user_id = ?"
            params = [user_id]
            if status is not None:
                query += " AND status = ?"
                params.append(status.value)
            query += " ORDER BY free_months DESC, created_at ASC, id ASC"
            rows = conn.execute(query, params).fetchall()
            return [_row_to_activation(row) for row in rows]
        finally:
            conn.close()

    def transition(
        self,
        user_id: str,
        code: str,
        from_statuses: Tuple[ActivationStatus, ...],
        to_status: ActivationStatus
    ) -> bool:
        """Move an activation to ``to_status`` if it is in one of ``from_statuses``.

        Returns:
            True if this call performed the transition
        """
        placeholders = ", ".join("?" for _ in from_statuses)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                UPDATE promo_activations
                SET status = ?
                WHERE user_id = ? AND code = ? AND status IN ({placeholders})
            """, (
                to_status.value,
                user_id,
                code,
                *[s.value for s in from_statuses],
            ))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()
