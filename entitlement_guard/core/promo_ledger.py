"""
Promo code ledger.

Validates, claims and records promo-code grants. Claims and activations
are safe under concurrent requests because each one is a single
conditional write against the store.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from entitlement_guard.storage.models import (
    ActivationStatus,
    PromoActivation,
    PromoCode,
    PromoTier,
)
from entitlement_guard.storage.promo_repository import PromoActivationStore, PromoStore
from entitlement_guard.storage.repository import AccountStore
from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MIN_CODE_LENGTH = 3
_CODE_PATTERN = re.compile(r"^[A-Z0-9-]+$")

BASE_TRIAL_DAYS = 14
DAYS_PER_FREE_MONTH = 30


def normalize_code(code: Optional[str]) -> str:
    """Validate a promo code and return its uppercase canonical form.

    Raises:
        ValidationError: If the code is missing, too short, or contains
            characters other than letters, digits and hyphens
    """
    if code is None or not code.strip():
        raise ValidationError("Promo code is required", "Please enter a promo code.")
    canonical = code.strip().upper()
    if len(canonical) < MIN_CODE_LENGTH:
        raise ValidationError(
            f"Promo code {canonical!r} is shorter than {MIN_CODE_LENGTH} characters",
            f"Promo code must be at least {MIN_CODE_LENGTH} characters.",
        )
    if not _CODE_PATTERN.match(canonical):
        raise ValidationError(
            f"Promo code {canonical!r} has invalid characters",
            "Promo code can only contain letters, numbers, and hyphens.",
        )
    return canonical


def total_free_days(
    free_months: int,
    base_days: int = BASE_TRIAL_DAYS,
    days_per_month: int = DAYS_PER_FREE_MONTH
) -> int:
    """Trial length granted by a promo: the base trial plus the free months."""
    return base_days + free_months * days_per_month


def promo_tier_for_followers(follower_count: int) -> PromoTier:
    """Influencer tier from follower count at signup."""
    if follower_count >= 50000:
        return PromoTier.MAJOR
    if follower_count >= 10000:
        return PromoTier.MID
    return PromoTier.MICRO


@dataclass(frozen=True)
class PromoApplication:
    """Result of applying a promo code to an account."""
    activation: PromoActivation
    total_free_days: int
    free_months: int
    created: bool


@dataclass(frozen=True)
class PromoStatus:
    """Summary of the best promo grant waiting on an account."""
    has_promo: bool
    code: Optional[str] = None
    free_months: int = 0
    total_free_days: int = 0
    status: Optional[ActivationStatus] = None


class PromoLedger:
    """Claims, applies and tracks promo codes.

    Owns the promo fields of the account record; no other component
    writes ``promo_code_used`` or ``promo_months_granted``.
    """

    def __init__(
        self,
        promo_store: PromoStore,
        activation_store: PromoActivationStore,
        account_store: AccountStore,
        base_days: int = BASE_TRIAL_DAYS,
        days_per_month: int = DAYS_PER_FREE_MONTH
    ):
        self.promo_store = promo_store
        self.activation_store = activation_store
        self.account_store = account_store
        self.base_days = base_days
        self.days_per_month = days_per_month

    def _active_code(self, canonical: str) -> PromoCode:
        promo = self.promo_store.get(canonical)
        if promo is None:
            raise NotFoundError(f"Promo code {canonical} does not exist")
        if not promo.active:
            raise ValidationError(
                f"Promo code {canonical} is inactive",
                "This promo code is no longer active.",
            )
        return promo

    def register_code(
        self,
        code: str,
        free_months: int = 1,
        tier: PromoTier = PromoTier.MICRO,
        active: bool = True
    ) -> PromoCode:
        """Create an unclaimed code from the influencer signup flow.

        Raises:
            ValidationError: If the code format or free months are invalid
            ConflictError: If the code already exists
        """
        canonical = normalize_code(code)
        if free_months < 0:
            raise ValidationError("free_months cannot be negative")
        promo = self.promo_store.create(PromoCode(
            code=canonical,
            free_months=free_months,
            tier=tier,
            active=active,
            created_at=datetime.now(timezone.utc),
        ))
        logger.info("Registered promo code %s (%s, %d free months)", canonical, tier.value, free_months)
        return promo

    def claim_code(self, code: str, claimant_id: str) -> PromoCode:
        """Claim an unclaimed code for an influencer.

        The ownership check and write are one conditional update; racing
        claimants get exactly one winner.

        Args:
            code: Promo code in any case
            claimant_id: Influencer claiming the code

        Returns:
            The claimed PromoCode

        Raises:
            ValidationError: If the code is malformed or inactive, or the
                claimant is missing
            NotFoundError: If the code does not exist
            ConflictError: If another claimant already owns the code
        """
        canonical = normalize_code(code)
        if not claimant_id:
            raise ValidationError("claimant_id is required", "Please sign in to claim a code.")
        self._active_code(canonical)

        if not self.promo_store.conditional_claim(canonical, claimant_id):
            # Re-read only to tell a deactivation apart from a lost race
            current = self.promo_store.get(canonical)
            if current is not None and not current.active:
                raise ValidationError(
                    f"Promo code {canonical} was deactivated",
                    "This promo code is no longer active.",
                )
            raise ConflictError(f"Promo code {canonical} is already claimed")

        logger.info("Promo code %s claimed by %s", canonical, claimant_id)
        return self.promo_store.get(canonical)

    def apply_code(self, user_id: str, code: str) -> PromoApplication:
        """Apply a promo code to an account. Idempotent per (user_id, code).

        Stores a pending activation and records the grant on the account
        unless an equal or larger grant is already there. Does not start
        the trial clock.

        Raises:
            ValidationError: If the code is malformed or inactive
            NotFoundError: If the code or account does not exist
        """
        canonical = normalize_code(code)
        if not user_id:
            raise ValidationError("user_id is required", "Please sign up or log in first.")
        promo = self._active_code(canonical)
        if self.account_store.get(user_id) is None:
            raise NotFoundError(f"Account {user_id} does not exist", "Please sign up or log in first.")

        activation, created = self.activation_store.create_if_absent(
            user_id, canonical, promo.free_months
        )
        if self.account_store.record_promo_grant(user_id, canonical, activation.free_months):
            logger.info("Recorded %d-month promo grant %s for %s", activation.free_months, canonical, user_id)

        return PromoApplication(
            activation=activation,
            total_free_days=total_free_days(
                activation.free_months, self.base_days, self.days_per_month
            ),
            free_months=activation.free_months,
            created=created,
        )

    def codes_for_owner(self, owner_influencer_id: str) -> List[PromoCode]:
        return self.promo_store.list_by_owner(owner_influencer_id)

    def promo_status(self, user_id: str) -> PromoStatus:
        """Best promo grant on the account that billing has not yet confirmed."""
        for status in (ActivationStatus.ACTIVE, ActivationStatus.PENDING):
            activations = self.activation_store.list_for_user(user_id, status)
            if activations:
                best = activations[0]
                return PromoStatus(
                    has_promo=True,
                    code=best.code,
                    free_months=best.free_months,
                    total_free_days=total_free_days(
                        best.free_months, self.base_days, self.days_per_month
                    ),
                    status=best.status,
                )
        return PromoStatus(has_promo=False)

    def activate_pending(self, user_id: str) -> Optional[PromoActivation]:
        """Mark the largest pending grant as consumed by a starting trial."""
        pending = self.activation_store.list_for_user(user_id, ActivationStatus.PENDING)
        if not pending:
            return None
        best = pending[0]
        self.activation_store.transition(
            user_id, best.code, (ActivationStatus.PENDING,), ActivationStatus.ACTIVE
        )
        return self.activation_store.get(user_id, best.code)

    def mark_applied(self, user_id: str, code: str) -> bool:
        """Record that billing honored the discount for this activation.

        ``times_used`` on the code is incremented once per activation,
        however many times billing repeats the confirmation.

        Returns:
            True if this call moved the activation to applied
        """
        canonical = normalize_code(code)
        moved = self.activation_store.transition(
            user_id,
            canonical,
            (ActivationStatus.PENDING, ActivationStatus.ACTIVE),
            ActivationStatus.APPLIED,
        )
        if moved:
            self.promo_store.increment_times_used(canonical)
            logger.info("Promo %s applied by billing for %s", canonical, user_id)
        return moved
