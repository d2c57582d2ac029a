"""
Tier resolution.

Merges the local account record, the billing snapshot and any promo grant
into one authoritative tier decision.

Resolution Order:
1. lifetime_admin - absolute override, billing is ignored
2. Fresh billing snapshot - mapped through the fixed status table
3. Local status - when billing is absent, stale or unreachable, and for
   statuses the billing provider never produces (influencer_premium)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from entitlement_guard.storage.models import AccountRecord, BillingSnapshot
from .tiers import (
    BillingStatus,
    DecisionSource,
    LOCAL_ONLY_TIERS,
    Tier,
    map_billing_status,
)
from .trial_clock import PROMO_RULE, days_left, resolve_trial_end

DEFAULT_STALENESS_WINDOW = timedelta(minutes=15)


@dataclass(frozen=True)
class TierDecision:
    """Authoritative tier for one account at one moment. Derived, never stored."""
    user_id: str
    effective_tier: Tier
    days_left_in_trial: int
    source: DecisionSource
    drift_detected: bool = False
    billing_status: Optional[BillingStatus] = None

    def __post_init__(self):
        if self.days_left_in_trial < 0:
            raise ValueError("days_left_in_trial cannot be negative")


def is_fresh(
    snapshot: Optional[BillingSnapshot],
    now: datetime,
    staleness_window: timedelta = DEFAULT_STALENESS_WINDOW
) -> bool:
    """Whether a snapshot was fetched within the staleness window."""
    if snapshot is None:
        return False
    return now - snapshot.fetched_at <= staleness_window


def billing_drift(account: AccountRecord, status: BillingStatus) -> bool:
    """Whether the local status disagrees with what billing implies.

    A local past_due record agrees with a past_due billing status even
    though billing grants active access during the grace period.
    """
    if account.local_status == Tier.PAST_DUE and status == BillingStatus.PAST_DUE:
        return False
    return map_billing_status(status) != account.local_status


def resolve_tier(
    account: AccountRecord,
    snapshot: Optional[BillingSnapshot] = None,
    now: Optional[datetime] = None,
    staleness_window: timedelta = DEFAULT_STALENESS_WINDOW
) -> TierDecision:
    """Produce a tier decision from the account and billing snapshot.

    Args:
        account: Local account record
        snapshot: Billing snapshot, or None if unavailable
        now: Reference time (defaults to current UTC time)
        staleness_window: Maximum snapshot age treated as authoritative

    Returns:
        TierDecision. ``drift_detected`` is set when a usable snapshot
        disagrees with the local status; it never changes the decision.
    """
    now = now or datetime.now(timezone.utc)

    if account.local_status == Tier.LIFETIME_ADMIN:
        return TierDecision(
            user_id=account.user_id,
            effective_tier=Tier.LIFETIME_ADMIN,
            days_left_in_trial=0,
            source=DecisionSource.OVERRIDE,
        )

    usable = snapshot if is_fresh(snapshot, now, staleness_window) else None

    if usable is not None and account.local_status not in LOCAL_ONLY_TIERS:
        effective = map_billing_status(usable.status)
        return TierDecision(
            user_id=account.user_id,
            effective_tier=effective,
            days_left_in_trial=days_left(account, usable, now, tier=effective),
            source=DecisionSource.BILLING,
            drift_detected=billing_drift(account, usable.status),
            billing_status=usable.status,
        )

    effective = account.local_status
    source = DecisionSource.LOCAL
    trial_days = 0
    if effective == Tier.TRIAL:
        trial_days = days_left(account, usable, now, tier=effective)
        resolution = resolve_trial_end(account, usable)
        if resolution is not None and resolution.rule == PROMO_RULE:
            source = DecisionSource.PROMO

    return TierDecision(
        user_id=account.user_id,
        effective_tier=effective,
        days_left_in_trial=trial_days,
        source=source,
        billing_status=usable.status if usable else None,
    )
