"""
Trial clock.

Computes whole days remaining in a trial when several timestamp sources
may disagree.

Source priority (first available wins):
1. Billing trial end - the provider owns actual trial billing
2. Billing current period end, while the subscription is trialing
3. Account creation + promo months granted
4. Local trial_ends_at - last resort, may be stale
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from dateutil.relativedelta import relativedelta

from entitlement_guard.storage.models import AccountRecord, BillingSnapshot
from .tiers import BillingStatus, Tier

ONE_DAY = timedelta(days=1)

TrialEndSource = Callable[[AccountRecord, Optional[BillingSnapshot]], Optional[datetime]]


def billing_trial_end(account: AccountRecord, snapshot: Optional[BillingSnapshot]) -> Optional[datetime]:
    if snapshot is None:
        return None
    return snapshot.trial_end


def billing_trialing_period_end(account: AccountRecord, snapshot: Optional[BillingSnapshot]) -> Optional[datetime]:
    if snapshot is None or snapshot.status != BillingStatus.TRIALING:
        return None
    return snapshot.current_period_end


def promo_grant_end(account: AccountRecord, snapshot: Optional[BillingSnapshot]) -> Optional[datetime]:
    """Creation date plus the granted promo months (calendar months, clamped to month end)."""
    if not account.promo_months_granted:
        return None
    return account.created_at + relativedelta(months=account.promo_months_granted)


def local_trial_end(account: AccountRecord, snapshot: Optional[BillingSnapshot]) -> Optional[datetime]:
    return account.trial_ends_at


@dataclass(frozen=True)
class TrialEndRule:
    """One named source in the trial-end fallback chain."""
    name: str
    source: TrialEndSource


TRIAL_END_RULES: Tuple[TrialEndRule, ...] = (
    TrialEndRule("billing_trial_end", billing_trial_end),
    TrialEndRule("billing_period_end", billing_trialing_period_end),
    TrialEndRule("promo_grant", promo_grant_end),
    TrialEndRule("local_trial_end", local_trial_end),
)

PROMO_RULE = "promo_grant"


@dataclass(frozen=True)
class TrialEndResolution:
    """Resolved trial end and the rule that produced it."""
    trial_end: datetime
    rule: str


def resolve_trial_end(
    account: AccountRecord,
    snapshot: Optional[BillingSnapshot]
) -> Optional[TrialEndResolution]:
    """Walk the rule list and return the first available trial end.

    Returns:
        TrialEndResolution, or None if no source has a value
    """
    for rule in TRIAL_END_RULES:
        trial_end = rule.source(account, snapshot)
        if trial_end is not None:
            return TrialEndResolution(trial_end=trial_end, rule=rule.name)
    return None


def days_until(trial_end: datetime, now: datetime) -> int:
    """Whole days from ``now`` until ``trial_end``, rounded up, never negative."""
    remaining = (trial_end - now) / ONE_DAY
    return max(0, math.ceil(remaining))


def days_left(
    account: AccountRecord,
    snapshot: Optional[BillingSnapshot] = None,
    now: Optional[datetime] = None,
    tier: Optional[Tier] = None
) -> int:
    """Number of whole days remaining in the account's trial.

    Args:
        account: Local account record
        snapshot: Billing snapshot, if one is available
        now: Reference time (defaults to current UTC time)
        tier: Tier under evaluation (defaults to the account's local status).
            The resolver passes the effective tier so a billing-reported
            trial is counted even while the local status lags.

    Returns:
        Days left, 0 when not in a trial or when no source has a trial end
    """
    tier = tier or account.local_status
    if tier != Tier.TRIAL:
        return 0
    resolution = resolve_trial_end(account, snapshot)
    if resolution is None:
        return 0
    return days_until(resolution.trial_end, now or datetime.now(timezone.utc))
