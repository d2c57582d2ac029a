"""
Tier and billing status vocabulary.

Closed enumerations shared by every entitlement component, plus the fixed
table that maps billing provider statuses onto tiers.
"""

from enum import Enum
from typing import Dict


class Tier(Enum):
    """Resolved subscription level governing feature access."""
    FREE = "free"
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    LIFETIME_ADMIN = "lifetime_admin"
    INFLUENCER_PREMIUM = "influencer_premium"


class Plan(Enum):
    """Billing plan attached to an account."""
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"


class BillingStatus(Enum):
    """Subscription status as reported by the billing provider."""
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"


class DecisionSource(Enum):
    """Which input produced a tier decision."""
    BILLING = "billing"
    LOCAL = "local"
    PROMO = "promo"
    OVERRIDE = "override"


# past_due keeps paid access while the provider retries the charge
BILLING_STATUS_TO_TIER: Dict[BillingStatus, Tier] = {
    BillingStatus.TRIALING: Tier.TRIAL,
    BillingStatus.ACTIVE: Tier.ACTIVE,
    BillingStatus.CANCELED: Tier.FREE,
    BillingStatus.INCOMPLETE: Tier.FREE,
    BillingStatus.INCOMPLETE_EXPIRED: Tier.FREE,
    BillingStatus.PAST_DUE: Tier.ACTIVE,
    BillingStatus.UNPAID: Tier.FREE,
}

_unmapped = set(BillingStatus) - set(BILLING_STATUS_TO_TIER)
if _unmapped:
    raise RuntimeError(
        f"Billing statuses without a tier mapping: {sorted(s.value for s in _unmapped)}"
    )

# Statuses the billing provider never produces; they are owned locally.
LOCAL_ONLY_TIERS = frozenset({Tier.LIFETIME_ADMIN, Tier.INFLUENCER_PREMIUM})

PREMIUM_TIERS = frozenset({
    Tier.TRIAL,
    Tier.ACTIVE,
    Tier.PAST_DUE,
    Tier.LIFETIME_ADMIN,
    Tier.INFLUENCER_PREMIUM,
})


def map_billing_status(status: BillingStatus) -> Tier:
    """Map a billing provider status to the tier it grants."""
    return BILLING_STATUS_TO_TIER[status]


def parse_billing_status(raw: str) -> BillingStatus:
    """Parse a raw provider status string.

    Raises:
        ValueError: If the provider reports a status this engine does not know
    """
    try:
        return BillingStatus(raw)
    except ValueError:
        raise ValueError(f"Unrecognized billing status: {raw!r}")


def local_status_for(status: BillingStatus) -> Tier:
    """Local status recorded for a billing status.

    Unlike tier resolution, which grants past_due accounts active access,
    the stored record keeps past_due so the grace period stays visible.
    """
    if status == BillingStatus.PAST_DUE:
        return Tier.PAST_DUE
    return map_billing_status(status)
