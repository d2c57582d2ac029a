"""
Data models for storage layer.

Defines the account, billing and promo entities the entitlement engine
reads and writes.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from entitlement_guard.core.tiers import BillingStatus, Plan, Tier


class PromoTier(Enum):
    """Influencer tier attached to a promo code."""
    MICRO = "micro"
    MID = "mid"
    MAJOR = "major"


class ActivationStatus(Enum):
    """Lifecycle of a promo code applied to an account."""
    PENDING = "pending"  # Stored, trial not started yet
    ACTIVE = "active"    # A running trial is consuming the grant
    APPLIED = "applied"  # Billing confirmed the discount was honored


@dataclass(frozen=True)
class AccountRecord:
    """Locally stored subscription state for one user.

    ``version`` is the optimistic-concurrency token; every write bumps it.
    """
    user_id: str
    local_status: Tier
    plan: Plan
    created_at: datetime
    trial_ends_at: Optional[datetime] = None
    promo_code_used: Optional[str] = None
    promo_months_granted: Optional[int] = None
    billing_customer_ref: Optional[str] = None
    email: Optional[str] = None
    has_added_card: bool = False
    version: int = 0
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate the trial invariant and promo grant."""
        if (self.trial_ends_at is not None) != (self.local_status == Tier.TRIAL):
            raise ValueError("trial_ends_at must be set if and only if local_status is trial")
        if self.promo_months_granted is not None and self.promo_months_granted < 0:
            raise ValueError("promo_months_granted cannot be negative")


@dataclass(frozen=True)
class PaymentMethodSummary:
    """Card details safe to display."""
    brand: str
    last4: str


@dataclass(frozen=True)
class BillingSnapshot:
    """Cached, read-only view of the billing provider's subscription state."""
    customer_ref: str
    status: BillingStatus
    fetched_at: datetime
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    payment_method_summary: Optional[PaymentMethodSummary] = None


@dataclass(frozen=True)
class PromoCode:
    """Influencer promo code. Never deleted; owner is set exactly once."""
    code: str
    free_months: int
    tier: PromoTier
    active: bool = True
    owner_influencer_id: Optional[str] = None
    times_used: int = 0
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.free_months < 0:
            raise ValueError("free_months cannot be negative")


@dataclass(frozen=True)
class PromoActivation:
    """A promo code applied to a specific account."""
    user_id: str
    code: str
    status: ActivationStatus
    free_months: int
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DriftReport:
    """Disagreement between cached local status and billing status.

    Consumed by the reconciliation job; never blocks a request.
    """
    user_id: str
    local_status: Tier
    billing_status: BillingStatus
    detected_at: datetime
    target_tier: Tier
    trial_end: Optional[datetime] = None
    id: Optional[int] = None
    resolved_at: Optional[datetime] = None
