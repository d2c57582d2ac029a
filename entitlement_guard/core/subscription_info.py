"""
Subscription display derivation.

Turns a tier decision into the label, badge and details shown on account
screens.
"""

from dataclasses import dataclass
from typing import Optional

from entitlement_guard.storage.models import AccountRecord, BillingSnapshot
from .promo_ledger import BASE_TRIAL_DAYS, PromoStatus
from .tiers import Plan, Tier
from .tier_resolver import TierDecision

TRIAL_WARNING_DAYS = 3


@dataclass(frozen=True)
class SubscriptionInfo:
    """Tier decision plus human-readable status for display."""
    decision: TierDecision
    status: str
    badge: Optional[str]
    color: str
    details: str
    has_billing_data: bool
    synced: bool

    @property
    def effective_tier(self) -> Tier:
        return self.decision.effective_tier

    @property
    def is_premium(self) -> bool:
        return self.decision.effective_tier != Tier.FREE


def _format_date(value) -> str:
    return value.strftime("%d %b %Y")


def describe_subscription(
    account: AccountRecord,
    decision: TierDecision,
    snapshot: Optional[BillingSnapshot] = None,
    base_trial_days: int = BASE_TRIAL_DAYS
) -> SubscriptionInfo:
    """Build display info for an account's resolved tier.

    Args:
        account: Local account record
        decision: Resolved tier decision for the account
        snapshot: Billing snapshot used for the decision, if any
        base_trial_days: Length of a trial without promo months

    Returns:
        SubscriptionInfo with label, badge, colour and details
    """
    has_billing_data = account.billing_customer_ref is not None
    synced = not decision.drift_detected
    tier = decision.effective_tier

    def info(status: str, badge: Optional[str], color: str, details: str) -> SubscriptionInfo:
        return SubscriptionInfo(
            decision=decision,
            status=status,
            badge=badge,
            color=color,
            details=details,
            has_billing_data=has_billing_data,
            synced=synced,
        )

    if tier == Tier.LIFETIME_ADMIN:
        return info("Lifetime Premium", "👑", "gold", "Admin granted lifetime access")

    if tier == Tier.INFLUENCER_PREMIUM:
        return info("Influencer Premium", "✨", "purple", "Complimentary influencer access")

    if tier in (Tier.ACTIVE, Tier.PAST_DUE):
        plan_label = "Annual" if account.plan == Plan.ANNUAL else "Monthly"
        details = plan_label
        if snapshot is not None and snapshot.current_period_end is not None:
            details += f" • Next billing: {_format_date(snapshot.current_period_end)}"
        if snapshot is not None and snapshot.payment_method_summary is not None:
            card = snapshot.payment_method_summary
            details += f" • {card.brand.upper()} ****{card.last4}"
        if tier == Tier.PAST_DUE:
            return info(plan_label, "⚠️", "orange", details + " • Payment past due")
        return info(plan_label, "⭐", "green", details)

    if tier == Tier.TRIAL:
        days = decision.days_left_in_trial
        months = account.promo_months_granted
        if account.promo_code_used and months:
            details = f"{months} month{'s' if months > 1 else ''} free trial"
        else:
            details = f"{base_trial_days}-day free trial"
        if snapshot is not None and snapshot.trial_end is not None:
            details += f" • Expires: {_format_date(snapshot.trial_end)}"
        color = "orange" if days <= TRIAL_WARNING_DAYS else "blue"
        return info(f"Trial ({days} days left)", "🎁", color, details)

    details = "Subscription ended or canceled" if has_billing_data else "No active subscription"
    return info("Free", None, "gray", details)


def promo_message(status: PromoStatus) -> Optional[str]:
    """Banner text for an account holding an unconfirmed promo grant."""
    if not status.has_promo:
        return None
    return f"You have a special offer: {status.total_free_days} days free!"
