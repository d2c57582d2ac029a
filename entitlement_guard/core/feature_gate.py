"""
Feature access gating.

Decides whether a single feature-usage request is allowed for a tier.

Outcomes:
1. Unlimited (-1) - always allowed
2. Gated (0) - feature locked entirely, regardless of count
3. Count-limited (>0) - allowed below the limit; at or above it, new
   writes are blocked and the existing items are vaulted (kept readable,
   never deleted)
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .tiers import Tier

UNLIMITED = -1
GATED = 0

_FREE_LIMITS: Dict[str, int] = {
    "shopping_items": 10,
    "budget_categories": 3,
    "baby_names": 5,
    "hospital_bag": GATED,
    "family_sharing": GATED,
    "wishlist": GATED,
    "parenting_vows": GATED,
    "export_pdf": GATED,
}

_PREMIUM_LIMITS: Dict[str, int] = {feature: UNLIMITED for feature in _FREE_LIMITS}

DEFAULT_FEATURE_LIMITS: Dict[Tier, Dict[str, int]] = {
    Tier.FREE: _FREE_LIMITS,
    Tier.TRIAL: _PREMIUM_LIMITS,
    Tier.ACTIVE: _PREMIUM_LIMITS,
    Tier.PAST_DUE: _PREMIUM_LIMITS,
    Tier.LIFETIME_ADMIN: _PREMIUM_LIMITS,
    Tier.INFLUENCER_PREMIUM: _PREMIUM_LIMITS,
}


@dataclass(frozen=True)
class FeatureLimitsTable:
    """Static mapping of tier -> feature -> limit.

    ``-1`` means unlimited and ``0`` means fully gated. Features missing
    from a tier's table are gated.
    """
    limits: Mapping[Tier, Mapping[str, int]] = field(
        default_factory=lambda: DEFAULT_FEATURE_LIMITS
    )

    def __post_init__(self):
        """Validate every tier is present and every limit is >= -1."""
        missing = set(Tier) - set(self.limits)
        if missing:
            raise ValueError(f"Feature limits missing tiers: {sorted(t.value for t in missing)}")
        for tier, features in self.limits.items():
            for feature, limit in features.items():
                if not isinstance(limit, int) or isinstance(limit, bool) or limit < UNLIMITED:
                    raise ValueError(
                        f"Limit for {tier.value}.{feature} must be an integer >= -1"
                    )

    def limit_for(self, tier: Tier, feature: str) -> int:
        return self.limits[tier].get(feature, GATED)

    def limits_for(self, tier: Tier) -> Dict[str, int]:
        """Copy of all feature limits for a tier."""
        return dict(self.limits[tier])


@dataclass(frozen=True)
class AccessDecision:
    """Result of a feature access check."""
    allowed: bool
    limit: int
    vaulted: bool = False


def check_access(
    tier: Tier,
    feature: str,
    current_count: int,
    table: Optional[FeatureLimitsTable] = None
) -> AccessDecision:
    """Authorize one new write for ``feature`` at ``current_count`` existing items.

    Args:
        tier: Resolved tier of the account
        feature: Feature name, e.g. ``shopping_items``
        current_count: Number of items the account already has
        table: Limits table (defaults to the built-in limits)

    Returns:
        AccessDecision. ``vaulted`` is True only for count-limited
        features at or over their limit: existing items stay readable but
        no new items may be added.

    Raises:
        ValueError: If current_count is negative
    """
    if current_count < 0:
        raise ValueError("current_count cannot be negative")
    table = table or FeatureLimitsTable()
    limit = table.limit_for(tier, feature)

    if limit == UNLIMITED:
        return AccessDecision(allowed=True, limit=limit)
    if limit == GATED:
        return AccessDecision(allowed=False, limit=limit, vaulted=False)

    allowed = current_count < limit
    return AccessDecision(allowed=allowed, limit=limit, vaulted=not allowed)


def editable_count(limit: int, current_count: int) -> int:
    """Number of existing items that remain open to edit actions.

    Items beyond the limit stay visible read-only; nothing is deleted.
    """
    if limit == UNLIMITED:
        return current_count
    return min(current_count, max(limit, 0))


def has_feature(tier: Tier, feature: str, table: Optional[FeatureLimitsTable] = None) -> bool:
    """Whether the feature is available at all (not fully gated) for the tier."""
    table = table or FeatureLimitsTable()
    return table.limit_for(tier, feature) != GATED
