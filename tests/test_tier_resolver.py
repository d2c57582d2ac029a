"""
Unit tests for tier resolution.

Tests override, billing, local and promo sources, staleness and drift.
"""

from datetime import datetime, timedelta, timezone

import pytest

from entitlement_guard.core.tier_resolver import (
    DEFAULT_STALENESS_WINDOW,
    TierDecision,
    billing_drift,
    is_fresh,
    resolve_tier,
)
from entitlement_guard.core.tiers import BillingStatus, DecisionSource, Plan, Tier
from entitlement_guard.storage.models import AccountRecord, BillingSnapshot

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _account(status=Tier.ACTIVE, **overrides) -> AccountRecord:
    values = dict(
        user_id="user-1",
        local_status=status,
        plan=Plan.MONTHLY if status == Tier.ACTIVE else Plan.FREE,
        created_at=NOW - timedelta(days=30),
        billing_customer_ref="cus_1",
    )
    if status == Tier.TRIAL:
        values["trial_ends_at"] = NOW + timedelta(days=10)
    values.update(overrides)
    return AccountRecord(**values)


def _snapshot(status, age=timedelta(minutes=1), **overrides) -> BillingSnapshot:
    values = dict(customer_ref="cus_1", status=status, fetched_at=NOW - age)
    values.update(overrides)
    return BillingSnapshot(**values)


class TestOverride:
    """Test lifetime admin override."""

    def test_lifetime_admin_ignores_billing(self):
        account = _account(Tier.LIFETIME_ADMIN)
        decision = resolve_tier(account, _snapshot(BillingStatus.CANCELED), NOW)

        assert decision.effective_tier == Tier.LIFETIME_ADMIN
        assert decision.source == DecisionSource.OVERRIDE
        assert decision.drift_detected is False
        assert decision.days_left_in_trial == 0


class TestBillingSource:
    """Test decisions backed by a fresh billing snapshot."""

    def test_canceled_billing_beats_active_local(self):
        """Local active, billing canceled: free, with drift flagged."""
        decision = resolve_tier(_account(Tier.ACTIVE), _snapshot(BillingStatus.CANCELED), NOW)

        assert decision.effective_tier == Tier.FREE
        assert decision.source == DecisionSource.BILLING
        assert decision.drift_detected is True
        assert decision.billing_status == BillingStatus.CANCELED

    def test_agreeing_billing_has_no_drift(self):
        decision = resolve_tier(_account(Tier.ACTIVE), _snapshot(BillingStatus.ACTIVE), NOW)

        assert decision.effective_tier == Tier.ACTIVE
        assert decision.drift_detected is False

    def test_past_due_keeps_active_access(self):
        decision = resolve_tier(_account(Tier.ACTIVE), _snapshot(BillingStatus.PAST_DUE), NOW)

        assert decision.effective_tier == Tier.ACTIVE
        assert decision.drift_detected is False

    def test_billing_trial_reports_days(self):
        snapshot = _snapshot(BillingStatus.TRIALING, trial_end=NOW + timedelta(days=5))
        decision = resolve_tier(_account(Tier.TRIAL), snapshot, NOW)

        assert decision.effective_tier == Tier.TRIAL
        assert decision.days_left_in_trial == 5
        assert decision.source == DecisionSource.BILLING

    def test_influencer_premium_is_local_only(self):
        account = _account(Tier.INFLUENCER_PREMIUM)
        decision = resolve_tier(account, _snapshot(BillingStatus.CANCELED), NOW)

        assert decision.effective_tier == Tier.INFLUENCER_PREMIUM
        assert decision.source == DecisionSource.LOCAL
        assert decision.drift_detected is False


class TestLocalFallback:
    """Test decisions without a usable snapshot."""

    def test_no_snapshot_uses_local(self):
        decision = resolve_tier(_account(Tier.ACTIVE), None, NOW)

        assert decision.effective_tier == Tier.ACTIVE
        assert decision.source == DecisionSource.LOCAL
        assert decision.drift_detected is False

    def test_stale_snapshot_is_ignored(self):
        stale = _snapshot(BillingStatus.CANCELED, age=DEFAULT_STALENESS_WINDOW + timedelta(seconds=1))
        decision = resolve_tier(_account(Tier.ACTIVE), stale, NOW)

        assert decision.effective_tier == Tier.ACTIVE
        assert decision.source == DecisionSource.LOCAL
        assert decision.drift_detected is False
        assert decision.billing_status is None

    def test_custom_staleness_window(self):
        snapshot = _snapshot(BillingStatus.CANCELED, age=timedelta(minutes=20))
        decision = resolve_tier(_account(Tier.ACTIVE), snapshot, NOW, timedelta(hours=1))

        assert decision.source == DecisionSource.BILLING

    def test_promo_trial_reports_promo_source(self):
        account = _account(
            Tier.TRIAL,
            billing_customer_ref=None,
            promo_code_used="SARAH1",
            promo_months_granted=1,
            created_at=NOW - timedelta(days=10),
        )
        decision = resolve_tier(account, None, NOW)

        assert decision.effective_tier == Tier.TRIAL
        assert decision.source == DecisionSource.PROMO
        assert decision.days_left_in_trial == 18

    def test_local_trial_reports_local_source(self):
        decision = resolve_tier(_account(Tier.TRIAL, billing_customer_ref=None), None, NOW)

        assert decision.source == DecisionSource.LOCAL
        assert decision.days_left_in_trial == 10


class TestHelpers:
    """Test freshness and drift helpers."""

    def test_is_fresh_boundary(self):
        assert is_fresh(_snapshot(BillingStatus.ACTIVE, age=DEFAULT_STALENESS_WINDOW), NOW)
        assert not is_fresh(None, NOW)

    def test_local_past_due_agrees_with_billing_past_due(self):
        assert billing_drift(_account(Tier.PAST_DUE), BillingStatus.PAST_DUE) is False
        assert billing_drift(_account(Tier.PAST_DUE), BillingStatus.ACTIVE) is True

    def test_negative_days_rejected(self):
        with pytest.raises(ValueError):
            TierDecision(
                user_id="user-1",
                effective_tier=Tier.TRIAL,
                days_left_in_trial=-1,
                source=DecisionSource.LOCAL,
            )
