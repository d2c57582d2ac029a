"""
Unit tests for the trial clock.

Tests each trial-end rule on its own and the priority order between them.
"""

from datetime import datetime, timedelta, timezone

from entitlement_guard.core.tiers import BillingStatus, Plan, Tier
from entitlement_guard.core.trial_clock import (
    TRIAL_END_RULES,
    billing_trial_end,
    billing_trialing_period_end,
    days_left,
    days_until,
    local_trial_end,
    promo_grant_end,
    resolve_trial_end,
)
from entitlement_guard.storage.models import AccountRecord, BillingSnapshot

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _trial_account(**overrides) -> AccountRecord:
    values = dict(
        user_id="user-1",
        local_status=Tier.TRIAL,
        plan=Plan.FREE,
        created_at=NOW - timedelta(days=2),
        trial_ends_at=NOW + timedelta(days=10),
    )
    values.update(overrides)
    return AccountRecord(**values)


def _snapshot(status=BillingStatus.TRIALING, **overrides) -> BillingSnapshot:
    values = dict(customer_ref="cus_1", status=status, fetched_at=NOW)
    values.update(overrides)
    return BillingSnapshot(**values)


class TestRules:
    """Test each rule independently."""

    def test_rule_order(self):
        assert [rule.name for rule in TRIAL_END_RULES] == [
            "billing_trial_end",
            "billing_period_end",
            "promo_grant",
            "local_trial_end",
        ]

    def test_billing_trial_end(self):
        end = NOW + timedelta(days=3)
        assert billing_trial_end(_trial_account(), _snapshot(trial_end=end)) == end
        assert billing_trial_end(_trial_account(), None) is None

    def test_period_end_only_while_trialing(self):
        end = NOW + timedelta(days=20)
        account = _trial_account()

        assert billing_trialing_period_end(account, _snapshot(current_period_end=end)) == end
        assert billing_trialing_period_end(
            account, _snapshot(BillingStatus.ACTIVE, current_period_end=end)
        ) is None

    def test_promo_grant_uses_calendar_months(self):
        """January 31st plus one month clamps to the end of February."""
        account = _trial_account(
            created_at=datetime(2026, 1, 31, tzinfo=timezone.utc),
            promo_months_granted=1,
        )
        assert promo_grant_end(account, None) == datetime(2026, 2, 28, tzinfo=timezone.utc)

    def test_promo_grant_absent(self):
        assert promo_grant_end(_trial_account(), None) is None
        assert promo_grant_end(_trial_account(promo_months_granted=0), None) is None

    def test_local_trial_end(self):
        account = _trial_account()
        assert local_trial_end(account, None) == account.trial_ends_at


class TestDaysLeft:
    """Test day counting and source priority."""

    def test_fresh_free_account_has_no_days(self):
        account = AccountRecord(
            user_id="user-1",
            local_status=Tier.FREE,
            plan=Plan.FREE,
            created_at=NOW,
        )
        assert days_left(account, None, NOW) == 0

    def test_billing_trial_end_wins_over_local(self):
        """Billing says 5 days, local says 10: billing wins."""
        snapshot = _snapshot(trial_end=NOW + timedelta(days=5))

        assert days_left(_trial_account(), snapshot, NOW) == 5
        assert resolve_trial_end(_trial_account(), snapshot).rule == "billing_trial_end"

    def test_promo_grant_wins_over_local(self):
        account = _trial_account(
            created_at=NOW - timedelta(days=10),
            promo_months_granted=1,
            trial_ends_at=NOW + timedelta(days=40),
        )
        resolution = resolve_trial_end(account, None)

        assert resolution.rule == "promo_grant"
        assert days_left(account, None, NOW) == 18

    def test_falls_back_to_local(self):
        assert days_left(_trial_account(), None, NOW) == 10

    def test_partial_day_rounds_up(self):
        assert days_until(NOW + timedelta(days=2, hours=1), NOW) == 3

    def test_expired_trial_floors_at_zero(self):
        assert days_until(NOW - timedelta(days=3), NOW) == 0

    def test_non_trial_tier_is_zero(self):
        snapshot = _snapshot(trial_end=NOW + timedelta(days=5))
        assert days_left(_trial_account(), snapshot, NOW, tier=Tier.ACTIVE) == 0

    def test_tier_override_counts_billing_trial(self):
        """A billing trial counts even while the local record still says free."""
        account = AccountRecord(
            user_id="user-1",
            local_status=Tier.FREE,
            plan=Plan.FREE,
            created_at=NOW,
        )
        snapshot = _snapshot(trial_end=NOW + timedelta(days=7))

        assert days_left(account, snapshot, NOW) == 0
        assert days_left(account, snapshot, NOW, tier=Tier.TRIAL) == 7
