"""
Unit tests for the trial-expiry sweep.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from entitlement_guard.core.expiry_sweep import run_trial_expiry_sweep
from entitlement_guard.core.tiers import BillingStatus, Plan, Tier
from entitlement_guard.storage.models import AccountRecord, BillingSnapshot
from entitlement_guard.storage.repository import (
    AccountStore,
    BillingSnapshotStore,
    initialize_schema,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestTrialExpirySweep:
    """Test demotion of expired trials."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.accounts = AccountStore(self.db_path)
        self.snapshots = BillingSnapshotStore(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _create_trial(self, user_id, trial_ends_at, **overrides):
        values = dict(
            user_id=user_id,
            local_status=Tier.TRIAL,
            plan=Plan.FREE,
            created_at=NOW - timedelta(days=20),
            trial_ends_at=trial_ends_at,
        )
        values.update(overrides)
        return self.accounts.create(AccountRecord(**values))

    def test_demotes_expired_trials_only(self):
        self._create_trial("expired", NOW - timedelta(hours=1))
        self._create_trial("running", NOW + timedelta(days=2))

        result = run_trial_expiry_sweep(self.accounts, self.snapshots, NOW)

        assert result.examined == 2
        assert result.demoted == ["expired"]
        demoted = self.accounts.get("expired")
        assert demoted.local_status == Tier.FREE
        assert demoted.plan == Plan.FREE
        assert demoted.trial_ends_at is None
        assert self.accounts.get("running").local_status == Tier.TRIAL

    def test_fresh_billing_trial_extends_local_end(self):
        """A cached billing trial end beats an expired local end."""
        self._create_trial("user-1", NOW - timedelta(days=1), billing_customer_ref="cus_1")
        self.snapshots.save(BillingSnapshot(
            customer_ref="cus_1",
            status=BillingStatus.TRIALING,
            fetched_at=NOW - timedelta(minutes=1),
            trial_end=NOW + timedelta(days=3),
        ))

        result = run_trial_expiry_sweep(self.accounts, self.snapshots, NOW)

        assert result.demoted == []
        assert self.accounts.get("user-1").local_status == Tier.TRIAL

    def test_stale_snapshot_ignored(self):
        self._create_trial("user-1", NOW - timedelta(days=1), billing_customer_ref="cus_1")
        self.snapshots.save(BillingSnapshot(
            customer_ref="cus_1",
            status=BillingStatus.TRIALING,
            fetched_at=NOW - timedelta(hours=2),
            trial_end=NOW + timedelta(days=3),
        ))

        result = run_trial_expiry_sweep(self.accounts, self.snapshots, NOW)

        assert result.demoted == ["user-1"]

    def test_concurrent_upgrade_wins(self):
        """An upgrade landing mid-sweep is not clobbered by the demotion."""
        self._create_trial("user-1", NOW - timedelta(hours=1))
        real_update = self.accounts.update

        def upgrade_first(user_id, patch, expected_version=None, expected_status=None):
            real_update(user_id, {"local_status": Tier.ACTIVE, "plan": Plan.MONTHLY,
                                  "trial_ends_at": None})
            return real_update(user_id, patch, expected_version, expected_status)

        with patch.object(self.accounts, "update", side_effect=upgrade_first):
            result = run_trial_expiry_sweep(self.accounts, self.snapshots, NOW)

        assert result.demoted == []
        assert result.skipped_conflicts == ["user-1"]
        account = self.accounts.get("user-1")
        assert account.local_status == Tier.ACTIVE
        assert account.plan == Plan.MONTHLY

    def test_second_sweep_is_noop(self):
        self._create_trial("expired", NOW - timedelta(hours=1))

        run_trial_expiry_sweep(self.accounts, self.snapshots, NOW)
        result = run_trial_expiry_sweep(self.accounts, self.snapshots, NOW)

        assert result.examined == 0
        assert result.demoted == []

    def test_paid_in_billing_not_demoted(self):
        """An upgrade whose webhook has not landed keeps its paid status."""
        self._create_trial("user-1", NOW - timedelta(hours=1), billing_customer_ref="cus_1")
        self.snapshots.save(BillingSnapshot(
            customer_ref="cus_1",
            status=BillingStatus.ACTIVE,
            fetched_at=NOW - timedelta(minutes=1),
            current_period_end=NOW + timedelta(days=29),
        ))

        result = run_trial_expiry_sweep(self.accounts, self.snapshots, NOW)

        assert result.demoted == []
        account = self.accounts.get("user-1")
        assert account.local_status == Tier.TRIAL
        assert account.plan == Plan.FREE

    def test_canceled_in_billing_still_demoted(self):
        self._create_trial("user-1", NOW - timedelta(hours=1), billing_customer_ref="cus_1")
        self.snapshots.save(BillingSnapshot(
            customer_ref="cus_1",
            status=BillingStatus.CANCELED,
            fetched_at=NOW - timedelta(minutes=1),
        ))

        result = run_trial_expiry_sweep(self.accounts, self.snapshots, NOW)

        assert result.demoted == ["user-1"]
