"""
Tests for the CLI interface.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from typer.testing import CliRunner

from entitlement_guard.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from entitlement_guard.core.sync_monitor import CorrectionResult
from entitlement_guard.core.tiers import BillingStatus, Plan, Tier
from entitlement_guard.storage.models import AccountRecord, DriftReport
from entitlement_guard.storage.repository import (
    AccountStore,
    DriftReportStore,
    initialize_schema,
)

runner = CliRunner()

NOW = datetime.now(timezone.utc)


class TestCLI:
    """Test CLI commands against a temporary database."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _init(self):
        initialize_schema(self.db_path)
        return AccountStore(self.db_path)

    def test_no_command_prints_help_hint(self):
        result = runner.invoke(app, [])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init(self):
        result = runner.invoke(app, ["init", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(self.db_path)

    def test_sweep_demotes_expired_trial(self):
        accounts = self._init()
        accounts.create(AccountRecord(
            user_id="expired",
            local_status=Tier.TRIAL,
            plan=Plan.FREE,
            created_at=NOW - timedelta(days=20),
            trial_ends_at=NOW - timedelta(days=1),
        ))

        result = runner.invoke(app, ["sweep", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Demoted to free: 1" in result.output
        assert "expired" in result.output
        assert accounts.get("expired").local_status == Tier.FREE

    def test_sweep_without_schema_fails(self):
        result = runner.invoke(app, ["sweep", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error running sweep" in result.output

    def test_sweep_with_bad_config_fails(self):
        self._init()
        result = runner.invoke(app, [
            "sweep", "--db", self.db_path, "--config", os.path.join(self.temp_dir, "nope.yaml")
        ])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_reconcile(self):
        accounts = self._init()
        accounts.create(AccountRecord(
            user_id="user-1",
            local_status=Tier.ACTIVE,
            plan=Plan.MONTHLY,
            created_at=NOW,
            billing_customer_ref="cus_1",
        ))
        DriftReportStore(self.db_path).add(DriftReport(
            user_id="user-1",
            local_status=Tier.ACTIVE,
            billing_status=BillingStatus.CANCELED,
            target_tier=Tier.FREE,
            detected_at=NOW,
        ))

        result = runner.invoke(app, ["reconcile", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Corrected" in result.output
        assert accounts.get("user-1").local_status == Tier.FREE

    def test_reconcile_passes_limit(self):
        with patch("entitlement_guard.cli.main.correct_drift",
                   return_value=CorrectionResult()) as mock_correct:
            result = runner.invoke(app, ["reconcile", "--db", self.db_path, "--limit", "5"])

        assert result.exit_code == EXIT_CODE_PASS
        assert mock_correct.call_args.kwargs["limit"] == 5

    def test_info(self):
        accounts = self._init()
        accounts.create(AccountRecord(
            user_id="user-1",
            local_status=Tier.TRIAL,
            plan=Plan.FREE,
            created_at=NOW,
            trial_ends_at=NOW + timedelta(days=5, hours=1),
        ))

        result = runner.invoke(app, ["info", "user-1", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Trial (6 days left)" in result.output
        assert "local" in result.output

    def test_info_unknown_account(self):
        self._init()

        result = runner.invoke(app, ["info", "ghost", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Please sign up or log in first." in result.output
