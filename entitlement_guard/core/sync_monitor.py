"""
Drift monitoring between local and billing truth.

Reports are advisory: the tier decision for the current request is
already correct, and reconciliation only keeps the cached local status
from drifting further.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from entitlement_guard.storage.models import AccountRecord, BillingSnapshot, DriftReport
from entitlement_guard.storage.repository import AccountStore, DriftReportStore
from .tiers import LOCAL_ONLY_TIERS, Plan, Tier, local_status_for
from .tier_resolver import TierDecision

logger = logging.getLogger(__name__)


def reconcile(
    account: AccountRecord,
    snapshot: Optional[BillingSnapshot],
    decision: TierDecision,
    now: Optional[datetime] = None
) -> Optional[DriftReport]:
    """Build a drift report when the decision flagged drift.

    Returns:
        DriftReport for the reconciliation job, or None if the account is
        in sync or no billing snapshot backs the decision
    """
    if not decision.drift_detected or snapshot is None:
        return None

    report = DriftReport(
        user_id=account.user_id,
        local_status=account.local_status,
        billing_status=snapshot.status,
        target_tier=local_status_for(snapshot.status),
        trial_end=snapshot.trial_end or snapshot.current_period_end,
        detected_at=now or datetime.now(timezone.utc),
    )
    logger.info(
        "Drift detected for %s: local=%s billing=%s",
        account.user_id, account.local_status.value, snapshot.status.value
    )
    return report


@dataclass
class CorrectionResult:
    """Outcome of one reconciliation run."""
    examined: int = 0
    corrected: int = 0
    already_in_sync: int = 0
    skipped: int = 0


def correct_drift(
    account_store: AccountStore,
    report_store: DriftReportStore,
    now: Optional[datetime] = None,
    limit: int = 500
) -> CorrectionResult:
    """Rewrite local status to match billing for pending drift reports.

    Each write is guarded by the account version read just before it, so
    a concurrent upgrade or billing event is never clobbered; such reports
    stay pending for the next run. Local-only statuses are never touched.

    Args:
        account_store: Account persistence
        report_store: Drift report outbox
        now: Reference time (defaults to current UTC time)
        limit: Maximum number of reports to process

    Returns:
        CorrectionResult with per-outcome counts
    """
    now = now or datetime.now(timezone.utc)
    result = CorrectionResult()

    for report in report_store.pending(limit=limit):
        result.examined += 1
        account = account_store.get(report.user_id)
        target = local_status_for(report.billing_status)

        if account is None or account.local_status in LOCAL_ONLY_TIERS:
            report_store.mark_resolved(report.id, now)
            result.skipped += 1
            continue

        if account.local_status == target:
            report_store.mark_resolved(report.id, now)
            result.already_in_sync += 1
            continue

        if account.local_status != report.local_status:
            # Status moved since the report was filed; a fresher report will follow
            report_store.mark_resolved(report.id, now)
            result.skipped += 1
            continue

        patch: Dict[str, Any] = {"local_status": target, "trial_ends_at": None}
        if target == Tier.TRIAL:
            if report.trial_end is None:
                logger.warning("Dropping drift report for %s: no trial end to move to", report.user_id)
                report_store.mark_resolved(report.id, now)
                result.skipped += 1
                continue
            patch["trial_ends_at"] = report.trial_end
        if target == Tier.FREE:
            patch["plan"] = Plan.FREE

        written = account_store.update(
            account.user_id,
            patch,
            expected_version=account.version,
        )
        if written:
            report_store.mark_resolved(report.id, now)
            result.corrected += 1
            logger.info(
                "Corrected %s from %s to %s",
                account.user_id, report.local_status.value, target.value
            )
        else:
            result.skipped += 1
            logger.info("Account %s changed during correction, leaving report pending", account.user_id)

    return result
