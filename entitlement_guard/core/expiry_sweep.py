"""
Periodic trial-expiry sweep.

Demotes trial accounts whose remaining days reached zero. Safe to run
concurrently from several processes: every demotion is conditional on the
account version and status read at the start of the sweep.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from entitlement_guard.storage.repository import AccountStore, BillingSnapshotStore
from .tiers import Plan, Tier, map_billing_status
from .tier_resolver import DEFAULT_STALENESS_WINDOW, is_fresh
from .trial_clock import days_left

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweep run."""
    examined: int = 0
    demoted: List[str] = field(default_factory=list)
    skipped_conflicts: List[str] = field(default_factory=list)


def run_trial_expiry_sweep(
    account_store: AccountStore,
    snapshot_store: Optional[BillingSnapshotStore] = None,
    now: Optional[datetime] = None,
    staleness_window: timedelta = DEFAULT_STALENESS_WINDOW
) -> SweepResult:
    """Demote every trial account with no days left to free.

    Only cached billing snapshots are consulted; the sweep never calls the
    billing provider. A demotion that loses to a concurrent writer (a
    user-initiated upgrade, billing ingestion or another sweep) is counted
    as a conflict and left alone.

    Args:
        account_store: Account persistence
        snapshot_store: Cached billing snapshots, optional
        now: Reference time (defaults to current UTC time)
        staleness_window: Maximum cached snapshot age to trust

    Returns:
        SweepResult listing demoted and conflicting user ids
    """
    now = now or datetime.now(timezone.utc)
    result = SweepResult()

    for account in account_store.list_by_status(Tier.TRIAL):
        result.examined += 1
        snapshot = None
        if snapshot_store is not None and account.billing_customer_ref:
            cached = snapshot_store.get(account.billing_customer_ref)
            if is_fresh(cached, now, staleness_window):
                snapshot = cached

        if days_left(account, snapshot, now) > 0:
            continue
        if snapshot is not None and map_billing_status(snapshot.status) not in (Tier.FREE, Tier.TRIAL):
            # Paid in billing; ingestion or drift correction moves the account
            logger.info("Left expired trial %s alone: billing reports %s",
                        account.user_id, snapshot.status.value)
            continue

        written = account_store.update(
            account.user_id,
            {"local_status": Tier.FREE, "plan": Plan.FREE, "trial_ends_at": None},
            expected_version=account.version,
            expected_status=Tier.TRIAL,
        )
        if written:
            result.demoted.append(account.user_id)
            logger.info("Trial expired for %s, demoted to free", account.user_id)
        else:
            result.skipped_conflicts.append(account.user_id)
            logger.info("Skipped demotion of %s: account changed concurrently", account.user_id)

    return result
