"""
Entitlement service.

The single entry point the rest of the application calls for tier
decisions, feature access and promo codes. Stores, billing provider and
configuration are injected; no ambient state is read.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlencode

from entitlement_guard.config.loader import EntitlementConfig, default_config
from entitlement_guard.storage.db import DEFAULT_DB_PATH
from entitlement_guard.storage.models import AccountRecord, BillingSnapshot, DriftReport, PromoCode
from entitlement_guard.storage.promo_repository import PromoActivationStore, PromoStore
from entitlement_guard.storage.repository import (
    AccountStore,
    BillingSnapshotStore,
    DriftReportStore,
    FeatureUsageStore,
)
from .errors import BillingUnavailableError, ConflictError, NotFoundError, ValidationError
from .feature_gate import AccessDecision, check_access
from .promo_ledger import PromoLedger, normalize_code, promo_tier_for_followers
from .subscription_info import SubscriptionInfo, describe_subscription, promo_message
from .sync_monitor import reconcile
from .tier_resolver import TierDecision, is_fresh, resolve_tier
from .tiers import Plan, Tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromoApplyResult:
    """Outcome of applying a promo code for a user."""
    success: bool
    total_free_days: int
    free_months: int
    code: str


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of an influencer claiming a code."""
    success: bool
    code: str


class EntitlementService:
    """Entitlement decisions over injected stores and billing provider.

    The billing provider is any object with
    ``fetch_subscription_status(customer_ref)`` and
    ``create_checkout_session(plan, promo_code=None, customer_ref=None, user_id=None)``,
    raising BillingUnavailableError on failure. Without a provider every
    decision uses cached snapshots and local state.
    """

    def __init__(
        self,
        account_store: AccountStore,
        promo_store: PromoStore,
        activation_store: PromoActivationStore,
        usage_store: FeatureUsageStore,
        snapshot_store: Optional[BillingSnapshotStore] = None,
        drift_store: Optional[DriftReportStore] = None,
        billing_provider=None,
        config: Optional[EntitlementConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.account_store = account_store
        self.usage_store = usage_store
        self.snapshot_store = snapshot_store
        self.drift_store = drift_store
        self.billing_provider = billing_provider
        self.config = config or default_config()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.ledger = PromoLedger(
            promo_store,
            activation_store,
            account_store,
            base_days=self.config.trial.base_days,
            days_per_month=self.config.trial.days_per_month,
        )

    @classmethod
    def from_db_path(
        cls,
        db_path: str = DEFAULT_DB_PATH,
        billing_provider=None,
        config: Optional[EntitlementConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ) -> "EntitlementService":
        """Build a service over SQLite stores sharing one database file."""
        return cls(
            account_store=AccountStore(db_path),
            promo_store=PromoStore(db_path),
            activation_store=PromoActivationStore(db_path),
            usage_store=FeatureUsageStore(db_path),
            snapshot_store=BillingSnapshotStore(db_path),
            drift_store=DriftReportStore(db_path),
            billing_provider=billing_provider,
            config=config,
            clock=clock,
        )

    def _account(self, user_id: str) -> AccountRecord:
        account = self.account_store.get(user_id)
        if account is None:
            raise NotFoundError(f"Account {user_id} does not exist", "Please sign up or log in first.")
        return account

    def _billing_snapshot(self, account: AccountRecord, now: datetime) -> Optional[BillingSnapshot]:
        """Fresh cached snapshot, else a live fetch; None when billing is unavailable."""
        ref = account.billing_customer_ref
        if not ref:
            return None

        window = self.config.billing.staleness_window
        if self.snapshot_store is not None:
            cached = self.snapshot_store.get(ref)
            if is_fresh(cached, now, window):
                return cached

        if self.billing_provider is None:
            return None
        try:
            snapshot = self.billing_provider.fetch_subscription_status(ref)
        except BillingUnavailableError as e:
            logger.warning("Billing unavailable for %s, using local status: %s", account.user_id, e)
            return None

        if snapshot is not None and self.snapshot_store is not None:
            try:
                self.snapshot_store.save(snapshot)
            except sqlite3.Error as e:
                logger.warning("Could not cache billing snapshot for %s: %s", ref, e)
        return snapshot

    def _observe(
        self,
        account: AccountRecord,
        snapshot: Optional[BillingSnapshot],
        decision: TierDecision,
        now: datetime
    ) -> Optional[DriftReport]:
        report = reconcile(account, snapshot, decision, now)
        if report is None or self.drift_store is None:
            return report
        try:
            return self.drift_store.add(report)
        except sqlite3.Error as e:
            logger.warning("Could not queue drift report for %s: %s", account.user_id, e)
            return report

    def _resolve(self, account: AccountRecord) -> Tuple[Optional[BillingSnapshot], TierDecision]:
        now = self.clock()
        snapshot = self._billing_snapshot(account, now)
        decision = resolve_tier(account, snapshot, now, self.config.billing.staleness_window)
        self._observe(account, snapshot, decision, now)
        return snapshot, decision

    def get_tier_decision(self, user_id: str) -> TierDecision:
        """Resolve the account's tier. Always answers, even with billing down.

        Raises:
            NotFoundError: If the account does not exist
        """
        _, decision = self._resolve(self._account(user_id))
        return decision

    def get_subscription_info(self, user_id: str) -> SubscriptionInfo:
        """Resolved tier plus display status, badge and details.

        Raises:
            NotFoundError: If the account does not exist
        """
        account = self._account(user_id)
        snapshot, decision = self._resolve(account)
        return describe_subscription(
            account, decision, snapshot, base_trial_days=self.config.trial.base_days
        )

    def check_feature_access(
        self,
        user_id: str,
        feature: str,
        current_count: Optional[int] = None
    ) -> AccessDecision:
        """Authorize adding one more item to ``feature``.

        Args:
            user_id: Account making the request
            feature: Feature name
            current_count: Existing item count; read from the usage store
                when omitted

        Raises:
            NotFoundError: If the account does not exist
        """
        decision = self.get_tier_decision(user_id)
        if current_count is None:
            current_count = self.usage_store.count(user_id, feature)
        return check_access(
            decision.effective_tier, feature, current_count, self.config.feature_limits
        )

    def apply_promo_code(self, user_id: str, code: str) -> PromoApplyResult:
        """Apply a promo code to the user's account. Safe to repeat.

        Raises:
            ValidationError: If the code is malformed or inactive
            NotFoundError: If the code or account does not exist
        """
        application = self.ledger.apply_code(user_id, code)
        return PromoApplyResult(
            success=True,
            total_free_days=application.total_free_days,
            free_months=application.free_months,
            code=application.activation.code,
        )

    def claim_influencer_code(self, code: str, claimant_id: str) -> ClaimResult:
        """Claim an unclaimed code during influencer onboarding.

        Raises:
            ValidationError: If the code is malformed or inactive
            NotFoundError: If the code does not exist
            ConflictError: If the code is already claimed
        """
        promo = self.ledger.claim_code(code, claimant_id)
        return ClaimResult(success=True, code=promo.code)

    def register_influencer_code(
        self,
        code: str,
        follower_count: int,
        free_months: int = 1
    ) -> PromoCode:
        """Create a new unclaimed code from the influencer signup form.

        Raises:
            ValidationError: If the code format is invalid
            ConflictError: If the code is already taken
        """
        if follower_count < 0:
            raise ValidationError("follower_count cannot be negative")
        return self.ledger.register_code(
            code,
            free_months=free_months,
            tier=promo_tier_for_followers(follower_count),
        )

    def influencer_codes(self, influencer_id: str) -> List[PromoCode]:
        return self.ledger.codes_for_owner(influencer_id)

    def can_start_trial(self, user_id: str) -> bool:
        account = self._account(user_id)
        return account.local_status == Tier.FREE and not account.has_added_card

    def start_trial(self, user_id: str) -> TierDecision:
        """Move a free account into its trial, consuming its best pending promo.

        Trial length is the base trial plus any promo months.

        Raises:
            NotFoundError: If the account does not exist
            ValidationError: If the account cannot start a trial
            ConflictError: If the account changed while starting the trial
        """
        account = self._account(user_id)
        if account.local_status != Tier.FREE or account.has_added_card:
            raise ValidationError(
                f"Account {user_id} is not eligible for a trial",
                "Your account is not eligible for a free trial.",
            )

        status = self.ledger.promo_status(user_id)
        trial_days = status.total_free_days if status.has_promo else self.config.trial.base_days
        now = self.clock()
        written = self.account_store.update(
            user_id,
            {"local_status": Tier.TRIAL, "trial_ends_at": now + timedelta(days=trial_days)},
            expected_version=account.version,
            expected_status=Tier.FREE,
        )
        if not written:
            raise ConflictError(f"Account {user_id} changed while starting trial")

        self.ledger.activate_pending(user_id)
        logger.info("Started %d-day trial for %s", trial_days, user_id)
        return self.get_tier_decision(user_id)

    def get_promo_message(self, user_id: str) -> Optional[str]:
        return promo_message(self.ledger.promo_status(user_id))

    def create_checkout_session(
        self,
        user_id: str,
        plan: Plan,
        promo_code: Optional[str] = None
    ) -> str:
        """Start a hosted checkout and return the redirect URL.

        Raises:
            ValidationError: If the plan or promo code is invalid
            BillingUnavailableError: If no provider is configured or it fails
        """
        if plan == Plan.FREE:
            raise ValidationError("Cannot check out the free plan")
        account = self._account(user_id)
        code = normalize_code(promo_code) if promo_code else None
        if self.billing_provider is None:
            raise BillingUnavailableError("No billing provider configured")
        return self.billing_provider.create_checkout_session(
            plan,
            promo_code=code,
            customer_ref=account.billing_customer_ref,
            user_id=user_id,
        )

    def get_upgrade_url(
        self,
        user_id: str,
        plan: Plan = Plan.MONTHLY,
        promo_code: Optional[str] = None
    ) -> str:
        """Hosted payment link for ``plan`` with promo code and email prefilled.

        Raises:
            ValidationError: If no payment link is configured for the plan
        """
        link = self.config.checkout.payment_links.get(plan)
        if not link:
            raise ValidationError(
                f"No payment link configured for plan {plan.value}",
                "This plan is not available right now.",
            )
        account = self._account(user_id)
        params = {}
        if promo_code:
            params["prefilled_promo_code"] = normalize_code(promo_code)
        if account.email:
            params["prefilled_email"] = account.email
        if not params:
            return link
        separator = "&" if "?" in link else "?"
        return f"{link}{separator}{urlencode(params)}"
