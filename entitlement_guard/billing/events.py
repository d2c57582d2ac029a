"""
Billing event ingestion.

The write interface through which billing provider events update the
billing-derived fields of account records and confirm promo activations.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

import stripe

from entitlement_guard.core.errors import (
    BillingUnavailableError,
    ConflictError,
    EntitlementError,
    NotFoundError,
)
from entitlement_guard.core.promo_ledger import PromoLedger
from entitlement_guard.core.tiers import (
    BillingStatus,
    LOCAL_ONLY_TIERS,
    Plan,
    Tier,
    local_status_for,
)
from entitlement_guard.storage.models import AccountRecord, BillingSnapshot
from entitlement_guard.storage.repository import AccountStore, BillingSnapshotStore
from .stripe_client import promotion_code_of, snapshot_from_subscription

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}


@dataclass(frozen=True)
class IngestResult:
    """What an ingested event changed."""
    event_type: str
    handled: bool
    user_id: Optional[str] = None
    local_status: Optional[Tier] = None


class BillingEventIngestor:
    """Applies billing provider events to local state.

    Owns the billing-derived account fields. Writes are guarded by the
    account version and retried on a lost race against another writer.
    """

    def __init__(
        self,
        account_store: AccountStore,
        snapshot_store: BillingSnapshotStore,
        ledger: PromoLedger,
        price_plans: Optional[Mapping[str, Plan]] = None,
        promotion_resolver: Optional[Callable[[str], Optional[str]]] = None
    ):
        """Initialize the ingestor.

        Args:
            account_store: Account persistence
            snapshot_store: Billing snapshot cache, refreshed on every event
            ledger: Promo ledger confirming activations
            price_plans: Billing price id to plan, used to record the plan
            promotion_resolver: Callable turning a promotion code id into
                its customer-facing code, e.g.
                ``StripeBillingProvider.resolve_promotion_code``
        """
        self.account_store = account_store
        self.snapshot_store = snapshot_store
        self.ledger = ledger
        self.price_plans = dict(price_plans or {})
        self.promotion_resolver = promotion_resolver

    def ingest(self, event: Mapping[str, Any], now: Optional[datetime] = None) -> IngestResult:
        """Apply one billing event.

        Args:
            event: Verified provider event (``type`` and ``data.object``)
            now: Reference time (defaults to current UTC time)

        Returns:
            IngestResult; unknown event types and unknown customers are
            reported as unhandled rather than raising
        """
        now = now or datetime.now(timezone.utc)
        if isinstance(event, stripe.StripeObject):
            event = event.to_dict()
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            return self._link_checkout(event_type, obj)
        if event_type in SUBSCRIPTION_EVENTS:
            return self._apply_subscription(event_type, obj, now)
        if event_type == "invoice.payment_failed":
            return self._apply_invoice(event_type, obj, Tier.PAST_DUE)
        if event_type == "invoice.payment_succeeded":
            return self._apply_invoice(event_type, obj, Tier.ACTIVE)

        logger.debug("Ignoring billing event %s", event_type)
        return IngestResult(event_type=event_type, handled=False)

    def _link_checkout(self, event_type: str, session: Mapping[str, Any]) -> IngestResult:
        user_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id")
        customer_ref = session.get("customer")
        if not user_id or not customer_ref:
            logger.warning("Checkout session %s missing user or customer", session.get("id"))
            return IngestResult(event_type=event_type, handled=False)

        account = self.account_store.get(user_id)
        if account is None:
            logger.warning("Checkout completed for unknown account %s", user_id)
            return IngestResult(event_type=event_type, handled=False)

        self._write(
            account,
            lambda current: {"billing_customer_ref": customer_ref, "has_added_card": True},
        )
        return IngestResult(event_type=event_type, handled=True, user_id=user_id)

    def _apply_subscription(
        self,
        event_type: str,
        subscription: Mapping[str, Any],
        now: datetime
    ) -> IngestResult:
        try:
            snapshot = snapshot_from_subscription(subscription, fetched_at=now)
        except BillingUnavailableError as e:
            logger.error("Unusable subscription in %s: %s", event_type, e)
            return IngestResult(event_type=event_type, handled=False)

        if event_type == "customer.subscription.deleted":
            snapshot = BillingSnapshot(
                customer_ref=snapshot.customer_ref,
                status=BillingStatus.CANCELED,
                fetched_at=now,
                current_period_end=snapshot.current_period_end,
                payment_method_summary=snapshot.payment_method_summary,
            )
        self.snapshot_store.save(snapshot)

        account = self.account_store.get_by_customer_ref(snapshot.customer_ref)
        if account is None:
            logger.warning("No account for billing customer %s", snapshot.customer_ref)
            return IngestResult(event_type=event_type, handled=False)

        status = self._apply_snapshot(account, snapshot, self._plan_of(subscription), now)
        self._confirm_promo(account.user_id, subscription, snapshot)
        return IngestResult(
            event_type=event_type,
            handled=True,
            user_id=account.user_id,
            local_status=status,
        )

    def _apply_invoice(self, event_type: str, invoice: Mapping[str, Any], status: Tier) -> IngestResult:
        account = self.account_store.get_by_customer_ref(invoice.get("customer") or "")
        if account is None:
            return IngestResult(event_type=event_type, handled=False)

        def build_patch(current: AccountRecord) -> Optional[Dict[str, Any]]:
            if current.local_status in LOCAL_ONLY_TIERS:
                return None
            # Zero-amount trial invoices do not end the trial
            if status == Tier.ACTIVE and current.local_status == Tier.TRIAL and not invoice.get("amount_paid"):
                return None
            return {"local_status": status, "trial_ends_at": None}

        written = self._write(account, build_patch)
        return IngestResult(event_type=event_type, handled=True, user_id=account.user_id,
                            local_status=written.local_status)

    def _plan_of(self, subscription: Mapping[str, Any]) -> Optional[Plan]:
        items = (subscription.get("items") or {}).get("data") or []
        for item in items:
            price = item.get("price") or {}
            price_id = price.get("id") if isinstance(price, Mapping) else price
            if price_id in self.price_plans:
                return self.price_plans[price_id]
        return None

    def _apply_snapshot(
        self,
        account: AccountRecord,
        snapshot: BillingSnapshot,
        plan: Optional[Plan],
        now: datetime
    ) -> Tier:
        status = local_status_for(snapshot.status)

        def build_patch(current: AccountRecord) -> Optional[Dict[str, Any]]:
            if current.local_status in LOCAL_ONLY_TIERS:
                logger.info("Billing event for %s left local-only status %s untouched",
                            current.user_id, current.local_status.value)
                return None
            patch: Dict[str, Any] = {"local_status": status, "trial_ends_at": None}
            if status == Tier.TRIAL:
                trial_end = snapshot.trial_end or snapshot.current_period_end or current.trial_ends_at
                if trial_end is None:
                    trial_end = now + timedelta(days=self.ledger.promo_status(current.user_id).total_free_days
                                                or self.ledger.base_days)
                patch["trial_ends_at"] = trial_end
            if status == Tier.FREE:
                patch["plan"] = Plan.FREE
            elif plan is not None:
                patch["plan"] = plan
            if snapshot.payment_method_summary is not None:
                patch["has_added_card"] = True
            return patch

        written = self._write(account, build_patch)
        if written.local_status == Tier.TRIAL and status == Tier.TRIAL:
            self.ledger.activate_pending(account.user_id)
        return written.local_status

    def _confirm_promo(
        self,
        user_id: str,
        subscription: Mapping[str, Any],
        snapshot: BillingSnapshot
    ) -> None:
        if snapshot.status not in (BillingStatus.TRIALING, BillingStatus.ACTIVE):
            return
        code = promotion_code_of(subscription)
        if not code:
            return
        discount = subscription.get("discount") or {}
        if not isinstance(discount.get("promotion_code"), Mapping) and self.promotion_resolver:
            try:
                code = self.promotion_resolver(code) or code
            except BillingUnavailableError as e:
                logger.warning("Could not resolve promotion code %s: %s", code, e)

        try:
            self.ledger.apply_code(user_id, code)
            self.ledger.mark_applied(user_id, code)
        except NotFoundError:
            logger.info("Billing discount %s for %s is not a tracked promo code", code, user_id)
        except EntitlementError as e:
            logger.warning("Could not confirm promo %s for %s: %s", code, user_id, e)

    def _write(
        self,
        account: AccountRecord,
        build_patch: Callable[[AccountRecord], Optional[Dict[str, Any]]]
    ) -> AccountRecord:
        """Write the patch built from the latest account under the version guard.

        The patch is rebuilt from a fresh read after every lost race, so a
        status granted concurrently is seen before it could be overwritten.
        ``build_patch`` returns None to leave the account alone.

        Returns:
            The account as written, or as read when no write was needed
        """
        current = account
        for _ in range(MAX_WRITE_ATTEMPTS):
            patch = build_patch(current)
            if patch is None:
                return current
            if self.account_store.update(current.user_id, patch, expected_version=current.version):
                return self.account_store.get(current.user_id) or current
            current = self.account_store.get(account.user_id)
            if current is None:
                raise NotFoundError(f"Account {account.user_id} disappeared during billing update")
        raise ConflictError(
            f"Could not apply billing update to {account.user_id} after {MAX_WRITE_ATTEMPTS} attempts"
        )
