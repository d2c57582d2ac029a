"""
Stripe billing provider client.

Fetches subscription snapshots and creates checkout sessions. Every Stripe
failure surfaces as BillingUnavailableError so callers can fall back to
local state.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import stripe

from entitlement_guard.config.loader import CheckoutConfig
from entitlement_guard.core.errors import BillingUnavailableError, ValidationError
from entitlement_guard.core.tiers import Plan, parse_billing_status
from entitlement_guard.storage.models import BillingSnapshot, PaymentMethodSummary

logger = logging.getLogger(__name__)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _current_period_end(subscription: Mapping[str, Any]) -> Optional[int]:
    """Period end from the subscription, or from its first item on newer API versions."""
    if subscription.get("current_period_end") is not None:
        return subscription.get("current_period_end")
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None


def _payment_method_summary(subscription: Mapping[str, Any]) -> Optional[PaymentMethodSummary]:
    method = subscription.get("default_payment_method")
    if not isinstance(method, Mapping):
        return None
    card = method.get("card")
    if not card or not card.get("brand") or not card.get("last4"):
        return None
    return PaymentMethodSummary(brand=card["brand"], last4=card["last4"])


def snapshot_from_subscription(
    subscription: Mapping[str, Any],
    fetched_at: Optional[datetime] = None
) -> BillingSnapshot:
    """Convert a Stripe subscription object into a billing snapshot.

    Raises:
        BillingUnavailableError: If the subscription has no customer or an
            unrecognized status
    """
    customer = subscription.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")
    if not customer:
        raise BillingUnavailableError("Subscription has no customer reference")

    try:
        status = parse_billing_status(subscription.get("status"))
    except ValueError as e:
        raise BillingUnavailableError(str(e))

    return BillingSnapshot(
        customer_ref=customer,
        status=status,
        trial_end=_timestamp(subscription.get("trial_end")),
        current_period_end=_timestamp(_current_period_end(subscription)),
        payment_method_summary=_payment_method_summary(subscription),
        fetched_at=fetched_at or datetime.now(timezone.utc),
    )


def promotion_code_of(subscription: Mapping[str, Any]) -> Optional[str]:
    """Customer-facing promotion code on a subscription's discount, if expanded.

    Returns the Stripe promotion code id instead when only the id is present.
    """
    discount = subscription.get("discount")
    if not discount:
        return None
    promotion = discount.get("promotion_code")
    if isinstance(promotion, Mapping):
        return promotion.get("code")
    return promotion


class StripeBillingProvider:
    """Billing provider backed by the Stripe API.

    Calls are bounded by ``timeout_seconds`` and are not retried; a slow
    or failing provider degrades entitlement decisions to local state
    instead of holding the request.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        checkout: Optional[CheckoutConfig] = None
    ):
        """Initialize the Stripe client.

        Args:
            api_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            timeout_seconds: Per-request network timeout
            checkout: Prices and redirect URLs for checkout sessions

        Raises:
            ValueError: If no API key is available
        """
        self.api_key = api_key or os.getenv("STRIPE_SECRET_KEY")
        if not self.api_key:
            raise ValueError("Stripe API key is required (set STRIPE_SECRET_KEY)")
        self.timeout_seconds = timeout_seconds
        self.checkout = checkout or CheckoutConfig()

        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
        stripe.max_network_retries = 0

    def fetch_subscription_status(self, customer_ref: str) -> Optional[BillingSnapshot]:
        """Fetch the customer's most recent subscription as a snapshot.

        Args:
            customer_ref: Stripe customer id

        Returns:
            BillingSnapshot, or None if the customer has no subscription

        Raises:
            BillingUnavailableError: On timeout, API error, or unusable data
        """
        try:
            subscriptions = stripe.Subscription.list(
                customer=customer_ref,
                status="all",
                limit=1,
                expand=["data.default_payment_method", "data.discount.promotion_code"],
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise BillingUnavailableError(f"Stripe subscription lookup failed for {customer_ref}: {e}")

        if not subscriptions.data:
            return None
        return snapshot_from_subscription(subscriptions.data[0].to_dict())

    def resolve_promotion_code(self, promotion_code_id: str) -> Optional[str]:
        """Look up the customer-facing code for a Stripe promotion code id."""
        try:
            promotion = stripe.PromotionCode.retrieve(promotion_code_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise BillingUnavailableError(f"Stripe promotion code lookup failed: {e}")
        return promotion.code

    def _promotion_code_id(self, code: str) -> Optional[str]:
        try:
            promotions = stripe.PromotionCode.list(
                code=code, active=True, limit=1, api_key=self.api_key
            )
        except stripe.StripeError as e:
            raise BillingUnavailableError(f"Stripe promotion code lookup failed: {e}")
        return promotions.data[0].id if promotions.data else None

    def create_checkout_session(
        self,
        plan: Plan,
        promo_code: Optional[str] = None,
        customer_ref: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> str:
        """Create a subscription checkout session and return its redirect URL.

        A promo code known to Stripe is attached as a discount; otherwise
        the customer may enter one on the checkout page.

        Raises:
            ValidationError: If the plan has no configured price
            BillingUnavailableError: If Stripe rejects or cannot be reached
        """
        price_id = self.checkout.price_ids.get(plan)
        if not price_id:
            raise ValidationError(
                f"No checkout price configured for plan {plan.value}",
                "This plan is not available right now.",
            )

        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self.checkout.success_url,
            "cancel_url": self.checkout.cancel_url,
        }
        if customer_ref:
            params["customer"] = customer_ref
        if user_id:
            params["client_reference_id"] = user_id
            params["metadata"] = {"user_id": user_id}
            params["subscription_data"] = {"metadata": {"user_id": user_id}}

        promotion_id = self._promotion_code_id(promo_code) if promo_code else None
        if promotion_id:
            params["discounts"] = [{"promotion_code": promotion_id}]
        else:
            params["allow_promotion_codes"] = True

        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            raise BillingUnavailableError(f"Stripe checkout session failed: {e}")

        logger.info("Created checkout session %s for plan %s", session.id, plan.value)
        return session.url


def construct_webhook_event(payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
    """Verify a Stripe webhook signature and parse the event.

    Raises:
        ValidationError: If the payload or signature is invalid
    """
    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as e:
        raise ValidationError(f"Invalid webhook payload: {e}", "Invalid payload.")
    except stripe.SignatureVerificationError as e:
        raise ValidationError(f"Invalid webhook signature: {e}", "Invalid signature.")
    return event.to_dict()
