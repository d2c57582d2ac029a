"""
Unit tests for the Stripe billing provider.

The Stripe API is mocked at the resource methods; no network calls are made.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import stripe

from entitlement_guard.billing.stripe_client import (
    StripeBillingProvider,
    construct_webhook_event,
    promotion_code_of,
    snapshot_from_subscription,
)
from entitlement_guard.config.loader import CheckoutConfig
from entitlement_guard.core.errors import BillingUnavailableError, ValidationError
from entitlement_guard.core.tiers import BillingStatus, Plan

TRIAL_END = 1775000000
PERIOD_END = 1777000000
API_KEY = "sk_test_123"


def _subscription(**overrides):
    subscription = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "trialing",
        "trial_end": TRIAL_END,
        "current_period_end": PERIOD_END,
        "default_payment_method": {"card": {"brand": "visa", "last4": "4242"}},
        "discount": None,
        "items": {"data": [{"price": {"id": "price_monthly"}}]},
    }
    subscription.update(overrides)
    return subscription


def _list(items):
    return stripe.ListObject.construct_from(
        {"object": "list", "url": "/v1/test", "has_more": False, "data": items}, API_KEY
    )


def _session():
    return stripe.checkout.Session.construct_from(
        {"id": "cs_1", "object": "checkout.session", "url": "https://checkout.test/cs_1"}, API_KEY
    )


class TestSnapshotFromSubscription:
    """Test conversion of Stripe subscriptions into snapshots."""

    def test_full_subscription(self):
        fetched_at = datetime(2026, 3, 1, tzinfo=timezone.utc)
        snapshot = snapshot_from_subscription(_subscription(), fetched_at)

        assert snapshot.customer_ref == "cus_1"
        assert snapshot.status == BillingStatus.TRIALING
        assert snapshot.trial_end == datetime.fromtimestamp(TRIAL_END, tz=timezone.utc)
        assert snapshot.current_period_end == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
        assert snapshot.payment_method_summary.last4 == "4242"
        assert snapshot.fetched_at == fetched_at

    def test_period_end_from_items(self):
        subscription = _subscription(
            current_period_end=None,
            items={"data": [{"current_period_end": PERIOD_END}]},
        )
        snapshot = snapshot_from_subscription(subscription)

        assert snapshot.current_period_end == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)

    def test_unexpanded_payment_method(self):
        snapshot = snapshot_from_subscription(_subscription(default_payment_method="pm_1"))
        assert snapshot.payment_method_summary is None

    def test_unknown_status(self):
        with pytest.raises(BillingUnavailableError):
            snapshot_from_subscription(_subscription(status="paused"))

    def test_missing_customer(self):
        with pytest.raises(BillingUnavailableError):
            snapshot_from_subscription(_subscription(customer=None))

    def test_promotion_code_of(self):
        expanded = _subscription(discount={"promotion_code": {"id": "promo_1", "code": "SARAH1"}})
        unexpanded = _subscription(discount={"promotion_code": "promo_1"})

        assert promotion_code_of(expanded) == "SARAH1"
        assert promotion_code_of(unexpanded) == "promo_1"
        assert promotion_code_of(_subscription()) is None


class TestStripeBillingProvider:
    """Test provider calls against mocked Stripe resources."""

    def setup_method(self):
        self.provider = StripeBillingProvider(
            api_key="sk_test_123",
            timeout_seconds=2.0,
            checkout=CheckoutConfig(price_ids={Plan.MONTHLY: "price_monthly"}),
        )

    def test_requires_api_key(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="STRIPE_SECRET_KEY"):
                StripeBillingProvider()

    def test_api_key_from_environment(self):
        with patch.dict("os.environ", {"STRIPE_SECRET_KEY": "sk_test_env"}):
            assert StripeBillingProvider().api_key == "sk_test_env"

    def test_fetch_subscription_status(self):
        with patch("stripe.Subscription.list", return_value=_list([_subscription()])) as mock_list:
            snapshot = self.provider.fetch_subscription_status("cus_1")

        assert snapshot.status == BillingStatus.TRIALING
        kwargs = mock_list.call_args.kwargs
        assert kwargs["customer"] == "cus_1"
        assert kwargs["api_key"] == "sk_test_123"

    def test_fetch_without_subscription(self):
        with patch("stripe.Subscription.list", return_value=_list([])):
            assert self.provider.fetch_subscription_status("cus_1") is None

    def test_stripe_failure_becomes_billing_unavailable(self):
        with patch("stripe.Subscription.list", side_effect=stripe.APIConnectionError("timeout")):
            with pytest.raises(BillingUnavailableError):
                self.provider.fetch_subscription_status("cus_1")

    def test_checkout_with_known_promo(self):
        with patch("stripe.PromotionCode.list",
                   return_value=_list([{"id": "promo_1", "object": "promotion_code"}])), \
                patch("stripe.checkout.Session.create",
                      return_value=_session()) as mock_create:
            url = self.provider.create_checkout_session(
                Plan.MONTHLY, promo_code="SARAH1", user_id="user-1"
            )

        assert url == "https://checkout.test/cs_1"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["discounts"] == [{"promotion_code": "promo_1"}]
        assert kwargs["client_reference_id"] == "user-1"
        assert "allow_promotion_codes" not in kwargs

    def test_checkout_without_promo_allows_codes(self):
        with patch("stripe.checkout.Session.create",
                   return_value=_session()) as mock_create:
            self.provider.create_checkout_session(Plan.MONTHLY)

        assert mock_create.call_args.kwargs["allow_promotion_codes"] is True

    def test_checkout_unconfigured_plan(self):
        with pytest.raises(ValidationError):
            self.provider.create_checkout_session(Plan.ANNUAL)

    def test_resolve_promotion_code(self):
        with patch("stripe.PromotionCode.retrieve",
                   return_value=stripe.PromotionCode.construct_from({"id": "promo_1", "code": "SARAH1"}, API_KEY)):
            assert self.provider.resolve_promotion_code("promo_1") == "SARAH1"


class TestWebhookVerification:
    """Test webhook signature checks."""

    SECRET = "whsec_test"

    def _sign(self, payload: bytes) -> str:
        timestamp = int(time.time())
        signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        signature = hmac.new(self.SECRET.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    def test_valid_signature(self):
        payload = json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "invoice.payment_failed",
            "data": {"object": {"customer": "cus_1"}},
        }).encode("utf-8")

        event = construct_webhook_event(payload, self._sign(payload), self.SECRET)

        assert isinstance(event, dict)
        assert event["type"] == "invoice.payment_failed"
        assert event["data"]["object"]["customer"] == "cus_1"

    def test_invalid_signature(self):
        payload = b'{"id": "evt_1", "object": "event"}'
        with pytest.raises(ValidationError):
            construct_webhook_event(payload, "t=1,v1=bad", self.SECRET)
