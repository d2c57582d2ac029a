"""
Billing provider integration for the entitlement engine.

Provides the Stripe-backed provider client and billing event ingestion.
"""

from .events import BillingEventIngestor
from .stripe_client import StripeBillingProvider

__all__ = ["BillingEventIngestor", "StripeBillingProvider"]
