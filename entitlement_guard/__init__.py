"""
Entitlement Guard.

Subscription entitlement engine: tier resolution, trial clock, promo
ledger, feature gating and billing drift monitoring.
"""

__version__ = "0.1.0"
