"""
Core modules for the entitlement engine.

This package contains tier resolution, trial math, promo-code claiming,
feature gating and drift monitoring.
"""
