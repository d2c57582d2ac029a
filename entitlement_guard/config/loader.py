"""
Configuration management and loading.

Handles feature limits, billing timeouts, trial lengths and checkout
settings.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional

import yaml

from entitlement_guard.core.feature_gate import DEFAULT_FEATURE_LIMITS, FeatureLimitsTable
from entitlement_guard.core.promo_ledger import BASE_TRIAL_DAYS, DAYS_PER_FREE_MONTH
from entitlement_guard.core.tiers import Plan, Tier


@dataclass(frozen=True)
class BillingConfig:
    """Billing provider call limits."""
    staleness_seconds: int = 900
    timeout_seconds: float = 5.0

    def __post_init__(self):
        """Validate billing values are positive."""
        if self.staleness_seconds <= 0:
            raise ValueError("staleness_seconds must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

    @property
    def staleness_window(self) -> timedelta:
        return timedelta(seconds=self.staleness_seconds)


@dataclass(frozen=True)
class TrialConfig:
    """Trial length settings."""
    base_days: int = BASE_TRIAL_DAYS
    days_per_month: int = DAYS_PER_FREE_MONTH

    def __post_init__(self):
        if self.base_days < 0:
            raise ValueError("base_days cannot be negative")
        if self.days_per_month <= 0:
            raise ValueError("days_per_month must be > 0")


@dataclass(frozen=True)
class CheckoutConfig:
    """Checkout prices, redirect URLs and hosted payment links per plan."""
    success_url: str = "https://example.com/subscription/success?session_id={CHECKOUT_SESSION_ID}"
    cancel_url: str = "https://example.com/subscription?canceled=true"
    price_ids: Dict[Plan, str] = field(default_factory=dict)
    payment_links: Dict[Plan, str] = field(default_factory=dict)

    def __post_init__(self):
        if Plan.FREE in self.price_ids or Plan.FREE in self.payment_links:
            raise ValueError("The free plan cannot have a price or payment link")


@dataclass(frozen=True)
class EntitlementConfig:
    """Complete entitlement engine configuration."""
    feature_limits: FeatureLimitsTable = field(default_factory=FeatureLimitsTable)
    billing: BillingConfig = field(default_factory=BillingConfig)
    trial: TrialConfig = field(default_factory=TrialConfig)
    checkout: CheckoutConfig = field(default_factory=CheckoutConfig)


def default_config() -> EntitlementConfig:
    """Configuration matching the application's built-in plans."""
    return EntitlementConfig()


def load_entitlement_config(path: str) -> EntitlementConfig:
    """Load and validate entitlement configuration from a YAML file.

    Strict validation ensures no silent misconfiguration that could grant
    or withhold access unexpectedly. Sections other than
    ``feature_limits`` are optional and fall back to defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EntitlementConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Entitlement config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'feature_limits', 'billing', 'trial', 'checkout'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'feature_limits' not in raw_config:
        raise ValueError("Missing required 'feature_limits' section")

    return EntitlementConfig(
        feature_limits=_parse_feature_limits(raw_config['feature_limits']),
        billing=_parse_billing(raw_config.get('billing') or {}),
        trial=_parse_trial(raw_config.get('trial') or {}),
        checkout=_parse_checkout(raw_config.get('checkout') or {}),
    )


def _require_mapping(data, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_tier(name: str) -> Tier:
    try:
        return Tier(name)
    except ValueError:
        valid = [tier.value for tier in Tier]
        raise ValueError(f"Unknown tier '{name}' in feature_limits; must be one of: {valid}")


def _parse_plan(name: str, path: str) -> Plan:
    try:
        return Plan(name)
    except ValueError:
        valid = [plan.value for plan in Plan]
        raise ValueError(f"Unknown plan '{name}' in {path}; must be one of: {valid}")


def _parse_feature_limits(data) -> FeatureLimitsTable:
    """Parse tier -> feature -> limit.

    Tiers may be omitted only by inheriting the built-in defaults through
    the special ``defaults: builtin`` entry; otherwise all six tiers are
    required.
    """
    data = _require_mapping(data, "feature_limits")

    limits: Dict[Tier, Dict[str, int]] = {}
    use_builtin = data.get('defaults') == 'builtin'
    for tier_name, features in data.items():
        if tier_name == 'defaults':
            if features != 'builtin':
                raise ValueError("'feature_limits.defaults' may only be 'builtin'")
            continue
        tier = _parse_tier(tier_name)
        features = _require_mapping(features, f"feature_limits.{tier_name}")
        parsed: Dict[str, int] = {}
        for feature, limit in features.items():
            if not isinstance(limit, int) or isinstance(limit, bool) or limit < -1:
                raise ValueError(
                    f"'feature_limits.{tier_name}.{feature}' must be an integer >= -1"
                )
            parsed[str(feature)] = limit
        limits[tier] = parsed

    if use_builtin:
        merged = {tier: dict(features) for tier, features in DEFAULT_FEATURE_LIMITS.items()}
        for tier, features in limits.items():
            merged[tier].update(features)
        limits = merged

    missing = set(Tier) - set(limits)
    if missing:
        raise ValueError(f"feature_limits missing tiers: {sorted(t.value for t in missing)}")

    return FeatureLimitsTable(limits=limits)


def _parse_billing(data) -> BillingConfig:
    data = _require_mapping(data, "billing")
    _reject_unknown(data, {'staleness_seconds', 'timeout_seconds'}, "billing")

    values = {}
    for key in ('staleness_seconds', 'timeout_seconds'):
        if key in data:
            value = data[key]
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"'billing.{key}' must be > 0")
            values[key] = value
    if 'staleness_seconds' in values:
        values['staleness_seconds'] = int(values['staleness_seconds'])
    if 'timeout_seconds' in values:
        values['timeout_seconds'] = float(values['timeout_seconds'])
    return BillingConfig(**values)


def _parse_trial(data) -> TrialConfig:
    data = _require_mapping(data, "trial")
    _reject_unknown(data, {'base_days', 'days_per_month'}, "trial")

    values = {}
    for key in ('base_days', 'days_per_month'):
        if key in data:
            value = data[key]
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"'trial.{key}' must be an integer")
            values[key] = value
    return TrialConfig(**values)


def _parse_checkout(data) -> CheckoutConfig:
    data = _require_mapping(data, "checkout")
    _reject_unknown(data, {'success_url', 'cancel_url', 'price_ids', 'payment_links'}, "checkout")

    values = {}
    for key in ('success_url', 'cancel_url'):
        if key in data:
            if not isinstance(data[key], str) or not data[key].strip():
                raise ValueError(f"'checkout.{key}' must be a non-empty string")
            values[key] = data[key]

    for key in ('price_ids', 'payment_links'):
        if key in data:
            entries = _require_mapping(data[key], f"checkout.{key}")
            parsed: Dict[Plan, str] = {}
            for plan_name, value in entries.items():
                plan = _parse_plan(plan_name, f"checkout.{key}")
                if not isinstance(value, str) or not value.strip():
                    raise ValueError(f"'checkout.{key}.{plan_name}' must be a non-empty string")
                parsed[plan] = value
            values[key] = parsed

    return CheckoutConfig(**values)


def load_config_or_default(path: Optional[str]) -> EntitlementConfig:
    """Load ``path`` when given, otherwise return the built-in configuration."""
    if path is None:
        return default_config()
    return load_entitlement_config(path)
