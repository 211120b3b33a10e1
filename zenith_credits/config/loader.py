"""
Configuration management and loading.

Handles ledger settings from YAML files and provider settings from
environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml

from zenith_credits.core.pricing import (
    DEFAULT_MODEL_KEY,
    DEFAULT_PRICING_TABLE,
    PricingTable,
    build_pricing_table,
)

DEFAULT_FREE_TIER_GRANT = 100


@dataclass(frozen=True)
class AlertThresholds:
    """Balance levels at which the credit monitor raises alerts."""
    warning: int = 20
    critical: int = 5

    def __post_init__(self):
        """Validate thresholds are ordered."""
        if self.critical < 0:
            raise ValueError("critical threshold must be >= 0")
        if self.warning < self.critical:
            raise ValueError("warning threshold must be >= critical threshold")


@dataclass(frozen=True)
class ProviderConfig:
    """An upstream AI provider in the fallback chain."""
    name: str
    priority: int
    enabled: bool = True
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None

    def __post_init__(self):
        """Validate provider values."""
        if not self.name or not self.name.strip():
            raise ValueError("provider name cannot be empty")
        if self.priority < 0:
            raise ValueError(f"priority for provider '{self.name}' must be >= 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    free_tier_grant: int = DEFAULT_FREE_TIER_GRANT
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    providers: Tuple[ProviderConfig, ...] = ()
    alerts: AlertThresholds = field(default_factory=AlertThresholds)

    def __post_init__(self):
        """Validate grant is non-negative."""
        if self.free_tier_grant < 0:
            raise ValueError("free_tier_grant must be >= 0")


# Provider chain used when nothing is configured explicitly
_ENV_PROVIDERS = (
    ("xai", 1, "XAI_API_KEY", "https://api.x.ai/v1"),
    ("google", 2, "GEMINI_API_KEY", "https://generativelanguage.googleapis.com/v1beta/openai/"),
    ("openrouter", 3, "OPENROUTER_API_KEY", "https://openrouter.ai/api/v1"),
    ("openai", 4, "OPENAI_API_KEY", None),
)


def providers_from_env(environ: Optional[Mapping[str, str]] = None) -> List[ProviderConfig]:
    """Build the default provider chain from environment variables.

    A provider is enabled when its API key variable is set. Names listed in
    AI_DISABLED_PROVIDERS (comma separated) are disabled, and openrouter
    additionally needs AI_ALLOW_OPENROUTER=true.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Provider configs in priority order, disabled ones included
    """
    env = os.environ if environ is None else environ
    disabled = {
        name.strip().lower()
        for name in env.get("AI_DISABLED_PROVIDERS", "").split(",")
        if name.strip()
    }
    allow_openrouter = env.get("AI_ALLOW_OPENROUTER", "").lower() == "true"

    providers = []
    for name, priority, key_env, base_url in _ENV_PROVIDERS:
        enabled = bool(env.get(key_env)) and name not in disabled
        if name == "openrouter":
            enabled = enabled and allow_openrouter
        providers.append(ProviderConfig(
            name=name,
            priority=priority,
            enabled=enabled,
            api_key_env=key_env,
            base_url=base_url
        ))
    return providers


def load_ledger_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from YAML file.

    Strict validation ensures no silent misconfigurations such as a typo in a
    model name section that would bill every call at the default rate.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'free_tier_grant', 'pricing', 'providers', 'alerts'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    grant = raw_config.get('free_tier_grant', DEFAULT_FREE_TIER_GRANT)
    if not isinstance(grant, int) or isinstance(grant, bool):
        raise ValueError("'free_tier_grant' must be an integer")

    pricing = DEFAULT_PRICING_TABLE
    if 'pricing' in raw_config:
        pricing = _parse_pricing(raw_config['pricing'])

    providers: Tuple[ProviderConfig, ...] = ()
    if 'providers' in raw_config:
        providers = _parse_providers(raw_config['providers'])

    alerts = AlertThresholds()
    if 'alerts' in raw_config:
        alerts = _parse_alerts(raw_config['alerts'])

    return LedgerConfig(
        free_tier_grant=grant,
        pricing=pricing,
        providers=providers,
        alerts=alerts
    )


def _parse_pricing(data) -> PricingTable:
    """Parse and validate the pricing section.

    Raises:
        ValueError: If a model entry is malformed or 'default' is missing
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")
    if DEFAULT_MODEL_KEY not in data:
        raise ValueError(f"'pricing' must define a '{DEFAULT_MODEL_KEY}' entry")

    raw: Dict[str, Dict[str, float]] = {}
    for model_id, costs in data.items():
        path = f"pricing.{model_id}"
        if not isinstance(costs, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown = set(costs.keys()) - {'input', 'output'}
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {unknown}")
        for key in ('input', 'output'):
            if key not in costs:
                raise ValueError(f"Missing required '{key}' in {path}")
            value = costs[key]
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                raise ValueError(f"'{key}' in {path} must be a number >= 0")
        raw[str(model_id)] = costs

    return build_pricing_table(raw)


def _parse_providers(data) -> Tuple[ProviderConfig, ...]:
    """Parse and validate the providers list.

    Raises:
        ValueError: If an entry is malformed or a name repeats
    """
    if not isinstance(data, list):
        raise ValueError("'providers' must be a list")

    allowed_keys = {'name', 'priority', 'enabled', 'api_key_env', 'base_url'}
    providers = []
    seen = set()
    for index, entry in enumerate(data):
        path = f"providers[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown = set(entry.keys()) - allowed_keys
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {unknown}")
        if 'name' not in entry:
            raise ValueError(f"Missing required 'name' in {path}")

        name = str(entry['name']).strip().lower()
        if name in seen:
            raise ValueError(f"Duplicate provider '{name}' in 'providers'")
        seen.add(name)

        priority = entry.get('priority', index + 1)
        if not isinstance(priority, int) or isinstance(priority, bool):
            raise ValueError(f"'priority' in {path} must be an integer")
        enabled = entry.get('enabled', True)
        if not isinstance(enabled, bool):
            raise ValueError(f"'enabled' in {path} must be a boolean")

        providers.append(ProviderConfig(
            name=name,
            priority=priority,
            enabled=enabled,
            api_key_env=entry.get('api_key_env'),
            base_url=entry.get('base_url')
        ))
    return tuple(providers)


def _parse_alerts(data) -> AlertThresholds:
    if not isinstance(data, dict):
        raise ValueError("'alerts' must be a dictionary")
    unknown = set(data.keys()) - {'warning', 'critical'}
    if unknown:
        raise ValueError(f"Unknown alert keys: {unknown}")

    defaults = AlertThresholds()
    warning = data.get('warning', defaults.warning)
    critical = data.get('critical', defaults.critical)
    for key, value in (('warning', warning), ('critical', critical)):
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"'alerts.{key}' must be an integer")
    return AlertThresholds(warning=warning, critical=critical)
