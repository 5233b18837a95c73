"""
Configuration management for multi-cloud spend monitoring.

Uses dynaconf for flexible configuration with YAML files and environment overrides.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from dynaconf import Dynaconf, ValidationError, Validator

from ..providers.base import ConfigurationError, ProviderId

logger = logging.getLogger(__name__)

# Get the project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

DEFAULT_SETTINGS_FILES = [
    str(CONFIG_DIR / "config.yaml"),  # Base configuration
    str(CONFIG_DIR / "config.local.yaml"),  # Local overrides (git-ignored)
    str(CONFIG_DIR / ".secrets.yaml"),  # Secrets file (git-ignored)
]

SPIKE_BASELINE_MODES = ("full_month", "month_to_date")

VALIDATORS = [
    # Billing export proxies are required for the providers without a native reader
    Validator(
        "providers.azure.endpoint",
        must_exist=True,
        len_min=1,
        when=Validator("providers.azure.enabled", eq=True),
    ),
    Validator(
        "providers.gcp.endpoint",
        must_exist=True,
        len_min=1,
        when=Validator("providers.gcp.enabled", eq=True),
    ),
    Validator("providers.timeout_seconds", gt=0),
    Validator("alerts.cooldown_hours", gte=0),
    Validator("alerts.max_concurrent_rules", gte=1),
    Validator("alerts.spike_baseline", is_in=SPIKE_BASELINE_MODES),
    Validator("scheduler.interval_seconds", gt=0),
    Validator("scheduler.safety_margin_seconds", gte=0),
    Validator("notifications.channel", is_in=("log", "webhook")),
    Validator(
        "notifications.webhook_url",
        must_exist=True,
        when=Validator("notifications.channel", eq="webhook"),
    ),
]


def build_settings(settings_files: Optional[List[str]] = None) -> Dynaconf:
    """Initialize dynaconf with multiple configuration sources."""
    return Dynaconf(
        envvar_prefix="SPENDMON",
        settings_files=settings_files or DEFAULT_SETTINGS_FILES,
        environments=False,  # Use file-based configuration instead of environment sections
        load_dotenv=True,
        merge_enabled=True,
        envvar_separator="__",  # Support nested config via SPENDMON_ALERTS__COOLDOWN_HOURS=12
        validators=VALIDATORS,
    )


class MonitorConfig:
    """Typed view over the monitor settings."""

    def __init__(self, settings: Dynaconf):
        self.settings = settings
        self._validate_config()

    def _validate_config(self):
        """Validate the configuration on initialization."""
        try:
            self.settings.validators.validate()
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def _section(self, key: str) -> Dict[str, Any]:
        value = self.settings.get(key, {})
        if hasattr(value, "to_dict"):
            return value.to_dict()
        return dict(value or {})

    @property
    def providers(self) -> Dict[str, Any]:
        """Provider configuration section."""
        return self._section("providers")

    @property
    def enabled_providers(self) -> List[ProviderId]:
        """Providers switched on in the configuration."""
        return [
            provider
            for provider in ProviderId
            if self.get_provider_config(provider).get("enabled", False)
        ]

    def get_provider_config(self, provider: ProviderId) -> Dict[str, Any]:
        """Get configuration for a specific cloud provider."""
        return dict(self.providers.get(provider.value) or {})

    def is_provider_enabled(self, provider: ProviderId) -> bool:
        return provider in self.enabled_providers

    @property
    def provider_timeout(self) -> float:
        """Per-provider call timeout in seconds."""
        return float(self.settings.get("providers.timeout_seconds", 10))

    @property
    def cooldown(self) -> timedelta:
        return timedelta(hours=float(self.settings.get("alerts.cooldown_hours", 6)))

    @property
    def max_concurrent_rules(self) -> int:
        return int(self.settings.get("alerts.max_concurrent_rules", 10))

    @property
    def spike_baseline(self) -> str:
        """Spike baseline window: ``full_month`` or ``month_to_date``."""
        return self.settings.get("alerts.spike_baseline", "full_month")

    @property
    def alert_rules(self) -> List[Dict[str, Any]]:
        """Rules declared in the configuration, used when no database is configured."""
        rules = self.settings.get("alerts.rules", []) or []
        return [rule.to_dict() if hasattr(rule, "to_dict") else dict(rule) for rule in rules]

    @property
    def evaluation_interval(self) -> timedelta:
        return timedelta(seconds=float(self.settings.get("scheduler.interval_seconds", 1800)))

    @property
    def pass_safety_margin(self) -> timedelta:
        """Time kept free at the end of each interval so passes never overlap."""
        return timedelta(seconds=float(self.settings.get("scheduler.safety_margin_seconds", 60)))

    @property
    def notifications(self) -> Dict[str, Any]:
        """Notification channel configuration."""
        section = {"channel": "log", "timeout_seconds": 10}
        section.update(self._section("notifications"))
        return section

    @property
    def database_url(self) -> Optional[str]:
        return self.settings.get("database.url") or None

    @property
    def history_retention_days(self) -> int:
        return int(self.settings.get("history.retention_days", 90))

    @property
    def log_level(self) -> str:
        return str(self.settings.get("logging.level", "INFO")).upper()

    def to_dict(self) -> Dict[str, Any]:
        """Effective configuration with secrets masked, for display."""
        providers = {}
        for provider in ProviderId:
            provider_config = self.get_provider_config(provider)
            providers[provider.value] = {
                key: ("***" if _is_secret(key) and value else value)
                for key, value in provider_config.items()
            }
        return {
            "providers": providers,
            "enabled_providers": [p.value for p in self.enabled_providers],
            "provider_timeout_seconds": self.provider_timeout,
            "cooldown_hours": self.cooldown.total_seconds() / 3600,
            "max_concurrent_rules": self.max_concurrent_rules,
            "spike_baseline": self.spike_baseline,
            "evaluation_interval_seconds": self.evaluation_interval.total_seconds(),
            "pass_safety_margin_seconds": self.pass_safety_margin.total_seconds(),
            "notification_channel": self.notifications.get("channel"),
            "database_configured": self.database_url is not None,
            "configured_rules": len(self.alert_rules),
        }


def _is_secret(key: str) -> bool:
    key = key.lower()
    return any(marker in key for marker in ("secret", "token", "password", "key"))


def load_config(settings_files: Optional[List[str]] = None) -> MonitorConfig:
    """Build a fresh configuration from the settings files and environment."""
    return MonitorConfig(build_settings(settings_files))
