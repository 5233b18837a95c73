"""
Tests for configuration loading and validation.
"""

from datetime import timedelta

import pytest
import yaml

from spend_monitor.config import load_config
from spend_monitor.providers.base import ConfigurationError, ProviderId

BASE_CONFIG = {
    "providers": {
        "timeout_seconds": 5,
        "aws": {"enabled": True, "access_key_id": "AKIA123", "secret_access_key": "shh"},
        "azure": {"enabled": True, "endpoint": "https://billing.example.com/azure"},
        "gcp": {"enabled": False, "endpoint": ""},
    },
    "alerts": {
        "cooldown_hours": 2,
        "max_concurrent_rules": 4,
        "spike_baseline": "month_to_date",
        "rules": [
            {"id": "budget", "owner_id": "ops", "alert_type": "budget_threshold", "threshold_value": 50}
        ],
    },
    "scheduler": {"interval_seconds": 600, "safety_margin_seconds": 30},
}


@pytest.fixture
def write_config(tmp_path):
    def _write(data):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(data))
        return [str(path)]

    return _write


def with_section(section, **values):
    data = {key: dict(value) if isinstance(value, dict) else value for key, value in BASE_CONFIG.items()}
    data[section] = {**data.get(section, {}), **values}
    return data


class TestMonitorConfig:
    """Test cases for MonitorConfig."""

    def test_typed_properties(self, write_config):
        config = load_config(write_config(BASE_CONFIG))

        assert config.enabled_providers == [ProviderId.AWS, ProviderId.AZURE]
        assert config.is_provider_enabled(ProviderId.AZURE)
        assert not config.is_provider_enabled(ProviderId.GCP)
        assert config.provider_timeout == 5.0
        assert config.cooldown == timedelta(hours=2)
        assert config.max_concurrent_rules == 4
        assert config.spike_baseline == "month_to_date"
        assert config.evaluation_interval == timedelta(minutes=10)
        assert config.pass_safety_margin == timedelta(seconds=30)
        assert config.alert_rules[0]["id"] == "budget"
        assert config.database_url is None

    def test_defaults(self, write_config):
        """Test the values used when sections are missing."""
        config = load_config(write_config({"providers": {"aws": {"enabled": True}}}))

        assert config.provider_timeout == 10.0
        assert config.cooldown == timedelta(hours=6)
        assert config.spike_baseline == "full_month"
        assert config.notifications == {"channel": "log", "timeout_seconds": 10}
        assert config.history_retention_days == 90
        assert config.log_level == "INFO"

    def test_provider_config(self, write_config):
        config = load_config(write_config(BASE_CONFIG))

        assert config.get_provider_config(ProviderId.AZURE)["endpoint"] == "https://billing.example.com/azure"

    def test_to_dict_masks_secrets(self, write_config):
        data = load_config(write_config(BASE_CONFIG)).to_dict()

        assert data["providers"]["aws"]["access_key_id"] == "***"
        assert data["providers"]["aws"]["secret_access_key"] == "***"
        assert data["providers"]["azure"]["endpoint"] == "https://billing.example.com/azure"
        assert data["enabled_providers"] == ["aws", "azure"]
        assert data["configured_rules"] == 1

    def test_environment_override(self, write_config, monkeypatch):
        monkeypatch.setenv("SPENDMON_ALERTS__COOLDOWN_HOURS", "12")

        config = load_config(write_config(BASE_CONFIG))

        assert config.cooldown == timedelta(hours=12)


class TestConfigValidation:
    """Invalid configurations are rejected at load time."""

    def test_enabled_export_provider_needs_endpoint(self, write_config):
        data = with_section("providers", gcp={"enabled": True, "endpoint": ""})

        with pytest.raises(ConfigurationError):
            load_config(write_config(data))

    def test_unknown_spike_baseline(self, write_config):
        with pytest.raises(ConfigurationError):
            load_config(write_config(with_section("alerts", spike_baseline="weekly")))

    def test_webhook_needs_url(self, write_config):
        with pytest.raises(ConfigurationError):
            load_config(write_config(with_section("notifications", channel="webhook")))

    def test_non_positive_interval(self, write_config):
        with pytest.raises(ConfigurationError):
            load_config(write_config(with_section("scheduler", interval_seconds=0)))
