"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from vm_operator.config import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_STACK_TAG,
    FINALIZER_NAME,
    Config,
    ConfigurationError,
)

VALID_ENV = {
    "OS_AUTH_URL": "https://keystone.example.com/v3",
    "OS_USERNAME": "operator",
    "OS_PASSWORD": "secret",
    "OS_PROJECT_NAME": "admin",
}


def _config(**overrides: object) -> Config:
    values: dict[str, object] = {
        "auth_url": "https://keystone.example.com/v3",
        "username": "operator",
        "password": "secret",
        "project_name": "admin",
    }
    values.update(overrides)
    return Config(**values)  # type: ignore[arg-type]


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration with defaults."""
        config = _config()

        assert config.poll_interval_seconds == DEFAULT_POLL_INTERVAL_SECONDS
        assert config.stack_tag == DEFAULT_STACK_TAG
        assert config.vm_name_prefix == "nova"
        assert config.user_domain == "Default"
        assert config.namespace is None

    def test_missing_credentials(self) -> None:
        """Test that every missing credential is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(auth_url="https://keystone.example.com/v3")

        message = str(exc_info.value)
        assert "OS_USERNAME" in message
        assert "OS_PASSWORD" in message
        assert "OS_PROJECT_NAME" in message

    def test_auth_url_must_be_http(self) -> None:
        """Test that a non-URL auth endpoint is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(auth_url="keystone:5000")

        assert "OS_AUTH_URL" in str(exc_info.value)

    def test_invalid_poll_interval(self) -> None:
        """Test that out-of-range poll interval raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(poll_interval_seconds=1)

        assert "POLL_INTERVAL" in str(exc_info.value)

    def test_invalid_provider_timeout(self) -> None:
        """Test that the provider timeout is bounded."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(provider_timeout_seconds=3600)

        assert "PROVIDER_TIMEOUT" in str(exc_info.value)

    def test_invalid_name_prefix(self) -> None:
        """Test that the server group prefix must be a short lowercase word."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(vm_name_prefix="Nova-")

        assert "VM_NAME_PREFIX" in str(exc_info.value)

    def test_missing_templates_dir(self, tmp_path: Path) -> None:
        """Test that a templates override must exist."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(templates_dir=tmp_path / "missing")

        assert "Templates directory" in str(exc_info.value)

    def test_config_is_frozen(self) -> None:
        """Test that configuration cannot change after construction."""
        config = _config()

        with pytest.raises(AttributeError):
            config.stack_tag = "other"  # type: ignore[misc]

    def test_finalizer_is_group_scoped(self) -> None:
        """Test the finalizer name lives under the resource group."""
        assert FINALIZER_NAME == "mixapp.easystack.io/finalizer"


class TestConfigFromEnv:
    """Tests for Config.from_env."""

    def test_from_env_minimal(self) -> None:
        """Test loading with only the required variables."""
        with patch.dict(os.environ, VALID_ENV, clear=True):
            config = Config.from_env()

        assert config.auth_url == "https://keystone.example.com/v3"
        assert config.username == "operator"
        assert config.region is None
        assert config.interface == "public"

    def test_from_env_overrides(self, tmp_path: Path) -> None:
        """Test that optional variables are honoured."""
        env = {
            **VALID_ENV,
            "OS_REGION_NAME": "RegionTwo",
            "OS_INTERFACE": "internal",
            "POLL_INTERVAL": "15",
            "STACK_TAG": "team-a",
            "TEMPLATES_DIR": str(tmp_path),
            "WATCH_NAMESPACE": "apps",
            "MAX_CONCURRENT_RECONCILES": "8",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.region == "RegionTwo"
        assert config.interface == "internal"
        assert config.poll_interval_seconds == 15
        assert config.stack_tag == "team-a"
        assert config.templates_dir == tmp_path
        assert config.namespace == "apps"
        assert config.max_concurrent_reconciles == 8

    def test_from_env_non_integer(self) -> None:
        """Test that a non-numeric interval is a configuration error."""
        env = {**VALID_ENV, "POLL_INTERVAL": "soon"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "POLL_INTERVAL" in str(exc_info.value)

    def test_from_env_missing_auth_url(self) -> None:
        """Test that the Keystone endpoint is required."""
        env = {k: v for k, v in VALID_ENV.items() if k != "OS_AUTH_URL"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "OS_AUTH_URL" in str(exc_info.value)
