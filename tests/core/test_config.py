"""Tests for facet.core.config - CoreSettings and global config management.

Tests cover:
- Settings loading with defaults
- Environment variable overrides
- Singleton behavior (get_config / clear_config_cache)
- Computed properties (simulation_permitted, retry_policy, oracle key)
"""

from __future__ import annotations

import pydantic
import pytest

from facet.core.config import (
    CoreSettings,
    clear_config_cache,
    get_config,
)
from facet.core.retry import RetryPolicy

# ============================================================================
# CoreSettings - Default Values
# ============================================================================


class TestCoreSettingsDefaults:
    """Test that CoreSettings loads with correct default values."""

    def test_defaults(self, clean_env):
        settings = CoreSettings(_env_file=None)

        assert settings.environment == "development"
        assert settings.allow_simulation is False
        assert settings.collaborator_timeout == 10.0
        assert settings.oracle_public_key is None
        assert settings.default_privacy_level == "high"

    def test_retry_defaults(self, clean_env):
        settings = CoreSettings(_env_file=None)

        assert settings.retry_max_attempts == 3
        assert settings.retry_base_delay == 0.1
        assert settings.retry_max_delay == 2.0
        assert settings.retry_backoff_multiplier == 2.0

    def test_logging_defaults(self, clean_env):
        settings = CoreSettings(_env_file=None)

        assert settings.log_level == "INFO"
        assert settings.log_format == ""
        assert settings.log_file is None


# ============================================================================
# Environment overrides
# ============================================================================


class TestEnvironmentOverrides:
    def test_env_vars_applied(self, clean_env, monkeypatch):
        monkeypatch.setenv("FACET_ENVIRONMENT", "staging")
        monkeypatch.setenv("FACET_ALLOW_SIMULATION", "true")
        monkeypatch.setenv("FACET_RETRY_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("FACET_COLLABORATOR_TIMEOUT", "0.5")

        settings = CoreSettings(_env_file=None)

        assert settings.environment == "staging"
        assert settings.allow_simulation is True
        assert settings.retry_max_attempts == 5
        assert settings.collaborator_timeout == 0.5

    def test_oracle_key_normalised(self, clean_env, monkeypatch):
        monkeypatch.setenv("FACET_ORACLE_PUBLIC_KEY", "AB" * 32)
        settings = CoreSettings(_env_file=None)
        assert settings.oracle_public_key == "ab" * 32
        assert settings.oracle_public_key_bytes == bytes.fromhex("ab" * 32)

    def test_oracle_key_wrong_length(self, clean_env, monkeypatch):
        monkeypatch.setenv("FACET_ORACLE_PUBLIC_KEY", "abcd")
        with pytest.raises(pydantic.ValidationError):
            CoreSettings(_env_file=None)

    def test_oracle_key_not_hex(self, clean_env, monkeypatch):
        monkeypatch.setenv("FACET_ORACLE_PUBLIC_KEY", "zz" * 32)
        with pytest.raises(pydantic.ValidationError):
            CoreSettings(_env_file=None)

    def test_zero_attempts_rejected(self, clean_env, monkeypatch):
        monkeypatch.setenv("FACET_RETRY_MAX_ATTEMPTS", "0")
        with pytest.raises(pydantic.ValidationError):
            CoreSettings(_env_file=None)


# ============================================================================
# Computed properties
# ============================================================================


class TestComputedProperties:
    def test_simulation_needs_opt_in(self, clean_env):
        assert CoreSettings(_env_file=None).simulation_permitted is False
        assert CoreSettings(_env_file=None, allow_simulation=True).simulation_permitted is True

    @pytest.mark.parametrize("env", ["production", "prod", " Production "])
    def test_simulation_never_in_production(self, clean_env, env):
        settings = CoreSettings(_env_file=None, environment=env, allow_simulation=True)
        assert settings.is_production
        assert settings.simulation_permitted is False

    def test_retry_policy(self, clean_env):
        settings = CoreSettings(
            _env_file=None,
            retry_max_attempts=4,
            retry_base_delay=0.2,
            retry_max_delay=1.0,
            retry_backoff_multiplier=3.0,
            collaborator_timeout=5.0,
        )
        assert settings.retry_policy == RetryPolicy(
            max_attempts=4, base_delay=0.2, max_delay=1.0, multiplier=3.0, timeout=5.0
        )


# ============================================================================
# Singleton
# ============================================================================


class TestGetConfig:
    def test_singleton(self, clean_env):
        clear_config_cache()
        assert get_config() is get_config()

    def test_clear_cache_reloads(self, clean_env, monkeypatch):
        clear_config_cache()
        first = get_config()
        monkeypatch.setenv("FACET_ENVIRONMENT", "staging")
        clear_config_cache()
        second = get_config()
        assert first is not second
        assert second.environment == "staging"
