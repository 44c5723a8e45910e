"""Core configuration - centralized config for the facet package.

All environment-based configuration should flow through this module.

Usage:
    from facet.core.config import get_config
    config = get_config()

    timeout = config.collaborator_timeout
    if config.simulation_permitted:
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from .retry import RetryPolicy

PRODUCTION_ENVIRONMENTS = frozenset({"production", "prod"})


class CoreSettings(BaseSettings):
    """Core configuration settings for Facet.

    Settings are read from ``FACET_*`` environment variables or a ``.env``
    file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ==========================================================================
    # DEPLOYMENT SETTINGS
    # ==========================================================================

    environment: str = Field(
        default="development",
        description="Deployment environment name; 'production' forbids simulation mode",
        validation_alias="FACET_ENVIRONMENT",
    )
    allow_simulation: bool = Field(
        default=False,
        description="Permit non-cryptographic simulation backends (tests and demos only)",
        validation_alias="FACET_ALLOW_SIMULATION",
    )

    # ==========================================================================
    # COLLABORATOR SETTINGS
    # ==========================================================================

    collaborator_timeout: float = Field(
        default=10.0,
        description="Timeout in seconds for each ledger / oracle / backend call",
        validation_alias="FACET_COLLABORATOR_TIMEOUT",
    )
    oracle_public_key: str | None = Field(
        default=None,
        description="Encryption oracle X25519 public key (hex); fetched from the oracle when unset",
        validation_alias="FACET_ORACLE_PUBLIC_KEY",
    )

    # ==========================================================================
    # RETRY SETTINGS
    # ==========================================================================

    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum attempts for a transiently failing collaborator call",
        validation_alias="FACET_RETRY_MAX_ATTEMPTS",
    )
    retry_base_delay: float = Field(
        default=0.1,
        ge=0.0,
        description="Delay in seconds before the first retry",
        validation_alias="FACET_RETRY_BASE_DELAY",
    )
    retry_max_delay: float = Field(
        default=2.0,
        ge=0.0,
        description="Upper bound on any single retry delay",
        validation_alias="FACET_RETRY_MAX_DELAY",
    )
    retry_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Exponential backoff multiplier",
        validation_alias="FACET_RETRY_BACKOFF_MULTIPLIER",
    )

    # ==========================================================================
    # IDENTITY DEFAULTS
    # ==========================================================================

    default_privacy_level: str = Field(
        default="high",
        description="Privacy level used when a root identity is created implicitly",
        validation_alias="FACET_DEFAULT_PRIVACY_LEVEL",
    )

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
        validation_alias="FACET_LOG_LEVEL",
    )
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
        validation_alias="FACET_LOG_FORMAT",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (optional)",
        validation_alias="FACET_LOG_FILE",
    )

    @field_validator("oracle_public_key")
    @classmethod
    def _check_oracle_key(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError("oracle_public_key must be hex") from exc
        if len(raw) != 32:
            raise ValueError("oracle_public_key must encode 32 bytes")
        return value.lower()

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in PRODUCTION_ENVIRONMENTS

    @property
    def simulation_permitted(self) -> bool:
        """Simulation backends need an explicit opt-in and never run in production."""
        return self.allow_simulation and not self.is_production

    @property
    def oracle_public_key_bytes(self) -> bytes | None:
        return bytes.fromhex(self.oracle_public_key) if self.oracle_public_key else None

    @property
    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy for collaborator calls."""
        from .retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            multiplier=self.retry_backoff_multiplier,
            timeout=self.collaborator_timeout,
        )


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: CoreSettings | None = None


def get_config() -> CoreSettings:
    """Get the global configuration instance.

    Returns:
        The singleton CoreSettings instance.
    """
    global _config
    if _config is None:
        _config = CoreSettings()
    return _config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None
