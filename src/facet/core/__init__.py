"""Facet Core - configuration, errors, logging and retry shared by all components."""

from .config import CoreSettings, clear_config_cache, get_config
from .exceptions import (
    CollaboratorError,
    CollaboratorTimeoutError,
    ConfigException,
    ContextRevokedError,
    EncryptionUnavailableError,
    FacetException,
    FatalCollaboratorError,
    NotFoundError,
    PredicateFalseError,
    RetryExhaustedError,
    SpendingLimitExceededError,
    TransientCollaboratorError,
    ValidationException,
    ValueOutOfRangeError,
)
from .logging import (
    RunStateFilter,
    StageLogger,
    configure_logging,
    correlation_context,
    redact,
    stage_logger,
)
from .retry import RetryPolicy, retry_async

__all__ = [
    # Config
    "CoreSettings",
    "get_config",
    "clear_config_cache",
    # Exceptions
    "FacetException",
    "ValidationException",
    "ValueOutOfRangeError",
    "PredicateFalseError",
    "ConfigException",
    "NotFoundError",
    "ContextRevokedError",
    "SpendingLimitExceededError",
    "CollaboratorError",
    "TransientCollaboratorError",
    "CollaboratorTimeoutError",
    "EncryptionUnavailableError",
    "FatalCollaboratorError",
    "RetryExhaustedError",
    # Logging
    "configure_logging",
    "correlation_context",
    "redact",
    "RunStateFilter",
    "StageLogger",
    "stage_logger",
    # Retry
    "RetryPolicy",
    "retry_async",
]
