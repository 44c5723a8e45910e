# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Facet Contributors

"""Custom exception hierarchy for Facet.

Every public operation either returns a value or raises one of these types.
Collaborator-specific errors (ledger, oracle, proving backend) are translated
into this hierarchy at the component boundary and never reach callers raw.

Categories:
- Validation errors: local, raised before any external call, never retried.
- Transient collaborator errors: retried with bounded backoff.
- Fatal collaborator errors: surfaced immediately.
"""

from __future__ import annotations

from typing import Any


class FacetException(Exception):  # noqa: N818
    """Base exception for all Facet errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationException(FacetException):
    """Exception for local validation errors.

    Raised when:
    - A numeric input is negative or out of range
    - An identifier or label is malformed
    - A predicate-false proof is requested
    """

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class ValueOutOfRangeError(ValidationException):
    """A value cannot be represented by the cipher or the circuit field."""


class PredicateFalseError(ValidationException):
    """The secret value does not satisfy the public threshold.

    Raised instead of producing a proof whose predicate is false. The secret
    itself is never stored on the exception.
    """

    def __init__(self, public_threshold: int):
        super().__init__(
            "Secret value does not meet the public threshold",
            field="public_threshold",
            value=public_threshold,
        )
        self.public_threshold = public_threshold


class ConfigException(FacetException):
    """Exception for configuration errors.

    Raised when:
    - A live component is built without its collaborator
    - Simulation mode is requested where it is not permitted
    - Configured key material is malformed
    """

    def __init__(self, message: str, missing_vars: list[str] | None = None):
        details = {}
        if missing_vars:
            details["missing_vars"] = missing_vars
        super().__init__(message, details)
        self.missing_vars = missing_vars or []


class NotFoundError(FacetException):
    """A root or context identity does not exist on the ledger."""

    def __init__(self, resource_type: str, resource_id: str):
        message = f"{resource_type} not found: {resource_id}"
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ContextRevokedError(FacetException):
    """An operation targets a revoked context identity."""

    def __init__(self, context_address: str):
        super().__init__(
            f"Context {context_address} is revoked",
            {"context_address": context_address},
        )
        self.context_address = context_address


class SpendingLimitExceededError(FacetException):
    """An amount exceeds the context's per-operation ceiling."""

    def __init__(self, amount: int, limit: int):
        super().__init__(
            f"Amount {amount} exceeds per-operation limit {limit}",
            {"amount": str(amount), "limit": str(limit)},
        )
        self.amount = amount
        self.limit = limit


class CollaboratorError(FacetException):
    """Base for failures talking to the ledger, oracle, or proving backend."""

    def __init__(self, message: str, collaborator: str | None = None):
        details = {}
        if collaborator:
            details["collaborator"] = collaborator
        super().__init__(message, details)
        self.collaborator = collaborator


class TransientCollaboratorError(CollaboratorError):
    """A collaborator call failed in a way that may succeed on retry."""


class CollaboratorTimeoutError(TransientCollaboratorError):
    """A collaborator call did not complete within the configured timeout."""


class EncryptionUnavailableError(TransientCollaboratorError):
    """The encryption oracle could not be reached."""

    def __init__(self, message: str = "Encryption oracle unavailable"):
        super().__init__(message, collaborator="encryption_oracle")


class FatalCollaboratorError(CollaboratorError):
    """A collaborator rejected a request or returned a malformed response."""


class RetryExhaustedError(FacetException):
    """All retry attempts for an operation failed with transient errors."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None):
        cause = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown"
        super().__init__(
            f"{operation} failed after {attempts} attempt(s); last error: {cause}",
            {"operation": operation, "attempts": attempts, "last_error": cause},
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
