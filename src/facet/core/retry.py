"""Bounded retry with exponential backoff for collaborator calls.

Every call to the ledger, encryption oracle or proving backend goes through
:func:`retry_async`. Each attempt runs under a timeout; a timeout becomes a
:class:`CollaboratorTimeoutError`, which is retried like any other
:class:`TransientCollaboratorError`. Any other exception propagates on the
first occurrence. When all attempts fail, a single
:class:`RetryExhaustedError` naming the last cause is raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .exceptions import CollaboratorTimeoutError, RetryExhaustedError, TransientCollaboratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound on any single delay.
        multiplier: Exponential backoff multiplier.
        timeout: Per-attempt timeout in seconds, or None for no timeout.
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    multiplier: float = 2.0
    timeout: float | None = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.base_delay * (self.multiplier**attempt), self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0)


async def call_with_timeout(
    fn: Callable[[], Awaitable[T]],
    timeout: float | None,
    operation: str,
    collaborator: str | None = None,
) -> T:
    """Run one collaborator call, mapping a timeout to CollaboratorTimeoutError."""
    try:
        if timeout is None:
            return await fn()
        return await asyncio.wait_for(fn(), timeout)
    except TimeoutError as exc:
        raise CollaboratorTimeoutError(
            f"{operation} timed out after {timeout}s",
            collaborator=collaborator,
        ) from exc


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation: str,
    collaborator: str | None = None,
) -> T:
    """Call ``fn`` until it succeeds, retrying transient collaborator errors.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        policy: Attempts, backoff and per-attempt timeout.
        operation: Name used in logs and in the exhaustion error.
        collaborator: Collaborator name attached to timeout errors.

    Returns:
        The first successful result.

    Raises:
        RetryExhaustedError: Every attempt failed transiently.
        Exception: Any non-transient error, unchanged, on first occurrence.
    """
    last_error: TransientCollaboratorError | None = None
    for attempt in range(policy.max_attempts):
        try:
            return await call_with_timeout(fn, policy.timeout, operation, collaborator)
        except TransientCollaboratorError as exc:
            last_error = exc
            if attempt + 1 >= policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                operation,
                attempt + 1,
                policy.max_attempts,
                delay,
                exc,
                extra={"collaborator": collaborator},
            )
            await asyncio.sleep(delay)

    raise RetryExhaustedError(operation, policy.max_attempts, last_error) from last_error
