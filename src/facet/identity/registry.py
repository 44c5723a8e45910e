"""Identity registry — root and context lifecycle over a ledger.

The registry enforces the identity invariants on top of a :class:`Ledger`:

- One root identity per owner. Creating it twice returns the existing record.
- Context indices are assigned sequentially from ``context_count`` and never
  reused. The ledger advances the count atomically with the write; the
  registry performs an optimistic check-then-write with bounded retry.
- Revocation is one-way. Revoking twice succeeds without a second write.

Typical workflow::

    registry = IdentityRegistry(InMemoryLedger())

    root = (await registry.create_root("owner-key", PrivacyLevel.HIGH)).record
    ctx = (await registry.create_context(root, "trading", 1_000)).record
    await registry.revoke(ctx)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from facet.core.config import get_config
from facet.core.exceptions import (
    ContextRevokedError,
    FatalCollaboratorError,
    NotFoundError,
    RetryExhaustedError,
    SpendingLimitExceededError,
    TransientCollaboratorError,
)
from facet.core.retry import RetryPolicy, call_with_timeout, retry_async
from facet.core.validation import (
    validate_amount,
    validate_category,
    validate_context_index,
    validate_enum,
    validate_owner,
)
from facet.identity.derivation import derive_context_address, derive_root_address
from facet.identity.ledger import (
    InMemoryLedger,
    Ledger,
    LedgerAlreadyAppliedError,
    LedgerAlreadyExistsError,
    LedgerRejectedError,
    LedgerUnavailableError,
)
from facet.identity.models import (
    ContextIdentity,
    Outcome,
    OutcomeStatus,
    PrivacyLevel,
    RootIdentity,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

COLLABORATOR = "ledger"


class IdentityRegistry:
    """Service for creating, resolving and revoking identities."""

    def __init__(self, ledger: Ledger | None = None, policy: RetryPolicy | None = None) -> None:
        self._ledger: Any = ledger if ledger is not None else InMemoryLedger()
        self._policy = policy or get_config().retry_policy
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    # -- collaborator plumbing ----------------------------------------------

    def _translated(self, operation: str, fn: Callable[[], Awaitable[T]]) -> Callable[[], Awaitable[T]]:
        """Wrap a ledger call so its errors become Facet errors.

        "Already exists" / "already applied" pass through untouched; callers
        resolve them into idempotent outcomes.
        """

        async def attempt() -> T:
            try:
                return await fn()
            except LedgerUnavailableError as exc:
                raise TransientCollaboratorError(f"{operation}: {exc}", collaborator=COLLABORATOR) from exc
            except LedgerRejectedError as exc:
                raise FatalCollaboratorError(
                    f"{operation} rejected ({exc.code}): {exc}", collaborator=COLLABORATOR
                ) from exc

        return attempt

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(self._translated(operation, fn), self._policy, operation, COLLABORATOR)

    async def _call_once(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await call_with_timeout(self._translated(operation, fn), self._policy.timeout, operation, COLLABORATOR)

    def _lock_for(self, owner: str) -> asyncio.Lock:
        """Per-owner lock, dropped once no caller holds it."""
        lock = self._locks.get(owner)
        if lock is None:
            lock = self._locks[owner] = asyncio.Lock()
        return lock

    # -- reads ----------------------------------------------------------------

    async def get_root(self, owner: str) -> RootIdentity | None:
        """Return the root identity for ``owner``, or None."""
        validate_owner(owner)
        return await self._call("read_root", lambda: self._ledger.read_root(owner))

    async def require_root(self, owner: str) -> RootIdentity:
        root = await self.get_root(owner)
        if root is None:
            raise NotFoundError("RootIdentity", owner)
        return root

    async def get_context(self, root_address: str, index: int) -> ContextIdentity | None:
        """Return the context at ``index`` under ``root_address``, or None."""
        validate_context_index(index)
        return await self._call("read_context", lambda: self._ledger.read_context(root_address, index))

    async def refresh(self, context: ContextIdentity) -> ContextIdentity:
        """Re-read a context from the ledger."""
        current = await self.get_context(context.root_address, context.index)
        if current is None or current.address != context.address:
            raise NotFoundError("ContextIdentity", context.address)
        return current

    async def list_contexts(self, root: RootIdentity) -> list[ContextIdentity]:
        """Regenerate every context of ``root`` by index.

        Indices abandoned by failed creation attempts are skipped.
        """
        current = await self.require_root(root.owner)
        contexts = []
        for index in range(current.context_count):
            context = await self.get_context(current.address, index)
            if context is not None:
                contexts.append(context)
        return contexts

    # -- roots ----------------------------------------------------------------

    async def create_root(
        self,
        owner: str,
        privacy_level: PrivacyLevel | str = PrivacyLevel.HIGH,
    ) -> Outcome[RootIdentity]:
        """Create the root identity for ``owner``, or return the existing one.

        A duplicate write rejected by the ledger (a concurrent creator won)
        resolves to the stored record, never an error.
        """
        validate_owner(owner)
        level = validate_enum(privacy_level, PrivacyLevel, "privacy_level")

        existing = await self.get_root(owner)
        if existing is not None:
            logger.debug("Root identity for owner already exists")
            return Outcome.existing(existing)

        record = RootIdentity(
            owner=owner,
            address=derive_root_address(owner),
            privacy_level=level,
        )
        try:
            await self._call("write_root", lambda: self._ledger.write_root(record))
        except LedgerAlreadyExistsError:
            logger.info("Root identity already exists (caught during creation)")
            return Outcome.existing(await self.require_root(owner))

        logger.info("Created root identity %s", record.address[:16])
        return Outcome.new(record)

    async def update_privacy_level(
        self,
        root: RootIdentity,
        privacy_level: PrivacyLevel | str,
    ) -> Outcome[RootIdentity]:
        """Change the advisory privacy level of a root identity."""
        level = validate_enum(privacy_level, PrivacyLevel, "privacy_level")
        current = await self.require_root(root.owner)
        if current.privacy_level == level:
            return Outcome.existing(current)
        try:
            await self._call(
                "write_privacy_level",
                lambda: self._ledger.write_privacy_level(root.owner, level),
            )
        except LedgerAlreadyAppliedError:
            return Outcome.existing(await self.require_root(root.owner))
        return Outcome.new(await self.require_root(root.owner))

    # -- contexts -------------------------------------------------------------

    async def create_context(
        self,
        root: RootIdentity,
        category: str,
        max_per_operation: int | None = None,
        request_id: str | None = None,
    ) -> Outcome[ContextIdentity]:
        """Create the next context identity under ``root``.

        Args:
            root: Owning root identity.
            category: Opaque use-case label.
            max_per_operation: Optional per-operation ceiling.
            request_id: Idempotency key. A caller retrying an abandoned call
                with the same key gets the context that call wrote instead
                of a second one.

        Returns:
            ``CREATED`` with the new record, or ``ALREADY_EXISTED`` when
            ``request_id`` matches the latest context.

        Raises:
            NotFoundError: The root does not exist on the ledger.
            RetryExhaustedError: No index could be claimed within the policy.
        """
        category = validate_category(category)
        if max_per_operation is not None:
            max_per_operation = validate_amount(max_per_operation, "max_per_operation")
        token = request_id or uuid.uuid4().hex

        async with self._lock_for(root.owner):
            if request_id is not None:
                landed = await self._find_landed(root.owner, token)
                if landed is not None:
                    return Outcome.existing(landed)

            last_error: Exception | None = None
            for attempt in range(self._policy.max_attempts):
                current = await self.require_root(root.owner)
                index = current.context_count
                record = ContextIdentity(
                    root_address=current.address,
                    index=index,
                    address=derive_context_address(current.address, index),
                    category=category,
                    max_per_operation=max_per_operation,
                    creation_token=token,
                )
                try:
                    await self._call_once("write_context", lambda: self._ledger.write_context(record))
                    logger.info("Created context %d under root %s", index, current.address[:16])
                    return Outcome.new(record)
                except LedgerAlreadyExistsError:
                    mine = await self._claimed_by(current.address, index, token)
                    if mine is not None:
                        return Outcome.new(mine)
                    last_error = TransientCollaboratorError(
                        f"context index {index} claimed by a concurrent writer",
                        collaborator=COLLABORATOR,
                    )
                    logger.info("Context index %d taken concurrently, retrying", index)
                except TransientCollaboratorError as exc:
                    # The write may have landed; re-check before trying again.
                    mine = await self._claimed_by(current.address, index, token)
                    if mine is not None:
                        logger.info("Context %d write landed despite %s", index, type(exc).__name__)
                        return Outcome.new(mine)
                    last_error = exc
                    logger.warning("write_context failed for index %d: %s", index, exc)

                if attempt + 1 < self._policy.max_attempts:
                    await asyncio.sleep(self._policy.delay_for(attempt))

        raise RetryExhaustedError("create_context", self._policy.max_attempts, last_error)

    async def _claimed_by(self, root_address: str, index: int, token: str) -> ContextIdentity | None:
        existing = await self.get_context(root_address, index)
        if existing is not None and existing.creation_token == token:
            return existing
        return None

    async def _find_landed(self, owner: str, token: str) -> ContextIdentity | None:
        current = await self.require_root(owner)
        if current.context_count == 0:
            return None
        return await self._claimed_by(current.address, current.context_count - 1, token)

    async def revoke(self, context: ContextIdentity) -> Outcome[ContextIdentity]:
        """Revoke a context identity.

        Already-revoked contexts return ``ALREADY_REVOKED`` without a ledger
        write. A ledger "already applied" rejection is also success.
        """
        current = await self.refresh(context)
        if current.revoked:
            logger.debug("Context %s is already revoked", current.address[:16])
            return Outcome(OutcomeStatus.ALREADY_REVOKED, current)

        status = OutcomeStatus.REVOKED
        try:
            await self._call("write_revocation", lambda: self._ledger.write_revocation(current.address))
        except LedgerAlreadyAppliedError:
            logger.info("Context was already revoked (caught during revocation)")
            status = OutcomeStatus.ALREADY_REVOKED

        updated = await self.refresh(current)
        if not updated.revoked:
            raise FatalCollaboratorError(
                f"ledger acknowledged revocation of {current.address} but state is unchanged",
                collaborator=COLLABORATOR,
            )
        logger.info("Revoked context %d (total committed %d)", updated.index, updated.total_committed)
        return Outcome(status, updated)

    async def revoke_by_index(self, root: RootIdentity, index: int) -> Outcome[ContextIdentity]:
        """Revoke the context at ``index`` under ``root``."""
        current = await self.require_root(root.owner)
        context = await self.get_context(current.address, index)
        if context is None:
            raise NotFoundError("ContextIdentity", derive_context_address(current.address, index))
        return await self.revoke(context)

    # -- spending -------------------------------------------------------------

    async def check_spending_limit(self, context: ContextIdentity, amount: int) -> ContextIdentity:
        """Check an amount against the context's current state.

        Returns:
            The refreshed context.

        Raises:
            ContextRevokedError: The context is revoked.
            SpendingLimitExceededError: ``amount`` exceeds ``max_per_operation``.
        """
        amount = validate_amount(amount)
        current = await self.refresh(context)
        if current.revoked:
            raise ContextRevokedError(current.address)
        if current.max_per_operation is not None and amount > current.max_per_operation:
            raise SpendingLimitExceededError(amount, current.max_per_operation)
        return current

    async def record_commitment(self, context: ContextIdentity, amount: int) -> ContextIdentity:
        """Add ``amount`` to the context's committed total on the ledger."""
        current = await self.check_spending_limit(context, amount)
        # Not retried: a landed-but-unacknowledged write would be counted twice.
        await self._call_once(
            "record_commitment",
            lambda: self._ledger.record_commitment(current.address, amount),
        )
        return await self.refresh(current)
