"""Ledger collaborator interface and in-memory reference implementation.

The ledger durably stores identity records and is the serialisation point
for ``context_count``: writing a context at index ``n`` and advancing the
root's count to ``n + 1`` happen atomically.

Ledger implementations report outcomes with the exception types defined
here. The registry translates them; they never reach Facet callers.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from typing import Protocol

from facet.identity.models import ContextIdentity, PrivacyLevel, RootIdentity

MAX_U64 = 2**64 - 1

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LedgerError(Exception):
    """Base exception for ledger collaborator failures."""


class LedgerAlreadyExistsError(LedgerError):
    """A record at the written key already exists."""


class LedgerAlreadyAppliedError(LedgerError):
    """The requested state change was already applied."""


class LedgerUnavailableError(LedgerError):
    """The ledger could not be reached; the request may be retried."""


class LedgerRejectedError(LedgerError):
    """The ledger definitively rejected the request."""

    def __init__(self, message: str, code: str = "rejected"):
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class Ledger(Protocol):
    """Durable storage for identity records."""

    async def read_root(self, owner: str) -> RootIdentity | None: ...
    async def write_root(self, record: RootIdentity) -> None: ...
    async def read_context(self, root_address: str, index: int) -> ContextIdentity | None: ...
    async def write_context(self, record: ContextIdentity) -> None: ...
    async def write_revocation(self, context_address: str) -> None: ...
    async def write_privacy_level(self, owner: str, level: PrivacyLevel) -> None: ...
    async def record_commitment(self, context_address: str, amount: int) -> None: ...


# ---------------------------------------------------------------------------
# In-memory ledger (default / tests)
# ---------------------------------------------------------------------------


class InMemoryLedger:
    """In-memory implementation of :class:`Ledger`.

    No coroutine here awaits between reading and writing state, so each call
    is atomic with respect to other tasks on the same event loop.
    """

    def __init__(self) -> None:
        self._roots: dict[str, RootIdentity] = {}
        self._roots_by_address: dict[str, str] = {}
        self._contexts: dict[str, ContextIdentity] = {}
        self._context_keys: dict[tuple[str, int], str] = {}
        self.write_counts: dict[str, int] = {}

    def _count(self, op: str) -> None:
        self.write_counts[op] = self.write_counts.get(op, 0) + 1

    # -- roots --------------------------------------------------------------

    async def read_root(self, owner: str) -> RootIdentity | None:
        return self._roots.get(owner)

    async def write_root(self, record: RootIdentity) -> None:
        self._count("write_root")
        if record.owner in self._roots:
            raise LedgerAlreadyExistsError(f"root identity for {record.owner} already exists")
        if record.context_count != 0:
            raise LedgerRejectedError("new root must start at context_count 0", code="invalid_record")
        self._roots[record.owner] = record
        self._roots_by_address[record.address] = record.owner

    async def write_privacy_level(self, owner: str, level: PrivacyLevel) -> None:
        self._count("write_privacy_level")
        root = self._roots.get(owner)
        if root is None:
            raise LedgerRejectedError(f"no root identity for {owner}", code="not_found")
        if root.privacy_level == level:
            raise LedgerAlreadyAppliedError("privacy level unchanged")
        self._roots[owner] = replace(root, privacy_level=level)

    # -- contexts -----------------------------------------------------------

    async def read_context(self, root_address: str, index: int) -> ContextIdentity | None:
        address = self._context_keys.get((root_address, index))
        return self._contexts.get(address) if address else None

    async def write_context(self, record: ContextIdentity) -> None:
        self._count("write_context")
        owner = self._roots_by_address.get(record.root_address)
        if owner is None:
            raise LedgerRejectedError(f"unknown root {record.root_address}", code="not_found")
        if (record.root_address, record.index) in self._context_keys or record.address in self._contexts:
            raise LedgerAlreadyExistsError(f"context {record.index} already exists")
        root = self._roots[owner]
        if record.index != root.context_count:
            raise LedgerAlreadyExistsError(
                f"context index {record.index} is stale; next index is {root.context_count}"
            )
        self._contexts[record.address] = record
        self._context_keys[(record.root_address, record.index)] = record.address
        self._roots[owner] = replace(root, context_count=root.context_count + 1)

    async def write_revocation(self, context_address: str) -> None:
        self._count("write_revocation")
        context = self._contexts.get(context_address)
        if context is None:
            raise LedgerRejectedError(f"unknown context {context_address}", code="not_found")
        if context.revoked:
            raise LedgerAlreadyAppliedError(f"context {context_address} already revoked")
        self._contexts[context_address] = replace(context, revoked=True, revoked_at=datetime.now(UTC))

    async def record_commitment(self, context_address: str, amount: int) -> None:
        self._count("record_commitment")
        context = self._contexts.get(context_address)
        if context is None:
            raise LedgerRejectedError(f"unknown context {context_address}", code="not_found")
        if context.revoked:
            raise LedgerRejectedError("context is revoked", code="context_revoked")
        if context.max_per_operation is not None and amount > context.max_per_operation:
            raise LedgerRejectedError("amount exceeds per-operation limit", code="limit_exceeded")
        total = context.total_committed + amount
        if total > MAX_U64:
            raise LedgerRejectedError("committed total would overflow", code="overflow")
        self._contexts[context_address] = replace(context, total_committed=total)

    # -- inspection ---------------------------------------------------------

    def contexts_for(self, root_address: str) -> list[ContextIdentity]:
        """All stored contexts under a root, in index order."""
        keys = sorted(i for (r, i) in self._context_keys if r == root_address)
        return [self._contexts[self._context_keys[(root_address, i)]] for i in keys]

    def root_count(self) -> int:
        return len(self._roots)
