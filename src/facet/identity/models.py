"""Identity models for Facet.

A principal owns exactly one :class:`RootIdentity`. From it, any number of
:class:`ContextIdentity` records are derived, one per use case, each at a
sequential index whose address is a pure function of the root address and
the index.

Records are immutable. State changes (revocation, committed totals, privacy
level) produce a new record via :func:`dataclasses.replace`, which the
ledger stores whole.

Idempotent operations return an :class:`Outcome` that says whether the
record was created now or already existed, instead of raising.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PrivacyLevel(enum.StrEnum):
    """Advisory privacy preference of a root identity."""

    MAXIMUM = "maximum"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    PUBLIC = "public"


class ContextCategory(enum.StrEnum):
    """Well-known context category labels.

    The ``category`` field of a context is an opaque label; these are the
    labels shipped with the package, not an exhaustive list.
    """

    DEFI = "defi"
    SOCIAL = "social"
    GAMING = "gaming"
    PROFESSIONAL = "professional"
    TEMPORARY = "temporary"
    PUBLIC = "public"


class OutcomeStatus(enum.StrEnum):
    """How an idempotent operation resolved."""

    CREATED = "created"
    ALREADY_EXISTED = "already_existed"
    REVOKED = "revoked"
    ALREADY_REVOKED = "already_revoked"


# ---------------------------------------------------------------------------
# RootIdentity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RootIdentity:
    """Top-level identity of one principal.

    Attributes:
        owner: Opaque principal identifier (e.g. a wallet public key).
        address: Deterministic address derived from ``owner``.
        created_at: Creation time, set once.
        privacy_level: Advisory privacy preference.
        context_count: Next free context index. Only ever increases.
    """

    owner: str
    address: str
    created_at: datetime = field(default_factory=_utcnow)
    privacy_level: PrivacyLevel = PrivacyLevel.HIGH
    context_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "address": self.address,
            "created_at": self.created_at.isoformat(),
            "privacy_level": self.privacy_level.value,
            "context_count": self.context_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RootIdentity:
        return cls(
            owner=data["owner"],
            address=data["address"],
            created_at=_parse_ts(data.get("created_at")) or _utcnow(),
            privacy_level=PrivacyLevel(data.get("privacy_level", "high")),
            context_count=int(data.get("context_count", 0)),
        )


# ---------------------------------------------------------------------------
# ContextIdentity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContextIdentity:
    """A disposable sub-identity derived from a root at a fixed index.

    Attributes:
        root_address: Address of the owning root (non-owning reference).
        index: Position under the root; unique and never reused.
        address: Deterministic address derived from ``(root_address, index)``.
        category: Opaque use-case label.
        max_per_operation: Optional per-operation ceiling, enforced by the ledger.
        total_committed: Running total of committed amounts.
        revoked: One-way flag; a revoked context accepts no new commitments.
        created_at: Creation time.
        revoked_at: Time of revocation, if revoked.
        creation_token: Identifies the create request that wrote this record.
    """

    root_address: str
    index: int
    address: str
    category: str
    max_per_operation: int | None = None
    total_committed: int = 0
    revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    revoked_at: datetime | None = None
    creation_token: str = ""

    @property
    def is_active(self) -> bool:
        return not self.revoked

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_address": self.root_address,
            "index": self.index,
            "address": self.address,
            "category": self.category,
            "max_per_operation": self.max_per_operation,
            "total_committed": self.total_committed,
            "revoked": self.revoked,
            "created_at": self.created_at.isoformat(),
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "creation_token": self.creation_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextIdentity:
        return cls(
            root_address=data["root_address"],
            index=int(data["index"]),
            address=data["address"],
            category=data["category"],
            max_per_operation=data.get("max_per_operation"),
            total_committed=int(data.get("total_committed", 0)),
            revoked=bool(data.get("revoked", False)),
            created_at=_parse_ts(data.get("created_at")) or _utcnow(),
            revoked_at=_parse_ts(data.get("revoked_at")),
            creation_token=data.get("creation_token", ""),
        )


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of an idempotent registry operation.

    ``status`` distinguishes a fresh state change from one that had already
    been applied; both are successes and both carry the current record.
    """

    status: OutcomeStatus
    record: T

    @property
    def is_idempotent(self) -> bool:
        """True when the operation found its effect already in place."""
        return self.status in (OutcomeStatus.ALREADY_EXISTED, OutcomeStatus.ALREADY_REVOKED)

    @property
    def created(self) -> bool:
        return self.status == OutcomeStatus.CREATED

    @classmethod
    def new(cls, record: T) -> Outcome[T]:
        return cls(OutcomeStatus.CREATED, record)

    @classmethod
    def existing(cls, record: T) -> Outcome[T]:
        return cls(OutcomeStatus.ALREADY_EXISTED, record)

    def to_dict(self) -> dict[str, Any]:
        record = self.record.to_dict() if hasattr(self.record, "to_dict") else self.record
        return {"status": self.status.value, "record": record}
