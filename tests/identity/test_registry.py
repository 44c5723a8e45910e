"""Tests for the IdentityRegistry service layer.

Tests cover:
- Root creation and idempotent re-creation (including racing creators)
- Sequential, never-reused context indices under concurrency
- Retry-safe context creation when a write lands but its ack is lost
- Idempotent revocation
- Spending limits and committed totals
- Translation of ledger errors into Facet errors
"""

from __future__ import annotations

import asyncio
import gc

import pytest

from facet.core.exceptions import (
    ContextRevokedError,
    FatalCollaboratorError,
    NotFoundError,
    RetryExhaustedError,
    SpendingLimitExceededError,
    TransientCollaboratorError,
    ValidationException,
    ValueOutOfRangeError,
)
from facet.identity.derivation import derive_context_address, derive_root_address
from facet.identity.ledger import LedgerError
from facet.identity.models import OutcomeStatus, PrivacyLevel
from facet.identity.registry import IdentityRegistry

OWNER = "owner-pubkey-7f3a"


@pytest.fixture
def flaky_registry(flaky_ledger, policy) -> IdentityRegistry:
    return IdentityRegistry(flaky_ledger, policy)


# ---------------------------------------------------------------------------
# Roots
# ---------------------------------------------------------------------------


class TestCreateRoot:
    @pytest.mark.asyncio
    async def test_creates_root(self, registry):
        outcome = await registry.create_root(OWNER, PrivacyLevel.HIGH)
        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.record.owner == OWNER
        assert outcome.record.address == derive_root_address(OWNER)
        assert outcome.record.context_count == 0

    @pytest.mark.asyncio
    async def test_second_call_returns_existing(self, registry, ledger):
        first = await registry.create_root(OWNER, PrivacyLevel.HIGH)
        await registry.create_context(first.record, "trading")

        second = await registry.create_root(OWNER, PrivacyLevel.HIGH)

        assert second.status == OutcomeStatus.ALREADY_EXISTED
        assert second.is_idempotent
        assert second.record.owner == first.record.owner
        assert second.record.context_count == 1
        assert ledger.write_counts["write_root"] == 1

    @pytest.mark.asyncio
    async def test_racing_creators_yield_one_record(self, registry, ledger):
        outcomes = await asyncio.gather(
            registry.create_root(OWNER, PrivacyLevel.HIGH),
            registry.create_root(OWNER, PrivacyLevel.HIGH),
        )
        assert sorted(o.status for o in outcomes) == sorted([OutcomeStatus.CREATED, OutcomeStatus.ALREADY_EXISTED])
        assert ledger.root_count() == 1
        assert outcomes[0].record.address == outcomes[1].record.address

    @pytest.mark.asyncio
    async def test_privacy_level_string(self, registry):
        outcome = await registry.create_root(OWNER, "maximum")
        assert outcome.record.privacy_level == PrivacyLevel.MAXIMUM

    @pytest.mark.asyncio
    async def test_invalid_input_makes_no_calls(self, registry, ledger):
        with pytest.raises(ValidationException):
            await registry.create_root(OWNER, "invisible")
        with pytest.raises(ValidationException):
            await registry.create_root("", PrivacyLevel.HIGH)
        assert ledger.write_counts == {}

    @pytest.mark.asyncio
    async def test_transient_write_is_retried(self, flaky_registry, flaky_ledger):
        flaky_ledger.fail("write_root", 2)
        outcome = await flaky_registry.create_root(OWNER)
        assert outcome.status == OutcomeStatus.CREATED
        assert flaky_ledger.calls["write_root"] == 3

    @pytest.mark.asyncio
    async def test_lost_ack_resolves_to_existing(self, flaky_registry, flaky_ledger):
        flaky_ledger.lose_ack("write_root")
        outcome = await flaky_registry.create_root(OWNER)
        assert outcome.status == OutcomeStatus.ALREADY_EXISTED
        assert flaky_ledger.root_count() == 1

    @pytest.mark.asyncio
    async def test_unavailable_ledger_exhausts(self, flaky_registry, flaky_ledger):
        flaky_ledger.fail("read_root", 10)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await flaky_registry.create_root(OWNER)
        assert exc_info.value.operation == "read_root"
        assert isinstance(exc_info.value.last_error, TransientCollaboratorError)
        assert not isinstance(exc_info.value.last_error, LedgerError)


class TestPrivacyLevel:
    @pytest.mark.asyncio
    async def test_update(self, registry):
        root = (await registry.create_root(OWNER, PrivacyLevel.HIGH)).record
        outcome = await registry.update_privacy_level(root, PrivacyLevel.LOW)
        assert outcome.created
        assert outcome.record.privacy_level == PrivacyLevel.LOW

    @pytest.mark.asyncio
    async def test_unchanged_is_idempotent(self, registry, ledger):
        root = (await registry.create_root(OWNER, PrivacyLevel.HIGH)).record
        outcome = await registry.update_privacy_level(root, "high")
        assert outcome.status == OutcomeStatus.ALREADY_EXISTED
        assert "write_privacy_level" not in ledger.write_counts

    @pytest.mark.asyncio
    async def test_unknown_root(self, registry, root_record):
        with pytest.raises(NotFoundError):
            await registry.update_privacy_level(root_record, PrivacyLevel.LOW)


# ---------------------------------------------------------------------------
# Contexts
# ---------------------------------------------------------------------------


class TestCreateContext:
    @pytest.mark.asyncio
    async def test_indices_are_sequential(self, registry):
        root = (await registry.create_root(OWNER, PrivacyLevel.HIGH)).record

        first = await registry.create_context(root, "trading", 1_000)
        second = await registry.create_context(root, "trading", 1_000)

        assert first.status == OutcomeStatus.CREATED
        assert first.record.index == 0
        assert second.record.index == 1
        assert first.record.address == derive_context_address(root.address, 0)
        assert first.record.max_per_operation == 1_000
        assert (await registry.get_root(OWNER)).context_count == 2

    @pytest.mark.asyncio
    async def test_stale_root_record_does_not_reuse_index(self, registry):
        """The index comes from the ledger, not the caller's copy of the root."""
        stale = (await registry.create_root(OWNER)).record
        await registry.create_context(stale, "trading")
        ctx = (await registry.create_context(stale, "trading")).record
        assert stale.context_count == 0
        assert ctx.index == 1

    @pytest.mark.asyncio
    async def test_concurrent_creation_unique_indices(self, registry, ledger):
        root = (await registry.create_root(OWNER)).record
        outcomes = await asyncio.gather(*(registry.create_context(root, "social") for _ in range(5)))
        assert sorted(o.record.index for o in outcomes) == [0, 1, 2, 3, 4]
        assert len({o.record.address for o in outcomes}) == 5
        assert len(ledger.contexts_for(root.address)) == 5

    @pytest.mark.asyncio
    async def test_owner_locks_released_after_creation(self, registry):
        root = (await registry.create_root(OWNER)).record
        await asyncio.gather(*(registry.create_context(root, "social") for _ in range(3)))
        gc.collect()
        assert OWNER not in registry._locks

        ctx = (await registry.create_context(root, "social")).record
        assert ctx.index == 3

    @pytest.mark.asyncio
    async def test_lost_race_moves_to_next_index(self, flaky_registry, flaky_ledger):
        root = (await flaky_registry.create_root(OWNER)).record
        flaky_ledger.steal_index(1)

        outcome = await flaky_registry.create_context(root, "trading")

        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.record.index == 1
        stored = flaky_ledger.contexts_for(root.address)
        assert [c.category for c in stored] == ["competitor", "trading"]

    @pytest.mark.asyncio
    async def test_landed_write_is_rechecked_not_duplicated(self, flaky_registry, flaky_ledger):
        root = (await flaky_registry.create_root(OWNER)).record
        flaky_ledger.lose_ack("write_context")

        outcome = await flaky_registry.create_context(root, "trading")

        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.record.index == 0
        assert len(flaky_ledger.contexts_for(root.address)) == 1
        assert flaky_ledger.calls["write_context"] == 1
        assert (await flaky_registry.get_root(OWNER)).context_count == 1

    @pytest.mark.asyncio
    async def test_transient_failure_retries_same_index(self, flaky_registry, flaky_ledger):
        root = (await flaky_registry.create_root(OWNER)).record
        flaky_ledger.fail("write_context", 1)

        outcome = await flaky_registry.create_context(root, "trading")

        assert outcome.record.index == 0
        assert flaky_ledger.calls["write_context"] == 2

    @pytest.mark.asyncio
    async def test_exhaustion(self, flaky_registry, flaky_ledger):
        root = (await flaky_registry.create_root(OWNER)).record
        flaky_ledger.fail("write_context", 10)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await flaky_registry.create_context(root, "trading")

        assert exc_info.value.operation == "create_context"
        assert exc_info.value.attempts == 3
        assert flaky_ledger.contexts_for(root.address) == []

    @pytest.mark.asyncio
    async def test_request_id_is_idempotent(self, registry, ledger):
        root = (await registry.create_root(OWNER)).record

        first = await registry.create_context(root, "trading", request_id="req-42")
        again = await registry.create_context(root, "trading", request_id="req-42")

        assert first.status == OutcomeStatus.CREATED
        assert again.status == OutcomeStatus.ALREADY_EXISTED
        assert again.record.address == first.record.address
        assert ledger.write_counts["write_context"] == 1

    @pytest.mark.asyncio
    async def test_missing_root(self, registry, root_record):
        with pytest.raises(NotFoundError):
            await registry.create_context(root_record, "trading")

    @pytest.mark.asyncio
    async def test_validation_before_ledger(self, registry, ledger):
        root = (await registry.create_root(OWNER)).record
        with pytest.raises(ValidationException):
            await registry.create_context(root, "Not A Slug")
        with pytest.raises(ValueOutOfRangeError):
            await registry.create_context(root, "trading", -5)
        assert "write_context" not in ledger.write_counts


class TestReadContexts:
    @pytest.mark.asyncio
    async def test_get_context(self, registry):
        root = (await registry.create_root(OWNER)).record
        created = (await registry.create_context(root, "defi")).record
        assert await registry.get_context(root.address, 0) == created
        assert await registry.get_context(root.address, 1) is None

    @pytest.mark.asyncio
    async def test_list_contexts_includes_foreign_writes(self, flaky_registry, flaky_ledger):
        root = (await flaky_registry.create_root(OWNER)).record
        await flaky_registry.create_context(root, "defi")
        flaky_ledger.steal_index(1)
        await flaky_registry.create_context(root, "gaming")

        contexts = await flaky_registry.list_contexts(root)

        assert [c.index for c in contexts] == [0, 1, 2]
        assert [c.category for c in contexts] == ["defi", "competitor", "gaming"]

    @pytest.mark.asyncio
    async def test_refresh_unknown(self, registry, context_pair):
        with pytest.raises(NotFoundError):
            await registry.refresh(context_pair[0])


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_twice(self, registry, ledger):
        root = (await registry.create_root(OWNER)).record
        ctx = (await registry.create_context(root, "trading")).record

        first = await registry.revoke(ctx)
        second = await registry.revoke(ctx)

        assert first.status == OutcomeStatus.REVOKED
        assert first.record.revoked
        assert second.status == OutcomeStatus.ALREADY_REVOKED
        assert second.record.revoked
        assert ledger.write_counts["write_revocation"] == 1

    @pytest.mark.asyncio
    async def test_revoked_context_is_never_reused(self, registry):
        root = (await registry.create_root(OWNER)).record
        ctx = (await registry.create_context(root, "trading")).record
        await registry.revoke(ctx)
        nxt = (await registry.create_context(root, "trading")).record
        assert nxt.index == 1
        assert nxt.address != ctx.address

    @pytest.mark.asyncio
    async def test_lost_ack_resolves_to_already_revoked(self, flaky_registry, flaky_ledger):
        root = (await flaky_registry.create_root(OWNER)).record
        ctx = (await flaky_registry.create_context(root, "trading")).record
        flaky_ledger.lose_ack("write_revocation")

        outcome = await flaky_registry.revoke(ctx)

        assert outcome.status == OutcomeStatus.ALREADY_REVOKED
        assert outcome.record.revoked

    @pytest.mark.asyncio
    async def test_revoke_by_index(self, registry):
        root = (await registry.create_root(OWNER)).record
        await registry.create_context(root, "trading")
        await registry.create_context(root, "gaming")

        outcome = await registry.revoke_by_index(root, 1)

        assert outcome.record.index == 1
        assert outcome.record.revoked
        assert not (await registry.get_context(root.address, 0)).revoked

    @pytest.mark.asyncio
    async def test_revoke_by_missing_index(self, registry):
        root = (await registry.create_root(OWNER)).record
        with pytest.raises(NotFoundError):
            await registry.revoke_by_index(root, 3)


# ---------------------------------------------------------------------------
# Spending
# ---------------------------------------------------------------------------


class TestSpending:
    @pytest.mark.asyncio
    async def test_within_limit(self, registry):
        root = (await registry.create_root(OWNER)).record
        ctx = (await registry.create_context(root, "defi", 1_000)).record
        current = await registry.check_spending_limit(ctx, 1_000)
        assert current.address == ctx.address

    @pytest.mark.asyncio
    async def test_over_limit(self, registry):
        root = (await registry.create_root(OWNER)).record
        ctx = (await registry.create_context(root, "defi", 1_000)).record
        with pytest.raises(SpendingLimitExceededError) as exc_info:
            await registry.check_spending_limit(ctx, 1_001)
        assert exc_info.value.limit == 1_000

    @pytest.mark.asyncio
    async def test_no_limit(self, registry):
        root = (await registry.create_root(OWNER)).record
        ctx = (await registry.create_context(root, "defi")).record
        await registry.check_spending_limit(ctx, 10**18)

    @pytest.mark.asyncio
    async def test_revoked(self, registry):
        root = (await registry.create_root(OWNER)).record
        ctx = (await registry.create_context(root, "defi")).record
        await registry.revoke(ctx)
        with pytest.raises(ContextRevokedError):
            await registry.check_spending_limit(ctx, 1)

    @pytest.mark.asyncio
    async def test_record_commitment(self, registry):
        root = (await registry.create_root(OWNER)).record
        ctx = (await registry.create_context(root, "defi", 1_000)).record
        await registry.record_commitment(ctx, 300)
        updated = await registry.record_commitment(ctx, 700)
        assert updated.total_committed == 1_000

    @pytest.mark.asyncio
    async def test_ledger_rejection_is_translated(self, registry):
        root = (await registry.create_root(OWNER)).record
        ctx = (await registry.create_context(root, "defi")).record
        await registry.record_commitment(ctx, 2**64 - 1)
        with pytest.raises(FatalCollaboratorError) as exc_info:
            await registry.record_commitment(ctx, 1)
        assert "overflow" in str(exc_info.value)
        assert exc_info.value.collaborator == "ledger"
