"""Global test fixtures for the Facet test suite."""

from __future__ import annotations

import asyncio
import os

import pytest

from facet.core.config import CoreSettings, clear_config_cache
from facet.core.retry import RetryPolicy
from facet.crypto.backends import AttestationProvingBackend
from facet.crypto.commitment import CommitmentBinder
from facet.crypto.oracle import LocalEncryptionOracle, OracleUnavailableError
from facet.crypto.threshold import ThresholdProver
from facet.identity.ledger import InMemoryLedger, LedgerUnavailableError
from facet.identity.models import ContextIdentity, RootIdentity
from facet.identity.registry import IdentityRegistry
from facet.pipeline import AccessPipeline

OWNER = "owner-pubkey-7f3a"

# ============================================================================
# Collaborator fakes
# ============================================================================


class FlakyLedger(InMemoryLedger):
    """InMemoryLedger that can fail calls before or after they land.

    ``fail(op, n)`` makes the next ``n`` calls to ``op`` raise
    LedgerUnavailableError without touching state. ``lose_ack(op, n)`` lets the
    next ``n`` calls apply and then raise, as if the acknowledgement was lost.
    ``steal_index(n)`` makes the next ``n`` context writes lose a race to a
    concurrent writer that claims the same index first.
    """

    def __init__(self) -> None:
        super().__init__()
        self.failures: dict[str, int] = {}
        self.lost_acks: dict[str, int] = {}
        self.steals = 0
        self.calls: dict[str, int] = {}

    def fail(self, op: str, times: int = 1) -> None:
        self.failures[op] = times

    def lose_ack(self, op: str, times: int = 1) -> None:
        self.lost_acks[op] = times

    def steal_index(self, times: int = 1) -> None:
        self.steals = times

    async def _flaky(self, op, call):
        self.calls[op] = self.calls.get(op, 0) + 1
        if self.failures.get(op, 0) > 0:
            self.failures[op] -= 1
            raise LedgerUnavailableError(f"{op}: connection reset")
        result = await call()
        if self.lost_acks.get(op, 0) > 0:
            self.lost_acks[op] -= 1
            raise LedgerUnavailableError(f"{op}: acknowledgement lost")
        return result

    async def read_root(self, owner):
        return await self._flaky("read_root", lambda: InMemoryLedger.read_root(self, owner))

    async def write_root(self, record):
        return await self._flaky("write_root", lambda: InMemoryLedger.write_root(self, record))

    async def read_context(self, root_address, index):
        return await self._flaky("read_context", lambda: InMemoryLedger.read_context(self, root_address, index))

    async def write_context(self, record):
        if self.steals > 0:
            self.steals -= 1
            competitor = ContextIdentity(
                root_address=record.root_address,
                index=record.index,
                address=record.address,
                category="competitor",
                creation_token="someone-else",
            )
            await InMemoryLedger.write_context(self, competitor)
        return await self._flaky("write_context", lambda: InMemoryLedger.write_context(self, record))

    async def write_revocation(self, context_address):
        return await self._flaky("write_revocation", lambda: InMemoryLedger.write_revocation(self, context_address))


class FlakyOracle(LocalEncryptionOracle):
    """LocalEncryptionOracle whose next ``n`` encrypt calls are unavailable."""

    def __init__(self, failures: int = 0, delay: float = 0.0) -> None:
        super().__init__()
        self.failures = failures
        self.delay = delay
        self.encrypt_calls = 0
        self.key_calls = 0

    async def get_public_key(self) -> bytes:
        self.key_calls += 1
        return await super().get_public_key()

    async def encrypt(self, shared_secret: bytes, plaintext: bytes, nonce: bytes) -> bytes:
        self.encrypt_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise OracleUnavailableError("oracle cluster unreachable")
        return await super().encrypt(shared_secret, plaintext, nonce)


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def _reset_config():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all FACET_ environment variables."""
    for key in list(os.environ.keys()):
        if key.startswith("FACET_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings(clean_env) -> CoreSettings:
    """Settings permitting simulation, with instant retries."""
    return CoreSettings(
        _env_file=None,
        environment="test",
        allow_simulation=True,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        collaborator_timeout=2.0,
    )


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, timeout=2.0)


# ============================================================================
# Components
# ============================================================================


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def flaky_ledger() -> FlakyLedger:
    return FlakyLedger()


@pytest.fixture
def registry(ledger, policy) -> IdentityRegistry:
    return IdentityRegistry(ledger, policy)


@pytest.fixture
def oracle() -> LocalEncryptionOracle:
    return LocalEncryptionOracle()


@pytest.fixture
def flaky_oracle() -> FlakyOracle:
    return FlakyOracle()


@pytest.fixture
def binder(oracle, settings, policy) -> CommitmentBinder:
    return CommitmentBinder(oracle, settings=settings, policy=policy)


@pytest.fixture
def proving_backend() -> AttestationProvingBackend:
    return AttestationProvingBackend()


@pytest.fixture
def prover(proving_backend, settings, policy) -> ThresholdProver:
    return ThresholdProver(proving_backend, settings=settings, policy=policy)


@pytest.fixture
def pipeline(registry, binder, prover, settings) -> AccessPipeline:
    return AccessPipeline(registry, binder, prover, settings)


# ============================================================================
# Records
# ============================================================================


@pytest.fixture
def root_record() -> RootIdentity:
    """A root identity that is NOT stored on any ledger."""
    from facet.identity.derivation import derive_root_address

    return RootIdentity(owner=OWNER, address=derive_root_address(OWNER))


@pytest.fixture
def context_pair(root_record) -> tuple[ContextIdentity, ContextIdentity]:
    """Contexts at index 0 and 1 under ``root_record``, not stored on a ledger."""
    from facet.identity.derivation import derive_context_address

    return tuple(
        ContextIdentity(
            root_address=root_record.address,
            index=i,
            address=derive_context_address(root_record.address, i),
            category="trading",
        )
        for i in range(2)
    )
