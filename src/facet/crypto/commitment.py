"""Commitment binder — encrypt a secret value and bind it to one context.

Protocol for :meth:`CommitmentBinder.bind`:

1. Generate a fresh X25519 ephemeral key pair (per call, never cached).
2. Obtain the oracle's public key (configured, or fetched once and cached).
3. Shared secret = X25519(ephemeral private, oracle public).
4. The oracle encrypts the encoded value under a fresh 12-byte nonce.
5. ``commitment = H(value || context address || nonce)``.

Because the context address is an input to the commitment digest, a
commitment made for context A never verifies against context B.

Simulation mode produces structurally identical records without the oracle
or a secure random source. It has to be requested explicitly and is refused
unless the settings permit it.
"""

from __future__ import annotations

import hmac
import logging
import os
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from facet.core.config import CoreSettings, get_config
from facet.core.exceptions import (
    ConfigException,
    ContextRevokedError,
    EncryptionUnavailableError,
    FatalCollaboratorError,
    ValidationException,
)
from facet.core.retry import RetryPolicy, retry_async
from facet.crypto.field import BackendMode, encode_value, validate_value
from facet.crypto.oracle import (
    NONCE_BYTES,
    EncryptionOracle,
    OracleRejectedError,
    OracleUnavailableError,
    public_key_bytes,
)
from facet.identity.derivation import address_bytes, tagged_hash
from facet.identity.models import ContextIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMMITMENT_TAG = b"facet/commitment/v1"
COLLABORATOR = "encryption_oracle"


@dataclass(frozen=True)
class EncryptedCommitment:
    """An encrypted value committed to exactly one context.

    Attributes:
        ciphertext: Oracle output (AES-256-GCM, or XOR in simulation).
        commitment: 32-byte digest of value, context address and nonce.
        nonce: Random bytes, unique per bind call.
        bound_context_address: The only context this commitment is valid for.
        ephemeral_public_key: Binder's ephemeral X25519 public key.
        simulated: True if produced in simulation mode.
        created_at: When the commitment was produced.
    """

    ciphertext: bytes
    commitment: bytes
    nonce: bytes
    bound_context_address: str
    ephemeral_public_key: bytes = b""
    simulated: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "ciphertext": self.ciphertext.hex(),
            "commitment": self.commitment.hex(),
            "nonce": self.nonce.hex(),
            "bound_context_address": self.bound_context_address,
            "ephemeral_public_key": self.ephemeral_public_key.hex(),
            "simulated": self.simulated,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EncryptedCommitment:
        return cls(
            ciphertext=bytes.fromhex(data["ciphertext"]),
            commitment=bytes.fromhex(data["commitment"]),
            nonce=bytes.fromhex(data["nonce"]),
            bound_context_address=data["bound_context_address"],
            ephemeral_public_key=bytes.fromhex(data.get("ephemeral_public_key", "")),
            simulated=bool(data.get("simulated", False)),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(UTC),
        )


def compute_commitment(secret_value: int, context_address: str, nonce: bytes) -> bytes:
    """``H(value || context address || nonce)`` with domain separation."""
    return tagged_hash(COMMITMENT_TAG, encode_value(secret_value), address_bytes(context_address), nonce)


def verify_commitment(commitment: EncryptedCommitment, secret_value: int, context_address: str) -> bool:
    """Check that ``commitment`` opens to ``secret_value`` for ``context_address``.

    The digest is recomputed with the presented address, so a commitment
    whose ``bound_context_address`` field was rewritten still fails.
    """
    if commitment.bound_context_address != context_address:
        return False
    try:
        expected = compute_commitment(secret_value, context_address, commitment.nonce)
    except (ValueError, ValidationException) as exc:
        logger.debug("Commitment recomputation failed: %s", exc)
        return False
    return hmac.compare_digest(expected, commitment.commitment)


class CommitmentBinder:
    """Binds encrypted secret values to context identities.

    Args:
        oracle: Encryption oracle; required in live mode.
        mode: ``BackendMode.LIVE`` or ``BackendMode.SIMULATED``.
        settings: Settings used for the simulation guard, oracle key and retry.
        policy: Retry policy override.
        oracle_public_key: Pin the oracle's public key instead of fetching it.

    Raises:
        ConfigException: Live mode without an oracle, or simulation mode
            without ``FACET_ALLOW_SIMULATION`` / in production.
    """

    def __init__(
        self,
        oracle: EncryptionOracle | None = None,
        mode: BackendMode = BackendMode.LIVE,
        settings: CoreSettings | None = None,
        policy: RetryPolicy | None = None,
        oracle_public_key: bytes | None = None,
    ) -> None:
        settings = settings or get_config()
        mode = BackendMode(mode)
        if mode == BackendMode.SIMULATED:
            if not settings.simulation_permitted:
                raise ConfigException(
                    "Simulation mode requires FACET_ALLOW_SIMULATION=true outside production",
                    missing_vars=["FACET_ALLOW_SIMULATION"],
                )
            logger.warning("CommitmentBinder running in SIMULATION mode: commitments are not encrypted")
        elif oracle is None:
            raise ConfigException("Live CommitmentBinder requires an encryption oracle")

        self._oracle: Any = oracle
        self._mode = mode
        self._policy = policy or settings.retry_policy
        self._oracle_public_key = oracle_public_key or settings.oracle_public_key_bytes

    @property
    def mode(self) -> BackendMode:
        return self._mode

    def is_simulated(self) -> bool:
        return self._mode == BackendMode.SIMULATED

    def status(self) -> dict[str, Any]:
        return {
            "mode": self._mode.value,
            "oracle_key_known": self._oracle_public_key is not None,
        }

    # -- collaborator plumbing ----------------------------------------------

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            try:
                return await fn()
            except OracleUnavailableError as exc:
                raise EncryptionUnavailableError(f"{operation}: {exc}") from exc
            except OracleRejectedError as exc:
                raise FatalCollaboratorError(f"{operation} rejected: {exc}", collaborator=COLLABORATOR) from exc

        return await retry_async(attempt, self._policy, operation, COLLABORATOR)

    async def _oracle_key(self) -> X25519PublicKey:
        if self._oracle_public_key is None:
            self._oracle_public_key = await self._call("get_public_key", self._oracle.get_public_key)
        try:
            return X25519PublicKey.from_public_bytes(self._oracle_public_key)
        except ValueError as exc:
            self._oracle_public_key = None
            raise FatalCollaboratorError(
                "encryption oracle returned a malformed public key", collaborator=COLLABORATOR
            ) from exc

    # -- binding --------------------------------------------------------------

    async def bind(self, secret_value: int, target_context: ContextIdentity) -> EncryptedCommitment:
        """Encrypt ``secret_value`` and commit it to ``target_context``.

        Raises:
            ValueOutOfRangeError: Value negative or not below the field modulus.
            ContextRevokedError: The target context is revoked.
            RetryExhaustedError: The oracle stayed unavailable.
            FatalCollaboratorError: The oracle rejected the request.
        """
        plaintext = encode_value(validate_value(secret_value))
        if target_context.revoked:
            raise ContextRevokedError(target_context.address)

        if self.is_simulated():
            return self._simulate(secret_value, plaintext, target_context.address)

        oracle_key = await self._oracle_key()
        ephemeral = X25519PrivateKey.generate()
        shared_secret = ephemeral.exchange(oracle_key)
        nonce = os.urandom(NONCE_BYTES)

        ciphertext = await self._call(
            "encrypt",
            lambda: self._oracle.encrypt(shared_secret, plaintext, nonce),
        )
        if not ciphertext:
            raise FatalCollaboratorError("encryption oracle returned an empty ciphertext", collaborator=COLLABORATOR)

        logger.debug("Bound commitment to context %s", target_context.address[:16])
        return EncryptedCommitment(
            ciphertext=ciphertext,
            commitment=compute_commitment(secret_value, target_context.address, nonce),
            nonce=nonce,
            bound_context_address=target_context.address,
            ephemeral_public_key=public_key_bytes(ephemeral.public_key()),
        )

    def _simulate(self, secret_value: int, plaintext: bytes, context_address: str) -> EncryptedCommitment:
        """Structurally valid, non-cryptographic commitment for tests."""
        rng = random.Random()
        nonce = rng.randbytes(NONCE_BYTES)
        ciphertext = bytes(b ^ nonce[i % NONCE_BYTES] for i, b in enumerate(plaintext))
        return EncryptedCommitment(
            ciphertext=ciphertext,
            commitment=compute_commitment(secret_value, context_address, nonce),
            nonce=nonce,
            bound_context_address=context_address,
            simulated=True,
        )
