"""Threshold prover and verifier.

Proves ``secret_value >= public_threshold`` without revealing the value.
A false predicate is refused with :class:`PredicateFalseError` before the
backend is touched, so every :class:`ThresholdProof` that exists claims a
true predicate.

A proof may be issued for a context address, which then becomes part of the
signed statement: the proof verifies for that context and no other.

Verification is a function of the proof bytes and the public inputs
(threshold and context address) only; the verify path never receives the
secret value.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from facet.core.config import CoreSettings, get_config
from facet.core.exceptions import (
    ConfigException,
    FatalCollaboratorError,
    PredicateFalseError,
    TransientCollaboratorError,
    ValidationException,
)
from facet.core.retry import RetryPolicy, retry_async
from facet.crypto.backends import (
    CIRCUIT_NAME,
    CONTEXT_INPUT,
    PRIVATE_INPUT,
    PUBLIC_INPUT,
    BackendRejectedError,
    BackendUnavailableError,
    CircuitInputs,
    ProvingBackend,
    SimulatedProvingBackend,
)
from facet.crypto.field import FIELD_MODULUS, BackendMode, validate_value

logger = logging.getLogger(__name__)

T = TypeVar("T")

COLLABORATOR = "proving_backend"


@dataclass(frozen=True)
class ThresholdProof:
    """Proof that a hidden value meets a public lower bound."""

    proof_bytes: bytes
    public_threshold: int
    predicate_holds: bool = True
    circuit: str = CIRCUIT_NAME
    context_address: str | None = None
    simulated: bool = False
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "proof_bytes": self.proof_bytes.hex(),
            "public_threshold": self.public_threshold,
            "predicate_holds": self.predicate_holds,
            "circuit": self.circuit,
            "context_address": self.context_address,
            "simulated": self.simulated,
            "generated_at": self.generated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThresholdProof:
        return cls(
            proof_bytes=bytes.fromhex(data["proof_bytes"]),
            public_threshold=int(data["public_threshold"]),
            predicate_holds=bool(data.get("predicate_holds", True)),
            circuit=data.get("circuit", CIRCUIT_NAME),
            context_address=data.get("context_address"),
            simulated=bool(data.get("simulated", False)),
            generated_at=datetime.fromisoformat(data["generated_at"])
            if data.get("generated_at")
            else datetime.now(UTC),
        )


class ThresholdProver:
    """Generates and verifies threshold proofs through a proving backend.

    Args:
        backend: Proving backend; required in live mode. In simulation mode
            a :class:`SimulatedProvingBackend` is used when omitted. A backend
            whose ``mode`` is ``SIMULATED`` puts the prover in simulation
            mode whatever ``mode`` says.
        mode: ``BackendMode.LIVE`` or ``BackendMode.SIMULATED``.
        settings: Settings used for the simulation guard and retry.
        policy: Retry policy override.
    """

    def __init__(
        self,
        backend: ProvingBackend | None = None,
        mode: BackendMode = BackendMode.LIVE,
        settings: CoreSettings | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        settings = settings or get_config()
        mode = BackendMode(mode)
        if getattr(backend, "mode", None) == BackendMode.SIMULATED:
            mode = BackendMode.SIMULATED
        if mode == BackendMode.SIMULATED:
            if not settings.simulation_permitted:
                raise ConfigException(
                    "Simulation mode requires FACET_ALLOW_SIMULATION=true outside production",
                    missing_vars=["FACET_ALLOW_SIMULATION"],
                )
            logger.warning("ThresholdProver running in SIMULATION mode: proofs are forgeable")
            backend = backend or SimulatedProvingBackend()
        elif backend is None:
            raise ConfigException("Live ThresholdProver requires a proving backend")

        self._backend: Any = backend
        self._mode = mode
        self._policy = policy or settings.retry_policy

    @property
    def mode(self) -> BackendMode:
        return self._mode

    def is_simulated(self) -> bool:
        return self._mode == BackendMode.SIMULATED

    def circuit_info(self) -> dict[str, Any]:
        """Describe the circuit and backend in use."""
        info: dict[str, Any] = {
            "circuit": CIRCUIT_NAME,
            "predicate": f"{PRIVATE_INPUT} >= {PUBLIC_INPUT}",
            "private_inputs": [PRIVATE_INPUT],
            "public_inputs": [PUBLIC_INPUT, CONTEXT_INPUT],
            "field_modulus": str(FIELD_MODULUS),
            "mode": self._mode.value,
        }
        backend_info = getattr(self._backend, "info", None)
        if callable(backend_info):
            info["backend"] = backend_info()
        return info

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            try:
                return await fn()
            except BackendUnavailableError as exc:
                raise TransientCollaboratorError(f"{operation}: {exc}", collaborator=COLLABORATOR) from exc

        return await retry_async(attempt, self._policy, operation, COLLABORATOR)

    async def prove(
        self,
        secret_value: int,
        public_threshold: int,
        context_address: str | None = None,
    ) -> ThresholdProof:
        """Prove ``secret_value >= public_threshold``.

        With ``context_address`` the proof is issued for that context and
        only verifies for it.

        Raises:
            ValueOutOfRangeError: Either value outside ``[0, FIELD_MODULUS)``.
            PredicateFalseError: ``secret_value < public_threshold``.
            RetryExhaustedError: The backend stayed unavailable.
            FatalCollaboratorError: The backend rejected the request.
        """
        validate_value(secret_value, "secret_value")
        validate_value(public_threshold, "public_threshold")
        if secret_value < public_threshold:
            raise PredicateFalseError(public_threshold)

        inputs = CircuitInputs(
            private={PRIVATE_INPUT: secret_value},
            public=_public_inputs(public_threshold, context_address),
        )
        try:
            witness = await self._call("execute", lambda: self._backend.execute(inputs))
            if not witness.predicate_holds:
                raise FatalCollaboratorError(
                    "circuit disagrees with the local predicate check", collaborator=COLLABORATOR
                )
            proof_bytes = await self._call("generate_proof", lambda: self._backend.generate_proof(witness))
        except BackendRejectedError as exc:
            raise FatalCollaboratorError(f"proving backend rejected: {exc}", collaborator=COLLABORATOR) from exc

        logger.debug("Generated %s proof for threshold %d", CIRCUIT_NAME, public_threshold)
        return ThresholdProof(
            proof_bytes=proof_bytes,
            public_threshold=public_threshold,
            context_address=context_address,
            simulated=self.is_simulated(),
        )

    async def verify(self, proof: ThresholdProof, context_address: str | None = None) -> bool:
        """Check a proof against its public inputs.

        With ``context_address`` the proof must have been issued for that
        context. Returns False for proofs claiming a false predicate, for
        foreign circuits and for proofs the backend rejects as malformed.

        Raises:
            RetryExhaustedError: The backend stayed unavailable.
        """
        if not proof.predicate_holds or proof.circuit != CIRCUIT_NAME:
            return False
        if context_address is not None and proof.context_address != context_address:
            return False
        try:
            validate_value(proof.public_threshold, "public_threshold")
        except ValidationException:
            return False

        public = _public_inputs(proof.public_threshold, proof.context_address)
        try:
            return bool(await self._call("verify_proof", lambda: self._backend.verify_proof(proof.proof_bytes, public)))
        except BackendRejectedError as exc:
            logger.warning("Proof rejected by backend: %s", exc)
            return False

    async def attest(self, message: bytes) -> bytes:
        """Have the backend sign ``message`` with its proving key.

        Raises:
            RetryExhaustedError: The backend stayed unavailable.
            FatalCollaboratorError: The backend refused to sign.
        """
        try:
            return await self._call("attest", lambda: self._backend.attest(message))
        except BackendRejectedError as exc:
            raise FatalCollaboratorError(
                f"proving backend refused to attest: {exc}", collaborator=COLLABORATOR
            ) from exc

    async def verify_attestation(self, message: bytes, signature: bytes) -> bool:
        try:
            return bool(
                await self._call("verify_attestation", lambda: self._backend.verify_attestation(message, signature))
            )
        except BackendRejectedError as exc:
            logger.warning("Attestation rejected by backend: %s", exc)
            return False


def _public_inputs(public_threshold: int, context_address: str | None) -> dict[str, Any]:
    public: dict[str, Any] = {PUBLIC_INPUT: public_threshold}
    if context_address:
        public[CONTEXT_INPUT] = context_address
    return public
