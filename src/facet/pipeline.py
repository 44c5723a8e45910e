"""Access pipeline — the caller-facing surface of Facet.

Orchestrates one private-threshold disclosure::

    START → ENSURE_ROOT → ENSURE_CONTEXT → BIND ∥ PROVE → PACKAGE → [REVOKE] → DONE

Binding and proving are independent, so they run concurrently and are
joined before packaging. The proof is issued for the context address, and
the package is sealed by the proving backend over the commitment, the proof
and the context address. Evidence therefore verifies for the context it was
produced for and no other, even if its address fields are rewritten.

There is no automatic rollback: a failure leaves the identities created by
earlier steps in place, and a context may be reused for further evidence
until it is revoked.

Usage::

    pipeline = AccessPipeline.local()
    result = await pipeline.run("owner-key", secret_value=500_000, public_threshold=10_000)
    assert await pipeline.verify_evidence(result.evidence, result.context)
"""

from __future__ import annotations

import asyncio
import enum
import hmac
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from facet.core.config import CoreSettings, get_config
from facet.core.exceptions import ContextRevokedError, NotFoundError, PredicateFalseError
from facet.core.logging import correlation_context, stage_logger
from facet.crypto.backends import AttestationProvingBackend
from facet.crypto.commitment import CommitmentBinder, EncryptedCommitment
from facet.crypto.field import BackendMode, encode_value, validate_value
from facet.crypto.oracle import LocalEncryptionOracle
from facet.crypto.threshold import ThresholdProof, ThresholdProver
from facet.identity.derivation import address_bytes, tagged_hash
from facet.identity.ledger import InMemoryLedger, Ledger
from facet.identity.models import (
    ContextCategory,
    ContextIdentity,
    Outcome,
    PrivacyLevel,
    RootIdentity,
)
from facet.identity.registry import IdentityRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

EVIDENCE_TAG = b"facet/evidence/v1"


class PipelineStage(enum.StrEnum):
    """Stages of one pipeline run, in order."""

    START = "start"
    ENSURE_ROOT = "ensure_root"
    ENSURE_CONTEXT = "ensure_context"
    BIND = "bind"
    PROVE = "prove"
    PACKAGE = "package"
    REVOKE = "revoke"
    DONE = "done"


def evidence_binding(commitment: EncryptedCommitment, proof: ThresholdProof, context_address: str) -> bytes:
    """Digest of a commitment and a proof presented for one context.

    This is the message the proving backend seals; on its own it is only a
    consistency check, since anyone can recompute it.
    """
    return tagged_hash(
        EVIDENCE_TAG,
        commitment.commitment,
        proof.proof_bytes,
        encode_value(proof.public_threshold),
        address_bytes(context_address),
    )


@dataclass(frozen=True)
class ThresholdEvidence:
    """Package handed to a verifier: commitment, proof, context address and seal."""

    commitment: EncryptedCommitment
    proof: ThresholdProof
    context_address: str
    binding: bytes
    seal: bytes = field(repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "commitment": self.commitment.to_dict(),
            "proof": self.proof.to_dict(),
            "context_address": self.context_address,
            "binding": self.binding.hex(),
            "seal": self.seal.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThresholdEvidence:
        return cls(
            commitment=EncryptedCommitment.from_dict(data["commitment"]),
            proof=ThresholdProof.from_dict(data["proof"]),
            context_address=data["context_address"],
            binding=bytes.fromhex(data["binding"]),
            seal=bytes.fromhex(data["seal"]),
        )


@dataclass
class PipelineResult:
    """Everything produced by one :meth:`AccessPipeline.run`."""

    root: RootIdentity
    context: ContextIdentity
    evidence: ThresholdEvidence
    correlation_id: str
    stages: list[PipelineStage] = field(default_factory=list)
    revocation: Outcome[ContextIdentity] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root.to_dict(),
            "context": self.context.to_dict(),
            "evidence": self.evidence.to_dict(),
            "correlation_id": self.correlation_id,
            "stages": [s.value for s in self.stages],
            "revocation": self.revocation.to_dict() if self.revocation else None,
        }


async def _join(*aws: Awaitable[Any]) -> list[Any]:
    """Await all of ``aws``; once every one has finished, re-raise the first failure."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


class AccessPipeline:
    """Composes registry, binder and prover into the disclosure flow."""

    def __init__(
        self,
        registry: IdentityRegistry,
        binder: CommitmentBinder,
        prover: ThresholdProver,
        settings: CoreSettings | None = None,
    ) -> None:
        self.registry = registry
        self.binder = binder
        self.prover = prover
        self._settings = settings or get_config()

    @classmethod
    def local(
        cls,
        ledger: Ledger | None = None,
        mode: BackendMode = BackendMode.LIVE,
        settings: CoreSettings | None = None,
    ) -> AccessPipeline:
        """Pipeline over in-process collaborators.

        Live mode uses a :class:`LocalEncryptionOracle` and an
        :class:`AttestationProvingBackend`; simulated mode uses neither.
        """
        settings = settings or get_config()
        policy = settings.retry_policy
        mode = BackendMode(mode)
        live = mode == BackendMode.LIVE
        return cls(
            registry=IdentityRegistry(ledger if ledger is not None else InMemoryLedger(), policy),
            binder=CommitmentBinder(
                LocalEncryptionOracle() if live else None, mode=mode, settings=settings, policy=policy
            ),
            prover=ThresholdProver(
                AttestationProvingBackend() if live else None, mode=mode, settings=settings, policy=policy
            ),
            settings=settings,
        )

    # -- identity surface -----------------------------------------------------

    async def create_root_identity(
        self,
        owner: str,
        privacy_level: PrivacyLevel | str | None = None,
    ) -> Outcome[RootIdentity]:
        level = privacy_level if privacy_level is not None else self._settings.default_privacy_level
        return await self.registry.create_root(owner, level)

    async def create_context(
        self,
        root: RootIdentity,
        category: str,
        max_per_operation: int | None = None,
        request_id: str | None = None,
    ) -> Outcome[ContextIdentity]:
        return await self.registry.create_context(root, category, max_per_operation, request_id)

    async def revoke_context(self, context: ContextIdentity) -> Outcome[ContextIdentity]:
        return await self.registry.revoke(context)

    # -- evidence -------------------------------------------------------------

    async def _active_context(
        self,
        secret_value: int,
        public_threshold: int,
        context: ContextIdentity,
    ) -> ContextIdentity:
        validate_value(secret_value, "secret_value")
        validate_value(public_threshold, "public_threshold")
        if secret_value < public_threshold:
            raise PredicateFalseError(public_threshold)

        current = await self.registry.refresh(context)
        if current.revoked:
            raise ContextRevokedError(current.address)
        return current

    async def _package(
        self,
        commitment: EncryptedCommitment,
        proof: ThresholdProof,
        context_address: str,
    ) -> ThresholdEvidence:
        binding = evidence_binding(commitment, proof, context_address)
        return ThresholdEvidence(
            commitment=commitment,
            proof=proof,
            context_address=context_address,
            binding=binding,
            seal=await self.prover.attest(binding),
        )

    async def generate_threshold_evidence(
        self,
        secret_value: int,
        public_threshold: int,
        context: ContextIdentity,
    ) -> ThresholdEvidence:
        """Bind ``secret_value`` to ``context`` and prove it meets the threshold.

        Raises:
            ValueOutOfRangeError: Either value outside the circuit field.
            PredicateFalseError: ``secret_value < public_threshold``.
            ContextRevokedError: The context is revoked on the ledger.
            RetryExhaustedError: A collaborator stayed unavailable.
            FatalCollaboratorError: A collaborator rejected the request.
        """
        current = await self._active_context(secret_value, public_threshold, context)
        commitment, proof = await _join(
            self.binder.bind(secret_value, current),
            self.prover.prove(secret_value, public_threshold, current.address),
        )
        return await self._package(commitment, proof, current.address)

    async def verify_threshold_evidence(
        self,
        commitment: EncryptedCommitment,
        proof: ThresholdProof,
        context: ContextIdentity,
    ) -> bool:
        """Check a commitment and proof presented for ``context``.

        Fails when the commitment claims another context, when the proof was
        not issued for ``context``, when the context is unknown or revoked on
        the ledger, or when the proof does not verify. Never needs the secret
        value.
        """
        if commitment.bound_context_address != context.address:
            logger.info("Commitment is bound to a different context")
            return False
        if proof.context_address != context.address:
            logger.info("Proof was issued for a different context")
            return False
        try:
            current = await self.registry.refresh(context)
        except NotFoundError:
            logger.info("Context %s not found on ledger", context.address[:16])
            return False
        if current.revoked:
            logger.info("Context %s is revoked", current.address[:16])
            return False
        return await self.prover.verify(proof, context.address)

    async def verify_evidence(self, evidence: ThresholdEvidence, context: ContextIdentity) -> bool:
        """Like :meth:`verify_threshold_evidence`, also checking the package seal.

        The seal ties the commitment to the proof, so neither can be swapped
        for one taken from another package.
        """
        if evidence.context_address != context.address:
            return False
        expected = evidence_binding(evidence.commitment, evidence.proof, context.address)
        if not hmac.compare_digest(expected, evidence.binding):
            logger.info("Evidence binding digest mismatch")
            return False
        if not await self.prover.verify_attestation(expected, evidence.seal):
            logger.info("Evidence seal does not verify")
            return False
        return await self.verify_threshold_evidence(evidence.commitment, evidence.proof, context)

    # -- full run -------------------------------------------------------------

    async def run(
        self,
        owner: str,
        secret_value: int,
        public_threshold: int,
        category: str = ContextCategory.TEMPORARY,
        max_per_operation: int | None = None,
        privacy_level: PrivacyLevel | str | None = None,
        revoke_after: bool = False,
        request_id: str | None = None,
    ) -> PipelineResult:
        """Run the whole disclosure flow for ``owner``.

        The root identity is reused when it exists; a new context is created
        for every run. With ``revoke_after`` the context is revoked once the
        evidence is packaged. Each stage is timed and logged under the run's
        correlation id.
        """
        with correlation_context() as cid:
            stages = [PipelineStage.START]

            async def staged(
                stage: PipelineStage, aw: Awaitable[T], context_address: str | None = None, **fields: Any
            ) -> T:
                with stage_logger.stage(stage.value, context_address, **fields):
                    return await aw

            root = (
                await staged(
                    PipelineStage.ENSURE_ROOT,
                    self.create_root_identity(owner, privacy_level),
                    owner=owner,
                )
            ).record
            stages.append(PipelineStage.ENSURE_ROOT)

            context = (
                await staged(
                    PipelineStage.ENSURE_CONTEXT,
                    self.create_context(root, category, max_per_operation, request_id),
                    root_address=root.address,
                    category=str(category),
                )
            ).record
            stages.append(PipelineStage.ENSURE_CONTEXT)

            current = await self._active_context(secret_value, public_threshold, context)
            commitment, proof = await _join(
                staged(
                    PipelineStage.BIND,
                    self.binder.bind(secret_value, current),
                    current.address,
                    secret_value=secret_value,
                ),
                staged(
                    PipelineStage.PROVE,
                    self.prover.prove(secret_value, public_threshold, current.address),
                    current.address,
                    secret_value=secret_value,
                    public_threshold=public_threshold,
                ),
            )
            stages.extend([PipelineStage.BIND, PipelineStage.PROVE])

            evidence = await staged(
                PipelineStage.PACKAGE,
                self._package(commitment, proof, current.address),
                current.address,
            )
            stages.append(PipelineStage.PACKAGE)

            revocation = None
            if revoke_after:
                revocation = await staged(PipelineStage.REVOKE, self.revoke_context(current), current.address)
                stages.append(PipelineStage.REVOKE)
                current = revocation.record

            stages.append(PipelineStage.DONE)
            logger.info("Pipeline run complete for context %d", current.index)
            return PipelineResult(
                root=root,
                context=current,
                evidence=evidence,
                correlation_id=cid,
                stages=stages,
                revocation=revocation,
            )

    def status(self) -> dict[str, Any]:
        """Modes of the binder and prover, and circuit metadata."""
        return {
            "binder": self.binder.status(),
            "prover": self.prover.circuit_info(),
            "simulated": self.binder.is_simulated() or self.prover.is_simulated(),
            "environment": self._settings.environment,
        }
