"""Proving backends for the threshold circuit.

The prover treats its backend as a black box with stateless calls:
``execute(inputs) -> witness``, ``generate_proof(witness) -> bytes`` and
``verify_proof(proof_bytes, public_inputs) -> bool``, plus
``attest(message)`` and ``verify_attestation(message, signature)`` used to
seal evidence packages.

SECURITY NOTE - ATTESTED PROOF CONSTRUCTION
===========================================

:class:`AttestationProvingBackend` is NOT a zero-knowledge SNARK. It is an
attestation: the backend evaluates the predicate over the private input
itself, and signs the public statement only when the predicate holds.

Construction:
    1. ``witness_digest = H(witness tag, value, blinding)`` with 32 random
       blinding bytes, so the digest carries no information about the value.
    2. ``statement = H(statement tag, circuit, threshold, context, witness_digest)``
       where ``context`` is the context address the proof is issued for,
       empty when the proof is not tied to a context.
    3. ``proof = witness_digest || Ed25519_Sign(sk, statement)``

Verification recomputes ``statement`` from the public inputs and the digest
carried in the proof, then checks the signature. It needs the backend's
public key, the proof bytes and the public inputs, never the value. A proof
issued for one context does not verify for another.

``attest(message)`` signs ``H(attestation tag, message)`` with the same key,
so attestations can never be mistaken for proof statements.

Soundness rests on the backend refusing to sign unsatisfied predicates.
Swap in a real proving system behind :class:`ProvingBackend` when one is
available; the prover and pipeline do not change.

:class:`SimulatedProvingBackend` produces the same layout with an unsigned
digest in place of the signature. Its proofs are forgeable; tests only.
"""

from __future__ import annotations

import hmac
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from facet.crypto.field import BackendMode, encode_value
from facet.identity.derivation import tagged_hash

logger = logging.getLogger(__name__)

CIRCUIT_NAME = "threshold_v1"

PRIVATE_INPUT = "secret_value"
PUBLIC_INPUT = "public_threshold"
CONTEXT_INPUT = "context_address"

WITNESS_TAG = b"facet/witness/v1"
STATEMENT_TAG = b"facet/threshold-statement/v2"
ATTESTATION_TAG = b"facet/attestation/v1"
SIMULATED_TAG = b"facet/simulated-proof/v1"

DIGEST_BYTES = 32
SIGNATURE_BYTES = 64
BLINDING_BYTES = 32

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class BackendError(Exception):
    """Base exception for proving backend failures."""


class BackendUnavailableError(BackendError):
    """The backend could not be reached; the request may be retried."""


class BackendRejectedError(BackendError):
    """The backend rejected the request (malformed proof, bad inputs, ...)."""


# ---------------------------------------------------------------------------
# Circuit data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CircuitInputs:
    """Inputs to the threshold circuit, split by visibility."""

    private: dict[str, int]
    public: dict[str, Any]
    circuit: str = CIRCUIT_NAME


@dataclass(frozen=True)
class Witness:
    """Result of executing the circuit.

    Carries the public inputs, the predicate output and a blinded digest of
    the private input. The private input itself is not retained.
    """

    circuit: str
    public: dict[str, Any]
    predicate_holds: bool
    digest: bytes = field(repr=False)


class ProvingBackend(Protocol):
    """External proving service for the threshold circuit."""

    async def execute(self, inputs: CircuitInputs) -> Witness: ...
    async def generate_proof(self, witness: Witness) -> bytes: ...
    async def verify_proof(self, proof_bytes: bytes, public_inputs: dict[str, Any]) -> bool: ...
    async def attest(self, message: bytes) -> bytes: ...
    async def verify_attestation(self, message: bytes, signature: bytes) -> bool: ...


def statement_digest(
    circuit: str,
    threshold: int,
    witness_digest: bytes,
    context_address: str | None = None,
) -> bytes:
    """Digest of the public statement a proof attests to."""
    return tagged_hash(
        STATEMENT_TAG,
        circuit.encode("utf-8"),
        encode_value(threshold),
        (context_address or "").encode("utf-8"),
        witness_digest,
    )


def _execute_threshold(inputs: CircuitInputs) -> Witness:
    if inputs.circuit != CIRCUIT_NAME:
        raise BackendRejectedError(f"unknown circuit: {inputs.circuit}")
    try:
        value = inputs.private[PRIVATE_INPUT]
        threshold = inputs.public[PUBLIC_INPUT]
    except KeyError as exc:
        raise BackendRejectedError(f"missing circuit input: {exc.args[0]}") from exc

    public: dict[str, Any] = {PUBLIC_INPUT: threshold}
    if inputs.public.get(CONTEXT_INPUT):
        public[CONTEXT_INPUT] = inputs.public[CONTEXT_INPUT]

    digest = tagged_hash(WITNESS_TAG, encode_value(value), os.urandom(BLINDING_BYTES))
    return Witness(
        circuit=inputs.circuit,
        public=public,
        predicate_holds=value >= threshold,
        digest=digest,
    )


def _witness_statement(witness: Witness) -> bytes:
    return statement_digest(
        witness.circuit, witness.public[PUBLIC_INPUT], witness.digest, witness.public.get(CONTEXT_INPUT)
    )


def _split_proof(proof_bytes: bytes, tail_bytes: int) -> tuple[bytes, bytes]:
    if len(proof_bytes) != DIGEST_BYTES + tail_bytes:
        raise BackendRejectedError(
            f"malformed proof: expected {DIGEST_BYTES + tail_bytes} bytes, got {len(proof_bytes)}"
        )
    return proof_bytes[:DIGEST_BYTES], proof_bytes[DIGEST_BYTES:]


def _public_statement(public_inputs: dict[str, Any], digest: bytes) -> bytes:
    try:
        threshold = public_inputs[PUBLIC_INPUT]
    except KeyError as exc:
        raise BackendRejectedError(f"missing public input: {PUBLIC_INPUT}") from exc
    return statement_digest(CIRCUIT_NAME, threshold, digest, public_inputs.get(CONTEXT_INPUT))


# ---------------------------------------------------------------------------
# Live backend
# ---------------------------------------------------------------------------


class AttestationProvingBackend:
    """Ed25519-attested threshold proofs.

    A backend built with :meth:`verifier` holds only the public key: it can
    verify proofs and attestations but refuses to produce them.
    """

    mode = BackendMode.LIVE

    def __init__(self, private_key: Ed25519PrivateKey | None = None) -> None:
        self._private_key: Ed25519PrivateKey | None = private_key or Ed25519PrivateKey.generate()
        self._public_key: Ed25519PublicKey = self._private_key.public_key()

    @classmethod
    def verifier(cls, public_key: bytes) -> AttestationProvingBackend:
        """Verification-only backend for a published public key."""
        backend = cls.__new__(cls)
        backend._private_key = None
        backend._public_key = Ed25519PublicKey.from_public_bytes(public_key)
        return backend

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def _signing_key(self) -> Ed25519PrivateKey:
        if self._private_key is None:
            raise BackendRejectedError("verification-only backend cannot sign")
        return self._private_key

    def _check(self, signature: bytes, message: bytes) -> bool:
        try:
            self._public_key.verify(signature, message)
        except InvalidSignature:
            return False
        return True

    async def execute(self, inputs: CircuitInputs) -> Witness:
        return _execute_threshold(inputs)

    async def generate_proof(self, witness: Witness) -> bytes:
        key = self._signing_key()
        if not witness.predicate_holds:
            raise BackendRejectedError("circuit predicate is not satisfied")
        return witness.digest + key.sign(_witness_statement(witness))

    async def verify_proof(self, proof_bytes: bytes, public_inputs: dict[str, Any]) -> bool:
        digest, signature = _split_proof(proof_bytes, SIGNATURE_BYTES)
        return self._check(signature, _public_statement(public_inputs, digest))

    async def attest(self, message: bytes) -> bytes:
        return self._signing_key().sign(tagged_hash(ATTESTATION_TAG, message))

    async def verify_attestation(self, message: bytes, signature: bytes) -> bool:
        if len(signature) != SIGNATURE_BYTES:
            return False
        return self._check(signature, tagged_hash(ATTESTATION_TAG, message))

    def info(self) -> dict[str, Any]:
        return {
            "backend": "attestation",
            "scheme": "ed25519",
            "public_key": self.public_key_bytes.hex(),
            "can_prove": self._private_key is not None,
        }


# ---------------------------------------------------------------------------
# Simulated backend
# ---------------------------------------------------------------------------


class SimulatedProvingBackend:
    """Unsigned, forgeable proofs with the live layout. Tests only."""

    mode = BackendMode.SIMULATED

    async def execute(self, inputs: CircuitInputs) -> Witness:
        return _execute_threshold(inputs)

    async def generate_proof(self, witness: Witness) -> bytes:
        if not witness.predicate_holds:
            raise BackendRejectedError("circuit predicate is not satisfied")
        return witness.digest + tagged_hash(SIMULATED_TAG, _witness_statement(witness))

    async def verify_proof(self, proof_bytes: bytes, public_inputs: dict[str, Any]) -> bool:
        digest, tail = _split_proof(proof_bytes, DIGEST_BYTES)
        return hmac.compare_digest(tail, tagged_hash(SIMULATED_TAG, _public_statement(public_inputs, digest)))

    async def attest(self, message: bytes) -> bytes:
        return tagged_hash(SIMULATED_TAG, ATTESTATION_TAG, message)

    async def verify_attestation(self, message: bytes, signature: bytes) -> bool:
        return hmac.compare_digest(signature, tagged_hash(SIMULATED_TAG, ATTESTATION_TAG, message))

    def info(self) -> dict[str, Any]:
        return {"backend": "simulated", "scheme": "sha256", "can_prove": True}
