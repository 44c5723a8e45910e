"""Cryptographic primitives for Facet.

Provides:
- CommitmentBinder: encrypt a value and commit it to one context
- ThresholdProver: prove ``value >= threshold`` without revealing the value
- Encryption oracle and proving backend interfaces with local implementations
"""

from facet.crypto.backends import (
    AttestationProvingBackend,
    BackendRejectedError,
    BackendUnavailableError,
    ProvingBackend,
    SimulatedProvingBackend,
)
from facet.crypto.commitment import (
    CommitmentBinder,
    EncryptedCommitment,
    compute_commitment,
    verify_commitment,
)
from facet.crypto.field import FIELD_MODULUS, BackendMode
from facet.crypto.oracle import (
    EncryptionOracle,
    LocalEncryptionOracle,
    OracleRejectedError,
    OracleUnavailableError,
)
from facet.crypto.threshold import ThresholdProof, ThresholdProver

__all__ = [
    # Field
    "FIELD_MODULUS",
    "BackendMode",
    # Commitments
    "CommitmentBinder",
    "EncryptedCommitment",
    "compute_commitment",
    "verify_commitment",
    # Oracle
    "EncryptionOracle",
    "LocalEncryptionOracle",
    "OracleRejectedError",
    "OracleUnavailableError",
    # Proofs
    "ThresholdProof",
    "ThresholdProver",
    "ProvingBackend",
    "AttestationProvingBackend",
    "SimulatedProvingBackend",
    "BackendRejectedError",
    "BackendUnavailableError",
]
