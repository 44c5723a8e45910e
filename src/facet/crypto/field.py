"""Field bounds, value encoding and backend mode shared by binder and prover."""

from __future__ import annotations

import enum

from facet.core.validation import validate_field_element

# BN254 scalar field modulus, the native field of the threshold circuit.
FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617

VALUE_BYTES = 32


class BackendMode(enum.StrEnum):
    """Capability flag injected into the binder and the prover."""

    LIVE = "live"
    SIMULATED = "simulated"


def validate_value(value: int, field: str = "secret_value") -> int:
    """Validate a value as an element of the circuit field."""
    return validate_field_element(value, FIELD_MODULUS, field)


def encode_value(value: int) -> bytes:
    """Fixed-width big-endian encoding of a field element."""
    return validate_value(value).to_bytes(VALUE_BYTES, "big")


def decode_value(data: bytes) -> int:
    """Inverse of :func:`encode_value`."""
    if len(data) != VALUE_BYTES:
        raise ValueError(f"encoded value must be {VALUE_BYTES} bytes, got {len(data)}")
    value = int.from_bytes(data, "big")
    if value >= FIELD_MODULUS:
        raise ValueError("encoded value is not a field element")
    return value
