"""Deterministic address derivation for root and context identities.

Addresses are domain-separated SHA-256 digests over length-prefixed parts,
so the same inputs yield the same address on any machine. A holder of the
root address can regenerate every context address by index without storing
them.
"""

from __future__ import annotations

import hashlib

from facet.core.validation import validate_context_index, validate_owner

ROOT_TAG = b"facet/root/v1"
CONTEXT_TAG = b"facet/context/v1"

ADDRESS_BYTES = 32


def _len_prefix(b: bytes) -> bytes:
    """4-byte big-endian length prefix."""
    return len(b).to_bytes(4, "big")


def tagged_hash(tag: bytes, *parts: bytes) -> bytes:
    """Domain-separated SHA-256: ``H(len(tag)||tag||len(p1)||p1||...)``."""
    h = hashlib.sha256()
    h.update(_len_prefix(tag))
    h.update(tag)
    for part in parts:
        h.update(_len_prefix(part))
        h.update(part)
    return h.digest()


def address_bytes(address: str) -> bytes:
    """Decode a hex address, rejecting anything that is not 32 bytes."""
    try:
        raw = bytes.fromhex(address)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"address is not hex: {address!r}") from exc
    if len(raw) != ADDRESS_BYTES:
        raise ValueError(f"address must be {ADDRESS_BYTES} bytes, got {len(raw)}")
    return raw


def derive_root_address(owner: str) -> str:
    """Derive the address of the root identity owned by ``owner``."""
    validate_owner(owner)
    return tagged_hash(ROOT_TAG, owner.encode("utf-8")).hex()


def derive_context_address(root_address: str, index: int) -> str:
    """Derive the address of the context at ``index`` under ``root_address``.

    Args:
        root_address: Hex address of the root identity.
        index: Context index (u64).

    Returns:
        64-character lowercase hex address.

    Raises:
        ValidationException: If the index is negative or exceeds u64.
        ValueError: If ``root_address`` is not a 32-byte hex string.
    """
    validate_context_index(index)
    return tagged_hash(CONTEXT_TAG, address_bytes(root_address), index.to_bytes(8, "little")).hex()
