"""Encryption oracle interface and local reference implementation.

The binder performs X25519 key agreement against the oracle's public key and
hands the shared secret to the oracle, which derives an AES-256-GCM key with
HKDF-SHA256 and encrypts the payload. The oracle keeps no session state
between calls.

:class:`LocalEncryptionOracle` holds its own X25519 key pair, so it can also
recompute the shared secret from the ephemeral public key stored on a
commitment and decrypt the value.
"""

from __future__ import annotations

from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from facet.crypto.field import decode_value

HKDF_INFO = b"facet-commitment-encryption"
KEY_BYTES = 32
NONCE_BYTES = 12

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class OracleError(Exception):
    """Base exception for encryption oracle failures."""


class OracleUnavailableError(OracleError):
    """The oracle could not be reached; the request may be retried."""


class OracleRejectedError(OracleError):
    """The oracle rejected the request (bad key length, bad nonce, ...)."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class EncryptionOracle(Protocol):
    """External service performing key-agreement-based encryption."""

    async def get_public_key(self) -> bytes: ...
    async def encrypt(self, shared_secret: bytes, plaintext: bytes, nonce: bytes) -> bytes: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def derive_data_key(shared_secret: bytes) -> bytes:
    """Derive the AES-256-GCM key from an X25519 shared secret."""
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=None,
        info=HKDF_INFO,
    ).derive(shared_secret)


def public_key_bytes(key: X25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


# ---------------------------------------------------------------------------
# LocalEncryptionOracle
# ---------------------------------------------------------------------------


class LocalEncryptionOracle:
    """In-process oracle backed by an X25519 key pair.

    Args:
        private_key: Oracle key; a fresh one is generated when omitted.
    """

    def __init__(self, private_key: X25519PrivateKey | None = None) -> None:
        self._private_key = private_key or X25519PrivateKey.generate()
        self._public_key = public_key_bytes(self._private_key.public_key())

    async def get_public_key(self) -> bytes:
        return self._public_key

    async def encrypt(self, shared_secret: bytes, plaintext: bytes, nonce: bytes) -> bytes:
        if len(shared_secret) != KEY_BYTES:
            raise OracleRejectedError(f"shared secret must be {KEY_BYTES} bytes")
        if len(nonce) != NONCE_BYTES:
            raise OracleRejectedError(f"nonce must be {NONCE_BYTES} bytes")
        return AESGCM(derive_data_key(shared_secret)).encrypt(nonce, plaintext, None)

    def decrypt(self, ephemeral_public_key: bytes, ciphertext: bytes, nonce: bytes) -> int:
        """Recover the committed value from a ciphertext.

        Raises:
            OracleRejectedError: Wrong key, tampered ciphertext or bad encoding.
        """
        try:
            peer = X25519PublicKey.from_public_bytes(ephemeral_public_key)
            shared_secret = self._private_key.exchange(peer)
            plaintext = AESGCM(derive_data_key(shared_secret)).decrypt(nonce, ciphertext, None)
            return decode_value(plaintext)
        except (InvalidTag, ValueError) as exc:
            raise OracleRejectedError("ciphertext could not be decrypted") from exc
