"""
Encryption Errors — exception taxonomy for field-level encryption.

Every error may carry the key id involved (as a UUID string), never key
material or plaintext.
"""
from typing import Any, Optional
from uuid import UUID

from bson.binary import Binary


def format_key_id(key_id: Any) -> Optional[str]:
    """Render a key id (Binary subtype 4, UUID or str) for messages and logs."""
    if key_id is None:
        return None
    if isinstance(key_id, Binary):
        try:
            return str(key_id.as_uuid())
        except ValueError:
            return key_id.hex()
    if isinstance(key_id, (bytes, bytearray)) and len(key_id) == 16:
        return str(UUID(bytes=bytes(key_id)))
    return str(key_id)


class EncryptionError(Exception):
    """Base class for every field-level encryption failure."""

    def __init__(self, message: str, key_id: Any = None):
        self.key_id = format_key_id(key_id)
        if self.key_id is not None:
            message = f"{message} (key_id={self.key_id})"
        super().__init__(message)


class SchemaMismatchError(EncryptionError):
    """A value cannot be encrypted as the schema declares."""


class KeyNotFoundError(EncryptionError):
    """No data key matches the reference; requires administrator action."""


class KmsUnwrapError(EncryptionError):
    """The KMS provider failed to wrap or unwrap a data key."""

    transient = False


class KmsTransientError(KmsUnwrapError):
    """A KMS failure worth retrying (network hiccup, throttling)."""

    transient = True


class DecryptionError(EncryptionError):
    """Authentication failed, wrong key, or a corrupt ciphertext envelope."""


class InvalidTransactionStateError(EncryptionError):
    """A transaction operation was requested in the wrong session state."""


class ClientClosedError(EncryptionError):
    """The encryption client was used after ``close()``."""
