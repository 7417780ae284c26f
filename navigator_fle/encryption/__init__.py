"""Field-level encryption — schemas, marking, key resolution and AEAD envelopes.

Security Note (Threat Model):
    Unwrapped data keys are cached in process memory for ``key_cache_ttl``
    seconds and plaintext values exist in memory while commands are
    rewritten. A memory dump of the application process could expose them.
    Keeping them out of process memory would need an HSM or a secure
    enclave, which this package does not integrate with.
"""

from .crypto import Algorithm, encrypt_value, decrypt_value, is_ciphertext
from .config import AutoEncryptionConfig, load_local_master_key, generate_local_master_key
from .cache import KeyCache, KeyResolver
from .keyvault import DataKey, KeyRef, KeyVaultStore
from .kms import KmsProvider, KmsProviders, LocalKmsProvider, RemoteKmsProvider
from .marking import MarkingEngine
from .rewriter import CommandRewriter
from .schema import EncryptionSchema, SchemaRegistry
from .key_rotation import rewrap_many_data_key
from .exceptions import (
    EncryptionError,
    SchemaMismatchError,
    KeyNotFoundError,
    KmsUnwrapError,
    KmsTransientError,
    DecryptionError,
    InvalidTransactionStateError,
    ClientClosedError,
)

__all__ = [
    "Algorithm",
    "encrypt_value",
    "decrypt_value",
    "is_ciphertext",
    "AutoEncryptionConfig",
    "load_local_master_key",
    "generate_local_master_key",
    "KeyCache",
    "KeyResolver",
    "DataKey",
    "KeyRef",
    "KeyVaultStore",
    "KmsProvider",
    "KmsProviders",
    "LocalKmsProvider",
    "RemoteKmsProvider",
    "MarkingEngine",
    "CommandRewriter",
    "EncryptionSchema",
    "SchemaRegistry",
    "rewrap_many_data_key",
    "EncryptionError",
    "SchemaMismatchError",
    "KeyNotFoundError",
    "KmsUnwrapError",
    "KmsTransientError",
    "DecryptionError",
    "InvalidTransactionStateError",
    "ClientClosedError",
]
