"""Navigator FLE.

Client-side automatic field-level encryption for document database drivers.
"""
from .version import __version__
from .client import ClientEncryption, EncryptedClient, EncryptedCollection
from .session import SessionContext, SessionTransactionCoordinator, TransactionState
from .encryption import Algorithm, AutoEncryptionConfig

__all__ = [
    "__version__",
    "ClientEncryption",
    "EncryptedClient",
    "EncryptedCollection",
    "SessionContext",
    "SessionTransactionCoordinator",
    "TransactionState",
    "Algorithm",
    "AutoEncryptionConfig",
]
