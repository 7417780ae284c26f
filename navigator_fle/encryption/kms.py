"""
KMS Providers — wrap and unwrap data keys under a master key.

Two provider variants:
- ``local``: the master key is 96 bytes held by the application; data keys
  are wrapped with AEAD_AES_256_CBC_HMAC_SHA_512 (random IV, empty AD).
- remote (``aws``, ``azure``, ``gcp``, ``kmip`` or any custom name): the
  master key never leaves the KMS. Requests go through an injected async
  transport; TLS and request signing are the transport's concern.

Security Note:
    Never log wrapped or unwrapped key material. Only provider names and
    key ids.
"""
import os
import asyncio
import abc
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .crypto import IV_SIZE, KEY_LENGTH, aead_decrypt, aead_encrypt
from .exceptions import DecryptionError, KmsTransientError, KmsUnwrapError

logger = logging.getLogger("navigator.fle")

KmsTransport = Callable[[dict], Awaitable[dict]]

# HTTP-like status codes a remote KMS reports for retryable conditions
_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class KmsProvider(abc.ABC):
    """Interface every KMS provider implements."""

    name: str = ""

    @abc.abstractmethod
    async def wrap(
        self, key_material: bytes, master_key: dict, key_id: Any = None,
    ) -> bytes:
        """Encrypt raw data key material under the master key."""

    @abc.abstractmethod
    async def unwrap(
        self, wrapped: bytes, master_key: dict, key_id: Any = None,
    ) -> bytes:
        """Decrypt a wrapped data key; returns the raw 96 bytes."""

    def master_key_document(self, master_key: Optional[dict] = None) -> dict:
        """Build the ``masterKey`` sub-document stored in the key vault."""
        doc = {"provider": self.name}
        if master_key:
            doc.update(master_key)
        return doc


class LocalKmsProvider(KmsProvider):
    """Master key held in process memory."""

    name = "local"

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise ValueError(
                f"Local master key must be {KEY_LENGTH} bytes, got {len(key)}"
            )
        self._key = bytes(key)

    async def wrap(
        self, key_material: bytes, master_key: dict, key_id: Any = None,
    ) -> bytes:
        return aead_encrypt(self._key, key_material, b"", os.urandom(IV_SIZE))

    async def unwrap(
        self, wrapped: bytes, master_key: dict, key_id: Any = None,
    ) -> bytes:
        try:
            raw = aead_decrypt(self._key, bytes(wrapped), b"")
        except DecryptionError as err:
            raise KmsUnwrapError(
                "Local master key failed to unwrap data key", key_id=key_id,
            ) from err
        if len(raw) != KEY_LENGTH:
            raise KmsUnwrapError(
                f"Unwrapped data key has {len(raw)} bytes, expected {KEY_LENGTH}",
                key_id=key_id,
            )
        return raw


class RemoteKmsProvider(KmsProvider):
    """Master key managed by a remote KMS reached through ``transport``.

    The transport receives a request document::

        {"provider": name, "operation": "encrypt"|"decrypt",
         "masterKey": {...}, "credentials": {...}, "payload": bytes}

    and returns ``{"status": int, "payload": bytes}`` or
    ``{"status": int, "error": str}``. Transport-level exceptions
    (``OSError``, ``TimeoutError``) count as transient.
    """

    def __init__(
        self,
        name: str,
        transport: KmsTransport,
        credentials: Optional[dict] = None,
        max_attempts: int = 3,
        backoff: float = 0.1,
    ):
        if name == "local":
            raise ValueError("'local' is reserved for LocalKmsProvider")
        self.name = name
        self._transport = transport
        self._credentials = credentials or {}
        self._max_attempts = max_attempts
        self._backoff = backoff

    async def _request(
        self, operation: str, payload: bytes, master_key: dict, key_id: Any,
    ) -> bytes:
        request = {
            "provider": self.name,
            "operation": operation,
            "masterKey": master_key,
            "credentials": self._credentials,
            "payload": bytes(payload),
        }
        try:
            response = await self._transport(request)
        except KmsUnwrapError:
            raise
        except (OSError, TimeoutError, asyncio.TimeoutError) as err:
            raise KmsTransientError(
                f"KMS '{self.name}' {operation} failed: {err}", key_id=key_id,
            ) from err
        status = response.get("status", 200)
        if status in _TRANSIENT_STATUS:
            raise KmsTransientError(
                f"KMS '{self.name}' {operation} returned {status}: "
                f"{response.get('error', '')}",
                key_id=key_id,
            )
        if status >= 400 or "payload" not in response:
            raise KmsUnwrapError(
                f"KMS '{self.name}' {operation} rejected with {status}: "
                f"{response.get('error', '')}",
                key_id=key_id,
            )
        return bytes(response["payload"])

    async def _call(
        self, operation: str, payload: bytes, master_key: dict, key_id: Any,
    ) -> bytes:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(KmsTransientError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, max=5),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying KMS %s on provider=%s (attempt %d)",
                        operation, self.name, attempt.retry_state.attempt_number,
                    )
                return await self._request(operation, payload, master_key, key_id)

    async def wrap(
        self, key_material: bytes, master_key: dict, key_id: Any = None,
    ) -> bytes:
        return await self._call("encrypt", key_material, master_key, key_id)

    async def unwrap(
        self, wrapped: bytes, master_key: dict, key_id: Any = None,
    ) -> bytes:
        raw = await self._call("decrypt", wrapped, master_key, key_id)
        if len(raw) != KEY_LENGTH:
            raise KmsUnwrapError(
                f"KMS '{self.name}' returned {len(raw)} bytes, expected {KEY_LENGTH}",
                key_id=key_id,
            )
        return raw


class KmsProviders:
    """Registry of configured providers, keyed by provider name."""

    def __init__(self, providers: Optional[dict[str, KmsProvider]] = None):
        self._providers: dict[str, KmsProvider] = dict(providers or {})

    @classmethod
    def from_config(
        cls,
        kms_providers: dict[str, dict],
        transports: Optional[dict[str, KmsTransport]] = None,
        max_attempts: int = 3,
    ) -> "KmsProviders":
        """Build providers from ``{"local": {"key": ...}, "aws": {...}}``.

        Remote providers need a transport in ``transports`` under the same name.
        """
        transports = transports or {}
        providers: dict[str, KmsProvider] = {}
        for name, options in kms_providers.items():
            if name == "local":
                providers[name] = LocalKmsProvider(options["key"])
                continue
            if name not in transports:
                raise ValueError(
                    f"KMS provider '{name}' needs a transport"
                )
            providers[name] = RemoteKmsProvider(
                name,
                transports[name],
                credentials=options,
                max_attempts=max_attempts,
            )
        logger.debug("Configured KMS providers: %s", sorted(providers))
        return cls(providers)

    def get(self, name: str, key_id: Any = None) -> KmsProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise KmsUnwrapError(
                f"KMS provider '{name}' is not configured", key_id=key_id,
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def names(self) -> list[str]:
        return sorted(self._providers)
