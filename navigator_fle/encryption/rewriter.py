"""
Command Rewriter — encrypts outgoing commands and decrypts server replies.

Encryption needs the namespace schema; decryption does not: every ciphertext
envelope names its own key id and algorithm, so any holder of the keys can
decrypt a reply whatever schema produced it.
"""
import logging
from typing import Any, Mapping, Optional

from bson.binary import Binary

from .cache import KeyResolver
from .crypto import decrypt_value, encrypt_value, is_ciphertext, parse_envelope
from .marking import EncryptionMarker, MarkingEngine
from .schema import SchemaRegistry

logger = logging.getLogger("navigator.fle")


def _substitute(value: Any, replace) -> Any:
    """Copy ``value`` with ``replace`` applied to every leaf."""
    if isinstance(value, Mapping):
        return {k: _substitute(v, replace) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_substitute(v, replace) for v in value]
    return replace(value)


def _collect_ciphertexts(value: Any, found: list) -> list:
    if isinstance(value, Mapping):
        for v in value.values():
            _collect_ciphertexts(v, found)
    elif isinstance(value, (list, tuple)):
        for v in value:
            _collect_ciphertexts(v, found)
    elif is_ciphertext(value):
        found.append(value)
    return found


class CommandRewriter:
    """Marks, encrypts and substitutes values; decrypts replies."""

    def __init__(
        self,
        registry: SchemaRegistry,
        resolver: KeyResolver,
        marking: Optional[MarkingEngine] = None,
        bypass_auto_encryption: bool = False,
    ):
        self._registry = registry
        self._resolver = resolver
        self._marking = marking or MarkingEngine()
        self._bypass = bypass_auto_encryption

    @property
    def registry(self) -> SchemaRegistry:
        return self._registry

    async def encrypt_command(
        self,
        command: Mapping[str, Any],
        namespace: str,
        session: Any = None,
    ) -> Mapping[str, Any]:
        """Return ``command`` with every schema-matched value encrypted.

        Commands on namespaces without a schema are returned unchanged.

        Raises:
            SchemaMismatchError: A value cannot be encrypted as declared.
            KeyNotFoundError: A referenced data key is not in the vault.
            KmsUnwrapError: A data key could not be unwrapped.
        """
        if self._bypass:
            return command
        schema = self._registry.resolve(namespace)
        if schema is None:
            return command
        marked = self._marking.mark_command(command, schema)
        if not marked:
            return marked.document
        # one resolution per distinct key, however many fields use it
        keys = await self._resolver.resolve_many(marked.key_refs)

        def encrypt(value: Any) -> Any:
            if not isinstance(value, EncryptionMarker):
                return value
            key_id, key = keys[value.key_ref]
            return encrypt_value(
                value.value, key, key_id, value.algorithm, value.path,
            )

        rewritten = _substitute(marked.document, encrypt)
        logger.debug(
            "Encrypted %d field(s) with %d key(s) for %s (session=%s)",
            len(marked.markers), len(keys), namespace,
            getattr(session, "session_id_str", None),
        )
        return rewritten

    async def decrypt_result(self, document: Mapping[str, Any]) -> Mapping[str, Any]:
        """Return ``document`` with every ciphertext envelope decrypted.

        Raises:
            DecryptionError: Any envelope fails to authenticate. No partially
                decrypted document is ever returned.
        """
        found = _collect_ciphertexts(document, [])
        if not found:
            return document
        key_ids = [parse_envelope(value).key_id for value in found]
        keys = await self._resolver.resolve_ids(key_ids)

        def decrypt(value: Any) -> Any:
            if not is_ciphertext(value):
                return value
            return decrypt_value(value, keys[bytes(parse_envelope(value).key_id)])

        return _substitute(document, decrypt)

    async def decrypt_value(self, value: Binary) -> Any:
        """Decrypt one ciphertext envelope."""
        envelope = parse_envelope(value)
        keys = await self._resolver.resolve_ids([envelope.key_id])
        return decrypt_value(value, keys[bytes(envelope.key_id)])
