"""Encrypting client: automatic encryption over a dispatcher, plus explicit encryption.

``EncryptedClient`` rewrites every command through the schema-driven
encryption pipeline and decrypts every reply. ``ClientEncryption`` exposes
the key vault administration and explicit encrypt/decrypt calls.
"""
import logging
from typing import Any, Iterable, NamedTuple, Optional, Union

from bson.binary import Binary
from bson.objectid import ObjectId

from .dispatch import Dispatcher, Namespace, check_reply
from .encryption.cache import KeyCache, KeyResolver
from .encryption.config import AutoEncryptionConfig
from .encryption.crypto import (
    KEY_LENGTH,
    Algorithm,
    decrypt_value,
    encrypt_value,
    generate_data_key,
    parse_envelope,
)
from .encryption.exceptions import ClientClosedError
from .encryption.key_rotation import rewrap_many_data_key
from .encryption.keyvault import DataKey, KeyRef, KeyVaultStore, new_key_id
from .encryption.kms import KmsProviders, KmsTransport
from .encryption.rewriter import CommandRewriter
from .encryption.schema import SchemaRegistry
from .session import SessionContext, SessionTransactionCoordinator

logger = logging.getLogger("navigator.fle")


class InsertResult(NamedTuple):
    inserted_ids: list
    acknowledged: bool = True

    @property
    def inserted_id(self) -> Any:
        return self.inserted_ids[0] if self.inserted_ids else None


class UpdateResult(NamedTuple):
    matched_count: int
    modified_count: int
    upserted_id: Any = None


class ClientEncryption:
    """Explicit encryption and key vault administration."""

    def __init__(
        self,
        store: KeyVaultStore,
        kms: KmsProviders,
        resolver: KeyResolver,
        rewrap_batch_size: int = 100,
    ):
        self._store = store
        self._kms = kms
        self._resolver = resolver
        self._rewrap_batch_size = rewrap_batch_size
        self._closed = False

    @classmethod
    def create(
        cls,
        dispatcher: Dispatcher,
        kms_providers: dict[str, dict],
        key_vault_namespace: str = "keyvault.datakeys",
        kms_transports: Optional[dict[str, KmsTransport]] = None,
        key_cache_ttl: float = 60.0,
    ) -> "ClientEncryption":
        """Standalone instance, not tied to an EncryptedClient."""
        kms = KmsProviders.from_config(kms_providers, kms_transports)
        store = KeyVaultStore(dispatcher, key_vault_namespace)
        resolver = KeyResolver(store, kms, KeyCache(key_cache_ttl))
        return cls(store, kms, resolver)

    def _check_closed(self) -> None:
        if self._closed:
            raise ClientClosedError("ClientEncryption has been closed")

    async def create_data_key(
        self,
        kms_provider: str,
        master_key: Optional[dict] = None,
        key_alt_names: Optional[Iterable[str]] = None,
        key_material: Optional[bytes] = None,
    ) -> Binary:
        """Create a data key wrapped by ``kms_provider`` and store it.

        Returns:
            The new key id (Binary, UUID subtype 4).
        """
        self._check_closed()
        provider = self._kms.get(kms_provider)
        raw = key_material if key_material is not None else generate_data_key()
        if len(raw) != KEY_LENGTH:
            raise ValueError(f"key_material must be {KEY_LENGTH} bytes")
        key_id = new_key_id()
        master = provider.master_key_document(master_key)
        wrapped = await provider.wrap(raw, master, key_id=key_id)
        key = DataKey(
            id=key_id,
            key_material=wrapped,
            master_key=master,
            key_alt_names=list(key_alt_names or []),
        )
        return await self._store.insert_key(key)

    async def encrypt(
        self,
        value: Any,
        algorithm: Union[str, Algorithm],
        key_id: Optional[Binary] = None,
        key_alt_name: Optional[str] = None,
    ) -> Binary:
        """Encrypt a single value with the key given by id or alt name."""
        self._check_closed()
        if (key_id is None) == (key_alt_name is None):
            raise ValueError("Exactly one of key_id or key_alt_name is required")
        ref = KeyRef.by_id(key_id) if key_id is not None else KeyRef.by_alt_name(key_alt_name)
        resolved_id, key = await self._resolver.resolve_key(ref)
        return encrypt_value(value, key, resolved_id, Algorithm(algorithm))

    async def decrypt(self, value: Binary) -> Any:
        """Decrypt a subtype 6 Binary."""
        self._check_closed()
        envelope = parse_envelope(value)
        keys = await self._resolver.resolve_ids([envelope.key_id])
        return decrypt_value(value, keys[bytes(envelope.key_id)])

    async def get_key(self, key_id: Binary) -> Optional[DataKey]:
        self._check_closed()
        return await self._store.get_key(key_id)

    async def get_keys(self) -> list[DataKey]:
        self._check_closed()
        return await self._store.get_keys()

    async def get_key_by_alt_name(self, key_alt_name: str) -> Optional[DataKey]:
        self._check_closed()
        return await self._store.get_key_by_alt_name(key_alt_name)

    async def delete_key(self, key_id: Binary) -> int:
        self._check_closed()
        self._resolver.cache.invalidate(key_id)
        return await self._store.delete_key(key_id)

    async def add_key_alt_name(self, key_id: Binary, key_alt_name: str) -> Optional[DataKey]:
        self._check_closed()
        return await self._store.add_key_alt_name(key_id, key_alt_name)

    async def remove_key_alt_name(self, key_id: Binary, key_alt_name: str) -> Optional[DataKey]:
        self._check_closed()
        self._resolver.cache.invalidate(key_id)
        return await self._store.remove_key_alt_name(key_id, key_alt_name)

    async def rewrap_many_data_key(
        self,
        filter: Optional[dict] = None,
        provider: Optional[str] = None,
        master_key: Optional[dict] = None,
        resume_after: Optional[Binary] = None,
    ) -> dict:
        """Re-wrap matching data keys under a (possibly new) master key."""
        self._check_closed()
        return await rewrap_many_data_key(
            self._store, self._kms, filter, provider, master_key,
            batch_size=self._rewrap_batch_size, resume_after=resume_after,
        )

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._resolver.close()

    async def __aenter__(self) -> "ClientEncryption":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class EncryptedClient:
    """Client that encrypts commands and decrypts replies automatically."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        config: AutoEncryptionConfig,
        kms_transports: Optional[dict[str, KmsTransport]] = None,
        key_cache: Optional[KeyCache] = None,
    ):
        self._dispatcher = dispatcher
        self._config = config
        self._kms = KmsProviders.from_config(
            config.kms_providers, kms_transports, config.kms_max_attempts,
        )
        self._store = KeyVaultStore(dispatcher, config.key_vault_namespace)
        self._resolver = KeyResolver(
            self._store,
            self._kms,
            key_cache if key_cache is not None else KeyCache(config.key_cache_ttl),
        )
        self._rewriter = CommandRewriter(
            SchemaRegistry(config.schema_map),
            self._resolver,
            bypass_auto_encryption=config.bypass_auto_encryption,
        )
        self._coordinator = SessionTransactionCoordinator(dispatcher)
        self.encryption = ClientEncryption(
            self._store, self._kms, self._resolver, config.rewrap_batch_size,
        )
        self._closed = False
        logger.info(
            "Encrypted client ready: key vault=%s, providers=%s, schemas=%s",
            config.key_vault_namespace, self._kms.names(),
            self._rewriter.registry.namespaces(),
        )

    @property
    def schema_registry(self) -> SchemaRegistry:
        return self._rewriter.registry

    @property
    def key_cache(self) -> KeyCache:
        return self._resolver.cache

    def reload_schemas(self, schema_map: dict[str, dict]) -> SchemaRegistry:
        """Swap in a new registry built from ``schema_map``."""
        registry = self._rewriter.registry.reload(schema_map)
        self._rewriter = CommandRewriter(
            registry,
            self._resolver,
            bypass_auto_encryption=self._config.bypass_auto_encryption,
        )
        return registry

    def _check_closed(self) -> None:
        if self._closed:
            raise ClientClosedError("EncryptedClient has been closed")

    def start_session(self, causal_consistency: bool = True) -> SessionContext:
        self._check_closed()
        return self._coordinator.start_session(causal_consistency)

    def get_collection(self, namespace: str) -> "EncryptedCollection":
        ns = Namespace.parse(namespace)
        return EncryptedCollection(self, ns.database, ns.collection)

    @staticmethod
    def _namespace_of(database: str, command: dict) -> Optional[str]:
        name, target = next(iter(command.items()))
        if name == "getMore":
            target = command.get("collection")
        if isinstance(target, str):
            return f"{database}.{target}"
        return None

    async def command(
        self,
        database: str,
        command: dict,
        session: Optional[SessionContext] = None,
    ) -> dict:
        """Encrypt, dispatch and decrypt one command.

        Dispatch errors propagate unchanged; nothing is retried here.
        """
        self._check_closed()
        namespace = self._namespace_of(database, command)
        rewriter = self._rewriter

        async def prepare(cmd: dict) -> dict:
            if namespace is None or namespace == self._store.namespace:
                return cmd
            return await rewriter.encrypt_command(cmd, namespace, session)

        if session is None:
            reply = await self._dispatcher.dispatch(database, await prepare(command))
        else:
            reply = await self._coordinator.execute(session, database, command, prepare)
        return await rewriter.decrypt_result(reply)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._coordinator.close()
        await self.encryption.close()
        logger.info("Encrypted client closed")

    async def __aenter__(self) -> "EncryptedClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class EncryptedCollection:
    """CRUD helpers that build commands and run them through the client."""

    def __init__(self, client: EncryptedClient, database: str, name: str):
        self._client = client
        self.database = database
        self.name = name

    @property
    def namespace(self) -> str:
        return f"{self.database}.{self.name}"

    async def _run(self, command: dict, session: Optional[SessionContext]) -> dict:
        return check_reply(await self._client.command(self.database, command, session))

    async def insert_many(
        self, documents: Iterable[dict], session: Optional[SessionContext] = None,
    ) -> InsertResult:
        docs = []
        for doc in documents:
            if "_id" not in doc:
                doc = {"_id": ObjectId(), **doc}
            docs.append(doc)
        await self._run({"insert": self.name, "documents": docs, "ordered": True}, session)
        return InsertResult([d["_id"] for d in docs])

    async def insert_one(
        self, document: dict, session: Optional[SessionContext] = None,
    ) -> InsertResult:
        return await self.insert_many([document], session)

    async def find(
        self,
        filter: Optional[dict] = None,
        session: Optional[SessionContext] = None,
        projection: Optional[dict] = None,
        sort: Optional[dict] = None,
        limit: int = 0,
        batch_size: int = 0,
    ) -> list[dict]:
        command: dict[str, Any] = {"find": self.name, "filter": filter or {}}
        if projection:
            command["projection"] = projection
        if sort:
            command["sort"] = sort
        if limit:
            command["limit"] = limit
        if batch_size:
            command["batchSize"] = batch_size
        reply = await self._run(command, session)
        cursor = reply["cursor"]
        docs = list(cursor.get("firstBatch", []))
        while cursor.get("id"):
            reply = await self._run({"getMore": cursor["id"], "collection": self.name}, session)
            cursor = reply["cursor"]
            docs.extend(cursor.get("nextBatch", []))
        return docs

    async def find_one(
        self, filter: Optional[dict] = None, session: Optional[SessionContext] = None,
    ) -> Optional[dict]:
        docs = await self.find(filter, session=session, limit=1)
        return docs[0] if docs else None

    async def _update(
        self, filter: dict, update: Any, multi: bool, upsert: bool,
        session: Optional[SessionContext],
    ) -> UpdateResult:
        reply = await self._run({
            "update": self.name,
            "updates": [{"q": filter, "u": update, "multi": multi, "upsert": upsert}],
        }, session)
        upserted = reply.get("upserted") or [{}]
        return UpdateResult(
            reply.get("n", 0), reply.get("nModified", 0), upserted[0].get("_id"),
        )

    async def update_one(
        self, filter: dict, update: dict, upsert: bool = False,
        session: Optional[SessionContext] = None,
    ) -> UpdateResult:
        return await self._update(filter, update, False, upsert, session)

    async def update_many(
        self, filter: dict, update: dict, upsert: bool = False,
        session: Optional[SessionContext] = None,
    ) -> UpdateResult:
        return await self._update(filter, update, True, upsert, session)

    async def replace_one(
        self, filter: dict, replacement: dict, upsert: bool = False,
        session: Optional[SessionContext] = None,
    ) -> UpdateResult:
        if any(k.startswith("$") for k in replacement):
            raise ValueError("replacement cannot contain update operators")
        return await self._update(filter, replacement, False, upsert, session)

    async def _delete(self, filter: dict, limit: int, session: Optional[SessionContext]) -> int:
        reply = await self._run({
            "delete": self.name,
            "deletes": [{"q": filter, "limit": limit}],
        }, session)
        return reply.get("n", 0)

    async def delete_one(self, filter: dict, session: Optional[SessionContext] = None) -> int:
        return await self._delete(filter, 1, session)

    async def delete_many(self, filter: dict, session: Optional[SessionContext] = None) -> int:
        return await self._delete(filter, 0, session)

    async def count_documents(
        self, filter: Optional[dict] = None, session: Optional[SessionContext] = None,
    ) -> int:
        reply = await self._run({"count": self.name, "query": filter or {}}, session)
        return reply.get("n", 0)

    async def distinct(
        self, key: str, filter: Optional[dict] = None,
        session: Optional[SessionContext] = None,
    ) -> list:
        reply = await self._run(
            {"distinct": self.name, "key": key, "query": filter or {}}, session,
        )
        return reply.get("values", [])

    async def find_one_and_update(
        self, filter: dict, update: dict, return_new: bool = False,
        session: Optional[SessionContext] = None,
    ) -> Optional[dict]:
        reply = await self._run({
            "findAndModify": self.name,
            "query": filter,
            "update": update,
            "new": return_new,
        }, session)
        return reply.get("value")

    async def drop(self, session: Optional[SessionContext] = None) -> None:
        await self._run({"drop": self.name}, session)
