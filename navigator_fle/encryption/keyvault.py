"""
Key Vault Store — CRUD over the collection holding wrapped data keys.

Document shape::

    {_id: Binary(uuid, 4), keyMaterial: bytes,
     masterKey: {provider: str, ...provider params},
     creationDate: datetime, updateDate: datetime, status: int,
     keyAltNames: [str]}

Vault commands bypass encryption and never join a user session. Reads use
majority read concern and writes majority write concern so a key created on
one client is visible to every other.

Security Note:
    ``keyMaterial`` is wrapped; still, never log it.
"""
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional

from bson.binary import Binary, UUID_SUBTYPE
from pydantic import BaseModel, Field, field_validator

from ..dispatch import Dispatcher, Namespace
from .exceptions import format_key_id

logger = logging.getLogger("navigator.fle")

_READ_CONCERN = {"level": "majority"}
_WRITE_CONCERN = {"w": "majority"}


def new_key_id() -> Binary:
    return Binary(uuid.uuid4().bytes, UUID_SUBTYPE)


def utcnow() -> datetime:
    # BSON datetimes have millisecond precision
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


class DataKey(BaseModel):
    """A data encryption key document as stored in the vault."""

    id: Binary = Field(alias="_id")
    key_material: bytes = Field(alias="keyMaterial")
    master_key: dict[str, Any] = Field(alias="masterKey")
    creation_date: datetime = Field(default_factory=utcnow, alias="creationDate")
    update_date: datetime = Field(default_factory=utcnow, alias="updateDate")
    status: int = 0
    key_alt_names: list[str] = Field(default_factory=list, alias="keyAltNames")

    model_config = {"arbitrary_types_allowed": True, "populate_by_name": True}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: Binary) -> Binary:
        """Key ids are UUID binaries."""
        if not isinstance(v, Binary) or v.subtype != UUID_SUBTYPE or len(v) != 16:
            raise ValueError("_id must be a Binary with UUID subtype 4")
        return v

    @field_validator("master_key")
    @classmethod
    def validate_master_key(cls, v: dict) -> dict:
        if not v.get("provider"):
            raise ValueError("masterKey must name a provider")
        return v

    @property
    def provider(self) -> str:
        return self.master_key["provider"]

    @property
    def key_id(self) -> Optional[str]:
        return format_key_id(self.id)

    def to_document(self) -> dict[str, Any]:
        doc = {
            "_id": self.id,
            "keyMaterial": self.key_material,
            "masterKey": dict(self.master_key),
            "creationDate": self.creation_date,
            "updateDate": self.update_date,
            "status": self.status,
        }
        if self.key_alt_names:
            doc["keyAltNames"] = list(self.key_alt_names)
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "DataKey":
        return cls.model_validate(doc)


class KeyVaultStore:
    """Access to the key vault collection through a dispatcher."""

    def __init__(self, dispatcher: Dispatcher, namespace: str):
        self._dispatcher = dispatcher
        self._ns = Namespace.parse(namespace)

    @property
    def namespace(self) -> str:
        return str(self._ns)

    async def _command(self, command: dict) -> dict:
        return await self._dispatcher.dispatch(self._ns.database, command)

    async def _find(
        self, filter: dict, limit: int = 0, sort: Optional[dict] = None,
    ) -> list[dict]:
        command = {
            "find": self._ns.collection,
            "filter": filter,
            "readConcern": _READ_CONCERN,
        }
        if sort:
            command["sort"] = sort
        if limit:
            command["limit"] = limit
        reply = await self._command(command)
        cursor = reply["cursor"]
        docs = list(cursor.get("firstBatch", []))
        while cursor.get("id"):
            reply = await self._command({
                "getMore": cursor["id"],
                "collection": self._ns.collection,
            })
            cursor = reply["cursor"]
            docs.extend(cursor.get("nextBatch", []))
        return docs

    async def _find_one(self, filter: dict) -> Optional[DataKey]:
        docs = await self._find(filter, limit=1)
        if not docs:
            return None
        return DataKey.from_document(docs[0])

    async def _find_and_modify(self, filter: dict, update: dict) -> Optional[DataKey]:
        reply = await self._command({
            "findAndModify": self._ns.collection,
            "query": filter,
            "update": update,
            "new": False,
            "writeConcern": _WRITE_CONCERN,
        })
        value = reply.get("value")
        return DataKey.from_document(value) if value else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_key(self, key_id: Binary) -> Optional[DataKey]:
        """Return the key with ``_id`` equal to ``key_id``, or None."""
        return await self._find_one({"_id": key_id})

    async def get_key_by_alt_name(self, key_alt_name: str) -> Optional[DataKey]:
        """Return the key carrying ``key_alt_name``, or None."""
        return await self._find_one({"keyAltNames": key_alt_name})

    async def get_keys(
        self, filter: Optional[dict] = None, limit: int = 0, after: Optional[Binary] = None,
    ) -> list[DataKey]:
        """Return keys matching ``filter``.

        With ``after`` the keys are ordered by id and start past that id,
        which pages through the vault when combined with ``limit``.
        """
        query = filter or {}
        sort = None
        if after is not None or limit:
            sort = {"_id": 1}
        if after is not None:
            page = {"_id": {"$gt": after}}
            query = {"$and": [query, page]} if query else page
        docs = await self._find(query, limit=limit, sort=sort)
        return [DataKey.from_document(doc) for doc in docs]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _check_alt_names_free(self, names: list[str], key_id: Any = None) -> None:
        for name in names:
            existing = await self.get_key_by_alt_name(name)
            if existing is not None and existing.id != key_id:
                raise ValueError(
                    f"keyAltName '{name}' already used by key {existing.key_id}"
                )

    async def insert_key(self, key: DataKey) -> Binary:
        """Insert a new key document; ids and alt names must be unique."""
        if await self.get_key(key.id) is not None:
            raise ValueError(f"Data key {key.key_id} already exists")
        await self._check_alt_names_free(key.key_alt_names)
        await self._command({
            "insert": self._ns.collection,
            "documents": [key.to_document()],
            "writeConcern": _WRITE_CONCERN,
        })
        logger.info(
            "Created data key %s (provider=%s)", key.key_id, key.provider,
        )
        return key.id

    async def delete_key(self, key_id: Binary) -> int:
        """Delete a key document. Returns the number of removed documents."""
        reply = await self._command({
            "delete": self._ns.collection,
            "deletes": [{"q": {"_id": key_id}, "limit": 1}],
            "writeConcern": _WRITE_CONCERN,
        })
        deleted = reply.get("n", 0)
        logger.info("Deleted data key %s (n=%d)", format_key_id(key_id), deleted)
        return deleted

    async def add_key_alt_name(self, key_id: Binary, key_alt_name: str) -> Optional[DataKey]:
        """Add an alternate name. Returns the key document before the update."""
        await self._check_alt_names_free([key_alt_name], key_id)
        return await self._find_and_modify(
            {"_id": key_id},
            {
                "$addToSet": {"keyAltNames": key_alt_name},
                "$set": {"updateDate": utcnow()},
            },
        )

    async def remove_key_alt_name(self, key_id: Binary, key_alt_name: str) -> Optional[DataKey]:
        """Remove an alternate name, dropping ``keyAltNames`` once empty.

        Returns the key document before the update.
        """
        previous = await self._find_and_modify(
            {"_id": key_id},
            {
                "$pull": {"keyAltNames": key_alt_name},
                "$set": {"updateDate": utcnow()},
            },
        )
        if previous is not None and previous.key_alt_names == [key_alt_name]:
            await self._command({
                "update": self._ns.collection,
                "updates": [{
                    "q": {"_id": key_id},
                    "u": {"$unset": {"keyAltNames": ""}},
                }],
                "writeConcern": _WRITE_CONCERN,
            })
        return previous

    async def replace_key_material(
        self, key_id: Binary, key_material: bytes, master_key: dict,
    ) -> int:
        """Store a re-wrapped key. Returns the number of modified documents."""
        reply = await self._command({
            "update": self._ns.collection,
            "updates": [{
                "q": {"_id": key_id},
                "u": {"$set": {
                    "keyMaterial": key_material,
                    "masterKey": master_key,
                    "updateDate": utcnow(),
                }},
            }],
            "writeConcern": _WRITE_CONCERN,
        })
        return reply.get("nModified", reply.get("n", 0))


class KeyRef(NamedTuple):
    """Reference to a data key: by ``_id`` or by one of its ``keyAltNames``."""

    key_id: Optional[Binary] = None
    key_alt_name: Optional[str] = None

    @classmethod
    def by_id(cls, key_id: Binary) -> "KeyRef":
        if not isinstance(key_id, Binary) or key_id.subtype != UUID_SUBTYPE:
            raise TypeError("key_id must be a Binary with UUID subtype 4")
        return cls(key_id=key_id)

    @classmethod
    def by_alt_name(cls, key_alt_name: str) -> "KeyRef":
        if not isinstance(key_alt_name, str) or not key_alt_name:
            raise TypeError("key_alt_name must be a non-empty string")
        return cls(key_alt_name=key_alt_name)

    def __str__(self) -> str:
        if self.key_id is not None:
            return f"id:{format_key_id(self.key_id)}"
        return f"altName:{self.key_alt_name}"
