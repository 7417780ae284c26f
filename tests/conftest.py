"""
Shared fixtures: an in-memory command dispatcher with transaction support,
a local KMS master key, and ready-made encrypted clients.
"""
import copy
import asyncio
import itertools
from collections import defaultdict
from typing import Any, Optional

import pytest
import pytest_asyncio

from navigator_fle.client import ClientEncryption, EncryptedClient
from navigator_fle.encryption.config import AutoEncryptionConfig
from navigator_fle.encryption.crypto import Algorithm

LOCAL_MASTER_KEY = bytes(range(96))
NAMESPACE = "db.coll"


def get_path(doc: dict, path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


_MISSING = object()


def _equals(value: Any, expected: Any) -> bool:
    if isinstance(value, list) and not isinstance(expected, list):
        return any(v == expected for v in value)
    return value == expected


def matches(doc: dict, query: dict) -> bool:
    for key, cond in query.items():
        if key == "$and":
            if not all(matches(doc, q) for q in cond):
                return False
        elif key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
        elif key == "$nor":
            if any(matches(doc, q) for q in cond):
                return False
        else:
            value = get_path(doc, key)
            if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
                for op, operand in cond.items():
                    if op == "$eq" and not _equals(value, operand):
                        return False
                    if op == "$ne" and _equals(value, operand):
                        return False
                    if op == "$in" and not any(_equals(value, o) for o in operand):
                        return False
                    if op == "$nin" and any(_equals(value, o) for o in operand):
                        return False
                    if op == "$exists" and (value is not _MISSING) != bool(operand):
                        return False
                    if op == "$gt" and (value is _MISSING or not value > operand):
                        return False
            elif value is _MISSING or not _equals(value, cond):
                return False
    return True


def _set_path(doc: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


def _unset_path(doc: dict, path: str) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.get(part, {})
    doc.pop(parts[-1], None)


def apply_update(doc: dict, update: dict) -> dict:
    if not any(k.startswith("$") for k in update):
        return {"_id": doc["_id"], **{k: v for k, v in update.items() if k != "_id"}}
    doc = copy.deepcopy(doc)
    for op, fields in update.items():
        for path, value in fields.items():
            if op in ("$set", "$setOnInsert"):
                _set_path(doc, path, value)
            elif op == "$unset":
                _unset_path(doc, path)
            elif op == "$inc":
                current = get_path(doc, path)
                _set_path(doc, path, (0 if current is _MISSING else current) + value)
            elif op == "$addToSet":
                current = doc.setdefault(path, [])
                if value not in current:
                    current.append(value)
            elif op == "$pull":
                doc[path] = [v for v in doc.get(path, []) if v != value]
            else:
                raise NotImplementedError(op)
    return doc


class _Transaction:
    def __init__(self, collections: dict):
        self.collections = copy.deepcopy(collections)
        self.ops: list[tuple[str, dict]] = []


class MemoryDispatcher:
    """Executes the command subset the client issues against in-memory collections.

    Writes inside a transaction go to a private copy and are replayed on the
    committed collections at commitTransaction.
    """

    WRITE_COMMANDS = frozenset({"insert", "update", "delete", "findAndModify"})

    def __init__(self):
        self.collections: dict[str, list] = defaultdict(list)
        self.commands: list[tuple[str, dict]] = []
        self.failures: dict[str, BaseException] = {}
        self.delays: dict[str, float] = {}
        # canned replies, returned once instead of running the command
        self.replies: dict[str, dict] = {}
        # commands that run but whose reply never arrives
        self.lost_replies: set[str] = set()
        self.ended_sessions: list = []
        self._transactions: dict[tuple, _Transaction] = {}
        self._committed: set = set()
        self._cursors: dict[int, list] = {}
        self._cursor_ids = itertools.count(1000)
        self.in_flight: dict[str, int] = defaultdict(int)
        self.max_in_flight: dict[str, int] = defaultdict(int)

    def documents(self, namespace: str) -> list:
        """Committed documents exactly as stored (no decryption)."""
        return copy.deepcopy(self.collections[namespace])

    def expire_transactions(self) -> None:
        """Drop every open transaction, as the server does on timeout."""
        self._transactions.clear()

    def sent(self, name: str) -> list[dict]:
        return [cmd for _, cmd in self.commands if next(iter(cmd)) == name]

    async def dispatch(
        self, database: str, command: dict, session: Optional[Any] = None,
    ) -> dict:
        name = next(iter(command))
        self.commands.append((database, copy.deepcopy(command)))
        self.in_flight[name] += 1
        self.max_in_flight[name] = max(self.max_in_flight[name], self.in_flight[name])
        try:
            await asyncio.sleep(self.delays.get(name, 0))
            if name in self.failures:
                raise self.failures.pop(name)
            if name in self.replies:
                return self.replies.pop(name)
            reply = self._execute(database, command)
            if name in self.lost_replies:
                self.lost_replies.discard(name)
                raise ConnectionError(f"connection closed before {name} reply")
            return reply
        finally:
            self.in_flight[name] -= 1

    def _txn_key(self, command: dict) -> Optional[tuple]:
        if "txnNumber" not in command:
            return None
        return bytes(command["lsid"]["id"]), int(command["txnNumber"])

    def _execute(self, database: str, command: dict) -> dict:
        name = next(iter(command))
        key = self._txn_key(command)
        if name == "commitTransaction":
            txn = self._transactions.pop(key, None)
            if txn is None:
                if key in self._committed:
                    return {"ok": 1}
                return {"ok": 0, "code": 251, "errmsg": "NoSuchTransaction"}
            for db, cmd in txn.ops:
                self._run(db, cmd, self.collections)
            self._committed.add(key)
            return {"ok": 1}
        if name == "abortTransaction":
            self._transactions.pop(key, None)
            return {"ok": 1}
        if name == "endSessions":
            self.ended_sessions.extend(command["endSessions"])
            return {"ok": 1}
        if key is None:
            return self._run(database, command, self.collections)
        if command.get("startTransaction"):
            self._transactions[key] = _Transaction(self.collections)
        txn = self._transactions.get(key)
        if txn is None:
            return {"ok": 0, "code": 251, "errmsg": "NoSuchTransaction"}
        reply = self._run(database, command, txn.collections)
        if name in self.WRITE_COMMANDS:
            txn.ops.append((database, command))
        return reply

    def _run(self, database: str, command: dict, collections: dict) -> dict:
        name, target = next(iter(command.items()))
        if name == "getMore":
            batch = self._cursors.pop(target, [])
            return {"ok": 1, "cursor": {"id": 0, "nextBatch": batch}}
        ns = f"{database}.{target}"
        docs = collections[ns]
        if name == "insert":
            errors = []
            for i, doc in enumerate(command["documents"]):
                if any(d["_id"] == doc["_id"] for d in docs):
                    errors.append({"index": i, "code": 11000, "errmsg": "duplicate key"})
                    continue
                docs.append(copy.deepcopy(doc))
            reply = {"ok": 1, "n": len(command["documents"]) - len(errors)}
            if errors:
                reply["writeErrors"] = errors
            return reply
        if name == "find":
            found = [copy.deepcopy(d) for d in docs if matches(d, command.get("filter", {}))]
            for field, direction in reversed(list(command.get("sort", {}).items())):
                found.sort(key=lambda d: get_path(d, field), reverse=direction < 0)
            if command.get("limit"):
                found = found[:command["limit"]]
            batch_size = command.get("batchSize") or len(found) or 1
            first, rest = found[:batch_size], found[batch_size:]
            cursor_id = 0
            if rest:
                cursor_id = next(self._cursor_ids)
                self._cursors[cursor_id] = rest
            return {"ok": 1, "cursor": {"id": cursor_id, "ns": ns, "firstBatch": first}}
        if name == "update":
            n = modified = 0
            upserted = []
            for spec in command["updates"]:
                matched = [d for d in docs if matches(d, spec["q"])]
                if not spec.get("multi"):
                    matched = matched[:1]
                if not matched and spec.get("upsert"):
                    seed = {k: v for k, v in spec["q"].items() if not k.startswith("$")}
                    seed.setdefault("_id", len(docs) + 1)
                    docs.append(apply_update(seed, spec["u"]))
                    upserted.append({"index": 0, "_id": seed["_id"]})
                    n += 1
                for doc in matched:
                    updated = apply_update(doc, spec["u"])
                    n += 1
                    if updated != doc:
                        modified += 1
                        docs[docs.index(doc)] = updated
            reply = {"ok": 1, "n": n, "nModified": modified}
            if upserted:
                reply["upserted"] = upserted
            return reply
        if name == "delete":
            n = 0
            for spec in command["deletes"]:
                matched = [d for d in docs if matches(d, spec["q"])]
                if spec.get("limit"):
                    matched = matched[:1]
                for doc in matched:
                    docs.remove(doc)
                    n += 1
            return {"ok": 1, "n": n}
        if name == "findAndModify":
            matched = [d for d in docs if matches(d, command.get("query", {}))]
            if not matched:
                return {"ok": 1, "value": None}
            doc = matched[0]
            updated = apply_update(doc, command["update"])
            docs[docs.index(doc)] = updated
            value = updated if command.get("new") else doc
            return {"ok": 1, "value": copy.deepcopy(value)}
        if name == "count":
            return {"ok": 1, "n": sum(1 for d in docs if matches(d, command.get("query", {})))}
        if name == "distinct":
            values = []
            for d in docs:
                if matches(d, command.get("query", {})):
                    value = get_path(d, command["key"])
                    if value is not _MISSING and value not in values:
                        values.append(copy.deepcopy(value))
            return {"ok": 1, "values": values}
        if name == "drop":
            collections.pop(ns, None)
            return {"ok": 1}
        if name == "create":
            return {"ok": 1}
        return {"ok": 0, "code": 59, "errmsg": f"no such command: '{name}'"}


@pytest.fixture
def local_master_key():
    return LOCAL_MASTER_KEY


@pytest.fixture
def kms_providers(local_master_key):
    return {"local": {"key": local_master_key}}


@pytest.fixture
def server():
    return MemoryDispatcher()


@pytest_asyncio.fixture
async def client_encryption(server, kms_providers):
    encryption = ClientEncryption.create(server, kms_providers)
    yield encryption
    await encryption.close()


@pytest_asyncio.fixture
async def data_key_id(client_encryption):
    return await client_encryption.create_data_key("local", key_alt_names=["local_key"])


@pytest.fixture
def schema_map(data_key_id):
    return {
        NAMESPACE: {
            "bsonType": "object",
            "properties": {
                "encrypted": {
                    "encrypt": {
                        "keyId": [data_key_id],
                        "bsonType": "string",
                        "algorithm": Algorithm.DETERMINISTIC.value,
                    }
                },
                "secret": {
                    "encrypt": {
                        "keyId": [data_key_id],
                        "algorithm": Algorithm.RANDOM.value,
                    }
                },
            },
        }
    }


@pytest_asyncio.fixture
async def encrypted_client(server, kms_providers, schema_map):
    config = AutoEncryptionConfig(kms_providers=kms_providers, schema_map=schema_map)
    client = EncryptedClient(server, config)
    yield client
    await client.close()


@pytest_asyncio.fixture
async def plain_client(server, kms_providers):
    """Client without schemas: writes plaintext, but still decrypts replies."""
    config = AutoEncryptionConfig(kms_providers=kms_providers)
    client = EncryptedClient(server, config)
    yield client
    await client.close()
