"""
Encryption Schemas — per-namespace rules naming which fields are encrypted.

Schemas are ``$jsonSchema`` documents::

    {"bsonType": "object",
     "encryptMetadata": {"keyId": [Binary(..., 4)]},
     "properties": {
        "ssn": {"encrypt": {"bsonType": "string",
                            "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Deterministic"}},
        "contact": {"bsonType": "object",
                    "properties": {"phone": {"encrypt": {...}}}}}}

``encryptMetadata`` is inherited by every nested ``encrypt`` block. ``keyId``
is either a one-element list holding a UUID Binary, or a JSON pointer string
("/owner") naming a document field whose value is a key alt name.

A registry is immutable once built; ``reload`` returns a new one.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

from bson.binary import Binary, UUID_SUBTYPE

from .config import load_extended_json
from .crypto import BSON_TYPE_ALIASES, Algorithm
from .exceptions import SchemaMismatchError
from .keyvault import KeyRef

logger = logging.getLogger("navigator.fle")


@dataclass(frozen=True)
class FieldRule:
    """How one field path is encrypted."""

    path: str
    algorithm: Algorithm
    key_id: Optional[Binary] = None
    key_alt_name_pointer: Optional[str] = None
    bson_types: Optional[frozenset] = None

    def key_ref(self, document: Optional[Mapping[str, Any]] = None) -> KeyRef:
        """Return the key reference, reading the alt name from ``document``
        when the rule uses a JSON pointer."""
        if self.key_id is not None:
            return KeyRef.by_id(self.key_id)
        value: Any = document
        for part in self.key_alt_name_pointer.lstrip("/").split("/"):
            if not isinstance(value, Mapping) or part not in value:
                raise SchemaMismatchError(
                    f"Field '{self.path}' takes its key alt name from "
                    f"'{self.key_alt_name_pointer}', which is missing"
                )
            value = value[part]
        if not isinstance(value, str) or not value:
            raise SchemaMismatchError(
                f"Key alt name at '{self.key_alt_name_pointer}' must be a "
                f"non-empty string"
            )
        return KeyRef.by_alt_name(value)


def _parse_bson_types(value: Any, path: str) -> Optional[frozenset]:
    if value is None:
        return None
    names = [value] if isinstance(value, str) else list(value)
    try:
        return frozenset(BSON_TYPE_ALIASES[name] for name in names)
    except KeyError as err:
        raise ValueError(f"Unknown bsonType {err} for field '{path}'") from None


def _parse_rule(path: str, encrypt: dict) -> FieldRule:
    if "algorithm" not in encrypt:
        raise ValueError(f"Encrypted field '{path}' has no algorithm")
    algorithm = Algorithm(encrypt["algorithm"])
    key_id = encrypt.get("keyId")
    if key_id is None:
        raise ValueError(f"Encrypted field '{path}' has no keyId")
    bson_types = _parse_bson_types(encrypt.get("bsonType"), path)
    if isinstance(key_id, str):
        if not key_id.startswith("/"):
            raise ValueError(f"keyId pointer for '{path}' must start with '/'")
        if algorithm is Algorithm.DETERMINISTIC:
            raise ValueError(
                f"Field '{path}': a keyId pointer requires the random algorithm"
            )
        return FieldRule(path, algorithm, key_alt_name_pointer=key_id, bson_types=bson_types)
    if not isinstance(key_id, list) or len(key_id) != 1:
        raise ValueError(f"keyId for '{path}' must be a list of one UUID")
    uuid_key = key_id[0]
    if not isinstance(uuid_key, Binary) or uuid_key.subtype != UUID_SUBTYPE:
        raise ValueError(f"keyId for '{path}' must be a Binary with UUID subtype 4")
    return FieldRule(path, algorithm, key_id=uuid_key, bson_types=bson_types)


def _walk(node: dict, prefix: str, inherited: dict, rules: dict) -> None:
    wildcard = node.get("additionalProperties")
    if "patternProperties" in node or isinstance(wildcard, dict):
        raise ValueError(
            f"Wildcard properties are not supported (at '{prefix or '$'}')"
        )
    metadata = {**inherited, **node.get("encryptMetadata", {})}
    for name, prop in node.get("properties", {}).items():
        path = f"{prefix}{name}"
        if "encrypt" in prop:
            rules[path] = _parse_rule(path, {**metadata, **prop["encrypt"]})
        elif prop.get("bsonType") == "object" or "properties" in prop:
            _walk(prop, f"{path}.", metadata, rules)


class EncryptionSchema:
    """Encrypted field rules for one namespace, keyed by dotted path."""

    def __init__(self, namespace: str, rules: Mapping[str, FieldRule]):
        self.namespace = namespace
        self._rules = MappingProxyType(dict(rules))
        prefixes = set()
        for path in self._rules:
            parts = path.split(".")
            for i in range(1, len(parts)):
                prefixes.add(".".join(parts[:i]))
        self._prefixes = frozenset(prefixes)

    @classmethod
    def from_json_schema(cls, namespace: str, document: dict) -> "EncryptionSchema":
        schema = document.get("$jsonSchema", document)
        rules: dict[str, FieldRule] = {}
        _walk(schema, "", {}, rules)
        return cls(namespace, rules)

    @property
    def rules(self) -> Mapping[str, FieldRule]:
        return self._rules

    def rule_for(self, path: str) -> Optional[FieldRule]:
        return self._rules.get(path)

    def has_descendants(self, path: str) -> bool:
        """True if some encrypted path lies below ``path``."""
        return path in self._prefixes

    def __bool__(self) -> bool:
        return bool(self._rules)

    def __repr__(self) -> str:
        return f"<EncryptionSchema {self.namespace} fields={sorted(self._rules)}>"


class SchemaRegistry:
    """Namespace → EncryptionSchema. Lookups are pure and local."""

    def __init__(self, schema_map: Optional[Mapping[str, dict]] = None):
        self._schemas = MappingProxyType({
            namespace: EncryptionSchema.from_json_schema(namespace, schema)
            for namespace, schema in (schema_map or {}).items()
        })
        logger.debug(
            "Schema registry built for namespaces: %s", sorted(self._schemas),
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SchemaRegistry":
        """Load a ``{namespace: schema}`` map stored as extended JSON."""
        return cls(load_extended_json(Path(path)))

    def resolve(self, namespace: str) -> Optional[EncryptionSchema]:
        return self._schemas.get(namespace)

    def namespaces(self) -> list[str]:
        return sorted(self._schemas)

    def reload(self, schema_map: Mapping[str, dict]) -> "SchemaRegistry":
        return type(self)(schema_map)

    def __contains__(self, namespace: object) -> bool:
        return namespace in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)
