"""
Marking Engine — replaces schema-matched plaintext values with encryption markers.

Values are visited as one of four kinds:
- SCALAR: any leaf value
- ARRAY: a list, traversed element by element at the same path
- SUBDOCUMENT: a mapping, traversed field by field
- CIPHERTEXT: a subtype 6 Binary, never re-encrypted

Paths match exactly; there are no wildcards. Input documents are never
mutated: marking returns copies with ``EncryptionMarker`` objects in place
of the values to encrypt.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from bson.int64 import Int64

from .crypto import BSON_INT32, BSON_INT64, Algorithm, check_encryptable, is_ciphertext
from .exceptions import SchemaMismatchError
from .keyvault import KeyRef
from .schema import EncryptionSchema, FieldRule

logger = logging.getLogger("navigator.fle")

# Commands that never carry user field values
PASSTHROUGH_COMMANDS = frozenset({
    "getMore", "killCursors", "listIndexes", "create", "drop", "createIndexes",
    "dropIndexes", "collMod", "listCollections", "endSessions",
    "commitTransaction", "abortTransaction",
})

_QUERY_OPERATORS = frozenset({"$eq", "$ne", "$in", "$nin"})
_LOGICAL_OPERATORS = frozenset({"$and", "$or", "$nor"})
# Top-level filter keys that carry no field values
_QUERY_PASSTHROUGH = frozenset({"$comment"})
_SET_OPERATORS = frozenset({"$set", "$setOnInsert"})
_PIPELINE_PASSTHROUGH = frozenset({"$limit", "$skip", "$count", "$sort", "$project"})


class ValueKind(enum.Enum):
    SCALAR = "scalar"
    ARRAY = "array"
    SUBDOCUMENT = "subdocument"
    CIPHERTEXT = "ciphertext"


def classify(value: Any) -> ValueKind:
    if is_ciphertext(value):
        return ValueKind.CIPHERTEXT
    if isinstance(value, Mapping):
        return ValueKind.SUBDOCUMENT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.SCALAR


@dataclass(frozen=True)
class EncryptionMarker:
    """A plaintext value waiting to be encrypted."""

    path: str
    value: Any
    key_ref: KeyRef
    algorithm: Algorithm
    bson_type: int


@dataclass
class MarkedDocument:
    document: Any
    markers: list

    @property
    def key_refs(self) -> list[KeyRef]:
        """Distinct key references, in first-seen order."""
        return list(dict.fromkeys(m.key_ref for m in self.markers))

    def __bool__(self) -> bool:
        return bool(self.markers)


class _Marker:
    """Visitor that walks one command part against a schema."""

    def __init__(self, schema: EncryptionSchema):
        self.schema = schema
        self.markers: list[EncryptionMarker] = []

    # ------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------

    def marker(self, value: Any, rule: FieldRule, root: Optional[Mapping] = None) -> Any:
        if classify(value) is ValueKind.CIPHERTEXT:
            return value
        bson_type = check_encryptable(value, rule.algorithm, rule.path)
        if rule.bson_types is not None and bson_type not in rule.bson_types:
            if bson_type == BSON_INT32 and BSON_INT64 in rule.bson_types:
                value, bson_type = Int64(value), BSON_INT64
            else:
                raise SchemaMismatchError(
                    f"Field '{rule.path}' has BSON type 0x{bson_type:02x}, "
                    f"schema expects one of "
                    f"{sorted(f'0x{t:02x}' for t in rule.bson_types)}"
                )
        marker = EncryptionMarker(
            rule.path, value, rule.key_ref(root), rule.algorithm, bson_type,
        )
        self.markers.append(marker)
        return marker

    # ------------------------------------------------------------------
    # Stored documents
    # ------------------------------------------------------------------

    def visit(self, value: Any, path: str, root: Mapping) -> Any:
        rule = self.schema.rule_for(path)
        if rule is not None:
            return self.marker(value, rule, root)
        if not self.schema.has_descendants(path):
            return value
        kind = classify(value)
        if kind is ValueKind.SUBDOCUMENT:
            return self.visit_subdocument(value, path, root)
        if kind is ValueKind.ARRAY:
            return self.visit_array(value, path, root)
        return value

    def visit_subdocument(self, value: Mapping, path: str, root: Mapping) -> dict:
        prefix = f"{path}." if path else ""
        return {k: self.visit(v, f"{prefix}{k}", root) for k, v in value.items()}

    def visit_array(self, value: list, path: str, root: Mapping) -> list:
        return [
            self.visit(item, path, root)
            if classify(item) in (ValueKind.SUBDOCUMENT, ValueKind.ARRAY)
            else item
            for item in value
        ]

    def document(self, doc: Mapping) -> dict:
        return self.visit_subdocument(doc, "", doc)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _encrypted_prefix(self, path: str) -> Optional[FieldRule]:
        parts = path.split(".")
        for i in range(1, len(parts)):
            rule = self.schema.rule_for(".".join(parts[:i]))
            if rule is not None:
                return rule
        return None

    def query(self, query: Mapping) -> dict:
        out = {}
        for key, cond in query.items():
            if key in _LOGICAL_OPERATORS:
                out[key] = [self.query(q) for q in cond]
            elif key in _QUERY_PASSTHROUGH or not self.schema.rules:
                out[key] = cond
            elif key.startswith("$"):
                # $expr, $where, $text and friends embed values marking cannot see
                raise SchemaMismatchError(
                    f"Query operator {key} is not supported on encrypted collections"
                )
            else:
                out[key] = self.condition(key, cond)
        return out

    def condition(self, path: str, cond: Any) -> Any:
        rule = self.schema.rule_for(path)
        if rule is None:
            inner = self._encrypted_prefix(path)
            if inner is not None:
                raise SchemaMismatchError(
                    f"Cannot query '{path}' inside encrypted field '{inner.path}'"
                )
            if self.schema.has_descendants(path):
                kind = classify(cond)
                if kind is ValueKind.ARRAY or (
                    kind is ValueKind.SUBDOCUMENT and any(k != "$exists" for k in cond)
                ):
                    raise SchemaMismatchError(
                        f"Cannot compare '{path}' to a document or array, or use "
                        f"operators on it: it contains encrypted fields"
                    )
            return cond
        if rule.algorithm is Algorithm.RANDOM:
            raise SchemaMismatchError(
                f"Cannot query field '{path}': it uses the random algorithm"
            )
        if classify(cond) is ValueKind.SUBDOCUMENT and any(k.startswith("$") for k in cond):
            marked = {}
            for op, operand in cond.items():
                if op in ("$eq", "$ne"):
                    marked[op] = self.marker(operand, rule)
                elif op in ("$in", "$nin"):
                    marked[op] = [self.marker(v, rule) for v in operand]
                elif op == "$exists":
                    marked[op] = operand
                else:
                    raise SchemaMismatchError(
                        f"Operator {op} is not supported on encrypted field '{path}'"
                    )
            return marked
        return self.marker(cond, rule)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _check_untouched(self, op: str, path: str) -> None:
        if (
            self.schema.rule_for(path) is not None
            or self.schema.has_descendants(path)
            or self._encrypted_prefix(path) is not None
        ):
            raise SchemaMismatchError(
                f"Update operator {op} cannot modify encrypted field '{path}'"
            )

    def update(self, update: Any, root: Optional[Mapping] = None) -> Any:
        if isinstance(update, list):
            raise SchemaMismatchError(
                "Pipeline updates are not supported on encrypted collections"
            )
        if not any(k.startswith("$") for k in update):
            return self.document(update)
        out = {}
        for op, fields in update.items():
            if op in _SET_OPERATORS:
                marked = {}
                for path, value in fields.items():
                    inner = self._encrypted_prefix(path)
                    if inner is not None:
                        raise SchemaMismatchError(
                            f"Cannot set '{path}' inside encrypted field '{inner.path}'"
                        )
                    marked[path] = self.visit(value, path, root or fields)
                out[op] = marked
            elif op == "$unset":
                out[op] = fields
            elif op == "$rename":
                for source, target in fields.items():
                    self._check_untouched(op, source)
                    self._check_untouched(op, target)
                out[op] = fields
            else:
                for path in fields:
                    self._check_untouched(op, path)
                out[op] = fields
        return out

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def pipeline(self, stages: list) -> list:
        out = []
        for stage in stages:
            (name, spec), = stage.items()
            if name == "$match":
                out.append({name: self.query(spec)})
            elif name in _PIPELINE_PASSTHROUGH:
                out.append(stage)
            else:
                raise SchemaMismatchError(
                    f"Aggregation stage {name} is not supported on encrypted collections"
                )
        return out


class MarkingEngine:
    """Marks the values of a command that the schema says to encrypt."""

    def mark(self, document: Mapping, schema: EncryptionSchema) -> MarkedDocument:
        """Mark a stored document (insert or replacement)."""
        visitor = _Marker(schema)
        return MarkedDocument(visitor.document(document), visitor.markers)

    def mark_filter(self, query: Mapping, schema: EncryptionSchema) -> MarkedDocument:
        visitor = _Marker(schema)
        return MarkedDocument(visitor.query(query), visitor.markers)

    def mark_command(self, command: Mapping, schema: EncryptionSchema) -> MarkedDocument:
        """Mark every user value in a command.

        Raises:
            SchemaMismatchError: A value conflicts with the schema, or the
                command cannot be analyzed safely.
        """
        name = next(iter(command))
        visitor = _Marker(schema)
        cmd = dict(command)
        if name == "insert":
            cmd["documents"] = [visitor.document(d) for d in command["documents"]]
        elif name == "update":
            cmd["updates"] = [
                {**u, "q": visitor.query(u.get("q", {})), "u": visitor.update(u["u"])}
                for u in command["updates"]
            ]
        elif name == "delete":
            cmd["deletes"] = [
                {**d, "q": visitor.query(d.get("q", {}))} for d in command["deletes"]
            ]
        elif name in ("find", "count", "distinct"):
            field = "filter" if name == "find" else "query"
            if field in command:
                cmd[field] = visitor.query(command[field])
        elif name == "findAndModify":
            if "query" in command:
                cmd["query"] = visitor.query(command["query"])
            if "update" in command:
                cmd["update"] = visitor.update(command["update"])
        elif name == "aggregate":
            cmd["pipeline"] = visitor.pipeline(command["pipeline"])
        elif name not in PASSTHROUGH_COMMANDS:
            raise SchemaMismatchError(
                f"Command '{name}' is not supported with automatic encryption"
            )
        if visitor.markers:
            logger.debug(
                "Marked %d field(s) in %s on %s",
                len(visitor.markers), name, schema.namespace,
            )
        return MarkedDocument(cmd, visitor.markers)
