"""Command dispatch interface.

The wire protocol, pooling and server selection live outside this package.
Anything that can send a command document to a database and return the reply
document fits here.
"""
from typing import Any, NamedTuple, Optional, Protocol

from pymongo.errors import OperationFailure, WriteError


class Namespace(NamedTuple):
    database: str
    collection: str

    @classmethod
    def parse(cls, namespace: str) -> "Namespace":
        database, sep, collection = namespace.partition(".")
        if not sep or not database or not collection:
            raise ValueError(
                f"Namespace must be 'database.collection', got {namespace!r}"
            )
        return cls(database, collection)

    def __str__(self) -> str:
        return f"{self.database}.{self.collection}"


class Dispatcher(Protocol):
    """Sends a fully formed command and returns the raw server reply.

    Session fields (``lsid``, ``txnNumber``, ``autocommit``,
    ``startTransaction``) are already embedded in ``command``; ``session`` is
    passed along for dispatchers that pin connections per session. Network
    and server errors propagate to the caller unchanged.
    """

    async def dispatch(
        self,
        database: str,
        command: dict[str, Any],
        session: Optional[Any] = None,
    ) -> dict[str, Any]:
        ...


def check_reply(reply: dict) -> dict:
    """Raise for an ``ok: 0`` reply or a reply carrying write errors."""
    if not reply.get("ok", 1):
        raise OperationFailure(reply.get("errmsg", "command failed"), reply.get("code"), reply)
    errors = reply.get("writeErrors")
    if errors:
        first = errors[0]
        raise WriteError(first.get("errmsg", "write failed"), first.get("code"), first)
    return reply
