"""
Key Cache — time-bounded cache of unwrapped data keys plus key resolution.

Resolution order for a key reference: cache → key vault + KMS unwrap.
Key alt names are aliases: they resolve to a key id first and the raw key is
cached under that id only.

Concurrent misses for the same key id share a single pending task, so at
most one vault read and one KMS unwrap run per key id at a time. Waiters are
released together when that task finishes, successfully or not.

Security Note:
    Raw keys live in process memory for ``ttl`` seconds. Never log them.
"""
import time
import asyncio
import logging
import functools
from dataclasses import dataclass
from typing import Callable, Optional

from bson.binary import Binary, UUID_SUBTYPE

from .exceptions import KeyNotFoundError, format_key_id
from .keyvault import DataKey, KeyRef, KeyVaultStore
from .kms import KmsProviders

logger = logging.getLogger("navigator.fle")

DEFAULT_KEY_CACHE_TTL = 60.0


@dataclass
class CacheEntry:
    key: bytes
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class KeyCache:
    """Unwrapped keys keyed by key id, each with an expiry instant.

    A ``ttl`` of 0 keeps entries until :meth:`clear`.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_KEY_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl < 0:
            raise ValueError("Key cache ttl cannot be negative")
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[bytes, CacheEntry] = {}
        self._aliases: dict[str, CacheEntry] = {}  # alt name -> key id bytes

    @property
    def ttl(self) -> float:
        return self._ttl

    def _expiry(self) -> Optional[float]:
        return self._clock() + self._ttl if self._ttl else None

    def get(self, key_id: Binary) -> Optional[bytes]:
        """Return the cached raw key, or None if absent or expired."""
        slot = bytes(key_id)
        entry = self._entries.get(slot)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[slot]
            logger.debug("Key cache entry expired: %s", format_key_id(key_id))
            return None
        return entry.key

    def put(self, key_id: Binary, key: bytes) -> None:
        self.sweep()
        self._entries[bytes(key_id)] = CacheEntry(key, self._expiry())

    def alias(self, key_alt_name: str) -> Optional[Binary]:
        """Return the key id a cached alt name points to."""
        entry = self._aliases.get(key_alt_name)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._aliases[key_alt_name]
            return None
        return Binary(entry.key, UUID_SUBTYPE)

    def set_alias(self, key_alt_name: str, key_id: Binary) -> None:
        self.sweep()
        self._aliases[key_alt_name] = CacheEntry(bytes(key_id), self._expiry())

    def sweep(self) -> int:
        """Drop every expired key and alias; return how many keys went."""
        if not self._ttl:
            return 0
        now = self._clock()
        stale = [s for s, e in self._entries.items() if e.expired(now)]
        for slot in stale:
            del self._entries[slot]
        for name in [n for n, e in self._aliases.items() if e.expired(now)]:
            del self._aliases[name]
        if stale:
            logger.debug("Swept %d expired key(s) from the key cache", len(stale))
        return len(stale)

    def invalidate(self, key_id: Binary) -> None:
        slot = bytes(key_id)
        self._entries.pop(slot, None)
        for name in [n for n, e in self._aliases.items() if e.key == slot]:
            del self._aliases[name]

    def clear(self) -> None:
        self._entries.clear()
        self._aliases.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key_id: object) -> bool:
        return isinstance(key_id, Binary) and self.get(key_id) is not None


class KeyResolver:
    """Resolves key references to raw key bytes, coalescing concurrent misses."""

    def __init__(
        self,
        store: KeyVaultStore,
        kms: KmsProviders,
        cache: Optional[KeyCache] = None,
    ):
        self._store = store
        self._kms = kms
        self._cache = cache if cache is not None else KeyCache()
        self._pending: dict[bytes, asyncio.Task] = {}
        self._pending_alt: dict[str, asyncio.Task] = {}

    @property
    def cache(self) -> KeyCache:
        return self._cache

    # ------------------------------------------------------------------
    # Fetch + unwrap
    # ------------------------------------------------------------------

    async def _fetch_and_unwrap(
        self, key_id: Binary, key_doc: Optional[DataKey] = None,
    ) -> bytes:
        if key_doc is None:
            key_doc = await self._store.get_key(key_id)
        if key_doc is None:
            raise KeyNotFoundError("Data key not found in key vault", key_id=key_id)
        provider = self._kms.get(key_doc.provider, key_id=key_id)
        raw = await provider.unwrap(
            key_doc.key_material, key_doc.master_key, key_id=key_id,
        )
        self._cache.put(key_id, raw)
        for name in key_doc.key_alt_names:
            self._cache.set_alias(name, key_id)
        logger.debug(
            "Unwrapped data key %s via provider=%s",
            format_key_id(key_id), key_doc.provider,
        )
        return raw

    async def _fetch_by_alt_name(self, key_alt_name: str) -> tuple[Binary, bytes]:
        key_doc = await self._store.get_key_by_alt_name(key_alt_name)
        if key_doc is None:
            raise KeyNotFoundError(
                f"No data key with keyAltName '{key_alt_name}'"
            )
        self._cache.set_alias(key_alt_name, key_doc.id)
        return key_doc.id, await self._resolve_id(key_doc.id, key_doc)

    @staticmethod
    def _task_done(pending: dict, slot, label: str, task: asyncio.Task) -> None:
        if pending.get(slot) is task:
            del pending[slot]
        if task.cancelled():
            return
        err = task.exception()  # marks the exception as retrieved
        if err is not None:
            logger.warning("Key resolution failed for %s: %s", label, err)

    def _join(self, pending: dict, slot, label: str, factory) -> asyncio.Task:
        task = pending.get(slot)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            pending[slot] = task
            task.add_done_callback(
                functools.partial(self._task_done, pending, slot, label)
            )
        return task

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def _resolve_id(
        self, key_id: Binary, key_doc: Optional[DataKey] = None,
    ) -> bytes:
        cached = self._cache.get(key_id)
        if cached is not None:
            return cached
        task = self._join(
            self._pending,
            bytes(key_id),
            format_key_id(key_id),
            functools.partial(self._fetch_and_unwrap, key_id, key_doc),
        )
        # shield: a cancelled caller must not cancel the shared fetch
        return await asyncio.shield(task)

    async def resolve_key(self, key_ref: KeyRef) -> tuple[Binary, bytes]:
        """Resolve a reference to ``(key_id, raw_key)``.

        Raises:
            KeyNotFoundError: No key in the vault matches the reference.
            KmsUnwrapError: The KMS provider could not unwrap the key.
        """
        if key_ref.key_id is not None:
            return key_ref.key_id, await self._resolve_id(key_ref.key_id)
        name = key_ref.key_alt_name
        key_id = self._cache.alias(name)
        if key_id is not None:
            return key_id, await self._resolve_id(key_id)
        task = self._join(
            self._pending_alt,
            name,
            f"keyAltName '{name}'",
            functools.partial(self._fetch_by_alt_name, name),
        )
        return await asyncio.shield(task)

    async def resolve_many(self, key_refs) -> dict[KeyRef, tuple[Binary, bytes]]:
        """Resolve each distinct reference exactly once, concurrently."""
        unique = list(dict.fromkeys(key_refs))
        results = await asyncio.gather(*(self.resolve_key(ref) for ref in unique))
        return dict(zip(unique, results))

    async def resolve_ids(self, key_ids) -> dict[bytes, bytes]:
        """Resolve raw keys for key ids, each distinct id once."""
        unique = {bytes(k): k for k in key_ids}
        keys = await asyncio.gather(*(self._resolve_id(k) for k in unique.values()))
        return dict(zip(unique.keys(), keys))

    async def close(self) -> None:
        tasks = list(self._pending.values()) + list(self._pending_alt.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        self._pending_alt.clear()
        self._cache.clear()
