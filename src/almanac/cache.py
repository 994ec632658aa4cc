"""Query cache and optimistic reconciliation.

:class:`QueryCache` maps opaque tuple keys to immutable collection snapshots
(tuples).  Writers replace whole snapshots under a lock, so readers always see
either the old or the new collection and never a partial write.

:class:`OptimisticReconciler` lets a view reflect a mutation before the
network confirms it:

1. ``apply_optimistic`` inserts an entry tagged with a fresh ``temp-`` id.
2. On success the key is invalidated and re-queried; the temporary entry is
   never promoted in place because only the network assigns real ids.
3. On failure ``rollback_optimistic`` removes exactly that entry.
"""

from __future__ import annotations

import bisect
import logging
import threading
import uuid
from collections.abc import Awaitable, Callable, Hashable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from almanac.core.telemetry import operation_span

logger = logging.getLogger(__name__)

T = TypeVar("T")

CacheKey = tuple[Hashable, ...]
Fetcher = Callable[[], Awaitable[Iterable[Any]]]

TEMPORARY_ID_PREFIX = "temp-"


def new_temporary_id() -> str:
    """Locally unique placeholder id; never a real content hash."""
    return f"{TEMPORARY_ID_PREFIX}{uuid.uuid4().hex}"


def is_temporary_id(value: str) -> bool:
    return value.startswith(TEMPORARY_ID_PREFIX)


def entry_id(entry: Any) -> str | None:
    """Default id accessor: a ``id`` key for mappings, an ``id`` attribute otherwise."""
    if isinstance(entry, Mapping):
        return entry.get("id")
    return getattr(entry, "id", None)


class QueryCache:
    """Thread-safe keyed store of immutable collection snapshots."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, tuple[Any, ...]] = {}
        self._stale: set[CacheKey] = set()
        self._lock = threading.RLock()

    def get(self, key: CacheKey) -> tuple[Any, ...] | None:
        with self._lock:
            return self._entries.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def keys(self) -> list[CacheKey]:
        with self._lock:
            return list(self._entries)

    def set(self, key: CacheKey, collection: Iterable[Any]) -> tuple[Any, ...]:
        snapshot = tuple(collection)
        with self._lock:
            self._entries[key] = snapshot
            self._stale.discard(key)
        return snapshot

    def update(
        self,
        key: CacheKey,
        fn: Callable[[tuple[Any, ...] | None], Iterable[Any] | None],
    ) -> tuple[Any, ...] | None:
        """Atomically replace the snapshot at *key* with ``fn(current)``.

        Returning ``None`` from *fn* removes the key.
        """
        with self._lock:
            updated = fn(self._entries.get(key))
            if updated is None:
                self._entries.pop(key, None)
                self._stale.discard(key)
                return None
            snapshot = tuple(updated)
            self._entries[key] = snapshot
            return snapshot

    def delete(self, key: CacheKey) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._stale.discard(key)

    def invalidate(self, key: CacheKey, *, prefix: bool = False) -> list[CacheKey]:
        """Mark *key* (or every key starting with *key* when *prefix*) stale."""
        with self._lock:
            if prefix:
                matched = [k for k in self._entries if k[: len(key)] == key]
            else:
                matched = [key] if key in self._entries else []
            self._stale.update(matched)
        return matched

    def is_stale(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._stale

    async def refetch(self, key: CacheKey, fetcher: Fetcher) -> tuple[Any, ...]:
        """Replace the snapshot at *key* with freshly fetched data."""
        fresh = await fetcher()
        return self.set(key, fresh)


@dataclass(frozen=True)
class _PendingEntry:
    key: CacheKey
    created_key: bool


class OptimisticReconciler:
    """Apply, confirm, or roll back tentative cache entries.

    Generic over key and entry shape: entries only need to expose their id
    through *id_of* (``entry.id`` or ``entry["id"]`` by default).
    """

    def __init__(
        self,
        cache: QueryCache,
        *,
        id_of: Callable[[Any], str | None] = entry_id,
        id_factory: Callable[[], str] = new_temporary_id,
    ) -> None:
        self._cache = cache
        self._id_of = id_of
        self._id_factory = id_factory
        self._pending: dict[str, _PendingEntry] = {}
        self._lock = threading.Lock()

    @property
    def cache(self) -> QueryCache:
        return self._cache

    def pending_ids(self, key: CacheKey | None = None) -> list[str]:
        with self._lock:
            return [
                temp_id
                for temp_id, pending in self._pending.items()
                if key is None or pending.key == key
            ]

    def apply_optimistic(
        self,
        key: CacheKey,
        build_entry: Callable[[str], Any],
        *,
        order_by: Callable[[Any], Any] | None = None,
    ) -> str:
        """Insert a tentative entry and return its temporary id.

        *build_entry* receives the temporary id and must return an entry that
        carries it.  With *order_by* the entry is inserted after every existing
        entry that does not sort after it; otherwise it is appended.  Existing
        entries never move.
        """
        with self._lock:
            temp_id = self._id_factory()
            while temp_id in self._pending:
                temp_id = self._id_factory()
            entry = build_entry(temp_id)
            if self._id_of(entry) != temp_id:
                raise ValueError("optimistic entry must carry the temporary id it was built with")

            created_key = key not in self._cache

            def _insert(current: tuple[Any, ...] | None) -> list[Any]:
                items = list(current or ())
                if order_by is None:
                    items.append(entry)
                else:
                    position = bisect.bisect_right(items, order_by(entry), key=order_by)
                    items.insert(position, entry)
                return items

            self._cache.update(key, _insert)
            self._pending[temp_id] = _PendingEntry(key=key, created_key=created_key)

        logger.debug("Applied optimistic entry %s to %s", temp_id, key)
        return temp_id

    def rollback_optimistic(self, key: CacheKey, temporary_id: str) -> None:
        """Remove exactly the entry carrying *temporary_id* from *key*.

        Total: missing keys or already-removed entries are a no-op.  When the
        apply created the key and nothing else was added since, the key is
        removed again so the cache matches its pre-apply state.
        """
        with self._lock:
            pending = self._pending.pop(temporary_id, None)
            drop_key = pending is not None and pending.created_key

            def _remove(current: tuple[Any, ...] | None) -> list[Any] | None:
                if current is None:
                    return None
                remaining = [item for item in current if self._id_of(item) != temporary_id]
                if not remaining and drop_key:
                    return None
                return remaining

            if key in self._cache:
                self._cache.update(key, _remove)

        logger.info("Rolled back optimistic entry %s from %s", temporary_id, key)

    async def confirm(
        self,
        key: CacheKey,
        temporary_id: str,
        *,
        refetch: Fetcher | None = None,
    ) -> None:
        """Settle a successful mutation: invalidate *key* and re-query it."""
        with self._lock:
            self._pending.pop(temporary_id, None)
        self._cache.invalidate(key)
        if refetch is None:
            return
        try:
            await self._cache.refetch(key, refetch)
        except Exception:
            # The mutation itself succeeded; the key stays stale for the next read.
            logger.warning("Refetch of %s after confirmed mutation failed", key, exc_info=True)

    async def run(
        self,
        key: CacheKey,
        build_entry: Callable[[str], Any],
        mutation: Callable[[], Awaitable[T]],
        *,
        order_by: Callable[[Any], Any] | None = None,
        refetch: Fetcher | None = None,
    ) -> T:
        """Apply optimistically, await *mutation*, then confirm or roll back."""
        temp_id = self.apply_optimistic(key, build_entry, order_by=order_by)
        with operation_span("cache.optimistic", key=repr(key)):
            try:
                result = await mutation()
            except BaseException:
                self.rollback_optimistic(key, temp_id)
                raise
        await self.confirm(key, temp_id, refetch=refetch)
        return result
