"""In-memory entity cache with staleness, subscriptions and optimistic writes.

Entries are keyed by ``CacheKey`` (entity kind + scope id) rather than
concatenated strings, so list, family and pantry scopes can never collide.

Optimistic write protocol for a key:

1. ``begin_optimistic`` takes the key's write lock, snapshots the current
   value and stores ``updater(current)`` before returning, so every reader
   sees the optimistic value immediately
2. ``commit`` drops the snapshot, optionally stores the server's value and
   releases the lock
3. ``rollback`` restores the snapshot verbatim and releases the lock

Only one optimistic write per key is outstanding at a time; later writers
wait for the lock in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from grocery_sync.transport import CancelToken

logger = logging.getLogger(__name__)


class CacheKind(StrEnum):
    """Entity kinds held in the cache."""

    GROCERY_LIST = "grocery_list"
    PERSONAL_LISTS = "personal_lists"
    FAMILY_LISTS = "family_lists"
    USER_PANTRY = "user_pantry"
    FAMILY_PANTRY = "family_pantry"


@dataclass(frozen=True)
class CacheKey:
    """Structured cache key: an entity kind plus an optional scope id."""

    kind: CacheKind
    scope_id: int | None = None

    @classmethod
    def grocery_list(cls, list_id: int) -> CacheKey:
        """Key for a single grocery list."""
        return cls(CacheKind.GROCERY_LIST, list_id)

    @classmethod
    def personal_lists(cls) -> CacheKey:
        """Key for the current user's personal lists."""
        return cls(CacheKind.PERSONAL_LISTS)

    @classmethod
    def family_lists(cls, family_id: int) -> CacheKey:
        """Key for a family's lists."""
        return cls(CacheKind.FAMILY_LISTS, family_id)

    @classmethod
    def user_pantry(cls) -> CacheKey:
        """Key for the current user's pantry."""
        return cls(CacheKind.USER_PANTRY)

    @classmethod
    def family_pantry(cls, family_id: int) -> CacheKey:
        """Key for a family's pantry."""
        return cls(CacheKind.FAMILY_PANTRY, family_id)


class _Absent:
    """Marker for 'no entry', distinct from a stored None."""

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT: Any = _Absent()


@dataclass
class CacheEntry:
    """A cached value and its bookkeeping.

    Attributes:
        key: The entry's key.
        value: The current (possibly optimistic) value.
        previous_snapshot: Value before the in-flight optimistic write;
            ABSENT when no write is in flight or no entry existed before.
        stale: Whether the value should be re-fetched before trusting it.
    """

    key: CacheKey
    value: Any
    previous_snapshot: Any = ABSENT
    stale: bool = False


@dataclass
class OptimisticWrite:
    """Handle for one in-flight optimistic write.

    Attributes:
        key: The key being written.
        snapshot: Value before the write (ABSENT if there was no entry).
        value: The optimistic value stored.
        settled: Whether commit or rollback already ran.
    """

    key: CacheKey
    snapshot: Any
    value: Any
    settled: bool = False


class EntityCache:
    """Keyed in-memory store for server entities."""

    def __init__(self) -> None:
        """Initialize an empty cache."""
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._lock_users: dict[CacheKey, int] = {}
        self._listeners: dict[CacheKey, list[Callable[..., None]]] = {}
        self._fetches: dict[CacheKey, asyncio.Future[Any]] = {}

    # ------------------------------------------------------------------
    # Reads and plain writes
    # ------------------------------------------------------------------

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: CacheKey, default: Any = None) -> Any:
        """Return the cached value for a key.

        Args:
            key: Cache key.
            default: Value returned when the key is absent.

        Returns:
            The value (optimistic while a write is in flight), or default.
        """
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def entry(self, key: CacheKey) -> CacheEntry | None:
        """Return the full entry for a key, or None."""
        return self._entries.get(key)

    def keys(self) -> list[CacheKey]:
        """Return all keys currently cached."""
        return list(self._entries)

    def is_stale(self, key: CacheKey) -> bool:
        """Check whether a key needs re-fetching.

        Args:
            key: Cache key.

        Returns:
            True if the key is absent or marked stale.
        """
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def is_writing(self, key: CacheKey) -> bool:
        """Check whether an optimistic write holds the key."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def set(self, key: CacheKey, value: Any) -> None:
        """Store a fresh value, keeping any in-flight snapshot.

        Args:
            key: Cache key.
            value: Value to store.
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, value=value)
            self._entries[key] = entry
        else:
            entry.value = value
            entry.stale = False
        self._notify(key)

    def delete(self, key: CacheKey) -> None:
        """Remove a key.

        Args:
            key: Cache key.
        """
        if self._entries.pop(key, None) is not None:
            self._notify(key)

    def clear(self) -> None:
        """Drop every entry (e.g. after logout)."""
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._notify(key)

    def invalidate(self, key: CacheKey) -> None:
        """Mark a key stale so the next read re-fetches it.

        Args:
            key: Cache key.
        """
        entry = self._entries.get(key)
        if entry is None or entry.stale:
            return
        entry.stale = True
        self._notify(key)

    def invalidate_kind(self, kind: CacheKind) -> None:
        """Mark every key of a kind stale.

        Args:
            kind: Entity kind.
        """
        for key in [k for k in self._entries if k.kind is kind]:
            self.invalidate(key)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        key: CacheKey,
        listener: Callable[[CacheKey, CacheEntry | None], None],
    ) -> Callable[[], None]:
        """Call ``listener`` whenever the key's entry changes.

        Args:
            key: Cache key.
            listener: Called with the key and the entry (None once removed).

        Returns:
            Function that removes the subscription.
        """
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return unsubscribe

    def _notify(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        for listener in list(self._listeners.get(key, [])):
            listener(key, entry)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def get_or_fetch(
        self,
        key: CacheKey,
        loader: Callable[[], Awaitable[Any]],
        cancel: CancelToken | None = None,
    ) -> Any:
        """Return a fresh cached value, loading it if absent or stale.

        Concurrent callers for the same key share one load. A load that
        finishes while an optimistic write holds the key is returned to
        its callers but not stored, so it cannot clobber the write.

        The shared load belongs to no single caller. ``cancel`` only stops
        this caller's wait; the load keeps running for everyone else.

        Args:
            key: Cache key.
            loader: Coroutine function returning the server value.
            cancel: Optional token abandoning this caller's wait.

        Returns:
            The cached or freshly loaded value.

        Raises:
            ApiError: With kind CANCELLED when ``cancel`` fires first.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        entry = self._entries.get(key)
        if entry is not None and not entry.stale:
            return entry.value

        fetch = self._fetches.get(key)
        if fetch is None:
            fetch = asyncio.ensure_future(self._load(key, loader))
            self._fetches[key] = fetch
        if cancel is None:
            return await asyncio.shield(fetch)
        return await cancel.guard(asyncio.shield(fetch))

    async def _load(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        try:
            value = await loader()
        finally:
            self._fetches.pop(key, None)
        if self.is_writing(key):
            logger.debug("Discarding fetch of %s during optimistic write", key)
        else:
            self.set(key, value)
        return value

    # ------------------------------------------------------------------
    # Optimistic writes
    # ------------------------------------------------------------------

    async def begin_optimistic(
        self, key: CacheKey, updater: Callable[[Any], Any]
    ) -> OptimisticWrite:
        """Start an optimistic write on a key.

        Waits for any earlier write on the same key to settle. Once the
        lock is held, the snapshot and the optimistic value are taken and
        stored without suspending.

        ``updater`` receives the current value (None when absent) and must
        return a new value without mutating its argument. Returning None
        for an absent key leaves the key absent.

        Args:
            key: Cache key.
            updater: Pure function computing the optimistic value.

        Returns:
            Handle to pass to ``commit`` or ``rollback``.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget_lock(key)
            raise
        try:
            entry = self._entries.get(key)
            snapshot = ABSENT if entry is None else entry.value
            value = updater(None if entry is None else entry.value)
        except BaseException:
            self._release(key)
            raise

        write = OptimisticWrite(key=key, snapshot=snapshot, value=value)
        if entry is None and value is None:
            return write
        if entry is None:
            entry = CacheEntry(key=key, value=value)
            self._entries[key] = entry
        else:
            entry.value = value
        entry.previous_snapshot = snapshot
        self._notify(key)
        return write

    def commit(
        self,
        write: OptimisticWrite,
        server_value: Any = ABSENT,
        stale: bool | None = None,
    ) -> None:
        """Settle a successful optimistic write.

        Args:
            write: Handle from ``begin_optimistic``.
            server_value: Authoritative value to store in place of the
                optimistic one; ABSENT keeps the optimistic value.
            stale: Whether to mark the key for re-fetch. Defaults to True
                unless a server value was stored.
        """
        if write.settled:
            return
        write.settled = True
        try:
            if server_value is not ABSENT:
                write.value = server_value
                self.set(write.key, server_value)
            entry = self._entries.get(write.key)
            if entry is not None:
                entry.previous_snapshot = ABSENT
                mark_stale = server_value is ABSENT if stale is None else stale
                if mark_stale:
                    entry.stale = True
                    self._notify(write.key)
        finally:
            self._release(write.key)

    def rollback(self, write: OptimisticWrite) -> None:
        """Restore the value a write replaced.

        Args:
            write: Handle from ``begin_optimistic``.
        """
        if write.settled:
            return
        write.settled = True
        try:
            if write.snapshot is ABSENT:
                self._entries.pop(write.key, None)
            else:
                entry = self._entries.get(write.key)
                if entry is None:
                    entry = CacheEntry(key=write.key, value=write.snapshot)
                    self._entries[write.key] = entry
                entry.value = write.snapshot
                entry.previous_snapshot = ABSENT
            logger.debug("Rolled back optimistic write on %s", write.key)
            self._notify(write.key)
        finally:
            self._release(write.key)

    @asynccontextmanager
    async def optimistic(
        self, key: CacheKey, updater: Callable[[Any], Any]
    ) -> AsyncIterator[OptimisticWrite]:
        """Run a block as an optimistic write.

        Commits when the block exits normally (storing ``write.value`` if
        the block replaced it) and rolls back on any exception, which is
        then re-raised.

        Args:
            key: Cache key.
            updater: Pure function computing the optimistic value.

        Yields:
            The write handle.
        """
        write = await self.begin_optimistic(key, updater)
        optimistic_value = write.value
        try:
            yield write
        except BaseException:
            self.rollback(write)
            raise
        if write.value is not optimistic_value:
            self.commit(write, server_value=write.value)
        else:
            self.commit(write)

    def _release(self, key: CacheKey) -> None:
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            return
        lock.release()
        self._forget_lock(key)

    def _forget_lock(self, key: CacheKey) -> None:
        # Locks live only while a writer holds or awaits them.
        users = self._lock_users.get(key, 0) - 1
        if users > 0:
            self._lock_users[key] = users
            return
        self._lock_users.pop(key, None)
        self._locks.pop(key, None)
