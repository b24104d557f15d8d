"""
Cache - keyed store with TTL and stale-while-revalidate support.

Features:
- TTL expiry per entry (one-shot timer, reset on every store)
- Stale flag on reads so callers can serve stale data while revalidating
- Periodic LRU / oldest-first eviction sweep down to half of max_size
- Optional durable backing store, loaded once at construction
- Optional synchronization with other cache instances over a BroadcastChannel
"""

import asyncio
import inspect
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Coroutine, Generic, TypeVar

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from pydantic import ValidationError

from querycache.reactive import Cell, Computed
from querycache.services.broadcast import BroadcastChannel, BroadcastHub
from querycache.services.cache_models import (
    ONE_DAY,
    ONE_HOUR,
    CacheEntry,
    CacheHit,
    CleanupPolicy,
    SyncEntry,
    SyncMessage,
)
from querycache.services.errors import CacheError, PersistenceError
from querycache.services.persistence import CacheDB, NoopCacheDB

T = TypeVar("T")

KeyFn = Callable[[], str | None]
CacheView = Computed["CacheHit[T] | None"]


@dataclass
class SyncOptions(Generic[T]):
    """Cross-instance synchronization settings."""

    id: str
    serialize: Callable[[T], str]
    deserialize: Callable[[str], T | None]
    hub: BroadcastHub | None = None


class Cache(Generic[T]):
    """
    Keyed cache with TTL, stale-while-revalidate and eviction.

    Usage:
        cache = Cache(ttl=timedelta(minutes=5), stale_time=timedelta(minutes=1))

        cache.store("users", users)
        hit = cache.get(lambda: "users").get()
        if hit is not None:
            serve(hit.value)
            if hit.is_stale:
                schedule_revalidation()
    """

    def __init__(
        self,
        ttl: timedelta = ONE_DAY,
        stale_time: timedelta = ONE_HOUR,
        cleanup: CleanupPolicy | None = None,
        sync: SyncOptions[T] | None = None,
        db: CacheDB[T] | Awaitable[CacheDB[T]] | None = None,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self.ttl = ttl
        self.stale_time = stale_time
        self.cleanup_policy = cleanup or CleanupPolicy(max_size=1000)
        if self.cleanup_policy.max_size <= 0:
            raise CacheError("max_size must be greater than 0")

        self.id = uuid.uuid4().hex
        self._clock = clock
        self._debug = debug
        self._entries: dict[str, CacheEntry[T]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._listeners: list[Callable[[str], None]] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stats = CacheStats()
        self._destroyed = False

        # bumped on every mutation, drives reactive views
        self.changes: Cell[int] = Cell(0)

        self._scheduler = scheduler
        self._cleanup_job_id: str | None = None
        if scheduler is not None:
            self._cleanup_job_id = f"cache-cleanup:{self.id}"
            scheduler.add_job(
                self._cleanup_job,
                trigger="interval",
                seconds=self.cleanup_policy.check_interval.total_seconds(),
                id=self._cleanup_job_id,
                name="Query cache cleanup",
                replace_existing=True,
            )

        self._sync = sync
        self._channel: BroadcastChannel | None = None
        if sync is not None:
            self._channel = BroadcastChannel(sync.id, hub=sync.hub)
            self._channel.on_message = self._on_sync_message

        self._db: CacheDB[T] | None = None
        self._db_source = db
        self._db_future: asyncio.Future[Any] | None = None
        if db is None:
            self._db = NoopCacheDB()
        elif not inspect.isawaitable(db):
            self._db = db

        self._bootstrap_task: asyncio.Task[None] | None = None
        self._bootstrap_task = self._spawn(self._bootstrap())

    # Reads

    def _lookup(self, key: str | None, track: bool = True) -> CacheHit[T] | None:
        if not key:
            return None

        entry = self._entries.get(key)
        now = self._clock()

        if entry is None or entry.expired_at(now):
            if track:
                self._stats.misses += 1
                self._log(f"MISS: {key[:50]}...")
            return None

        is_stale = entry.stale_at(now)
        if track:
            entry.use_count += 1
            if is_stale:
                self._stats.stale_hits += 1
                self._log(f"STALE HIT: {key[:50]}...")
            else:
                self._stats.hits += 1
                self._log(f"HIT: {key[:50]}...")

        return CacheHit(
            key=entry.key,
            value=entry.value,
            created=entry.created,
            updated=entry.updated,
            stale=entry.stale,
            expires_at=entry.expires_at,
            use_count=entry.use_count,
            is_stale=is_stale,
        )

    def get(self, key: KeyFn, sources: list[Any] | None = None) -> CacheView:
        """
        Reactive view of the entry under key().

        Evaluates to None when key() is None, the entry is missing or expired.
        Every evaluation that hits counts as a use for LRU ordering.
        Subscribers are notified on any cache change and on changes of the
        extra `sources` the key function depends on.
        """
        return Computed(lambda: self._lookup(key()), [self.changes, *(sources or [])])

    def get_untracked(self, key: str) -> CacheHit[T] | None:
        """One-off lookup of a single key."""
        return self._lookup(key)

    def peek(self, key: str) -> CacheHit[T] | None:
        """Lookup without touching usage counts or stats."""
        return self._lookup(key, track=False)

    def get_entry_or_key(
        self, key: KeyFn, sources: list[Any] | None = None
    ) -> Computed["CacheHit[T] | str | None"]:
        """
        Reactive view of the live entry, or just the key when nothing is cached
        for it, or None when no key is requested.
        """

        def compute() -> CacheHit[T] | str | None:
            k = key()
            return self._lookup(k) or k or None

        return Computed(compute, [self.changes, *(sources or [])])

    # Writes

    def store(
        self,
        key: str,
        value: T,
        stale_time: timedelta | None = None,
        ttl: timedelta | None = None,
        persist: bool = False,
    ) -> None:
        """
        Store a value.

        Args:
            key: Cache key
            value: Value to cache
            stale_time: Time until the entry is stale (default: cache stale_time)
            ttl: Time until the entry expires (default: cache ttl)
            persist: Also write the entry to the durable store
        """
        self._store_internal(key, value, stale_time, ttl, from_sync=False, persist=persist)

    def _store_internal(
        self,
        key: str,
        value: T,
        stale_time: timedelta | None = None,
        ttl: timedelta | None = None,
        from_sync: bool = False,
        persist: bool = False,
    ) -> None:
        stale_time = self.stale_time if stale_time is None else stale_time
        ttl = self.ttl if ttl is None else ttl

        existing = self._lookup(key, track=False)
        self._cancel_timer(key)

        # an entry cannot be stale past its own expiry
        if ttl < stale_time:
            stale_time = ttl

        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created=existing.created if existing else now,
            updated=now,
            stale=now + stale_time,
            expires_at=now + ttl,
            use_count=(existing.use_count if existing else 0) + 1,
        )
        self._entries[key] = entry
        self._arm_timer(key, ttl)
        self._log(f"SET: {key[:50]}... (TTL: {ttl.total_seconds()}s)")
        self._notify(key)

        if from_sync:
            return

        if persist:
            self._spawn(self._persist(replace(entry)))

        self._broadcast("store", entry)

    def invalidate(self, key: str) -> None:
        """Remove an entry, here, in the durable store and in synced caches."""
        self._invalidate_internal(key)

    def _invalidate_internal(self, key: str, from_sync: bool = False) -> None:
        entry = self._entries.pop(key, None)
        self._cancel_timer(key)
        if entry is None:
            return

        self._log(f"INVALIDATE: {key[:50]}...")
        self._notify(key)

        if from_sync:
            return

        self._spawn(self._remove_persisted(key))
        self._broadcast("invalidate", entry)

    def clear(self) -> int:
        """Invalidate every entry. Returns the number of entries removed."""
        keys = list(self._entries)
        for key in keys:
            self.invalidate(key)
        self._log(f"CLEAR: {len(keys)} entries removed")
        return len(keys)

    # Eviction

    def cleanup(self) -> int:
        """
        Eviction sweep. Drops expired entries; when still above max_size, keeps
        only the max_size // 2 most used (lru) or newest (oldest) entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed_keys = [k for k, e in self._entries.items() if e.expired_at(now)]
        for key in removed_keys:
            self._drop(key)

        policy = self.cleanup_policy
        if len(self._entries) > policy.max_size:
            if policy.type == "lru":
                ordered = sorted(self._entries.values(), key=lambda e: e.use_count)
            else:
                ordered = sorted(self._entries.values(), key=lambda e: e.created)

            keep_count = policy.max_size // 2
            evicted = ordered[: len(ordered) - keep_count]
            for entry in evicted:
                self._drop(entry.key)
                removed_keys.append(entry.key)
            self._stats.evictions += len(evicted)

        if removed_keys:
            self._log(f"CLEANUP: {len(removed_keys)} entries removed")
            for key in removed_keys:
                self._notify(key)

        return len(removed_keys)

    async def _cleanup_job(self) -> None:
        self.cleanup()

    def _drop(self, key: str) -> None:
        self._cancel_timer(key)
        self._entries.pop(key, None)

    # Timers

    def _arm_timer(self, key: str, ttl: timedelta) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: expiry is still enforced on read and by the sweep
            return
        self._timers[key] = loop.call_later(
            max(ttl.total_seconds(), 0), self._expire, key
        )

    def _expire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.invalidate(key)

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    # Notifications

    def subscribe(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Listen for changes; the listener receives the changed key."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str) -> None:
        self.changes.update(lambda n: n + 1)
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception as e:
                logger.exception(f"[Cache] change listener failed: {e}")

    # Cross-instance sync

    def _broadcast(self, action: str, entry: CacheEntry[T]) -> None:
        if self._channel is None or self._sync is None or self._channel.closed:
            return

        if action == "invalidate":
            sync_entry = SyncEntry(key=entry.key)
        else:
            try:
                serialized = self._sync.serialize(entry.value)
            except (TypeError, ValueError) as e:
                self._warn(f"Failed to serialize cache entry for sync: {e}")
                return
            sync_entry = SyncEntry(
                key=entry.key,
                value=serialized,
                created=entry.created,
                updated=entry.updated,
                stale=entry.stale,
                expires_at=entry.expires_at,
                use_count=entry.use_count,
            )

        message = SyncMessage(action=action, entry=sync_entry, cache_id=self.id)
        self._channel.post_message(message.model_dump(mode="json"))

    def _on_sync_message(self, raw: Any) -> None:
        try:
            message = SyncMessage.model_validate(raw)
        except ValidationError:
            self._log("SYNC: dropped malformed message")
            return

        if message.cache_id == self.id:
            return

        entry = message.entry
        if message.action == "invalidate":
            self._invalidate_internal(entry.key, from_sync=True)
            return

        try:
            value = self._sync.deserialize(entry.value) if self._sync else None
        except (TypeError, ValueError):
            value = None
        if value is None:
            self._log(f"SYNC: dropped undecodable value for {entry.key[:50]}...")
            return

        self._store_internal(
            entry.key,
            value,
            entry.stale - entry.updated,
            entry.expires_at - entry.updated,
            from_sync=True,
        )

    # Durable store

    async def _get_db(self) -> CacheDB[T]:
        if self._db is not None:
            return self._db

        if self._db_future is None:
            self._db_future = asyncio.ensure_future(self._db_source)  # type: ignore[arg-type]
        try:
            self._db = await self._db_future
        except Exception as e:
            self._warn(f"Durable cache store unavailable: {e}")
            self._db = NoopCacheDB()
        return self._db

    async def _bootstrap(self) -> None:
        db = await self._get_db()
        if self._destroyed:
            return
        try:
            entries = await db.get_all()
        except PersistenceError as e:
            self._warn(f"Failed to load entries from durable store: {e}")
            return
        if self._destroyed:
            return

        loaded = 0
        for entry in entries:
            # fresher in-memory state wins over a slow disk read
            if self.peek(entry.key) is not None:
                continue
            self._store_internal(
                entry.key,
                entry.value,
                entry.stale - entry.updated,
                entry.expires_at - entry.updated,
                from_sync=True,
            )
            loaded += 1

        if loaded:
            self._log(f"LOAD: {loaded} entries restored from durable store")

    async def ready(self) -> None:
        """Wait for the durable store bootstrap to finish."""
        if self._bootstrap_task is None and not self._destroyed:
            self._bootstrap_task = asyncio.ensure_future(self._bootstrap())
        if self._bootstrap_task is not None:
            await self._bootstrap_task

    async def _persist(self, entry: CacheEntry[T]) -> None:
        db = await self._get_db()
        try:
            await db.store(entry)
        except PersistenceError as e:
            self._warn(f"Failed to persist cache entry: {e}")

    async def _remove_persisted(self, key: str) -> None:
        db = await self._get_db()
        try:
            await db.remove(key)
        except PersistenceError as e:
            self._warn(f"Failed to remove persisted cache entry: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def flush(self) -> None:
        """Wait for pending durable-store writes."""
        pending = [t for t in self._tasks if t is not self._bootstrap_task]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Flush pending writes, destroy the cache and close the durable store."""
        await self.flush()
        self.destroy()
        if self._db is not None:
            await self._db.close()

    # Lifecycle

    def destroy(self) -> None:
        """Stop the cleanup job, cancel expiry timers and close the channel."""
        if self._destroyed:
            return
        self._destroyed = True

        if self._scheduler is not None and self._cleanup_job_id is not None:
            try:
                self._scheduler.remove_job(self._cleanup_job_id)
            except JobLookupError:
                pass

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        if self._channel is not None:
            self._channel.close()

        if self._bootstrap_task is not None and not self._bootstrap_task.done():
            self._bootstrap_task.cancel()

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._entries)
        self._stats.max_size = self.cleanup_policy.max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Cache] {message}")

    def _warn(self, message: str) -> None:
        if self._debug:
            logger.warning(f"[Cache] {message}")


class NoopCache(Cache[T]):
    """Cache that never stores anything."""

    def store(
        self,
        key: str,
        value: T,
        stale_time: timedelta | None = None,
        ttl: timedelta | None = None,
        persist: bool = False,
    ) -> None:
        pass


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
