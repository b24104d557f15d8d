"""
Cache data models: entries, lookup results, cleanup policy and sync messages.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, model_validator

T = TypeVar("T")

ONE_DAY = timedelta(days=1)
ONE_HOUR = timedelta(hours=1)


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    key: str
    value: T
    created: datetime
    updated: datetime
    stale: datetime
    expires_at: datetime
    use_count: int = 0

    def expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at

    def stale_at(self, now: datetime) -> bool:
        return now >= self.stale

    @property
    def stale_time(self) -> timedelta:
        return self.stale - self.updated

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.updated


@dataclass
class CacheHit(CacheEntry[T]):
    """Snapshot of a live entry returned from a lookup."""

    is_stale: bool = False


@dataclass
class CleanupPolicy:
    """
    Eviction policy.

    - lru: least used entries are removed first
    - oldest: oldest created entries are removed first
    """

    type: Literal["lru", "oldest"] = "lru"
    max_size: int = 200
    check_interval: timedelta = ONE_HOUR


class SyncEntry(BaseModel):
    """Entry payload of a sync message. Value is serialized."""

    key: str
    value: str | None = None
    created: datetime | None = None
    updated: datetime | None = None
    stale: datetime | None = None
    expires_at: datetime | None = None
    use_count: int = 0


class SyncMessage(BaseModel):
    """Message exchanged between cache instances sharing a channel."""

    type: Literal["cache-sync-message"] = "cache-sync-message"
    action: Literal["store", "invalidate"]
    entry: SyncEntry
    cache_id: str

    @model_validator(mode="after")
    def _check_store_payload(self) -> "SyncMessage":
        if self.action == "store":
            entry = self.entry
            if (
                entry.value is None
                or entry.updated is None
                or entry.stale is None
                or entry.expires_at is None
            ):
                raise ValueError("store message requires value and timestamps")
        return self
