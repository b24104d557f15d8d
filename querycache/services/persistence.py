"""
Durable cache stores.

A CacheDB reports failures as PersistenceError. The Cache logs them (debug
mode only) and keeps working memory-only when persistence is broken.
"""

from datetime import datetime
from typing import Any, Callable, Generic, Protocol, TypeVar

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from querycache.datastore.engine import close_db, init_db
from querycache.datastore.repositories import QueryCacheRepository
from querycache.services.cache_models import CacheEntry
from querycache.services.errors import PersistenceError

T = TypeVar("T")


class CacheDB(Protocol[T]):
    """Asynchronous key/entry store backing a Cache. Raises PersistenceError."""

    async def get_all(self) -> list[CacheEntry[T]]: ...

    async def store(self, entry: CacheEntry[T]) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def close(self) -> None: ...


class NoopCacheDB(Generic[T]):
    """Store that keeps nothing."""

    async def get_all(self) -> list[CacheEntry[T]]:
        return []

    async def store(self, entry: CacheEntry[T]) -> None:
        pass

    async def remove(self, key: str) -> None:
        pass

    async def close(self) -> None:
        pass


class SqlCacheDB(Generic[T]):
    """
    CacheDB on SQLAlchemy (aiosqlite by default). Values are stored as the
    strings produced by `serialize`; `deserialize` returns None to reject one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        serialize: Callable[[T], str],
        deserialize: Callable[[str], T | None],
        version: int = 1,
        engine: AsyncEngine | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session_factory = session_factory
        self._serialize = serialize
        self._deserialize = deserialize
        self._version = version
        self._engine = engine
        self._clock = clock

    async def get_all(self) -> list[CacheEntry[T]]:
        try:
            async with self._session_factory() as session:
                rows = await QueryCacheRepository(session, self._version).get_all_valid(
                    self._clock()
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Error getting all items from cache DB: {e}") from e

        entries: list[CacheEntry[T]] = []
        for row in rows:
            value = self._deserialize(row.value)
            if value is None:
                continue
            entries.append(
                CacheEntry(
                    key=row.key,
                    value=value,
                    created=row.created,
                    updated=row.updated,
                    stale=row.stale,
                    expires_at=row.expires_at,
                    use_count=row.use_count,
                )
            )
        return entries

    async def store(self, entry: CacheEntry[T]) -> None:
        try:
            serialized = self._serialize(entry.value)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Error serializing cache entry '{entry.key[:50]}': {e}") from e

        try:
            async with self._session_factory() as session:
                await QueryCacheRepository(session, self._version).upsert(
                    key=entry.key,
                    value=serialized,
                    created=entry.created,
                    updated=entry.updated,
                    stale=entry.stale,
                    expires_at=entry.expires_at,
                    use_count=entry.use_count,
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Error storing item in cache DB: {e}") from e

    async def remove(self, key: str) -> None:
        try:
            async with self._session_factory() as session:
                await QueryCacheRepository(session, self._version).remove(key)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Error removing item from cache DB: {e}") from e

    async def close(self) -> None:
        await close_db(self._engine)
        self._engine = None

async def open_sql_cache_db(
    serialize: Callable[[Any], str],
    deserialize: Callable[[str], Any | None],
    database_url: str | None = None,
    version: int = 1,
    debug: bool = False,
) -> SqlCacheDB[Any] | NoopCacheDB[Any]:
    """
    Open (and migrate) the durable cache store.

    Entries written under other versions, and expired ones, are dropped. Falls back to a
    NoopCacheDB when the database cannot be opened.
    """
    if version < 1:
        if debug:
            logger.warning("[CacheDB] Version must be 1 or greater, persistence disabled")
        return NoopCacheDB()

    try:
        engine, session_factory = await init_db(database_url)
        async with session_factory() as session:
            repository = QueryCacheRepository(session, version)
            await repository.purge_other_versions()
            await repository.cleanup_expired(datetime.now())
            await session.commit()
    except (SQLAlchemyError, OSError) as e:
        if debug:
            logger.warning(f"[CacheDB] Error creating query DB: {e}")
        return NoopCacheDB()

    return SqlCacheDB(
        session_factory,
        serialize=serialize,
        deserialize=deserialize,
        version=version,
        engine=engine,
    )
