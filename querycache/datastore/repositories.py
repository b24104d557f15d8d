"""
数据库Repository层 - 封装缓存条目的数据访问逻辑
"""

from datetime import datetime

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from querycache.datastore.models import QueryCacheEntryDB


class QueryCacheRepository:
    """持久化查询缓存Repository（按版本隔离）"""

    def __init__(self, session: AsyncSession, version: int = 1):
        self.session = session
        self.version = version

    async def get_all_valid(self, now: datetime) -> list[QueryCacheEntryDB]:
        """获取当前版本下所有未过期的条目"""
        result = await self.session.execute(
            select(QueryCacheEntryDB).where(
                QueryCacheEntryDB.version == self.version,
                QueryCacheEntryDB.expires_at > now,
            )
        )
        return list(result.scalars().all())

    async def upsert(
        self,
        key: str,
        value: str,
        created: datetime,
        updated: datetime,
        stale: datetime,
        expires_at: datetime,
        use_count: int = 0,
    ) -> None:
        """写入或更新条目"""
        cached = await self.session.get(QueryCacheEntryDB, (self.version, key))

        if cached:
            # 更新现有记录
            cached.value = value
            cached.created = created
            cached.updated = updated
            cached.stale = stale
            cached.expires_at = expires_at
            cached.use_count = use_count
        else:
            # 创建新记录
            self.session.add(
                QueryCacheEntryDB(
                    version=self.version,
                    key=key,
                    value=value,
                    created=created,
                    updated=updated,
                    stale=stale,
                    expires_at=expires_at,
                    use_count=use_count,
                )
            )

    async def remove(self, key: str) -> None:
        """删除条目"""
        await self.session.execute(
            delete(QueryCacheEntryDB).where(
                QueryCacheEntryDB.version == self.version,
                QueryCacheEntryDB.key == key,
            )
        )

    async def purge_other_versions(self) -> int:
        """删除其他版本的条目（缓存结构升级后旧数据作废）"""
        result = await self.session.execute(
            delete(QueryCacheEntryDB).where(QueryCacheEntryDB.version != self.version)
        )
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.debug(f"Purged {deleted} cache entries from older versions")
        return deleted

    async def cleanup_expired(self, now: datetime) -> int:
        """清理过期的条目"""
        result = await self.session.execute(
            delete(QueryCacheEntryDB).where(
                QueryCacheEntryDB.version == self.version,
                QueryCacheEntryDB.expires_at <= now,
            )
        )
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.debug(f"Cleaned up {deleted} expired cache entries")
        return deleted
