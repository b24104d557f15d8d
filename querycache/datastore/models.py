"""
数据库模型定义
使用SQLAlchemy 2.0+的声明式映射
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """所有模型的基类"""

    pass


class QueryCacheEntryDB(Base):
    """持久化的查询缓存条目表（值为序列化后的字符串）"""

    __tablename__ = "query_cache_entries"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(2000), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    created: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    stale: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    use_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # 按版本+过期时间查询
    __table_args__ = (Index("idx_cache_version_expires", "version", "expires_at"),)

    def __repr__(self) -> str:
        return f"<QueryCacheEntry(v{self.version}, key={self.key[:50]})>"
