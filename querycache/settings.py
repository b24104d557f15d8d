import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Cache Configuration (seconds)
    cache_ttl_seconds: float = Field(default=60 * 60 * 24, alias="QUERY_CACHE_TTL")
    cache_stale_time_seconds: float = Field(
        default=60 * 60, alias="QUERY_CACHE_STALE_TIME"
    )
    cache_max_size: int = Field(default=1000, alias="QUERY_CACHE_MAX_SIZE")
    cache_cleanup_type: Literal["lru", "oldest"] = Field(
        default="lru", alias="QUERY_CACHE_CLEANUP_TYPE"
    )
    cache_check_interval_seconds: float = Field(
        default=60 * 60, alias="QUERY_CACHE_CHECK_INTERVAL"
    )
    cache_persist: bool = Field(default=False, alias="QUERY_CACHE_PERSIST")
    cache_sync_tabs: bool = Field(default=False, alias="QUERY_CACHE_SYNC_TABS")
    cache_version: int = Field(default=1, alias="QUERY_CACHE_VERSION")

    # Circuit Breaker Configuration
    breaker_threshold: int = Field(default=5, alias="QUERY_BREAKER_THRESHOLD")
    breaker_timeout_seconds: float = Field(default=30.0, alias="QUERY_BREAKER_TIMEOUT")

    # Transport Configuration
    request_timeout: float = Field(default=30.0, alias="QUERY_REQUEST_TIMEOUT")
    max_retries: int = Field(default=3, alias="QUERY_MAX_RETRIES")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./querycache.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Development mode: enables warnings for swallowed persistence/sync errors
    debug: bool = Field(default=False, alias="QUERY_DEBUG")


global_settings = Settings.model_validate(dict(os.environ))
