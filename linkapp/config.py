"""Configuration management for the link redirect and analytics service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance. The same settings
object is shared by the HTTP application and the click ingestion worker.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from linkapp.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    batch_size = settings.CLICK_BATCH_SIZE

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- Cache TTLs: 1 hour for link lookups, 30 seconds for stats responses.
- Batching thresholds: 100 events or 5 seconds, whichever fires first.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "link-app"

    # PostgreSQL (durable link store + click audit table)
    DATABASE_URL: str = "postgresql+asyncpg://linkapp:linkapp@db:5432/linkapp"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_COMMAND_TIMEOUT_SECONDS: float = 5.0

    # Redis (fast cache + admission control)
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_REPLICA_URL: str | None = None
    CACHE_TIMEOUT_SECONDS: float = 0.25
    LINK_CACHE_TTL_SECONDS: int = 3600
    STATS_CACHE_TTL_SECONDS: int = 30
    STATS_CACHE_KEY_PREFIX: str = "stats"

    # Kafka (click event broker)
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_CLICK_TOPIC: str = "link_visited"
    KAFKA_PUBLISH_TIMEOUT_SECONDS: float = 0.1

    # Click ingestion worker
    INGESTION_CONSUMER_GROUP: str = "click_ingestion_group"
    INGESTION_CONSUMER_NAME: str = "ingestion-consumer-1"
    CLICK_BATCH_SIZE: int = 100
    CLICK_FLUSH_INTERVAL_SECONDS: float = 5.0
    CLICK_IDLE_WAIT_MS: int = 500
    INGESTION_ERROR_BACKOFF_SECONDS: float = 1.0
    INGESTION_METRICS_PORT: int = 9200

    # ClickHouse (analytics store)
    CLICKHOUSE_HOST: str = "clickhouse"
    CLICKHOUSE_PORT: int = 8123
    CLICKHOUSE_USERNAME: str = "default"
    CLICKHOUSE_PASSWORD: str = "clickhouse"
    CLICKHOUSE_DATABASE: str = "analytics_db"
    CLICKHOUSE_TABLE: str = "link_analytics_log"

    # Stats queries
    STATS_HISTORY_DAYS: int = 7
    TRENDING_DEFAULT_LIMIT: int = 10
    TRENDING_DEFAULT_HOURS: int = 24

    # Admission control (sliding window per client address)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_KEY_PREFIX: str = "ratelimit"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
