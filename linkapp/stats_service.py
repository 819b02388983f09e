"""Stats Service - aggregate read queries over recorded clicks.

Flow Diagram — get_stats()
==========================
::
    ┌──────────────────┐
    │ GET /api/stats/  │
    │ :code            │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐  HIT   ┌────────────┐
    │ Redis GET         │──────▶│ return      │
    │ "stats:{code}"    │       │ cached view │
    └────────┬─────────┘       └────────────┘
             │ MISS
             ▼
    ┌──────────────────┐  NO    ┌────────────┐
    │ PostgreSQL        │──────▶│ None (404)  │  no analytics query,
    │ EXISTS(code)      │       └────────────┘  no cache write
    └────────┬─────────┘
             │ YES
             ▼
    ┌──────────────────┐
    │ ClickHouse        │  totals, unique visitors,
    │ aggregates        │  last click, 7-day history
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ SET stats:{code}  │  EX 30
    │ return LinkStats  │
    └──────────────────┘

Key Behaviours
===============
- Only an existence check touches the relational store; every aggregate
  comes from the analytics store.
- Counts reflect flushed batches only. Events still sitting in a consumer
  batch show up after the next flush (at most one flush interval later).
- A link with no recorded clicks yields zeros, no last access and an empty
  history rather than None.
"""

from typing import TYPE_CHECKING, Optional

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import TypeAdapter, ValidationError
from redis.exceptions import RedisError
from sqlalchemy import exists, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from linkapp.analytics import AnalyticsStore
from linkapp.config import Settings
from linkapp.enums import CacheStatus
from linkapp.errors import AnalyticsUnavailable, LinkStoreUnavailable
from linkapp.models import Link
from linkapp.schemas import DailyClickCount, LinkStats, TrendingLink

if TYPE_CHECKING:
    from linkapp.dependencies import RequestContext

__all__ = ["StatsService"]

STATS_REQUESTS_TOTAL = Counter(
    "linkapp_stats_requests_total",
    "Stats lookups",
    ["cache_hit"],
)
ANALYTICS_QUERIES_TOTAL = Counter(
    "linkapp_analytics_queries_total",
    "Aggregate queries issued against the analytics store",
)

_trending_adapter = TypeAdapter(list[TrendingLink])


class StatsService:
    """Builds and caches LinkStats views."""

    def __init__(
        self,
        db: AsyncSession,
        cache: redis.Redis,
        analytics: AnalyticsStore,
        settings: Settings,
        logger,
    ):
        self._db = db
        self._cache = cache
        self._analytics = analytics
        self._settings = settings
        self._logger = logger

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "StatsService":
        return cls(
            db=ctx.database,
            cache=ctx.cache_writer,
            analytics=ctx.analytics,
            settings=ctx.settings,
            logger=ctx.logger,
        )

    def cache_key(self, short_code: str) -> str:
        return f"{self._settings.STATS_CACHE_KEY_PREFIX}:{short_code}"

    async def get_stats(self, short_code: str) -> Optional[LinkStats]:
        """Return the stats view for ``short_code``, or None if the link does not exist.

        Raises:
            LinkStoreUnavailable: The existence check failed.
            AnalyticsUnavailable: The analytics store could not be queried.
        """
        assert isinstance(short_code, str) and short_code, f"short_code must be a non-empty string, got {short_code!r}"
        cache_key = self.cache_key(short_code)

        cached = await self._cache_get(cache_key)
        if cached:
            try:
                stats = LinkStats.model_validate_json(cached)
                STATS_REQUESTS_TOTAL.labels(cache_hit=CacheStatus.HIT).inc()
                return stats
            except ValidationError:
                self._logger.warning(f"Discarding unreadable cached stats for {short_code}")
        STATS_REQUESTS_TOTAL.labels(cache_hit=CacheStatus.MISS).inc()

        if not await self._link_exists(short_code):
            self._logger.info(f"Stats requested for unknown short code: {short_code}")
            return None

        try:
            summary = await self._analytics.click_summary(short_code)
            history = await self._analytics.daily_history(short_code, self._settings.STATS_HISTORY_DAYS)
        except Exception as exc:
            self._logger.error(f"Analytics query failed for {short_code}: {exc!r}")
            raise AnalyticsUnavailable(str(exc)) from exc
        ANALYTICS_QUERIES_TOTAL.inc(2)

        stats = LinkStats(
            short_code=short_code,
            total_clicks=summary.total_clicks,
            unique_visitors=summary.unique_visitors,
            last_accessed=summary.last_accessed,
            click_history=[DailyClickCount(date=day, count=count) for day, count in history],
        )
        await self._cache_set(cache_key, stats.model_dump_json(by_alias=True))
        return stats

    async def get_trending(self, limit: int, hours: int) -> list[TrendingLink]:
        """Most clicked links over the trailing ``hours``, highest first."""
        cache_key = f"trending:{hours}:{limit}"
        cached = await self._cache_get(cache_key)
        if cached:
            try:
                return _trending_adapter.validate_json(cached)
            except ValidationError:
                self._logger.warning("Discarding unreadable cached trending list")

        try:
            rows = await self._analytics.trending(limit=limit, hours=hours)
        except Exception as exc:
            self._logger.error(f"Trending query failed: {exc!r}")
            raise AnalyticsUnavailable(str(exc)) from exc
        ANALYTICS_QUERIES_TOTAL.inc()

        trending = [TrendingLink(short_code=short_code, clicks=clicks) for short_code, clicks in rows]
        await self._cache_set(cache_key, _trending_adapter.dump_json(trending, by_alias=True).decode("utf-8"))
        return trending

    async def _link_exists(self, short_code: str) -> bool:
        try:
            result = await self._db.execute(select(exists().where(Link.short_code == short_code)))
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            self._logger.error(f"Link existence check failed for {short_code}: {exc!r}")
            raise LinkStoreUnavailable(str(exc)) from exc
        return bool(result.scalar())

    async def _cache_get(self, key: str) -> Optional[str]:
        try:
            return await self._cache.get(key)
        except RedisError as exc:
            self._logger.warning(f"Stats cache read failed for {key}: {exc!r}")
            return None

    async def _cache_set(self, key: str, value: str) -> None:
        try:
            await self._cache.set(key, value, ex=self._settings.STATS_CACHE_TTL_SECONDS)
        except RedisError as exc:
            self._logger.warning(f"Stats cache write failed for {key}: {exc!r}")
