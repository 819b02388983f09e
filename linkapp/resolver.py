"""Link Resolver - the redirect hot path.

Resolves a short code to its destination with a cache-aside read and records
the visit by publishing a click event, without letting either side effect
decide the response.

Request Flow
============
::
    ┌─────────────┐
    │  GET /:code │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Redis GET    │──── error/timeout ──┐
    │ "{code}"     │                     │ (treated as miss)
    └──────┬──────┘                     │
    HIT?  │                              │
    ┌─────┴─────┐◀─────────────────────┘
    │ NO         │ YES
    ▼            │
┌──────────┐     │
│PostgreSQL│     │
│ SELECT   │     │
└────┬─────┘     │
 FOUND?│         │
 ┌─────┴────┐    │
 │NO        │YES │
 ▼          ▼    │
None   ┌─────────┐│
(404)  │SET code ││
       │EX 3600  ││
       └────┬────┘│
            ▼     ▼
       ┌──────────────┐
       │ Publish click │ (fire-and-forget; failures logged, dropped)
       └──────┬───────┘
              ▼
       ┌──────────────┐
       │ destination  │ (302)
       └──────────────┘

Key Behaviours
===============
- Unknown codes return None and leave no cache entry and no event.
- Codes outside SHORT_CODE_PATTERN are unknown without a cache or store
  read, so "stats:abc123" can never hit another keyspace in Redis.
- Concurrent cold lookups of the same code may each read the store and
  write the cache; the writes are identical and last-writer-wins.
- Store failures raise LinkStoreUnavailable; there is no slower tier left.
"""

import asyncio
import time
from typing import TYPE_CHECKING, Optional

import redis.asyncio as redis
from prometheus_client import Counter, Histogram
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from linkapp.config import Settings
from linkapp.enums import CacheStatus, PublishStatus
from linkapp.errors import LinkStoreUnavailable
from linkapp.kafka import ClickEventPublisher
from linkapp.models import Link
from linkapp.schemas import ClickEvent, is_valid_short_code

if TYPE_CHECKING:
    from linkapp.dependencies import RequestContext

__all__ = ["LinkResolver"]

RESOLVE_REQUESTS_TOTAL = Counter(
    "linkapp_resolve_requests_total",
    "Short code resolutions",
    ["cache_hit"],
)
RESOLVE_NOT_FOUND_TOTAL = Counter(
    "linkapp_resolve_not_found_total",
    "Resolutions of unknown short codes",
)
RESOLVE_DURATION = Histogram(
    "linkapp_resolve_duration_seconds",
    "Time taken to resolve a short code",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)
DATABASE_READS_TOTAL = Counter(
    "linkapp_resolver_database_reads_total",
    "Link store reads issued by the resolver",
)
CLICK_PUBLISH_TOTAL = Counter(
    "linkapp_click_publish_total",
    "Click events offered to the broker",
    ["status"],
)


class LinkResolver:
    """Cache-aside resolver that emits one click event per successful resolution."""

    def __init__(
        self,
        db: AsyncSession,
        cache_reader: redis.Redis,
        cache_writer: redis.Redis,
        publisher: ClickEventPublisher,
        settings: Settings,
        logger,
    ):
        self._db = db
        self._cache_read = cache_reader
        self._cache_write = cache_writer
        self._publisher = publisher
        self._settings = settings
        self._logger = logger

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "LinkResolver":
        return cls(
            db=ctx.database,
            cache_reader=ctx.cache_reader,
            cache_writer=ctx.cache_writer,
            publisher=ctx.publisher,
            settings=ctx.settings,
            logger=ctx.logger,
        )

    async def resolve(
        self,
        short_code: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Return the destination for ``short_code``, or None when it is unknown.

        Args:
            short_code: Code from the request path.
            client_ip: Requesting address, recorded on the click event.
            user_agent: Requesting user agent, recorded on the click event.

        Raises:
            LinkStoreUnavailable: The cache missed and the store read failed.
        """
        assert isinstance(short_code, str) and short_code, f"short_code must be a non-empty string, got {short_code!r}"
        start_time = time.perf_counter()

        if not is_valid_short_code(short_code):
            RESOLVE_NOT_FOUND_TOTAL.inc()
            self._logger.info(f"Rejected malformed short code: {short_code!r}")
            return None

        destination = await self._lookup_from_cache(short_code)
        if destination is not None:
            RESOLVE_REQUESTS_TOTAL.labels(cache_hit=CacheStatus.HIT).inc()
            self._logger.debug(f"Cache hit for {short_code}")
        else:
            RESOLVE_REQUESTS_TOTAL.labels(cache_hit=CacheStatus.MISS).inc()
            destination = await self._lookup_from_database(short_code)
            if destination is None:
                RESOLVE_NOT_FOUND_TOTAL.inc()
                self._logger.info(f"Unknown short code: {short_code}")
                return None
            await self._cache_destination(short_code, destination)

        await self._publish_click(short_code, client_ip, user_agent)

        RESOLVE_DURATION.observe(time.perf_counter() - start_time)
        return destination

    async def _lookup_from_cache(self, short_code: str) -> Optional[str]:
        try:
            return await asyncio.wait_for(
                self._cache_read.get(short_code),
                timeout=self._settings.CACHE_TIMEOUT_SECONDS,
            )
        except (RedisError, TimeoutError) as exc:
            self._logger.warning(f"Cache read failed for {short_code}, falling back to store: {exc!r}")
            return None

    async def _lookup_from_database(self, short_code: str) -> Optional[str]:
        try:
            result = await self._db.execute(select(Link.destination_url).where(Link.short_code == short_code))
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            self._logger.error(f"Link store read failed for {short_code}: {exc!r}")
            raise LinkStoreUnavailable(str(exc)) from exc
        DATABASE_READS_TOTAL.inc()
        return result.scalar_one_or_none()

    async def _cache_destination(self, short_code: str, destination: str) -> None:
        try:
            await asyncio.wait_for(
                self._cache_write.set(short_code, destination, ex=self._settings.LINK_CACHE_TTL_SECONDS),
                timeout=self._settings.CACHE_TIMEOUT_SECONDS,
            )
        except (RedisError, TimeoutError) as exc:
            self._logger.warning(f"Cache write failed for {short_code}: {exc!r}")

    async def _publish_click(self, short_code: str, client_ip: Optional[str], user_agent: Optional[str]) -> None:
        event = ClickEvent(short_code=short_code, client_ip=client_ip, user_agent=user_agent)
        try:
            queued = await self._publisher.publish(event)
        except Exception as exc:
            queued = False
            self._logger.warning(f"Click event for {short_code} dropped: {exc!r}")
        CLICK_PUBLISH_TOTAL.labels(status=PublishStatus.QUEUED if queued else PublishStatus.DROPPED).inc()
