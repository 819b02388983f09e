"""Admission control for the redirect endpoint.

A sliding-window limiter keyed by client address, stored as one Redis sorted
set per client (``ratelimit:{ip}``, member per request, score = timestamp).
The resolver never sees rejected requests: the route dependency raises a 429
with a Retry-After header before the handler runs.

Key Behaviours
===============
- Expired entries are trimmed and the new request counted in one MULTI/EXEC.
- Rejected requests are removed again so they do not extend the penalty.
- Redis failures admit the request; the limiter is not allowed to take the
  redirect path down with it.
"""

import math
import time
import uuid
from dataclasses import dataclass

import redis.asyncio as redis
from prometheus_client import Counter
from redis.exceptions import RedisError

from linkapp.config import Settings

__all__ = ["AdmissionDecision", "AdmissionGate"]

ADMISSION_REJECTED_TOTAL = Counter(
    "linkapp_admission_rejected_total",
    "Requests rejected by the sliding-window limiter",
)


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    retry_after: int = 0


class AdmissionGate:
    def __init__(self, cache: redis.Redis, settings: Settings, logger):
        self._cache = cache
        self._settings = settings
        self._logger = logger
        self._limit = settings.RATE_LIMIT_REQUESTS
        self._window = settings.RATE_LIMIT_WINDOW_SECONDS

    async def check(self, client: str) -> AdmissionDecision:
        if not self._settings.RATE_LIMIT_ENABLED:
            return AdmissionDecision(allowed=True)

        now = time.time()
        key = f"{self._settings.RATE_LIMIT_KEY_PREFIX}:{client}"
        member = f"{now}:{uuid.uuid4().hex}"
        try:
            pipe = self._cache.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, now - self._window)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.expire(key, self._window)
            _, _, count, oldest, _ = await pipe.execute()

            if count <= self._limit:
                return AdmissionDecision(allowed=True)

            await self._cache.zrem(key, member)
        except RedisError as exc:
            self._logger.warning(f"Admission check failed for {client}, admitting: {exc!r}")
            return AdmissionDecision(allowed=True)

        oldest_score = oldest[0][1] if oldest else now
        retry_after = max(1, math.ceil(oldest_score + self._window - now))
        ADMISSION_REJECTED_TOTAL.inc()
        self._logger.info(f"Admission rejected for {client}, retry after {retry_after}s")
        return AdmissionDecision(allowed=False, retry_after=retry_after)
