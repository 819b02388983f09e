"""FastAPI route definitions for the redirect and stats API.

API Endpoint Overview
=====================
::
    GET  /health
        └─ HealthResponse (200)

    GET  /api/stats/:short_code
        └─ LinkStats (200) or 404 / 503

    GET  /api/trending?limit=&hours=
        └─ list[TrendingLink] (200) or 503

    GET  /:short_code
        └─ 302 Redirect, 404, 429 (Retry-After) or 503

Request Flow Diagram
====================
::
    ┌─────────────┐
    │  HTTP       │
    │  Request    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Admission   │── rejected ──▶ 429 + Retry-After
    │ control     │   (redirect only)
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Inject      │
    │ service     │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Resolver /  │
    │ StatsService│
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ HTTP        │
    │ Response    │
    └─────────────┘

Key Behaviours
===============
- The stats and trending routes are declared before the catch-all redirect.
- Redirects use 302 so browsers re-request and every visit is recorded.
- Analytics failures only affect the stats routes; redirects never depend
  on the analytics pipeline.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy import text

from linkapp.config import get_settings
from linkapp.dependencies import (
    RequestContext,
    admission_control,
    get_link_resolver,
    get_request_context,
    get_stats_service,
)
from linkapp.enums import HealthStatus
from linkapp.errors import AnalyticsUnavailable, LinkStoreUnavailable
from linkapp.resolver import LinkResolver
from linkapp.schemas import HealthResponse, LinkStats, TrendingLink, is_valid_short_code
from linkapp.stats_service import StatsService

__all__ = ["router"]

router = APIRouter()
settings = get_settings()


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY
    analytics_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.cache_writer.ping()
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    if not await ctx.analytics.ping():
        ctx.logger.error("Analytics store health check failed")
        analytics_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status, analytics=analytics_status)


@router.get("/api/stats/{short_code}", response_model=LinkStats, tags=["stats"])
async def get_stats(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: StatsService = Depends(get_stats_service),
) -> LinkStats:
    ctx.logger.info(f"Stats requested for short code: {short_code}")
    try:
        stats = await service.get_stats(short_code)
    except (LinkStoreUnavailable, AnalyticsUnavailable) as exc:
        ctx.logger.error(
            f"Stats unavailable for {short_code}: {exc}",
            extra={"operation": "stats", "short_code": short_code, "error": str(exc)},
        )
        raise HTTPException(status_code=503, detail="Stats temporarily unavailable") from exc
    if stats is None:
        ctx.logger.warning(f"Stats not found for short code: {short_code}")
        raise HTTPException(status_code=404, detail="Short URL not found")
    return stats


@router.get("/api/trending", response_model=list[TrendingLink], tags=["stats"])
async def get_trending(
    limit: int = Query(settings.TRENDING_DEFAULT_LIMIT, ge=1, le=100),
    hours: int = Query(settings.TRENDING_DEFAULT_HOURS, ge=1, le=24 * 30),
    service: StatsService = Depends(get_stats_service),
) -> list[TrendingLink]:
    try:
        return await service.get_trending(limit=limit, hours=hours)
    except AnalyticsUnavailable as exc:
        raise HTTPException(status_code=503, detail="Stats temporarily unavailable") from exc


@router.get("/{short_code}", tags=["redirect"], dependencies=[Depends(admission_control)])
async def redirect_to_url(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    resolver: LinkResolver = Depends(get_link_resolver),
) -> RedirectResponse:
    if not is_valid_short_code(short_code):
        ctx.logger.warning(
            f"Redirect failed - malformed short code: {short_code!r}",
            extra={"operation": "redirect", "short_code": short_code, "error": "malformed"},
        )
        raise HTTPException(status_code=404, detail="Short URL not found")

    try:
        destination = await resolver.resolve(short_code, client_ip=ctx.client_ip, user_agent=ctx.user_agent)
    except LinkStoreUnavailable as exc:
        ctx.logger.error(
            f"Redirect failed - link store unavailable: {short_code}",
            extra={
                "operation": "redirect",
                "short_code": short_code,
                "error": str(exc),
                "duration_ms": ctx.get_duration(),
            },
        )
        raise HTTPException(status_code=503, detail="Link store unavailable") from exc

    if destination is None:
        ctx.logger.warning(
            f"Redirect failed - short code not found: {short_code}",
            extra={
                "operation": "redirect",
                "short_code": short_code,
                "error": "not_found",
                "duration_ms": ctx.get_duration(),
            },
        )
        raise HTTPException(status_code=404, detail="Short URL not found")

    ctx.logger.info(
        f"Redirect successful: {short_code} -> {destination}",
        extra={"operation": "redirect", "short_code": short_code, "duration_ms": ctx.get_duration()},
    )
    return RedirectResponse(url=destination, status_code=302)
