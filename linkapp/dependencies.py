"""Dependency injection with a singleton service manager.

This module provides a centralized way to inject the database session, cache
clients, click publisher and analytics store into every endpoint with
consistent naming, using a singleton pattern for shared resources to minimize
per-request overhead.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from linkapp.admission import AdmissionGate
from linkapp.analytics import AnalyticsStore
from linkapp.config import get_settings
from linkapp.database import get_db
from linkapp.kafka import ClickEventPublisher
from linkapp.resolver import LinkResolver
from linkapp.schemas import UNKNOWN_IP
from linkapp.stats_service import StatsService

# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources.

    Owns every long-lived client the request path needs. The click publisher
    lives here rather than in module state so it is created, injected and
    stopped explicitly.
    """

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self) -> None:
        """Initialize shared resources once at startup."""
        if not self._initialized:
            self.settings = get_settings()
            self.logger = self._setup_logger()
            self.cache_writer = await self._setup_redis_writer()
            self.cache_reader = await self._setup_redis_reader()
            self.publisher = ClickEventPublisher(self.settings, self.logger)
            await self.publisher.start()
            self.analytics = AnalyticsStore(self.settings)
            self.admission_gate = AdmissionGate(self.cache_writer, self.settings, self.logger)
            self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        """Setup logger once."""
        logger = logging.getLogger("linkapp")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
        return logger

    async def _setup_redis_writer(self) -> redis.Redis:
        """Setup Redis writer once."""
        return redis.from_url(self.settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    async def _setup_redis_reader(self) -> redis.Redis:
        """Setup Redis reader once."""
        # Use replica URL if available, otherwise fall back to main Redis
        redis_url = self.settings.REDIS_REPLICA_URL or self.settings.REDIS_URL
        return redis.from_url(redis_url, encoding="utf-8", decode_responses=True)

    async def cleanup(self) -> None:
        """Cleanup shared resources at shutdown."""
        if hasattr(self, "publisher"):
            await self.publisher.stop()
        if hasattr(self, "analytics"):
            self.analytics.close()
        if hasattr(self, "cache_writer"):
            await self.cache_writer.aclose()
        if hasattr(self, "cache_reader"):
            await self.cache_reader.aclose()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request context with tracking and shared resource access.

    Attributes:
        database: Async database session (only per-request resource)
        service_manager: Singleton service manager with shared resources
        request_id: Unique identifier for this request
        user_agent: Client user agent string
        client_ip: Client IP address
        start_time: Request start timestamp
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    start_time: float = field(default_factory=lambda: time.time())

    @property
    def cache_writer(self) -> redis.Redis:
        return self.service_manager.cache_writer

    @property
    def cache_reader(self) -> redis.Redis:
        return self.service_manager.cache_reader

    @property
    def publisher(self) -> ClickEventPublisher:
        return self.service_manager.publisher

    @property
    def analytics(self) -> AnalyticsStore:
        return self.service_manager.analytics

    @property
    def settings(self):
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger with request context attached to every record."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
            },
        )

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


def _client_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        user_agent=request.headers.get("user-agent"),
        client_ip=_client_address(request),
    )


def get_link_resolver(ctx: RequestContext = Depends(get_request_context)) -> LinkResolver:
    return LinkResolver.from_context(ctx)


def get_stats_service(ctx: RequestContext = Depends(get_request_context)) -> StatsService:
    return StatsService.from_context(ctx)


async def get_admission_gate(manager: ServiceManager = Depends(get_service_manager)) -> AdmissionGate:
    return manager.admission_gate


async def admission_control(request: Request, gate: AdmissionGate = Depends(get_admission_gate)) -> None:
    """Reject the request with 429 before the handler runs when the gate says so."""
    decision = await gate.check(_client_address(request) or UNKNOWN_IP)
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers={"Retry-After": str(decision.retry_after)},
        )
