"""Shared pytest fixtures and in-memory fakes for the link service tests.

Nothing here talks to PostgreSQL, Redis, Kafka or ClickHouse: the API tests
drive the FastAPI app through httpx's ASGITransport with dependency
overrides, and the worker tests feed a fake Kafka source into the consumer.
"""

from collections.abc import AsyncGenerator
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiokafka.structs import TopicPartition
from httpx import ASGITransport, AsyncClient

from linkapp.admission import AdmissionDecision, AdmissionGate
from linkapp.config import Settings, get_settings
from linkapp.dependencies import get_admission_gate, get_link_resolver, get_request_context, get_stats_service
from linkapp.errors import SinkError
from linkapp.main import app
from linkapp.resolver import LinkResolver
from linkapp.schemas import ClickEvent
from linkapp.stats_service import StatsService

# ============================================================================
# FAKES
# ============================================================================


class FakeCache:
    """Dict-backed stand-in for the few Redis commands the services use."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.gets: list[str] = []

    async def get(self, key: str) -> Optional[str]:
        self.gets.append(key)
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def ping(self) -> bool:
        return True


class FakePublisher:
    def __init__(self, accept: bool = True):
        self.accept = accept
        self.events: list[ClickEvent] = []

    async def publish(self, event: ClickEvent) -> bool:
        if self.accept:
            self.events.append(event)
        return self.accept


class FakeKafkaSource:
    """Serves queued payloads through the getmany/commit/seek_to_committed surface."""

    partition = TopicPartition("link_visited", 0)

    def __init__(self, payloads: Optional[list[bytes]] = None):
        self.pending: list[bytes] = list(payloads or [])
        self.commits = 0
        self.seeks = 0
        self.on_drained = None

    def push(self, *payloads: bytes) -> None:
        self.pending.extend(payloads)

    async def getmany(self, timeout_ms: int = 0, max_records: Optional[int] = None) -> dict:
        if not self.pending:
            if self.on_drained is not None:
                self.on_drained()
            return {}
        count = len(self.pending) if max_records is None else max_records
        taken, self.pending = self.pending[:count], self.pending[count:]
        return {self.partition: [SimpleNamespace(value=value) for value in taken]}

    async def commit(self) -> None:
        self.commits += 1

    async def seek_to_committed(self) -> None:
        self.seeks += 1


class RecordingSink:
    """Sink that keeps every batch it is given, or raises a preset error."""

    def __init__(self, name: str, error: Optional[SinkError] = None):
        self.name = name
        self.error = error
        self.batches: list[list[ClickEvent]] = []

    async def write(self, events) -> None:
        if self.error is not None:
            raise self.error
        self.batches.append(list(events))


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def click_payload(short_code: str = "abc123", **overrides) -> bytes:
    return ClickEvent(short_code=short_code, **overrides).model_dump_json().encode("utf-8")


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Default settings with retry backoff disabled."""
    return get_settings().model_copy(update={"INGESTION_ERROR_BACKOFF_SECONDS": 0.0})


@pytest.fixture
def mock_logger() -> MagicMock:
    return MagicMock()


@pytest.fixture
def fake_cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def mock_resolver() -> AsyncMock:
    resolver = AsyncMock(spec=LinkResolver)
    resolver.resolve = AsyncMock(return_value=None)
    return resolver


@pytest.fixture
def mock_stats_service() -> AsyncMock:
    service = AsyncMock(spec=StatsService)
    service.get_stats = AsyncMock(return_value=None)
    service.get_trending = AsyncMock(return_value=[])
    return service


@pytest.fixture
def mock_gate() -> AsyncMock:
    gate = AsyncMock(spec=AdmissionGate)
    gate.check = AsyncMock(return_value=AdmissionDecision(allowed=True))
    return gate


@pytest.fixture
def mock_ctx() -> MagicMock:
    """Request context as the routes see it, without a session or shared clients."""
    ctx = MagicMock()
    ctx.client_ip = "203.0.113.7"
    ctx.user_agent = "pytest-agent"
    ctx.get_duration.return_value = 1.0
    return ctx


@pytest_asyncio.fixture(scope="function")
async def client(mock_ctx, mock_resolver, mock_stats_service, mock_gate) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_request_context] = lambda: mock_ctx
    app.dependency_overrides[get_link_resolver] = lambda: mock_resolver
    app.dependency_overrides[get_stats_service] = lambda: mock_stats_service
    app.dependency_overrides[get_admission_gate] = lambda: mock_gate

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
