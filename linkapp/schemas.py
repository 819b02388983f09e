"""Pydantic schemas for broker payloads, cached views and API responses.

Schema Hierarchy
=================
::
    ClickEvent (Kafka payload, snake_case)
    ├─ event_id: UUID          (idempotency key)
    ├─ short_code: str
    ├─ client_ip: str          ("0.0.0.0" when unknown)
    ├─ user_agent: str         ("Unknown" when absent)
    └─ occurred_at: datetime   (UTC)

    LinkStats (API + Redis "stats:{code}", camelCase)
    ├─ shortCode: str
    ├─ totalClicks: int
    ├─ uniqueVisitors: int
    ├─ lastAccessed: datetime | None
    └─ clickHistory: list[DailyClickCount]
           ├─ date: date
           └─ count: int

    TrendingLink (API, camelCase)
    ├─ shortCode: str
    └─ clicks: int

    HealthResponse (API)
    ├─ status / database / cache / analytics: HealthStatus

Key Behaviours
===============
- Missing client IP and user agent are replaced by literal sentinels at
  construction time, so None never reaches the sinks or the aggregates.
- Short codes are restricted to SHORT_CODE_PATTERN, which never contains the
  ":" separator used by the stats and rate-limit cache keys.
- Naive timestamps are interpreted as UTC.
- Stats schemas accept both snake_case names and camelCase aliases, and
  FastAPI serializes them by alias.
"""

import datetime
import re
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from linkapp.enums import HealthStatus

__all__ = [
    "SHORT_CODE_PATTERN",
    "UNKNOWN_IP",
    "UNKNOWN_USER_AGENT",
    "ClickEvent",
    "DailyClickCount",
    "HealthResponse",
    "LinkStats",
    "TrendingLink",
    "is_valid_short_code",
]

UNKNOWN_IP = "0.0.0.0"
UNKNOWN_USER_AGENT = "Unknown"

# Same width as links.short_code; URL-safe characters only.
SHORT_CODE_PATTERN = r"^[A-Za-z0-9_-]{1,32}$"
_SHORT_CODE_RE = re.compile(SHORT_CODE_PATTERN)


def is_valid_short_code(value: str) -> bool:
    return bool(_SHORT_CODE_RE.fullmatch(value))


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ClickEvent(BaseModel):
    """Kafka click event payload, keyed by short_code for partition affinity."""

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    short_code: str = Field(..., pattern=SHORT_CODE_PATTERN, description="Short code that was resolved, e.g. 'abc123'")
    client_ip: str | None = Field(None, validate_default=True)
    user_agent: str | None = Field(None, validate_default=True)
    occurred_at: datetime.datetime = Field(default_factory=_utcnow)

    @field_validator("client_ip")
    @classmethod
    def default_client_ip(cls, v: str | None) -> str:
        return v or UNKNOWN_IP

    @field_validator("user_agent")
    @classmethod
    def default_user_agent(cls, v: str | None) -> str:
        return v or UNKNOWN_USER_AGENT

    @field_validator("occurred_at")
    @classmethod
    def ensure_utc(cls, v: datetime.datetime) -> datetime.datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=datetime.timezone.utc)
        return v.astimezone(datetime.timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DailyClickCount(_CamelModel):
    date: datetime.date
    count: int


class LinkStats(_CamelModel):
    short_code: str
    total_clicks: int = 0
    unique_visitors: int = 0
    last_accessed: datetime.datetime | None = None
    click_history: list[DailyClickCount] = Field(default_factory=list)


class TrendingLink(_CamelModel):
    short_code: str
    clicks: int


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
    analytics: HealthStatus
