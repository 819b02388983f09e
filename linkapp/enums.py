"""Shared enums for the link service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = ["CacheStatus", "ConsumerState", "HealthStatus", "PublishStatus", "SinkName"]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class CacheStatus(StrEnum):
    """Cache status values for metrics."""

    HIT = "true"
    MISS = "false"


class PublishStatus(StrEnum):
    """Outcome of handing a click event to the broker."""

    QUEUED = "queued"
    DROPPED = "dropped"


class ConsumerState(StrEnum):
    """Lifecycle of the click batch consumer.

    ACCUMULATING -> FLUSHING -> ACCUMULATING while running;
    ACCUMULATING -> FLUSHING -> STOPPED once a stop is requested.
    """

    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    STOPPED = "stopped"


class SinkName(StrEnum):
    """Durable destinations a click batch is written to."""

    LINK_STORE = "postgres"
    ANALYTICS_STORE = "clickhouse"
