"""Durable sinks for flushed click batches.

Each sink turns one batch into exactly one write statement and reports
failure as a SinkError whose subclass tells the consumer what to do next:
TransientSinkError leaves the batch for broker redelivery, FatalSinkError
stops the worker.

Sink Write Paths
================
::
    batch (list[ClickEvent], receipt order)
        │
        ├─▶ LinkStoreClickSink
        │     INSERT INTO link_analytics (...) VALUES (...), (...), ...
        │     ON CONFLICT (event_id) DO NOTHING          -- one statement
        │
        └─▶ AnalyticsStoreClickSink
              clickhouse insert(link_analytics_log, rows,
                                column_names, column_type_names)  -- one block
"""

import re
from collections.abc import Sequence

from clickhouse_connect.driver.exceptions import DatabaseError as ClickHouseDatabaseError
from clickhouse_connect.driver.exceptions import OperationalError as ClickHouseOperationalError
from clickhouse_connect.driver.exceptions import ProgrammingError as ClickHouseProgrammingError
from sqlalchemy import inspect
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, DataError, IntegrityError, ProgrammingError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from linkapp.analytics import AnalyticsStore, ClickRow
from linkapp.enums import SinkName
from linkapp.errors import FatalSinkError, SchemaMismatchError, SinkError, TransientSinkError
from linkapp.models import LinkAnalytics
from linkapp.schemas import ClickEvent

__all__ = ["AnalyticsStoreClickSink", "LinkStoreClickSink", "classify_sink_error"]

# SQLSTATE classes that will not heal on retry: 28 = invalid authorization, 42 = syntax/undefined object.
_FATAL_SQLSTATE_CLASSES = ("28", "42")

# ClickHouse server codes for missing objects, type mismatches and authentication failures.
_FATAL_CLICKHOUSE_CODES = frozenset({16, 47, 53, 60, 62, 192, 193, 194, 497, 516})
_CLICKHOUSE_CODE_RE = re.compile(r"Code:\s*(\d+)")


def classify_sink_error(sink: str, exc: BaseException) -> SinkError:
    """Map a driver exception onto the transient/fatal split."""
    if isinstance(exc, SinkError):
        return exc

    if isinstance(exc, SQLAlchemyError):
        if isinstance(exc, (ProgrammingError, DataError, IntegrityError)):
            return FatalSinkError(sink, repr(exc))
        if isinstance(exc, DBAPIError):
            sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
            if sqlstate and str(sqlstate).startswith(_FATAL_SQLSTATE_CLASSES):
                return FatalSinkError(sink, repr(exc))
        return TransientSinkError(sink, repr(exc))

    if isinstance(exc, ClickHouseOperationalError):
        return TransientSinkError(sink, repr(exc))
    if isinstance(exc, ClickHouseProgrammingError):
        return FatalSinkError(sink, repr(exc))
    if isinstance(exc, ClickHouseDatabaseError):
        match = _CLICKHOUSE_CODE_RE.search(str(exc))
        if match and int(match.group(1)) in _FATAL_CLICKHOUSE_CODES:
            return FatalSinkError(sink, repr(exc))
        return TransientSinkError(sink, repr(exc))

    if isinstance(exc, (OSError, TimeoutError)):
        return TransientSinkError(sink, repr(exc))

    return FatalSinkError(sink, repr(exc))


class LinkStoreClickSink:
    """Audit log of every click in PostgreSQL's link_analytics table."""

    name = SinkName.LINK_STORE
    required_columns = frozenset({"event_id", "short_code", "ip_address", "user_agent", "clicked_at"})

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def validate_schema(self) -> None:
        async with self._session_factory() as session:
            conn = await session.connection()
            columns = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_columns(LinkAnalytics.__tablename__)
            )
        missing = self.required_columns - {column["name"] for column in columns}
        if missing:
            raise SchemaMismatchError(
                self.name,
                f"table {LinkAnalytics.__tablename__} is missing columns {sorted(missing)}",
            )

    async def write(self, events: Sequence[ClickEvent]) -> None:
        if not events:
            return
        stmt = (
            pg_insert(LinkAnalytics)
            .values(
                [
                    {
                        "event_id": event.event_id,
                        "short_code": event.short_code,
                        "ip_address": event.client_ip,
                        "user_agent": event.user_agent,
                        "clicked_at": event.occurred_at,
                    }
                    for event in events
                ]
            )
            .on_conflict_do_nothing(index_elements=[LinkAnalytics.event_id])
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except Exception as exc:
            raise classify_sink_error(self.name, exc) from exc


class AnalyticsStoreClickSink:
    """Aggregation-ready click log in ClickHouse."""

    name = SinkName.ANALYTICS_STORE

    def __init__(self, store: AnalyticsStore):
        self._store = store

    async def validate_schema(self) -> None:
        try:
            await self._store.ensure_schema()
            await self._store.validate_schema()
        except Exception as exc:
            raise classify_sink_error(self.name, exc) from exc

    async def write(self, events: Sequence[ClickEvent]) -> None:
        if not events:
            return
        rows = [ClickRow.from_event(event) for event in events]
        try:
            await self._store.insert_rows(rows)
        except Exception as exc:
            raise classify_sink_error(self.name, exc) from exc
