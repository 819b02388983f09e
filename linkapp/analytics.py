"""ClickHouse adapter for the click analytics log.

The analytics store holds one row per recorded visit in an append-only
MergeTree table and answers every aggregate the stats surface needs. The
ingestion worker writes to it through :meth:`AnalyticsStore.insert_rows`; the
stats service reads from it through the query helpers below.

Column Contract
===============
::
    link_analytics_log (position matters: bulk inserts are positional)
    ├─ 0 event_id    UUID
    ├─ 1 short_code  String
    ├─ 2 ip_address  String
    ├─ 3 user_agent  String
    └─ 4 clicked_at  DateTime64(3, 'UTC')

:class:`ClickRow` mirrors this order field for field. Inserts pass both the
column names and the column type names, so the driver never has to describe
the table or infer types per row. :meth:`AnalyticsStore.validate_schema`
compares the contract against ``system.columns`` at startup and refuses to
run against a drifted table.

Key Behaviours
===============
- clickhouse-connect is synchronous; every call runs in a worker thread.
- The client is created lazily so the HTTP app starts without ClickHouse.
- Click counts use uniqExact(event_id), making redelivered rows count once.
- Unique visitors use uniq(ip_address), an approximate distinct count.
"""

import asyncio
import datetime
import uuid
from collections.abc import Callable, Sequence
from typing import NamedTuple

import clickhouse_connect
from clickhouse_connect.driver.client import Client as ClickHouseClient

from linkapp.config import Settings
from linkapp.enums import SinkName
from linkapp.errors import SchemaMismatchError
from linkapp.schemas import ClickEvent

__all__ = ["CLICK_LOG_COLUMNS", "AnalyticsStore", "ClickRow", "ClickSummary"]

CLICK_LOG_COLUMNS: tuple[tuple[str, str], ...] = (
    ("event_id", "UUID"),
    ("short_code", "String"),
    ("ip_address", "String"),
    ("user_agent", "String"),
    ("clicked_at", "DateTime64(3, 'UTC')"),
)

CLICK_LOG_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    event_id UUID,
    short_code String,
    ip_address String,
    user_agent String,
    clicked_at DateTime64(3, 'UTC')
) ENGINE = MergeTree
ORDER BY (short_code, clicked_at)
"""


class ClickRow(NamedTuple):
    """One positional row of the analytics log."""

    event_id: uuid.UUID
    short_code: str
    ip_address: str
    user_agent: str
    clicked_at: datetime.datetime

    @classmethod
    def from_event(cls, event: ClickEvent) -> "ClickRow":
        return cls(
            event_id=event.event_id,
            short_code=event.short_code,
            ip_address=event.client_ip,
            user_agent=event.user_agent,
            clicked_at=event.occurred_at,
        )


assert ClickRow._fields == tuple(name for name, _ in CLICK_LOG_COLUMNS), "ClickRow must follow CLICK_LOG_COLUMNS"


class ClickSummary(NamedTuple):
    total_clicks: int
    unique_visitors: int
    last_accessed: datetime.datetime | None


class AnalyticsStore:
    """Thin async facade over a clickhouse-connect client."""

    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[..., ClickHouseClient] = clickhouse_connect.get_client,
    ):
        self._settings = settings
        self._client_factory = client_factory
        self._client: ClickHouseClient | None = None
        self.table = settings.CLICKHOUSE_TABLE

    async def _get_client(self) -> ClickHouseClient:
        if self._client is None:
            self._client = await asyncio.to_thread(
                self._client_factory,
                host=self._settings.CLICKHOUSE_HOST,
                port=self._settings.CLICKHOUSE_PORT,
                username=self._settings.CLICKHOUSE_USERNAME,
                password=self._settings.CLICKHOUSE_PASSWORD,
                database=self._settings.CLICKHOUSE_DATABASE,
            )
        return self._client

    async def ensure_schema(self) -> None:
        client = await self._get_client()
        await asyncio.to_thread(client.command, CLICK_LOG_DDL.format(table=self.table))

    async def validate_schema(self) -> None:
        """Raise SchemaMismatchError unless the live table matches CLICK_LOG_COLUMNS."""
        client = await self._get_client()
        result = await asyncio.to_thread(
            client.query,
            "SELECT name, type FROM system.columns "
            "WHERE database = {database:String} AND table = {table:String} "
            "ORDER BY position",
            parameters={"database": self._settings.CLICKHOUSE_DATABASE, "table": self.table},
        )
        live = tuple((name, type_name) for name, type_name in result.result_rows)
        if live != CLICK_LOG_COLUMNS:
            raise SchemaMismatchError(
                SinkName.ANALYTICS_STORE,
                f"table {self.table} has columns {list(live)}, expected {list(CLICK_LOG_COLUMNS)}",
            )

    async def insert_rows(self, rows: Sequence[ClickRow]) -> None:
        """Append ``rows`` in one insert block, in the given order."""
        if not rows:
            return
        client = await self._get_client()
        await asyncio.to_thread(
            client.insert,
            table=self.table,
            data=list(rows),
            column_names=[name for name, _ in CLICK_LOG_COLUMNS],
            column_type_names=[type_name for _, type_name in CLICK_LOG_COLUMNS],
        )

    async def click_summary(self, short_code: str) -> ClickSummary:
        client = await self._get_client()
        result = await asyncio.to_thread(
            client.query,
            f"SELECT uniqExact(event_id), uniq(ip_address), max(clicked_at) "
            f"FROM {self.table} WHERE short_code = {{code:String}}",
            parameters={"code": short_code},
        )
        total, unique, last = result.first_row
        if not total:
            # max() over an empty set yields the epoch, not NULL.
            return ClickSummary(0, 0, None)
        return ClickSummary(int(total), int(unique), _as_utc(last))

    async def daily_history(self, short_code: str, days: int) -> list[tuple[datetime.date, int]]:
        client = await self._get_client()
        result = await asyncio.to_thread(
            client.query,
            f"SELECT toDate(clicked_at) AS day, uniqExact(event_id) AS clicks "
            f"FROM {self.table} "
            f"WHERE short_code = {{code:String}} AND clicked_at > subtractDays(now64(3, 'UTC'), {{days:UInt32}}) "
            f"GROUP BY day ORDER BY day DESC",
            parameters={"code": short_code, "days": days},
        )
        return [(day, int(clicks)) for day, clicks in result.result_rows]

    async def trending(self, limit: int, hours: int) -> list[tuple[str, int]]:
        client = await self._get_client()
        result = await asyncio.to_thread(
            client.query,
            f"SELECT short_code, uniqExact(event_id) AS clicks "
            f"FROM {self.table} "
            f"WHERE clicked_at > subtractHours(now64(3, 'UTC'), {{hours:UInt32}}) "
            f"GROUP BY short_code ORDER BY clicks DESC, short_code ASC LIMIT {{limit:UInt32}}",
            parameters={"hours": hours, "limit": limit},
        )
        return [(short_code, int(clicks)) for short_code, clicks in result.result_rows]

    async def ping(self) -> bool:
        try:
            client = await self._get_client()
            return bool(await asyncio.to_thread(client.ping))
        except Exception:
            return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value
