"""Click sink tests: error classification and batch statements."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from clickhouse_connect.driver.exceptions import DatabaseError as ClickHouseDatabaseError
from clickhouse_connect.driver.exceptions import OperationalError as ClickHouseOperationalError
from clickhouse_connect.driver.exceptions import ProgrammingError as ClickHouseProgrammingError
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, ProgrammingError

from linkapp.analytics import AnalyticsStore
from linkapp.enums import SinkName
from linkapp.errors import FatalSinkError, SchemaMismatchError, TransientSinkError
from linkapp.schemas import ClickEvent
from services.ingestion.sinks import AnalyticsStoreClickSink, LinkStoreClickSink, classify_sink_error


class _DriverError(Exception):
    def __init__(self, sqlstate):
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


# ============================================================================
# ERROR CLASSIFICATION
# ============================================================================


@pytest.mark.parametrize(
    "exc",
    [
        OperationalError("INSERT", {}, ConnectionRefusedError()),
        DBAPIError("INSERT", {}, _DriverError("57P01")),
        ClickHouseOperationalError("connection reset by peer"),
        ClickHouseDatabaseError("Code: 241. DB::Exception: Memory limit exceeded"),
        ConnectionResetError(),
        TimeoutError(),
    ],
)
def test_transient_errors(exc):
    assert isinstance(classify_sink_error(SinkName.LINK_STORE, exc), TransientSinkError)


@pytest.mark.parametrize(
    "exc",
    [
        ProgrammingError("INSERT", {}, Exception("relation does not exist")),
        IntegrityError("INSERT", {}, Exception("not null violation")),
        DBAPIError("INSERT", {}, _DriverError("28P01")),
        DBAPIError("INSERT", {}, _DriverError("42703")),
        ClickHouseProgrammingError("bad column type"),
        ClickHouseDatabaseError("Code: 60. DB::Exception: Table analytics_db.link_analytics_log does not exist"),
        ClickHouseDatabaseError("Code: 516. DB::Exception: default: Authentication failed"),
        ValueError("unexpected"),
    ],
)
def test_fatal_errors(exc):
    assert isinstance(classify_sink_error(SinkName.ANALYTICS_STORE, exc), FatalSinkError)


def test_sink_errors_pass_through():
    error = SchemaMismatchError(SinkName.ANALYTICS_STORE, "drift")
    assert classify_sink_error(SinkName.ANALYTICS_STORE, error) is error


# ============================================================================
# LINK STORE SINK
# ============================================================================


def _session_factory(session: AsyncMock) -> MagicMock:
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    return factory


@pytest.mark.asyncio
async def test_link_store_sink_writes_one_idempotent_statement():
    session = AsyncMock()
    sink = LinkStoreClickSink(_session_factory(session))
    events = [ClickEvent(short_code="abc123"), ClickEvent(short_code="xyz789")]

    await sink.write(events)

    session.execute.assert_awaited_once()
    session.commit.assert_awaited_once()
    stmt = session.execute.call_args.args[0]
    sql = str(stmt.compile(dialect=postgresql.dialect()))
    assert sql.startswith("INSERT INTO link_analytics")
    assert "ON CONFLICT (event_id) DO NOTHING" in sql


@pytest.mark.asyncio
async def test_link_store_sink_classifies_failures():
    session = AsyncMock()
    session.execute.side_effect = OperationalError("INSERT", {}, ConnectionRefusedError())
    sink = LinkStoreClickSink(_session_factory(session))

    with pytest.raises(TransientSinkError) as excinfo:
        await sink.write([ClickEvent(short_code="abc123")])
    assert excinfo.value.sink == SinkName.LINK_STORE


# ============================================================================
# ANALYTICS STORE SINK
# ============================================================================


@pytest.mark.asyncio
async def test_analytics_sink_inserts_rows_in_batch_order():
    store = AsyncMock(spec=AnalyticsStore)
    sink = AnalyticsStoreClickSink(store)
    events = [ClickEvent(short_code=f"code{i}") for i in range(5)]

    await sink.write(events)

    store.insert_rows.assert_awaited_once()
    rows = store.insert_rows.call_args.args[0]
    assert [row.event_id for row in rows] == [event.event_id for event in events]


@pytest.mark.asyncio
async def test_analytics_sink_schema_drift_is_fatal():
    store = AsyncMock(spec=AnalyticsStore)
    store.validate_schema.side_effect = SchemaMismatchError(SinkName.ANALYTICS_STORE, "drift")
    sink = AnalyticsStoreClickSink(store)

    with pytest.raises(FatalSinkError):
        await sink.validate_schema()
    store.ensure_schema.assert_awaited_once()


@pytest.mark.asyncio
async def test_analytics_sink_outage_is_transient():
    store = AsyncMock(spec=AnalyticsStore)
    store.insert_rows.side_effect = ClickHouseOperationalError("connection refused")
    sink = AnalyticsStoreClickSink(store)

    with pytest.raises(TransientSinkError):
        await sink.write([ClickEvent(short_code="abc123")])


def _inspecting_session(columns: list[str]) -> AsyncMock:
    conn = AsyncMock()
    conn.run_sync = AsyncMock(return_value=[{"name": name} for name in columns])
    session = AsyncMock()
    session.connection = AsyncMock(return_value=conn)
    return session


@pytest.mark.asyncio
async def test_link_store_schema_accepts_required_columns():
    columns = ["id", "event_id", "short_code", "ip_address", "user_agent", "clicked_at"]
    sink = LinkStoreClickSink(_session_factory(_inspecting_session(columns)))

    await sink.validate_schema()


@pytest.mark.asyncio
async def test_link_store_schema_missing_column_is_fatal():
    sink = LinkStoreClickSink(_session_factory(_inspecting_session(["id", "short_code", "ip_address", "user_agent"])))

    with pytest.raises(SchemaMismatchError) as excinfo:
        await sink.validate_schema()
    assert "clicked_at" in str(excinfo.value)
    assert "event_id" in str(excinfo.value)
    assert excinfo.value.sink == SinkName.LINK_STORE
