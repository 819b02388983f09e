"""Click ingestion worker.

Drains click events from Kafka into a bounded in-memory batch and flushes
each batch to PostgreSQL (audit log) and then ClickHouse (aggregation log).
Offsets are committed only after both sinks accepted the whole batch, which
gives at-least-once delivery; event_id makes redelivered rows harmless.

State Machine
=============
::
                 size >= CLICK_BATCH_SIZE
                 or age >= CLICK_FLUSH_INTERVAL_SECONDS
    ┌──────────────┐ ───────────────▶ ┌──────────┐
    │ ACCUMULATING │                  │ FLUSHING │
    └──────────────┘ ◀─────────────── └──────────┘
           │          commit / rewind       │
           │ request_stop()                 │ FatalSinkError
           ▼                                ▼
    ┌──────────────┐   ┌──────────┐   ┌──────────────────┐
    │ FLUSHING     │──▶│ STOPPED  │   │ STOPPED + raise   │
    │ (final)      │   └──────────┘   │ ConsumerHalted    │
    └──────────────┘                  └──────────────────┘

Flush Outcomes
==============
- both sinks ok          → commit offsets
- any transient failure  → no commit, seek back to committed offsets so the
                           broker redelivers the batch, back off
- any fatal failure      → log critical, stop, exit non-zero

Run::

    python -m services.ingestion.worker
"""

import asyncio
import logging
import signal
import time
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError
from prometheus_client import Counter, start_http_server
from pydantic import ValidationError

from linkapp.analytics import AnalyticsStore
from linkapp.config import Settings, get_settings
from linkapp.database import async_session, close_db, init_db
from linkapp.enums import ConsumerState
from linkapp.errors import ConsumerHalted, FatalSinkError, SinkError
from linkapp.schemas import ClickEvent
from services.ingestion.sinks import AnalyticsStoreClickSink, LinkStoreClickSink

__all__ = ["ClickBatch", "ClickBatchConsumer", "run"]

logger = logging.getLogger(__name__)

INGESTION_KAFKA_EVENTS_TOTAL = Counter(
    "ingestion_kafka_events_total",
    "Kafka click events consumed by ingestion workers",
)
INGESTION_INVALID_EVENTS_TOTAL = Counter(
    "ingestion_invalid_events_total",
    "Kafka records skipped because they are not valid click events",
)
INGESTION_FLUSHES_TOTAL = Counter(
    "ingestion_flushes_total",
    "Click batches flushed and committed",
)
INGESTION_SINK_ROWS_TOTAL = Counter(
    "ingestion_sink_rows_total",
    "Click rows accepted by each sink",
    ["sink"],
)
INGESTION_SINK_FAILURES_TOTAL = Counter(
    "ingestion_sink_failures_total",
    "Failed batch writes per sink",
    ["sink", "kind"],
)


class ClickSink(Protocol):
    name: str

    async def write(self, events: Sequence[ClickEvent]) -> None: ...


class ClickBatch:
    """Ordered, size-bounded batch of click events owned by one consumer."""

    def __init__(self, max_size: int):
        assert max_size > 0, f"max_size must be positive, got {max_size!r}"
        self.max_size = max_size
        self._events: list[ClickEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    @property
    def remaining(self) -> int:
        return self.max_size - len(self._events)

    @property
    def is_full(self) -> bool:
        return len(self._events) >= self.max_size

    def add(self, event: ClickEvent) -> None:
        self._events.append(event)

    def drain(self) -> list[ClickEvent]:
        events, self._events = self._events, []
        return events


class ClickBatchConsumer:
    """Single long-lived consumer that batches clicks into both sinks.

    ``source`` is an AIOKafkaConsumer (or anything with the same ``getmany``,
    ``commit`` and ``seek_to_committed`` coroutines) started with auto-commit
    disabled.
    """

    def __init__(
        self,
        source: Any,
        link_sink: ClickSink,
        analytics_sink: ClickSink,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self._sinks = (link_sink, analytics_sink)
        self._settings = settings
        self._clock = clock
        self._batch = ClickBatch(settings.CLICK_BATCH_SIZE)
        self._stop = asyncio.Event()
        self._last_flush = clock()
        self.state = ConsumerState.ACCUMULATING
        self.flush_count = 0

    @property
    def pending(self) -> int:
        return len(self._batch)

    def request_stop(self) -> None:
        logger.info("Stop requested, flushing pending clicks")
        self._stop.set()

    async def run(self) -> None:
        self._last_flush = self._clock()
        while not self._stop.is_set():
            await self.poll_once()
            if self.should_flush():
                await self.flush()

        await self.flush(final=True)
        self.state = ConsumerState.STOPPED
        logger.info(f"Click consumer stopped after {self.flush_count} flushes")

    async def poll_once(self) -> int:
        """Pull at most the batch's remaining capacity, waiting up to the idle interval."""
        records = await self._source.getmany(
            timeout_ms=self._settings.CLICK_IDLE_WAIT_MS,
            max_records=self._batch.remaining,
        )
        received = 0
        for partition_records in records.values():
            for record in partition_records:
                try:
                    self._batch.add(ClickEvent.model_validate_json(record.value))
                    received += 1
                except ValidationError:
                    INGESTION_INVALID_EVENTS_TOTAL.inc()
                    logger.warning("invalid kafka click payload", exc_info=True)
        if received:
            INGESTION_KAFKA_EVENTS_TOTAL.inc(received)
        return received

    def should_flush(self) -> bool:
        if not len(self._batch):
            return False
        if self._batch.is_full:
            return True
        return self._clock() - self._last_flush >= self._settings.CLICK_FLUSH_INTERVAL_SECONDS

    async def flush(self, final: bool = False) -> bool:
        """Write the pending batch to both sinks and settle its offsets.

        Returns True when the batch was committed (or there was nothing to
        flush) and False when it was left for redelivery.

        Raises:
            ConsumerHalted: A sink reported a non-retryable failure.
        """
        events = self._batch.drain()
        self._last_flush = self._clock()
        if not events:
            return True

        self.state = ConsumerState.FLUSHING
        failures: list[SinkError] = []
        for sink in self._sinks:
            try:
                await sink.write(events)
                INGESTION_SINK_ROWS_TOTAL.labels(sink=sink.name).inc(len(events))
            except SinkError as exc:
                kind = "fatal" if isinstance(exc, FatalSinkError) else "transient"
                INGESTION_SINK_FAILURES_TOTAL.labels(sink=sink.name, kind=kind).inc()
                logger.error(f"{kind} failure writing {len(events)} clicks to {sink.name}: {exc}")
                failures.append(exc)

        fatal = [failure for failure in failures if isinstance(failure, FatalSinkError)]
        if fatal:
            self.state = ConsumerState.STOPPED
            logger.critical(f"Click consumer halting on fatal sink error: {fatal[0]}")
            raise ConsumerHalted(str(fatal[0])) from fatal[0]

        if failures:
            logger.warning(f"Batch of {len(events)} clicks left for broker redelivery")
            if not final:
                await self._source.seek_to_committed()
                await asyncio.sleep(self._settings.INGESTION_ERROR_BACKOFF_SECONDS)
            self.state = ConsumerState.ACCUMULATING
            return False

        try:
            await self._source.commit()
        except KafkaError as exc:
            # The rows are written; an uncommitted batch is only redelivered and deduplicated.
            logger.warning(f"Offset commit failed after flush: {exc!r}")
        INGESTION_FLUSHES_TOTAL.inc()
        self.flush_count += 1
        self.state = ConsumerState.ACCUMULATING
        logger.info(f"Flushed batch of {len(events)} clicks")
        return True


async def run() -> None:
    settings = get_settings()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    start_http_server(settings.INGESTION_METRICS_PORT)

    await init_db()
    analytics = AnalyticsStore(settings)
    link_sink = LinkStoreClickSink(async_session)
    analytics_sink = AnalyticsStoreClickSink(analytics)
    await link_sink.validate_schema()
    await analytics_sink.validate_schema()

    consumer = AIOKafkaConsumer(
        settings.KAFKA_CLICK_TOPIC,
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        group_id=settings.INGESTION_CONSUMER_GROUP,
        client_id=settings.INGESTION_CONSUMER_NAME,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
    )
    await consumer.start()

    batch_consumer = ClickBatchConsumer(consumer, link_sink, analytics_sink, settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, batch_consumer.request_stop)

    try:
        await batch_consumer.run()
    finally:
        await consumer.stop()
        analytics.close()
        await close_db()


if __name__ == "__main__":
    asyncio.run(run())
