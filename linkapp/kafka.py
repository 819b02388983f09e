"""Kafka producer for click events.

The publisher is created once at startup and injected into every resolver; it
is the only way a click leaves the request path. Publishing only enqueues the
event into the producer's send buffer. Broker acknowledgement is observed from
a done-callback, so the redirect never waits on Kafka.
"""

import asyncio
import json
import logging

from aiokafka import AIOKafkaProducer
from prometheus_client import Counter

from linkapp.config import Settings
from linkapp.schemas import ClickEvent

__all__ = ["ClickEventPublisher"]

KAFKA_EVENTS_QUEUED_TOTAL = Counter(
    "linkapp_kafka_events_queued_total",
    "Click events handed to the Kafka producer buffer",
)
KAFKA_EVENTS_FAILED_TOTAL = Counter(
    "linkapp_kafka_events_failed_total",
    "Click events the broker did not acknowledge",
)


class ClickEventPublisher:
    """Fire-and-forget producer side of the click pipeline."""

    def __init__(self, settings: Settings, logger: logging.Logger | logging.LoggerAdapter | None = None):
        self._settings = settings
        self._logger = logger or logging.getLogger("linkapp")
        self._producer: AIOKafkaProducer | None = None

    @property
    def started(self) -> bool:
        return self._producer is not None

    async def start(self) -> None:
        if self._producer is not None:
            return

        producer = AIOKafkaProducer(
            bootstrap_servers=self._settings.KAFKA_BOOTSTRAP_SERVERS,
            value_serializer=lambda payload: json.dumps(payload).encode("utf-8"),
        )
        try:
            await producer.start()
            self._producer = producer
            self._logger.info(f"Kafka producer connected to {self._settings.KAFKA_BOOTSTRAP_SERVERS}")
        except Exception as exc:
            # Redirects keep working without a broker; clicks are dropped until restart.
            self._logger.error(f"Kafka producer unavailable, click events will be dropped: {exc}")
            await producer.stop()
            self._producer = None

    async def stop(self) -> None:
        if self._producer is None:
            return
        await self._producer.stop()
        self._producer = None

    async def publish(self, event: ClickEvent) -> bool:
        """Queue ``event`` for delivery.

        Returns False when no producer is running. Raises if the send buffer
        does not accept the event within KAFKA_PUBLISH_TIMEOUT_SECONDS; callers
        on the request path swallow that.
        """
        if self._producer is None:
            return False

        delivery = await asyncio.wait_for(
            self._producer.send(
                self._settings.KAFKA_CLICK_TOPIC,
                event.model_dump(mode="json"),
                key=event.short_code.encode("utf-8"),
            ),
            timeout=self._settings.KAFKA_PUBLISH_TIMEOUT_SECONDS,
        )
        delivery.add_done_callback(self._on_delivery)
        KAFKA_EVENTS_QUEUED_TOTAL.inc()
        return True

    def _on_delivery(self, future: asyncio.Future) -> None:
        if future.cancelled():
            KAFKA_EVENTS_FAILED_TOTAL.inc()
            return
        exc = future.exception()
        if exc is not None:
            KAFKA_EVENTS_FAILED_TOTAL.inc()
            self._logger.warning(f"Click event delivery failed: {exc}")
