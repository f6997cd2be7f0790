"""Case event stream: asynchronous notifications to compliance tooling.

The case manager emits events synchronously into a bounded queue; a
background task drains the queue into a publisher (Kafka in production).
Publishing never blocks or fails an evaluation.
"""

import asyncio
import contextlib
import json
import uuid
from datetime import UTC, datetime
from typing import Protocol

import structlog

from .models import Case, CaseEvent, CaseEventType

logger = structlog.get_logger()


def build_case_event(event_type: CaseEventType, case: Case) -> CaseEvent:
    return CaseEvent(
        event_id=str(uuid.uuid4()),
        event_type=event_type,
        case=case.model_copy(deep=True),
        emitted_at=datetime.now(UTC),
    )


class CaseEventPublisher(Protocol):
    async def publish(self, event: CaseEvent) -> None: ...


class KafkaCaseEventPublisher:
    """Publishes case events to a Kafka topic keyed by entity id.

    Args:
        producer: An aiokafka AIOKafkaProducer instance.
        topic: Destination topic.
    """

    def __init__(self, producer, topic: str = "risk.case.events") -> None:
        self._producer = producer
        self._topic = topic

    async def publish(self, event: CaseEvent) -> None:
        if self._producer is None:
            logger.debug("kafka_producer_not_available", event_id=event.event_id)
            return

        payload = event.model_dump(mode="json")
        try:
            await self._producer.send_and_wait(
                self._topic,
                value=json.dumps(payload).encode("utf-8"),
                key=event.case.entity_id.encode("utf-8"),
            )
            logger.info(
                "case_event_published",
                event_id=event.event_id,
                event_type=event.event_type.value,
                case_id=event.case.case_id,
                topic=self._topic,
            )
        except Exception:
            logger.exception(
                "case_event_publish_failed",
                event_id=event.event_id,
                case_id=event.case.case_id,
                topic=self._topic,
            )


class InMemoryCaseEventPublisher:
    """Collects events in a list. Used when Kafka is not configured."""

    def __init__(self) -> None:
        self.events: list[CaseEvent] = []

    async def publish(self, event: CaseEvent) -> None:
        self.events.append(event)


class CaseEventDispatcher:
    def __init__(self, publisher: CaseEventPublisher, max_pending: int = 10_000) -> None:
        self._publisher = publisher
        self._queue: asyncio.Queue[CaseEvent] = asyncio.Queue(maxsize=max_pending)
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def emit(self, event: CaseEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "case_event_dropped",
                event_id=event.event_id,
                case_id=event.case.case_id,
                pending=self._queue.qsize(),
            )

    async def _publish(self, event: CaseEvent) -> None:
        try:
            await self._publisher.publish(event)
        except Exception:
            logger.exception("case_event_dispatch_error", event_id=event.event_id)

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._publish(event)
            finally:
                self._queue.task_done()

    async def drain(self) -> int:
        """Publish everything queued right now. Returns the number published."""
        published = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._publish(event)
            finally:
                self._queue.task_done()
            published += 1
        return published

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.drain()
