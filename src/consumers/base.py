"""Kafka consumer loop shared by the ingestion consumers.

Each message is handled in its own task, up to ``max_in_flight`` at once,
so a slow entity does not hold up the rest of the partition. Per-entity
ordering is kept by the pipeline's entity lock, which tasks reach in the
order they were dispatched.

Offsets are committed per partition up to the lowest message still in
flight, so a restart redelivers only unfinished work. Redelivered
transactions the state store already holds are not counted or alerted on
a second time.
"""

import asyncio
import json
from typing import Any

import structlog
from aiokafka import AIOKafkaConsumer, TopicPartition
from aiokafka.errors import KafkaError

logger = structlog.get_logger()


def decode_message(raw: bytes | None) -> dict[str, Any] | None:
    """Decode a JSON object payload; anything else is None."""
    if raw is None:
        return None
    try:
        value = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return value if isinstance(value, dict) else None


class BaseConsumer:
    def __init__(
        self,
        topics: list[str],
        bootstrap_servers: str,
        group_id: str,
        auto_offset_reset: str = "earliest",
        max_in_flight: int = 100,
    ):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.topics = topics
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.auto_offset_reset = auto_offset_reset
        self.max_in_flight = max_in_flight
        self.processed = 0
        self.failed = 0
        self._consumer: AIOKafkaConsumer | None = None
        self._running = False
        self._slots = asyncio.Semaphore(max_in_flight)
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: dict[TopicPartition, set[int]] = {}
        self._next_offset: dict[TopicPartition, int] = {}
        self._committed: dict[TopicPartition, int] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        self._consumer = AIOKafkaConsumer(
            *self.topics,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            auto_offset_reset=self.auto_offset_reset,
            enable_auto_commit=False,
        )
        await self._consumer.start()
        self._running = True
        logger.info(
            "consumer_started",
            topics=self.topics,
            group_id=self.group_id,
            max_in_flight=self.max_in_flight,
        )
        try:
            async for msg in self._consumer:
                await self.dispatch(msg)
                await self._commit()
        finally:
            self._running = False
            await self.drain()
            await self._commit()
            await self._consumer.stop()

    async def dispatch(self, msg: Any) -> asyncio.Task:
        """Start handling ``msg`` once a slot is free."""
        await self._slots.acquire()
        tp = TopicPartition(msg.topic, msg.partition)
        self._in_flight.setdefault(tp, set()).add(msg.offset)
        self._next_offset[tp] = max(self._next_offset.get(tp, 0), msg.offset + 1)
        task = asyncio.create_task(self._process_message(msg))
        self._tasks.add(task)
        task.add_done_callback(lambda t, tp=tp, offset=msg.offset: self._finished(t, tp, offset))
        return task

    def _finished(self, task: asyncio.Task, tp: TopicPartition, offset: int) -> None:
        self._tasks.discard(task)
        self._in_flight[tp].discard(offset)
        self._slots.release()

    def committable(self) -> dict[TopicPartition, int]:
        """Next offset to commit per partition: the oldest unfinished message,
        or one past the newest dispatched when nothing is in flight."""
        offsets = {}
        for tp, next_offset in self._next_offset.items():
            pending = self._in_flight.get(tp)
            offsets[tp] = min(pending) if pending else next_offset
        return offsets

    async def _commit(self) -> None:
        offsets = {
            tp: offset
            for tp, offset in self.committable().items()
            if self._committed.get(tp) != offset
        }
        if not offsets or self._consumer is None:
            return
        try:
            await self._consumer.commit(offsets)
        except KafkaError as e:
            # Uncommitted messages are redelivered after a rebalance
            logger.warning("offset_commit_failed", error=str(e))
            return
        self._committed.update(offsets)

    async def drain(self) -> None:
        """Wait for every dispatched message to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process_message(self, msg: Any) -> None:
        event = decode_message(msg.value)
        if event is None:
            self.failed += 1
            logger.warning(
                "message_decode_error", topic=msg.topic, partition=msg.partition, offset=msg.offset
            )
            return
        try:
            await self.handle(event)
        except Exception:
            # A poison message must not stall the partition
            self.failed += 1
            logger.exception(
                "message_processing_error",
                topic=msg.topic,
                partition=msg.partition,
                offset=msg.offset,
            )
            return
        self.processed += 1

    async def handle(self, event: dict[str, Any]) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        self._running = False
        if self._consumer:
            await self.drain()
            await self._commit()
            await self._consumer.stop()
            logger.info(
                "consumer_stopped",
                topics=self.topics,
                processed=self.processed,
                failed=self.failed,
            )
