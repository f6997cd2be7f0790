"""Kafka producer helpers."""

import structlog
from aiokafka import AIOKafkaProducer

logger = structlog.get_logger()

TRANSACTIONS_TOPIC = "payments.transactions"
CASE_EVENTS_TOPIC = "risk.case.events"


async def create_producer(bootstrap_servers: str) -> AIOKafkaProducer:
    """Create and start a Kafka producer.

    Values and keys are sent as bytes; callers serialize.
    """
    producer = AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        acks="all",
        enable_idempotence=True,
    )
    await producer.start()
    logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers)
    return producer
