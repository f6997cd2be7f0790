"""Consumer for the payments transaction stream."""

from typing import Any

import structlog

from src.domains.risk.errors import TransactionValidationError
from src.domains.risk.pipeline import IngestionPipeline
from src.shared.kafka_utils import TRANSACTIONS_TOPIC

from .base import BaseConsumer

logger = structlog.get_logger()


class TransactionConsumer(BaseConsumer):
    """Feeds every transaction message through the ingestion pipeline.

    Messages are either a bare transaction object or an envelope with the
    transaction under ``payload``. The topic is keyed by entity id, so a
    partition delivers an entity's transactions in ingestion order.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        bootstrap_servers: str,
        group_id: str = "risk-engine",
        topic: str = TRANSACTIONS_TOPIC,
        auto_offset_reset: str = "earliest",
        max_in_flight: int = 100,
    ) -> None:
        super().__init__(
            topics=[topic],
            bootstrap_servers=bootstrap_servers,
            group_id=group_id,
            auto_offset_reset=auto_offset_reset,
            max_in_flight=max_in_flight,
        )
        self._pipeline = pipeline

    async def handle(self, event: dict[str, Any]) -> None:
        payload = event.get("payload", event)
        txn_id = payload.get("transaction_id")
        logger.debug(
            "transaction_event_received",
            transaction_id=txn_id,
            event_id=event.get("event_id"),
        )

        try:
            result = await self._pipeline.submit(payload)
        except TransactionValidationError as e:
            # Rejected transactions are logged by the validator; skip the message
            logger.info(
                "transaction_event_rejected",
                transaction_id=txn_id,
                field=e.field,
                error=str(e),
            )
            return

        logger.info(
            "transaction_scored_via_consumer",
            transaction_id=result.transaction_id,
            entity_id=result.entity_id,
            decision=result.decision.value,
            score=result.score,
            degraded=result.degraded,
            replayed=result.replayed,
        )
