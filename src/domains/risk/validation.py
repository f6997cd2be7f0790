"""Ingestion-time transaction validation."""

from typing import Any

import structlog
from pydantic import ValidationError

from .config import IngestionLimits
from .errors import TransactionValidationError
from .models import Transaction

logger = structlog.get_logger()


def parse_transaction(raw: dict[str, Any]) -> Transaction:
    """Build a Transaction from an upstream payload.

    Schema violations surface as TransactionValidationError naming the first
    offending field.
    """
    try:
        return Transaction.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise TransactionValidationError(
            f"Invalid transaction: {first.get('msg', str(e))}", field=field
        ) from e


class TransactionValidator:
    """Business checks applied after schema parsing.

    The per-entity timestamp ordering check needs entity state and lives in
    the pipeline.
    """

    def __init__(self, limits: IngestionLimits | None = None) -> None:
        self._limits = limits or IngestionLimits()

    def validate(self, transaction: Transaction) -> None:
        if transaction.timestamp.tzinfo is None or transaction.timestamp.utcoffset() is None:
            self._reject(transaction, "timestamp must be timezone-aware", "timestamp")

        if transaction.currency not in self._limits.allowed_currencies:
            self._reject(
                transaction,
                f"currency {transaction.currency} is not accepted "
                f"(allowed: {', '.join(self._limits.allowed_currencies)})",
                "currency",
            )

        if transaction.amount > self._limits.max_amount:
            self._reject(
                transaction,
                f"amount {transaction.amount} exceeds maximum {self._limits.max_amount}",
                "amount",
            )

    @staticmethod
    def _reject(transaction: Transaction, message: str, field: str) -> None:
        logger.warning(
            "transaction_rejected",
            transaction_id=transaction.transaction_id,
            entity_id=transaction.entity_id,
            field=field,
            reason=message,
        )
        raise TransactionValidationError(message, field=field)
