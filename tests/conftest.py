"""Shared test fixtures for the risk engine tests."""

import os
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

os.environ.setdefault("KAFKA_ENABLED", "false")
os.environ.setdefault("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("STATE_BACKEND", "memory")

from src.domains.risk.classifier import BackendResponse  # noqa: E402
from src.domains.risk.config import RiskConfig  # noqa: E402
from src.domains.risk.models import Channel, GeoLocation, Transaction  # noqa: E402

NOW = datetime(2026, 1, 15, 14, 0, 0, tzinfo=UTC)


def make_transaction(**kwargs) -> Transaction:
    defaults = {
        "transaction_id": "txn-1",
        "entity_id": "entity-1",
        "amount": 5_000,
        "currency": "USD",
        "timestamp": NOW,
        "channel": Channel.CARD,
    }
    defaults.update(kwargs)
    return Transaction(**defaults)


class StubBackend:
    """Classifier backend returning a fixed score."""

    def __init__(self, score: float, model_version: str = "stub-v1") -> None:
        self.score = score
        self.model_version = model_version
        self.calls = 0

    async def predict(self, features):
        self.calls += 1
        return BackendResponse(score=self.score, confidence=0.9, model_version=self.model_version)


@pytest.fixture
def risk_config() -> RiskConfig:
    return RiskConfig()


@pytest.fixture
def sample_transaction_payload() -> dict:
    return {
        "transaction_id": "770e8400-e29b-41d4-a716-446655440012",
        "entity_id": "880e8400-e29b-41d4-a716-446655440003",
        "amount": 10_000,
        "currency": "USD",
        "timestamp": "2026-01-15T14:00:00+00:00",
        "channel": "card",
        "merchant_category": "5411",
        "geolocation": {
            "latitude": 42.3601,
            "longitude": -71.0589,
            "country": "US",
            "city": "Boston",
        },
        "device_fingerprint": "device_abc123",
    }


@pytest.fixture
def sample_transaction_event(sample_transaction_payload) -> dict:
    return {
        "event_id": "550e8400-e29b-41d4-a716-446655440010",
        "event_type": "transaction-initiated",
        "timestamp": "2026-01-15T14:00:00+00:00",
        "source_service": "payment-processor",
        "payload": sample_transaction_payload,
    }


@pytest.fixture
def foreign_transaction() -> Transaction:
    return make_transaction(
        transaction_id="txn-foreign",
        geolocation=GeoLocation(country="AF", city="Kabul"),
    )


@pytest.fixture
def mock_kafka_producer():
    producer = AsyncMock()
    producer.start = AsyncMock()
    producer.stop = AsyncMock()
    producer.send_and_wait = AsyncMock()
    return producer


@pytest.fixture
def mock_kafka_consumer():
    consumer = AsyncMock()
    consumer.start = AsyncMock()
    consumer.stop = AsyncMock()
    return consumer
