"""Tests for transaction parsing and ingestion validation."""

from datetime import datetime

import pytest

from src.domains.risk.config import IngestionLimits
from src.domains.risk.errors import TransactionValidationError
from src.domains.risk.models import Channel
from src.domains.risk.validation import TransactionValidator, parse_transaction
from tests.conftest import make_transaction


class TestParseTransaction:
    def test_valid_payload(self, sample_transaction_payload):
        txn = parse_transaction(sample_transaction_payload)
        assert txn.amount == 10_000
        assert txn.channel == Channel.CARD
        assert txn.country == "US"
        assert txn.timestamp.tzinfo is not None

    def test_missing_field_names_it(self, sample_transaction_payload):
        del sample_transaction_payload["entity_id"]
        with pytest.raises(TransactionValidationError) as exc_info:
            parse_transaction(sample_transaction_payload)
        assert exc_info.value.field == "entity_id"

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount(self, sample_transaction_payload, amount):
        sample_transaction_payload["amount"] = amount
        with pytest.raises(TransactionValidationError) as exc_info:
            parse_transaction(sample_transaction_payload)
        assert exc_info.value.field == "amount"

    def test_unknown_channel(self, sample_transaction_payload):
        sample_transaction_payload["channel"] = "carrier_pigeon"
        with pytest.raises(TransactionValidationError) as exc_info:
            parse_transaction(sample_transaction_payload)
        assert exc_info.value.field == "channel"

    def test_lowercase_currency_normalized(self, sample_transaction_payload):
        sample_transaction_payload["currency"] = "eur"
        assert parse_transaction(sample_transaction_payload).currency == "EUR"

    def test_validation_error_is_value_error(self, sample_transaction_payload):
        sample_transaction_payload["timestamp"] = "not-a-date"
        with pytest.raises(ValueError):
            parse_transaction(sample_transaction_payload)


class TestTransactionValidator:
    def test_accepts_valid(self):
        TransactionValidator().validate(make_transaction())

    def test_rejects_naive_timestamp(self):
        txn = make_transaction(timestamp=datetime(2026, 1, 15, 14, 0, 0))
        with pytest.raises(TransactionValidationError) as exc_info:
            TransactionValidator().validate(txn)
        assert exc_info.value.field == "timestamp"

    def test_rejects_unsupported_currency(self):
        with pytest.raises(TransactionValidationError) as exc_info:
            TransactionValidator().validate(make_transaction(currency="JPY"))
        assert exc_info.value.field == "currency"

    def test_rejects_amount_over_limit(self):
        with pytest.raises(TransactionValidationError) as exc_info:
            TransactionValidator().validate(make_transaction(amount=100_000_001))
        assert exc_info.value.field == "amount"

    def test_amount_at_limit_accepted(self):
        TransactionValidator().validate(make_transaction(amount=100_000_000))

    def test_custom_limits(self):
        validator = TransactionValidator(
            IngestionLimits(allowed_currencies=("JPY",), max_amount=1_000)
        )
        validator.validate(make_transaction(currency="JPY", amount=1_000))
        with pytest.raises(TransactionValidationError):
            validator.validate(make_transaction(currency="USD", amount=1_000))
