"""Tests for the ingestion pipeline end to end (in process)."""

import asyncio
from datetime import timedelta

import pytest

from src.domains.risk.cases import CaseManager
from src.domains.risk.classifier import BackendResponse, ClassifierAdapter
from src.domains.risk.config import (
    CaseSettings,
    ClassifierSettings,
    IngestionLimits,
    RiskConfig,
    WindowConfig,
)
from src.domains.risk.errors import StateStoreUnavailableError, TransactionValidationError
from src.domains.risk.events import CaseEventDispatcher, InMemoryCaseEventPublisher
from src.domains.risk.models import (
    CaseEventType,
    Decision,
    GeoLocation,
    RuleDefinition,
    RuleSetDocument,
    RuleType,
)
from src.domains.risk.pipeline import IngestionPipeline
from src.domains.risk.state_store import InMemoryEntityStateStore
from tests.conftest import NOW, StubBackend, make_transaction

SETTINGS = ClassifierSettings(timeout_ms=1_000.0)


class GatedBackend:
    """Blocks the first call until ``gate`` is set."""

    def __init__(self, score: float = 10.0) -> None:
        self.score = score
        self.gate = asyncio.Event()
        self.calls = 0
        self.completed = 0
        self.cancelled = False

    async def predict(self, features):
        self.calls += 1
        if self.calls == 1:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        self.completed += 1
        return BackendResponse(score=self.score)


class UnavailableStore(InMemoryEntityStateStore):
    async def last_timestamp(self, entity_id):
        raise StateStoreUnavailableError("redis connection refused")

    async def record_transaction(self, *args, **kwargs):
        raise StateStoreUnavailableError("redis connection refused")


def _pipeline(backend=None, store=None, config=None, case_manager=None) -> IngestionPipeline:
    config = config or RiskConfig()
    return IngestionPipeline(
        state_store=store or InMemoryEntityStateStore(config.windows),
        classifier=ClassifierAdapter(backend, SETTINGS),
        case_manager=case_manager,
        config=config,
    )


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestDecisions:
    @pytest.mark.asyncio
    async def test_small_purchase_is_allowed(self):
        pipeline = _pipeline(StubBackend(5.0))
        result = await pipeline.evaluate(make_transaction(amount=5_000))

        assert result.decision == Decision.ALLOW
        assert result.score == 5.0
        assert not result.degraded
        assert result.alert_id is None
        assert result.case_id is None
        assert pipeline.case_manager.list_cases() == []

    @pytest.mark.asyncio
    async def test_structuring_pattern_raises_review_case(self):
        pipeline = _pipeline(StubBackend(20.0))
        amounts = [999_900, 995_000, 998_000]
        results = []
        for i, amount in enumerate(amounts):
            results.append(
                await pipeline.evaluate(
                    make_transaction(
                        transaction_id=f"t-{i}",
                        amount=amount,
                        timestamp=NOW + timedelta(hours=3 * i),
                    )
                )
            )

        assert [r.decision for r in results[:2]] == [Decision.ALLOW, Decision.ALLOW]
        final = results[2]
        assert final.decision == Decision.REVIEW
        assert final.score == 85.0
        assert final.suspicion.classifier_score == 20.0
        assert [r.rule_id for r in final.suspicion.triggered_rules] == ["structuring"]
        assert final.case_id is not None

        case = pipeline.case_manager.get_case(final.case_id)
        assert case.transaction_ids == ["t-2"]
        assert case.evidence[0].signals[0].evidence["transaction_ids"] == ["t-0", "t-1", "t-2"]

    @pytest.mark.asyncio
    async def test_structuring_within_one_hour(self):
        pipeline = _pipeline(StubBackend(20.0))
        amounts = [999_900, 995_000, 998_000]
        results = [
            await pipeline.evaluate(
                make_transaction(
                    transaction_id=f"t-{i}",
                    amount=amount,
                    timestamp=NOW + timedelta(minutes=20 * i),
                )
            )
            for i, amount in enumerate(amounts)
        ]

        final = results[2]
        assert final.decision == Decision.REVIEW
        assert final.score == 85.0
        assert [r.rule_id for r in final.suspicion.triggered_rules] == ["structuring"]
        velocity = next(
            r for r in final.suspicion.rule_results if r.rule_id == "velocity_count_1h"
        )
        assert not velocity.triggered
        case = pipeline.case_manager.get_case(final.case_id)
        assert case.evidence[0].signals[0].evidence["transaction_ids"] == ["t-0", "t-1", "t-2"]

    @pytest.mark.asyncio
    async def test_sanctioned_country_blocks(self):
        pipeline = _pipeline(StubBackend(10.0))
        result = await pipeline.evaluate(
            make_transaction(geolocation=GeoLocation(country="KP"))
        )
        assert result.decision == Decision.BLOCK
        assert result.score == 100.0

    @pytest.mark.asyncio
    async def test_submit_parses_payload(self, sample_transaction_payload):
        pipeline = _pipeline(StubBackend(5.0))
        result = await pipeline.submit(sample_transaction_payload)
        assert result.transaction_id == sample_transaction_payload["transaction_id"]
        assert result.decision == Decision.ALLOW

    @pytest.mark.asyncio
    async def test_result_carries_rule_set_version(self):
        pipeline = _pipeline(StubBackend(5.0))
        first = await pipeline.evaluate(make_transaction(transaction_id="t-1"))
        pipeline.rule_sets.reload(
            RuleSetDocument(
                version="v2",
                rules=[
                    RuleDefinition(
                        rule_id="any_spend",
                        type=RuleType.VELOCITY,
                        parameters={"window": "1h", "threshold": 0},
                    )
                ],
            )
        )
        second = await pipeline.evaluate(
            make_transaction(transaction_id="t-2", timestamp=NOW + timedelta(minutes=1))
        )

        assert first.rule_set_version == "default-v1"
        assert second.rule_set_version == "v2"
        assert second.suspicion.metadata["rule_set_version"] == "v2"
        assert [r.rule_id for r in second.suspicion.rule_results] == ["any_spend"]


class TestIngestionGuards:
    @pytest.mark.asyncio
    async def test_replay_returns_cached_result(self):
        pipeline = _pipeline(StubBackend(5.0))
        txn = make_transaction()

        first = await pipeline.evaluate(txn)
        replay = await pipeline.evaluate(txn)

        assert replay.replayed
        assert not first.replayed
        assert replay.evaluation_id == first.evaluation_id
        snapshot = await pipeline.state_store.get_windows("entity-1", NOW)
        assert snapshot.window("1h").count == 1

    @pytest.mark.asyncio
    async def test_replay_after_cache_eviction_leaves_case_unchanged(self):
        config = RiskConfig(ingestion=IngestionLimits(idempotency_cache_size=1))
        pipeline = _pipeline(StubBackend(10.0), config=config)
        sanctioned = make_transaction(transaction_id="t1", geolocation=GeoLocation(country="KP"))

        first = await pipeline.evaluate(sanctioned)
        await pipeline.evaluate(make_transaction(transaction_id="t-other", entity_id="other"))
        await pipeline.evaluate(
            make_transaction(transaction_id="t2", timestamp=NOW + timedelta(minutes=1))
        )
        replay = await pipeline.evaluate(sanctioned)

        assert first.decision == Decision.BLOCK
        assert replay.replayed
        assert replay.alert_id == first.alert_id
        assert replay.case_id == first.case_id
        case = pipeline.case_manager.get_case(first.case_id)
        assert case.transaction_ids == ["t1"]
        assert case.alert_ids == [first.alert_id]
        assert len(pipeline.case_manager.list_cases()) == 1
        snapshot = await pipeline.state_store.get_windows("entity-1", NOW + timedelta(minutes=1))
        assert snapshot.window("1h").count == 2

    @pytest.mark.asyncio
    async def test_earlier_timestamp_rejected_and_not_counted(self):
        pipeline = _pipeline(StubBackend(5.0))
        await pipeline.evaluate(make_transaction(transaction_id="t-1"))

        with pytest.raises(TransactionValidationError) as exc_info:
            await pipeline.evaluate(
                make_transaction(transaction_id="t-0", timestamp=NOW - timedelta(seconds=1))
            )

        assert exc_info.value.field == "timestamp"
        snapshot = await pipeline.state_store.get_windows("entity-1", NOW)
        assert snapshot.window("1h").count == 1

    @pytest.mark.asyncio
    async def test_equal_timestamp_accepted(self):
        pipeline = _pipeline(StubBackend(5.0))
        await pipeline.evaluate(make_transaction(transaction_id="t-1"))
        result = await pipeline.evaluate(make_transaction(transaction_id="t-2"))
        assert result.decision == Decision.ALLOW

    @pytest.mark.asyncio
    async def test_other_entity_unaffected_by_ordering(self):
        pipeline = _pipeline(StubBackend(5.0))
        await pipeline.evaluate(make_transaction(transaction_id="t-1", entity_id="a"))
        result = await pipeline.evaluate(
            make_transaction(
                transaction_id="t-2", entity_id="b", timestamp=NOW - timedelta(hours=1)
            )
        )
        assert result.entity_id == "b"

    @pytest.mark.asyncio
    async def test_invalid_currency_touches_no_state(self):
        pipeline = _pipeline(StubBackend(5.0))
        with pytest.raises(TransactionValidationError):
            await pipeline.evaluate(make_transaction(currency="XYZ"))
        assert await pipeline.state_store.last_timestamp("entity-1") is None


class TestDegradedMode:
    @pytest.mark.asyncio
    async def test_state_store_outage_uses_classifier_only(self):
        pipeline = _pipeline(StubBackend(95.0), store=UnavailableStore())
        result = await pipeline.evaluate(make_transaction(amount=500_000))

        assert result.degraded
        assert result.decision == Decision.BLOCK
        assert result.suspicion.rule_results == []
        assert result.suspicion.metadata["state_degraded"] is True

    @pytest.mark.asyncio
    async def test_state_store_outage_still_decides(self):
        pipeline = _pipeline(StubBackend(5.0), store=UnavailableStore())
        result = await pipeline.evaluate(make_transaction())
        assert result.decision == Decision.ALLOW
        assert result.degraded

    @pytest.mark.asyncio
    async def test_missing_classifier_is_rules_only(self):
        pipeline = _pipeline(None)
        result = await pipeline.evaluate(
            make_transaction(geolocation=GeoLocation(country="KP"))
        )
        assert result.degraded
        assert result.decision == Decision.BLOCK
        assert result.suspicion.classifier_score is None
        assert result.suspicion.metadata["blend_strategy"] == "rules_only"

    @pytest.mark.asyncio
    async def test_degraded_flag_reaches_alert(self):
        pipeline = _pipeline(None)
        result = await pipeline.evaluate(
            make_transaction(geolocation=GeoLocation(country="KP"))
        )
        alert = pipeline.case_manager.get_alert(result.alert_id)
        assert alert.degraded


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_entity_processed_in_arrival_order(self):
        pipeline = _pipeline(StubBackend(5.0))
        txns = [
            make_transaction(transaction_id=f"t-{i}", timestamp=NOW + timedelta(seconds=i))
            for i in range(20)
        ]

        results = await asyncio.gather(*(pipeline.evaluate(t) for t in txns))

        velocity = [
            next(r for r in res.suspicion.rule_results if r.rule_id == "velocity_count_1h")
            for res in results
        ]
        # Default 1h threshold is 10: the eleventh transaction onwards triggers
        assert [v.triggered for v in velocity] == [False] * 10 + [True] * 10
        assert [v.evidence["value"] for v in velocity[10:]] == list(range(11, 21))
        snapshot = await pipeline.state_store.get_windows("entity-1", NOW + timedelta(seconds=19))
        assert snapshot.window("1h").count == 20

    @pytest.mark.asyncio
    async def test_entities_do_not_block_each_other(self):
        backend = GatedBackend()
        pipeline = _pipeline(backend)

        slow = asyncio.create_task(
            pipeline.evaluate(make_transaction(transaction_id="t-a", entity_id="a"))
        )
        await _wait_for(lambda: backend.calls == 1)

        fast = await pipeline.evaluate(make_transaction(transaction_id="t-b", entity_id="b"))
        assert fast.decision == Decision.ALLOW
        assert not slow.done()

        backend.gate.set()
        slow_result = await slow
        assert slow_result.entity_id == "a"

    @pytest.mark.asyncio
    async def test_cancel_discards_late_classifier_result(self):
        backend = GatedBackend(score=99.0)
        pipeline = _pipeline(backend)

        task = asyncio.create_task(pipeline.evaluate(make_transaction()))
        await _wait_for(lambda: backend.calls == 1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        backend.gate.set()
        await _wait_for(lambda: backend.completed == 1)

        assert not backend.cancelled
        # The late 99 never produced an alert
        assert pipeline.case_manager.list_cases() == []


class TestCaseEventsFromPipeline:
    @pytest.mark.asyncio
    async def test_case_event_emitted(self):
        publisher = InMemoryCaseEventPublisher()
        dispatcher = CaseEventDispatcher(publisher)
        config = RiskConfig()
        pipeline = _pipeline(
            StubBackend(75.0),
            config=config,
            case_manager=CaseManager(config.cases, dispatcher),
        )

        result = await pipeline.evaluate(make_transaction())
        await dispatcher.drain()

        assert result.decision == Decision.REVIEW
        assert [e.event_type for e in publisher.events] == [CaseEventType.CREATED]
        assert publisher.events[0].case.case_id == result.case_id


class TestConfiguration:
    def test_classifier_needs_feature_windows(self):
        config = RiskConfig(windows=WindowConfig(durations={"1h": 3_600, "24h": 86_400}))
        with pytest.raises(ValueError, match="missing: 7d"):
            _pipeline(StubBackend(5.0), config=config)

    def test_rules_only_pipeline_accepts_fewer_windows(self):
        config = RiskConfig(windows=WindowConfig(durations={"1h": 3_600, "24h": 86_400}))
        assert _pipeline(None, config=config).rule_sets.current.version == "default-v1"


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_closed_cases_evicted_by_maintenance(self):
        config = RiskConfig(cases=CaseSettings(closed_retention_seconds=60))
        pipeline = _pipeline(StubBackend(10.0), config=config)
        result = await pipeline.evaluate(
            make_transaction(geolocation=GeoLocation(country="KP"))
        )
        pipeline.case_manager.close(result.case_id, "analyst-1", NOW)

        task = asyncio.create_task(pipeline.run_maintenance(interval_seconds=0.001))
        try:
            await _wait_for(lambda: pipeline.case_manager.list_cases() == [])
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
