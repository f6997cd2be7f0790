"""Ingestion pipeline: validate -> state -> rules || classifier -> aggregate -> cases."""

import asyncio
import contextlib
import uuid
from collections import OrderedDict
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import structlog

from .aggregator import SignalAggregator
from .cases import CaseManager
from .classifier import ClassifierAdapter
from .config import RiskConfig, default_config
from .errors import StateStoreUnavailableError, TransactionValidationError
from .locks import KeyedLock
from .models import (
    AlertOutcome,
    ClassifierResult,
    EvaluationResult,
    RuleResult,
    Transaction,
    WindowSnapshot,
)
from .rule_engine import RuleEngine
from .ruleset import RuleSet, RuleSetHolder
from .state_store import EntityStateStore, InMemoryEntityStateStore
from .validation import TransactionValidator, parse_transaction

logger = structlog.get_logger()


class IngestionPipeline:
    """Orchestrates the evaluation of one transaction.

    Transactions for the same entity are serialized (FIFO) so window
    updates are never lost and rules see events in arrival order.
    Different entities run in parallel.
    """

    def __init__(
        self,
        state_store: EntityStateStore | None = None,
        rule_sets: RuleSetHolder | None = None,
        classifier: ClassifierAdapter | None = None,
        case_manager: CaseManager | None = None,
        config: RiskConfig | None = None,
    ) -> None:
        self._config = config or default_config
        self._store = state_store or InMemoryEntityStateStore(self._config.windows)
        self._rule_sets = rule_sets or RuleSetHolder.from_config(self._config)
        self._classifier = classifier or ClassifierAdapter(None, self._config.classifier)
        self._classifier.check_windows(self._config.windows.durations)
        self._cases = case_manager or CaseManager(self._config.cases)
        self._rule_engine = RuleEngine()
        self._aggregator = SignalAggregator(self._config.aggregation)
        self._validator = TransactionValidator(self._config.ingestion)
        self._locks = KeyedLock()
        self._results: OrderedDict[str, EvaluationResult] = OrderedDict()
        self._cache_size = self._config.ingestion.idempotency_cache_size

    @property
    def rule_sets(self) -> RuleSetHolder:
        return self._rule_sets

    @property
    def case_manager(self) -> CaseManager:
        return self._cases

    @property
    def state_store(self) -> EntityStateStore:
        return self._store

    async def submit(self, raw: dict[str, Any]) -> EvaluationResult:
        """Parse an upstream payload and evaluate it."""
        return await self.evaluate(parse_transaction(raw))

    async def evaluate(self, transaction: Transaction) -> EvaluationResult:
        self._validator.validate(transaction)

        if cached := self._cached(transaction.transaction_id):
            return cached

        async with self._locks.hold(transaction.entity_id):
            # A concurrent duplicate may have finished while we waited
            if cached := self._cached(transaction.transaction_id):
                return cached
            result = await self._evaluate_locked(transaction)

        self._remember(result)
        return result

    async def _evaluate_locked(self, transaction: Transaction) -> EvaluationResult:
        now = transaction.timestamp
        rule_set = self._rule_sets.current
        snapshot, state_degraded = await self._snapshot_or_degraded(transaction)

        classifier_task = asyncio.ensure_future(self._classifier.score(transaction, snapshot))
        try:
            rule_results, classifier_result = await asyncio.gather(
                self._evaluate_rules(transaction, snapshot, rule_set, now, state_degraded),
                asyncio.shield(classifier_task),
            )
        except asyncio.CancelledError:
            if not classifier_task.done():
                classifier_task.add_done_callback(
                    lambda t, tid=transaction.transaction_id: _discard_late_result(t, tid)
                )
            logger.info(
                "evaluation_cancelled",
                transaction_id=transaction.transaction_id,
                entity_id=transaction.entity_id,
            )
            raise

        suspicion = self._aggregator.aggregate(
            rule_results,
            classifier_result,
            weights=RuleEngine.weights(rule_set),
            degraded=state_degraded,
        )
        suspicion.metadata["rule_set_version"] = rule_set.version
        suspicion.metadata["state_degraded"] = state_degraded

        if snapshot.duplicate:
            # Already counted once; keep the case evidence as it is
            logger.info(
                "transaction_already_recorded",
                transaction_id=transaction.transaction_id,
                entity_id=transaction.entity_id,
            )
            alert = self._cases.alert_for_transaction(transaction.transaction_id)
            outcome = AlertOutcome(
                alert=alert,
                case=self._cases.get_case(alert.case_id) if alert and alert.case_id else None,
            )
        else:
            outcome = self._cases.submit(suspicion, transaction, now=now)

        result = EvaluationResult(
            evaluation_id=str(uuid.uuid4()),
            transaction_id=transaction.transaction_id,
            entity_id=transaction.entity_id,
            decision=suspicion.decision,
            score=suspicion.value,
            degraded=suspicion.degraded,
            suspicion=suspicion,
            alert_id=outcome.alert.alert_id if outcome.alert else None,
            case_id=outcome.case.case_id if outcome.case else None,
            rule_set_version=rule_set.version,
            evaluated_at=datetime.now(UTC),
            replayed=snapshot.duplicate,
        )

        logger.info(
            "transaction_evaluated",
            evaluation_id=result.evaluation_id,
            transaction_id=transaction.transaction_id,
            entity_id=transaction.entity_id,
            decision=result.decision.value,
            score=result.score,
            rule_score=suspicion.rule_score,
            classifier_score=suspicion.classifier_score,
            degraded=result.degraded,
            rule_set_version=rule_set.version,
            case_action=outcome.action.value,
        )
        return result

    async def _record(self, transaction: Transaction) -> WindowSnapshot:
        """Update entity state.

        A transaction the store already holds is not recorded again; its
        snapshot comes back with ``duplicate`` set. Raises
        StateStoreUnavailableError when the store cannot be reached.
        """
        entity_id = transaction.entity_id
        last = await self._store.last_timestamp(entity_id)
        if await self._store.contains(entity_id, transaction.transaction_id):
            now = max(transaction.timestamp, last) if last is not None else transaction.timestamp
            snapshot = await self._store.get_windows(entity_id, now)
            return replace(snapshot, duplicate=True)
        if last is not None and transaction.timestamp < last:
            logger.warning(
                "transaction_rejected",
                transaction_id=transaction.transaction_id,
                entity_id=entity_id,
                field="timestamp",
                reason="non_monotonic_timestamp",
                last_timestamp=last.isoformat(),
            )
            raise TransactionValidationError(
                f"timestamp {transaction.timestamp.isoformat()} is earlier than the last "
                f"accepted transaction for entity {entity_id} ({last.isoformat()})",
                field="timestamp",
            )
        return await self._store.record_transaction(
            entity_id=entity_id,
            transaction_id=transaction.transaction_id,
            amount=transaction.amount,
            timestamp=transaction.timestamp,
            merchant_category=transaction.merchant_category,
        )

    async def _snapshot_or_degraded(self, transaction: Transaction) -> tuple[WindowSnapshot, bool]:
        """Returns (snapshot, degraded)."""
        try:
            return await self._record(transaction), False
        except StateStoreUnavailableError as e:
            logger.warning(
                "state_store_degraded",
                transaction_id=transaction.transaction_id,
                entity_id=transaction.entity_id,
                error=str(e),
            )
            return WindowSnapshot.empty(transaction.entity_id, transaction.timestamp), True

    async def _evaluate_rules(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        rule_set: RuleSet,
        now: datetime,
        state_degraded: bool,
    ) -> list[RuleResult]:
        # Without window state the rules fail open; the classifier decides
        if state_degraded:
            return []
        return self._rule_engine.evaluate(transaction, snapshot, rule_set, now)

    def _cached(self, transaction_id: str) -> EvaluationResult | None:
        result = self._results.get(transaction_id)
        if result is None:
            return None
        self._results.move_to_end(transaction_id)
        logger.info("transaction_replay_detected", transaction_id=transaction_id)
        return result.model_copy(update={"replayed": True})

    def _remember(self, result: EvaluationResult) -> None:
        self._results[result.transaction_id] = result
        while len(self._results) > self._cache_size:
            self._results.popitem(last=False)

    async def run_maintenance(self, interval_seconds: float | None = None) -> None:
        """Periodic state sweep, case auto-dismissal and closed-case eviction."""
        interval = interval_seconds or self._config.windows.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            now = datetime.now(UTC)
            try:
                evicted = await self._store.sweep(now)
                dismissed = self._cases.auto_dismiss_stale(now)
                retired = self._cases.evict_closed(now)
                logger.debug(
                    "maintenance_completed",
                    evicted=evicted,
                    dismissed=len(dismissed),
                    retired_cases=len(retired),
                )
            except StateStoreUnavailableError:
                logger.warning("maintenance_sweep_skipped", reason="state_store_unavailable")


def _discard_late_result(task: asyncio.Task, transaction_id: str) -> None:
    if task.cancelled():
        return
    with contextlib.suppress(Exception):
        result: ClassifierResult = task.result()
        logger.info(
            "classifier_result_discarded",
            transaction_id=transaction_id,
            available=result.available,
            latency_ms=result.latency_ms,
        )
