"""Alert creation, case correlation, and case lifecycle.

State machine per case::

    OPEN -> ACKNOWLEDGED -> ESCALATED -> CLOSED
    OPEN -> CLOSED
    ACKNOWLEDGED -> CLOSED

CLOSED is terminal. Every transition appends a ``CaseAuditEvent``; nothing in
the audit trail or evidence list is ever rewritten. The only transition the
engine makes on its own is the optional OPEN -> CLOSED auto-dismissal of
cases that saw no new alert within the configured TTL.

Alerts for an entity whose OPEN/ACKNOWLEDGED case received its last alert
within the correlation window (inclusive) are merged into that case.
"""

import uuid
from datetime import datetime, timedelta

import structlog

from .config import CaseSettings
from .errors import CaseNotFoundError, InvalidCaseTransitionError
from .events import CaseEventDispatcher, build_case_event
from .models import (
    Alert,
    AlertOutcome,
    Case,
    CaseAuditEvent,
    CaseEventType,
    CaseEvidence,
    CaseStatus,
    Decision,
    OutcomeAction,
    SuspicionScore,
    Transaction,
)

logger = structlog.get_logger()

SYSTEM_ACTOR = "system:risk-engine"
AUTO_DISMISS_ACTOR = "system:auto-dismiss"

ALLOWED_TRANSITIONS: dict[CaseStatus, frozenset[CaseStatus]] = {
    CaseStatus.OPEN: frozenset({CaseStatus.ACKNOWLEDGED, CaseStatus.CLOSED}),
    CaseStatus.ACKNOWLEDGED: frozenset({CaseStatus.ESCALATED, CaseStatus.CLOSED}),
    CaseStatus.ESCALATED: frozenset({CaseStatus.CLOSED}),
    CaseStatus.CLOSED: frozenset(),
}

MERGEABLE_STATUSES = (CaseStatus.OPEN, CaseStatus.ACKNOWLEDGED)


class CaseManager:
    """In-memory alert and case registry."""

    def __init__(
        self,
        settings: CaseSettings | None = None,
        dispatcher: CaseEventDispatcher | None = None,
    ) -> None:
        self._settings = settings or CaseSettings()
        self._dispatcher = dispatcher
        self._cases: dict[str, Case] = {}
        self._alerts: dict[str, Alert] = {}
        self._entity_cases: dict[str, list[str]] = {}
        self._alert_by_transaction: dict[str, str] = {}

    @property
    def correlation_window(self) -> timedelta:
        return timedelta(seconds=self._settings.correlation_window_seconds)

    # ------------------------------------------------------------------
    # Alert intake
    # ------------------------------------------------------------------

    def submit(
        self,
        suspicion: SuspicionScore,
        transaction: Transaction,
        now: datetime | None = None,
    ) -> AlertOutcome:
        """Create an alert for REVIEW/BLOCK decisions and attach it to a case."""
        if suspicion.decision == Decision.ALLOW:
            return AlertOutcome()

        existing_id = self._alert_by_transaction.get(transaction.transaction_id)
        if existing_id is not None:
            existing = self._alerts[existing_id]
            logger.info(
                "duplicate_alert_suppressed",
                alert_id=existing_id,
                case_id=existing.case_id,
                transaction_id=transaction.transaction_id,
            )
            return AlertOutcome(
                alert=existing.model_copy(deep=True),
                case=self._cases[existing.case_id].model_copy(deep=True),
                deny=suspicion.decision == Decision.BLOCK,
            )

        now = now or transaction.timestamp
        alert = Alert(
            alert_id=str(uuid.uuid4()),
            transaction_id=transaction.transaction_id,
            entity_id=transaction.entity_id,
            score=suspicion.value,
            decision=suspicion.decision,
            triggering_signals=suspicion.triggered_rules,
            classifier_score=suspicion.classifier_score,
            degraded=suspicion.degraded,
            created_at=now,
        )
        evidence = CaseEvidence(
            alert_id=alert.alert_id,
            transaction_id=alert.transaction_id,
            score=alert.score,
            decision=alert.decision,
            signals=alert.triggering_signals,
            classifier_score=alert.classifier_score,
            degraded=alert.degraded,
            added_at=now,
        )

        case = self._correlated_case(transaction.entity_id, now)
        if case is not None:
            case.alert_ids.append(alert.alert_id)
            case.transaction_ids.append(alert.transaction_id)
            case.evidence.append(evidence)
            case.score = max(case.score, alert.score)
            case.last_alert_at = max(case.last_alert_at, now)
            case.audit_trail.append(
                CaseAuditEvent(
                    event_type="alert_attached",
                    actor=SYSTEM_ACTOR,
                    at=now,
                    note=f"alert {alert.alert_id} for transaction {alert.transaction_id}",
                )
            )
            action = OutcomeAction.CASE_UPDATED
            event_type = CaseEventType.UPDATED
        else:
            case = Case(
                case_id=str(uuid.uuid4()),
                entity_id=transaction.entity_id,
                score=alert.score,
                alert_ids=[alert.alert_id],
                transaction_ids=[alert.transaction_id],
                evidence=[evidence],
                opened_at=now,
                last_alert_at=now,
                audit_trail=[
                    CaseAuditEvent(
                        event_type="case_opened",
                        actor=SYSTEM_ACTOR,
                        at=now,
                        to_status=CaseStatus.OPEN,
                        note=f"opened by alert {alert.alert_id}",
                    )
                ],
            )
            self._cases[case.case_id] = case
            self._entity_cases.setdefault(case.entity_id, []).append(case.case_id)
            action = OutcomeAction.CASE_OPENED
            event_type = CaseEventType.CREATED

        alert.case_id = case.case_id
        alert.status = case.status
        self._alerts[alert.alert_id] = alert
        self._alert_by_transaction[alert.transaction_id] = alert.alert_id
        self._emit(event_type, case)

        logger.warning(
            "risk_alert_created",
            alert_id=alert.alert_id,
            case_id=case.case_id,
            entity_id=alert.entity_id,
            transaction_id=alert.transaction_id,
            score=alert.score,
            decision=alert.decision.value,
            action=action.value,
            case_score=case.score,
            degraded=alert.degraded,
        )

        return AlertOutcome(
            action=action,
            alert=alert.model_copy(deep=True),
            case=case.model_copy(deep=True),
            deny=suspicion.decision == Decision.BLOCK,
        )

    def _correlated_case(self, entity_id: str, now: datetime) -> Case | None:
        window = self.correlation_window
        for case_id in reversed(self._entity_cases.get(entity_id, [])):
            case = self._cases[case_id]
            if case.status not in MERGEABLE_STATUSES:
                continue
            if now - case.last_alert_at <= window:
                return case
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def transition(
        self,
        case_id: str,
        to_status: CaseStatus,
        actor: str,
        now: datetime,
        note: str = "",
    ) -> Case:
        case = self._get(case_id)
        if not actor:
            raise InvalidCaseTransitionError("an actor is required for case transitions")
        if to_status not in ALLOWED_TRANSITIONS[case.status]:
            raise InvalidCaseTransitionError(
                f"Case {case_id} cannot move from {case.status.value} to {to_status.value}"
            )

        from_status = case.status
        case.status = to_status
        if to_status == CaseStatus.CLOSED:
            case.closed_at = now
        case.audit_trail.append(
            CaseAuditEvent(
                event_type="status_changed",
                actor=actor,
                at=now,
                from_status=from_status,
                to_status=to_status,
                note=note,
            )
        )
        for alert_id in case.alert_ids:
            self._alerts[alert_id].status = to_status

        self._emit(
            CaseEventType.CLOSED if to_status == CaseStatus.CLOSED else CaseEventType.UPDATED,
            case,
        )
        logger.info(
            "case_transitioned",
            case_id=case_id,
            entity_id=case.entity_id,
            from_status=from_status.value,
            to_status=to_status.value,
            actor=actor,
        )
        return case.model_copy(deep=True)

    def acknowledge(self, case_id: str, actor: str, now: datetime, note: str = "") -> Case:
        return self.transition(case_id, CaseStatus.ACKNOWLEDGED, actor, now, note)

    def escalate(self, case_id: str, actor: str, now: datetime, note: str = "") -> Case:
        return self.transition(case_id, CaseStatus.ESCALATED, actor, now, note)

    def close(self, case_id: str, actor: str, now: datetime, note: str = "") -> Case:
        return self.transition(case_id, CaseStatus.CLOSED, actor, now, note)

    def auto_dismiss_stale(self, now: datetime) -> list[str]:
        """Close OPEN cases with no new alert within the auto-dismiss TTL."""
        ttl_seconds = self._settings.auto_dismiss_ttl_seconds
        if ttl_seconds is None:
            return []
        ttl = timedelta(seconds=ttl_seconds)
        stale = [
            case.case_id
            for case in self._cases.values()
            if case.status == CaseStatus.OPEN and now - case.last_alert_at > ttl
        ]
        for case_id in stale:
            self.transition(
                case_id,
                CaseStatus.CLOSED,
                AUTO_DISMISS_ACTOR,
                now,
                note=f"no further signals within {ttl_seconds:.0f}s",
            )
        if stale:
            logger.info("cases_auto_dismissed", count=len(stale))
        return stale

    def evict_closed(self, now: datetime) -> list[str]:
        """Drop CLOSED cases, and their alerts, closed longer ago than the retention."""
        retention = timedelta(seconds=self._settings.closed_retention_seconds)
        expired = [
            case
            for case in self._cases.values()
            if case.status == CaseStatus.CLOSED
            and case.closed_at is not None
            and now - case.closed_at > retention
        ]
        for case in expired:
            del self._cases[case.case_id]
            for alert_id in case.alert_ids:
                alert = self._alerts.pop(alert_id, None)
                if alert is not None and self._alert_by_transaction.get(alert.transaction_id) == alert_id:
                    del self._alert_by_transaction[alert.transaction_id]
            entity_cases = self._entity_cases.get(case.entity_id, [])
            if case.case_id in entity_cases:
                entity_cases.remove(case.case_id)
            if not entity_cases:
                self._entity_cases.pop(case.entity_id, None)
        if expired:
            logger.info("closed_cases_evicted", count=len(expired))
        return [case.case_id for case in expired]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get(self, case_id: str) -> Case:
        case = self._cases.get(case_id)
        if case is None:
            raise CaseNotFoundError(f"Case {case_id} not found")
        return case

    def get_case(self, case_id: str) -> Case:
        return self._get(case_id).model_copy(deep=True)

    def get_alert(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise CaseNotFoundError(f"Alert {alert_id} not found")
        return alert.model_copy(deep=True)

    def alert_for_transaction(self, transaction_id: str) -> Alert | None:
        alert_id = self._alert_by_transaction.get(transaction_id)
        if alert_id is None:
            return None
        return self._alerts[alert_id].model_copy(deep=True)

    def list_cases(
        self,
        entity_id: str | None = None,
        status: CaseStatus | None = None,
    ) -> list[Case]:
        if entity_id is not None:
            cases = [self._cases[cid] for cid in self._entity_cases.get(entity_id, [])]
        else:
            cases = list(self._cases.values())
        if status is not None:
            cases = [c for c in cases if c.status == status]
        return [c.model_copy(deep=True) for c in cases]

    def _emit(self, event_type: CaseEventType, case: Case) -> None:
        if self._dispatcher is not None:
            self._dispatcher.emit(build_case_event(event_type, case))
