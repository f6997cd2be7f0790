"""Pydantic models for the risk domain.

Window state types are plain frozen dataclasses: they are built on every
transaction and never leave the process.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Channel(StrEnum):
    CARD = "card"
    ACH = "ach"
    WALLET = "wallet"
    CRYPTO = "crypto"


class RuleType(StrEnum):
    VELOCITY = "velocity"
    STRUCTURING = "structuring"
    ROUND_AMOUNT = "round_amount"
    GEOGRAPHIC_RISK = "geographic_risk"
    HIGH_RISK_COUNTRY = "high_risk_country"
    CUSTOM = "custom"


class Decision(StrEnum):
    ALLOW = "allow"
    REVIEW = "review"
    BLOCK = "block"


class CaseStatus(StrEnum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    CLOSED = "closed"


# Alerts share the case lifecycle
AlertStatus = CaseStatus


class OutcomeAction(StrEnum):
    NONE = "none"
    CASE_OPENED = "case_opened"
    CASE_UPDATED = "case_updated"


class CaseEventType(StrEnum):
    CREATED = "case_created"
    UPDATED = "case_updated"
    CLOSED = "case_closed"


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class GeoLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    country: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @field_validator("country")
    @classmethod
    def _upper_country(cls, v: str | None) -> str | None:
        return v.strip().upper() if v else None


class Transaction(BaseModel):
    """A payment event as submitted by an upstream processor or ledger.

    Amounts are integer minor units. Instances are immutable.
    """

    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    timestamp: datetime
    channel: Channel
    merchant_category: str | None = None
    geolocation: GeoLocation | None = None
    device_fingerprint: str | None = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def country(self) -> str | None:
        return self.geolocation.country if self.geolocation else None


# ---------------------------------------------------------------------------
# Entity window state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class WindowEntry:
    transaction_id: str
    timestamp: datetime
    amount: int
    merchant_category: str | None = None


@dataclass(frozen=True)
class WindowCounters:
    window: str
    duration_seconds: int
    count: int = 0
    total_amount: int = 0
    distinct_merchants: int = 0
    entries: tuple[WindowEntry, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "window": self.window,
            "duration_seconds": self.duration_seconds,
            "count": self.count,
            "total_amount": self.total_amount,
            "distinct_merchants": self.distinct_merchants,
        }


@dataclass(frozen=True)
class WindowSnapshot:
    """Point-in-time view of every window for one entity."""

    entity_id: str
    as_of: datetime
    windows: dict[str, WindowCounters] = field(default_factory=dict)
    # Set on the snapshot returned by a recording call that found the
    # transaction already held
    duplicate: bool = False

    def window(self, name: str) -> WindowCounters:
        counters = self.windows.get(name)
        if counters is None:
            return WindowCounters(window=name, duration_seconds=0)
        return counters

    def to_dict(self) -> dict[str, Any]:
        return {name: c.to_dict() for name, c in self.windows.items()}

    @classmethod
    def empty(cls, entity_id: str, as_of: datetime) -> "WindowSnapshot":
        return cls(entity_id=entity_id, as_of=as_of, windows={})


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class RuleDefinition(BaseModel):
    """One configured rule as supplied by the config-management collaborator."""

    rule_id: str = Field(min_length=1)
    type: RuleType
    parameters: dict[str, Any] = Field(default_factory=dict)
    weight: float = Field(default=1.0, ge=0.0)
    enabled: bool = True
    description: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class RuleSetDocument(BaseModel):
    version: str = Field(min_length=1)
    rules: list[RuleDefinition]


class RuleResult(BaseModel):
    rule_id: str
    rule_type: str
    triggered: bool
    score: float = 0.0
    details: str = ""
    severity: str = "low"
    evidence: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class ClassifierResult(BaseModel):
    available: bool
    score: float | None = None
    confidence: float | None = None
    latency_ms: float = 0.0
    error: str | None = None
    model_version: str | None = None

    @classmethod
    def unavailable(cls, error: str, latency_ms: float = 0.0) -> "ClassifierResult":
        return cls(available=False, error=error, latency_ms=round(latency_ms, 3))


class SuspicionScore(BaseModel):
    value: float = Field(ge=0.0, le=100.0)
    rule_score: float = Field(ge=0.0, le=100.0)
    classifier_score: float | None = None
    decision: Decision
    degraded: bool = False
    rule_results: list[RuleResult] = Field(default_factory=list)
    classifier: ClassifierResult | None = None
    metadata: dict = Field(default_factory=dict)

    @property
    def triggered_rules(self) -> list[RuleResult]:
        return [r for r in self.rule_results if r.triggered]


# ---------------------------------------------------------------------------
# Alerts and cases
# ---------------------------------------------------------------------------


class Alert(BaseModel):
    alert_id: str
    transaction_id: str
    entity_id: str
    score: float
    decision: Decision
    triggering_signals: list[RuleResult] = Field(default_factory=list)
    classifier_score: float | None = None
    degraded: bool = False
    created_at: datetime
    status: AlertStatus = AlertStatus.OPEN
    case_id: str | None = None


class CaseEvidence(BaseModel):
    alert_id: str
    transaction_id: str
    score: float
    decision: Decision
    signals: list[RuleResult] = Field(default_factory=list)
    classifier_score: float | None = None
    degraded: bool = False
    added_at: datetime


class CaseAuditEvent(BaseModel):
    event_type: str
    actor: str
    at: datetime
    from_status: CaseStatus | None = None
    to_status: CaseStatus | None = None
    note: str = ""


class Case(BaseModel):
    case_id: str
    entity_id: str
    status: CaseStatus = CaseStatus.OPEN
    score: float
    alert_ids: list[str] = Field(default_factory=list)
    transaction_ids: list[str] = Field(default_factory=list)
    evidence: list[CaseEvidence] = Field(default_factory=list)
    opened_at: datetime
    last_alert_at: datetime
    closed_at: datetime | None = None
    audit_trail: list[CaseAuditEvent] = Field(default_factory=list)


class AlertOutcome(BaseModel):
    action: OutcomeAction = OutcomeAction.NONE
    alert: Alert | None = None
    case: Case | None = None
    deny: bool = False


class CaseEvent(BaseModel):
    event_id: str
    event_type: CaseEventType
    case: Case
    emitted_at: datetime


class EvaluationResult(BaseModel):
    evaluation_id: str
    transaction_id: str
    entity_id: str
    decision: Decision
    score: float = Field(ge=0.0, le=100.0)
    degraded: bool = False
    suspicion: SuspicionScore
    alert_id: str | None = None
    case_id: str | None = None
    rule_set_version: str
    evaluated_at: datetime
    replayed: bool = False
