"""Transaction risk scoring and alerting domain."""

from .aggregator import SignalAggregator
from .cases import CaseManager
from .classifier import ClassifierAdapter, HttpClassifierBackend, InProcessModelBackend
from .config import RiskConfig, default_config
from .errors import (
    CaseNotFoundError,
    ClassifierUnavailableError,
    InvalidCaseTransitionError,
    RiskEngineError,
    RuleConfigurationError,
    StateStoreUnavailableError,
    TransactionValidationError,
)
from .events import CaseEventDispatcher, InMemoryCaseEventPublisher, KafkaCaseEventPublisher
from .models import (
    Alert,
    Case,
    CaseStatus,
    ClassifierResult,
    Decision,
    EvaluationResult,
    RuleDefinition,
    RuleResult,
    RuleSetDocument,
    SuspicionScore,
    Transaction,
    WindowSnapshot,
)
from .pipeline import IngestionPipeline
from .rule_engine import RuleEngine
from .ruleset import RuleSet, RuleSetHolder
from .state_store import EntityStateStore, InMemoryEntityStateStore, RedisEntityStateStore

__all__ = [
    "Alert",
    "Case",
    "CaseEventDispatcher",
    "CaseManager",
    "CaseNotFoundError",
    "CaseStatus",
    "ClassifierAdapter",
    "ClassifierResult",
    "ClassifierUnavailableError",
    "Decision",
    "EntityStateStore",
    "EvaluationResult",
    "HttpClassifierBackend",
    "InMemoryCaseEventPublisher",
    "InMemoryEntityStateStore",
    "InProcessModelBackend",
    "IngestionPipeline",
    "InvalidCaseTransitionError",
    "KafkaCaseEventPublisher",
    "RedisEntityStateStore",
    "RiskConfig",
    "RiskEngineError",
    "RuleConfigurationError",
    "RuleDefinition",
    "RuleEngine",
    "RuleResult",
    "RuleSet",
    "RuleSetDocument",
    "RuleSetHolder",
    "StateStoreUnavailableError",
    "SuspicionScore",
    "Transaction",
    "TransactionValidationError",
    "WindowSnapshot",
    "default_config",
]
