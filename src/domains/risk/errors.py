"""Exception types raised by the risk engine."""


class RiskEngineError(Exception):
    """Base class for all risk engine errors."""


class StateStoreUnavailableError(RiskEngineError):
    """The entity state backend could not be reached.

    Recovered by the pipeline: evaluation continues classifier-only and the
    result is flagged degraded.
    """


class ClassifierUnavailableError(RiskEngineError):
    """The classifier backend failed or returned an unusable response."""


class RuleConfigurationError(RiskEngineError, ValueError):
    """A rule definition is malformed. The active rule set is left untouched."""

    def __init__(self, message: str, rule_id: str | None = None) -> None:
        super().__init__(message)
        self.rule_id = rule_id


class TransactionValidationError(RiskEngineError, ValueError):
    """A transaction was rejected at ingestion and was not evaluated."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class CaseNotFoundError(RiskEngineError, LookupError):
    pass


class InvalidCaseTransitionError(RiskEngineError, ValueError):
    pass
