"""Abstract base class for detection rules."""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import RuleConfigurationError
from ..models import RuleDefinition, RuleResult, RuleType, Transaction, WindowSnapshot
from .geo_data import CountryRiskProvider, StaticCountryRiskTable


class RuleParams(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


@dataclass(frozen=True)
class RuleDependencies:
    """Collaborators handed to every rule when a rule set is compiled."""

    windows: Mapping[str, int] = field(default_factory=dict)
    country_risk: CountryRiskProvider = field(default_factory=StaticCountryRiskTable)


class DetectionRule(ABC):
    """Base class for all detection rules.

    A rule is compiled once from a ``RuleDefinition`` (parameters validated
    against ``Params``) and then evaluated as a pure function of the
    transaction, the window snapshot and the explicit ``now``. Rules never
    read a wall clock and never mutate shared state.
    """

    rule_type: RuleType
    Params: type[RuleParams] = RuleParams

    def __init__(self, definition: RuleDefinition, deps: RuleDependencies | None = None) -> None:
        self.definition = definition
        self.deps = deps or RuleDependencies()
        self.params = self._parse_params(definition.parameters)
        window = getattr(self.params, "window", None)
        if window is not None and self.deps.windows and window not in self.deps.windows:
            raise RuleConfigurationError(
                f"Rule {definition.rule_id} references unknown window '{window}' "
                f"(configured: {', '.join(sorted(self.deps.windows))})",
                rule_id=definition.rule_id,
            )

    def _parse_params(self, raw: dict) -> RuleParams:
        try:
            return self.Params(**raw)
        except ValidationError as e:
            raise RuleConfigurationError(
                f"Invalid parameters for rule {self.definition.rule_id}: {e}",
                rule_id=self.definition.rule_id,
            ) from e

    @property
    def rule_id(self) -> str:
        return self.definition.rule_id

    @property
    def weight(self) -> float:
        return self.definition.weight

    @property
    def result_type(self) -> str:
        return self.rule_type.value

    @abstractmethod
    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        now: datetime,
    ) -> RuleResult:
        """Evaluate this rule and return a RuleResult."""
        ...

    def _not_triggered(self) -> RuleResult:
        """Convenience: return a non-triggered result for this rule."""
        return RuleResult(
            rule_id=self.rule_id,
            rule_type=self.result_type,
            triggered=False,
        )

    def _triggered(
        self,
        score: float,
        details: str,
        severity: str = "medium",
        evidence: dict | None = None,
    ) -> RuleResult:
        """Convenience: return a triggered result for this rule."""
        return RuleResult(
            rule_id=self.rule_id,
            rule_type=self.result_type,
            triggered=True,
            score=score,
            details=details,
            severity=severity,
            evidence=evidence or {},
        )
