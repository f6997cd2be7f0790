"""Versioned rule sets with atomic reload.

A ``RuleSet`` is immutable once compiled. ``RuleSetHolder`` publishes the
current one through a single reference; a reload compiles the full new set
first and only then swaps the reference, so an evaluation either sees the
old version or the new one, never a mix. A malformed definition aborts the
reload and the previous version stays active.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from .config import RiskConfig, default_config
from .errors import RuleConfigurationError
from .models import RuleDefinition, RuleSetDocument, RuleType
from .rules import DetectionRule, RuleDependencies, StaticCountryRiskTable, build_rule

logger = structlog.get_logger()

DEFAULT_RULESET_VERSION = "default-v1"


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: tuple[DetectionRule, ...]
    definitions: tuple[RuleDefinition, ...]
    loaded_at: datetime

    def describe(self) -> dict:
        return {
            "version": self.version,
            "loaded_at": self.loaded_at.isoformat(),
            "rule_count": len(self.rules),
            "rules": [d.model_dump(mode="json") for d in self.definitions],
        }


def compile_rule_set(
    document: RuleSetDocument,
    deps: RuleDependencies,
    loaded_at: datetime | None = None,
) -> RuleSet:
    """Validate and compile every definition. Raises RuleConfigurationError."""
    seen: set[str] = set()
    rules: list[DetectionRule] = []
    for definition in document.rules:
        if definition.rule_id in seen:
            raise RuleConfigurationError(
                f"Duplicate rule id '{definition.rule_id}'", rule_id=definition.rule_id
            )
        seen.add(definition.rule_id)
        rule = build_rule(definition, deps)
        if definition.enabled:
            rules.append(rule)

    return RuleSet(
        version=document.version,
        rules=tuple(rules),
        definitions=tuple(document.rules),
        loaded_at=loaded_at or datetime.now(UTC),
    )


def parse_rule_document(raw: dict) -> RuleSetDocument:
    try:
        return RuleSetDocument.model_validate(raw)
    except ValidationError as e:
        raise RuleConfigurationError(f"Malformed rule set: {e}") from e


def load_rule_document(path: str | Path) -> RuleSetDocument:
    """Read a YAML rule file::

        version: "2026-10-01"
        rules:
          - rule_id: velocity_1h
            type: velocity
            parameters: {window: 1h, threshold: 10}
            weight: 1.0
    """
    try:
        raw = yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise RuleConfigurationError(f"Cannot read rule file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise RuleConfigurationError(f"Rule file {path} must contain a mapping")
    return parse_rule_document(raw)


def default_rule_document(config: RiskConfig = default_config) -> RuleSetDocument:
    """Rule set derived from the engine config defaults."""
    rules = [
        RuleDefinition(
            rule_id="velocity_count_1h",
            type=RuleType.VELOCITY,
            parameters={"window": "1h", "threshold": config.velocity.count_1h_max},
        ),
        RuleDefinition(
            rule_id="velocity_count_24h",
            type=RuleType.VELOCITY,
            parameters={"window": "24h", "threshold": config.velocity.count_24h_max},
            weight=0.8,
        ),
        RuleDefinition(
            rule_id="structuring",
            type=RuleType.STRUCTURING,
            parameters={
                "threshold": config.structuring.threshold,
                "proximity": config.structuring.proximity,
                "window": config.structuring.window,
                "min_transactions": config.structuring.min_transactions,
            },
        ),
        RuleDefinition(
            rule_id="round_amount",
            type=RuleType.ROUND_AMOUNT,
            parameters={
                "round_unit": config.round_amount.round_unit,
                "min_amount": config.round_amount.min_amount,
            },
            weight=0.5,
        ),
        RuleDefinition(
            rule_id="geographic_risk",
            type=RuleType.GEOGRAPHIC_RISK,
            parameters={"min_rating": config.geo.min_rating},
        ),
        RuleDefinition(
            rule_id="high_risk_country",
            type=RuleType.HIGH_RISK_COUNTRY,
            parameters={"score": config.geo.high_risk_score},
        ),
        RuleDefinition(
            rule_id="large_transaction",
            type=RuleType.CUSTOM,
            parameters={"plugin": "large_transaction", "threshold": config.structuring.threshold},
            weight=0.5,
        ),
    ]
    return RuleSetDocument(version=DEFAULT_RULESET_VERSION, rules=rules)


def build_dependencies(config: RiskConfig = default_config, country_risk=None) -> RuleDependencies:
    return RuleDependencies(
        windows=dict(config.windows.durations),
        country_risk=country_risk or StaticCountryRiskTable.from_config(config.geo),
    )


class RuleSetHolder:
    """Holds the active rule set and swaps it atomically on reload."""

    def __init__(self, initial: RuleSet, deps: RuleDependencies) -> None:
        self._current = initial
        self._deps = deps
        self._history: list[tuple[str, datetime]] = [(initial.version, initial.loaded_at)]

    @classmethod
    def from_config(cls, config: RiskConfig = default_config, country_risk=None) -> "RuleSetHolder":
        deps = build_dependencies(config, country_risk)
        return cls(compile_rule_set(default_rule_document(config), deps), deps)

    @property
    def current(self) -> RuleSet:
        return self._current

    @property
    def history(self) -> Sequence[tuple[str, datetime]]:
        return tuple(self._history)

    def reload(self, document: RuleSetDocument) -> RuleSet:
        previous = self._current
        if document.version == previous.version:
            raise RuleConfigurationError(
                f"Rule set version '{document.version}' is already active; bump the version"
            )
        try:
            candidate = compile_rule_set(document, self._deps)
        except RuleConfigurationError as e:
            logger.error(
                "rule_set_reload_rejected",
                attempted_version=document.version,
                active_version=previous.version,
                rule_id=e.rule_id,
                error=str(e),
            )
            raise

        self._current = candidate
        self._history.append((candidate.version, candidate.loaded_at))
        logger.info(
            "rule_set_reloaded",
            previous_version=previous.version,
            version=candidate.version,
            rule_count=len(candidate.rules),
        )
        return candidate

    def reload_from_file(self, path: str | Path) -> RuleSet:
        return self.reload(load_rule_document(path))
