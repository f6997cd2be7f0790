"""Detection rules package.

Rule types are strategies looked up in ``RULE_TYPES``; ``build_rule`` turns a
``RuleDefinition`` into a compiled rule. Additional types can be added with
``register_rule_type`` and CUSTOM plugins with ``register_custom_rule``.
"""

from collections.abc import Callable

from ..errors import RuleConfigurationError
from ..models import RuleDefinition, RuleType
from .amount import RoundAmountRule, StructuringRule
from .base import DetectionRule, RuleDependencies, RuleParams
from .custom import (
    CustomRule,
    LargeTransactionRule,
    MerchantSpreadRule,
    build_custom_rule,
    register_custom_rule,
    registered_plugins,
    unregister_custom_rule,
)
from .geo import GeographicRiskRule, HighRiskCountryRule
from .geo_data import CountryRiskProvider, StaticCountryRiskTable
from .velocity import VelocityRule

RuleFactory = Callable[[RuleDefinition, RuleDependencies], DetectionRule]

RULE_TYPES: dict[RuleType, RuleFactory] = {
    RuleType.VELOCITY: VelocityRule,
    RuleType.STRUCTURING: StructuringRule,
    RuleType.ROUND_AMOUNT: RoundAmountRule,
    RuleType.GEOGRAPHIC_RISK: GeographicRiskRule,
    RuleType.HIGH_RISK_COUNTRY: HighRiskCountryRule,
    RuleType.CUSTOM: build_custom_rule,
}


def register_rule_type(rule_type: RuleType, factory: RuleFactory) -> None:
    RULE_TYPES[rule_type] = factory


def build_rule(definition: RuleDefinition, deps: RuleDependencies) -> DetectionRule:
    factory = RULE_TYPES.get(definition.type)
    if factory is None:
        raise RuleConfigurationError(
            f"No strategy registered for rule type '{definition.type}'",
            rule_id=definition.rule_id,
        )
    return factory(definition, deps)


__all__ = [
    "RULE_TYPES",
    "CountryRiskProvider",
    "CustomRule",
    "DetectionRule",
    "GeographicRiskRule",
    "HighRiskCountryRule",
    "LargeTransactionRule",
    "MerchantSpreadRule",
    "RoundAmountRule",
    "RuleDependencies",
    "RuleParams",
    "StaticCountryRiskTable",
    "StructuringRule",
    "VelocityRule",
    "build_custom_rule",
    "build_rule",
    "register_custom_rule",
    "register_rule_type",
    "registered_plugins",
    "unregister_custom_rule",
]
