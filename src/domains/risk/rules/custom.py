"""CUSTOM rule plugins.

A CUSTOM rule definition names a registered plugin in its ``plugin``
parameter; the remaining parameters are validated by the plugin's own
``Params`` model. New detection logic is added by registering a plugin,
without touching the engine::

    @register_custom_rule("dormant_account")
    class DormantAccountRule(CustomRule):
        Params = DormantParams

        def evaluate(self, transaction, snapshot, now): ...
"""

from collections.abc import Callable
from datetime import datetime

from pydantic import Field

from ..errors import RuleConfigurationError
from ..models import RuleDefinition, RuleResult, RuleType, Transaction, WindowSnapshot
from .base import DetectionRule, RuleDependencies, RuleParams

_PLUGINS: dict[str, type["CustomRule"]] = {}


def register_custom_rule(name: str) -> Callable[[type["CustomRule"]], type["CustomRule"]]:
    def decorator(cls: type["CustomRule"]) -> type["CustomRule"]:
        cls.plugin_name = name
        _PLUGINS[name] = cls
        return cls

    return decorator


def unregister_custom_rule(name: str) -> None:
    _PLUGINS.pop(name, None)


def registered_plugins() -> list[str]:
    return sorted(_PLUGINS)


def build_custom_rule(definition: RuleDefinition, deps: RuleDependencies) -> "CustomRule":
    params = dict(definition.parameters)
    plugin_name = params.pop("plugin", None)
    if not plugin_name:
        raise RuleConfigurationError(
            f"Custom rule {definition.rule_id} is missing the 'plugin' parameter",
            rule_id=definition.rule_id,
        )
    plugin_cls = _PLUGINS.get(plugin_name)
    if plugin_cls is None:
        raise RuleConfigurationError(
            f"Custom rule {definition.rule_id} references unknown plugin '{plugin_name}'",
            rule_id=definition.rule_id,
        )
    return plugin_cls(definition.model_copy(update={"parameters": params}), deps)


class CustomRule(DetectionRule):
    rule_type = RuleType.CUSTOM
    plugin_name: str = ""

    @property
    def result_type(self) -> str:
        return f"{self.rule_type.value}:{self.plugin_name}"


class LargeTransactionParams(RuleParams):
    threshold: int = Field(gt=0)


@register_custom_rule("large_transaction")
class LargeTransactionRule(CustomRule):
    """Triggers for single transactions at or above the threshold."""

    Params = LargeTransactionParams

    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        now: datetime,
    ) -> RuleResult:
        amount = transaction.amount
        threshold = self.params.threshold
        if amount < threshold:
            return self._not_triggered()

        # Scale 20-100 for amounts from threshold to 10x threshold
        ratio = min(amount / threshold, 10.0)
        score = min(20.0 + (ratio - 1.0) * 8.9, 100.0)

        severity = "low"
        if amount >= threshold * 5:
            severity = "critical"
        elif amount >= threshold * 3:
            severity = "high"
        elif amount >= threshold * 1.5:
            severity = "medium"

        return self._triggered(
            score=score,
            details=f"Large transaction: {amount} (threshold: {threshold})",
            severity=severity,
            evidence={"amount": amount, "threshold": threshold},
        )


class MerchantSpreadParams(RuleParams):
    window: str = "1h"
    max_distinct: int = Field(ge=1)
    score: float = Field(default=45.0, ge=0.0, le=100.0)


@register_custom_rule("merchant_spread")
class MerchantSpreadRule(CustomRule):
    """Triggers when an entity touches too many distinct merchant categories."""

    Params = MerchantSpreadParams

    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        now: datetime,
    ) -> RuleResult:
        params: MerchantSpreadParams = self.params
        distinct = snapshot.window(params.window).distinct_merchants
        if distinct <= params.max_distinct:
            return self._not_triggered()

        return self._triggered(
            score=params.score,
            details=f"{distinct} distinct merchant categories in last {params.window}",
            severity="medium",
            evidence={
                "distinct_merchants": distinct,
                "max_distinct": params.max_distinct,
                "window": params.window,
            },
        )
