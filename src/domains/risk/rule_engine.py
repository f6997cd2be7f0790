"""Deterministic rule evaluation."""

from datetime import datetime

import structlog

from .models import RuleResult, Transaction, WindowSnapshot
from .ruleset import RuleSet

logger = structlog.get_logger()


class RuleEngine:
    """Evaluates a transaction against every rule of a rule set.

    Rules run independently; a rule that raises is logged and reported as
    not triggered so the rest of the set still contributes. ``now`` is
    passed through to each rule, the engine never reads a clock.
    """

    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        rule_set: RuleSet,
        now: datetime,
    ) -> list[RuleResult]:
        results: list[RuleResult] = []

        for rule in rule_set.rules:
            try:
                result = rule.evaluate(transaction, snapshot, now)
                results.append(result)
            except Exception:
                logger.exception(
                    "rule_evaluation_error",
                    rule_id=rule.rule_id,
                    rule_set_version=rule_set.version,
                    transaction_id=transaction.transaction_id,
                )
                results.append(
                    RuleResult(
                        rule_id=rule.rule_id,
                        rule_type=rule.result_type,
                        triggered=False,
                        details="Rule evaluation failed",
                    )
                )

        triggered = [r.rule_id for r in results if r.triggered]
        logger.debug(
            "rules_evaluated",
            transaction_id=transaction.transaction_id,
            rule_set_version=rule_set.version,
            rule_count=len(results),
            triggered=triggered,
        )
        return results

    @staticmethod
    def weights(rule_set: RuleSet) -> dict[str, float]:
        return {rule.rule_id: rule.weight for rule in rule_set.rules}
