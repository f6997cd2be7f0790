"""Velocity-based detection rules."""

from datetime import datetime
from typing import Literal

from pydantic import Field

from ..models import RuleResult, RuleType, Transaction, WindowSnapshot
from .base import DetectionRule, RuleParams


class VelocityParams(RuleParams):
    window: str = "1h"
    threshold: int = Field(ge=0)
    # "count" compares transaction count, "amount" the window total (minor units)
    metric: Literal["count", "amount"] = "count"


class VelocityRule(DetectionRule):
    """Triggers when the window count (or total) is strictly above threshold.

    The snapshot already includes the transaction under evaluation.
    """

    rule_type = RuleType.VELOCITY
    Params = VelocityParams

    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        now: datetime,
    ) -> RuleResult:
        params: VelocityParams = self.params
        counters = snapshot.window(params.window)
        value = counters.count if params.metric == "count" else counters.total_amount
        threshold = params.threshold
        if value <= threshold:
            return self._not_triggered()

        # Scale score 30-100 based on how far over threshold
        ratio = min(value / threshold, 3.0) if threshold > 0 else 3.0
        score = min(30.0 + (ratio - 1.0) * 35.0, 100.0)

        return self._triggered(
            score=score,
            details=(
                f"{value} {'transactions' if params.metric == 'count' else 'total'} "
                f"in last {params.window} (threshold: {threshold})"
            ),
            severity="high" if value >= threshold * 2 else "medium",
            evidence={
                "metric": params.metric,
                "value": value,
                "threshold": threshold,
                "window": params.window,
            },
        )
