"""Amount-based detection rules: structuring and round amounts."""

from datetime import datetime

from pydantic import Field, model_validator

from ..models import RuleResult, RuleType, Transaction, WindowSnapshot
from .base import DetectionRule, RuleParams


class StructuringParams(RuleParams):
    # Reporting threshold in minor units ($10,000 -> 1_000_000)
    threshold: int = Field(gt=0)
    proximity: float = Field(default=0.1, gt=0.0, lt=1.0)
    window: str = "24h"
    min_transactions: int = Field(default=3, ge=3)
    base_score: float = Field(default=85.0, ge=0.0, le=100.0)
    per_extra_score: float = Field(default=5.0, ge=0.0)


class StructuringRule(DetectionRule):
    """Detects deliberate sub-threshold splitting.

    Triggers when at least ``min_transactions`` in the lookback window fall in
    ``[threshold * (1 - proximity), threshold)`` and together exceed
    ``threshold``.
    """

    rule_type = RuleType.STRUCTURING
    Params = StructuringParams

    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        now: datetime,
    ) -> RuleResult:
        params: StructuringParams = self.params
        lower = params.threshold * (1.0 - params.proximity)
        qualifying = [
            e
            for e in snapshot.window(params.window).entries
            if lower <= e.amount < params.threshold
        ]
        total = sum(e.amount for e in qualifying)

        if len(qualifying) < params.min_transactions or total <= params.threshold:
            return self._not_triggered()

        extra = len(qualifying) - params.min_transactions
        score = min(params.base_score + extra * params.per_extra_score, 100.0)

        return self._triggered(
            score=score,
            details=(
                f"{len(qualifying)} transactions within {params.proximity:.0%} below "
                f"threshold {params.threshold} in last {params.window} (total: {total})"
            ),
            severity="critical" if extra > 0 else "high",
            evidence={
                "qualifying_count": len(qualifying),
                "qualifying_total": total,
                "threshold": params.threshold,
                "band_lower": lower,
                "window": params.window,
                "transaction_ids": [e.transaction_id for e in qualifying],
            },
        )


class RoundAmountParams(RuleParams):
    round_unit: int = Field(gt=0)
    min_amount: int = Field(default=0, ge=0)
    score: float = Field(default=40.0, ge=0.0, le=100.0)

    @model_validator(mode="after")
    def _floor_at_least_unit(self) -> "RoundAmountParams":
        if self.min_amount and self.min_amount < self.round_unit:
            raise ValueError("min_amount must be at least round_unit")
        return self


class RoundAmountRule(DetectionRule):
    """Triggers on exact multiples of ``round_unit`` at or above ``min_amount``."""

    rule_type = RuleType.ROUND_AMOUNT
    Params = RoundAmountParams

    def evaluate(
        self,
        transaction: Transaction,
        snapshot: WindowSnapshot,
        now: datetime,
    ) -> RuleResult:
        params: RoundAmountParams = self.params
        amount = transaction.amount
        if amount < params.min_amount or amount % params.round_unit != 0:
            return self._not_triggered()

        return self._triggered(
            score=params.score,
            details=f"Round amount {amount} (multiple of {params.round_unit})",
            severity="low",
            evidence={
                "amount": amount,
                "round_unit": params.round_unit,
                "min_amount": params.min_amount,
            },
        )
