"""Signal aggregation: rule results + classifier score -> SuspicionScore.

Rule score = sum of (contribution * weight) over triggered rules, capped at
100. The classifier score is blended in with the configured strategy:

- ``max`` (default): the higher of the two, so a strongly triggered rule is
  never diluted by a low model score.
- ``weighted``: ``blend_factor * rule + (1 - blend_factor) * classifier``.

Both are non-decreasing in every rule contribution. When the classifier is
unavailable the decision rests on the rule score alone and the result is
flagged degraded.
"""

import math

import structlog

from .config import AggregationPolicy
from .models import ClassifierResult, Decision, RuleResult, SuspicionScore

logger = structlog.get_logger()

BLEND_STRATEGIES = ("max", "weighted")


def _clamp(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(100.0, value))


def decide(score: float, policy: AggregationPolicy) -> Decision:
    if score >= policy.block_threshold:
        return Decision.BLOCK
    if score >= policy.review_threshold:
        return Decision.REVIEW
    return Decision.ALLOW


class SignalAggregator:
    def __init__(self, policy: AggregationPolicy | None = None) -> None:
        self._policy = policy or AggregationPolicy()
        self.validate_policy(self._policy)

    @property
    def policy(self) -> AggregationPolicy:
        return self._policy

    @staticmethod
    def validate_policy(policy: AggregationPolicy) -> None:
        if policy.blend_strategy not in BLEND_STRATEGIES:
            raise ValueError(f"Unknown blend strategy: {policy.blend_strategy}")
        if not 0.0 <= policy.blend_factor <= 1.0:
            raise ValueError("blend_factor must be within [0, 1]")
        if not 0.0 <= policy.review_threshold <= policy.block_threshold <= 100.0:
            raise ValueError("thresholds must satisfy 0 <= review <= block <= 100")

    def aggregate(
        self,
        rule_results: list[RuleResult],
        classifier_result: ClassifierResult | None,
        weights: dict[str, float] | None = None,
        policy: AggregationPolicy | None = None,
        degraded: bool = False,
    ) -> SuspicionScore:
        """Combine signals into a single score and decision.

        ``weights`` maps rule id to configured weight (default 1.0).
        ``degraded`` carries upstream degradation (state store outage) into
        the result.
        """
        policy = policy or self._policy
        weights = weights or {}
        data_quality: list[dict] = []

        weighted_sum = 0.0
        for result in rule_results:
            if not result.triggered:
                continue
            contribution = result.score
            if contribution is None or math.isnan(contribution):
                # An unusable contribution counts as not triggered
                data_quality.append(
                    {"source": result.rule_id, "raw_score": contribution, "issue": "missing"}
                )
                continue
            if not 0.0 <= contribution <= 100.0:
                data_quality.append(
                    {"source": result.rule_id, "raw_score": contribution, "issue": "out_of_range"}
                )
                contribution = _clamp(contribution)
            weighted_sum += contribution * weights.get(result.rule_id, 1.0)
        rule_score = _clamp(weighted_sum)

        classifier_score: float | None = None
        if classifier_result is not None and classifier_result.available:
            raw = classifier_result.score
            if raw is None or math.isnan(raw):
                data_quality.append({"source": "classifier", "raw_score": raw, "issue": "missing"})
            else:
                if not 0.0 <= raw <= 100.0:
                    data_quality.append(
                        {"source": "classifier", "raw_score": raw, "issue": "out_of_range"}
                    )
                classifier_score = _clamp(raw)

        if classifier_score is None:
            value = rule_score
            degraded = True
        elif policy.blend_strategy == "weighted":
            value = policy.blend_factor * rule_score + (1.0 - policy.blend_factor) * classifier_score
        else:
            value = max(rule_score, classifier_score)
        value = round(_clamp(value), 4)

        for event in data_quality:
            logger.warning("data_quality_event", **event)

        decision = decide(value, policy)
        return SuspicionScore(
            value=value,
            rule_score=round(rule_score, 4),
            classifier_score=classifier_score,
            decision=decision,
            degraded=degraded,
            rule_results=list(rule_results),
            classifier=classifier_result,
            metadata={
                "blend_strategy": policy.blend_strategy if classifier_score is not None else "rules_only",
                "review_threshold": policy.review_threshold,
                "block_threshold": policy.block_threshold,
                "triggered_count": sum(1 for r in rule_results if r.triggered),
                "data_quality_events": data_quality,
            },
        )
