"""Synchronous transaction evaluation endpoint."""

from typing import Any

from fastapi import APIRouter, Body, Depends

from src.domains.risk.pipeline import IngestionPipeline
from src.service import get_pipeline

router = APIRouter(prefix="/api/v1/transactions", tags=["transactions"])


@router.post("/evaluate")
async def evaluate_transaction(
    payload: dict[str, Any] = Body(...),  # noqa: B008
    pipeline: IngestionPipeline = Depends(get_pipeline),  # noqa: B008
) -> dict:
    """Score a transaction and return ALLOW / REVIEW / BLOCK.

    Malformed transactions are rejected with 400 and are not counted.
    """
    result = await pipeline.submit(payload)
    suspicion = result.suspicion

    return {
        "evaluation_id": result.evaluation_id,
        "transaction_id": result.transaction_id,
        "entity_id": result.entity_id,
        "decision": result.decision.value,
        "deny": result.decision.value == "block",
        "score": result.score,
        "rule_score": suspicion.rule_score,
        "classifier_score": suspicion.classifier_score,
        "degraded": result.degraded,
        "triggered_rules": [
            {
                "rule_id": r.rule_id,
                "rule_type": r.rule_type,
                "score": r.score,
                "severity": r.severity,
                "details": r.details,
            }
            for r in suspicion.triggered_rules
        ],
        "alert_id": result.alert_id,
        "case_id": result.case_id,
        "rule_set_version": result.rule_set_version,
        "replayed": result.replayed,
        "evaluated_at": result.evaluated_at.isoformat(),
    }
