"""Case review endpoints for investigators."""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.domains.risk.models import CaseStatus
from src.domains.risk.pipeline import IngestionPipeline
from src.service import get_pipeline

router = APIRouter(prefix="/api/v1/cases", tags=["cases"])


class CaseTransitionRequest(BaseModel):
    status: CaseStatus
    actor: str = Field(min_length=1)
    note: str = ""


@router.get("")
async def list_cases(
    pipeline: IngestionPipeline = Depends(get_pipeline),  # noqa: B008
    entity_id: str | None = None,
    status: CaseStatus | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict:
    cases = pipeline.case_manager.list_cases(entity_id=entity_id, status=status)
    cases.sort(key=lambda c: c.last_alert_at, reverse=True)
    page = cases[offset : offset + limit]
    return {
        "items": [c.model_dump(mode="json") for c in page],
        "total": len(cases),
        "limit": limit,
        "offset": offset,
    }


@router.get("/{case_id}")
async def get_case(
    case_id: str,
    pipeline: IngestionPipeline = Depends(get_pipeline),  # noqa: B008
) -> dict:
    return pipeline.case_manager.get_case(case_id).model_dump(mode="json")


@router.post("/{case_id}/transition")
async def transition_case(
    case_id: str,
    request: CaseTransitionRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),  # noqa: B008
) -> dict:
    """Move a case through its lifecycle. Invalid moves return 409."""
    case = pipeline.case_manager.transition(
        case_id,
        request.status,
        actor=request.actor,
        now=datetime.now(UTC),
        note=request.note,
    )
    return case.model_dump(mode="json")
