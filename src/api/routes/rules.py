"""Rule set inspection and reload endpoints."""

from typing import Any

from fastapi import APIRouter, Body, Depends

from src.domains.risk.pipeline import IngestionPipeline
from src.domains.risk.ruleset import parse_rule_document
from src.service import get_pipeline

router = APIRouter(prefix="/api/v1/rules", tags=["rules"])


@router.get("")
async def list_rules(
    pipeline: IngestionPipeline = Depends(get_pipeline),  # noqa: B008
) -> dict:
    """Return the active rule set version and its definitions."""
    holder = pipeline.rule_sets
    return {
        **holder.current.describe(),
        "history": [
            {"version": version, "loaded_at": loaded_at.isoformat()}
            for version, loaded_at in holder.history
        ],
    }


@router.post("/reload")
async def reload_rules(
    document: dict[str, Any] = Body(...),  # noqa: B008
    pipeline: IngestionPipeline = Depends(get_pipeline),  # noqa: B008
) -> dict:
    """Validate and atomically activate a new rule set version.

    A malformed document is rejected with 400 and the active version stays.
    """
    holder = pipeline.rule_sets
    previous = holder.current.version
    rule_set = holder.reload(parse_rule_document(document))
    return {
        "previous_version": previous,
        "version": rule_set.version,
        "rule_count": len(rule_set.rules),
        "loaded_at": rule_set.loaded_at.isoformat(),
    }
