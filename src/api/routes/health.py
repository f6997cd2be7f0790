"""Health and readiness endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from src.config import settings
from src.service import get_service

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from src.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


@router.get("/ready")
async def ready() -> JSONResponse:
    service = get_service()

    state_ok = await service.state_store.ping()
    kafka_ok = service.producer is not None

    # Kafka is optional: without it case events stay in process
    all_ready = state_ok and (kafka_ok or not service.settings.kafka_enabled)
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "state_store": state_ok,
            "state_backend": service.settings.state_backend,
            "kafka": kafka_ok,
            "classifier": service.classifier_backend is not None,
            "rule_set_version": service.rule_sets.current.version,
        },
    )
