"""FastAPI application entry point for the risk engine."""

import asyncio
import contextlib
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.middleware.error_handler import global_exception_handler
from src.api.middleware.logging import StructuredLoggingMiddleware
from src.api.routes.cases import router as cases_router
from src.api.routes.health import router as health_router
from src.api.routes.rules import router as rules_router
from src.api.routes.transactions import router as transactions_router
from src.config import settings
from src.domains.risk.errors import RiskEngineError
from src.service import RiskService, set_service
from src.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown logic."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level)

    logger.info(
        "risk_engine_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
    )

    service = await RiskService.create(settings)
    set_service(service)
    service.start()

    consumer = None
    consumer_task: asyncio.Task | None = None
    if settings.kafka_enabled:
        try:
            from src.consumers.transaction_consumer import TransactionConsumer

            consumer = TransactionConsumer(
                pipeline=service.pipeline,
                bootstrap_servers=settings.kafka_bootstrap_servers,
                group_id=settings.kafka_consumer_group,
                topic=settings.transactions_topic,
                auto_offset_reset=settings.kafka_auto_offset_reset,
                max_in_flight=settings.kafka_max_in_flight,
            )
            consumer_task = asyncio.create_task(consumer.start())
            logger.info("kafka_consumers_started", count=1)
        except Exception:
            logger.warning("kafka_consumers_failed_to_start", exc_info=True)

    yield

    if consumer is not None:
        with contextlib.suppress(Exception):
            await consumer.stop()
    if consumer_task is not None:
        consumer_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await consumer_task
    await service.stop()
    set_service(None)
    logger.info("risk_engine_shutting_down")


app = FastAPI(
    title="Risk Engine",
    description="Real-time transaction risk scoring and fraud/AML alerting",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Structured logging middleware
app.add_middleware(StructuredLoggingMiddleware)

# Domain errors map to 4xx; anything else is a 500 with the request id
for exc_class in (RiskEngineError, ValueError, LookupError, PermissionError, Exception):
    app.add_exception_handler(exc_class, global_exception_handler)

# Register routers
app.include_router(health_router)
app.include_router(transactions_router)
app.include_router(rules_router)
app.include_router(cases_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
