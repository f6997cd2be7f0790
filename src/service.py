"""Runtime wiring for the risk engine service.

Builds the state store, rule set, classifier adapter, case manager, event
dispatcher and ingestion pipeline from ``Settings`` and owns their
background tasks.
"""

import asyncio
import contextlib

import structlog

from src.config import Settings
from src.domains.risk.cases import CaseManager
from src.domains.risk.classifier import ClassifierAdapter, HttpClassifierBackend
from src.domains.risk.config import RiskConfig
from src.domains.risk.events import (
    CaseEventDispatcher,
    CaseEventPublisher,
    InMemoryCaseEventPublisher,
    KafkaCaseEventPublisher,
)
from src.domains.risk.pipeline import IngestionPipeline
from src.domains.risk.ruleset import RuleSetHolder
from src.domains.risk.state_store import (
    EntityStateStore,
    InMemoryEntityStateStore,
    RedisEntityStateStore,
)
from src.shared.kafka_utils import create_producer

logger = structlog.get_logger()


class RiskService:
    def __init__(
        self,
        settings: Settings,
        config: RiskConfig | None = None,
        producer=None,
    ) -> None:
        self.settings = settings
        self.config = config or RiskConfig.from_env()
        if settings.classifier_url and not self.config.classifier.endpoint_url:
            self.config.classifier.endpoint_url = settings.classifier_url
        self.producer = producer

        self.state_store = self._build_state_store()
        self.classifier_backend = (
            HttpClassifierBackend(self.config.classifier.endpoint_url)
            if self.config.classifier.endpoint_url
            else None
        )
        self.publisher = self._build_publisher()
        self.dispatcher = CaseEventDispatcher(
            self.publisher, max_pending=settings.case_event_queue_size
        )
        self.rule_sets = RuleSetHolder.from_config(self.config)
        if settings.rules_path:
            self.rule_sets.reload_from_file(settings.rules_path)

        self.pipeline = IngestionPipeline(
            state_store=self.state_store,
            rule_sets=self.rule_sets,
            classifier=ClassifierAdapter(self.classifier_backend, self.config.classifier),
            case_manager=CaseManager(self.config.cases, self.dispatcher),
            config=self.config,
        )
        self._maintenance_task: asyncio.Task | None = None

    def _build_state_store(self) -> EntityStateStore:
        if self.settings.state_backend == "redis":
            return RedisEntityStateStore.from_url(self.settings.redis_url, self.config.windows)
        if self.settings.state_backend != "memory":
            raise ValueError(f"Unknown state backend: {self.settings.state_backend}")
        return InMemoryEntityStateStore(self.config.windows)

    def _build_publisher(self) -> CaseEventPublisher:
        if self.producer is not None:
            return KafkaCaseEventPublisher(self.producer, self.config.cases.kafka_topic)
        return InMemoryCaseEventPublisher()

    @classmethod
    async def create(cls, settings: Settings, config: RiskConfig | None = None) -> "RiskService":
        producer = None
        if settings.kafka_enabled:
            try:
                producer = await create_producer(settings.kafka_bootstrap_servers)
            except Exception:
                logger.warning("kafka_producer_unavailable", exc_info=True)
        return cls(settings, config=config, producer=producer)

    def start(self) -> None:
        self.dispatcher.start()
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(
                self.pipeline.run_maintenance(self.settings.maintenance_interval_seconds)
            )
        logger.info(
            "risk_service_started",
            state_backend=self.settings.state_backend,
            rule_set_version=self.rule_sets.current.version,
            classifier_enabled=self.classifier_backend is not None,
            kafka_producer=self.producer is not None,
        )

    async def stop(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._maintenance_task
            self._maintenance_task = None
        await self.dispatcher.stop()
        if self.classifier_backend is not None:
            await self.classifier_backend.aclose()
        await self.state_store.aclose()
        if self.producer is not None:
            with contextlib.suppress(Exception):
                await self.producer.stop()
        logger.info("risk_service_stopped")


_service: RiskService | None = None


def get_service() -> RiskService:
    """Get or create the global RiskService singleton."""
    global _service
    if _service is None:
        from src.config import settings

        _service = RiskService(settings)
    return _service


def set_service(service: RiskService | None) -> None:
    global _service
    _service = service


def get_pipeline() -> IngestionPipeline:
    return get_service().pipeline
