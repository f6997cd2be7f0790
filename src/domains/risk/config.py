"""Risk engine configuration with sensible defaults.

Amounts are integer minor units (cents for USD). Durations are seconds.
"""

import os
from dataclasses import dataclass, field


@dataclass
class WindowConfig:
    # Window name -> duration in seconds
    durations: dict[str, int] = field(
        default_factory=lambda: {"1h": 3_600, "24h": 86_400, "7d": 604_800}
    )
    max_entries_per_window: int = 10_000
    sweep_interval_seconds: int = 300

    @property
    def longest_seconds(self) -> int:
        return max(self.durations.values()) if self.durations else 0


@dataclass
class VelocityDefaults:
    count_1h_max: int = 10
    count_24h_max: int = 20


@dataclass
class StructuringDefaults:
    # $10,000 reporting threshold
    threshold: int = 1_000_000
    proximity: float = 0.1
    window: str = "24h"
    min_transactions: int = 3


@dataclass
class RoundAmountDefaults:
    round_unit: int = 100_000
    min_amount: int = 300_000


@dataclass
class GeoDefaults:
    high_risk_countries: tuple[str, ...] = ("AF", "MM", "YE", "SS", "VE", "NG")
    sanctioned_countries: tuple[str, ...] = ("KP", "IR", "SY", "CU")
    high_risk_score: float = 70.0
    # Country -> rating 0-100 for GEOGRAPHIC_RISK
    country_ratings: dict[str, float] = field(
        default_factory=lambda: {
            "AF": 85.0,
            "MM": 80.0,
            "YE": 80.0,
            "SS": 75.0,
            "VE": 70.0,
            "PA": 55.0,
            "NG": 60.0,
            "KP": 100.0,
            "IR": 100.0,
            "SY": 100.0,
            "CU": 100.0,
        }
    )
    min_rating: float = 50.0


@dataclass
class ClassifierSettings:
    timeout_ms: float = 25.0
    endpoint_url: str | None = None


@dataclass
class AggregationPolicy:
    review_threshold: float = 60.0
    block_threshold: float = 90.0
    # "max" keeps a strong rule from being diluted by a low model score
    blend_strategy: str = "max"
    blend_factor: float = 0.5


@dataclass
class CaseSettings:
    correlation_window_seconds: float = 3_600.0
    # None disables engine-initiated dismissal
    auto_dismiss_ttl_seconds: float | None = None
    # CLOSED cases and their alerts are dropped from memory after this long
    closed_retention_seconds: float = 2_592_000.0
    kafka_topic: str = "risk.case.events"


@dataclass
class IngestionLimits:
    allowed_currencies: tuple[str, ...] = ("USD", "EUR", "GBP")
    max_amount: int = 100_000_000
    idempotency_cache_size: int = 100_000


@dataclass
class RiskConfig:
    windows: WindowConfig = field(default_factory=WindowConfig)
    velocity: VelocityDefaults = field(default_factory=VelocityDefaults)
    structuring: StructuringDefaults = field(default_factory=StructuringDefaults)
    round_amount: RoundAmountDefaults = field(default_factory=RoundAmountDefaults)
    geo: GeoDefaults = field(default_factory=GeoDefaults)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)
    aggregation: AggregationPolicy = field(default_factory=AggregationPolicy)
    cases: CaseSettings = field(default_factory=CaseSettings)
    ingestion: IngestionLimits = field(default_factory=IngestionLimits)

    @classmethod
    def from_env(cls) -> "RiskConfig":
        """Load config with env var overrides. Env vars use RISK_ prefix."""
        config = cls()

        # Aggregation overrides
        if v := os.getenv("RISK_REVIEW_THRESHOLD"):
            config.aggregation.review_threshold = float(v)
        if v := os.getenv("RISK_BLOCK_THRESHOLD"):
            config.aggregation.block_threshold = float(v)
        if v := os.getenv("RISK_BLEND_STRATEGY"):
            config.aggregation.blend_strategy = v
        if v := os.getenv("RISK_BLEND_FACTOR"):
            config.aggregation.blend_factor = float(v)

        # Classifier overrides
        if v := os.getenv("RISK_CLASSIFIER_TIMEOUT_MS"):
            config.classifier.timeout_ms = float(v)
        if v := os.getenv("RISK_CLASSIFIER_URL"):
            config.classifier.endpoint_url = v

        # Structuring overrides
        if v := os.getenv("RISK_STRUCTURING_THRESHOLD"):
            config.structuring.threshold = int(v)
        if v := os.getenv("RISK_STRUCTURING_PROXIMITY"):
            config.structuring.proximity = float(v)

        # Case overrides
        if v := os.getenv("RISK_CORRELATION_WINDOW_SECONDS"):
            config.cases.correlation_window_seconds = float(v)
        if v := os.getenv("RISK_AUTO_DISMISS_TTL_SECONDS"):
            config.cases.auto_dismiss_ttl_seconds = float(v)
        if v := os.getenv("RISK_CLOSED_CASE_RETENTION_SECONDS"):
            config.cases.closed_retention_seconds = float(v)
        if v := os.getenv("RISK_CASE_KAFKA_TOPIC"):
            config.cases.kafka_topic = v

        # Ingestion overrides
        if v := os.getenv("RISK_ALLOWED_CURRENCIES"):
            config.ingestion.allowed_currencies = tuple(
                c.strip().upper() for c in v.split(",") if c.strip()
            )
        if v := os.getenv("RISK_MAX_AMOUNT"):
            config.ingestion.max_amount = int(v)

        return config


# Module-level default instance
default_config = RiskConfig()
