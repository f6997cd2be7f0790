"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "risk-engine"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    host: str = "0.0.0.0"
    port: int = 8000

    kafka_enabled: bool = True
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_consumer_group: str = "risk-engine"
    kafka_auto_offset_reset: str = "earliest"
    kafka_max_in_flight: int = 100
    transactions_topic: str = "payments.transactions"

    # "memory" or "redis"
    state_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # YAML rule file; the built-in defaults are used when unset
    rules_path: str | None = None

    classifier_url: str | None = None

    maintenance_interval_seconds: float = 300.0
    case_event_queue_size: int = 10_000

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}


settings = Settings()
