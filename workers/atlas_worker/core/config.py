from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    scheduler_key: str = "local-scheduler-key"
    request_timeout_seconds: float = 120.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 300.0
    resolve_interval_seconds: float = 300.0
    resolve_batch_size: int = 50
    promote_interval_seconds: float = 300.0
    promote_batch_size: int = 50
    crawl_interval_seconds: float = 60.0
    crawl_batch_size: int = 20
    reap_interval_seconds: float = 300.0
    reap_batch_size: int = 100
    normalize_interval_seconds: float = 900.0
    normalize_batch_size: int = 20
    dedupe_interval_seconds: float = 3600.0
    refresh_interval_seconds: float = 86400.0
    refresh_batch_size: int = 50
    otel_enabled: bool = True
    otel_service_name: str = "flight-school-atlas-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ATLAS_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
