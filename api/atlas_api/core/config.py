from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "flight-school-atlas-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    scheduler_key_hash: str | None = None
    resolver_timeout_seconds: float = 5.0
    resolver_confidence_threshold: float = 0.7
    extract_base_url: str = "https://api.firecrawl.dev"
    extract_api_key: str | None = None
    extract_timeout_seconds: float = 60.0
    crawl_lease_seconds: int = 900
    places_base_url: str = "https://places.googleapis.com"
    places_api_key: str | None = None
    places_timeout_seconds: float = 10.0
    email_base_url: str = "https://api.resend.com"
    email_api_key: str | None = None
    email_from: str = "Flight School Directory <noreply@example.com>"
    email_timeout_seconds: float = 10.0
    public_base_url: str = "http://localhost:3000"
    claim_token_ttl_hours: int = 24
    claim_email_failure_fatal: bool = False
    auto_approve_pipeline_facts: bool = True
    refresh_stale_after_days: int = 180
    dedupe_link_threshold: float = 0.72
    dedupe_merge_threshold: float = 0.85
    discover_quota_per_minute: int = 10
    import_quota_per_day: int = 50
    quota_fail_open: bool = True
    otel_enabled: bool = True
    otel_service_name: str = "flight-school-atlas-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ATLAS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
