from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "homefeed-api"
    app_version: str = "0.1.0"
    environment: str = "dev"
    log_level: str = "info"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    feed_default_page_size: int = 20
    feed_max_page_size: int = 100
    feed_tier_count: int = 5
    feed_rotation_max_iterations: int = 50
    feed_session_ttl_seconds: int = 1800
    feed_session_max_entries: int = 10_000
    feed_seed_demo_listings: bool = True
    otel_enabled: bool = True
    otel_service_name: str = "homefeed-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="HF_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
