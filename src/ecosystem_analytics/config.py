from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="allow", populate_by_name=True)

    # Core API Settings
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    migrate_on_start: bool = Field(False, alias="MIGRATE_ON_START")

    # Datastore: explicit URL wins, then Supabase, then a local SQLite file
    database_url: str | None = Field(None, alias="DATABASE_URL")
    supabase_project_ref: str | None = Field(None, alias="SUPABASE_PROJECT_REF")
    supabase_db_password: str | None = Field(None, alias="SUPABASE_DB_PASSWORD")
    supabase_db_user: str = Field("postgres", alias="SUPABASE_DB_USER")
    supabase_db_name: str = Field("postgres", alias="SUPABASE_DB_NAME")
    sqlite_path: str = Field("./ecosystem_analytics.db", alias="SQLITE_PATH")

    # Redis: Celery broker and optional query cache
    redis_url: str | None = Field(None, alias="REDIS_URL")
    query_cache_ttl_seconds: int = Field(30, alias="QUERY_CACHE_TTL_SECONDS")

    # Ingestion
    ingest_secret: str | None = Field(None, alias="INGEST_SECRET")
    max_batch_size: int = Field(1000, alias="MAX_BATCH_SIZE")
    max_metadata_keys: int = Field(100, alias="MAX_METADATA_KEYS")
    velocity_event_types: str = Field("install", alias="VELOCITY_EVENT_TYPES")  # comma list
    conversion_event_types: str = Field("install,usage,conversion", alias="CONVERSION_EVENT_TYPES")  # comma list
    attribution_window_hours: int = Field(48, alias="ATTRIBUTION_WINDOW_HOURS")

    # Maintenance tasks
    reconcile_grace_minutes: int = Field(10, alias="RECONCILE_GRACE_MINUTES")
    reconcile_batch_size: int = Field(500, alias="RECONCILE_BATCH_SIZE")
    referral_retention_days: int = Field(30, alias="REFERRAL_RETENTION_DAYS")

    # Client-side emitter (runs inside CLI/SDK integrations)
    analytics_enabled: bool = Field(True, alias="ANALYTICS_ENABLED")
    analytics_api_url: str = Field("http://localhost:8000", alias="ANALYTICS_API_URL")
    analytics_timeout_seconds: float = Field(2.0, alias="ANALYTICS_TIMEOUT_SECONDS")
    analytics_batch_timeout_seconds: float = Field(5.0, alias="ANALYTICS_BATCH_TIMEOUT_SECONDS")
    analytics_queue_max_events: int = Field(100, alias="ANALYTICS_QUEUE_MAX_EVENTS")
    analytics_state_dir: str = Field("~/.ecosystem-analytics", alias="ANALYTICS_STATE_DIR")
    analytics_product: str = Field("registry", alias="ANALYTICS_PRODUCT")
    analytics_source: str = Field("registry-cli", alias="ANALYTICS_SOURCE")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_event_types(raw: str | None) -> set[str]:
    return {e.strip() for e in raw.split(",") if e.strip()} if raw else set()
