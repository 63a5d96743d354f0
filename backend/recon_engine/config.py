import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/recon_engine"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Managed Postgres hands out postgresql:// URLs; asyncpg needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    encryption_key: str = ""

    # Redis: cache versions, progress snapshots, job markers, event pub/sub
    redis_url: str = "redis://localhost:6379/0"
    cache_prefix: str = "erp:"
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    # Business day boundaries for source windows and date ranges
    timezone: str = "Asia/Manila"

    # External providers
    meta_graph_api_base: str = "https://graph.facebook.com/v23.0"
    pancake_pos_api_base: str = "https://pos.pages.fm/api/v1"
    http_timeout_seconds: float = 30.0
    fetch_retry_backoff: str = "2,5,10"  # seconds between attempts on 429/5xx/network errors

    # Default inter-entity delays; workflow sources.*.rate_limit_ms overrides
    meta_rate_limit_delay_ms: int = 3000
    pos_rate_limit_delay_ms: int = 3000

    # Workflow execution
    workflow_process_inline: bool = False  # True = skip Celery, run in-process
    workflow_execution_stale_minutes: int = 30
    workflow_reconcile_enabled: bool = True  # run reconcile + aggregate after each date
    workflow_stale_sweep_enabled: bool = True
    workflow_stale_sweep_interval_seconds: int = 60
    workflow_scheduler_interval_seconds: int = 60
    workflow_cancel_poll_seconds: float = 0.0  # 0 = read status at every checkpoint
    progress_ttl_seconds: int = 86400

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def result_backend(self) -> str:
        return self.celery_result_backend or self.redis_url

    @property
    def retry_backoff_schedule(self) -> list[float]:
        """Parsed backoff schedule, e.g. "2,5,10" -> [2.0, 5.0, 10.0]."""
        schedule = []
        for part in self.fetch_retry_backoff.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                schedule.append(max(float(part), 0.0))
            except ValueError:
                logger.warning(f"Ignoring invalid FETCH_RETRY_BACKOFF entry: {part!r}")
        return schedule


@lru_cache
def get_settings() -> Settings:
    return Settings()
