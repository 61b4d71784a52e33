"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import HTTPException, Request, status
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Meta Marketing API
    META_ACCESS_TOKEN: Optional[str] = None
    META_ACCOUNT_ID: Optional[str] = None
    META_API_VERSION: str = "v23.0"
    META_GRAPH_URL: str = "https://graph.facebook.com"

    # Cache backend: memory | sql | redis
    CACHE_BACKEND: str = "memory"
    CACHE_DATABASE_URL: str = "sqlite:///./adsync_cache.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_QUOTA_BYTES: Optional[int] = 5 * 1024 * 1024  # browser-sized default

    # Sync defaults (overridable per request)
    SYNC_MAX_MONTHS: int = 0  # 0 = probe the retention limit
    SYNC_LIMIT_PER_REQUEST: int = 25
    SYNC_SKIP_CREATIVES: bool = False
    SYNC_DEBUG_MODE: bool = False
    SYNC_EXHAUSTIVE_COVERAGE: bool = False

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    def sync_settings(self) -> "SyncSettings":
        """Per-run sync configuration derived from the process defaults."""
        return SyncSettings(
            max_months=self.SYNC_MAX_MONTHS or None,
            limit_per_request=min(self.SYNC_LIMIT_PER_REQUEST, 25),
            skip_creatives=self.SYNC_SKIP_CREATIVES,
            debug_mode=self.SYNC_DEBUG_MODE,
            exhaustive_coverage=self.SYNC_EXHAUSTIVE_COVERAGE,
        )


class SyncSettings(BaseModel):
    """Configuration surface for a single sync run.

    WHAT:
        The knobs the dashboard exposes to users: lookback override, page size,
        creative enrichment opt-out, verbose logging.
    WHY:
        Passed in as plain values per run so two accounts can sync with
        different settings inside one process.
    """

    max_months: Optional[int] = Field(default=None, ge=1, le=37)
    limit_per_request: int = Field(default=25, ge=1, le=25)
    skip_creatives: bool = False
    debug_mode: bool = False
    exhaustive_coverage: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_sync_context(request: Request):
    """Resolve the process-wide SyncContext built in the app lifespan."""
    context = getattr(request.app.state, "sync_context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return context
