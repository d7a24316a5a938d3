from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="orbit_credits", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set; off = single-doc guards + compensation
    mongodb_transactions: bool = Field(default=True, alias="MONGODB_TRANSACTIONS")

    # Redis (arq broker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Pricing config: max staleness of the cached read
    pricing_cache_ttl_seconds: float = Field(default=60, alias="PRICING_CACHE_TTL_SECONDS")

    # Streak compare-and-set retries before PersistenceConflict
    streak_update_max_attempts: int = Field(default=3, alias="STREAK_UPDATE_MAX_ATTEMPTS")

    # Early-access unlock retries while another request holds a pending claim
    unlock_max_attempts: int = Field(default=4, alias="UNLOCK_MAX_ATTEMPTS")
    unlock_retry_delay_seconds: float = Field(default=0.05, alias="UNLOCK_RETRY_DELAY_SECONDS")

    # Monthly refresh cron: max users per run
    refresh_batch_limit: int = Field(default=500, alias="REFRESH_BATCH_LIMIT")


@lru_cache
def get_settings() -> Settings:
    return Settings()
