from decimal import Decimal
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
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    session_max_age_seconds: int = Field(default=7 * 24 * 3600, alias="SESSION_MAX_AGE_SECONDS")

    # Credit store: "mongo" or "memory"
    storage_backend: str = Field(default="mongo", alias="STORAGE_BACKEND")
    storage_retry_attempts: int = Field(default=3, alias="STORAGE_RETRY_ATTEMPTS")
    storage_retry_wait_seconds: float = Field(default=0.05, alias="STORAGE_RETRY_WAIT_SECONDS")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="tenant_credits", alias="MONGODB_DB_NAME")

    # Redis (balance audit worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Stripe
    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance_seconds: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE_SECONDS")
    # Events signed with an API version outside this prefix are logged, still processed
    stripe_api_version_prefix: str = Field(default="2025", alias="STRIPE_API_VERSION_PREFIX")
    checkout_currency: str = Field(default="brl", alias="CHECKOUT_CURRENCY")
    checkout_min_amount: Decimal = Field(default=Decimal("50.00"), alias="CHECKOUT_MIN_AMOUNT")

    # Credits
    courtesy_default_amount: Decimal = Field(default=Decimal("10.00"), alias="COURTESY_DEFAULT_AMOUNT")

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


@lru_cache
def get_settings() -> Settings:
    return Settings()
