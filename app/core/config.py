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
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # Storage: "memory" (dev/tests) or "mongo"
    storage_backend: str = Field(default="memory", alias="STORAGE_BACKEND")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="dropstrike", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set
    mongodb_transactions: bool = Field(default=True, alias="MONGODB_TRANSACTIONS")

    # Redis (worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Auth
    bcrypt_rounds: int = Field(default=12, alias="BCRYPT_ROUNDS")
    session_max_age_seconds: int = Field(default=7 * 24 * 3600, alias="SESSION_MAX_AGE")

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

    # Coin economy (seeds the stored payout policy)
    base_coin_to_usd_rate: Decimal = Field(default=Decimal("0.001"), alias="BASE_COIN_TO_USD_RATE")
    min_payout_amount: Decimal = Field(default=Decimal("1.00"), alias="MIN_PAYOUT_AMOUNT")
    max_payout_amount: Decimal = Field(default=Decimal("10000.00"), alias="MAX_PAYOUT_AMOUNT")
    platform_fee_rate: Decimal = Field(default=Decimal("0.05"), alias="PLATFORM_FEE_RATE")
    gateway_fee_rate: Decimal = Field(default=Decimal("0.02"), alias="GATEWAY_FEE_RATE")
    gateway_fee_min: Decimal = Field(default=Decimal("0.25"), alias="GATEWAY_FEE_MIN")
    gateway_fee_max: Decimal = Field(default=Decimal("20.00"), alias="GATEWAY_FEE_MAX")
    payouts_enabled: bool = Field(default=True, alias="PAYOUTS_ENABLED")

    # PayPal Payouts: "disabled", "sandbox" or "live"
    paypal_mode: str = Field(default="disabled", alias="PAYPAL_MODE")
    paypal_client_id: str = Field(default="", alias="PAYPAL_CLIENT_ID")
    paypal_client_secret: str = Field(default="", alias="PAYPAL_CLIENT_SECRET")
    paypal_timeout_seconds: float = Field(default=30.0, alias="PAYPAL_TIMEOUT_SECONDS")

    # Optimistic concurrency on account writes
    ledger_max_retries: int = Field(default=8, alias="LEDGER_MAX_RETRIES")


@lru_cache
def get_settings() -> Settings:
    return Settings()
