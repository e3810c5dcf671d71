import json
from typing import Any, Dict, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Database
    DATABASE_USER: str = "settlement"
    DATABASE_PASSWORD: str = "settlement"
    DATABASE_HOST: str = "localhost"
    DATABASE_PORT: int = 5432
    DATABASE_NAME: str = "settlement"

    # Identity provider tokens (verified here, issued elsewhere)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ADMIN_EMAILS_STR: str = Field(default="", alias="ADMIN_EMAILS")

    @property
    def ADMIN_EMAILS(self) -> List[str]:
        return [email.strip().lower() for email in self.ADMIN_EMAILS_STR.split(',') if email.strip()]

    LOG_LEVEL: str = "INFO"

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379

    # Payment processor callbacks
    PAYMENT_WEBHOOK_SECRET: str

    # FX provider and rate store
    FX_PROVIDER_URL: str = "https://open.er-api.com/v6"
    FX_BASE_CURRENCY: str = "USD"
    FX_SUPPORTED_CURRENCIES_STR: str = Field(default="USD,EUR,GBP,AUD,CAD,JPY", alias="FX_SUPPORTED_CURRENCIES")
    FX_REFRESH_INTERVAL_SECONDS: int = 60 * 30
    FX_TIMEOUT_SECONDS: float = 5.0

    @property
    def FX_SUPPORTED_CURRENCIES(self) -> List[str]:
        return [code.strip().upper() for code in self.FX_SUPPORTED_CURRENCIES_STR.split(',') if code.strip()]

    # Discounts and commissions, in percent
    REFERRAL_DISCOUNT_PERCENT: int = 10
    COMMISSION_PERCENT: int = 10

    # Fraud review thresholds
    FRAUD_WINDOW_MINUTES: int = 60
    FRAUD_MAX_ATTRIBUTIONS_PER_AFFILIATE: int = 20
    FRAUD_MAX_COMMISSIONS_PER_AFFILIATE: int = 20
    FRAUD_MAX_ATTRIBUTIONS_PER_IP: int = 5

    WEB_URL: str = "http://localhost:3000"
    CORS_ORIGINS_STR: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    @property
    def CORS_ORIGINS(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS_STR.split(',') if origin.strip()]

    # Per-action limits: {"action": {"limit": N, "window_seconds": W}}
    RATE_LIMITS_JSON: str = Field(
        default=(
            '{"payment_attempt": {"limit": 10, "window_seconds": 600},'
            ' "promo_validation": {"limit": 10, "window_seconds": 300},'
            ' "vcash_read": {"limit": 60, "window_seconds": 60},'
            ' "affiliate_read": {"limit": 60, "window_seconds": 60},'
            ' "affiliate_write": {"limit": 10, "window_seconds": 300}}'
        )
    )
    RATE_LIMIT_STORAGE_URI: str | None = None

    # Parsed from RATE_LIMITS_JSON
    RATE_LIMITS: Dict[str, Any] = Field(default={}, validate_default=True)

    @field_validator("RATE_LIMITS", mode="before")
    def parse_rate_limits(cls, v, values):
        json_str = values.data.get("RATE_LIMITS_JSON")
        if json_str:
            return json.loads(json_str)
        return v

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    @property
    def LIMITS_STORAGE_URI(self) -> str:
        return self.RATE_LIMIT_STORAGE_URI or f"async+{self.REDIS_URL}"

    @property
    def DATABASE_URL(self) -> str:
        return f"postgresql+psycopg2://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"

    model_config = SettingsConfigDict(env_file=".env", populate_by_name=True)

settings = Settings()
