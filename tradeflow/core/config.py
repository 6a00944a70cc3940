"""
Application configuration with environment variables.
"""
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field, field_validator
from typing import Optional, List


PAYMENT_TERMS_DAYS = {
    "NET_0": 0,
    "NET_7": 7,
    "NET_14": 14,
    "NET_30": 30,
}


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "TradeFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    POSTGRES_USER: str = "tradeflow"
    POSTGRES_PASSWORD: str = "tradeflow"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "tradeflow"
    DATABASE_URL: Optional[str] = Field(default=None, validate_default=True)

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # =========================================
    # Commerce Settings
    # =========================================

    DEFAULT_CURRENCY: str = "SAR"
    VAT_RATE_PERCENT: float = 15.0
    PLATFORM_FEE_RATE_PERCENT: float = 0.0
    DEFAULT_PAYMENT_TERMS: str = "NET_30"

    # SLA deadlines recorded on new orders (advisory only)
    CONFIRMATION_SLA_HOURS: int = 24
    SHIPPING_SLA_BUFFER_DAYS: int = 2
    DELIVERY_SLA_DAYS: int = 7
    SLA_AT_RISK_PERCENT: float = 80.0

    # Seller alias resolution cache
    PERMISSION_CACHE_TTL_SECONDS: int = 300

    # Outbox
    OUTBOX_INLINE_DISPATCH: bool = True
    OUTBOX_BATCH_SIZE: int = 50
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_BASE_RETRY_SECONDS: int = 1
    OUTBOX_MAX_RETRY_SECONDS: int = 300
    # A claimed event whose handler never reported back is retried after this
    OUTBOX_LEASE_SECONDS: int = 300

    # Reconciliation schedule
    QUOTE_EXPIRY_INTERVAL_SECONDS: int = 900
    INVOICE_OVERDUE_INTERVAL_SECONDS: int = 3600
    OUTBOX_DISPATCH_INTERVAL_SECONDS: int = 60

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def assemble_db_url(cls, v: Optional[str], info) -> str:
        if isinstance(v, str) and v:
            return v

        data = info.data
        user = data.get("POSTGRES_USER", "tradeflow")
        password = data.get("POSTGRES_PASSWORD", "tradeflow")
        host = data.get("POSTGRES_HOST", "postgres")
        port = data.get("POSTGRES_PORT", "5432")
        db = data.get("POSTGRES_DB", "tradeflow")

        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @field_validator('VAT_RATE_PERCENT', 'PLATFORM_FEE_RATE_PERCENT', 'SLA_AT_RISK_PERCENT')
    @classmethod
    def validate_percent(cls, v: float) -> float:
        if v < 0 or v > 100:
            raise ValueError("Percentages must be between 0 and 100")
        return v

    @field_validator('DEFAULT_PAYMENT_TERMS')
    @classmethod
    def validate_payment_terms(cls, v: str) -> str:
        if v not in PAYMENT_TERMS_DAYS:
            raise ValueError(
                f"Unknown payment terms {v!r}. Expected one of: {', '.join(PAYMENT_TERMS_DAYS)}"
            )
        return v

    @field_validator('OUTBOX_MAX_ATTEMPTS', 'OUTBOX_BATCH_SIZE', 'OUTBOX_LEASE_SECONDS')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Outbox batch size, attempts and lease must be at least 1")
        return v


settings = Settings()
