from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./booknow.db",
        alias="DATABASE_URL"
    )

    # Security
    secret_key: str = Field(default="dev-secret-key-at-least-32-characters-long-for-development", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS - Frontend URLs (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
        alias="ALLOWED_ORIGINS"
    )

    # ==============================================
    # Stripe (Server-Side Only!)
    # ==============================================
    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")

    # ISO currency for payment intents, amounts are sent in minor units
    payment_currency: str = Field(default="inr", alias="PAYMENT_CURRENCY")

    # Upper bound for every call to the payment provider
    payment_gateway_timeout_seconds: int = Field(default=15, alias="PAYMENT_GATEWAY_TIMEOUT_SECONDS")

    # ==============================================
    # Booking policy
    # ==============================================
    # Reject bookings that would push any night above the hotel's room count
    enforce_room_capacity: bool = Field(default=True, alias="ENFORCE_ROOM_CAPACITY")
    max_stay_nights: int = Field(default=30, alias="MAX_STAY_NIGHTS")

    # ==============================================
    # Email (optional - logged only when SMTP_HOST is empty)
    # ==============================================
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_username: str = Field(default="", alias="SMTP_USERNAME")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, alias="SMTP_USE_TLS")
    smtp_timeout_seconds: int = Field(default=10, alias="SMTP_TIMEOUT_SECONDS")
    email_from: str = Field(default="BookNow <no-reply@booknow.local>", alias="EMAIL_FROM")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # Rate limiting (memory:// or redis://host:port)
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")
    booking_rate_limit: str = Field(default="30/minute", alias="BOOKING_RATE_LIMIT")

    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate SECRET_KEY is strong enough"""
        if not v:
            raise ValueError("SECRET_KEY is required and cannot be empty")
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator('payment_currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host)

    @property
    def cors_origins(self) -> List[str]:
        """
        Parse allowed origins from comma-separated string.
        Returns a list suitable for CORSMiddleware.
        """
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins or ["http://localhost:5173"]

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
