"""Configuration management for the Vote API service."""
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    SERVICE_NAME: str = "vote-api"
    API_VERSION: str = "v1"
    DEBUG: bool = False

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Document store: "redis" in production, "memory" for local development
    STORE_BACKEND: str = "redis"

    # Redis configuration
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Paystack configuration
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_PUBLIC_KEY: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYMENT_CALLBACK_URL: Optional[str] = None
    PAYMENT_HTTP_TIMEOUT: float = 10.0
    PAYMENT_SESSION_TTL_SECONDS: int = 3600

    # Pricing (smallest currency unit)
    PRICE_PER_VOTE: int = 10000
    CURRENCY: str = "NGN"
    MAX_VOTES_PER_PURCHASE: int = 1000

    # Credit step retries
    CREDIT_MAX_ATTEMPTS: int = 3
    CREDIT_RETRY_BASE_DELAY: float = 0.2

    # Reference collision retries at ledger insert
    REFERENCE_MAX_ATTEMPTS: int = 3

    # Pending ledger entries older than this are anomalies
    STALE_PENDING_SECONDS: int = 1800

    # Static allow-list for the administrative endpoints
    ADMIN_API_KEYS: list = []

    # Rate limiting
    RATE_LIMIT: str = "30/minute"

    # CORS settings
    CORS_ORIGINS: list = ["http://localhost:3000", "http://localhost:5173"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list = ["*"]
    CORS_ALLOW_HEADERS: list = ["*"]

    SEED_ON_STARTUP: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def redis_url(self) -> str:
        """Generate Redis connection URL."""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


settings = Settings()
