"""
Configuration module for the reconciliation worker.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Application configuration."""

    # Store Configuration
    STORE_BACKEND = os.getenv('STORE_BACKEND', 'redis')
    REDIS_HOST = os.getenv('REDIS_HOST', 'localhost')
    REDIS_PORT = int(os.getenv('REDIS_PORT', '6379'))
    REDIS_DB = int(os.getenv('REDIS_DB', '0'))
    REDIS_PASSWORD = os.getenv('REDIS_PASSWORD') or None

    # Paystack Configuration
    PAYSTACK_SECRET_KEY = os.getenv('PAYSTACK_SECRET_KEY') or None
    PAYSTACK_BASE_URL = os.getenv('PAYSTACK_BASE_URL', 'https://api.paystack.co')
    PAYMENT_HTTP_TIMEOUT = float(os.getenv('PAYMENT_HTTP_TIMEOUT', '10.0'))
    CURRENCY = os.getenv('CURRENCY', 'NGN')

    # Pricing
    PRICE_PER_VOTE = int(os.getenv('PRICE_PER_VOTE', '10000'))

    # Reconciliation Configuration
    RECONCILE_INTERVAL_SECONDS = float(os.getenv('RECONCILE_INTERVAL_SECONDS', '300'))
    STALE_PENDING_SECONDS = float(os.getenv('STALE_PENDING_SECONDS', '1800'))
    RECONCILE_VERIFY_WITH_PROVIDER = _flag('RECONCILE_VERIFY_WITH_PROVIDER', 'true')

    # Retry Configuration
    CREDIT_MAX_ATTEMPTS = int(os.getenv('CREDIT_MAX_ATTEMPTS', '3'))
    CREDIT_RETRY_BASE_DELAY = float(os.getenv('CREDIT_RETRY_BASE_DELAY', '0.2'))

    # Prometheus Configuration
    PROMETHEUS_PORT = int(os.getenv('PROMETHEUS_PORT', '8002'))

    # Logging Configuration
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


config = Config()
