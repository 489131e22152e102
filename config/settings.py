"""App settings: loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # development | production
    APP_ENV = os.getenv("APP_ENV", "development")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///reelvault.db")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "reelvault-dev-secret-change-in-prod")

    # Video proxy token signing
    VIDEO_TOKEN_SECRET = os.getenv(
        "VIDEO_TOKEN_SECRET",
        "reelvault-dev-video-key-change-in-prod"
    )

    # Public base URL (provider callback / return URLs)
    BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")

    # Where the browser lands after a redirect callback
    PAYMENT_RESULT_PATH = os.getenv("PAYMENT_RESULT_PATH", "/payments/result")

    # RaksmeyPay / Bakong KHQR (all three set = real provider)
    RAKSMEYPAY_PROFILE_ID = os.getenv("RAKSMEYPAY_PROFILE_ID", "")
    RAKSMEYPAY_PROFILE_KEY = os.getenv("RAKSMEYPAY_PROFILE_KEY", "")
    RAKSMEYPAY_BASE_URL = os.getenv("RAKSMEYPAY_BASE_URL", "https://raksmeypay.com")
    BAKONG_ACCOUNT_ID = os.getenv("BAKONG_ACCOUNT_ID", "")
    BAKONG_MERCHANT_NAME = os.getenv("BAKONG_MERCHANT_NAME", "ReelVault")
    BAKONG_MERCHANT_CITY = os.getenv("BAKONG_MERCHANT_CITY", "Phnom Penh")

    # Mock provider (development)
    MOCK_WEBHOOK_SECRET = os.getenv("MOCK_WEBHOOK_SECRET", "mock-secret")
    MOCK_PAYMENT_SECRET = os.getenv("MOCK_PAYMENT_SECRET", "dev-only-secret-12345")

    # Admin API key (for protected admin endpoints like manual payment confirmation)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


settings = Settings()
