# core/config.py
from pydantic import Field, AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ────────────────────────────────
    # 1. APP & ENVIRONMENT
    # ────────────────────────────────
    PROJECT_NAME: str = "mlFor"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)
    BACKEND_URL: str = "http://127.0.0.1:8000"

    # ────────────────────────────────
    # 2. FRONTEND
    # ────────────────────────────────
    FRONTEND_URL: AnyUrl = Field(
        default="https://mlfor.ng",
        description="Base URL for the storefront (used for default payment callbacks)",
    )

    # ────────────────────────────────
    # 3. FIREBASE / FIRESTORE
    # ────────────────────────────────
    # Base64-encoded Firebase service account JSON
    FIREBASE_KEY: Optional[str] = Field(
        default=None,
        description="Base64-encoded Firebase service account JSON",
    )

    # ────────────────────────────────
    # 4. PAYSTACK
    # All four are required: a missing key must stop the process at startup.
    # ────────────────────────────────
    PAYSTACK_BASE_URL: AnyUrl = Field(...)
    PAYSTACK_SECRET_KEY: str = Field(...)
    PAYSTACK_PUBLIC_KEY: str = Field(...)
    PAYSTACK_WEBHOOK_SECRET: str = Field(...)
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # ────────────────────────────────
    # 5. PAYMENTS
    # ────────────────────────────────
    PAYMENT_CURRENCY: str = "NGN"
    PAYMENT_REFERENCE_PREFIX: str = "MLF"
    PAYMENT_ABANDON_AFTER_MINUTES: int = 60
    PAYMENT_MAX_RETRIES: int = 3

    # Token bucket for initialize/retry calls, per user
    INITIALIZE_RATE_LIMIT: int = 10
    INITIALIZE_RATE_WINDOW_SECONDS: int = 60

    # ────────────────────────────────
    # 6. TASK QUEUE (Celery)
    # ────────────────────────────────
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/0")

    # ────────────────────────────────
    # 7. EMAIL (Resend)
    # ────────────────────────────────
    RESEND_API_KEY: Optional[str] = None
    EMAIL_SENDER: str = "mlFor Orders <orders@mlfor.ng>"


# Create singleton
settings = Settings()
