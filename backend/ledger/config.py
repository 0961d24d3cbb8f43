"""
Application Configuration — Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "Entitlement Ledger API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"   # development | production

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'ledger.db'}"

    # --- TTL store (nonces, rate-limit counters) ---
    REDIS_URL: str = ""                # empty -> in-process store

    # --- Payment security ---
    PAYMENT_SECRET: str = "REPLACE_WITH_PAYMENT_SECRET"
    CALLBACK_SECRET: str = ""          # falls back to PAYMENT_SECRET
    REQUEST_SIGNATURE_WINDOW_SECONDS: int = 600
    CALLBACK_SIGNATURE_WINDOW_SECONDS: int = 300
    NONCE_TTL_SECONDS: int = 900
    PAYMENT_CALLBACK_IPS: str = ""     # comma separated allow-list, production only
    PAY_BASE_URL: str = "/api/payment/mock-complete"

    # --- Orders & subscriptions ---
    ORDER_TTL_MINUTES: int = 30
    ORDER_CURRENCY: str = "CNY"
    RENEWAL_NOTICE_DAYS: int = 3

    # --- Points ---
    DAILY_REWARD_BASE: int = 10       # scaled by the tier coin_multiplier

    # --- Sweeper ---
    SWEEPER_ENABLED: bool = False
    SWEEP_INTERVAL_SECONDS: int = 300

    # --- Admin ---
    ADMIN_TOKEN: str = ""
    CORS_ORIGINS: list[str] = ["*"]

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = str(BASE_DIR / "logs")

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True

    @property
    def callback_secret(self) -> str:
        return self.CALLBACK_SECRET or self.PAYMENT_SECRET

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
