from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ReferralCreditPolicy


DEFAULT_SESSION_SECRET = "change-me-wallet-session-secret"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Storage ---
    # Empty means the in-memory store (demo / tests).
    DATABASE_URL: str = ""
    SEED_DEMO_USER: bool = False

    # --- Sessions ---
    SESSION_SECRET: str = DEFAULT_SESSION_SECRET
    SESSION_MAX_AGE: int = 30 * 24 * 60 * 60
    SESSION_HTTPS_ONLY: bool = False

    # --- Admin bootstrap ---
    ADMIN_USERNAME: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None

    # --- Pricing / rewards ---
    DEFAULT_OTP_COST: Decimal = Decimal("1")
    REFERRAL_BONUS: Decimal = Decimal("10")
    REFERRAL_CREDIT_POLICY: ReferralCreditPolicy = ReferralCreditPolicy.MANUAL

    # --- HTTP ---
    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    @property
    def database_url(self) -> str:
        # Railway/Heroku hand out postgres://; SQLAlchemy expects postgresql://
        if self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql://", 1)
        return self.DATABASE_URL

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


def get_settings() -> Settings:
    return Settings()
