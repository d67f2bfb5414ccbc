"""
Runtime configuration for the fulfillment service
Values come from the environment (a .env file is loaded at start-up)
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Service settings read from environment variables"""

    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./fulfillment.db")
        self.secret_key = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
        self.access_token_expire_minutes = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.rate_limit_enabled = _get_bool("RATE_LIMIT_ENABLED", True)
        self.prescription_validity_days = int(os.getenv("PRESCRIPTION_VALIDITY_DAYS", "30"))
        self.subscription_period_days = int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30"))
        self.default_currency = os.getenv("DEFAULT_CURRENCY", "TZS")


settings = Settings()
