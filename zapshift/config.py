import os
from pathlib import Path
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

ENV_VARS = {
    "database_url": "DATABASE_URL",
    "database_echo": "DATABASE_ECHO",
    "stripe_secret_key": "STRIPE_SECRET_KEY",
    "stripe_webhook_secret": "STRIPE_WEBHOOK_SECRET",
    "jwt_secret": "JWT_SECRET",
    "site_domain": "SITE_DOMAIN",
    "payment_currency": "PAYMENT_CURRENCY",
    "log_level": "LOG_LEVEL",
}


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./zapshift.db"
    database_echo: bool = False
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    jwt_secret: str | None = None
    site_domain: str = "http://localhost:5173"
    payment_currency: str = "usd"
    log_level: str = "INFO"

    @field_validator("site_domain")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("payment_currency")
    @classmethod
    def lower_currency(cls, value: str) -> str:
        return value.lower()

    @field_validator("log_level")
    @classmethod
    def upper_level(cls, value: str) -> str:
        return value.upper()


def load_settings() -> Settings:
    """Read settings from the environment; called once per application start."""
    values = {field: os.getenv(name) for field, name in ENV_VARS.items()}
    return Settings(**{field: value for field, value in values.items() if value is not None})
