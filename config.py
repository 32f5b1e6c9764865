"""
Application settings

Values come from the environment (a local .env file is loaded first).
"""
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class Settings:
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    jwt_secret: str = "change-me"
    jwt_expires_hours: int = 24
    reset_token_expires_minutes: int = 60
    bcrypt_rounds: int = 12

    # Check-only stock by default; reserve (decrement) on order creation when enabled
    reserve_stock: bool = False

    pesapal_consumer_key: Optional[str] = None
    pesapal_consumer_secret: Optional[str] = None
    pesapal_api_url: str = "https://pay.pesapal.com/v3"
    pesapal_currency: str = "KES"
    pesapal_country_code: str = "KE"
    pesapal_timeout: float = 15.0
    pesapal_webhook_secret: Optional[str] = None

    backend_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    mail_from: Optional[str] = None

    cors_origins: str = "*"

    @property
    def callback_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}/api/payments/callback"

    @property
    def allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            jwt_secret=os.getenv("JWT_SECRET", "change-me"),
            jwt_expires_hours=_env_int("JWT_EXPIRES_HOURS", 24),
            reset_token_expires_minutes=_env_int("RESET_TOKEN_EXPIRES_MINUTES", 60),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
            reserve_stock=_env_bool("RESERVE_STOCK"),
            pesapal_consumer_key=os.getenv("PESAPAL_CONSUMER_KEY"),
            pesapal_consumer_secret=os.getenv("PESAPAL_CONSUMER_SECRET"),
            pesapal_api_url=os.getenv("PESAPAL_API_URL", "https://pay.pesapal.com/v3"),
            pesapal_currency=os.getenv("PESAPAL_CURRENCY", "KES"),
            pesapal_country_code=os.getenv("PESAPAL_COUNTRY_CODE", "KE"),
            pesapal_timeout=_env_float("PESAPAL_TIMEOUT", 15.0),
            pesapal_webhook_secret=os.getenv("PESAPAL_WEBHOOK_SECRET"),
            backend_url=os.getenv("BACKEND_URL", "http://localhost:8000"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            mail_from=os.getenv("MAIL_FROM"),
            cors_origins=os.getenv("CORS_ORIGINS", "*"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
