"""
Service configuration.

Everything the handlers need from the environment (database URL, JWT secret,
Daraja credentials) is read once into a cached Settings instance and handed to
the handlers through FastAPI dependencies.
"""
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Force-load .env from the project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "ZETECH MD BOT Payments"
    app_version: str = "1.0.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_url: str = "sqlite:///./zetech.db"

    # Bearer tokens issued by the auth provider
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = "authenticated"

    # Daraja (M-Pesa) gateway
    daraja_base_url: str = "https://sandbox.safaricom.co.ke"
    daraja_consumer_key: str = ""
    daraja_consumer_secret: str = ""
    daraja_passkey: str = ""
    daraja_shortcode: str = ""
    mpesa_callback_url: str = ""
    gateway_timeout_seconds: float = 30.0

    # Billing
    currency: str = "KES"
    transaction_ttl_minutes: int = 15

    @property
    def gateway_configured(self) -> bool:
        return all([
            self.daraja_consumer_key,
            self.daraja_consumer_secret,
            self.daraja_passkey,
            self.daraja_shortcode,
        ])


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
