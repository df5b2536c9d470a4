from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Escrowline"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8790
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/escrowline.db"
    data_dir: Path = Path("./data")
    upload_dir: Path = Path("./data/uploads")

    currency: str = "ARS"
    commission_rate: Decimal = Decimal("0.10")
    min_withdrawal: Decimal = Decimal("1000")

    blob_storage_url: str = ""
    blob_storage_token: str = ""
    blob_storage_timeout_sec: int = 30

    notification_url: str = ""
    notification_token: str = ""
    notification_timeout_sec: int = 10

    webhook_secret: str = ""
    cors_origins: str = "http://127.0.0.1:8790"

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("commission_rate")
    @classmethod
    def validate_commission_rate(cls, value: Decimal) -> Decimal:
        if value < 0 or value >= 1:
            raise ValueError("commission_rate must be between 0 and 1")
        return value

    @field_validator("min_withdrawal")
    @classmethod
    def validate_min_withdrawal(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("min_withdrawal must be positive")
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
