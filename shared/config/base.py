from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseServiceSettings(BaseSettings):
    """Base configuration inherited by all services.

    Values are loaded from environment variables.
    Secrets have no defaults; missing values raise ValidationError at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    service_name: str = Field(..., description="Service identifier")
    service_port: int = Field(default=8000, ge=1024, le=65535)
    app_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = Field(default="INFO")
    debug: bool = Field(default=False)

    # Relational store (postgresql+asyncpg:// or sqlite+aiosqlite://)
    database_url: SecretStr = Field(..., description="SQLAlchemy async DSN")
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)

    # Embedding inference (OpenAI-compatible endpoint)
    embedding_base_url: str = Field(default="")
    embedding_api_key: SecretStr = Field(default=SecretStr(""))
    embedding_model_id: str = Field(default="")
    embedding_dimensions: int = Field(default=1024, ge=1)
