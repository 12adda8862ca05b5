from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from shared.config.base import BaseServiceSettings

from kb_ingestion_service.domain.models import DEFAULT_TENANT_ID, MAX_TEXT_CHARS, ReingestPolicy


class Settings(BaseServiceSettings):
    service_name: str = "kb_ingestion_service"

    default_tenant_id: str = Field(default=DEFAULT_TENANT_ID, min_length=1, max_length=255)

    chunk_size_chars: int = Field(default=2000, ge=1, le=100_000)
    chunk_overlap_chars: int = Field(default=300, ge=0)
    max_text_chars: int = Field(default=MAX_TEXT_CHARS, ge=1)

    embedding_timeout_seconds: float = Field(default=30.0, gt=0)
    embedding_max_retries: int = Field(default=2, ge=0, le=10)

    reingest_policy: ReingestPolicy = ReingestPolicy.APPEND
    auto_create_schema: bool = Field(default=True)

    @model_validator(mode="after")
    def _overlap_below_chunk_size(self) -> "Settings":
        if self.chunk_overlap_chars >= self.chunk_size_chars:
            raise ValueError("chunk_overlap_chars must be smaller than chunk_size_chars")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
