from __future__ import annotations

import json
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_TENANT_ID = "default"
DOC_ID_PREFIX = "doc_"
DOC_ID_HASH_CHARS = 16
MAX_TEXT_CHARS = 400_000


class ReingestPolicy(StrEnum):
    APPEND = "append"
    REPLACE = "replace"
    SKIP_UNCHANGED = "skip_unchanged"


class TextChunk(BaseModel):
    """A window of the normalized document text, addressed by [start, end)."""

    model_config = ConfigDict(frozen=True)

    chunk_index: int = Field(ge=0)
    text: str
    start: int = Field(ge=0)
    end: int = Field(ge=0)

    @property
    def source_meta(self) -> str:
        return json.dumps({"range": {"start": self.start, "end": self.end}})


class DocumentIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    doc_id: str
    content_hash: str


class KbDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    doc_id: str
    content_hash: str
    tags: list[str] | None = None
    title: str | None = None
    uri: str | None = None
    mime: str | None = None
    active: bool = True

    @property
    def tags_json(self) -> str:
        return json.dumps(self.tags or [])


class IngestTextRequest(BaseModel):
    """JSON payload for ingesting already-extracted text.

    Accepts camelCase keys (tenantId, docId, embeddingModelId) as well as the
    field names. Unknown keys are rejected so a misspelled tenant never falls
    through to the default one.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    text: str = Field(min_length=1)
    tenant_id: str | None = Field(default=None, max_length=255)
    doc_id: str | None = Field(default=None, max_length=255)
    title: str | None = None
    uri: str | None = None
    mime: str | None = "text/plain"
    tags: list[str] | None = None
    embedding_model_id: str | None = None

    @field_validator("text")
    @classmethod
    def _trimmed_text_within_limit(cls, value: str) -> str:
        if len(value.strip()) > MAX_TEXT_CHARS:
            raise ValueError(f"text exceeds {MAX_TEXT_CHARS} characters after trimming")
        return value
