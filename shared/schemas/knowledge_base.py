from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class IngestSummary(BaseModel):
    """Outcome of one ingestion call. Not persisted."""

    model_config = ConfigDict(frozen=True)

    doc_id: str
    chunk_count: int = Field(ge=0)
    embedded_count: int = Field(ge=0)
    content_hash: str
    skipped: bool = False


class CountsByScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    documents: int = 0
    chunks: int = 0
    embeddings: int = 0
    embeddings_non_null: int = 0


class RecentDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    doc_id: str
    content_hash: str | None
    active: bool


class KnowledgeBaseStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    db_ok: bool
    error: str = ""
    tenant: CountsByScope = Field(default_factory=CountsByScope)
    doc_id: str | None = None
    document: CountsByScope | None = None
    last_documents: list[RecentDocument] = Field(default_factory=list)


class EmbeddingProbe(BaseModel):
    model_config = ConfigDict(frozen=True)

    model_id: str
    ok: bool
    vector_length: int = 0
    error: str | None = None


class ColumnInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    nullable: bool


class TableInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    exists: bool
    columns: list[ColumnInfo] = Field(default_factory=list)


class SchemaReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    ok: bool
    error: str = ""
    tables: dict[str, TableInfo] = Field(default_factory=dict)
