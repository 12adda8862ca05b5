from shared.schemas.base import HealthResponse
from shared.schemas.knowledge_base import (
    ColumnInfo,
    CountsByScope,
    EmbeddingProbe,
    IngestSummary,
    KnowledgeBaseStats,
    RecentDocument,
    SchemaReport,
    TableInfo,
)

__all__ = [
    "HealthResponse",
    "ColumnInfo",
    "CountsByScope",
    "EmbeddingProbe",
    "IngestSummary",
    "KnowledgeBaseStats",
    "RecentDocument",
    "SchemaReport",
    "TableInfo",
]
