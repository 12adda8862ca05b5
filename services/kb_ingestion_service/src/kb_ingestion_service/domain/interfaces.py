from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any

from kb_ingestion_service.domain.models import KbDocument, TextChunk
from shared.schemas.knowledge_base import CountsByScope, RecentDocument, TableInfo

# Opaque handle yielded by DatabasePort.transaction(); only the store adapters use it.
StoreConnection = Any


class DatabasePort(ABC):
    @property
    @abstractmethod
    def dialect_name(self) -> str: ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreConnection]:
        """Pooled connection inside one transaction; commit on exit, rollback on error.

        Store failures surface as StoreError.
        """

    @abstractmethod
    async def ping(self) -> None:
        """Round-trip to the store. Raises StoreError."""


class EmbeddingProviderPort(ABC):
    @abstractmethod
    async def embed(self, text: str, model_id: str) -> list[float]:
        """Return one fixed-length vector for text. Raises EmbeddingError."""


class DocumentRepositoryPort(ABC):
    @abstractmethod
    async def upsert(self, document: KbDocument) -> bool:
        """Best-effort insert-or-refresh. Returns False instead of raising on store errors."""

    @abstractmethod
    async def get(self, tenant_id: str, doc_id: str) -> KbDocument | None:
        """Retrieve document metadata scoped to tenant."""


class ChunkRepositoryPort(ABC):
    @abstractmethod
    async def insert(
        self, conn: StoreConnection, tenant_id: str, doc_id: str, chunk: TextChunk
    ) -> int:
        """Insert one chunk row and return its generated id. Raises ChunkPersistenceError."""

    @abstractmethod
    async def delete_for_document(self, conn: StoreConnection, tenant_id: str, doc_id: str) -> int:
        """Delete a document's chunks and their embeddings. Returns deleted chunk count."""

    @abstractmethod
    async def counts_for_document(
        self, conn: StoreConnection, tenant_id: str, doc_id: str
    ) -> CountsByScope: ...


class EmbeddingRepositoryPort(ABC):
    @abstractmethod
    async def insert(
        self, conn: StoreConnection, chunk_id: int, vector: list[float] | None
    ) -> bool:
        """Write exactly one embedding row. True when a real vector was stored."""


class KnowledgeBaseStatsPort(ABC):
    @abstractmethod
    async def ping(self) -> None: ...

    @abstractmethod
    async def tenant_counts(self, tenant_id: str) -> CountsByScope: ...

    @abstractmethod
    async def document_counts(self, tenant_id: str, doc_id: str) -> CountsByScope: ...

    @abstractmethod
    async def last_documents(self, tenant_id: str, limit: int = 5) -> list[RecentDocument]: ...

    @abstractmethod
    async def describe_tables(self) -> dict[str, TableInfo]:
        """Existence and columns of each kb_* table, keyed by table name."""
