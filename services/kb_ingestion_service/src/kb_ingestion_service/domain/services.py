from __future__ import annotations

import asyncio

import structlog

from kb_ingestion_service.domain.chunking import ChunkingService, compute_content_hash
from kb_ingestion_service.domain.exceptions import (
    DocumentTooLargeError,
    EmbeddingError,
    EmptyDocumentError,
    IngestionError,
    StoreError,
)
from kb_ingestion_service.domain.interfaces import (
    ChunkRepositoryPort,
    DatabasePort,
    DocumentRepositoryPort,
    EmbeddingProviderPort,
    EmbeddingRepositoryPort,
    KnowledgeBaseStatsPort,
    StoreConnection,
)
from kb_ingestion_service.domain.models import (
    DEFAULT_TENANT_ID,
    DOC_ID_HASH_CHARS,
    DOC_ID_PREFIX,
    MAX_TEXT_CHARS,
    DocumentIdentity,
    KbDocument,
    ReingestPolicy,
    TextChunk,
)
from shared.schemas.knowledge_base import (
    EmbeddingProbe,
    IngestSummary,
    KnowledgeBaseStats,
    SchemaReport,
)

logger = structlog.get_logger(__name__)

# 1024-dim model matching the default kb_embeddings vector width.
FALLBACK_EMBEDDING_MODEL_ID = "cohere.embed-english-v3.0"
DIAGNOSTIC_PROBE_TEXT = "diagnostic probe"


def resolve_embedding_model_id(override: str | None, configured: str | None) -> str:
    if override and override.strip():
        return override.strip()
    if configured and configured.strip():
        return configured.strip()
    return FALLBACK_EMBEDDING_MODEL_ID


def resolve_tenant_id(tenant_id: str | None, default: str = DEFAULT_TENANT_ID) -> str:
    if tenant_id and tenant_id.strip():
        return tenant_id.strip()
    return default


class IngestionService:
    """Turns extracted text into kb_documents / kb_chunks / kb_embeddings rows.

    The document upsert is best-effort and runs before the transaction.
    Chunk rows are all-or-nothing inside one transaction per document.
    Embeddings degrade per chunk to a NULL row.
    """

    def __init__(
        self,
        database: DatabasePort,
        documents: DocumentRepositoryPort,
        chunks: ChunkRepositoryPort,
        embeddings: EmbeddingRepositoryPort,
        embedder: EmbeddingProviderPort,
        chunker: ChunkingService,
        default_tenant_id: str = DEFAULT_TENANT_ID,
        default_embedding_model_id: str = "",
        embedding_timeout_seconds: float = 30.0,
        max_text_chars: int = MAX_TEXT_CHARS,
        reingest_policy: ReingestPolicy = ReingestPolicy.APPEND,
    ) -> None:
        self._database = database
        self._documents = documents
        self._chunks = chunks
        self._embeddings = embeddings
        self._embedder = embedder
        self._chunker = chunker
        self._default_tenant_id = default_tenant_id
        self._default_embedding_model_id = default_embedding_model_id
        self._embedding_timeout_seconds = embedding_timeout_seconds
        self._max_text_chars = max_text_chars
        self._reingest_policy = reingest_policy

    async def ingest_text(
        self,
        text: str,
        tenant_id: str | None = None,
        doc_id: str | None = None,
        title: str | None = None,
        uri: str | None = None,
        mime: str | None = None,
        tags: list[str] | None = None,
        embedding_model_id: str | None = None,
    ) -> IngestSummary:
        trimmed = self.validate_text(text)
        identity = self.resolve_identity(trimmed, tenant_id, doc_id)

        log = logger.bind(tenant_id=identity.tenant_id, doc_id=identity.doc_id)
        log.info("ingestion.document.started", text_length=len(trimmed))

        if self._reingest_policy is ReingestPolicy.SKIP_UNCHANGED:
            unchanged = await self._unchanged_summary(identity)
            if unchanged is not None:
                log.info(
                    "ingestion.document.unchanged_skipped",
                    chunk_count=unchanged.chunk_count,
                    embedded_count=unchanged.embedded_count,
                )
                return unchanged

        await self.upsert_document(
            KbDocument(
                tenant_id=identity.tenant_id,
                doc_id=identity.doc_id,
                content_hash=identity.content_hash,
                tags=tags,
                title=title,
                uri=uri,
                mime=mime,
            )
        )

        chunks = self._chunker.chunk_text(trimmed)
        model_id = resolve_embedding_model_id(embedding_model_id, self._default_embedding_model_id)
        log.info("ingestion.document.chunked", chunk_count=len(chunks), embedding_model=model_id)

        embedded_count = await self.persist_chunks(identity, chunks, model_id)

        if embedded_count == 0:
            log.warning(
                "ingestion.document.no_embeddings",
                chunk_count=len(chunks),
                embedding_model=model_id,
            )
        log.info(
            "ingestion.document.completed",
            chunk_count=len(chunks),
            embedded_count=embedded_count,
        )
        return IngestSummary(
            doc_id=identity.doc_id,
            chunk_count=len(chunks),
            embedded_count=embedded_count,
            content_hash=identity.content_hash,
        )

    def validate_text(self, text: str | None) -> str:
        trimmed = (text or "").strip()
        if not trimmed:
            raise EmptyDocumentError()
        if len(trimmed) > self._max_text_chars:
            raise DocumentTooLargeError(len(trimmed), self._max_text_chars)
        return trimmed

    def resolve_identity(
        self, trimmed_text: str, tenant_id: str | None, doc_id: str | None
    ) -> DocumentIdentity:
        content_hash = compute_content_hash(trimmed_text)
        effective_doc_id = (
            doc_id.strip()
            if doc_id and doc_id.strip()
            else DOC_ID_PREFIX + content_hash[:DOC_ID_HASH_CHARS]
        )
        return DocumentIdentity(
            tenant_id=resolve_tenant_id(tenant_id, self._default_tenant_id),
            doc_id=effective_doc_id,
            content_hash=content_hash,
        )

    async def upsert_document(self, document: KbDocument) -> bool:
        saved = await self._documents.upsert(document)
        if not saved:
            logger.warning(
                "ingestion.document.upsert_skipped",
                tenant_id=document.tenant_id,
                doc_id=document.doc_id,
            )
        return saved

    async def persist_chunks(
        self,
        identity: DocumentIdentity,
        chunks: list[TextChunk],
        model_id: str,
    ) -> int:
        """Insert every chunk with exactly one embedding row, in one transaction.

        Returns the number of chunks stored with a real vector.
        """
        log = logger.bind(tenant_id=identity.tenant_id, doc_id=identity.doc_id)
        embedded_count = 0

        try:
            async with self._database.transaction() as conn:
                await self._prepare_existing_chunks(conn, identity)
                for chunk in chunks:
                    chunk_id = await self._chunks.insert(
                        conn, identity.tenant_id, identity.doc_id, chunk
                    )
                    vector = await self._embed_chunk(chunk, model_id)
                    if await self._embeddings.insert(conn, chunk_id, vector):
                        embedded_count += 1
        except IngestionError as exc:
            log.error(
                "ingestion.document.rolled_back",
                error_code=exc.error_code,
                error=str(exc),
            )
            raise

        return embedded_count

    async def _prepare_existing_chunks(
        self, conn: StoreConnection, identity: DocumentIdentity
    ) -> None:
        if self._reingest_policy is ReingestPolicy.REPLACE:
            deleted = await self._chunks.delete_for_document(
                conn, identity.tenant_id, identity.doc_id
            )
            if deleted:
                logger.info(
                    "ingestion.document.chunks_replaced",
                    tenant_id=identity.tenant_id,
                    doc_id=identity.doc_id,
                    deleted_chunks=deleted,
                )
            return

        existing = await self._chunks.counts_for_document(
            conn, identity.tenant_id, identity.doc_id
        )
        if existing.chunks:
            logger.warning(
                "ingestion.document.chunks_accumulating",
                tenant_id=identity.tenant_id,
                doc_id=identity.doc_id,
                existing_chunks=existing.chunks,
            )

    async def _embed_chunk(self, chunk: TextChunk, model_id: str) -> list[float] | None:
        try:
            return await asyncio.wait_for(
                self._embedder.embed(chunk.text, model_id),
                timeout=self._embedding_timeout_seconds,
            )
        except EmbeddingError as exc:
            logger.warning(
                "ingestion.chunk.embedding_failed",
                chunk_index=chunk.chunk_index,
                embedding_model=model_id,
                error=str(exc),
            )
        except TimeoutError:
            logger.warning(
                "ingestion.chunk.embedding_timeout",
                chunk_index=chunk.chunk_index,
                embedding_model=model_id,
                timeout_seconds=self._embedding_timeout_seconds,
            )
        return None

    async def _unchanged_summary(self, identity: DocumentIdentity) -> IngestSummary | None:
        try:
            existing = await self._documents.get(identity.tenant_id, identity.doc_id)
            if existing is None or existing.content_hash != identity.content_hash:
                return None
            async with self._database.transaction() as conn:
                counts = await self._chunks.counts_for_document(
                    conn, identity.tenant_id, identity.doc_id
                )
        except StoreError as exc:
            logger.warning(
                "ingestion.document.unchanged_check_failed",
                tenant_id=identity.tenant_id,
                doc_id=identity.doc_id,
                error=exc.detail,
            )
            return None

        if counts.chunks == 0:
            return None
        return IngestSummary(
            doc_id=identity.doc_id,
            chunk_count=counts.chunks,
            embedded_count=counts.embeddings_non_null,
            content_hash=identity.content_hash,
            skipped=True,
        )


class DiagnosticsService:
    def __init__(
        self,
        stats: KnowledgeBaseStatsPort,
        embedder: EmbeddingProviderPort,
        default_tenant_id: str = DEFAULT_TENANT_ID,
        default_embedding_model_id: str = "",
    ) -> None:
        self._stats = stats
        self._embedder = embedder
        self._default_tenant_id = default_tenant_id
        self._default_embedding_model_id = default_embedding_model_id

    async def knowledge_base_stats(
        self, tenant_id: str | None = None, doc_id: str | None = None
    ) -> KnowledgeBaseStats:
        tenant = resolve_tenant_id(tenant_id, self._default_tenant_id)
        doc = doc_id.strip() if doc_id and doc_id.strip() else None

        try:
            await self._stats.ping()
        except StoreError as exc:
            logger.warning("diagnostics.db.unreachable", error=exc.detail)
            return KnowledgeBaseStats(
                tenant_id=tenant,
                db_ok=False,
                error=f"Connectivity check failed: {exc.detail}",
            )

        try:
            tenant_counts = await self._stats.tenant_counts(tenant)
            document_counts = (
                await self._stats.document_counts(tenant, doc) if doc else None
            )
            last_documents = await self._stats.last_documents(tenant)
        except StoreError as exc:
            message = f"DB error: {exc.detail}"
            logger.warning("diagnostics.query.failed", tenant_id=tenant, error=message)
            return KnowledgeBaseStats(tenant_id=tenant, db_ok=True, error=message)

        return KnowledgeBaseStats(
            tenant_id=tenant,
            db_ok=True,
            tenant=tenant_counts,
            doc_id=doc,
            document=document_counts,
            last_documents=last_documents,
        )

    async def probe_embedding(
        self, text: str | None = None, model_id: str | None = None
    ) -> EmbeddingProbe:
        probe_text = text if text and text.strip() else DIAGNOSTIC_PROBE_TEXT
        effective_model = resolve_embedding_model_id(model_id, self._default_embedding_model_id)

        try:
            vector = await self._embedder.embed(probe_text, effective_model)
        except EmbeddingError as exc:
            return EmbeddingProbe(model_id=effective_model, ok=False, error=str(exc))

        return EmbeddingProbe(model_id=effective_model, ok=True, vector_length=len(vector))

    async def schema_report(self, tenant_id: str | None = None) -> SchemaReport:
        """Existence and column layout of the kb_* tables; never raises."""
        tenant = resolve_tenant_id(tenant_id, self._default_tenant_id)

        try:
            tables = await self._stats.describe_tables()
        except StoreError as exc:
            logger.warning("diagnostics.schema.failed", error=exc.detail)
            return SchemaReport(tenant_id=tenant, ok=False, error=f"DB error: {exc.detail}")

        return SchemaReport(tenant_id=tenant, ok=True, tables=tables)
