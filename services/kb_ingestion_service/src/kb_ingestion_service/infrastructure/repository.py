from __future__ import annotations

import json
from collections.abc import Sequence

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, CursorResult
from sqlalchemy.exc import CompileError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.types import TypeEngine

from kb_ingestion_service.domain.exceptions import (
    ChunkPersistenceError,
    EmbeddingPersistenceError,
    StoreError,
)
from kb_ingestion_service.domain.interfaces import (
    ChunkRepositoryPort,
    DatabasePort,
    DocumentRepositoryPort,
    EmbeddingRepositoryPort,
    KnowledgeBaseStatsPort,
)
from kb_ingestion_service.domain.models import KbDocument, TextChunk
from kb_ingestion_service.infrastructure.vector_encoding import (
    DEFAULT_VECTOR_ENCODINGS,
    VectorEncoding,
)
from shared.schemas.knowledge_base import ColumnInfo, CountsByScope, RecentDocument, TableInfo

logger = structlog.get_logger(__name__)

KB_TABLES = ("kb_documents", "kb_chunks", "kb_embeddings")


class SqlDocumentRepository(DocumentRepositoryPort):
    def __init__(self, database: DatabasePort) -> None:
        self._database = database

    async def upsert(self, document: KbDocument) -> bool:
        # Tags are refreshed only when the caller supplied them.
        sql = text("""
            INSERT INTO kb_documents (
                tenant_id, doc_id, title, uri, mime,
                tags, content_hash, active
            ) VALUES (
                :tenant_id, :doc_id, :title, :uri, :mime,
                :tags, :content_hash, TRUE
            )
            ON CONFLICT (tenant_id, doc_id) DO UPDATE SET
                active       = TRUE,
                content_hash = excluded.content_hash,
                tags         = COALESCE(:tags_update, kb_documents.tags),
                title        = COALESCE(excluded.title, kb_documents.title),
                uri          = COALESCE(excluded.uri, kb_documents.uri),
                mime         = COALESCE(excluded.mime, kb_documents.mime),
                updated_at   = CURRENT_TIMESTAMP
        """)

        try:
            async with self._database.transaction() as conn:
                await conn.execute(
                    sql,
                    {
                        "tenant_id": document.tenant_id,
                        "doc_id": document.doc_id,
                        "title": document.title,
                        "uri": document.uri,
                        "mime": document.mime,
                        "tags": document.tags_json,
                        "tags_update": document.tags_json if document.tags is not None else None,
                        "content_hash": document.content_hash,
                    },
                )
        except StoreError as exc:
            logger.warning(
                "repository.document.upsert_failed",
                tenant_id=document.tenant_id,
                doc_id=document.doc_id,
                error=exc.detail,
            )
            return False

        logger.debug(
            "repository.document.upserted",
            tenant_id=document.tenant_id,
            doc_id=document.doc_id,
        )
        return True

    async def get(self, tenant_id: str, doc_id: str) -> KbDocument | None:
        sql = text("""
            SELECT tenant_id, doc_id, title, uri, mime,
                   tags, content_hash, active
            FROM kb_documents
            WHERE tenant_id = :tenant_id AND doc_id = :doc_id
        """)

        async with self._database.transaction() as conn:
            result = await conn.execute(sql, {"tenant_id": tenant_id, "doc_id": doc_id})
            row = result.mappings().first()

        if not row:
            return None

        return KbDocument(
            tenant_id=row["tenant_id"],
            doc_id=row["doc_id"],
            content_hash=row["content_hash"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            title=row["title"],
            uri=row["uri"],
            mime=row["mime"],
            active=bool(row["active"]),
        )


class SqlChunkRepository(ChunkRepositoryPort):
    """Chunk rows; the generated id is read from the insert, else looked up by natural key."""

    _INSERT_SQL = """
        INSERT INTO kb_chunks (doc_id, tenant_id, chunk_index, text, source_meta)
        VALUES (:doc_id, :tenant_id, :chunk_index, :text, :source_meta)
    """

    async def insert(
        self, conn: AsyncConnection, tenant_id: str, doc_id: str, chunk: TextChunk
    ) -> int:
        returning = bool(getattr(conn.dialect, "insert_returning", False))
        sql = self._INSERT_SQL + (" RETURNING id" if returning else "")

        try:
            result = await conn.execute(
                text(sql),
                {
                    "doc_id": doc_id,
                    "tenant_id": tenant_id,
                    "chunk_index": chunk.chunk_index,
                    "text": chunk.text,
                    "source_meta": chunk.source_meta,
                },
            )
        except SQLAlchemyError as exc:
            logger.warning(
                "repository.chunk.insert_failed",
                doc_id=doc_id,
                chunk_index=chunk.chunk_index,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ChunkPersistenceError(doc_id, chunk.chunk_index, str(exc)) from exc

        chunk_id = self._read_generated_id(result, returning)
        if chunk_id is None:
            chunk_id = await self._lookup_id(conn, tenant_id, doc_id, chunk.chunk_index)
        if chunk_id is None:
            raise ChunkPersistenceError(
                doc_id, chunk.chunk_index, "generated id could not be retrieved"
            )

        logger.debug(
            "repository.chunk.inserted",
            doc_id=doc_id,
            chunk_index=chunk.chunk_index,
            chunk_id=chunk_id,
            text_length=len(chunk.text),
        )
        return chunk_id

    def _read_generated_id(self, result: CursorResult, returning: bool) -> int | None:
        try:
            value = result.scalar_one_or_none() if returning else result.lastrowid
        except (SQLAlchemyError, AttributeError, NotImplementedError) as exc:
            logger.warning(
                "repository.chunk.generated_id_unavailable",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return int(value) if value is not None else None

    async def _lookup_id(
        self, conn: AsyncConnection, tenant_id: str, doc_id: str, chunk_index: int
    ) -> int | None:
        # Re-ingestion may append duplicates of the natural key; the newest row is ours.
        sql = text("""
            SELECT MAX(id) FROM kb_chunks
            WHERE doc_id = :doc_id AND tenant_id = :tenant_id AND chunk_index = :chunk_index
        """)
        try:
            result = await conn.execute(
                sql,
                {"doc_id": doc_id, "tenant_id": tenant_id, "chunk_index": chunk_index},
            )
            value = result.scalar()
        except SQLAlchemyError as exc:
            raise ChunkPersistenceError(doc_id, chunk_index, str(exc)) from exc

        logger.debug(
            "repository.chunk.id_lookup",
            doc_id=doc_id,
            chunk_index=chunk_index,
            found=value is not None,
        )
        return int(value) if value is not None else None

    async def delete_for_document(self, conn: AsyncConnection, tenant_id: str, doc_id: str) -> int:
        params = {"tenant_id": tenant_id, "doc_id": doc_id}
        await conn.execute(
            text("""
                DELETE FROM kb_embeddings
                WHERE chunk_id IN (
                    SELECT id FROM kb_chunks
                    WHERE tenant_id = :tenant_id AND doc_id = :doc_id
                )
            """),
            params,
        )
        result = await conn.execute(
            text("DELETE FROM kb_chunks WHERE tenant_id = :tenant_id AND doc_id = :doc_id"),
            params,
        )
        return result.rowcount or 0

    async def counts_for_document(
        self, conn: AsyncConnection, tenant_id: str, doc_id: str
    ) -> CountsByScope:
        sql = text("""
            SELECT COUNT(c.id)         AS chunks,
                   COUNT(e.chunk_id)  AS embeddings,
                   COUNT(e.embedding) AS embeddings_non_null
            FROM kb_chunks c
            LEFT JOIN kb_embeddings e ON e.chunk_id = c.id
            WHERE c.tenant_id = :tenant_id AND c.doc_id = :doc_id
        """)
        result = await conn.execute(sql, {"tenant_id": tenant_id, "doc_id": doc_id})
        row = result.mappings().one()
        return CountsByScope(
            chunks=row["chunks"],
            embeddings=row["embeddings"],
            embeddings_non_null=row["embeddings_non_null"],
        )


class SqlEmbeddingRepository(EmbeddingRepositoryPort):
    """One row per chunk: real vector via the first accepted encoding, else NULL."""

    def __init__(self, encodings: Sequence[VectorEncoding] = DEFAULT_VECTOR_ENCODINGS) -> None:
        self._encodings = tuple(encodings)

    async def insert(
        self, conn: AsyncConnection, chunk_id: int, vector: list[float] | None
    ) -> bool:
        if vector:
            encoding = await self._insert_vector(conn, chunk_id, vector)
            if encoding is not None:
                logger.debug(
                    "repository.embedding.inserted",
                    chunk_id=chunk_id,
                    encoding=encoding,
                    dim=len(vector),
                )
                return True
            logger.warning("repository.embedding.null_fallback", chunk_id=chunk_id)

        try:
            await conn.execute(
                text("INSERT INTO kb_embeddings (chunk_id, embedding) VALUES (:chunk_id, NULL)"),
                {"chunk_id": chunk_id},
            )
        except SQLAlchemyError as exc:
            raise EmbeddingPersistenceError(chunk_id, str(exc)) from exc
        return False

    async def _insert_vector(
        self, conn: AsyncConnection, chunk_id: int, vector: list[float]
    ) -> str | None:
        dialect = conn.dialect.name
        for encoding in self._encodings:
            if not encoding.supports(dialect):
                continue

            sql = text(
                "INSERT INTO kb_embeddings (chunk_id, embedding) "
                f"VALUES (:chunk_id, {encoding.value_sql})"
            )
            try:
                # Savepoint keeps a rejected statement from aborting the document transaction.
                async with conn.begin_nested():
                    await conn.execute(
                        sql,
                        {"chunk_id": chunk_id, "embedding": encoding.bind_value(vector)},
                    )
            except SQLAlchemyError as exc:
                logger.debug(
                    "repository.embedding.encoding_rejected",
                    chunk_id=chunk_id,
                    encoding=encoding.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            return encoding.name
        return None


class SqlKnowledgeBaseStatsRepository(KnowledgeBaseStatsPort):
    _COUNTS_SQL = """
        SELECT
            (SELECT COUNT(*) FROM kb_documents
              WHERE tenant_id = :tenant_id {doc_filter}) AS documents,
            (SELECT COUNT(*) FROM kb_chunks
              WHERE tenant_id = :tenant_id {doc_filter}) AS chunks,
            (SELECT COUNT(*) FROM kb_chunks c
               JOIN kb_embeddings e ON e.chunk_id = c.id
              WHERE c.tenant_id = :tenant_id {chunk_doc_filter}) AS embeddings,
            (SELECT COUNT(*) FROM kb_chunks c
               JOIN kb_embeddings e ON e.chunk_id = c.id
              WHERE c.tenant_id = :tenant_id {chunk_doc_filter}
                AND e.embedding IS NOT NULL) AS embeddings_non_null
    """

    def __init__(self, database: DatabasePort) -> None:
        self._database = database

    async def ping(self) -> None:
        await self._database.ping()

    async def tenant_counts(self, tenant_id: str) -> CountsByScope:
        sql = self._COUNTS_SQL.format(doc_filter="", chunk_doc_filter="")
        return await self._counts(sql, {"tenant_id": tenant_id})

    async def document_counts(self, tenant_id: str, doc_id: str) -> CountsByScope:
        sql = self._COUNTS_SQL.format(
            doc_filter="AND doc_id = :doc_id",
            chunk_doc_filter="AND c.doc_id = :doc_id",
        )
        return await self._counts(sql, {"tenant_id": tenant_id, "doc_id": doc_id})

    async def last_documents(self, tenant_id: str, limit: int = 5) -> list[RecentDocument]:
        sql = text("""
            SELECT doc_id, content_hash, active
            FROM kb_documents
            WHERE tenant_id = :tenant_id
            ORDER BY updated_at DESC, doc_id DESC
            LIMIT :limit
        """)
        async with self._database.transaction() as conn:
            result = await conn.execute(sql, {"tenant_id": tenant_id, "limit": limit})
            rows = result.mappings().all()

        return [
            RecentDocument(
                doc_id=row["doc_id"],
                content_hash=row["content_hash"],
                active=bool(row["active"]),
            )
            for row in rows
        ]

    async def describe_tables(self) -> dict[str, TableInfo]:
        async with self._database.transaction() as conn:
            return await conn.run_sync(_inspect_tables, KB_TABLES)

    async def _counts(self, sql: str, params: dict[str, str]) -> CountsByScope:
        async with self._database.transaction() as conn:
            result = await conn.execute(text(sql), params)
            row = result.mappings().one()

        return CountsByScope(
            documents=row["documents"],
            chunks=row["chunks"],
            embeddings=row["embeddings"],
            embeddings_non_null=row["embeddings_non_null"],
        )


def _inspect_tables(conn: Connection, table_names: Sequence[str]) -> dict[str, TableInfo]:
    inspector = inspect(conn)
    existing = set(inspector.get_table_names())

    report: dict[str, TableInfo] = {}
    for name in table_names:
        if name not in existing:
            report[name] = TableInfo(exists=False)
            continue
        report[name] = TableInfo(
            exists=True,
            columns=[
                ColumnInfo(
                    name=column["name"],
                    type=_type_name(column["type"]),
                    nullable=bool(column.get("nullable", True)),
                )
                for column in inspector.get_columns(name)
            ],
        )
    return report


def _type_name(column_type: TypeEngine) -> str:
    # Types the dialect does not know (e.g. pgvector without its package) reflect as NullType.
    try:
        return str(column_type)
    except CompileError:
        return "UNKNOWN"
