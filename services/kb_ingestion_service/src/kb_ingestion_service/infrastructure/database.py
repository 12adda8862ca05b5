from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import event, make_url, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from kb_ingestion_service.domain.exceptions import StoreError
from kb_ingestion_service.domain.interfaces import DatabasePort

logger = structlog.get_logger(__name__)

_ID_COLUMNS = {
    "postgresql": ("BIGSERIAL PRIMARY KEY", "BIGINT"),
    "sqlite": ("INTEGER PRIMARY KEY AUTOINCREMENT", "INTEGER"),
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS kb_documents (
        tenant_id    TEXT NOT NULL,
        doc_id       TEXT NOT NULL,
        title        TEXT,
        uri          TEXT,
        mime         TEXT,
        tags         TEXT NOT NULL DEFAULT '[]',
        content_hash TEXT NOT NULL,
        active       BOOLEAN NOT NULL DEFAULT TRUE,
        created_at   TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at   TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (tenant_id, doc_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kb_chunks (
        id          {id_column},
        doc_id      TEXT NOT NULL,
        tenant_id   TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        text        TEXT NOT NULL,
        source_meta TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_kb_chunks_doc
        ON kb_chunks (tenant_id, doc_id, chunk_index)
    """,
    """
    CREATE TABLE IF NOT EXISTS kb_embeddings (
        chunk_id  {chunk_fk_type} PRIMARY KEY REFERENCES kb_chunks (id),
        embedding {vector_type}
    )
    """,
)


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    # The sqlite driver's implicit BEGIN breaks SAVEPOINT; emit BEGIN ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


class Database(DatabasePort):
    """Owns the async engine; hands out scoped connections and transactions."""

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        engine_kwargs: dict[str, Any] = {"echo": echo}
        if make_url(database_url).get_backend_name() != "sqlite":
            engine_kwargs.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)

        self._engine: AsyncEngine = create_async_engine(database_url, **engine_kwargs)
        if self._engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(self._engine)

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        try:
            async with self._engine.connect() as conn:
                async with conn.begin():
                    yield conn
        except SQLAlchemyError as exc:
            raise StoreError(f"{type(exc).__name__}: {exc}") from exc

    async def create_schema(self, embedding_dimensions: int) -> None:
        """Create the kb_* tables if missing (PostgreSQL and SQLite only).

        On PostgreSQL the embedding column uses pgvector when the extension can
        be enabled, otherwise it degrades to TEXT holding a JSON array.
        """
        dialect = self.dialect_name
        if dialect not in _ID_COLUMNS:
            logger.warning("database.schema.skipped", dialect=dialect)
            return

        id_column, chunk_fk_type = _ID_COLUMNS[dialect]
        async with self.transaction() as conn:
            vector_type = "TEXT"
            if dialect == "postgresql":
                try:
                    async with conn.begin_nested():
                        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                    vector_type = f"vector({embedding_dimensions})"
                except SQLAlchemyError as exc:
                    logger.warning("database.schema.vector_unavailable", error=str(exc))

            for statement in _SCHEMA:
                await conn.execute(
                    text(
                        statement.format(
                            id_column=id_column,
                            chunk_fk_type=chunk_fk_type,
                            vector_type=vector_type,
                        )
                    )
                )

        logger.info("database.schema.ready", dialect=dialect, vector_type=vector_type)

    async def ping(self) -> None:
        async with self.transaction() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        await self._engine.dispose()
