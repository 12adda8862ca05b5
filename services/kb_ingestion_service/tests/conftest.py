"""Shared fixtures: a file-backed SQLite knowledge base and a fake embedding provider."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import text

from kb_ingestion_service.domain.chunking import ChunkingService
from kb_ingestion_service.domain.exceptions import EmbeddingError
from kb_ingestion_service.domain.interfaces import EmbeddingProviderPort
from kb_ingestion_service.domain.services import IngestionService
from kb_ingestion_service.infrastructure.database import Database
from kb_ingestion_service.infrastructure.repository import (
    SqlChunkRepository,
    SqlDocumentRepository,
    SqlEmbeddingRepository,
)

EMBEDDING_DIMENSIONS = 4


class FakeEmbedder(EmbeddingProviderPort):
    def __init__(self, fail: bool = False, delay_seconds: float = 0.0) -> None:
        self.fail = fail
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[str, str]] = []

    async def embed(self, text: str, model_id: str) -> list[float]:
        self.calls.append((text, model_id))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail:
            raise EmbeddingError(model_id, "provider unavailable")
        return [float(len(text)), 0.5, -1.0, 2.0]


async def fetch_all(database: Database, sql: str, **params: Any) -> list[dict[str, Any]]:
    async with database.transaction() as conn:
        result = await conn.execute(text(sql), params)
        return [dict(row) for row in result.mappings().all()]


async def fetch_scalar(database: Database, sql: str, **params: Any) -> Any:
    async with database.transaction() as conn:
        result = await conn.execute(text(sql), params)
        return result.scalar()


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncIterator[Database]:
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'kb.db'}")
    await db.create_schema(EMBEDDING_DIMENSIONS)
    yield db
    await db.dispose()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def make_service(database: Database, embedder: FakeEmbedder) -> Callable[..., IngestionService]:
    def _make(**overrides: Any) -> IngestionService:
        kwargs: dict[str, Any] = {
            "database": database,
            "documents": SqlDocumentRepository(database),
            "chunks": SqlChunkRepository(),
            "embeddings": SqlEmbeddingRepository(),
            "embedder": embedder,
            "chunker": ChunkingService(chunk_size_chars=2000, overlap_chars=300),
            "default_embedding_model_id": "test-embed-model",
        }
        kwargs.update(overrides)
        return IngestionService(**kwargs)

    return _make


def sample_text(length: int, seed: int = 0) -> str:
    return "".join(chr(ord("a") + (i + seed) % 26) for i in range(length))
