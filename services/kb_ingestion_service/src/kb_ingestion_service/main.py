from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kb_ingestion_service.api.routes import router
from kb_ingestion_service.domain.chunking import ChunkingService
from kb_ingestion_service.domain.exceptions import StoreError
from kb_ingestion_service.domain.services import DiagnosticsService, IngestionService
from kb_ingestion_service.infrastructure.database import Database
from kb_ingestion_service.infrastructure.embedding_client import EmbeddingClient
from kb_ingestion_service.infrastructure.extraction import TextExtractionService
from kb_ingestion_service.infrastructure.repository import (
    SqlChunkRepository,
    SqlDocumentRepository,
    SqlEmbeddingRepository,
    SqlKnowledgeBaseStatsRepository,
)
from kb_ingestion_service.settings import get_settings
from shared.logging.config import configure_logging

settings = get_settings()
configure_logging(settings.service_name, settings.log_level)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "service.starting",
        version=settings.app_version,
        environment=settings.environment,
        reingest_policy=settings.reingest_policy,
    )

    database = Database(
        database_url=settings.database_url.get_secret_value(),
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        echo=settings.debug,
    )

    if settings.auto_create_schema:
        try:
            await database.create_schema(settings.embedding_dimensions)
        except StoreError as exc:
            logger.critical(
                "service.startup.failed",
                component="database",
                error=exc.detail,
            )
            await database.dispose()
            raise

    embedder = EmbeddingClient(
        base_url=settings.embedding_base_url,
        api_key=settings.embedding_api_key.get_secret_value(),
        dimensions=settings.embedding_dimensions,
        timeout_seconds=settings.embedding_timeout_seconds,
        max_retries=settings.embedding_max_retries,
    )

    app.state.database = database
    app.state.ingestion_service = IngestionService(
        database=database,
        documents=SqlDocumentRepository(database),
        chunks=SqlChunkRepository(),
        embeddings=SqlEmbeddingRepository(),
        embedder=embedder,
        chunker=ChunkingService(
            chunk_size_chars=settings.chunk_size_chars,
            overlap_chars=settings.chunk_overlap_chars,
        ),
        default_tenant_id=settings.default_tenant_id,
        default_embedding_model_id=settings.embedding_model_id,
        embedding_timeout_seconds=settings.embedding_timeout_seconds,
        max_text_chars=settings.max_text_chars,
        reingest_policy=settings.reingest_policy,
    )
    app.state.diagnostics_service = DiagnosticsService(
        stats=SqlKnowledgeBaseStatsRepository(database),
        embedder=embedder,
        default_tenant_id=settings.default_tenant_id,
        default_embedding_model_id=settings.embedding_model_id,
    )
    app.state.text_extractor = TextExtractionService()

    logger.info("service.ready", port=settings.service_port, dialect=database.dialect_name)
    yield

    await embedder.close()
    await database.dispose()
    logger.info("service.stopped")


app = FastAPI(
    title="Knowledge Base Ingestion Service",
    description="Chunks document text, embeds each chunk and stores it for retrieval.",
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

app.include_router(router)
