from __future__ import annotations

import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool

from kb_ingestion_service.api.dependencies import (
    get_database,
    get_diagnostics_service,
    get_ingestion_service,
    get_text_extractor,
)
from kb_ingestion_service.domain.exceptions import (
    DocumentTooLargeError,
    EmptyDocumentError,
    IngestionError,
    StoreError,
    TextExtractionError,
    UnsupportedContentTypeError,
)
from kb_ingestion_service.domain.interfaces import DatabasePort
from kb_ingestion_service.domain.models import IngestTextRequest
from kb_ingestion_service.domain.services import DiagnosticsService, IngestionService
from kb_ingestion_service.infrastructure.extraction import TextExtractionService
from kb_ingestion_service.settings import Settings, get_settings
from shared.logging.config import bind_request_context, clear_request_context
from shared.schemas.base import HealthResponse
from shared.schemas.knowledge_base import (
    EmbeddingProbe,
    IngestSummary,
    KnowledgeBaseStats,
    SchemaReport,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["ops"])
async def health(
    settings: Settings = Depends(get_settings),
    database: DatabasePort = Depends(get_database),
) -> HealthResponse:
    try:
        await database.ping()
    except StoreError as exc:
        logger.warning("health.database.unreachable", error=exc.detail)
        return HealthResponse(
            status="degraded",
            service=settings.service_name,
            version=settings.app_version,
            database="unreachable",
        )

    return HealthResponse(
        status="ok",
        service=settings.service_name,
        version=settings.app_version,
        database=database.dialect_name,
    )


async def _ingest(
    service: IngestionService,
    log: structlog.stdlib.BoundLogger,
    **kwargs: Any,
) -> IngestSummary:
    try:
        summary = await service.ingest_text(**kwargs)
    except EmptyDocumentError as exc:
        raise HTTPException(status_code=422, detail=exc.error_code) from exc
    except DocumentTooLargeError as exc:
        raise HTTPException(status_code=413, detail=exc.error_code) from exc
    except IngestionError as exc:
        log.error("kb.ingest.request.failed", error_code=exc.error_code, error=str(exc))
        raise HTTPException(status_code=500, detail=exc.error_code) from exc

    log.info(
        "kb.ingest.request.completed",
        doc_id=summary.doc_id,
        chunk_count=summary.chunk_count,
        embedded_count=summary.embedded_count,
        skipped=summary.skipped,
    )
    return summary


@router.post("/api/kb/ingest", response_model=IngestSummary, tags=["ingestion"])
async def ingest_file(
    request: Request,
    file: UploadFile = File(...),
    x_tenant_id: str | None = Header(default=None),
    embedding_model_id: str | None = Header(default=None),
    x_doc_id: str | None = Header(default=None),
    service: IngestionService = Depends(get_ingestion_service),
    extractor: TextExtractionService = Depends(get_text_extractor),
) -> IngestSummary:
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    bind_request_context(correlation_id=correlation_id, tenant_id=x_tenant_id, doc_id=x_doc_id)

    log = logger.bind(filename=file.filename, content_type=file.content_type)
    log.info("kb.ingest.request.received", size_bytes=file.size)

    try:
        content = await file.read()
        try:
            text = await run_in_threadpool(extractor.extract, content, file.content_type)
        except UnsupportedContentTypeError as exc:
            raise HTTPException(status_code=415, detail=exc.error_code) from exc
        except TextExtractionError as exc:
            raise HTTPException(status_code=422, detail=exc.error_code) from exc

        return await _ingest(
            service,
            log,
            text=text,
            tenant_id=x_tenant_id,
            doc_id=x_doc_id,
            title=file.filename or "uploaded",
            mime=file.content_type or "application/octet-stream",
            embedding_model_id=embedding_model_id,
        )
    finally:
        clear_request_context()


@router.post("/api/kb/ingest/text", response_model=IngestSummary, tags=["ingestion"])
async def ingest_text(
    request: Request,
    payload: IngestTextRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> IngestSummary:
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    bind_request_context(
        correlation_id=correlation_id,
        tenant_id=payload.tenant_id,
        doc_id=payload.doc_id,
    )

    log = logger.bind(text_length=len(payload.text))
    log.info("kb.ingest.request.received")

    try:
        return await _ingest(service, log, **payload.model_dump())
    finally:
        clear_request_context()


@router.get("/api/kb/diag", response_model=KnowledgeBaseStats, tags=["diagnostics"])
async def knowledge_base_diagnostics(
    tenant_id: str | None = Query(default=None, alias="tenantId"),
    doc_id: str | None = Query(default=None, alias="docId"),
    diagnostics: DiagnosticsService = Depends(get_diagnostics_service),
) -> KnowledgeBaseStats:
    return await diagnostics.knowledge_base_stats(tenant_id=tenant_id, doc_id=doc_id)


@router.get("/api/kb/diag/embed", response_model=EmbeddingProbe, tags=["diagnostics"])
async def embedding_diagnostics(
    text: str | None = Query(default=None),
    model_id: str | None = Query(default=None, alias="modelId"),
    diagnostics: DiagnosticsService = Depends(get_diagnostics_service),
) -> EmbeddingProbe:
    return await diagnostics.probe_embedding(text=text, model_id=model_id)


@router.get("/api/kb/diag/schema", response_model=SchemaReport, tags=["diagnostics"])
async def schema_diagnostics(
    tenant_id: str | None = Query(default=None, alias="tenantId"),
    diagnostics: DiagnosticsService = Depends(get_diagnostics_service),
) -> SchemaReport:
    return await diagnostics.schema_report(tenant_id=tenant_id)
