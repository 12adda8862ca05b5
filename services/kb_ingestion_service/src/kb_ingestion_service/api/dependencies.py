from __future__ import annotations

from fastapi import Request

from kb_ingestion_service.domain.interfaces import DatabasePort
from kb_ingestion_service.domain.services import DiagnosticsService, IngestionService
from kb_ingestion_service.infrastructure.extraction import TextExtractionService


def get_database(request: Request) -> DatabasePort:
    return request.app.state.database


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service


def get_diagnostics_service(request: Request) -> DiagnosticsService:
    return request.app.state.diagnostics_service


def get_text_extractor(request: Request) -> TextExtractionService:
    return request.app.state.text_extractor
