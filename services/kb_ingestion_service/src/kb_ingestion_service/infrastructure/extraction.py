from __future__ import annotations

import io
import zipfile

import structlog
from docx.opc.exceptions import PackageNotFoundError
from pypdf.errors import PyPdfError

from kb_ingestion_service.domain.exceptions import (
    TextExtractionError,
    UnsupportedContentTypeError,
)

logger = structlog.get_logger(__name__)

_UNSUPPORTED_PREFIXES = ("image/", "audio/", "video/")


class TextExtractionService:
    """Extracts plain text from uploaded document bytes.

    PDF and DOCX are parsed; anything else that is not media is decoded as UTF-8.
    """

    def extract_from_pdf(self, content: bytes) -> str:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(content))
        pages = [page.extract_text() or "" for page in reader.pages]
        return "\n\n".join(pages)

    def extract_from_docx(self, content: bytes) -> str:
        from docx import Document

        doc = Document(io.BytesIO(content))
        paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]
        return "\n\n".join(paragraphs)

    def extract_from_text(self, content: bytes) -> str:
        return content.decode("utf-8", errors="replace")

    def extract(self, content: bytes, content_type: str | None) -> str:
        normalized = (content_type or "application/octet-stream").lower()
        if normalized.startswith(_UNSUPPORTED_PREFIXES):
            raise UnsupportedContentTypeError(normalized)

        try:
            if "pdf" in normalized:
                text = self.extract_from_pdf(content)
            elif "wordprocessingml" in normalized:
                text = self.extract_from_docx(content)
            else:
                text = self.extract_from_text(content)
        except (PyPdfError, PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            logger.warning(
                "extraction.failed",
                content_type=normalized,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TextExtractionError(normalized, str(exc)) from exc

        logger.debug(
            "extraction.completed",
            content_type=normalized,
            size_bytes=len(content),
            text_length=len(text),
        )
        return text
