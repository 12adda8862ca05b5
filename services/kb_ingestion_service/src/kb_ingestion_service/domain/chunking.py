from __future__ import annotations

import base64
import hashlib

import structlog

from kb_ingestion_service.domain.exceptions import ChunkingError, EmptyDocumentError
from kb_ingestion_service.domain.models import TextChunk

logger = structlog.get_logger(__name__)


def compute_content_hash(text: str) -> str:
    """SHA-256 of the UTF-8 text, base64url encoded without padding."""
    if not text or not text.strip():
        raise EmptyDocumentError()
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class ChunkingService:
    """Fixed-size character windows with configurable overlap.

    Greedy single pass: each window is [cursor, min(cursor + size, len)),
    the cursor advances by max(size - overlap, 1) and the loop stops once a
    window reaches the end of the text.
    """

    def __init__(self, chunk_size_chars: int = 2000, overlap_chars: int = 300) -> None:
        if chunk_size_chars < 1:
            raise ChunkingError(f"chunk size must be >= 1, got {chunk_size_chars}")
        if not 0 <= overlap_chars < chunk_size_chars:
            raise ChunkingError(
                f"overlap must satisfy 0 <= overlap < chunk size, got {overlap_chars}"
            )
        self._chunk_size = chunk_size_chars
        self._overlap = overlap_chars

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def overlap(self) -> int:
        return self._overlap

    def chunk_text(self, text: str) -> list[TextChunk]:
        length = len(text)
        step = max(self._chunk_size - self._overlap, 1)
        chunks: list[TextChunk] = []
        start = 0

        while start < length:
            end = min(start + self._chunk_size, length)
            chunks.append(
                TextChunk(
                    chunk_index=len(chunks),
                    text=text[start:end],
                    start=start,
                    end=end,
                )
            )
            if end == length:
                break
            start += step

        logger.debug(
            "chunking.completed",
            text_length=length,
            chunk_count=len(chunks),
            chunk_size=self._chunk_size,
            overlap=self._overlap,
        )
        return chunks
