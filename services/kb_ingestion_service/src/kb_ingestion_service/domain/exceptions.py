from __future__ import annotations


class IngestionError(Exception):
    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class EmptyDocumentError(IngestionError):
    def __init__(self) -> None:
        super().__init__(
            message="Empty text - nothing to ingest.",
            error_code="EMPTY_DOCUMENT",
        )


class DocumentTooLargeError(IngestionError):
    def __init__(self, length_chars: int, limit_chars: int) -> None:
        super().__init__(
            message=f"Document text length {length_chars} chars exceeds limit {limit_chars} chars.",
            error_code="DOCUMENT_TOO_LARGE",
        )


class UnsupportedContentTypeError(IngestionError):
    def __init__(self, content_type: str) -> None:
        super().__init__(
            message=f"Content type '{content_type}' is not supported.",
            error_code="UNSUPPORTED_CONTENT_TYPE",
        )


class TextExtractionError(IngestionError):
    def __init__(self, content_type: str, detail: str) -> None:
        super().__init__(
            message=f"Failed to extract text from '{content_type}' content: {detail}",
            error_code="TEXT_EXTRACTION_FAILED",
        )


class ChunkingError(IngestionError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            message=f"Invalid chunking configuration: {detail}",
            error_code="CHUNKING_ERROR",
        )


class EmbeddingError(IngestionError):
    """Per-chunk embedding failure. Absorbed by the orchestrator."""

    def __init__(self, model_id: str, detail: str) -> None:
        super().__init__(
            message=f"Embedding with model '{model_id}' failed: {detail}",
            error_code="EMBEDDING_FAILED",
        )
        self.model_id = model_id


class ChunkPersistenceError(IngestionError):
    def __init__(self, doc_id: str, chunk_index: int, detail: str) -> None:
        super().__init__(
            message=f"Failed to persist chunk {chunk_index} of document '{doc_id}': {detail}",
            error_code="CHUNK_PERSISTENCE_FAILED",
        )
        self.doc_id = doc_id
        self.chunk_index = chunk_index


class EmbeddingPersistenceError(IngestionError):
    def __init__(self, chunk_id: int, detail: str) -> None:
        super().__init__(
            message=f"Failed to persist embedding row for chunk id {chunk_id}: {detail}",
            error_code="EMBEDDING_PERSISTENCE_FAILED",
        )
        self.chunk_id = chunk_id


class StoreError(IngestionError):
    """The relational store rejected a statement or could not be reached."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            message=f"Knowledge base store operation failed: {detail}",
            error_code="STORE_ERROR",
        )
        self.detail = detail
