from __future__ import annotations

import json

import pytest

from kb_ingestion_service.domain.chunking import compute_content_hash
from kb_ingestion_service.domain.exceptions import (
    ChunkPersistenceError,
    DocumentTooLargeError,
    EmbeddingPersistenceError,
    EmptyDocumentError,
)
from kb_ingestion_service.domain.models import ReingestPolicy
from kb_ingestion_service.domain.services import (
    FALLBACK_EMBEDDING_MODEL_ID,
    resolve_embedding_model_id,
    resolve_tenant_id,
)
from kb_ingestion_service.infrastructure.repository import (
    SqlChunkRepository,
    SqlEmbeddingRepository,
)

from conftest import FakeEmbedder, fetch_all, fetch_scalar, sample_text


class FailingChunkRepository(SqlChunkRepository):
    def __init__(self, fail_at: int) -> None:
        self._fail_at = fail_at

    async def insert(self, conn, tenant_id, doc_id, chunk):
        if chunk.chunk_index == self._fail_at:
            raise ChunkPersistenceError(doc_id, chunk.chunk_index, "disk full")
        return await super().insert(conn, tenant_id, doc_id, chunk)


class UnresolvableIdChunkRepository(SqlChunkRepository):
    def _read_generated_id(self, result, returning):
        return None

    async def _lookup_id(self, conn, tenant_id, doc_id, chunk_index):
        return None


class FailingNullEmbeddingRepository(SqlEmbeddingRepository):
    async def insert(self, conn, chunk_id, vector):
        raise EmbeddingPersistenceError(chunk_id, "constraint violated")


async def _row_counts(database) -> tuple[int, int, int]:
    return (
        await fetch_scalar(database, "SELECT COUNT(*) FROM kb_documents"),
        await fetch_scalar(database, "SELECT COUNT(*) FROM kb_chunks"),
        await fetch_scalar(database, "SELECT COUNT(*) FROM kb_embeddings"),
    )


class TestIngestText:
    @pytest.mark.asyncio
    async def test_simple_ingest_without_doc_id(self, database, embedder, make_service):
        text = sample_text(5000)
        summary = await make_service().ingest_text(text)

        content_hash = compute_content_hash(text)
        assert summary.doc_id == "doc_" + content_hash[:16]
        assert summary.content_hash == content_hash
        assert (summary.chunk_count, summary.embedded_count, summary.skipped) == (3, 3, False)

        chunks = await fetch_all(
            database,
            "SELECT tenant_id, doc_id, chunk_index, text, source_meta FROM kb_chunks ORDER BY id",
        )
        assert [c["chunk_index"] for c in chunks] == [0, 1, 2]
        assert [json.loads(c["source_meta"])["range"] for c in chunks] == [
            {"start": 0, "end": 2000},
            {"start": 1700, "end": 3700},
            {"start": 3400, "end": 5000},
        ]
        assert all(c["tenant_id"] == "default" and c["doc_id"] == summary.doc_id for c in chunks)
        assert await _row_counts(database) == (1, 3, 3)
        assert [model for _, model in embedder.calls] == ["test-embed-model"] * 3

    @pytest.mark.asyncio
    async def test_every_chunk_has_exactly_one_embedding_row(self, database, make_service):
        await make_service().ingest_text(sample_text(7321), tenant_id="acme")

        orphans = await fetch_scalar(
            database,
            """
            SELECT COUNT(*) FROM kb_chunks c
            LEFT JOIN kb_embeddings e ON e.chunk_id = c.id
            WHERE e.chunk_id IS NULL
            """,
        )
        assert orphans == 0
        assert await _row_counts(database) == (1, 5, 5)

    @pytest.mark.asyncio
    async def test_embedding_outage_stores_null_rows(self, database, make_service):
        summary = await make_service(embedder=FakeEmbedder(fail=True)).ingest_text(sample_text(5000))

        assert (summary.chunk_count, summary.embedded_count) == (3, 0)
        null_rows = await fetch_scalar(
            database, "SELECT COUNT(*) FROM kb_embeddings WHERE embedding IS NULL"
        )
        assert null_rows == 3

    @pytest.mark.asyncio
    async def test_embedding_timeout_is_a_soft_failure(self, database, make_service):
        service = make_service(
            embedder=FakeEmbedder(delay_seconds=0.5),
            embedding_timeout_seconds=0.01,
        )
        summary = await service.ingest_text("one short chunk")

        assert (summary.chunk_count, summary.embedded_count) == (1, 0)
        assert await fetch_scalar(database, "SELECT embedding FROM kb_embeddings") is None

    @pytest.mark.asyncio
    async def test_short_text_single_chunk(self, database, make_service):
        summary = await make_service().ingest_text("Refunds are issued within 30 days.")

        assert (summary.chunk_count, summary.embedded_count) == (1, 1)
        assert await _row_counts(database) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_text_is_trimmed_before_hashing(self, make_service):
        summary = await make_service().ingest_text("  \n hello knowledge base \t ")
        assert summary.content_hash == compute_content_hash("hello knowledge base")

    @pytest.mark.asyncio
    async def test_metadata_and_tenant_are_persisted(self, database, make_service):
        await make_service().ingest_text(
            "Shipping takes five days.",
            tenant_id=" acme ",
            doc_id="shipping",
            title="Shipping",
            uri="s3://kb/shipping.txt",
            mime="text/plain",
            tags=["logistics"],
        )

        rows = await fetch_all(database, "SELECT * FROM kb_documents")
        assert len(rows) == 1
        assert rows[0]["tenant_id"] == "acme"
        assert rows[0]["doc_id"] == "shipping"
        assert rows[0]["title"] == "Shipping"
        assert rows[0]["uri"] == "s3://kb/shipping.txt"
        assert json.loads(rows[0]["tags"]) == ["logistics"]

    @pytest.mark.asyncio
    async def test_model_override_is_used(self, embedder, make_service):
        await make_service().ingest_text("override me", embedding_model_id="custom-model")
        assert embedder.calls == [("override me", "custom-model")]


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("blank", ["", "   ", "\n\t"])
    async def test_blank_text_has_no_side_effects(self, database, embedder, make_service, blank):
        with pytest.raises(EmptyDocumentError):
            await make_service().ingest_text(blank)

        assert await _row_counts(database) == (0, 0, 0)
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_oversized_text_rejected(self, database, make_service):
        with pytest.raises(DocumentTooLargeError) as exc_info:
            await make_service(max_text_chars=10).ingest_text(sample_text(11))

        assert exc_info.value.error_code == "DOCUMENT_TOO_LARGE"
        assert await _row_counts(database) == (0, 0, 0)


class TestAtomicity:
    @pytest.mark.asyncio
    async def test_chunk_failure_rolls_back_all_chunks(self, database, make_service):
        service = make_service(chunks=FailingChunkRepository(fail_at=1))

        with pytest.raises(ChunkPersistenceError):
            await service.ingest_text(sample_text(5000), doc_id="atomic")

        # The document upsert commits before the chunk transaction.
        assert await _row_counts(database) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_unresolvable_chunk_id_rolls_back(self, database, make_service):
        service = make_service(chunks=UnresolvableIdChunkRepository())

        with pytest.raises(ChunkPersistenceError) as exc_info:
            await service.ingest_text(sample_text(5000), doc_id="no-ids")

        assert exc_info.value.chunk_index == 0
        assert "generated id" in str(exc_info.value)
        assert await _row_counts(database) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_null_embedding_failure_rolls_back(self, database, make_service):
        service = make_service(embeddings=FailingNullEmbeddingRepository())

        with pytest.raises(EmbeddingPersistenceError):
            await service.ingest_text(sample_text(5000))

        assert await _row_counts(database) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_rollback_keeps_previous_ingest(self, database, make_service):
        await make_service().ingest_text("first version", doc_id="kept")

        with pytest.raises(ChunkPersistenceError):
            await make_service(chunks=FailingChunkRepository(fail_at=0)).ingest_text(
                "second version", doc_id="kept"
            )

        assert await _row_counts(database) == (1, 1, 1)
        assert await fetch_scalar(database, "SELECT text FROM kb_chunks") == "first version"


class TestReingest:
    @pytest.mark.asyncio
    async def test_append_same_text_keeps_hash_and_accumulates(self, database, make_service):
        service = make_service(reingest_policy=ReingestPolicy.APPEND)
        text = sample_text(5000)
        first = await service.ingest_text(text, doc_id="policy-7")
        second = await service.ingest_text(text, doc_id="policy-7")

        assert second.skipped is False
        assert second.content_hash == first.content_hash
        documents = await fetch_all(database, "SELECT content_hash, active FROM kb_documents")
        assert len(documents) == 1
        assert documents[0]["content_hash"] == first.content_hash
        assert bool(documents[0]["active"]) is True
        assert await _row_counts(database) == (1, 6, 6)

    @pytest.mark.asyncio
    async def test_append_accumulates_chunks(self, database, make_service):
        service = make_service()
        await service.ingest_text(sample_text(5000), doc_id="policy-7")
        second = await service.ingest_text(sample_text(5000, seed=1), doc_id="policy-7")

        documents = await fetch_all(database, "SELECT content_hash, active FROM kb_documents")
        assert len(documents) == 1
        assert documents[0]["content_hash"] == second.content_hash
        assert bool(documents[0]["active"]) is True
        assert await fetch_scalar(
            database, "SELECT COUNT(*) FROM kb_chunks WHERE doc_id = 'policy-7'"
        ) == 6

    @pytest.mark.asyncio
    async def test_replace_swaps_chunks(self, database, make_service):
        service = make_service(reingest_policy=ReingestPolicy.REPLACE)
        await service.ingest_text(sample_text(5000), doc_id="policy-7")
        await service.ingest_text("brand new body", doc_id="policy-7")

        assert await _row_counts(database) == (1, 1, 1)
        assert await fetch_scalar(database, "SELECT text FROM kb_chunks") == "brand new body"

    @pytest.mark.asyncio
    async def test_skip_unchanged_returns_stored_counts(self, database, embedder, make_service):
        service = make_service(reingest_policy=ReingestPolicy.SKIP_UNCHANGED)
        text = sample_text(5000)

        first = await service.ingest_text(text, doc_id="policy-7")
        second = await service.ingest_text(text, doc_id="policy-7")

        assert first.skipped is False
        assert second.skipped is True
        assert (second.chunk_count, second.embedded_count) == (3, 3)
        assert second.content_hash == first.content_hash
        assert len(embedder.calls) == 3
        assert await _row_counts(database) == (1, 3, 3)

    @pytest.mark.asyncio
    async def test_skip_unchanged_ingests_changed_text(self, database, make_service):
        service = make_service(reingest_policy=ReingestPolicy.SKIP_UNCHANGED)

        await service.ingest_text("version one", doc_id="policy-7")
        summary = await service.ingest_text("version two", doc_id="policy-7")

        assert summary.skipped is False
        assert await fetch_scalar(database, "SELECT COUNT(*) FROM kb_chunks") == 2


class TestResolution:
    def test_embedding_model_precedence(self):
        assert resolve_embedding_model_id(" override ", "configured") == "override"
        assert resolve_embedding_model_id(None, "configured") == "configured"
        assert resolve_embedding_model_id("  ", "") == FALLBACK_EMBEDDING_MODEL_ID

    def test_tenant_defaults(self):
        assert resolve_tenant_id(None) == "default"
        assert resolve_tenant_id("   ", "fallback") == "fallback"
        assert resolve_tenant_id(" acme ") == "acme"
