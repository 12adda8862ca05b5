from __future__ import annotations

import structlog
from openai import AsyncOpenAI, OpenAIError

from kb_ingestion_service.domain.exceptions import EmbeddingError
from kb_ingestion_service.domain.interfaces import EmbeddingProviderPort

logger = structlog.get_logger(__name__)


class EmbeddingClient(EmbeddingProviderPort):
    """Single-input embedding calls against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        dimensions: int | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._client = client or AsyncOpenAI(
            base_url=base_url or None,
            api_key=api_key or "EMPTY",
            timeout=timeout_seconds,
            max_retries=max_retries,
        )
        self._dimensions = dimensions

    async def embed(self, text: str, model_id: str) -> list[float]:
        try:
            response = await self._client.embeddings.create(
                input=[text],
                model=model_id,
            )
        except OpenAIError as exc:
            raise EmbeddingError(model_id, f"{type(exc).__name__}: {exc}") from exc

        if not response.data or not response.data[0].embedding:
            raise EmbeddingError(model_id, "no embedding returned for input")

        try:
            vector = [float(v) for v in response.data[0].embedding]
        except (TypeError, ValueError) as exc:
            raise EmbeddingError(model_id, f"malformed embedding values: {exc}") from exc

        if self._dimensions and len(vector) != self._dimensions:
            raise EmbeddingError(
                model_id,
                f"expected {self._dimensions} dimensions, got {len(vector)}",
            )

        logger.debug(
            "embedding.single.completed",
            model=model_id,
            dim=len(vector),
            total_tokens=response.usage.total_tokens if response.usage else None,
        )
        return vector

    async def close(self) -> None:
        await self._client.close()
