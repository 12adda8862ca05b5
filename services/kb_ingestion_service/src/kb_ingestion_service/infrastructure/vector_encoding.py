"""Encodings for writing an embedding into kb_embeddings.embedding.

Each encoding is a SQL value expression around the ``:embedding`` bind plus
the Python form bound to it. The embedding repository tries them in order
and falls back to a NULL row when none is accepted.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal


def sanitize_vector(vector: Sequence[float]) -> list[float]:
    """Replace NaN and infinities with 0.0."""
    return [float(v) if math.isfinite(v) else 0.0 for v in vector]


def to_vector_literal(vector: Sequence[float]) -> str:
    """JSON-style array literal accepted by pgvector and readable as JSON."""
    return "[" + ",".join(str(v) for v in sanitize_vector(vector)) + "]"


@dataclass(frozen=True)
class VectorEncoding:
    name: str
    value_sql: str
    binding: Literal["literal", "array"]
    dialects: frozenset[str] | None = None

    def supports(self, dialect_name: str) -> bool:
        return self.dialects is None or dialect_name in self.dialects

    def bind_value(self, vector: Sequence[float]) -> str | list[float]:
        if self.binding == "array":
            return sanitize_vector(vector)
        return to_vector_literal(vector)


PGVECTOR_TEXT_ENCODING = VectorEncoding(
    name="pgvector_text",
    value_sql="CAST(CAST(:embedding AS TEXT) AS vector)",
    binding="literal",
    dialects=frozenset({"postgresql"}),
)

PGVECTOR_ARRAY_ENCODING = VectorEncoding(
    name="pgvector_array",
    value_sql="CAST(CAST(:embedding AS REAL[]) AS vector)",
    binding="array",
    dialects=frozenset({"postgresql"}),
)

# Emulated vector column: the literal stored as text.
JSON_TEXT_ENCODING = VectorEncoding(
    name="json_text",
    value_sql=":embedding",
    binding="literal",
)

DEFAULT_VECTOR_ENCODINGS: tuple[VectorEncoding, ...] = (
    PGVECTOR_TEXT_ENCODING,
    PGVECTOR_ARRAY_ENCODING,
    JSON_TEXT_ENCODING,
)
