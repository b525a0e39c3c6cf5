"""Exception hierarchy for the query pipeline.

Every error raised across a component boundary derives from ``RagError`` and
carries a ``details`` dict for logging. Non-fatal conditions (empty store,
no hits, reranker failure) are not errors: they produce degraded responses.
"""

from __future__ import annotations

from typing import Any


class RagError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class DimensionMismatch(RagError):
    """Raised when an embedding's dimensionality disagrees with the store."""

    def __init__(self, expected: int, actual: int, chunk_id: str | None = None) -> None:
        details: dict[str, Any] = {"expected": expected, "actual": actual}
        if chunk_id is not None:
            details["chunk_id"] = chunk_id
        super().__init__(
            f"Embedding dimension {actual} does not match store dimension {expected}",
            details,
        )
        self.expected = expected
        self.actual = actual


class DuplicateChunkError(RagError):
    """Raised when a chunk id is already present in the store."""

    def __init__(self, chunk_id: str) -> None:
        super().__init__(f"Chunk id already exists: {chunk_id}", {"chunk_id": chunk_id})
        self.chunk_id = chunk_id


class EmbeddingFailure(RagError):
    """Raised when the embedding collaborator fails for a text."""


class GenerationError(RagError):
    """Raised when the generation backend fails (after bounded retry)."""


class GenerationTimeout(GenerationError):
    """Raised when a generation attempt exceeds its wall-clock budget."""


class ValidationError(RagError):
    """Raised when a query is empty or malformed."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details)
