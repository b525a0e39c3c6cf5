"""Vector store interface shared by the local and Neo4j backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from core.errors import DimensionMismatch, DuplicateChunkError
from core.models import Chunk, SearchResult, StoreStats

DEFAULT_TABLE_NAME = "documents"


class BaseVectorStore(ABC):
    """Persists chunks with embeddings and answers nearest-neighbor queries.

    Callers depend only on this interface so an exact brute-force scan and
    an approximate index can be swapped without changing them.
    """

    @abstractmethod
    def add(self, chunks: Sequence[Chunk]) -> int:
        """Append chunks. Returns the number added."""

    @abstractmethod
    def search(self, query_embedding: Sequence[float], k: int) -> list[SearchResult]:
        """Return up to k results ordered by ascending distance."""

    @abstractmethod
    def page(self, limit: int, offset: int = 0) -> list[Chunk]:
        """Return chunks in creation order."""

    @abstractmethod
    def stats(self) -> StoreStats:
        """Return counts describing the store."""

    @abstractmethod
    def exists(self) -> bool:
        """Report whether any backing data exists."""

    def close(self) -> None:
        """Release backend resources."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def validate_batch(
    chunks: Sequence[Chunk], dimension: int | None, existing_ids: set[str]
) -> int:
    """Check a batch before writing anything.

    Returns the dimensionality the store will have after the batch. Raises
    DimensionMismatch or DuplicateChunkError for the first offending chunk.
    """
    expected = dimension if dimension is not None else len(chunks[0].embedding)
    seen: set[str] = set()
    for chunk in chunks:
        if len(chunk.embedding) != expected:
            raise DimensionMismatch(expected, len(chunk.embedding), chunk.id)
        if chunk.id in existing_ids or chunk.id in seen:
            raise DuplicateChunkError(chunk.id)
        seen.add(chunk.id)
    return expected


def build_stats(chunks: Sequence[Chunk]) -> StoreStats:
    """Compute StoreStats for an in-memory sequence of chunks."""
    if not chunks:
        return StoreStats()

    sizes = [len(c.text) for c in chunks]
    dims = next((len(c.embedding) for c in chunks if c.embedding), None)
    return StoreStats(
        total_chunks=len(chunks),
        unique_files=len({c.source_path for c in chunks}),
        embedding_dims=dims,
        avg_chunk_size=round(sum(sizes) / len(sizes)),
        total_size_mb=round(sum(sizes) / 1024.0 / 1024.0, 2),
    )


def check_page_args(limit: int, offset: int) -> None:
    if limit < 0 or offset < 0:
        raise ValueError(f"limit and offset must be >= 0 (got {limit}, {offset})")


def check_k(k: int) -> None:
    if k < 0:
        raise ValueError(f"k must be >= 0 (got {k})")
