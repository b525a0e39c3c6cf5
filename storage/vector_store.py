"""Local file-backed vector store with exact brute-force search."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import numpy as np

from core.errors import DimensionMismatch
from core.models import Chunk, SearchResult, StoreStats
from storage.base import (
    DEFAULT_TABLE_NAME,
    BaseVectorStore,
    build_stats,
    check_k,
    check_page_args,
    validate_batch,
)

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger(__name__)

METRICS = ("cosine", "euclidean")


@dataclass(frozen=True)
class _Snapshot:
    """Immutable view of the table; replaced wholesale on every write."""

    chunks: tuple[Chunk, ...] = ()
    matrix: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    norms: np.ndarray = field(default_factory=lambda: np.zeros(0))
    ids: frozenset[str] = frozenset()
    signature: tuple[int, int] | None = None

    @property
    def dimension(self) -> int | None:
        return self.matrix.shape[1] if self.chunks else None


def _build_snapshot(chunks: Sequence[Chunk], signature: tuple[int, int] | None) -> _Snapshot:
    if not chunks:
        return _Snapshot(signature=signature)
    matrix = np.asarray([c.embedding for c in chunks], dtype=np.float64)
    return _Snapshot(
        chunks=tuple(chunks),
        matrix=matrix,
        norms=np.linalg.norm(matrix, axis=1),
        ids=frozenset(c.id for c in chunks),
        signature=signature,
    )


class LocalVectorStore(BaseVectorStore):
    """Vector store persisted as JSON lines at ``<db_path>/<table_name>.jsonl``.

    Reads work off an immutable snapshot, so concurrent searches are safe.
    Writes are serialized by a lock and become visible to readers once the
    new snapshot is swapped in.
    """

    def __init__(
        self,
        db_path: str | os.PathLike,
        table_name: str = DEFAULT_TABLE_NAME,
        metric: str = "cosine",
    ):
        if metric not in METRICS:
            raise ValueError(f"Unknown distance metric '{metric}', expected one of {METRICS}")
        self.db_path = Path(db_path)
        self.table_name = table_name
        self.metric = metric
        self._lock = threading.Lock()
        self._snapshot: _Snapshot | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> LocalVectorStore:
        return cls(settings.db_path, settings.table_name, settings.distance_metric)

    @property
    def table_path(self) -> Path:
        return self.db_path / f"{self.table_name}.jsonl"

    def _signature(self) -> tuple[int, int] | None:
        try:
            stat = self.table_path.stat()
        except FileNotFoundError:
            return None
        return (stat.st_mtime_ns, stat.st_size)

    def _read_table(self) -> list[Chunk]:
        chunks: list[Chunk] = []
        with open(self.table_path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    chunks.append(Chunk.from_record(json.loads(line)))
        return chunks

    def _refresh(self) -> _Snapshot:
        """Reload the snapshot if the file changed on disk. Caller holds the lock."""
        signature = self._signature()
        snapshot = self._snapshot
        if snapshot is None or snapshot.signature != signature:
            chunks = self._read_table() if signature is not None else []
            snapshot = _build_snapshot(chunks, signature)
            self._snapshot = snapshot
            logger.debug("Loaded %d chunks from %s", len(chunks), self.table_path)
        return snapshot

    def _current(self) -> _Snapshot:
        snapshot = self._snapshot
        if snapshot is not None and snapshot.signature == self._signature():
            return snapshot
        with self._lock:
            return self._refresh()

    def add(self, chunks: Sequence[Chunk]) -> int:
        """Append chunks to the table. Returns count added."""
        if not chunks:
            return 0

        with self._lock:
            current = self._refresh()
            validate_batch(chunks, current.dimension, set(current.ids))

            self.db_path.mkdir(parents=True, exist_ok=True)
            with open(self.table_path, "a", encoding="utf-8") as f:
                for chunk in chunks:
                    f.write(json.dumps(chunk.to_record()) + "\n")

            self._snapshot = _build_snapshot(
                list(current.chunks) + list(chunks), self._signature()
            )

        logger.info("Added %d chunks to %s", len(chunks), self.table_path)
        return len(chunks)

    def _distances(self, snapshot: _Snapshot, query: np.ndarray) -> np.ndarray:
        if self.metric == "euclidean":
            return np.linalg.norm(snapshot.matrix - query, axis=1)

        denominator = snapshot.norms * np.linalg.norm(query)
        dots = snapshot.matrix @ query
        similarity = np.divide(
            dots, denominator, out=np.zeros_like(dots), where=denominator != 0
        )
        return 1.0 - similarity

    def search(self, query_embedding: Sequence[float], k: int) -> list[SearchResult]:
        """Exact nearest-neighbor scan; ties keep insertion order."""
        check_k(k)
        snapshot = self._current()
        if not snapshot.chunks or k == 0:
            return []

        query = np.asarray(query_embedding, dtype=np.float64)
        if query.shape != (snapshot.dimension,):
            raise DimensionMismatch(snapshot.dimension, int(query.size))

        distances = self._distances(snapshot, query)
        order = np.argsort(distances, kind="stable")[:k]
        return [
            SearchResult(chunk=snapshot.chunks[i], distance=float(distances[i]), rank=rank)
            for rank, i in enumerate(order, start=1)
        ]

    def page(self, limit: int, offset: int = 0) -> list[Chunk]:
        check_page_args(limit, offset)
        return list(self._current().chunks[offset : offset + limit])

    def stats(self) -> StoreStats:
        return build_stats(self._current().chunks)

    def exists(self) -> bool:
        if self._signature() is None:
            return False
        return bool(self._current().chunks)


def create_vector_store(settings: Settings) -> BaseVectorStore:
    """Build the backend selected by ``settings.vector_backend``."""
    if settings.vector_backend == "neo4j":
        from storage.neo4j_store import Neo4jVectorStore

        return Neo4jVectorStore.from_settings(settings)
    return LocalVectorStore.from_settings(settings)
