"""Neo4j Vector Index store: approximate nearest-neighbor backend."""

from __future__ import annotations

import json
import logging
import math
import re
from typing import TYPE_CHECKING, Any, Sequence

from core.errors import DimensionMismatch
from core.models import Chunk, SearchResult, StoreStats
from storage.base import (
    DEFAULT_TABLE_NAME,
    BaseVectorStore,
    check_k,
    check_page_args,
    validate_batch,
)

if TYPE_CHECKING:
    from neo4j import Driver

    from core.config import Settings

logger = logging.getLogger(__name__)

NODE_LABEL_PREFIX = "RagChunk"
EMBEDDING_PROPERTY = "embedding"

_RETURN_FIELDS = """
    c.id AS id,
    c.chunk_text AS chunk_text,
    c.file_path AS file_path,
    c.chunk_index AS chunk_index,
    c.embedding AS embedding,
    c.metadata AS metadata
"""


def node_label(table_name: str) -> str:
    """Map a table name to a Neo4j node label, e.g. documents -> RagChunk_documents."""
    return f"{NODE_LABEL_PREFIX}_{re.sub(r'[^0-9A-Za-z_]', '_', table_name)}"


def score_to_distance(score: float, metric: str) -> float:
    """Convert a Neo4j vector index similarity score back to a distance.

    Neo4j reports cosine as (1 + cos) / 2 and euclidean as 1 / (1 + d^2).
    """
    if metric == "euclidean":
        if score <= 0:
            return math.inf
        return math.sqrt(max(1.0 / score - 1.0, 0.0))
    return max(2.0 - 2.0 * score, 0.0)


class Neo4jVectorStore(BaseVectorStore):
    """Neo4j-backed vector store using the native vector index."""

    def __init__(
        self,
        driver: Driver | None = None,
        table_name: str = DEFAULT_TABLE_NAME,
        metric: str = "cosine",
        settings: Settings | None = None,
    ):
        if metric not in ("cosine", "euclidean"):
            raise ValueError(f"Unknown distance metric '{metric}'")

        if driver is None:
            from neo4j import GraphDatabase

            if settings is None:
                from core.config import settings

            self._driver = GraphDatabase.driver(
                settings.neo4j_uri,
                auth=(settings.neo4j_user, settings.neo4j_password),
            )
        else:
            self._driver = driver

        self.table_name = table_name
        self.metric = metric
        self.label = node_label(table_name)
        self.index_name = f"{self.label.lower()}_embedding_index"

    @classmethod
    def from_settings(cls, settings: Settings) -> Neo4jVectorStore:
        return cls(
            table_name=settings.table_name,
            metric=settings.distance_metric,
            settings=settings,
        )

    def close(self) -> None:
        self._driver.close()

    def init_index(self, dimensions: int) -> None:
        """Create the vector index if it doesn't exist."""
        with self._driver.session() as session:
            session.run(
                f"""
                CREATE VECTOR INDEX {self.index_name} IF NOT EXISTS
                FOR (n:{self.label})
                ON (n.{EMBEDDING_PROPERTY})
                OPTIONS {{
                    indexConfig: {{
                        `vector.dimensions`: $dimensions,
                        `vector.similarity_function`: '{self.metric}'
                    }}
                }}
                """,
                dimensions=dimensions,
            )
        logger.info("Vector index '%s' initialized", self.index_name)

    def _summary(self, session) -> dict[str, Any]:
        record = session.run(
            f"""
            MATCH (c:{self.label})
            RETURN count(c) AS total,
                   max(c.seq) AS max_seq,
                   head(collect(size(c.{EMBEDDING_PROPERTY}))) AS dims
            """
        ).single()
        if not record:
            return {"total": 0, "max_seq": None, "dims": None}
        return {"total": record["total"], "max_seq": record["max_seq"], "dims": record["dims"]}

    def add(self, chunks: Sequence[Chunk]) -> int:
        """Store chunks as nodes with embeddings. Returns count added."""
        if not chunks:
            return 0

        with self._driver.session() as session:
            summary = self._summary(session)
            existing = session.run(
                f"MATCH (c:{self.label}) WHERE c.id IN $ids RETURN c.id AS id",
                ids=[c.id for c in chunks],
            )
            existing_ids = {record["id"] for record in existing}
            dimensions = validate_batch(chunks, summary["dims"], existing_ids)

            start = (summary["max_seq"] + 1) if summary["max_seq"] is not None else 0
            rows = []
            for offset, chunk in enumerate(chunks):
                row = chunk.to_record()
                row["metadata"] = json.dumps(row["metadata"])
                row["seq"] = start + offset
                rows.append(row)

            session.run(
                f"""
                UNWIND $rows AS row
                CREATE (c:{self.label} {{
                    id: row.id,
                    chunk_text: row.chunk_text,
                    file_path: row.file_path,
                    chunk_index: row.chunk_index,
                    {EMBEDDING_PROPERTY}: row.embedding,
                    metadata: row.metadata,
                    seq: row.seq
                }})
                """,
                rows=rows,
            )

        if summary["total"] == 0:
            self.init_index(dimensions)

        logger.info("Added %d chunks to vector store", len(chunks))
        return len(chunks)

    def search(self, query_embedding: Sequence[float], k: int) -> list[SearchResult]:
        """Search vector index; ties on score fall back to creation order."""
        check_k(k)
        if k == 0:
            return []

        with self._driver.session() as session:
            summary = self._summary(session)
            if not summary["total"]:
                return []
            if summary["dims"] is not None and len(query_embedding) != summary["dims"]:
                raise DimensionMismatch(summary["dims"], len(query_embedding))

            result = session.run(
                f"""
                CALL db.index.vector.queryNodes('{self.index_name}', $k, $embedding)
                YIELD node AS c, score
                RETURN {_RETURN_FIELDS}, c.seq AS seq, score
                ORDER BY score DESC, seq ASC
                """,
                k=k,
                embedding=list(query_embedding),
            )

            results = []
            for i, record in enumerate(result):
                results.append(
                    SearchResult(
                        chunk=Chunk.from_record(dict(record)),
                        distance=score_to_distance(record["score"], self.metric),
                        rank=i + 1,
                    )
                )

        return results[:k]

    def page(self, limit: int, offset: int = 0) -> list[Chunk]:
        check_page_args(limit, offset)
        with self._driver.session() as session:
            result = session.run(
                f"""
                MATCH (c:{self.label})
                RETURN {_RETURN_FIELDS}
                ORDER BY c.seq
                SKIP $offset LIMIT $limit
                """,
                offset=offset,
                limit=limit,
            )
            return [Chunk.from_record(dict(record)) for record in result]

    def stats(self) -> StoreStats:
        with self._driver.session() as session:
            record = session.run(
                f"""
                MATCH (c:{self.label})
                RETURN count(c) AS total,
                       count(DISTINCT c.file_path) AS unique_files,
                       head(collect(size(c.{EMBEDDING_PROPERTY}))) AS dims,
                       avg(size(c.chunk_text)) AS avg_size,
                       sum(size(c.chunk_text)) AS total_size
                """
            ).single()

        if not record or not record["total"]:
            return StoreStats()
        return StoreStats(
            total_chunks=record["total"],
            unique_files=record["unique_files"],
            embedding_dims=record["dims"],
            avg_chunk_size=round(record["avg_size"] or 0),
            total_size_mb=round((record["total_size"] or 0) / 1024.0 / 1024.0, 2),
        )

    def exists(self) -> bool:
        with self._driver.session() as session:
            return bool(self._summary(session)["total"])
