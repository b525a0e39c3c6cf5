"""Multi-query retrieval: embed each sub-query and search the vector store."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

from core.config import settings
from core.errors import EmbeddingFailure
from core.models import RetrievalHit, SubQuery

if TYPE_CHECKING:
    from retrieval.embedder import Embedder
    from storage.base import BaseVectorStore

logger = logging.getLogger(__name__)


@dataclass
class RetrievalReport:
    """Per-sub-query hit lists plus which sub-queries failed or timed out."""

    hit_lists: list[list[RetrievalHit]] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    timed_out: list[int] = field(default_factory=list)

    @property
    def total_hits(self) -> int:
        return sum(len(hits) for hits in self.hit_lists)

    @property
    def is_empty(self) -> bool:
        return self.total_hits == 0


class Retriever:
    """Fans sub-queries out to the vector store in parallel."""

    def __init__(
        self,
        vector_store: BaseVectorStore,
        embedder: Embedder,
        fanout_multiplier: int | None = None,
        fanout_min: int | None = None,
        max_workers: int | None = None,
    ):
        """Initialize retriever with a vector store and an embedding collaborator.

        Args:
            vector_store: Store to search
            embedder: Object with an ``embed(text) -> list[float]`` method
            fanout_multiplier: Candidates per sub-query as a multiple of top_k
            fanout_min: Lower bound on candidates per sub-query
            max_workers: Thread pool size for concurrent sub-queries
        """
        self.vector_store = vector_store
        self.embedder = embedder
        self.fanout_multiplier = fanout_multiplier or settings.fanout_multiplier
        self.fanout_min = fanout_min or settings.fanout_min
        self.max_workers = max_workers or settings.retrieval_workers

    def fanout(self, top_k: int) -> int:
        """Number of candidates fetched per sub-query; never below top_k."""
        return max(top_k * self.fanout_multiplier, self.fanout_min, top_k)

    def search_one(self, sub_query: SubQuery, k: int) -> list[RetrievalHit]:
        """Embed one sub-query and return its ranked hits."""
        embedding = self.embedder.embed(sub_query.text)
        results = self.vector_store.search(embedding, k)
        logger.debug("Sub-query %d returned %d results", sub_query.id, len(results))
        return [
            RetrievalHit(
                chunk_id=r.chunk.id,
                rank=rank,
                distance=r.distance,
                sub_query_id=sub_query.id,
                chunk=r.chunk,
            )
            for rank, r in enumerate(results, start=1)
        ]

    def retrieve(
        self,
        sub_queries: Sequence[SubQuery],
        top_k: int,
        timeout: float | None = None,
    ) -> RetrievalReport:
        """Search the store for every sub-query.

        An embedding failure or a timeout degrades that sub-query to an empty
        list; any other error propagates.

        Args:
            sub_queries: Queries to run, as produced by the rewriter
            top_k: Final number of results the caller wants
            timeout: Wall-clock budget in seconds for the whole stage

        Returns:
            RetrievalReport with one hit list per sub-query, in input order
        """
        report = RetrievalReport()
        if not sub_queries:
            return report

        k = self.fanout(top_k)
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(sub_queries)),
            thread_name_prefix="retrieval",
        )
        try:
            futures = [executor.submit(self.search_one, sq, k) for sq in sub_queries]
            done, _ = wait(futures, timeout=timeout)

            for sub_query, future in zip(sub_queries, futures):
                if future not in done:
                    future.cancel()
                    logger.warning("Sub-query %d timed out after %ss", sub_query.id, timeout)
                    report.timed_out.append(sub_query.id)
                    report.hit_lists.append([])
                    continue
                try:
                    report.hit_lists.append(future.result())
                except EmbeddingFailure as e:
                    logger.warning("Sub-query %d dropped: %s", sub_query.id, e)
                    report.failed.append(sub_query.id)
                    report.hit_lists.append([])
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "Retrieved %d hits for %d sub-queries (fan-out %d)",
            report.total_hits,
            len(sub_queries),
            k,
        )
        return report
