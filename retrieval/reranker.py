"""Result re-ranking with a fine-grained relevance scorer."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Protocol, Sequence

import numpy as np

from core.models import Chunk, FusedCandidate
from generation.backend import GenerationOptions

if TYPE_CHECKING:
    from generation.backend import BackendCache
    from retrieval.embedder import Embedder

logger = logging.getLogger(__name__)

RERANK_FAILED = "reranker_failed"


class RelevanceScorer(Protocol):
    def score(self, query: str, chunk: Chunk) -> float: ...


class CosineRelevanceScorer:
    """Cosine similarity between query and chunk embeddings, clipped to [0, 1]."""

    def __init__(self, embedder: Embedder):
        self.embedder = embedder
        self._query_vector = lru_cache(maxsize=64)(self._embed_query)

    def _embed_query(self, query: str) -> np.ndarray:
        return np.asarray(self.embedder.embed(query), dtype=np.float64)

    def score(self, query: str, chunk: Chunk) -> float:
        if not chunk.embedding:
            return 0.0

        query_vec = self._query_vector(query)
        chunk_vec = np.asarray(chunk.embedding, dtype=np.float64)
        if query_vec.shape != chunk_vec.shape:
            raise ValueError(
                f"Query embedding has {query_vec.size} dims, chunk has {chunk_vec.size}"
            )

        query_norm = np.linalg.norm(query_vec)
        chunk_norm = np.linalg.norm(chunk_vec)
        if query_norm == 0 or chunk_norm == 0:
            return 0.0
        similarity = float(np.dot(query_vec, chunk_vec) / (query_norm * chunk_norm))
        return max(similarity, 0.0)


class LLMRelevanceScorer:
    """Asks the generation backend to rate relevance 1-5, mapped to [0, 1]."""

    def __init__(self, backend: BackendCache, max_chars: int = 1200):
        self.backend = backend
        self.max_chars = max_chars

    def score(self, query: str, chunk: Chunk) -> float:
        prompt = f"""Rate the relevance of the passage to the query on a scale of 1-5.
Return ONLY the number.

Query: {query}

Passage:
{chunk.text[: self.max_chars]}

Score:"""
        raw = self.backend.generate(prompt, GenerationOptions(temperature=0.0, max_tokens=4))
        match = re.search(r"\d+(?:\.\d+)?", raw)
        if not match:
            raise ValueError(f"Invalid relevance score in response: {raw!r}")
        value = min(max(float(match.group()), 1.0), 5.0)
        return (value - 1.0) / 4.0


def create_scorer(
    method: str, embedder: Embedder, backend: BackendCache | None = None
) -> RelevanceScorer | None:
    """Build the relevance scorer named by ``method`` ("cosine", "llm", "none")."""
    if method == "none":
        return None
    if method == "llm":
        if backend is None:
            raise ValueError("LLM relevance scoring requires a generation backend")
        return LLMRelevanceScorer(backend)
    if method != "cosine":
        logger.warning("Unknown rerank method '%s', using cosine", method)
    return CosineRelevanceScorer(embedder)


@dataclass
class RerankOutcome:
    candidates: list[FusedCandidate] = field(default_factory=list)
    degraded: bool = False
    reason: str | None = None


class Reranker:
    """Reorders fused candidates by relevance and truncates to top_k.

    Whether a scorer is available is fixed at construction. If the scorer
    raises, the fused order is kept and the outcome is marked degraded.
    """

    def __init__(self, scorer: RelevanceScorer | None = None):
        self.scorer = scorer

    @property
    def available(self) -> bool:
        return self.scorer is not None

    def rerank(
        self, query: str, candidates: Sequence[FusedCandidate], top_k: int
    ) -> RerankOutcome:
        """Re-rank candidates against the query.

        Args:
            query: Query text the scorer compares chunks against
            candidates: Fused candidates in fused order
            top_k: Number of results to return

        Returns:
            RerankOutcome with exactly min(top_k, len(candidates)) candidates
        """
        if top_k <= 0:
            raise ValueError(f"top_k must be positive (got {top_k})")

        limit = min(top_k, len(candidates))
        if not candidates or self.scorer is None:
            return RerankOutcome(candidates=list(candidates[:limit]))

        try:
            scores = []
            for candidate in candidates:
                value = float(self.scorer.score(query, candidate.chunk))
                if not math.isfinite(value):
                    raise ValueError(f"Non-finite relevance score for {candidate.chunk_id}")
                scores.append(value)
        except Exception as e:
            logger.warning("Reranking failed (%s), using fused order", e)
            return RerankOutcome(
                candidates=list(candidates[:limit]), degraded=True, reason=RERANK_FAILED
            )

        # sorted() is stable, so equal scores keep fused order
        order = sorted(range(len(candidates)), key=lambda i: -scores[i])
        reranked = [
            candidates[i].model_copy(update={"rerank_score": scores[i]}) for i in order[:limit]
        ]
        logger.debug("Reranked %d candidates to top %d", len(candidates), len(reranked))
        return RerankOutcome(candidates=reranked)
