"""Reciprocal Rank Fusion over per-sub-query result lists.

RRF merges ranked lists using only ranks, so no score normalization is
needed when distance scales differ between sub-queries:

    fused_score(chunk) = sum over lists L containing chunk of 1 / (rank_L + k0)
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

from core.models import Chunk, FusedCandidate, RetrievalHit

logger = logging.getLogger(__name__)

RRF_K = 60


def max_fused_score(n_lists: int, k0: int = RRF_K) -> float:
    """Score of a chunk ranked first in every one of n_lists lists."""
    return n_lists / (1 + k0)


def reciprocal_rank_fusion(
    hit_lists: Sequence[Sequence[RetrievalHit]], k0: int = RRF_K
) -> list[FusedCandidate]:
    """Merge ranked hit lists into one candidate list.

    Args:
        hit_lists: One list per sub-query, each ordered by rank
        k0: Smoothing constant; larger values flatten the rank curve

    Returns:
        Candidates by descending fused score, ties broken by best individual
        rank and then by chunk id
    """
    if k0 <= 0:
        raise ValueError(f"k0 must be positive (got {k0})")

    ranks: dict[str, dict[int, int]] = {}
    chunks: dict[str, Chunk | None] = {}
    for list_index, hits in enumerate(hit_lists):
        for hit in hits:
            sub_query_id = hit.sub_query_id if hit.sub_query_id is not None else list_index
            per_list = ranks.setdefault(hit.chunk_id, {})
            # keep the best rank if a list repeats a chunk
            if sub_query_id not in per_list or hit.rank < per_list[sub_query_id]:
                per_list[sub_query_id] = hit.rank
            if chunks.get(hit.chunk_id) is None:
                chunks[hit.chunk_id] = hit.chunk

    fused = []
    for chunk_id, per_list in ranks.items():
        contributing = sorted(per_list.items())
        fused.append(
            FusedCandidate(
                chunk_id=chunk_id,
                fused_score=math.fsum(1.0 / (rank + k0) for _, rank in contributing),
                contributing_ranks=contributing,
                chunk=chunks[chunk_id],
            )
        )

    fused.sort(key=lambda c: (-c.fused_score, c.best_rank, c.chunk_id))
    logger.debug("Fused %d lists into %d candidates", len(hit_lists), len(fused))
    return fused
