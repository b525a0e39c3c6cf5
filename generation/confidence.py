"""Confidence scoring for generated answers.

confidence = 100 * sum(w_i * c_i) / sum(w_i) over the available components:

    fusion         0.4  mean fused score, normalized by the best possible score
    rerank         0.3  mean relevance score from the reranker, in [0, 1]
    concentration  0.1  1 - (max - min) of the normalized fused scores
    groundedness   0.2  share of the answer's content words found in the context

Components that cannot be computed (no rerank scores, no answer) drop out and
the remaining weights are renormalized.
"""

from __future__ import annotations

from statistics import fmean
from typing import Sequence

from core.models import FusedCandidate
from core.text import content_words, word_set
from retrieval.fusion import RRF_K, max_fused_score

WEIGHTS = {
    "fusion": 0.4,
    "rerank": 0.3,
    "concentration": 0.1,
    "groundedness": 0.2,
}


def _clip(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def groundedness(answer: str, context: str) -> float | None:
    """Fraction of the answer's content words that appear in the context."""
    words = content_words(answer)
    if not words:
        return None
    context_words = word_set(context)
    return sum(1 for w in words if w in context_words) / len(words)


def confidence_components(
    candidates: Sequence[FusedCandidate],
    n_lists: int,
    k0: int = RRF_K,
    answer: str | None = None,
    context: str | None = None,
) -> dict[str, float]:
    if not candidates or n_lists <= 0:
        return {}

    best = max_fused_score(n_lists, k0)
    normalized = [_clip(c.fused_score / best) for c in candidates]
    components = {
        "fusion": fmean(normalized),
        "concentration": 1.0 - (max(normalized) - min(normalized)),
    }

    rerank_scores = [_clip(c.rerank_score) for c in candidates if c.rerank_score is not None]
    if rerank_scores:
        components["rerank"] = fmean(rerank_scores)

    if answer and context:
        grounded = groundedness(answer, context)
        if grounded is not None:
            components["groundedness"] = grounded

    return components


def score_confidence(
    candidates: Sequence[FusedCandidate],
    n_lists: int,
    k0: int = RRF_K,
    answer: str | None = None,
    context: str | None = None,
) -> float:
    """Return confidence in [0, 100], rounded to one decimal."""
    components = confidence_components(candidates, n_lists, k0, answer, context)
    if not components:
        return 0.0

    total_weight = sum(WEIGHTS[name] for name in components)
    value = sum(WEIGHTS[name] * score for name, score in components.items()) / total_weight
    return round(_clip(value) * 100.0, 1)
