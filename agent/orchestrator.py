"""Query orchestrator: sequences the retrieval and generation stages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from core.config import Settings, settings
from core.errors import GenerationTimeout, ValidationError
from core.models import (
    ContextBlock,
    FusedCandidate,
    PipelineStage,
    Query,
    QueryAnalysis,
    QueryResponse,
    Source,
    SubQuery,
    TraceEntry,
)
from generation.backend import BackendCache, OpenAIBackend
from generation.confidence import confidence_components, score_confidence
from generation.context import ContextRepacker
from generation.generator import NO_INFORMATION_ANSWER, fallback_answer, generate_answer
from retrieval.fusion import reciprocal_rank_fusion
from retrieval.query_rewriter import QueryRewriter
from retrieval.reranker import Reranker, create_scorer
from retrieval.retriever import RetrievalReport, Retriever

if TYPE_CHECKING:
    from retrieval.embedder import Embedder
    from storage.base import BaseVectorStore

logger = logging.getLogger(__name__)

STAGE_ORDER = list(PipelineStage)

NO_RESULTS = "no_results"
GENERATION_TIMEOUT = "generation_timeout"


@dataclass
class PipelineState:
    """State passed through the pipeline stages."""

    query: Query
    stage: PipelineStage = PipelineStage.RECEIVED
    analysis: QueryAnalysis | None = None
    sub_queries: list[SubQuery] = field(default_factory=list)
    retrieval: RetrievalReport | None = None
    fused: list[FusedCandidate] = field(default_factory=list)
    reranked: list[FusedCandidate] = field(default_factory=list)
    context: ContextBlock | None = None
    answer: str = ""
    confidence: float = 0.0
    degraded_reasons: list[str] = field(default_factory=list)
    trace: list[TraceEntry] | None = None


class QueryOrchestrator:
    """Runs RECEIVED -> REWRITTEN -> RETRIEVED -> FUSED -> RERANKED ->
    CONTEXT_BUILT -> GENERATED -> SCORED -> DONE for each query.

    The generation backend cache is owned here and shared across queries;
    whether a reranker is available is decided once, at construction.
    """

    def __init__(
        self,
        vector_store: BaseVectorStore,
        embedder: Embedder,
        backend_cache: BackendCache | None = None,
        reranker: Reranker | None = None,
        rewriter: QueryRewriter | None = None,
        config: Settings | None = None,
    ):
        self.config = config or settings
        self.vector_store = vector_store
        self.embedder = embedder
        self.backend_cache = backend_cache or BackendCache(
            lambda: OpenAIBackend(model=self.config.llm_model)
        )
        self.rewriter = rewriter or QueryRewriter(
            self.backend_cache,
            enabled=self.config.enable_query_rewriting,
            seed=self.config.rewrite_seed,
        )
        self.retriever = Retriever(
            vector_store,
            embedder,
            fanout_multiplier=self.config.fanout_multiplier,
            fanout_min=self.config.fanout_min,
            max_workers=self.config.retrieval_workers,
        )
        if reranker is None:
            reranker = Reranker(
                create_scorer(self.config.rerank_method, embedder, self.backend_cache)
            )
        self.reranker = reranker
        self.repacker = ContextRepacker(
            self.config.context_budget, self.config.near_duplicate_threshold
        )
        logger.info(
            "Orchestrator ready (reranker %s)",
            "available" if self.reranker.available else "disabled",
        )

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> QueryOrchestrator:
        """Build an orchestrator with the configured store, embedder and backend."""
        from retrieval.embedder import Embedder
        from storage.vector_store import create_vector_store

        config = config or settings
        return cls(
            create_vector_store(config),
            Embedder(model=config.embedding_model),
            config=config,
        )

    def close(self) -> None:
        self.backend_cache.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- state machine -------------------------------------------------

    def _advance(self, state: PipelineState, stage: PipelineStage, data: dict[str, Any]) -> None:
        current = STAGE_ORDER.index(state.stage)
        target = STAGE_ORDER.index(stage)
        if target <= current or (target != current + 1 and stage is not PipelineStage.DONE):
            raise RuntimeError(f"Illegal pipeline transition {state.stage.value} -> {stage.value}")
        state.stage = stage
        if state.trace is not None:
            state.trace.append(TraceEntry(stage=stage, data=data))

    # -- stages --------------------------------------------------------

    def rewrite(self, state: PipelineState) -> None:
        n = self.config.max_sub_queries
        state.analysis = self.rewriter.analyze(state.query.text, n)
        state.sub_queries = self.rewriter.expand(state.query.text, n, state.analysis)
        logger.info("Generated %d sub-queries", len(state.sub_queries))
        self._advance(
            state,
            PipelineStage.REWRITTEN,
            {
                "clarified_intent": state.analysis.clarified_intent,
                "query_type": state.analysis.query_type,
                "context_needed": state.analysis.context_needed,
                "key_terms": list(state.analysis.key_terms),
                "sub_queries": [sq.model_dump() for sq in state.sub_queries],
            },
        )

    def retrieve(self, state: PipelineState) -> None:
        report = self.retriever.retrieve(
            state.sub_queries, state.query.top_k, timeout=self.config.retrieval_timeout
        )
        state.retrieval = report
        self._advance(
            state,
            PipelineStage.RETRIEVED,
            {
                "fanout": self.retriever.fanout(state.query.top_k),
                "hits": [[hit.model_dump() for hit in hits] for hits in report.hit_lists],
                "failed": list(report.failed),
                "timed_out": list(report.timed_out),
            },
        )

    def fuse(self, state: PipelineState) -> None:
        state.fused = reciprocal_rank_fusion(state.retrieval.hit_lists, k0=self.config.rrf_k)
        logger.info("Fused into %d unique candidates", len(state.fused))
        self._advance(
            state,
            PipelineStage.FUSED,
            {"k0": self.config.rrf_k, "candidates": [c.model_dump() for c in state.fused]},
        )

    def rerank(self, state: PipelineState) -> None:
        top_k = state.query.top_k
        pool = state.fused[: top_k * self.config.rerank_pool_multiplier]
        outcome = self.reranker.rerank(state.analysis.clarified_intent, pool, top_k)
        state.reranked = outcome.candidates
        if outcome.degraded:
            state.degraded_reasons.append(outcome.reason)
        self._advance(
            state,
            PipelineStage.RERANKED,
            {
                "reranker_available": self.reranker.available,
                "degraded": outcome.degraded,
                "candidates": [c.model_dump() for c in state.reranked],
            },
        )

    def context_limit(self, state: PipelineState) -> int:
        """Chunks to repack: the analyzed context need, never above top_k."""
        top_k = state.query.top_k
        if state.analysis.source != "llm":
            return top_k
        size = self.config.context_sizes.get(state.analysis.context_needed)
        return top_k if size is None else max(1, min(size, top_k))

    def build_context(self, state: PipelineState) -> None:
        limit = self.context_limit(state)
        state.context = self.repacker.build(
            state.reranked[:limit], state.analysis.clarified_intent
        )
        self._advance(
            state,
            PipelineStage.CONTEXT_BUILT,
            {
                "limit": limit,
                "chunk_ids": state.context.chunk_ids,
                "size": state.context.total_size,
                "budget": state.context.budget,
                "dropped": list(state.context.dropped),
                "text": state.context.text,
            },
        )

    def generate(self, state: PipelineState) -> None:
        try:
            state.answer = generate_answer(
                self.backend_cache,
                state.analysis.clarified_intent,
                state.context.text,
                query_type=state.analysis.query_type,
                max_retries=self.config.generation_max_retries,
                timeout=self.config.generation_timeout,
            )
        except GenerationTimeout as e:
            logger.warning("Generation timed out, answering from context: %s", e)
            state.degraded_reasons.append(GENERATION_TIMEOUT)
            state.answer = fallback_answer(state.context.text)
        self._advance(state, PipelineStage.GENERATED, {"answer": state.answer})

    def score(self, state: PipelineState) -> None:
        used = set(state.context.chunk_ids)
        candidates = [c for c in state.reranked if c.chunk_id in used]
        n_lists = len(state.sub_queries)
        components: dict[str, float] = {}
        if state.degraded_reasons:
            state.confidence = 0.0
        else:
            args = (candidates, n_lists, self.config.rrf_k, state.answer, state.context.text)
            components = confidence_components(*args)
            state.confidence = score_confidence(*args)
        self._advance(
            state,
            PipelineStage.SCORED,
            {"confidence": state.confidence, "components": components},
        )

    # -- entry point ---------------------------------------------------

    def query(self, text: str, top_k: int | None = None, verbose: bool = False) -> QueryResponse:
        """Answer a query from the vector store.

        Args:
            text: Natural-language question
            top_k: Number of context chunks (default: settings.top_k)
            verbose: Attach a per-stage trace to the response

        Returns:
            QueryResponse; an empty store or no hits gives a zero-confidence
            "no information" response instead of an error

        Raises:
            ValidationError: if the query is blank or top_k is not positive
            GenerationError: if the backend fails after its bounded retry
        """
        query = self._validate(text, top_k, verbose)
        state = PipelineState(query=query, trace=[] if verbose else None)
        if state.trace is not None:
            state.trace.append(
                TraceEntry(
                    stage=PipelineStage.RECEIVED,
                    data={"query": query.text, "top_k": query.top_k},
                )
            )
        logger.info("Processing query: %s", query.text)

        if not self.vector_store.exists():
            logger.warning("Vector store has no data")
            return self._empty_response(state)

        self.rewrite(state)
        self.retrieve(state)
        if state.retrieval.is_empty:
            logger.warning("No results found for query: %s", query.text)
            return self._empty_response(state)

        self.fuse(state)
        self.rerank(state)
        self.build_context(state)
        if not any(text for entry in state.context.entries for text in entry.texts):
            logger.warning("Retrieved chunks have no usable text for query: %s", query.text)
            return self._empty_response(state)
        self.generate(state)
        self.score(state)
        return self._finish(state)

    def _validate(self, text: str, top_k: int | None, verbose: bool) -> Query:
        try:
            return Query(
                text=text,
                top_k=self.config.top_k if top_k is None else top_k,
                verbose=verbose,
            )
        except PydanticValidationError as e:
            error = e.errors()[0]
            field_name = str(error["loc"][0]) if error.get("loc") else None
            raise ValidationError(f"Invalid query: {error['msg']}", field=field_name) from e

    def _empty_response(self, state: PipelineState) -> QueryResponse:
        state.degraded_reasons.append(NO_RESULTS)
        state.answer = NO_INFORMATION_ANSWER
        state.confidence = 0.0
        self._advance(state, PipelineStage.DONE, {"degraded_reasons": list(state.degraded_reasons)})
        return self._response(state, sources=[])

    def _finish(self, state: PipelineState) -> QueryResponse:
        sources = [
            Source(source_path=entry.source_path, chunk_id=chunk_id, chunk_index=index)
            for entry in state.context.entries
            for chunk_id, index in zip(entry.chunk_ids, entry.chunk_indices)
        ]
        self._advance(state, PipelineStage.DONE, {"degraded_reasons": list(state.degraded_reasons)})
        logger.info(
            "Answered with confidence %.1f from %d sources", state.confidence, len(sources)
        )
        return self._response(state, sources)

    def _response(self, state: PipelineState, sources: list[Source]) -> QueryResponse:
        return QueryResponse(
            answer=state.answer,
            confidence=state.confidence,
            sources=sources,
            trace=state.trace,
            degraded=bool(state.degraded_reasons),
            degraded_reasons=list(state.degraded_reasons),
            query=state.query.text,
            sub_queries=[sq.text for sq in state.sub_queries],
        )
