"""End-to-end tests for the query orchestrator with mocked collaborators."""

import json
import threading
from unittest.mock import MagicMock, Mock

import pytest

from agent.orchestrator import PipelineState, QueryOrchestrator
from core.config import Settings
from core.errors import GenerationError, ValidationError
from core.models import Chunk, PipelineStage, Query
from generation.backend import BackendCache
from generation.generator import NO_INFORMATION_ANSWER
from retrieval.reranker import Reranker
from storage.vector_store import LocalVectorStore


def make_config(**overrides):
    values = {
        "enable_query_rewriting": False,
        "top_k": 2,
        "fanout_min": 5,
        "context_budget": 2000,
        "generation_max_retries": 1,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def store(tmp_path):
    vs = LocalVectorStore(tmp_path)
    vs.add(
        [
            Chunk(id="cats-0", text="Cats purr when they are content.", source_path="pets/cats.md",
                  chunk_index=0, embedding=[1.0, 0.0, 0.0]),
            Chunk(id="dogs-0", text="Dogs bark at strangers.", source_path="pets/dogs.md",
                  chunk_index=0, embedding=[0.6, 0.8, 0.0]),
            Chunk(id="fish-0", text="Goldfish live in bowls.", source_path="pets/fish.md",
                  chunk_index=0, embedding=[0.0, 0.0, 1.0]),
        ]
    )
    return vs


@pytest.fixture
def embedder():
    mock_embedder = MagicMock()
    mock_embedder.embed.return_value = [1.0, 0.0, 0.0]
    return mock_embedder


@pytest.fixture
def backend():
    mock_backend = Mock()
    mock_backend.generate.return_value = "Cats purr when they are content [cats.md]."
    return mock_backend


@pytest.fixture
def factory(backend):
    return Mock(return_value=backend)


def make_orchestrator(store, embedder, factory, **kwargs):
    config = kwargs.pop("config", None) or make_config()
    return QueryOrchestrator(store, embedder, backend_cache=BackendCache(factory), config=config, **kwargs)


class TestQueryOrchestrator:
    def test_empty_store_returns_no_information(self, tmp_path, embedder, factory):
        orchestrator = make_orchestrator(LocalVectorStore(tmp_path / "empty"), embedder, factory)

        response = orchestrator.query("Why do cats purr?")

        assert response.answer == NO_INFORMATION_ANSWER
        assert response.confidence == 0.0
        assert response.sources == []
        assert response.degraded
        assert response.degraded_reasons == ["no_results"]
        factory.assert_not_called()
        embedder.embed.assert_not_called()

    def test_full_pipeline(self, store, embedder, factory, backend):
        orchestrator = make_orchestrator(store, embedder, factory)

        response = orchestrator.query("Why do cats purr?")

        assert response.answer == "Cats purr when they are content [cats.md]."
        assert not response.degraded
        assert 0.0 < response.confidence <= 100.0
        assert len(response.sources) <= 2
        assert response.sources[0].chunk_id == "cats-0"
        assert response.sources[0].source_path == "pets/cats.md"
        assert response.sub_queries == ["Why do cats purr?"]
        assert response.trace is None
        prompt = backend.generate.call_args[0][0]
        assert "Cats purr when they are content." in prompt

    def test_verbose_trace_covers_every_stage_in_order(self, store, embedder, factory):
        response = make_orchestrator(store, embedder, factory).query("Why do cats purr?", verbose=True)

        assert [entry.stage for entry in response.trace] == list(PipelineStage)
        by_stage = {entry.stage: entry.data for entry in response.trace}
        assert by_stage[PipelineStage.FUSED]["k0"] == 60
        assert by_stage[PipelineStage.SCORED]["confidence"] == response.confidence
        assert by_stage[PipelineStage.CONTEXT_BUILT]["size"] <= 2000

    def test_verbose_empty_store_trace_skips_to_done(self, tmp_path, embedder, factory):
        orchestrator = make_orchestrator(LocalVectorStore(tmp_path / "empty"), embedder, factory)
        response = orchestrator.query("anything?", verbose=True)
        assert [e.stage for e in response.trace] == [PipelineStage.RECEIVED, PipelineStage.DONE]

    def test_top_k_bounds_sources(self, store, embedder, factory):
        response = make_orchestrator(store, embedder, factory).query("pets?", top_k=1)
        assert [s.chunk_id for s in response.sources] == ["cats-0"]

    def test_reranker_failure_degrades(self, store, embedder, factory):
        scorer = Mock()
        scorer.score.side_effect = RuntimeError("reranker crashed")
        orchestrator = make_orchestrator(store, embedder, factory, reranker=Reranker(scorer))

        response = orchestrator.query("Why do cats purr?")

        assert response.degraded
        assert response.degraded_reasons == ["reranker_failed"]
        assert response.confidence == 0.0
        assert response.answer
        assert response.sources[0].chunk_id == "cats-0"

    def test_disabled_reranker_is_not_degraded(self, store, embedder, factory):
        orchestrator = make_orchestrator(store, embedder, factory, reranker=Reranker(None))
        response = orchestrator.query("Why do cats purr?")
        assert not response.degraded
        assert response.confidence > 0.0

    @pytest.mark.parametrize(
        "text,top_k,field",
        [("   ", None, "text"), ("", None, "text"), ("valid", 0, "top_k"), ("valid", -3, "top_k")],
    )
    def test_invalid_query(self, store, embedder, factory, text, top_k, field):
        orchestrator = make_orchestrator(store, embedder, factory)
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.query(text, top_k=top_k)
        assert exc_info.value.details["field"] == field
        embedder.embed.assert_not_called()

    def test_generation_error_after_retry(self, store, embedder, factory, backend):
        backend.generate.side_effect = RuntimeError("service unavailable")
        orchestrator = make_orchestrator(store, embedder, factory)

        with pytest.raises(GenerationError):
            orchestrator.query("Why do cats purr?")
        assert backend.generate.call_count == 2

    def test_generation_timeout_degrades(self, store, embedder, factory, backend):
        release = threading.Event()
        backend.generate.side_effect = lambda prompt, options: release.wait(5) and "late"
        orchestrator = make_orchestrator(
            store, embedder, factory, config=make_config(generation_timeout=0.1)
        )
        try:
            response = orchestrator.query("Why do cats purr?")
        finally:
            release.set()

        assert response.degraded_reasons == ["generation_timeout"]
        assert response.confidence == 0.0
        assert response.answer.startswith("Based on the retrieved information:")
        assert backend.generate.call_count == 1

    def test_backend_built_once_across_queries(self, store, embedder, factory):
        orchestrator = make_orchestrator(store, embedder, factory)
        orchestrator.query("Why do cats purr?")
        orchestrator.query("Do dogs bark?")
        factory.assert_called_once()
        assert orchestrator.backend_cache.build_count == 1

    def test_close_releases_backend(self, store, embedder, factory, backend):
        with make_orchestrator(store, embedder, factory) as orchestrator:
            orchestrator.query("Why do cats purr?")
        backend.close.assert_called_once()
        assert not orchestrator.backend_cache.is_initialized

    def test_query_rewriting_adds_sub_queries(self, store, embedder, factory, backend):
        analysis = {
            "clarified_intent": "Why do domestic cats purr?",
            "query_type": "factual",
            "sub_queries": ["cat purring reasons"],
            "key_terms": ["purr", "cats"],
            "context_needed": "minimal",
        }

        def generate(prompt, options):
            if options.seed is not None:
                return json.dumps(analysis)
            return "Because they are content."

        backend.generate.side_effect = generate
        orchestrator = make_orchestrator(
            store, embedder, factory, config=make_config(enable_query_rewriting=True)
        )

        response = orchestrator.query("why cats purr", verbose=True)

        assert response.sub_queries == ["why cats purr", "cat purring reasons", "purr cats"]
        assert embedder.embed.call_count >= 3
        rewritten = response.trace[1]
        assert rewritten.stage is PipelineStage.REWRITTEN
        assert rewritten.data["clarified_intent"] == "Why do domestic cats purr?"
        assert "Why do domestic cats purr?" in backend.generate.call_args[0][0]

    def test_rewriting_failure_uses_original_query(self, store, embedder, factory, backend):
        def generate(prompt, options):
            if options.seed is not None:
                return "not json"
            return "answer"

        backend.generate.side_effect = generate
        orchestrator = make_orchestrator(
            store, embedder, factory, config=make_config(enable_query_rewriting=True)
        )

        response = orchestrator.query("why cats purr")

        assert response.sub_queries == ["why cats purr"]
        assert not response.degraded

    def test_illegal_transition_rejected(self, store, embedder, factory):
        orchestrator = make_orchestrator(store, embedder, factory)
        state = PipelineState(query=Query(text="q"))
        with pytest.raises(RuntimeError):
            orchestrator._advance(state, PipelineStage.FUSED, {})

    @pytest.mark.parametrize("context_needed,expected", [("minimal", 2), ("moderate", 3), ("extensive", 3)])
    def test_context_need_sizes_context(self, store, embedder, factory, backend, context_needed, expected):
        analysis = {
            "clarified_intent": "Tell me about pets",
            "query_type": "general",
            "sub_queries": [],
            "key_terms": [],
            "context_needed": context_needed,
        }

        def generate(prompt, options):
            if options.seed is not None:
                return json.dumps(analysis)
            return "Pets are nice."

        backend.generate.side_effect = generate
        orchestrator = make_orchestrator(
            store, embedder, factory, config=make_config(enable_query_rewriting=True, top_k=5)
        )

        response = orchestrator.query("pets?")

        assert len(response.sources) == expected

    def test_context_need_never_exceeds_top_k(self, store, embedder, factory, backend):
        analysis = {"clarified_intent": "pets", "context_needed": "extensive"}

        def generate(prompt, options):
            if options.seed is not None:
                return json.dumps(analysis)
            return "Pets."

        backend.generate.side_effect = generate
        orchestrator = make_orchestrator(
            store, embedder, factory, config=make_config(enable_query_rewriting=True, top_k=1)
        )

        assert len(orchestrator.query("pets?").sources) == 1

    def test_without_analysis_top_k_decides_context(self, store, embedder, factory):
        response = make_orchestrator(store, embedder, factory).query("pets?", top_k=5)
        assert len(response.sources) == 3

    def test_blank_chunks_give_no_results(self, tmp_path, embedder, factory, backend):
        blank_store = LocalVectorStore(tmp_path / "blank")
        blank_store.add(
            [
                Chunk(id="b1", text="   ", source_path="x.md", embedding=[1.0, 0.0, 0.0]),
                Chunk(id="b2", text="\n\t", source_path="y.md", embedding=[0.0, 1.0, 0.0]),
            ]
        )
        orchestrator = make_orchestrator(blank_store, embedder, factory)

        response = orchestrator.query("Why do cats purr?", verbose=True)

        assert response.degraded_reasons == ["no_results"]
        assert response.answer == NO_INFORMATION_ANSWER
        assert response.confidence == 0.0
        assert response.sources == []
        assert [e.stage for e in response.trace][-2:] == [PipelineStage.CONTEXT_BUILT, PipelineStage.DONE]
        backend.generate.assert_not_called()
