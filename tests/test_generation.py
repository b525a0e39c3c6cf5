"""Unit tests for the generation backend, context repacking, answers and confidence."""

import threading
import time
from unittest.mock import MagicMock, Mock

import pytest

from core.errors import GenerationError, GenerationTimeout
from core.models import Chunk, FusedCandidate
from generation.backend import BackendCache, GenerationOptions, OpenAIBackend
from generation.confidence import WEIGHTS, confidence_components, groundedness, score_confidence
from generation.context import SEPARATOR, ContextRepacker, trim_to_relevant
from generation.generator import (
    NO_INFORMATION_ANSWER,
    build_prompt,
    fallback_answer,
    generate_answer,
)


def make_candidate(chunk_id, text, source="a.md", index=0, score=1 / 61, rerank=None):
    return FusedCandidate(
        chunk_id=chunk_id,
        fused_score=score,
        contributing_ranks=[(0, 1)],
        rerank_score=rerank,
        chunk=Chunk(id=chunk_id, text=text, source_path=source, chunk_index=index),
    )


@pytest.fixture
def mock_openai_client():
    """Create mock OpenAI client."""
    mock_client = Mock()
    mock_client.chat.completions.create.return_value = Mock(
        choices=[Mock(message=Mock(content="Test answer from a.md."))]
    )
    return mock_client


class TestOpenAIBackend:
    def test_generate_builds_request(self, mock_openai_client):
        backend = OpenAIBackend(openai_client=mock_openai_client, model="gpt-4o-mini")
        options = GenerationOptions(temperature=0.0, max_tokens=16, seed=42, system_prompt="sys")

        assert backend.generate("hello", options) == "Test answer from a.md."

        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert kwargs["messages"][1] == {"role": "user", "content": "hello"}
        assert kwargs["max_tokens"] == 16
        assert kwargs["seed"] == 42

    def test_optional_kwargs_omitted(self, mock_openai_client):
        OpenAIBackend(openai_client=mock_openai_client).generate("hi", GenerationOptions())
        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert "max_tokens" not in kwargs
        assert "seed" not in kwargs
        assert len(kwargs["messages"]) == 1


class TestBackendCache:
    def test_lazy_single_build(self):
        factory = Mock(return_value=Mock(generate=Mock(return_value="ok")))
        cache = BackendCache(factory)

        assert not cache.is_initialized
        factory.assert_not_called()
        assert cache.generate("a") == "ok"
        assert cache.generate("b") == "ok"
        assert cache.build_count == 1
        factory.assert_called_once()

    def test_concurrent_first_use_builds_once(self):
        def slow_factory():
            time.sleep(0.05)
            return Mock()

        factory = Mock(side_effect=slow_factory)
        cache = BackendCache(factory)
        handles = []

        threads = [threading.Thread(target=lambda: handles.append(cache.get())) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert factory.call_count == 1
        assert cache.build_count == 1
        assert all(h is handles[0] for h in handles)

    def test_close_then_rebuild(self):
        backend = Mock()
        cache = BackendCache(Mock(return_value=backend))
        cache.get()

        cache.close()

        backend.close.assert_called_once()
        assert not cache.is_initialized
        cache.get()
        assert cache.build_count == 2

    def test_close_uninitialized_is_noop(self):
        factory = Mock()
        BackendCache(factory).close()
        factory.assert_not_called()

    def test_factory_failure_wrapped(self):
        cache = BackendCache(Mock(side_effect=RuntimeError("no key")))
        with pytest.raises(GenerationError):
            cache.get()
        assert cache.build_count == 0

    def test_generate_failure_wrapped(self):
        backend = Mock()
        backend.generate.side_effect = RuntimeError("503")
        cache = BackendCache(Mock(return_value=backend))
        with pytest.raises(GenerationError):
            cache.generate("hi")

    def test_empty_completion_becomes_empty_string(self):
        backend = Mock()
        backend.generate.return_value = None
        assert BackendCache(Mock(return_value=backend)).generate("hi") == ""


class TestGenerateAnswer:
    def test_returns_stripped_answer(self):
        cache = MagicMock()
        cache.generate.return_value = "  Paris.  \n"

        answer = generate_answer(cache, "Capital of France?", "Source: geo.md\nParis is the capital.")

        assert answer == "Paris."
        prompt = cache.generate.call_args[0][0]
        assert "Paris is the capital." in prompt
        assert "Capital of France?" in prompt

    def test_retries_once_then_succeeds(self):
        cache = MagicMock()
        cache.generate.side_effect = [GenerationError("flaky"), "answer"]
        assert generate_answer(cache, "q", "ctx", max_retries=1) == "answer"
        assert cache.generate.call_count == 2

    def test_raises_after_bounded_retries(self):
        cache = MagicMock()
        cache.generate.side_effect = GenerationError("down")
        with pytest.raises(GenerationError):
            generate_answer(cache, "q", "ctx", max_retries=1)
        assert cache.generate.call_count == 2

    def test_no_retry_when_zero(self):
        cache = MagicMock()
        cache.generate.side_effect = GenerationError("down")
        with pytest.raises(GenerationError):
            generate_answer(cache, "q", "ctx", max_retries=0)
        assert cache.generate.call_count == 1

    def test_timeout_not_retried(self):
        release = threading.Event()
        cache = MagicMock()
        cache.generate.side_effect = lambda prompt, options: release.wait(5) and "late"
        try:
            with pytest.raises(GenerationTimeout):
                generate_answer(cache, "q", "ctx", max_retries=1, timeout=0.1)
        finally:
            release.set()
        assert cache.generate.call_count == 1

    def test_query_type_hint(self):
        assert "steps" in build_prompt("How?", "ctx", "procedural")
        assert build_prompt("What?", "ctx", None).endswith("Cite the source files you used.")

    def test_fallback_answer_truncates(self):
        answer = fallback_answer("x" * 600, max_chars=500)
        assert answer.startswith("Based on the retrieved information:")
        assert answer.endswith("x...")

    def test_no_information_answer_is_fixed(self):
        assert "No relevant information" in NO_INFORMATION_ANSWER

    def test_none_answer_treated_as_empty(self):
        cache = MagicMock()
        cache.generate.return_value = None
        assert generate_answer(cache, "q", "ctx") == ""


class TestContextRepacker:
    def test_renders_sources_in_order(self):
        block = ContextRepacker(budget=1000).build(
            [
                make_candidate("c1", "First passage about cats.", source="docs/a.md"),
                make_candidate("c2", "Second passage on dogs.", source="docs/b.md"),
            ]
        )
        assert block.text == (
            "Source: a.md\nFirst passage about cats." + SEPARATOR + "Source: b.md\nSecond passage on dogs."
        )
        assert block.chunk_ids == ["c1", "c2"]

    def test_stops_at_budget(self):
        first = make_candidate("c1", "a" * 20, source="a.md")
        second = make_candidate("c2", "b" * 20, source="b.md")
        third = make_candidate("c3", "c", source="c.md")

        block = ContextRepacker(budget=50).build([first, second, third])

        assert block.chunk_ids == ["c1"]
        assert block.total_size <= 50

    def test_top_chunk_truncated_when_alone_too_large(self):
        block = ContextRepacker(budget=30).build([make_candidate("c1", "z" * 100)])
        assert block.chunk_ids == ["c1"]
        assert 0 < block.total_size <= 30
        assert block.text.startswith("Source: a.md\n")

    def test_duplicate_ids_skipped(self):
        chunk = make_candidate("c1", "only once")
        block = ContextRepacker(budget=500).build([chunk, chunk])
        assert block.chunk_ids == ["c1"]

    def test_near_duplicates_dropped(self):
        block = ContextRepacker(budget=500, overlap_threshold=0.9).build(
            [
                make_candidate("c1", "the quick brown fox jumps", source="a.md"),
                make_candidate("c2", "The quick brown fox jumps!", source="b.md"),
            ]
        )
        assert block.chunk_ids == ["c1"]
        assert block.dropped == ["c2"]

    def test_adjacent_chunks_merged_in_index_order(self):
        block = ContextRepacker(budget=500).build(
            [
                make_candidate("c2", "second part", index=1),
                make_candidate("c1", "first part", index=0),
                make_candidate("c9", "far away", index=9),
            ]
        )
        assert len(block.entries) == 2
        assert block.entries[0].chunk_ids == ["c2", "c1"]
        assert block.text.startswith("Source: a.md\nfirst part ... second part")

    def test_empty_input(self):
        block = ContextRepacker(budget=100).build([])
        assert block.text == ""
        assert block.entries == []

    def test_budget_must_be_positive(self):
        with pytest.raises(ValueError):
            ContextRepacker(budget=0)

    def test_blank_candidates_keep_top_chunk(self):
        block = ContextRepacker(budget=500).build(
            [make_candidate("c1", "   "), make_candidate("c2", "\n", source="b.md")]
        )
        assert block.text != ""
        assert block.chunk_ids == ["c1"]
        assert block.dropped == ["c2"]

    def test_wordless_chunks_are_not_near_duplicates(self):
        block = ContextRepacker(budget=500).build(
            [make_candidate("c1", "---", source="a.md"), make_candidate("c2", "+++", source="b.md")]
        )
        assert block.chunk_ids == ["c1", "c2"]
        assert block.dropped == []

    def test_oversized_top_chunk_keeps_query_sentences(self):
        text = (
            "Cooking needs patience. Machine learning finds patterns in data. "
            "Weather is mild today."
        )
        block = ContextRepacker(budget=58).build([make_candidate("c1", text)], query="machine learning")
        assert block.text == "Source: a.md\nMachine learning finds patterns in data."
        assert block.total_size <= 58


class TestTrimToRelevant:
    def test_short_text_unchanged(self):
        assert trim_to_relevant("Short. Text.", "anything", 100) == "Short. Text."

    def test_prefers_sentences_with_query_terms(self):
        text = "Alpha cats. Beta dogs. Gamma cats and dogs."
        assert trim_to_relevant(text, "cats dogs", 40) == "Alpha cats. Gamma cats and dogs."

    def test_no_matching_terms_keeps_document_order(self):
        text = "First one. Second one. Third one."
        assert trim_to_relevant(text, "zzz", 22) == "First one. Second one."

    def test_hard_cut_when_no_sentence_fits(self):
        assert trim_to_relevant("x" * 50, "x", 10) == "x" * 10

    def test_never_exceeds_limit(self):
        text = "Machine learning is big. " * 20
        assert len(trim_to_relevant(text, "machine learning", 70)) <= 70


class TestConfidence:
    def test_perfect_agreement_scores_100(self):
        candidates = [make_candidate("c1", "t", score=2 / 61)]
        assert score_confidence(candidates, n_lists=2) == pytest.approx(100.0)

    def test_no_candidates_scores_zero(self):
        assert score_confidence([], n_lists=3) == 0.0

    def test_bounds(self):
        candidates = [
            make_candidate("c1", "t", score=1 / 61, rerank=0.9),
            make_candidate("c2", "t", score=1 / 80, rerank=0.1),
        ]
        value = score_confidence(candidates, 3, answer="cats purr loudly", context="cats purr")
        assert 0.0 <= value <= 100.0

    def test_deterministic(self):
        candidates = [make_candidate("c1", "t", score=1 / 62, rerank=0.4)]
        args = (candidates, 2, 60, "answer about kittens", "context about kittens")
        assert score_confidence(*args) == score_confidence(*args)

    def test_components_present(self):
        candidates = [make_candidate("c1", "t", rerank=0.5)]
        components = confidence_components(candidates, 1, answer="purring cats", context="cats")
        assert set(components) == set(WEIGHTS)

    def test_groundedness(self):
        assert groundedness("cats purr loudly", "cats purr") == pytest.approx(2 / 3)
        assert groundedness("a an the", "anything") is None
