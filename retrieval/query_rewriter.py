"""Query normalization, analysis and multi-query expansion."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.errors import GenerationError
from core.models import QueryAnalysis, SubQuery
from core.text import clean_text, content_words
from generation.backend import GenerationOptions

if TYPE_CHECKING:
    from generation.backend import BackendCache

logger = logging.getLogger(__name__)

QUERY_TYPES = ("factual", "conceptual", "procedural", "comparative", "analytical")

SYSTEM_PROMPT = (
    "You are a query analysis expert for a document search system. "
    "Break the user's query down for retrieval. "
    "Respond with a single JSON object and nothing else."
)

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def _build_prompt(query: str, n: int) -> str:
    return f"""Analyze the following user query and break it down for retrieval.
Return a JSON object with these keys:
- "clarified_intent": a clear, specific statement of what the user is looking for
- "query_type": one of {", ".join(QUERY_TYPES)}
- "sub_queries": up to {n} simpler, focused search queries that together answer the main query
- "key_terms": important terms and their synonyms for searching
- "context_needed": one of minimal, moderate, extensive

User Query: {query}"""


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _CODE_FENCE_RE.match(text)
    return match.group(1) if match else text


class QueryRewriter:
    """Turns a raw query into an ordered list of sub-queries.

    Analysis goes through the shared generation backend with deterministic
    options (temperature 0, fixed seed). Any failure falls back to the
    original query alone.
    """

    def __init__(
        self,
        backend: BackendCache | None = None,
        enabled: bool | None = None,
        seed: int | None = None,
    ):
        self.backend = backend
        self.enabled = settings.enable_query_rewriting if enabled is None else enabled
        self.seed = settings.rewrite_seed if seed is None else seed

    @staticmethod
    def normalize(text: str) -> str:
        """Trim and canonicalize a query."""
        return clean_text(text)

    def fallback_analysis(self, text: str) -> QueryAnalysis:
        normalized = self.normalize(text)
        return QueryAnalysis(
            clarified_intent=normalized,
            query_type="general",
            sub_queries=[normalized],
            key_terms=content_words(normalized),
            context_needed="moderate",
            source="fallback",
        )

    def analyze(self, text: str, n: int | None = None) -> QueryAnalysis:
        """Ask the backend for a structured breakdown of the query."""
        if n is None:
            n = settings.max_sub_queries
        if not self.enabled or self.backend is None:
            return self.fallback_analysis(text)

        normalized = self.normalize(text)
        options = GenerationOptions(temperature=0.0, seed=self.seed, system_prompt=SYSTEM_PROMPT)
        try:
            raw = self.backend.generate(_build_prompt(normalized, n), options)
            analysis = QueryAnalysis.model_validate_json(_strip_code_fence(raw or ""))
        except (GenerationError, PydanticValidationError) as e:
            logger.warning("Query analysis failed, using original query only: %s", e)
            return self.fallback_analysis(text)

        analysis.clarified_intent = self.normalize(analysis.clarified_intent) or normalized
        logger.debug("Query analysis for %r: %s", normalized, analysis)
        return analysis

    def expand(
        self, text: str, n: int, analysis: QueryAnalysis | None = None
    ) -> list[SubQuery]:
        """Produce at most n sub-queries; the normalized original is always first.

        Args:
            text: Raw user query
            n: Maximum number of sub-queries (>= 1)
            analysis: Result of a previous analyze() call, to avoid a second
                backend round-trip

        Returns:
            Ordered, case-insensitively distinct sub-queries
        """
        if n < 1:
            raise ValueError(f"n must be >= 1 (got {n})")

        normalized = self.normalize(text)
        queries = [SubQuery(id=0, text=normalized, strategy="original")]
        if analysis is None:
            analysis = self.analyze(text, n)
        if analysis.source != "llm":
            return queries

        seen = {normalized.casefold()}

        def add(candidate: str, strategy: str) -> None:
            candidate = self.normalize(candidate)
            if len(queries) >= n or not candidate or candidate.casefold() in seen:
                return
            seen.add(candidate.casefold())
            queries.append(SubQuery(id=len(queries), text=candidate, strategy=strategy))

        for sub_query in analysis.sub_queries:
            add(sub_query, "llm")
        if analysis.key_terms:
            add(" ".join(analysis.key_terms), "keywords")

        logger.debug("Expanded %r into %d sub-queries", normalized, len(queries))
        return queries
