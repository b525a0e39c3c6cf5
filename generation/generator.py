"""LLM answer generation from the repacked context."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING

from core.config import settings
from core.errors import GenerationError, GenerationTimeout
from generation.backend import GenerationOptions

if TYPE_CHECKING:
    from generation.backend import BackendCache

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a precise Q&A assistant. Answer ONLY based on the provided context. "
    "If the answer is not in the context, say \"I don't have enough information "
    "to answer that question.\""
)

NO_INFORMATION_ANSWER = (
    "No relevant information was found in the indexed documents to answer this question."
)

QUERY_TYPE_HINTS = {
    "procedural": "List the steps in order.",
    "comparative": "Compare the items explicitly, point by point.",
    "analytical": "Explain the reasoning behind your answer.",
}


def build_prompt(question: str, context: str, query_type: str | None = None) -> str:
    """Build the grounded generation prompt."""
    hint = QUERY_TYPE_HINTS.get(query_type or "", "")
    return f"""Context:
{context}

Question: {question}

Answer the question using only the context above. Cite the source files you used.
{hint}""".rstrip()


def fallback_answer(context: str, max_chars: int = 500) -> str:
    """Excerpt of the context, used when generation runs out of time."""
    excerpt = context[:max_chars]
    if len(context) > max_chars:
        excerpt += "..."
    return f"Based on the retrieved information:\n\n{excerpt}"


def default_options() -> GenerationOptions:
    return GenerationOptions(
        temperature=settings.generation_temperature,
        max_tokens=settings.generation_max_tokens,
        system_prompt=SYSTEM_PROMPT,
    )


def _call(
    cache: BackendCache, prompt: str, options: GenerationOptions, timeout: float | None
) -> str:
    if timeout is None:
        return cache.generate(prompt, options)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="generation")
    future = executor.submit(cache.generate, prompt, options)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as e:
        raise GenerationTimeout(
            f"Generation exceeded {timeout}s", {"timeout": timeout}
        ) from e
    finally:
        executor.shutdown(wait=False)


def generate_answer(
    cache: BackendCache,
    question: str,
    context: str,
    query_type: str | None = None,
    max_retries: int | None = None,
    timeout: float | None = None,
    options: GenerationOptions | None = None,
) -> str:
    """Generate an answer from the context with a bounded retry.

    Args:
        cache: Generation-backend cache
        question: Question to answer (clarified intent)
        context: Rendered context block
        query_type: Query type from analysis, adds a formatting hint
        max_retries: Retries after the first failed attempt
            (default: settings.generation_max_retries)
        timeout: Per-attempt wall-clock budget in seconds

    Returns:
        Answer text

    Raises:
        GenerationTimeout: if an attempt exceeds the timeout (not retried)
        GenerationError: if every attempt failed
    """
    if max_retries is None:
        max_retries = settings.generation_max_retries
    prompt = build_prompt(question, context, query_type)
    options = options or default_options()

    attempts = max_retries + 1
    last_error: GenerationError | None = None
    for attempt in range(1, attempts + 1):
        try:
            answer = _call(cache, prompt, options, timeout) or ""
            logger.info("Generated answer (%d chars) on attempt %d", len(answer), attempt)
            return answer.strip()
        except GenerationTimeout:
            raise
        except GenerationError as e:
            last_error = e
            if attempt < attempts:
                logger.warning(
                    "Generation attempt %d/%d failed: %s; retrying", attempt, attempts, e
                )

    logger.error("Generation failed after %d attempts: %s", attempts, last_error)
    raise last_error
