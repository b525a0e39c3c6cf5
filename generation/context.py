"""Repack ranked chunks into a deduplicated, budgeted generation context."""

from __future__ import annotations

import logging
import os
import re
from typing import Sequence

from core.config import settings
from core.models import ContextBlock, ContextEntry, FusedCandidate
from core.text import clean_text, jaccard, word_set

logger = logging.getLogger(__name__)

SEPARATOR = "\n\n---\n\n"
JOINER = " ... "

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_TERM_RE = re.compile(r"\w+")


def render_entry(entry: ContextEntry) -> str:
    """Render one source section; merged chunks are ordered by chunk index."""
    name = os.path.basename(entry.source_path) or "unknown"
    ordered = [text for _, text in sorted(zip(entry.chunk_indices, entry.texts))]
    return f"Source: {name}\n{JOINER.join(ordered)}"


def render(entries: Sequence[ContextEntry]) -> str:
    return SEPARATOR.join(render_entry(entry) for entry in entries)


def trim_to_relevant(text: str, query: str, max_chars: int) -> str:
    """Shorten text to max_chars, keeping the sentences that mention the most
    query terms (words of 3+ chars).

    Kept sentences stay in document order. If no whole sentence fits, the
    text is cut at max_chars.
    """
    if len(text) <= max_chars:
        return text

    terms = [t for t in _TERM_RE.findall(query.lower()) if len(t) >= 3]
    sentences = [s for s in _SENTENCE_RE.split(text) if s]
    scores = [sum(1 for t in terms if t in s.lower()) for s in sentences]

    chosen: list[int] = []
    length = 0
    for i in sorted(range(len(sentences)), key=lambda i: -scores[i]):
        added = len(sentences[i]) + (1 if chosen else 0)
        if length + added > max_chars:
            break
        chosen.append(i)
        length += added

    if not chosen:
        return text[:max_chars]
    return " ".join(sentences[i] for i in sorted(chosen))


def _is_adjacent(entry: ContextEntry, source_path: str, chunk_index: int) -> bool:
    return entry.source_path == source_path and any(
        abs(index - chunk_index) <= 1 for index in entry.chunk_indices
    )


class ContextRepacker:
    """Builds a ContextBlock from candidates in relevance order.

    Chunks are deduplicated by id; a chunk adjacent to one already placed
    (same source, neighboring chunk index) is merged into that section, and
    a chunk whose word overlap with a placed chunk reaches the threshold is
    dropped. Accumulation stops at the first chunk that would overflow the
    budget. The top chunk is always kept, trimmed to its query-relevant
    sentences if it alone overflows.
    """

    def __init__(self, budget: int | None = None, overlap_threshold: float | None = None):
        self.budget = budget if budget is not None else settings.context_budget
        self.overlap_threshold = (
            overlap_threshold
            if overlap_threshold is not None
            else settings.near_duplicate_threshold
        )
        if self.budget <= 0:
            raise ValueError(f"budget must be positive (got {self.budget})")

    def build(self, candidates: Sequence[FusedCandidate], query: str = "") -> ContextBlock:
        """Repack candidates; ``query`` guides trimming of an oversized top chunk."""
        entries: list[ContextEntry] = []
        placed_words: list[set[str]] = []
        seen_ids: set[str] = set()
        dropped: list[str] = []
        text = ""

        for candidate in candidates:
            chunk = candidate.chunk
            if chunk is None or chunk.id in seen_ids:
                continue
            seen_ids.add(chunk.id)

            chunk_text = clean_text(chunk.text)
            words = word_set(chunk_text)
            if not chunk_text or any(
                jaccard(words, other) >= self.overlap_threshold for other in placed_words
            ):
                dropped.append(chunk.id)
                continue

            target = next(
                (i for i, e in enumerate(entries) if _is_adjacent(e, chunk.source_path, chunk.chunk_index)),
                None,
            )
            if target is not None:
                entry = entries[target]
                merged = entry.model_copy(
                    update={
                        "chunk_ids": entry.chunk_ids + [chunk.id],
                        "chunk_indices": entry.chunk_indices + [chunk.chunk_index],
                        "texts": entry.texts + [chunk_text],
                    }
                )
                trial = entries[:target] + [merged] + entries[target + 1 :]
            else:
                trial = entries + [
                    ContextEntry(
                        source_path=chunk.source_path,
                        chunk_ids=[chunk.id],
                        chunk_indices=[chunk.chunk_index],
                        texts=[chunk_text],
                    )
                ]

            rendered = render(trial)
            if len(rendered) > self.budget:
                if not entries:
                    entries, text = self._truncated_first(trial[0], query)
                    placed_words.append(words)
                logger.debug("Context budget %d reached at chunk %s", self.budget, chunk.id)
                break

            entries, text = trial, rendered
            placed_words.append(words)

        if not entries:
            top = next((c.chunk for c in candidates if c.chunk is not None), None)
            if top is not None:
                # every candidate was blank; keep the top one so the block is never empty
                logger.warning("No candidate had usable text, keeping chunk %s", top.id)
                dropped = [chunk_id for chunk_id in dropped if chunk_id != top.id]
                entries, text = self._truncated_first(
                    ContextEntry(
                        source_path=top.source_path,
                        chunk_ids=[top.id],
                        chunk_indices=[top.chunk_index],
                        texts=[clean_text(top.text)],
                    ),
                    query,
                )

        logger.info(
            "Built context: %d chunks in %d sections, %d/%d chars",
            sum(len(e.chunk_ids) for e in entries),
            len(entries),
            len(text),
            self.budget,
        )
        return ContextBlock(entries=entries, text=text, budget=self.budget, dropped=dropped)

    def _truncated_first(self, entry: ContextEntry, query: str) -> tuple[list[ContextEntry], str]:
        header = len(render_entry(entry.model_copy(update={"texts": [""]})))
        room = max(self.budget - header, 0)
        trimmed = entry.model_copy(
            update={"texts": [trim_to_relevant(entry.texts[0], query, room)]}
        )
        return [trimmed], render([trimmed])[: self.budget]
