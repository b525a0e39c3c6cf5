"""Small text helpers shared by the rewriter, repacker and confidence scorer."""

from __future__ import annotations

import re
import unicodedata

STOPWORDS = frozenset(
    """
    about above after again against also among because been before being below
    between both could does doing down during each from further have having
    here into itself just more most other over same should some such than that
    their them then there these they this those through under until very were
    what when where which while whom will with would your yours
    """.split()
)

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def clean_text(text: str) -> str:
    """NFKC-normalize, drop control characters and collapse whitespace."""
    text = unicodedata.normalize("NFKC", text)
    text = "".join(" " if unicodedata.category(ch).startswith("C") else ch for ch in text)
    text = re.sub(r"\.{4,}", "...", text)
    return re.sub(r"\s+", " ", text).strip()


def content_words(text: str, min_length: int = 4) -> list[str]:
    """Lowercased words of at least min_length chars, minus stopwords, in order."""
    words = []
    seen = set()
    for word in _WORD_RE.findall(text.lower()):
        if len(word) >= min_length and word not in STOPWORDS and word not in seen:
            seen.add(word)
            words.append(word)
    return words


def word_set(text: str) -> set[str]:
    return set(_WORD_RE.findall(text.lower()))


def jaccard(a: set[str], b: set[str]) -> float:
    """Word-set overlap; 0.0 when either side has no words."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
