"""Data models for the fusion RAG query pipeline."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.text import clean_text

MetadataValue = Union[bool, int, float, str]


class Chunk(BaseModel):
    """An indexed unit of text with its embedding and provenance."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    text: str
    source_path: str
    chunk_index: int = Field(default=0, ge=0)
    embedding: list[float] = Field(default_factory=list)
    metadata: dict[str, MetadataValue] = Field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        """Serialize using the persisted store schema."""
        return {
            "id": self.id,
            "chunk_text": self.text,
            "file_path": self.source_path,
            "chunk_index": self.chunk_index,
            "embedding": list(self.embedding),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Chunk:
        metadata = record.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return cls(
            id=record["id"],
            text=record.get("chunk_text") or "",
            source_path=record.get("file_path") or "",
            chunk_index=record.get("chunk_index") or 0,
            embedding=record.get("embedding") or [],
            metadata=metadata,
        )


class Query(BaseModel):
    """A validated user query."""

    text: str
    top_k: int = Field(default=5, gt=0)
    verbose: bool = False

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        if not clean_text(value):
            raise ValueError("query text must not be blank")
        return value


class SubQuery(BaseModel):
    """A derived query text tagged with the strategy that produced it."""

    id: int
    text: str
    strategy: Literal["original", "llm", "keywords"] = "original"


class QueryAnalysis(BaseModel):
    """Structured breakdown of a query produced by the rewriter."""

    clarified_intent: str
    query_type: str = "general"
    sub_queries: list[str] = Field(default_factory=list)
    key_terms: list[str] = Field(default_factory=list)
    context_needed: str = "moderate"
    source: Literal["llm", "fallback"] = "llm"


class SearchResult(BaseModel):
    """A single nearest-neighbor result from a vector store."""

    chunk: Chunk
    distance: float = 0.0
    rank: int = 0


class RetrievalHit(BaseModel):
    """A chunk found by one sub-query, with its 1-based rank in that list."""

    chunk_id: str
    rank: int = Field(ge=1)
    distance: float
    sub_query_id: int | None = None
    chunk: Chunk | None = Field(default=None, exclude=True)


class FusedCandidate(BaseModel):
    """A chunk after reciprocal rank fusion across sub-query lists."""

    chunk_id: str
    fused_score: float
    contributing_ranks: list[tuple[int, int]] = Field(default_factory=list)
    rerank_score: float | None = None
    chunk: Chunk | None = Field(default=None, exclude=True)

    @property
    def best_rank(self) -> int:
        return min(rank for _, rank in self.contributing_ranks)


class ContextEntry(BaseModel):
    """One source-grouped section of the generation context."""

    source_path: str
    chunk_ids: list[str] = Field(default_factory=list)
    chunk_indices: list[int] = Field(default_factory=list)
    texts: list[str] = Field(default_factory=list)


class ContextBlock(BaseModel):
    """Ordered, deduplicated context bounded by a character budget."""

    entries: list[ContextEntry] = Field(default_factory=list)
    text: str = ""
    budget: int = 0
    dropped: list[str] = Field(default_factory=list)

    @property
    def total_size(self) -> int:
        return len(self.text)

    @property
    def chunk_ids(self) -> list[str]:
        return [chunk_id for entry in self.entries for chunk_id in entry.chunk_ids]


class Source(BaseModel):
    """A cited chunk in the final response."""

    source_path: str
    chunk_id: str
    chunk_index: int = 0


class PipelineStage(str, Enum):
    RECEIVED = "received"
    REWRITTEN = "rewritten"
    RETRIEVED = "retrieved"
    FUSED = "fused"
    RERANKED = "reranked"
    CONTEXT_BUILT = "context_built"
    GENERATED = "generated"
    SCORED = "scored"
    DONE = "done"


class TraceEntry(BaseModel):
    """Snapshot of one pipeline stage, recorded in verbose mode."""

    stage: PipelineStage
    data: dict[str, Any] = Field(default_factory=dict)


class QueryResponse(BaseModel):
    """Final answer with confidence, cited sources and optional trace."""

    answer: str
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    sources: list[Source] = Field(default_factory=list)
    trace: list[TraceEntry] | None = None
    degraded: bool = False
    degraded_reasons: list[str] = Field(default_factory=list)
    query: str = ""
    sub_queries: list[str] = Field(default_factory=list)


class StoreStats(BaseModel):
    """Counts describing the contents of a vector store."""

    total_chunks: int = 0
    unique_files: int = 0
    embedding_dims: int | None = None
    avg_chunk_size: int = 0
    total_size_mb: float = 0.0
