"""Fusion RAG configuration via Pydantic settings."""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenAI
    openai_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    llm_model: str = "gpt-4o-mini"

    # Vector store
    vector_backend: Literal["local", "neo4j"] = "local"
    db_path: str = "./rag_data"
    table_name: str = "documents"
    distance_metric: Literal["cosine", "euclidean"] = "cosine"

    # Neo4j (used when vector_backend == "neo4j")
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = ""

    # Query
    top_k: int = Field(default=5, gt=0)
    max_sub_queries: int = Field(default=4, ge=1)
    enable_query_rewriting: bool = True
    rewrite_seed: int = 42

    # Retrieval
    fanout_multiplier: int = Field(default=4, ge=1)
    fanout_min: int = Field(default=20, ge=1)
    retrieval_workers: int = Field(default=4, ge=1)
    retrieval_timeout: Optional[float] = None

    # Fusion
    rrf_k: int = Field(default=60, gt=0)

    # Reranking
    rerank_method: str = "cosine"  # "cosine", "llm" or "none"
    rerank_pool_multiplier: int = Field(default=3, ge=1)

    # Context
    context_budget: int = Field(default=8000, ge=200)  # characters
    near_duplicate_threshold: float = Field(default=0.9, gt=0.0, le=1.0)
    # chunks handed to the repacker per analyzed context need, capped at top_k
    context_sizes: dict[str, int] = Field(
        default_factory=lambda: {"minimal": 2, "moderate": 3, "extensive": 5}
    )

    # Generation
    generation_temperature: float = 0.3
    generation_max_tokens: int = 512
    generation_max_retries: int = Field(default=1, ge=0, le=3)
    generation_timeout: Optional[float] = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
