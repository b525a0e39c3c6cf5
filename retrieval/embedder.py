"""Embedding collaborator: turns query text into a vector."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.config import settings
from core.errors import EmbeddingFailure

if TYPE_CHECKING:
    from openai import OpenAI

logger = logging.getLogger(__name__)


class Embedder:
    """Embeds text with the OpenAI embedding model."""

    def __init__(self, openai_client: OpenAI | None = None, model: str | None = None):
        self._client = openai_client
        self.model = model or settings.embedding_model

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(api_key=settings.openai_api_key)
        return self._client

    def embed(self, text: str) -> list[float]:
        """Embed text using OpenAI embedding model.

        Raises:
            EmbeddingFailure: if the client cannot be built or the call fails
        """
        try:
            response = self.client.embeddings.create(model=self.model, input=text)
            return list(response.data[0].embedding)
        except Exception as e:
            logger.error("Embedding failed for %r: %s", text[:80], e)
            raise EmbeddingFailure(
                f"Embedding failed: {e}", {"model": self.model}
            ) from e
