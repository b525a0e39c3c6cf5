"""Generation backend and the lazily-built cache that owns it."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from pydantic import BaseModel

from core.config import settings
from core.errors import GenerationError

if TYPE_CHECKING:
    from openai import OpenAI

logger = logging.getLogger(__name__)


class GenerationOptions(BaseModel):
    """Per-call generation parameters."""

    temperature: float = 0.3
    max_tokens: Optional[int] = None
    seed: Optional[int] = None
    system_prompt: Optional[str] = None


class GenerationBackend(Protocol):
    def generate(self, prompt: str, options: GenerationOptions) -> str: ...


class OpenAIBackend:
    """Chat-completions backend. Building the client is the expensive part."""

    def __init__(self, openai_client: OpenAI | None = None, model: str | None = None):
        if openai_client is None:
            from openai import OpenAI

            openai_client = OpenAI(api_key=settings.openai_api_key)
        self.client = openai_client
        self.model = model or settings.llm_model

    def generate(self, prompt: str, options: GenerationOptions) -> str:
        messages = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": options.temperature,
        }
        if options.max_tokens is not None:
            kwargs["max_tokens"] = options.max_tokens
        if options.seed is not None:
            kwargs["seed"] = options.seed

        response = self.client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""

    def close(self) -> None:
        self.client.close()


class BackendCache:
    """Owns a single generation backend, built on first use and then reused.

    Construction happens at most once per cache even with concurrent callers:
    they block on the same lock and read the handle the first caller built.
    """

    def __init__(self, factory: Callable[[], GenerationBackend] | None = None):
        self._factory = factory or OpenAIBackend
        self._backend: GenerationBackend | None = None
        self._lock = threading.Lock()
        self.build_count = 0

    @property
    def is_initialized(self) -> bool:
        return self._backend is not None

    def get(self) -> GenerationBackend:
        backend = self._backend
        if backend is not None:
            return backend

        with self._lock:
            if self._backend is None:
                logger.info("Initializing generation backend")
                try:
                    self._backend = self._factory()
                except Exception as e:
                    raise GenerationError(f"Backend initialization failed: {e}") from e
                self.build_count += 1
            return self._backend

    def generate(self, prompt: str, options: GenerationOptions | None = None) -> str:
        """Run one generation call, wrapping any failure in GenerationError."""
        backend = self.get()
        try:
            # backends may return None for an empty completion
            return backend.generate(prompt, options or GenerationOptions()) or ""
        except GenerationError:
            raise
        except Exception as e:
            logger.error("Generation call failed: %s", e)
            raise GenerationError(f"Generation failed: {e}") from e

    def close(self) -> None:
        """Tear down the backend handle. The next call builds a new one."""
        with self._lock:
            backend, self._backend = self._backend, None
        if backend is not None and hasattr(backend, "close"):
            backend.close()
            logger.info("Generation backend closed")
