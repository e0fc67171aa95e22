"""
OpenAI-compatible Embedding Client
-----------------------------------
Wraps the OpenAI embeddings API (or any compatible endpoint such as a local
Ollama server via base_url) with:
  - Batching (batch_size texts per API call)
  - Retry on transient failures via tenacity
  - A hard dimension check: corpus and query vectors must agree, so a model
    returning the wrong width is a configuration error, not a runtime one
  - LangSmith run tracing and token usage logging
"""
from __future__ import annotations

import os
import time
from typing import Optional

import numpy as np
from langsmith import traceable
from loguru import logger
from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    OpenAIError,
    RateLimitError,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agentic_rag.errors import ConfigurationError, ExternalCallFailure

MODEL = "text-embedding-3-small"
DIMENSIONS = 1536
BATCH_SIZE = 512

_TRANSIENT = (APIConnectionError, APITimeoutError, InternalServerError, RateLimitError)


class Embedder:
    """
    Produces L2-normalised float32 embeddings of a fixed width.

    The model name doubles as the embedding_model tag stored on every chunk,
    which is how search keeps vectors from different models apart.
    """

    def __init__(
        self,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        batch_size: int = BATCH_SIZE,
        base_url: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ) -> None:
        if not model or not model.strip():
            raise ConfigurationError("Embedding model name is required")
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        try:
            self._client = client or OpenAI(
                api_key=os.getenv("OPENAI_API_KEY"),
                base_url=base_url,
            )
        except OpenAIError as exc:
            raise ConfigurationError(f"OpenAI client could not be created: {exc}") from exc
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @traceable(name="embed_texts", run_type="embedding")
    def embed_texts(self, texts: list[str]) -> np.ndarray:
        """
        Embed a list of strings and return an (N, dimensions) float32 array.
        """
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        all_embeddings: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i: i + self.batch_size]
            try:
                embeddings, tokens = self._embed_batch(batch)
            except OpenAIError as exc:
                logger.error(f"[Embedder] {self.model} call failed: {exc}")
                raise ExternalCallFailure("embedding", str(exc)) from exc

            for vec in embeddings:
                if len(vec) != self.dimensions:
                    raise ConfigurationError(
                        f"Embedding model {self.model!r} returned {len(vec)} dimensions, "
                        f"expected {self.dimensions}"
                    )
            all_embeddings.extend(embeddings)
            self.total_tokens_used += tokens
            self.total_api_calls += 1

            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | "
                f"{len(batch)} texts | {tokens} tokens | "
                f"Running total: {self.total_tokens_used} tokens"
            )

        matrix = np.array(all_embeddings, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms = np.where(norms == 0, 1, norms)
        return (matrix / norms).astype(np.float32)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def _embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        """Call the embeddings API for a single batch."""
        safe_texts = [t if t.strip() else " " for t in texts]
        start = time.perf_counter()
        response = self._client.embeddings.create(model=self.model, input=safe_texts)
        elapsed = time.perf_counter() - start

        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        usage = getattr(response, "usage", None)
        tokens_used = usage.total_tokens if usage is not None else 0
        logger.debug(f"[Embedder] API call: {len(texts)} texts, {tokens_used} tokens, {elapsed:.2f}s")
        return embeddings, tokens_used

    def embed_query(self, text: str) -> np.ndarray:
        """Embed a single string. Returns shape (dimensions,) float32 array."""
        return self.embed_texts([text])[0]

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "dimensions": self.dimensions,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
        }
