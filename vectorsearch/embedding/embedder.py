"""
OpenAI Embedding Client
------------------------
Wraps the OpenAI embeddings API with:
  - Batching (`embedding_batch_size` texts per API call)
  - LangSmith run tracing
  - Retry on transient failures (rate limits, timeouts, dropped connections)
    via tenacity; other errors propagate immediately
  - Token usage accounting

Vectors are L2-normalised so that cosine similarity == inner product in
the FAISS index.
"""
from __future__ import annotations

import time
from typing import Any, Sequence

import numpy as np
from langsmith import traceable
from loguru import logger
from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

MODEL = "text-embedding-3-small"
DIMENSIONS = 1536          # text-embedding-3-small native dimensions
BATCH_SIZE = 32

_TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError)


def normalize(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise the rows of a matrix (zero rows stay zero)."""
    matrix = np.asarray(matrix, dtype=np.float32)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return (matrix / norms).astype(np.float32)


class Embedder:
    """
    Generates normalised embeddings with an OpenAI embedding model.

    Usage:
        embedder = Embedder(model="text-embedding-3-small", dimensions=1536)
        matrix = await embedder.embed_texts(["first chunk", "second chunk"])
        vector = await embedder.embed_query("What is the capital of Italy?")
    """

    def __init__(
        self,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        batch_size: int = BATCH_SIZE,
        client: Any = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self._client = client or AsyncOpenAI(max_retries=0)
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @traceable(name="embed_texts", run_type="embedding")
    async def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        """
        Embed a list of strings and return an (N, dimensions) float32 array.
        Texts are processed in batches to stay within API limits.
        """
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        all_embeddings: list[list[float]] = []

        for i in range(0, len(texts), self.batch_size):
            batch = list(texts[i: i + self.batch_size])
            embeddings, tokens = await self._embed_batch(batch)
            all_embeddings.extend(embeddings)
            self.total_tokens_used += tokens
            self.total_api_calls += 1

            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | "
                f"{len(batch)} texts | {tokens} tokens | "
                f"Running total: {self.total_tokens_used} tokens"
            )

        return normalize(np.array(all_embeddings, dtype=np.float32))

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def _embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        """Call the OpenAI Embeddings API for a single batch."""
        # Replace empty strings with a space to avoid API errors
        safe_texts = [t if t.strip() else " " for t in texts]
        start = time.perf_counter()
        request: dict[str, Any] = {"model": self.model, "input": safe_texts}
        if self.model.startswith("text-embedding-3"):
            # Only the v3 models accept a reduced output size
            request["dimensions"] = self.dimensions
        response = await self._client.embeddings.create(**request)
        elapsed = time.perf_counter() - start

        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        tokens_used = response.usage.total_tokens
        logger.debug(f"[Embedder] API call: {len(texts)} texts, {tokens_used} tokens, {elapsed:.2f}s")
        return embeddings, tokens_used

    async def embed_query(self, text: str) -> np.ndarray:
        """Embed a single query string. Returns a (dimensions,) float32 array."""
        return (await self.embed_texts([text]))[0]
