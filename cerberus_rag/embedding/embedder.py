"""
OpenAI Embedding Client with LangSmith instrumentation
---------------------------------------------------------
Wraps the OpenAI embeddings API with:
  - Batching (ingestion sends up to `batch_size` texts per call)
  - LangSmith run tracing (no-op when LangSmith is not configured)
  - Retry logic via tenacity (inside the collaborator; the retrieval
    pipeline itself never retries)
  - Token usage reported to the caller's cost sink
"""
from __future__ import annotations

import time
from typing import Optional

import numpy as np
from langsmith import traceable
from loguru import logger
from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from cerberus_rag.cost_tracker import CostSink, record_usage
from cerberus_rag.embedding.base import normalise_rows
from cerberus_rag.exceptions import CollaboratorError

MODEL = "text-embedding-3-small"
BATCH_SIZE = 50


class Embedder:
    """
    Generates L2-normalised embeddings.

    The OpenAI client is injected so callers (and tests) control its
    lifetime; one is created from the environment when omitted.
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = MODEL,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self.model = model
        self.batch_size = batch_size
        self._client = client if client is not None else OpenAI()
        self.total_api_calls: int = 0

    @traceable(name="embed_texts", run_type="embedding")
    def embed_texts(self, texts: list[str], cost_sink: Optional[CostSink] = None) -> np.ndarray:
        """
        Embed a list of strings and return an (N, dimensions) float32 array.

        Raises:
            CollaboratorError: the API still failed after retries.
        """
        if not texts:
            return np.empty((0, 0), dtype=np.float32)

        all_embeddings: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i: i + self.batch_size]
            try:
                embeddings, usage = self._embed_batch(batch)
            except Exception as exc:
                raise CollaboratorError(f"Failed to generate embeddings: {exc}") from exc
            tokens = record_usage(cost_sink, usage)
            all_embeddings.extend(embeddings)
            self.total_api_calls += 1
            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | "
                f"{len(batch)} texts | {tokens} tokens"
            )

        return normalise_rows(np.array(all_embeddings, dtype=np.float32))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def _embed_batch(self, texts: list[str]):
        """Call the OpenAI Embeddings API for a single batch."""
        # Replace empty strings with a space to avoid API errors
        safe_texts = [t if t.strip() else " " for t in texts]
        start = time.perf_counter()
        response = self._client.embeddings.create(model=self.model, input=safe_texts)
        elapsed = time.perf_counter() - start

        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        logger.debug(f"[Embedder] API call: {len(texts)} texts, {elapsed:.2f}s")
        return embeddings, response.usage

    def embed(self, text: str, cost_sink: Optional[CostSink] = None) -> np.ndarray:
        """Embed a single query string. Returns a 1-D float32 array."""
        return self.embed_texts([text], cost_sink)[0]
