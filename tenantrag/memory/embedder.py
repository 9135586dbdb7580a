# tenantrag/memory/embedder.py

"""
Embedding backends.

Architecture contract:
chunker → embedder → section store

Guarantees:
• Always numpy float32
• Always L2-normalized (cosine-ready)
• Fixed dimension per deployment
• Batch output order matches input order

Two interchangeable strategies share the `Embedder` interface and are
selected once at startup by `build_embedder()`:

• OpenAIEmbedder - embeddings API, bounded exponential-backoff retries
• HashEmbedder - deterministic vectors derived from a SHA-256 hash
"""

import hashlib
import logging
import os
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

import numpy as np
import openai
import tenacity
from openai import OpenAI

from tenantrag.config import (
    EMBEDDING_BACKEND,
    EMBEDDING_MODEL,
    EMBEDDING_DIMENSION,
    EMBEDDING_BATCH_SIZE,
    EMBEDDING_MAX_WORKERS,
    EMBEDDING_MAX_ATTEMPTS,
    EMBEDDING_BACKOFF_SECONDS,
    EMBEDDING_BACKOFF_MAX_SECONDS,
)
from tenantrag.errors import EmbeddingUnavailableError

logger = logging.getLogger(__name__)


_RETRYABLE_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def _normalize(vectors: np.ndarray) -> np.ndarray:

    norms = np.linalg.norm(vectors, axis=1, keepdims=True)

    return (vectors / np.clip(norms, 1e-10, None)).astype("float32")


class Embedder(ABC):
    """Maps text to a fixed-length, normalized vector."""

    name = "base"

    def __init__(
        self,
        dimension: int = EMBEDDING_DIMENSION,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        max_workers: int = EMBEDDING_MAX_WORKERS,
    ):

        if dimension <= 0:
            raise ValueError("Embedding dimension must be positive")

        self._dimension = dimension
        self._batch_size = batch_size
        self._max_workers = max_workers

    @abstractmethod
    def _embed_many(self, texts: List[str]) -> np.ndarray:
        """Embed one batch. Returns shape (len(texts), dimension)."""

    def embed(self, text: str) -> np.ndarray:

        return self._embed_many([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:

        texts = list(texts)

        if not texts:
            return np.empty((0, self._dimension), dtype="float32")

        batches = [
            texts[start:start + self._batch_size]
            for start in range(0, len(texts), self._batch_size)
        ]

        if len(batches) == 1:
            return self._embed_many(batches[0])

        # map() yields in submission order
        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            results = list(executor.map(self._embed_many, batches))

        return np.vstack(results)

    def get_dimension(self) -> int:
        return self._dimension

    def health_check(self) -> dict:

        return {
            "provider": self.name,
            "dimension": self._dimension,
            "status": "healthy",
        }


class HashEmbedder(Embedder):
    """
    Deterministic stand-in used when no model is configured.

    Identical text always maps to the identical vector, across processes.
    Similarity carries no semantic meaning beyond exact text equality.
    """

    name = "hash"

    def _vector_for(self, text: str) -> np.ndarray:

        digest = hashlib.sha256(text.encode("utf-8")).digest()

        rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))

        return rng.standard_normal(self._dimension)

    def _embed_many(self, texts: List[str]) -> np.ndarray:

        vectors = np.vstack([self._vector_for(text) for text in texts])

        return _normalize(vectors)


class OpenAIEmbedder(Embedder):
    """
    Embeddings API client with bounded exponential backoff.

    Transient API failures are retried up to `max_attempts` times;
    once exhausted, or on a non-transient failure, the call raises
    EmbeddingUnavailableError.
    """

    name = "openai"

    def __init__(
        self,
        model: str = EMBEDDING_MODEL,
        client: Optional[OpenAI] = None,
        max_attempts: int = EMBEDDING_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs,
    ):

        super().__init__(**kwargs)

        self._model = model
        self._client = client or OpenAI()

        self._retrying = tenacity.Retrying(
            retry=tenacity.retry_if_exception_type(_RETRYABLE_ERRORS),
            stop=tenacity.stop_after_attempt(max_attempts),
            wait=tenacity.wait_exponential(
                multiplier=EMBEDDING_BACKOFF_SECONDS,
                max=EMBEDDING_BACKOFF_MAX_SECONDS,
            ),
            sleep=sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

        logger.info(
            "Embedding model initialized",
            extra={"model": model, "dimension": self._dimension},
        )

    @staticmethod
    def _log_retry(retry_state: tenacity.RetryCallState) -> None:

        logger.warning(
            "Embedding request failed, retrying",
            extra={
                "attempt": retry_state.attempt_number,
                "error": str(retry_state.outcome.exception()),
            },
        )

    def _request(self, texts: List[str]) -> np.ndarray:

        response = self._client.embeddings.create(
            model=self._model,
            input=texts,
            dimensions=self._dimension,
        )

        return np.array(
            [item.embedding for item in response.data],
            dtype="float32",
        )

    def _embed_many(self, texts: List[str]) -> np.ndarray:

        try:

            vectors = self._retrying.copy()(self._request, texts)

        except openai.OpenAIError as e:

            logger.error(
                "Embedding generation failed",
                extra={"model": self._model, "error": str(e)},
            )

            raise EmbeddingUnavailableError(
                f"Embedding generation failed: {e}"
            ) from e

        if vectors.shape != (len(texts), self._dimension):
            raise EmbeddingUnavailableError(
                f"Unexpected embedding shape {vectors.shape}"
            )

        return _normalize(vectors)

    def health_check(self) -> dict:

        status = super().health_check()
        status["model"] = self._model

        return status


def build_embedder(backend: str = EMBEDDING_BACKEND) -> Embedder:
    """Select the embedding strategy for this process."""

    if backend == "openai" and os.getenv("OPENAI_API_KEY"):
        return OpenAIEmbedder()

    if backend == "openai":
        logger.warning(
            "OPENAI_API_KEY not set, using deterministic hash embeddings"
        )

    return HashEmbedder()
