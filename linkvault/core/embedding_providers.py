"""Embedding providers: remote OpenAI-compatible API with a local fallback."""

from __future__ import annotations

import logging
import math
import re
import struct
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from linkvault.core.errors import EmbeddingError, OperationTimeoutError, RETRIABLE_ERRORS
from linkvault.core.resilience import (
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    classify_transport_error,
    with_retry,
    with_timeout,
)
from linkvault.core.settings import Settings

logger = logging.getLogger(__name__)

# Maximum combined input length of a single remote API call
MAX_TEXT_LENGTH = 100_000

LOCAL_MODEL_ID = "local-tfidf-3072"

# Share of a caller's deadline the remote provider may use
REMOTE_BUDGET_SHARE = 0.8

# Each word is scattered into this many hashed slots
LOCAL_HASH_VARIANTS = 3

_NON_WORD = re.compile(r"[^A-Za-z0-9_\s]")


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


def l2_normalize(vector: list[float]) -> list[float]:
    magnitude = math.sqrt(sum(v * v for v in vector))
    if magnitude == 0:
        return vector
    return [v / magnitude for v in vector]


def average_embeddings(vectors: list[list[float]]) -> list[float]:
    """Normalized mean of several vectors (document vector from chunk vectors)."""
    if not vectors:
        return []
    if len(vectors) == 1:
        return list(vectors[0])
    dims = len(vectors[0])
    mean = [0.0] * dims
    for vector in vectors:
        for i, value in enumerate(vector):
            mean[i] += value
    return l2_normalize([v / len(vectors) for v in mean])


class EmbeddingBackend(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "healthy": self.healthy,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details,
        }


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        ...

    @property
    @abstractmethod
    def backend(self) -> EmbeddingBackend:
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Returns:
            List of embedding vectors in the same order as input.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    async def embed_single(self, text: str) -> list[float]:
        result = await self.embed([text])
        return result[0]

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        ...


class OpenAIProvider(EmbeddingProvider):
    """OpenAI-compatible embeddings API, called in batches with retry."""

    def __init__(self, settings: Settings, retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY):
        self._api_key = settings.provider_api_key
        self._model = settings.embedding_model
        self._dimensions = settings.embedding_dimensions
        self._endpoint = f"{settings.embedding_base_url}/embeddings"
        self._timeout = settings.embedding_timeout
        self._batch_size = max(1, settings.batch_size)
        self._retry_policy = retry_policy

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def backend(self) -> EmbeddingBackend:
        return EmbeddingBackend.REMOTE

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def _post_batch(self, batch: list[str]) -> list[list[float]]:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(
                    self._endpoint,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self._model,
                        "input": batch,
                        "dimensions": self._dimensions,
                    },
                )
            except httpx.HTTPError as e:
                error_type = classify_transport_error(e)
                raise EmbeddingError(
                    f"{type(e).__name__} calling embeddings API: {e}",
                    provider=self.name,
                    retriable=error_type in RETRIABLE_ERRORS,
                ) from e

        if response.status_code >= 400:
            raise EmbeddingError(
                f"Embeddings API error: {response.status_code} - {response.text[:200]}",
                provider=self.name,
                retriable=response.status_code >= 500,
                status=response.status_code,
            )

        try:
            items = response.json()["data"]
            embeddings: list[list[float] | None] = [None] * len(batch)
            for item in items:
                embeddings[item["index"]] = item["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingError(
                f"Malformed embeddings response: {e!r}", provider=self.name
            ) from e

        for vector in embeddings:
            if vector is None or len(vector) != self._dimensions:
                raise EmbeddingError(
                    f"Embeddings response is missing vectors or has the wrong dimensions "
                    f"(expected {self._dimensions})",
                    provider=self.name,
                )
        return embeddings  # type: ignore[return-value]

    async def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        return await with_retry(
            lambda: with_timeout(
                self._post_batch(batch),
                self._timeout,
                f"Embeddings API call exceeded {self._timeout:g}s",
            ),
            self._retry_policy,
            label="embeddings batch",
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        if not self._api_key:
            raise EmbeddingError("OPENAI_API_KEY is not set", provider=self.name)

        batches = [texts[start : start + self._batch_size] for start in range(0, len(texts), self._batch_size)]
        for batch in batches:
            batch_length = sum(len(t) for t in batch)
            if batch_length > MAX_TEXT_LENGTH:
                raise EmbeddingError(
                    f"Batch text length {batch_length} exceeds maximum of {MAX_TEXT_LENGTH} characters",
                    provider=self.name,
                )

        vectors: list[list[float]] = []
        for batch in batches:
            vectors.extend(await self._embed_batch(batch))
        return vectors

    async def health_check(self) -> HealthCheckResult:
        """Check API connectivity and authentication."""
        if not self._api_key:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self._model,
                message="API key not set",
                details={"error": "OPENAI_API_KEY environment variable not set"},
            )

        start = time.monotonic()
        try:
            await self.embed_single("test")
        except (EmbeddingError, OperationTimeoutError) as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self._model,
                message=str(e),
            )
        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=self._model,
            message="OK",
            latency_ms=int((time.monotonic() - start) * 1000),
            details={"dimensions": self._dimensions},
        )


def js_string_hash(text: str) -> int:
    """31-multiplier string hash wrapped to a signed 32-bit integer."""
    h = 0
    for char in text:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def local_embedding(text: str, dimensions: int = 3072) -> list[float]:
    """Deterministic hashed term-frequency embedding.

    Has no learned semantics; it only keeps similarity search usable when
    the remote provider is unavailable. The same text always maps to the
    same vector.
    """
    words = [w for w in _NON_WORD.sub("", text.lower()).split() if len(w) > 2]
    embedding = [0.0] * dimensions
    if not words:
        return embedding

    for word, freq in Counter(words).items():
        weight = freq / len(words)
        for variant in range(LOCAL_HASH_VARIANTS):
            h = js_string_hash(f"{word}{variant}")
            embedding[abs(h) % dimensions] += weight * math.cos(h)

    return l2_normalize(embedding)


class LocalHashProvider(EmbeddingProvider):
    """In-process fallback; never fails and needs no configuration."""

    def __init__(self, dimensions: int = 3072):
        self._dimensions = dimensions

    @property
    def name(self) -> str:
        return "Local"

    @property
    def model_id(self) -> str:
        return LOCAL_MODEL_ID

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def backend(self) -> EmbeddingBackend:
        return EmbeddingBackend.LOCAL

    def embed_sync(self, texts: list[str]) -> list[list[float]]:
        return [local_embedding(text, self._dimensions) for text in texts]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return self.embed_sync(texts)

    async def health_check(self) -> HealthCheckResult:
        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=LOCAL_MODEL_ID,
            message="OK",
            latency_ms=0,
            details={"dimensions": self._dimensions},
        )


@dataclass
class EmbeddingBatch:
    """Vectors plus which backend and model produced them."""

    vectors: list[list[float]]
    model: str
    dimensions: int
    backend: EmbeddingBackend


class EmbeddingGenerator:
    """Remote-first embedding with deterministic local fallback."""

    def __init__(
        self,
        settings: Settings,
        remote: OpenAIProvider | None = None,
        local: LocalHashProvider | None = None,
    ) -> None:
        self.dimensions = settings.embedding_dimensions
        self.embedding_timeout = settings.embedding_timeout
        self.remote = remote if remote is not None else OpenAIProvider(settings)
        self.local = local if local is not None else LocalHashProvider(self.dimensions)

    def remote_budget(self, deadline: float) -> float:
        """Share of a caller's deadline the remote provider may spend, retries included."""
        return max(0.0, deadline * REMOTE_BUDGET_SHARE)

    async def embed(self, texts: list[str], deadline: float | None = None) -> EmbeddingBatch:
        """Embed ``texts``, falling back to local vectors when the remote fails.

        ``deadline`` is the time the caller is willing to wait. The remote
        call, retries included, is cut off at ``remote_budget(deadline)``.
        """
        deadline = self.embedding_timeout if deadline is None else deadline
        budget = self.remote_budget(deadline)
        if self.remote.configured and texts and budget > 0:
            try:
                vectors = await with_timeout(
                    self.remote.embed(texts),
                    budget,
                    f"Remote embeddings exceeded {budget:g}s",
                )
                return EmbeddingBatch(vectors, self.remote.model_id, self.dimensions, EmbeddingBackend.REMOTE)
            except (EmbeddingError, OperationTimeoutError) as e:
                logger.warning(f"Remote embeddings failed ({e}); using local embeddings")
        elif self.remote.configured and texts:
            logger.warning("No time left for remote embeddings; using local embeddings")
        elif texts:
            logger.debug("No embeddings API key configured; using local embeddings")

        vectors = self.local.embed_sync(texts)
        return EmbeddingBatch(vectors, self.local.model_id, self.dimensions, EmbeddingBackend.LOCAL)

    async def embed_query(self, text: str, deadline: float | None = None) -> EmbeddingBatch:
        """Single-text variant used for search queries."""
        return await self.embed([text], deadline)

    async def health_check(self) -> list[HealthCheckResult]:
        return [await self.remote.health_check(), await self.local.health_check()]
