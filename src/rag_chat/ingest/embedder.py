"""Embedding abstractions with cloud, local and deterministic backends."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt

import httpx

from rag_chat.config import EmbeddingConfig
from rag_chat.errors import EmbeddingError
from rag_chat.http import http_client

logger = logging.getLogger(__name__)


class Embedder(ABC):
    """Embedder interface used by ingest and retrieval components.

    An empty vector is a valid result and means "no embedding available";
    retrieval treats it as a signal to skip the similarity search.
    """

    name = "embedder"

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


class VoyageEmbedder(Embedder):
    """Cloud batch embeddings via the Voyage AI HTTP API.

    Requests are split into batches of `batch_size` inputs and tagged with an
    `input_type` of "document" or "query". Non-success responses raise
    `EmbeddingError`.
    """

    name = "voyage"

    def __init__(
        self,
        config: EmbeddingConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.voyage_api_key:
            raise ValueError("voyage_api_key is required for VoyageEmbedder")
        self.config = config
        self._client = client

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return await self._embed(texts, input_type="document")

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self._embed([text], input_type="query")
        return vectors[0] if vectors else []

    async def _embed(self, texts: list[str], *, input_type: str) -> list[list[float]]:
        results: list[list[float]] = []
        size = self.config.batch_size
        async with http_client(self._client, timeout=self.config.timeout_seconds) as client:
            for offset in range(0, len(texts), size):
                batch = texts[offset : offset + size]
                response = await client.post(
                    self.config.voyage_url,
                    headers={"Authorization": f"Bearer {self.config.voyage_api_key}"},
                    json={
                        "model": self.config.voyage_model,
                        "input": batch,
                        "input_type": input_type,
                    },
                )
                if response.is_error:
                    raise EmbeddingError(
                        f"Voyage API error: {response.status_code} {response.reason_phrase}"
                    )
                data = response.json().get("data", [])
                results.extend(item["embedding"] for item in data)
        logger.debug("Embedded %d %s text(s) with %s", len(texts), input_type, self.config.voyage_model)
        return results


class OllamaEmbedder(Embedder):
    """Self-hosted single-item embeddings via an Ollama-style `/api/embeddings`.

    Failures never raise: a network error or non-success status logs a
    warning and yields an empty vector for that text.
    """

    name = "local"

    def __init__(
        self,
        config: EmbeddingConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.base_url = (config.local_base_url or "http://localhost:11434").rstrip("/")
        self._client = client

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        async with http_client(self._client, timeout=self.config.timeout_seconds) as client:
            return [await self._embed_one(client, text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        async with http_client(self._client, timeout=self.config.timeout_seconds) as client:
            return await self._embed_one(client, text)

    async def _embed_one(self, client: httpx.AsyncClient, text: str) -> list[float]:
        try:
            response = await client.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.config.local_model, "prompt": text},
            )
        except httpx.HTTPError as exc:
            logger.warning("Local embeddings unavailable: %s. Skipping vector search.", exc)
            return []
        if response.is_error:
            logger.warning(
                "Local embeddings error: %s %s. Skipping vector search.",
                response.status_code,
                response.reason_phrase,
            )
            return []
        try:
            embedding = response.json().get("embedding") or []
        except ValueError:
            logger.warning("Local embeddings returned a non-JSON body. Skipping vector search.")
            return []
        return [float(value) for value in embedding]


class HashingEmbedder(Embedder):
    """Deterministic sparse-like embedding without external model calls.

    Used when neither a cloud key nor a self-hosted endpoint is configured,
    and in tests.
    """

    name = "hashing"

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


def create_embedder(
    config: EmbeddingConfig, *, client: httpx.AsyncClient | None = None
) -> Embedder:
    """Pick the backend: cloud key first, then self-hosted, then hashing."""

    if config.voyage_api_key:
        return VoyageEmbedder(config, client=client)
    if config.use_local:
        return OllamaEmbedder(config, client=client)
    return HashingEmbedder()
