"""Chunk store interfaces and the in-memory adapter."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from math import sqrt
from typing import Protocol

from rag_chat.types import RetrievedPassage


class SourceType(str, Enum):
    """Kinds of knowledge an agent's chunks come from."""

    DOCUMENT = "document"
    TEXT = "text"
    QA = "qa"
    WEB = "web"


@dataclass(slots=True)
class StoredChunk:
    chunk_id: str
    agent_id: str
    source_id: str
    content: str
    embedding: list[float] | None
    status: str | None = None


class ChunkStore(Protocol):
    """Minimal per-source-type chunk store contract for retrieval."""

    source_type: SourceType

    async def upsert(self, chunks: list[StoredChunk]) -> None:
        """Insert or update chunks."""

    async def similarity_search(
        self, agent_id: str, query_embedding: list[float], k: int
    ) -> list[RetrievedPassage]:
        """Return up to `k` eligible chunks of `agent_id`, best score first."""


class InMemoryChunkStore:
    """Deterministic chunk store used for tests and local prototyping.

    Chunks without an embedding are never returned. When `eligible_status` is
    set (crawled web pages), only chunks whose `status` equals it are searched.
    """

    def __init__(self, source_type: SourceType, *, eligible_status: str | None = None) -> None:
        self.source_type = source_type
        self.eligible_status = eligible_status
        self._store: dict[str, StoredChunk] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, chunks: list[StoredChunk]) -> None:
        async with self._lock:
            for chunk in chunks:
                self._store[chunk.chunk_id] = chunk

    async def similarity_search(
        self, agent_id: str, query_embedding: list[float], k: int
    ) -> list[RetrievedPassage]:
        async with self._lock:
            candidates = [record for record in self._store.values() if self._eligible(record, agent_id)]
        ranked = sorted(
            (
                RetrievedPassage(
                    id=record.chunk_id,
                    content=record.content,
                    score=1.0 - cosine_distance(record.embedding or [], query_embedding),
                )
                for record in candidates
            ),
            key=lambda item: item.score,
            reverse=True,
        )
        return ranked[:k]

    def _eligible(self, record: StoredChunk, agent_id: str) -> bool:
        if record.agent_id != agent_id or not record.embedding:
            return False
        if self.eligible_status is not None and record.status != self.eligible_status:
            return False
        return True


def default_chunk_stores() -> dict[SourceType, InMemoryChunkStore]:
    """One store per source type; web pages must be crawled to be searched."""

    return {
        SourceType.DOCUMENT: InMemoryChunkStore(SourceType.DOCUMENT),
        SourceType.TEXT: InMemoryChunkStore(SourceType.TEXT),
        SourceType.QA: InMemoryChunkStore(SourceType.QA),
        SourceType.WEB: InMemoryChunkStore(SourceType.WEB, eligible_status="crawled"),
    }


def cosine_distance(a: list[float], b: list[float]) -> float:
    return 1.0 - _cosine_similarity(a, b)


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
