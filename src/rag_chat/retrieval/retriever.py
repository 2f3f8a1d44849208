"""Fan-out retriever across every chunk-bearing source type."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from rag_chat.config import RetrievalConfig
from rag_chat.ingest.embedder import Embedder
from rag_chat.retrieval.vector_store import ChunkStore, SourceType
from rag_chat.types import RetrievedPassage

logger = logging.getLogger(__name__)


class ContextRetriever:
    """Embeds a query once and searches all source stores of an agent.

    Each store is queried concurrently for its own top-k; results are merged,
    sorted by score and cut to `k`. The join is bounded by
    `fanout_timeout_seconds`: stores that fail or do not answer in time are
    logged and left out, so one slow source only shrinks the result set.
    """

    def __init__(
        self,
        stores: Mapping[SourceType, ChunkStore],
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.stores = dict(stores)
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    async def search(
        self, query: str, agent_id: str, k: int | None = None
    ) -> list[RetrievedPassage]:
        limit = k or self.config.final_k
        query_embedding = await self.embedder.embed_query(query)
        if not query_embedding:
            logger.debug("Empty query embedding for agent %s; skipping retrieval", agent_id)
            return []

        tasks = {
            asyncio.create_task(store.similarity_search(agent_id, query_embedding, limit)): source
            for source, store in self.stores.items()
        }
        if not tasks:
            return []
        done, pending = await asyncio.wait(tasks, timeout=self.config.fanout_timeout_seconds)
        for task in pending:
            logger.warning("Chunk store %s timed out; dropping its results", tasks[task].value)
            task.cancel()

        merged: list[RetrievedPassage] = []
        for task in done:
            exc = task.exception()
            if exc is not None:
                logger.warning("Chunk store %s failed: %s", tasks[task].value, exc)
                continue
            merged.extend(task.result())

        merged.sort(key=lambda item: item.score, reverse=True)
        return merged[:limit]
