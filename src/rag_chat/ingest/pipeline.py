"""Text ingest pipeline: chunk -> embed -> upsert."""

from __future__ import annotations

import uuid
from collections.abc import Mapping

from rag_chat.ingest.chunker import TextChunker
from rag_chat.ingest.embedder import Embedder
from rag_chat.retrieval.vector_store import ChunkStore, SourceType, StoredChunk


class IngestPipeline:
    """Coordinates chunker/embedder/chunk store stages for raw text sources.

    File extraction happens elsewhere; this only turns already-extracted text
    into searchable chunks for one agent.
    """

    def __init__(
        self,
        chunker: TextChunker,
        embedder: Embedder,
        stores: Mapping[SourceType, ChunkStore],
    ) -> None:
        self._chunker = chunker
        self._embedder = embedder
        self._stores = dict(stores)

    async def ingest_text(
        self,
        agent_id: str,
        source_type: SourceType,
        text: str,
        *,
        source_id: str | None = None,
        status: str | None = None,
    ) -> list[StoredChunk]:
        """Ingest one source and return the stored chunks."""

        store = self._stores.get(source_type)
        if store is None:
            raise ValueError(f"No chunk store registered for source type: {source_type.value}")

        source_id = source_id or str(uuid.uuid4())
        pieces = self._chunker.chunk(text)
        if not pieces:
            return []
        embeddings = await self._embedder.embed_documents(pieces)
        chunks = [
            StoredChunk(
                chunk_id=f"{source_id}-chunk-{index:04d}",
                agent_id=agent_id,
                source_id=source_id,
                content=piece,
                embedding=embedding or None,
                status=status,
            )
            for index, (piece, embedding) in enumerate(zip(pieces, embeddings, strict=True))
        ]
        await store.upsert(chunks)
        return chunks
