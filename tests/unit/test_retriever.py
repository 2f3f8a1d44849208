import asyncio

from rag_chat.config import RetrievalConfig
from rag_chat.ingest.embedder import Embedder
from rag_chat.retrieval.retriever import ContextRetriever
from rag_chat.retrieval.vector_store import InMemoryChunkStore, SourceType, StoredChunk
from rag_chat.types import RetrievedPassage


class _FixedEmbedder(Embedder):
    name = "fixed"

    def __init__(self, vector: list[float]) -> None:
        self.vector = vector

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self.vector for _ in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self.vector


class _StaticStore:
    def __init__(self, source_type: SourceType, passages: list[RetrievedPassage], *, delay: float = 0.0) -> None:
        self.source_type = source_type
        self.passages = passages
        self.delay = delay
        self.calls = 0

    async def upsert(self, chunks: list[StoredChunk]) -> None:
        raise NotImplementedError

    async def similarity_search(self, agent_id: str, query_embedding: list[float], k: int) -> list[RetrievedPassage]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.passages[:k]


class _BrokenStore(_StaticStore):
    async def similarity_search(self, agent_id: str, query_embedding: list[float], k: int) -> list[RetrievedPassage]:
        raise RuntimeError("database unavailable")


def _passage(pid: str, score: float) -> RetrievedPassage:
    return RetrievedPassage(id=pid, content=f"content {pid}", score=score)


def test_empty_query_embedding_returns_no_results() -> None:
    store = _StaticStore(SourceType.TEXT, [_passage("a", 0.9)])
    retriever = ContextRetriever({SourceType.TEXT: store}, _FixedEmbedder([]))

    assert asyncio.run(retriever.search("anything", "agent-1")) == []
    assert store.calls == 0


def test_results_are_merged_sorted_and_capped() -> None:
    stores = {
        SourceType.DOCUMENT: _StaticStore(SourceType.DOCUMENT, [_passage("d1", 0.4), _passage("d2", 0.1)]),
        SourceType.TEXT: _StaticStore(SourceType.TEXT, [_passage("t1", 0.95), _passage("t2", 0.3)]),
        SourceType.QA: _StaticStore(SourceType.QA, [_passage("q1", 0.7)]),
        SourceType.WEB: _StaticStore(SourceType.WEB, [_passage("w1", -0.2)]),
    }
    retriever = ContextRetriever(stores, _FixedEmbedder([1.0, 0.0]))

    results = asyncio.run(retriever.search("query", "agent-1", k=3))

    assert [item.id for item in results] == ["t1", "q1", "d1"]
    scores = [item.score for item in results]
    assert scores == sorted(scores, reverse=True)


def test_failing_and_slow_stores_are_left_out() -> None:
    stores = {
        SourceType.DOCUMENT: _BrokenStore(SourceType.DOCUMENT, []),
        SourceType.TEXT: _StaticStore(SourceType.TEXT, [_passage("t1", 0.5)]),
        SourceType.WEB: _StaticStore(SourceType.WEB, [_passage("w1", 0.99)], delay=1.0),
    }
    retriever = ContextRetriever(
        stores, _FixedEmbedder([1.0]), RetrievalConfig(fanout_timeout_seconds=0.05)
    )

    results = asyncio.run(retriever.search("query", "agent-1"))

    assert [item.id for item in results] == ["t1"]


def test_in_memory_store_scores_by_cosine_and_scopes_by_agent() -> None:
    store = InMemoryChunkStore(SourceType.TEXT)
    chunks = [
        StoredChunk("c1", "agent-1", "s1", "close", [0.9, 0.4358898943540674]),
        StoredChunk("c2", "agent-1", "s1", "farther", [0.8, 0.6]),
        StoredChunk("c3", "agent-2", "s2", "other agent", [1.0, 0.0]),
        StoredChunk("c4", "agent-1", "s3", "not embedded", None),
    ]

    async def _scenario() -> list[RetrievedPassage]:
        await store.upsert(chunks)
        return await store.similarity_search("agent-1", [1.0, 0.0], 5)

    results = asyncio.run(_scenario())

    assert [item.id for item in results] == ["c1", "c2"]
    assert abs(results[0].score - 0.9) < 1e-9
    assert abs(results[1].score - 0.8) < 1e-9


def test_web_store_only_searches_crawled_pages() -> None:
    store = InMemoryChunkStore(SourceType.WEB, eligible_status="crawled")
    chunks = [
        StoredChunk("p1", "agent-1", "page-1", "crawled page", [1.0, 0.0], status="crawled"),
        StoredChunk("p2", "agent-1", "page-2", "pending page", [1.0, 0.0], status="pending"),
    ]

    async def _scenario() -> list[RetrievedPassage]:
        await store.upsert(chunks)
        return await store.similarity_search("agent-1", [1.0, 0.0], 5)

    assert [item.id for item in asyncio.run(_scenario())] == ["p1"]
