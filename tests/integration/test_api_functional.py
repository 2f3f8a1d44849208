import asyncio

from fastapi.testclient import TestClient

from rag_chat.agent.registry import ToolConfig
from rag_chat.api.main import build_services, create_app
from rag_chat.api.sse import parse_sse
from rag_chat.config import Settings
from rag_chat.ingest.embedder import Embedder
from rag_chat.providers.base import StreamAdapter
from rag_chat.store.memory import SecuritySettings
from rag_chat.types import Done, TextDelta, ToolInvocation, ToolUse, Usage


class _EchoAdapter(StreamAdapter):
    """Replies with the last message; calls `lookup` once when tools are offered."""

    name = "echo"

    def __init__(self) -> None:
        self.requests = []

    async def stream(self, request):
        self.requests.append(request)
        if request.tools:
            yield ToolUse(ToolInvocation("call-1", "lookup", {"sku": "A-1"}))
            yield Done(Usage(8, 1))
            return
        for word in ("You", " said: ", request.messages[-1].content[:20]):
            yield TextDelta(word)
        yield Done(Usage(5, 3))


class _FixedEmbedder(Embedder):
    name = "fixed"

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [[1.0, 0.0] for _ in texts]

    async def embed_query(self, text: str) -> list[float]:
        return [1.0, 0.0]


def _client():
    services = build_services(Settings(), adapter=_EchoAdapter(), embedder=_FixedEmbedder())
    return services, TestClient(create_app(services))


def test_chat_streams_sse_frames_and_persists_turn() -> None:
    services, client = _client()

    with client:
        response = client.post(
            "/chat",
            json={"messages": [{"role": "user", "content": "hello there"}], "agentId": "agent-1"},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        frames = parse_sse(response.text)

    assert [event for event, _ in frames] == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_stop",
    ]
    text = "".join(payload["delta"]["text"] for event, payload in frames if event == "content_block_delta")
    assert text == "You said: hello there"

    conversation_id = frames[-1][1]["conversationId"]
    conversation = asyncio.run(services.conversations.get(conversation_id))
    assert [message.content for message in conversation.messages] == ["hello there", text]
    assert conversation.messages[1].id == frames[0][1]["message"]["id"]


def test_chat_with_tool_emits_tool_use_frame() -> None:
    services, client = _client()
    asyncio.run(
        services.registry.register(
            ToolConfig(agent_id="agent-1", name="lookup", mock_response='{"stock": 3, "sku": "${sku}"}')
        )
    )

    with client:
        response = client.post(
            "/chat",
            json={"messages": [{"role": "user", "content": "is A-1 in stock?"}], "agentId": "agent-1"},
        )
        frames = parse_sse(response.text)

    tool_frames = [payload for event, payload in frames if event == "tool_use"]
    assert tool_frames == [
        {"type": "tool_use", "tool": "lookup", "input": {"sku": "A-1"}, "result": {"stock": 3, "sku": "A-1"}}
    ]
    assert frames[-1][0] == "message_stop"
    assert services.tool_log.summary()["total_tool_calls"] == 1


def test_invalid_chat_requests_return_400() -> None:
    _, client = _client()

    with client:
        missing_agent = client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]})
        no_messages = client.post("/chat", json={"messages": [], "agentId": "agent-1"})
        bad_temp = client.post(
            "/chat",
            json={"messages": [{"role": "user", "content": "hi"}], "agentId": "agent-1", "customTemp": 150},
        )

    assert missing_agent.status_code == 400
    assert missing_agent.json() == {"error": "agentId required", "code": "INVALID_REQUEST"}
    assert no_messages.json() == {"error": "messages array required", "code": "INVALID_REQUEST"}
    assert bad_temp.status_code == 400
    assert bad_temp.json()["code"] == "INVALID_REQUEST"


def test_domain_allowlist_blocks_foreign_origins() -> None:
    services, client = _client()
    asyncio.run(services.security.put(SecuritySettings(agent_id="agent-1", allowed_domains=["example.com"])))
    body = {"messages": [{"role": "user", "content": "hi"}], "agentId": "agent-1"}

    with client:
        blocked = client.post("/chat", json=body, headers={"Origin": "https://evil.test"})
        missing = client.post("/chat", json=body)
        allowed = client.post("/chat", json=body, headers={"Origin": "https://shop.example.com"})

    assert blocked.status_code == 403
    assert blocked.json() == {"error": "Domain not allowed", "code": "DOMAIN_BLOCKED"}
    assert missing.status_code == 403
    assert allowed.status_code == 200


def test_rate_limit_returns_429() -> None:
    services, client = _client()
    asyncio.run(
        services.security.put(SecuritySettings(agent_id="agent-1", message_limit=2, message_limit_window=30))
    )
    body = {"messages": [{"role": "user", "content": "hi"}], "agentId": "agent-1"}

    with client:
        statuses = [
            client.post("/chat", json=body, headers={"X-Forwarded-For": "203.0.113.9"}).status_code
            for _ in range(3)
        ]
        limited = client.post("/chat", json=body, headers={"X-Forwarded-For": "203.0.113.9"})
        other_caller = client.post("/chat", json=body, headers={"X-Forwarded-For": "198.51.100.4"})

    assert statuses == [200, 200, 429]
    assert limited.json() == {
        "error": "Rate limit exceeded. Try again in 30 seconds.",
        "code": "RATE_LIMITED",
    }
    assert other_caller.status_code == 200


def test_sources_ingest_and_search() -> None:
    _, client = _client()

    with client:
        ingest = client.post(
            "/sources/text",
            json={"agentId": "agent-1", "text": "Returns are accepted within 30 days.", "sourceId": "policy"},
        )
        pending_page = client.post(
            "/sources/web",
            json={"agentId": "agent-1", "text": "Draft page not crawled yet.", "status": "pending"},
        )
        search = client.post("/sources/search", json={"agentId": "agent-1", "query": "returns", "topK": 3})
        unknown = client.post("/sources/video", json={"agentId": "agent-1", "text": "x"})

    assert ingest.status_code == 200
    assert ingest.json() == {"chunks_created": 1, "chunk_ids": ["policy-chunk-0000"], "embedded": 1}
    assert pending_page.json()["chunks_created"] == 1
    items = search.json()["items"]
    assert [item["id"] for item in items] == ["policy-chunk-0000"]
    assert items[0]["content"] == "Returns are accepted within 30 days."
    assert unknown.status_code == 400


def test_health_and_metrics() -> None:
    services, client = _client()

    with client:
        health = client.get("/health")
        client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}], "agentId": "agent-1"})
        metrics = client.get("/metrics")

    assert health.json() == {"status": "ok", "provider_mode": "echo", "embedder": "fixed", "rate_limit_keys": 0}
    assert {"total_turns", "p95_latency_ms", "total_tool_calls", "tool_success_rate"} <= set(metrics.json())
    summary = services.usage.summary()
    assert summary["total_turns"] == 1
    assert summary["total_input_tokens"] == 5
