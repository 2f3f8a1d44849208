import asyncio
import json

import httpx

from rag_chat.agent.registry import AgentRegistry, ExecutionType, ToolConfig
from rag_chat.agent.tools import ToolDispatcher, substitute
from rag_chat.config import DispatcherConfig
from rag_chat.obs.tracing import InMemoryToolExecutionLog
from rag_chat.types import ToolInvocation


class _FailingLog:
    async def record(self, entry) -> None:
        raise RuntimeError("log store down")


def _dispatch(
    tool: ToolConfig | None, invocation: ToolInvocation, handler=None, log=None, timeout: float = 5
):
    registry = AgentRegistry()
    execution_log = log or InMemoryToolExecutionLog()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    dispatcher = ToolDispatcher(
        registry, execution_log, DispatcherConfig(http_timeout_seconds=timeout), client=client
    )

    async def _scenario() -> str:
        if tool is not None:
            await registry.register(tool)
        result = await dispatcher.execute(invocation, "agent-1")
        await dispatcher.drain()
        return result

    return asyncio.run(_scenario()), execution_log


def _http_tool(url: str, method: str = "GET", **overrides) -> ToolConfig:
    return ToolConfig(
        agent_id="agent-1",
        name="lookup",
        execution_type=ExecutionType.HTTP,
        http_url=url,
        http_method=method,
        **overrides,
    )


def test_http_url_placeholders_are_substituted() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "shipped"})

    result, log = _dispatch(
        _http_tool("https://x/${id}"), ToolInvocation("t1", "lookup", {"id": "42"}), handler
    )

    assert str(seen[0].url) == "https://x/42"
    assert seen[0].method == "GET"
    assert seen[0].content == b""
    assert json.loads(result) == {"status": "shipped"}
    entry = log.entries()[0]
    assert entry.success is True
    assert entry.tool_name == "lookup"
    assert entry.error_message is None
    assert entry.duration_ms >= 0.0


def test_url_values_are_encoded() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.raw_path.decode())
        return httpx.Response(200, json={})

    _dispatch(
        _http_tool("https://x/search/${q}"),
        ToolInvocation("t1", "lookup", {"q": "a b/c"}),
        handler,
    )

    assert seen == ["/search/a%20b%2Fc"]


def test_post_sends_input_as_body_with_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"created": True})

    _dispatch(
        _http_tool("https://x/orders", "POST", http_headers={"X-Api-Key": "k1"}),
        ToolInvocation("t1", "lookup", {"item": "book", "qty": 2}),
        handler,
    )

    assert json.loads(seen[0].content) == {"item": "book", "qty": 2}
    assert seen[0].headers["x-api-key"] == "k1"
    assert seen[0].headers["content-type"] == "application/json"


def test_http_error_status_is_reported_as_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    result, log = _dispatch(
        _http_tool("https://x/fail"), ToolInvocation("t1", "lookup", {}), handler
    )

    assert json.loads(result) == {"error": "HTTP 500: Internal Server Error"}
    assert log.entries()[0].success is False
    assert log.entries()[0].error_message == "HTTP 500: Internal Server Error"


def test_timeout_is_reported_as_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    result, log = _dispatch(_http_tool("https://x/slow"), ToolInvocation("t1", "lookup", {}), handler)

    assert "timed out" in json.loads(result)["error"]
    assert log.entries()[0].success is False


def test_timeout_bounds_the_whole_call() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={"late": True})

    result, log = _dispatch(
        _http_tool("https://x/trickle"), ToolInvocation("t1", "lookup", {}), handler, timeout=0.05
    )

    assert json.loads(result) == {"error": "HTTP request timed out after 0.05s"}
    assert log.entries()[0].success is False


def test_non_json_body_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="plain answer")

    result, log = _dispatch(_http_tool("https://x/text"), ToolInvocation("t1", "lookup", {}), handler)

    assert json.loads(result) == {"result": "plain answer"}
    assert log.entries()[0].success is True


def test_mock_template_substitution() -> None:
    tool = ToolConfig(
        agent_id="agent-1",
        name="weather",
        mock_response='{"city": "${city}", "metric": ${metric}, "note": "${missing}"}',
    )

    result, log = _dispatch(tool, ToolInvocation("t1", "weather", {"city": "Paris", "metric": True}))

    assert json.loads(result) == {"city": "Paris", "metric": True, "note": "${missing}"}
    assert log.entries()[0].success is True


def test_mock_error_payload_marks_failure() -> None:
    tool = ToolConfig(agent_id="agent-1", name="broken", mock_response='{"error": "quota exceeded"}')

    result, log = _dispatch(tool, ToolInvocation("t1", "broken", {}))

    assert json.loads(result) == {"error": "quota exceeded"}
    assert log.entries()[0].success is False
    assert log.entries()[0].error_message == "quota exceeded"


def test_unknown_tool_returns_error_and_logs_failure() -> None:
    result, log = _dispatch(None, ToolInvocation("t1", "ghost", {"a": 1}))

    assert json.loads(result) == {"error": "Unknown tool: ghost"}
    entry = log.entries()[0]
    assert entry.tool_id is None
    assert entry.success is False
    assert entry.error_message == "Unknown tool: ghost"


def test_logging_failure_does_not_fail_the_tool() -> None:
    tool = ToolConfig(agent_id="agent-1", name="echo", mock_response="hello ${name}")

    result, _ = _dispatch(tool, ToolInvocation("t1", "echo", {"name": "ada"}), log=_FailingLog())

    assert result == "hello ada"


def test_substitute_coerces_values() -> None:
    template = "${a}|${b}|${c}|${d}"

    assert substitute(template, {"a": None, "b": False, "c": [1, 2], "d": 3.5}) == "null|false|[1, 2]|3.5"
