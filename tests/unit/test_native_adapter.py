import asyncio

from langchain_core.messages import AIMessageChunk, HumanMessage, SystemMessage
from langchain_core.messages.tool import tool_call_chunk

from rag_chat.providers.native import NativeToolStreamAdapter
from rag_chat.types import (
    ChatMessage,
    Done,
    Error,
    StreamRequest,
    TextDelta,
    ToolDefinition,
    ToolUse,
    Usage,
)


class _FakeChatModel:
    def __init__(self, chunks: list[AIMessageChunk], *, fail_after: int | None = None) -> None:
        self.chunks = chunks
        self.fail_after = fail_after
        self.bound_tools: list[dict] | None = None
        self.messages: list = []

    def bind_tools(self, tools: list[dict]) -> "_FakeChatModel":
        self.bound_tools = tools
        return self

    async def astream(self, messages: list):
        self.messages = messages
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise RuntimeError("upstream reset")
            yield chunk


def _request(tools: list[ToolDefinition] | None = None) -> StreamRequest:
    return StreamRequest(
        model="claude-sonnet-4-20250514",
        max_tokens=512,
        temperature=0.5,
        system_prompt="You are a helpful assistant.",
        messages=[
            ChatMessage(role="user", content="Hi"),
            ChatMessage(role="assistant", content="Hello!"),
            ChatMessage(role="user", content="Order 42 status?"),
        ],
        tools=tools,
    )


def _run(model: _FakeChatModel, request: StreamRequest) -> list:
    adapter = NativeToolStreamAdapter(llm_factory=lambda _request: model)

    async def _collect() -> list:
        return [event async for event in adapter.stream(request)]

    return asyncio.run(_collect())


def _order_tool() -> ToolDefinition:
    return ToolDefinition(
        name="order_status",
        description="Look up an order",
        input_schema={"type": "object", "properties": {"order_id": {"type": "string"}}},
    )


def test_text_then_tool_call_then_usage() -> None:
    model = _FakeChatModel(
        [
            AIMessageChunk(content="Checking "),
            AIMessageChunk(content="now."),
            AIMessageChunk(
                content="",
                tool_call_chunks=[tool_call_chunk(name="order_status", args="", id="call_1", index=0)],
            ),
            AIMessageChunk(
                content="",
                tool_call_chunks=[tool_call_chunk(name=None, args='{"order_', id=None, index=0)],
            ),
            AIMessageChunk(
                content="",
                tool_call_chunks=[tool_call_chunk(name=None, args='id": "42"}', id=None, index=0)],
            ),
            AIMessageChunk(
                content="",
                usage_metadata={"input_tokens": 30, "output_tokens": 12, "total_tokens": 42},
            ),
        ]
    )

    events = _run(model, _request([_order_tool()]))

    assert events[0] == TextDelta("Checking ")
    assert events[1] == TextDelta("now.")
    assert isinstance(events[2], ToolUse)
    assert events[2].invocation.id == "call_1"
    assert events[2].invocation.name == "order_status"
    assert events[2].invocation.input == {"order_id": "42"}
    assert events[3] == Done(Usage(input_tokens=30, output_tokens=12))
    assert len(events) == 4


def test_tools_are_bound_in_function_format() -> None:
    model = _FakeChatModel([AIMessageChunk(content="ok")])

    _run(model, _request([_order_tool()]))

    assert model.bound_tools == [
        {
            "type": "function",
            "function": {
                "name": "order_status",
                "description": "Look up an order",
                "parameters": {"type": "object", "properties": {"order_id": {"type": "string"}}},
            },
        }
    ]


def test_messages_are_converted_with_system_prompt_first() -> None:
    model = _FakeChatModel([AIMessageChunk(content="ok")])

    _run(model, _request())

    assert model.bound_tools is None
    assert isinstance(model.messages[0], SystemMessage)
    assert model.messages[0].content == "You are a helpful assistant."
    assert isinstance(model.messages[1], HumanMessage)
    assert [message.content for message in model.messages[1:]] == ["Hi", "Hello!", "Order 42 status?"]


def test_malformed_tool_arguments_are_dropped_silently() -> None:
    model = _FakeChatModel(
        [
            AIMessageChunk(
                content="",
                tool_call_chunks=[tool_call_chunk(name="order_status", args='{"order_id": ', id="call_9", index=0)],
            ),
        ]
    )

    events = _run(model, _request([_order_tool()]))

    assert events == [Done(Usage())]


def test_second_block_closes_first() -> None:
    model = _FakeChatModel(
        [
            AIMessageChunk(
                content="",
                tool_call_chunks=[tool_call_chunk(name="a", args='{"x": 1}', id="call_a", index=0)],
            ),
            AIMessageChunk(
                content="",
                tool_call_chunks=[tool_call_chunk(name="b", args='{"y": 2}', id="call_b", index=1)],
            ),
        ]
    )

    events = _run(model, _request())

    names = [event.invocation.name for event in events if isinstance(event, ToolUse)]
    assert names == ["a", "b"]
    assert isinstance(events[-1], Done)


def test_list_content_blocks_yield_text() -> None:
    model = _FakeChatModel(
        [AIMessageChunk(content=[{"type": "text", "text": "Block text", "index": 0}])]
    )

    events = _run(model, _request())

    assert events[0] == TextDelta("Block text")


def test_stream_failure_becomes_error_after_partial_text() -> None:
    model = _FakeChatModel(
        [AIMessageChunk(content="Partial"), AIMessageChunk(content=" more")], fail_after=1
    )

    events = _run(model, _request())

    assert events == [TextDelta("Partial"), Error("upstream reset")]
