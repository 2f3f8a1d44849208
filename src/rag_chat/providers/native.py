"""Adapter for backends with structured tool-call events, via LangChain."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from rag_chat.config import ProviderConfig
from rag_chat.providers.base import StreamAdapter
from rag_chat.types import (
    Done,
    Error,
    StreamEvent,
    StreamRequest,
    TextDelta,
    ToolDefinition,
    ToolInvocation,
    ToolUse,
    Usage,
)

logger = logging.getLogger(__name__)

LLMFactory = Callable[[StreamRequest], Any]


@dataclass(slots=True)
class _PendingToolCall:
    id: str | None
    name: str | None
    args: str = ""


class NativeToolStreamAdapter(StreamAdapter):
    """Streams a LangChain chat model and rebuilds tool calls from chunks.

    A `tool_call_chunk` carrying an id or name opens a tool block; later
    chunks with the same index append partial JSON to it. A block is closed
    when another block opens, when text resumes, or when the stream ends. On
    close the buffer is parsed; a block whose JSON does not parse to an
    object is dropped without an event.
    """

    name = "native"

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        llm_factory: LLMFactory | None = None,
    ) -> None:
        self.config = config or ProviderConfig()
        self._llm_factory = llm_factory or self._create_llm

    async def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        pending: dict[Any, _PendingToolCall] = {}
        usage = Usage()
        try:
            llm = self._llm_factory(request)
            if request.tools:
                llm = llm.bind_tools([_as_openai_tool(tool) for tool in request.tools])

            async for chunk in llm.astream(_to_langchain_messages(request)):
                for call_chunk in getattr(chunk, "tool_call_chunks", None) or []:
                    for event in _accumulate(pending, call_chunk):
                        yield event

                text = _chunk_text(getattr(chunk, "content", ""))
                if text:
                    for event in _close_all(pending):
                        yield event
                    yield TextDelta(text)

                metadata = getattr(chunk, "usage_metadata", None)
                if metadata:
                    usage = usage + Usage(
                        input_tokens=int(metadata.get("input_tokens", 0) or 0),
                        output_tokens=int(metadata.get("output_tokens", 0) or 0),
                    )

            for event in _close_all(pending):
                yield event
        except Exception as exc:
            logger.warning("Native provider stream failed: %s", exc)
            yield Error(str(exc) or exc.__class__.__name__)
            return

        yield Done(usage)

    def _create_llm(self, request: StreamRequest) -> Any:
        from langchain.chat_models import init_chat_model

        return init_chat_model(
            request.model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            timeout=self.config.request_timeout_seconds,
            stream_usage=True,
        )


def _to_langchain_messages(request: StreamRequest) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    if request.system_prompt:
        messages.append(SystemMessage(content=request.system_prompt))
    for message in request.messages:
        if message.role == "assistant":
            messages.append(AIMessage(content=message.content))
        elif message.role == "system":
            messages.append(SystemMessage(content=message.content))
        else:
            messages.append(HumanMessage(content=message.content))
    return messages


def _as_openai_tool(tool: ToolDefinition) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
        },
    }


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text", "")))
    return "".join(parts)


def _accumulate(pending: dict[Any, _PendingToolCall], call_chunk: Any) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    index = call_chunk.get("index")
    call_id = call_chunk.get("id")
    name = call_chunk.get("name")
    key = index if index is not None else (call_id or next(reversed(pending), None))

    opens_block = bool(call_id or name) and (
        key not in pending or (call_id is not None and pending[key].id not in (None, call_id))
    )
    if opens_block:
        events.extend(_close_all(pending))
        pending[key] = _PendingToolCall(id=call_id, name=name)
    elif key not in pending:
        # Argument fragment for a block whose start was never seen.
        return events

    current = pending[key]
    current.id = current.id or call_id
    current.name = current.name or name
    current.args += call_chunk.get("args") or ""
    return events


def _close_all(pending: dict[Any, _PendingToolCall]) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    for call in pending.values():
        invocation = _finish(call)
        if invocation is not None:
            events.append(ToolUse(invocation))
    pending.clear()
    return events


def _finish(call: _PendingToolCall) -> ToolInvocation | None:
    if not call.name:
        return None
    try:
        parsed = json.loads(call.args or "{}")
    except ValueError:
        logger.debug("Dropping tool call %s with malformed arguments", call.name)
        return None
    if not isinstance(parsed, dict):
        return None
    return ToolInvocation(id=call.id or f"toolu_{uuid.uuid4().hex}", name=call.name, input=parsed)
