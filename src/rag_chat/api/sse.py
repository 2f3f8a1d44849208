"""Server-Sent-Events framing for chat turns."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from rag_chat.agent.orchestrator import (
    ToolDispatched,
    TurnCompleted,
    TurnEvent,
    TurnFailed,
    TurnStarted,
)
from rag_chat.types import TextDelta

logger = logging.getLogger(__name__)

MEDIA_TYPE = "text/event-stream"


def format_sse(event: str, payload: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def parse_sse(body: str) -> list[tuple[str, dict[str, Any]]]:
    """Split a complete SSE body back into `(event, payload)` pairs."""

    frames: list[tuple[str, dict[str, Any]]] = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        event = "message"
        data_lines: list[str] = []
        for line in block.splitlines():
            if line.startswith("event:"):
                event = line[6:].strip()
            elif line.startswith("data:"):
                data_lines.append(line[5:].strip())
        frames.append((event, json.loads("\n".join(data_lines)) if data_lines else {}))
    return frames


class SSEEmitter:
    """Maps turn events onto the fixed frame grammar.

    Success: `message_start, content_block_start, content_block_delta*,
    tool_use*, content_block_stop, message_stop`. Failure ends with a single
    `error` frame in place of the stop frames. Frames are produced one at a
    time as events arrive.
    """

    def __init__(self) -> None:
        self._started = False
        self._finished = False

    def frames_for(self, event: TurnEvent) -> list[str]:
        if self._finished:
            raise RuntimeError("turn already finished")

        if isinstance(event, TurnStarted):
            if self._started:
                raise RuntimeError("turn already started")
            self._started = True
            return [
                format_sse(
                    "message_start",
                    {
                        "type": "message_start",
                        "message": {"id": event.message_id, "role": "assistant"},
                    },
                ),
                format_sse(
                    "content_block_start",
                    {
                        "type": "content_block_start",
                        "index": 0,
                        "content_block": {"type": "text", "text": ""},
                    },
                ),
            ]

        if not self._started:
            raise RuntimeError(f"{type(event).__name__} before turn start")

        if isinstance(event, TextDelta):
            return [
                format_sse(
                    "content_block_delta",
                    {
                        "type": "content_block_delta",
                        "index": 0,
                        "delta": {"type": "text_delta", "text": event.text},
                    },
                )
            ]
        if isinstance(event, ToolDispatched):
            return [
                format_sse(
                    "tool_use",
                    {
                        "type": "tool_use",
                        "tool": event.name,
                        "input": event.input,
                        "result": _decode_result(event.result),
                    },
                )
            ]
        if isinstance(event, TurnCompleted):
            self._finished = True
            return [
                format_sse("content_block_stop", {"type": "content_block_stop", "index": 0}),
                format_sse(
                    "message_stop",
                    {"type": "message_stop", "conversationId": event.conversation_id},
                ),
            ]
        if isinstance(event, TurnFailed):
            self._finished = True
            return [format_sse("error", {"type": "error", "error": {"message": event.message}})]
        raise TypeError(f"Unsupported turn event: {event!r}")

    async def stream(self, events: AsyncIterator[TurnEvent]) -> AsyncIterator[str]:
        async with aclosing(events) as turn_events:
            async for event in turn_events:
                for frame in self.frames_for(event):
                    yield frame


def _decode_result(result: str) -> Any:
    try:
        return json.loads(result)
    except ValueError:
        return result
