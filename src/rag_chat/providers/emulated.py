"""Adapter for OpenAI-compatible backends without reliable tool calling."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx

from rag_chat.config import ProviderConfig
from rag_chat.http import http_client
from rag_chat.providers.base import StreamAdapter
from rag_chat.providers.text_tools import StreamingTextCleaner, build_tool_prompt, parse_tool_call
from rag_chat.types import (
    Done,
    Error,
    StreamEvent,
    StreamRequest,
    TextDelta,
    ToolInvocation,
    ToolUse,
    Usage,
)

logger = logging.getLogger(__name__)


class EmulatedToolStreamAdapter(StreamAdapter):
    """Streams `/chat/completions` SSE and emulates tools in the text channel.

    Tools are described in the system prompt. Visible text is whatever
    `StreamingTextCleaner` has settled, so tool-call blocks and stock
    "one moment" chatter never reach the client. At end of stream (the
    `[DONE]` sentinel or the connection closing) the whole reply is searched
    for a tool call, the remaining cleaned text is flushed, and `Done` carries
    the backend's token counts when reported, otherwise the number of content
    deltas as an approximate output count.
    """

    name = "emulated"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.openai_api_base:
            raise ValueError("openai_api_base is required for EmulatedToolStreamAdapter")
        self.config = config
        self.url = f"{config.openai_api_base.rstrip('/')}/chat/completions"
        self._client = client

    async def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        cleaner = StreamingTextCleaner()
        reported: Usage | None = None
        delta_count = 0
        try:
            async with http_client(self._client, timeout=self.config.request_timeout_seconds) as client:
                async with client.stream(
                    "POST",
                    self.url,
                    headers={"Authorization": f"Bearer {self.config.openai_api_key}"},
                    json=self._payload(request),
                ) as response:
                    if response.is_error:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        yield Error(body or f"HTTP {response.status_code}: {response.reason_phrase}")
                        return

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            payload = json.loads(data)
                        except ValueError:
                            logger.debug("Skipping non-JSON stream line: %s", data)
                            continue

                        text = _extract_delta(payload)
                        if text:
                            delta_count += 1
                            revealed = cleaner.feed(text)
                            if revealed:
                                yield TextDelta(revealed)
                        usage = payload.get("usage") if isinstance(payload, dict) else None
                        if isinstance(usage, dict):
                            reported = Usage(
                                input_tokens=int(usage.get("prompt_tokens") or 0),
                                output_tokens=int(usage.get("completion_tokens") or 0),
                            )
        except Exception as exc:
            logger.warning("Emulated provider stream failed: %s", exc)
            yield Error(str(exc) or exc.__class__.__name__)
            return

        if cleaner.in_open_fence:
            logger.warning("Reply ended inside an unclosed tool-call fence; dropping it")
        call = parse_tool_call(cleaner.buffer)
        if call is not None:
            yield ToolUse(
                ToolInvocation(id=f"tool_{uuid.uuid4().hex}", name=call.tool, input=call.parameters)
            )
        remainder = cleaner.flush()
        if remainder:
            yield TextDelta(remainder)
        yield Done(reported or Usage(input_tokens=0, output_tokens=delta_count))

    def _payload(self, request: StreamRequest) -> dict[str, Any]:
        system = build_tool_prompt(request.system_prompt, request.tools or [])
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend({"role": m.role, "content": m.content} for m in request.messages)
        return {
            "model": self.config.openai_model or request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stream": True,
        }


def _extract_delta(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""
