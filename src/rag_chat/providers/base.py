"""Streaming adapter interface shared by all LLM backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from rag_chat.types import StreamEvent, StreamRequest


class StreamAdapter(ABC):
    """Normalizes one backend's streaming protocol into `StreamEvent`s.

    `stream` is an async generator yielding any number of `TextDelta` and
    `ToolUse` events followed by exactly one `Done` or `Error`. Network and
    status failures become `Error`; they are never raised. Closing the
    generator early (client gone) closes the upstream connection.
    """

    name = "adapter"

    @abstractmethod
    def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """Stream one model reply."""
