"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(slots=True)
class ChatMessage:
    """One message of the conversation sent to a provider."""

    role: str
    content: str


@dataclass(slots=True)
class ToolDefinition:
    """A tool as offered to the model: name, description and JSON schema."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(slots=True)
class StreamRequest:
    """Provider-agnostic input for one streaming call."""

    model: str
    max_tokens: int
    temperature: float
    system_prompt: str
    messages: list[ChatMessage]
    tools: list[ToolDefinition] | None = None


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(slots=True)
class ToolInvocation:
    """A completed tool call signalled by the backend."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass(slots=True)
class TextDelta:
    text: str


@dataclass(slots=True)
class ToolUse:
    invocation: ToolInvocation


@dataclass(slots=True)
class Done:
    usage: Usage = field(default_factory=Usage)


@dataclass(slots=True)
class Error:
    message: str


StreamEvent = Union[TextDelta, ToolUse, Done, Error]


@dataclass(slots=True)
class RetrievedPassage:
    """A chunk returned by similarity search with its cosine score."""

    id: str
    content: str
    score: float


@dataclass(slots=True)
class ToolExecution:
    """Log entry for one tool dispatch, successful or not."""

    agent_id: str
    tool_id: str | None
    tool_name: str
    success: bool
    error_message: str | None
    duration_ms: float
