"""In-band tool calling helpers for backends without native tool support.

The model is told to answer with a single fenced JSON block
`{"tool": name, "parameters": {...}}` when it wants a tool. While the reply
streams in, `StreamingTextCleaner` decides which parts are safe to show.

The buffer is cut left to right into units: a possible tool-call fence (held
from the opening to the closing triple backtick), a bare `{"tool": ...}`
object, or a prose sentence (ending at `.`/`!`/`?` followed by a space, or at
a newline). A unit is settled once its end has arrived and each settled unit
is cleaned on its own, so the cleaned text only ever grows by appending.
Fences and braces are classified as soon as their first characters rule a
tool call in or out; anything else is prose, and fences of any other kind are
regular code blocks that stream through unchanged.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from rag_chat.types import ToolDefinition

FENCE = "```"
_TOOL_FENCE_LANGS = frozenset({"", "json", "tool_call", "tool"})
_SENTENCE_END = ".!?"

_FENCED_BLOCK = re.compile(r"```(?:json|tool_call|tool)?\s*\n?([\s\S]*?)\n?```")
_BARE_TOOL_START = re.compile(r'\{\s*"tool"\s*:')
_TOOL_KEY = re.compile(r'^\s*\{[\s\S]*"tool"\s*:')
_TOOL_KEY_TOKEN = '"tool"'
_FENCE_HEAD = re.compile(r"(\w*)\s*")
_DECODER = json.JSONDecoder()

_META_PATTERNS = [
    re.compile(pattern, flags=re.IGNORECASE | re.MULTILINE)
    for pattern in (
        r"\b(?:please )?wait(?: for)? a moment[^.!?\n]*[.!?]?[ \t]*",
        r"\(I'll wait[^)\n]*\)[ \t]*",
        r"\bI'll wait[^.)\n]*[.)][ \t]*",
        r"\bone moment[^.!?\n]*[.!?]?[ \t]*",
        r"\bplease wait[^.!?\n]*[.!?]?[ \t]*",
        r"\blet me (?:check|use|get|run|call|look up)\b[^.!?\n]*[.!?]?[ \t]*",
        r"\bI(?:'ll| will| am going to) (?:use|run|execute|call)\b[^.!?\n]*\btool\b[^.!?\n]*[.!?]?[ \t]*",
        r"\busing the \w+ tool\b[^.:\n]*[:.]?[ \t]*",
        r"\brunning\b[^.\n]*\btool\b[^.\n]*\.\.\.[ \t]*",
        r"^[ \t]*tool call:?[ \t]*$\n?",
        r"\([^)]*\bwait\b[^)]*\bresult\b[^)]*\)[ \t]*",
        r"\([^)]*before responding[^)]*\)[ \t]*",
    )
]


@dataclass(slots=True)
class ParsedToolCall:
    tool: str
    parameters: dict[str, Any]


def build_tool_prompt(base_prompt: str | None, tools: list[ToolDefinition]) -> str:
    """Append tool descriptions and the calling convention to a system prompt."""

    if not tools:
        return base_prompt or ""

    descriptions: list[str] = []
    for tool in tools:
        properties = tool.input_schema.get("properties") or {}
        params = "\n".join(
            f"  - {name} ({schema.get('type', 'string')}): {schema.get('description', '')}"
            for name, schema in properties.items()
            if isinstance(schema, dict)
        )
        descriptions.append(f"{tool.name}: {tool.description}\nParameters:\n{params}")

    tool_prompt = (
        "You have tools available. To use a tool, output ONLY a JSON code block like this:\n"
        "```json\n"
        '{"tool": "tool_name", "parameters": {"param": "value"}}\n'
        "```\n\n"
        "Do not explain or announce tool usage. Just output the JSON block, then after "
        "receiving the result, respond naturally.\n\n"
        "Available tools:\n" + "\n\n".join(descriptions)
    )
    return f"{base_prompt}\n\n{tool_prompt}" if base_prompt else tool_prompt


def parse_tool_call(text: str) -> ParsedToolCall | None:
    """Find a tool call in a full reply: fenced JSON first, then a bare object."""

    for match in _FENCED_BLOCK.finditer(text):
        try:
            candidate = json.loads(match.group(1).strip())
        except ValueError:
            continue
        parsed = _as_tool_call(candidate)
        if parsed is not None:
            return parsed

    for match in _BARE_TOOL_START.finditer(text):
        try:
            candidate, _ = _DECODER.raw_decode(text, match.start())
        except ValueError:
            continue
        parsed = _as_tool_call(candidate)
        if parsed is not None:
            return parsed
    return None


class StreamingTextCleaner:
    """Incremental, append-only cleaner over a growing reply buffer."""

    def __init__(self) -> None:
        self._buffer = ""
        self._settled = 0
        self._in_code = False
        self._flushed = False

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def in_open_fence(self) -> bool:
        """True while a possible tool-call fence is open and held back."""
        return not self._in_code and self._buffer.startswith(FENCE, self._settled)

    def feed(self, text: str) -> str:
        """Append streamed text and return newly revealed cleaned text."""

        if self._flushed:
            raise RuntimeError("cleaner already flushed")
        self._buffer += text
        revealed: list[str] = []
        while True:
            unit = _next_unit(self._buffer, self._settled, in_code=self._in_code)
            if unit is None:
                break
            kind, end = unit
            if kind == "code_open":
                self._in_code = True
            elif kind == "code_close":
                self._in_code = False
            cleaned = _clean_unit(kind, self._buffer[self._settled : end])
            self._settled = end
            if cleaned:
                revealed.append(cleaned)
        return "".join(revealed)

    def flush(self) -> str:
        """Settle whatever is left at end of stream and return its cleaned text."""

        if self._flushed:
            return ""
        self._flushed = True
        tail = self._buffer[self._settled :]
        self._settled = len(self._buffer)
        if not tail or self._in_code:
            return tail
        if tail.startswith(FENCE):
            return "" if _is_tool_fence(tail, closed=False) else tail
        if _BARE_TOOL_START.match(tail):
            return ""
        return _strip_meta(tail)


def _next_unit(text: str, start: int, *, in_code: bool = False) -> tuple[str, int] | None:
    """Return `(kind, end)` of the unit starting at `start` if it has closed."""

    if in_code:
        return _next_code_unit(text, start)
    if text.startswith(FENCE, start):
        if _fence_state(text, start) == "code":
            return "code_open", start + len(FENCE)
        close = text.find(FENCE, start + len(FENCE))
        return None if close == -1 else ("fence", close + len(FENCE))
    if text.startswith("{", start):
        state = _brace_state(text, start)
        if state == "pending":
            return None
        if state == "tool":
            end = _match_brace(text, start)
            return None if end == -1 else ("object", end)

    length = len(text)
    i = start
    while i < length:
        if i > start and (
            text.startswith(FENCE, i) or (text[i] == "{" and _brace_state(text, i) != "prose")
        ):
            return "prose", i
        char = text[i]
        if char == "\n":
            return "prose", i + 1
        if char in _SENTENCE_END and i + 1 < length and text[i + 1] in " \t":
            return "prose", i + 2
        i += 1
    return None


def _next_code_unit(text: str, start: int) -> tuple[str, int] | None:
    # Inside a regular code block everything streams as-is up to the closing
    # fence; a trailing run of backticks may still become that fence.
    if text.startswith(FENCE, start):
        return "code_close", start + len(FENCE)
    close = text.find(FENCE, start)
    if close != -1:
        return "code", close
    end = len(text.rstrip("`"))
    return ("code", end) if end > start else None


def _fence_state(text: str, start: int) -> str:
    """Classify an opening fence as "tool", "pending" (undecided) or "code"."""

    head = _FENCE_HEAD.match(text, start + len(FENCE))
    lang = head.group(1).lower()
    body_start = head.end()
    if body_start == len(text):
        if any(candidate.startswith(lang) for candidate in _TOOL_FENCE_LANGS):
            return "pending"
        return "code"
    if lang not in _TOOL_FENCE_LANGS or text[body_start] != "{":
        return "code"
    state = _brace_state(text, body_start)
    return "code" if state == "prose" else state


def _brace_state(text: str, start: int) -> str:
    """Classify a `{` as a bare tool object, "pending" (undecided) or "prose"."""

    if _BARE_TOOL_START.match(text, start):
        return "tool"
    rest = text[start + 1 :].lstrip()
    if len(rest) < len(_TOOL_KEY_TOKEN):
        return "pending" if _TOOL_KEY_TOKEN.startswith(rest) else "prose"
    if not rest.startswith(_TOOL_KEY_TOKEN):
        return "prose"
    return "pending" if not rest[len(_TOOL_KEY_TOKEN) :].strip() else "prose"


def _match_brace(text: str, start: int) -> int:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def _clean_unit(kind: str, text: str) -> str:
    if kind == "fence":
        return "" if _is_tool_fence(text, closed=True) else text
    if kind == "object":
        return "" if _BARE_TOOL_START.match(text) else text
    if kind == "prose":
        return _strip_meta(text)
    return text


def _is_tool_fence(text: str, *, closed: bool) -> bool:
    inner = text[len(FENCE) :]
    if closed:
        inner = inner[: -len(FENCE)]
    head = _FENCE_HEAD.match(inner)
    if head.group(1).lower() not in _TOOL_FENCE_LANGS:
        return False
    body = inner[head.end() :]
    if not closed:
        return body == "" or body.startswith("{")
    return bool(_TOOL_KEY.match(body))


def _strip_meta(text: str) -> str:
    for pattern in _META_PATTERNS:
        text = pattern.sub("", text)
    return text


def _as_tool_call(candidate: Any) -> ParsedToolCall | None:
    if not isinstance(candidate, dict):
        return None
    tool = candidate.get("tool")
    parameters = candidate.get("parameters")
    if not isinstance(tool, str) or not tool or not isinstance(parameters, dict):
        return None
    return ParsedToolCall(tool=tool, parameters=parameters)
