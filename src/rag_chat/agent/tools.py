"""Tool dispatch for model-issued tool invocations."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from rag_chat.agent.registry import AgentRegistry, ExecutionType, ToolConfig
from rag_chat.background import BackgroundTasks
from rag_chat.config import DispatcherConfig
from rag_chat.http import http_client
from rag_chat.obs.tracing import Timer
from rag_chat.types import ToolExecution, ToolInvocation

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


class ToolExecutionLog(Protocol):
    async def record(self, entry: ToolExecution) -> None:
        """Persist one execution outcome."""


class ToolDispatcher:
    """Executes a tool invocation against the agent's stored tool config.

    `execute` never raises for tool problems: unknown tools, HTTP failures and
    timeouts come back as a JSON `{"error": ...}` payload. Each call is timed
    and its outcome written to the execution log in the background.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        execution_log: ToolExecutionLog,
        config: DispatcherConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        background: BackgroundTasks | None = None,
    ) -> None:
        self.registry = registry
        self.execution_log = execution_log
        self.config = config or DispatcherConfig()
        self._client = client
        self.background = background or BackgroundTasks("tool-log")

    async def execute(self, invocation: ToolInvocation, agent_id: str) -> str:
        tool = await self.registry.get_tool(agent_id, invocation.name)
        if tool is None:
            message = f"Unknown tool: {invocation.name}"
            logger.info("Tool %s not found for agent %s", invocation.name, agent_id)
            self._log(
                ToolExecution(
                    agent_id=agent_id,
                    tool_id=None,
                    tool_name=invocation.name,
                    success=False,
                    error_message=message,
                    duration_ms=0.0,
                )
            )
            return json.dumps({"error": message})

        error_message: str | None = None
        with Timer() as timer:
            try:
                result = await self._run(tool, invocation.input)
                error_message = _payload_error(result)
            except Exception as exc:
                error_message = str(exc) or exc.__class__.__name__
                result = json.dumps({"error": error_message})

        success = error_message is None
        logger.info(
            "Tool %s executed for agent %s: success=%s duration_ms=%.1f",
            tool.name,
            agent_id,
            success,
            timer.elapsed_ms,
        )
        self._log(
            ToolExecution(
                agent_id=agent_id,
                tool_id=tool.id,
                tool_name=tool.name,
                success=success,
                error_message=error_message,
                duration_ms=timer.elapsed_ms,
            )
        )
        return result

    async def drain(self) -> None:
        await self.background.drain()

    async def _run(self, tool: ToolConfig, params: dict[str, Any]) -> str:
        if tool.execution_type is ExecutionType.MOCK:
            if tool.mock_response is None:
                return json.dumps({"result": "Mock response not configured"})
            return substitute(tool.mock_response, params)
        if tool.execution_type is ExecutionType.HTTP:
            return await self._run_http(tool, params)
        return json.dumps({"error": f"Unknown execution type: {tool.execution_type}"})

    async def _run_http(self, tool: ToolConfig, params: dict[str, Any]) -> str:
        if not tool.http_url:
            return json.dumps({"error": "HTTP URL not configured"})

        url = substitute(tool.http_url, params, encode=True)
        headers = {"Content-Type": "application/json", **tool.http_headers}
        body = json.dumps(params) if tool.http_method in BODY_METHODS else None
        try:
            async with http_client(self._client, timeout=self.config.http_timeout_seconds) as client:
                response = await asyncio.wait_for(
                    client.request(tool.http_method, url, headers=headers, content=body),
                    timeout=self.config.http_timeout_seconds,
                )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            return json.dumps(
                {"error": f"HTTP request timed out after {self.config.http_timeout_seconds:g}s"}
            )
        except httpx.HTTPError as exc:
            return json.dumps({"error": f"HTTP request failed: {exc}"})

        if response.is_error:
            return json.dumps({"error": f"HTTP {response.status_code}: {response.reason_phrase}"})
        try:
            return json.dumps(response.json())
        except ValueError:
            return json.dumps({"result": response.text})

    def _log(self, entry: ToolExecution) -> None:
        self.background.spawn(self.execution_log.record(entry), label=f"log {entry.tool_name}")


def substitute(template: str, params: dict[str, Any], *, encode: bool = False) -> str:
    """Replace `${name}` tokens with input values; unknown names are left as-is."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in params:
            return match.group(0)
        value = _stringify(params[key])
        return quote(value, safe="!*'()") if encode else value

    return _PLACEHOLDER.sub(_replace, template)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _payload_error(result: str) -> str | None:
    try:
        parsed = json.loads(result)
    except ValueError:
        return None
    if isinstance(parsed, dict) and parsed.get("error"):
        error = parsed["error"]
        return error if isinstance(error, str) else json.dumps(error)
    return None
