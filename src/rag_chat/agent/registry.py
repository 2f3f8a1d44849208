"""Agent and tool registry built on Pydantic v2 models."""

from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from rag_chat.types import ToolDefinition


class ExecutionType(str, Enum):
    MOCK = "mock"
    HTTP = "http"


class AgentProfile(BaseModel):
    """Saved agent configuration used to resolve a chat turn."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=1.0)
    system_prompt: str | None = None
    is_default: bool = False


class ToolConfig(BaseModel):
    """Declarative tool configuration owned by an agent."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent_id: str
    name: str = Field(min_length=1)
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    is_enabled: bool = True
    execution_type: ExecutionType = ExecutionType.MOCK
    http_url: str | None = None
    http_method: str = "GET"
    http_headers: dict[str, str] = Field(default_factory=dict)
    mock_response: str | None = None

    @model_validator(mode="after")
    def _check_execution_fields(self) -> "ToolConfig":
        if self.execution_type is ExecutionType.HTTP:
            if not self.http_url:
                raise ValueError("http tools require http_url")
            if self.mock_response is not None:
                raise ValueError("http tools must not define mock_response")
        elif self.http_url:
            raise ValueError("mock tools must not define http_url")
        self.http_method = self.http_method.upper()
        return self

    def as_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )


class AgentRegistry:
    """In-memory agent and tool store.

    Tools are unique per `(agent_id, name)`. `list_tools` only returns enabled
    tools since that is what is offered to the model; `get_tool` resolves by
    name regardless of the enabled flag.
    """

    def __init__(self) -> None:
        self._agents: dict[str, AgentProfile] = {}
        self._tools: dict[tuple[str, str], ToolConfig] = {}
        self._lock = asyncio.Lock()

    async def add_agent(self, agent: AgentProfile) -> AgentProfile:
        async with self._lock:
            if agent.is_default:
                for existing in self._agents.values():
                    existing.is_default = False
            self._agents[agent.id] = agent
        return agent

    async def register(self, tool: ToolConfig) -> ToolConfig:
        key = (tool.agent_id, tool.name)
        async with self._lock:
            if key in self._tools:
                raise ValueError(f"Tool already registered for agent {tool.agent_id}: {tool.name}")
            self._tools[key] = tool
        return tool

    async def get_agent(self, agent_id: str) -> AgentProfile | None:
        return self._agents.get(agent_id)

    async def get_default_agent(self) -> AgentProfile | None:
        return next((agent for agent in self._agents.values() if agent.is_default), None)

    async def list_tools(self, agent_id: str) -> list[ToolConfig]:
        return [
            tool
            for (owner, _), tool in self._tools.items()
            if owner == agent_id and tool.is_enabled
        ]

    async def get_tool(self, agent_id: str, name: str) -> ToolConfig | None:
        return self._tools.get((agent_id, name))
