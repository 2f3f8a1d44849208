"""Chat turn orchestration: admission, retrieval, streaming and tool round-trip."""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from rag_chat.admission.domains import is_domain_allowed
from rag_chat.admission.rate_limiter import SlidingWindowRateLimiter
from rag_chat.agent.registry import AgentRegistry
from rag_chat.agent.tools import ToolDispatcher
from rag_chat.background import BackgroundTasks
from rag_chat.config import ChatConfig, ProviderConfig
from rag_chat.errors import DomainBlocked, InvalidChatRequest, RateLimited, UpstreamError
from rag_chat.obs.tracing import InMemoryUsageTracker
from rag_chat.providers.base import StreamAdapter
from rag_chat.retrieval.retriever import ContextRetriever
from rag_chat.store.memory import InMemoryConversationStore, InMemorySecuritySettingsStore
from rag_chat.types import (
    ChatMessage,
    Done,
    Error,
    StreamRequest,
    TextDelta,
    ToolDefinition,
    ToolInvocation,
    ToolUse,
    Usage,
)

logger = logging.getLogger(__name__)

TOOL_FOLLOW_UP = (
    "Tool result: {result}\n\n"
    "Now respond naturally to the user based on this result. "
    "Do not mention that you used a tool."
)


class TurnState(str, Enum):
    ADMITTED = "admitted"
    RETRIEVING = "retrieving"
    STREAMING_1 = "streaming_1"
    TOOL_PENDING = "tool_pending"
    STREAMING_2 = "streaming_2"
    FINALIZING = "finalizing"
    CLOSED = "closed"


@dataclass(slots=True)
class ChatTurnRequest:
    """Inbound chat request plus the caller facts admission needs."""

    messages: list[ChatMessage]
    agent_id: str
    conversation_id: str | None = None
    custom_model: str | None = None
    custom_temp: float | None = None
    custom_prompt: str | None = None
    origin: str | None = None
    caller_key: str = "unknown"
    country: str | None = None
    user_id: str | None = None


@dataclass(slots=True)
class PreparedTurn:
    """A turn that passed admission, with its prompt and tools resolved."""

    agent_id: str
    conversation_id: str
    message_id: str
    model: str
    temperature: float
    max_tokens: int
    system_prompt: str
    messages: list[ChatMessage]
    tools: list[ToolDefinition]
    context_count: int = 0
    user_id: str | None = None
    state: TurnState = TurnState.ADMITTED
    started_at: float = field(default_factory=time.perf_counter)


@dataclass(slots=True)
class TurnStarted:
    message_id: str
    conversation_id: str


@dataclass(slots=True)
class ToolDispatched:
    name: str
    input: dict[str, Any]
    result: str


@dataclass(slots=True)
class TurnCompleted:
    conversation_id: str
    usage: Usage


@dataclass(slots=True)
class TurnFailed:
    message: str


TurnEvent = Union[TurnStarted, TextDelta, ToolDispatched, TurnCompleted, TurnFailed]


def build_system_prompt(base_prompt: str, passages: list[str], template: str) -> str:
    if not passages:
        return base_prompt
    return template.format(base=base_prompt, context="\n\n".join(passages))


class ChatOrchestrator:
    """Drives one chat turn from admission to the terminal event.

    `prepare` runs everything that can reject a request (validation, domain
    allowlist, rate limit) and must be awaited before a response starts, so
    rejections surface as plain HTTP errors. `run` then yields turn events for
    the SSE emitter. At most one tool call is acted on per turn: the first
    `ToolUse` is dispatched once the first upstream stream has closed, and
    later ones are logged and ignored.
    """

    def __init__(
        self,
        *,
        adapter: StreamAdapter,
        retriever: ContextRetriever,
        registry: AgentRegistry,
        dispatcher: ToolDispatcher,
        conversations: InMemoryConversationStore,
        security: InMemorySecuritySettingsStore,
        rate_limiter: SlidingWindowRateLimiter,
        usage: InMemoryUsageTracker,
        provider_config: ProviderConfig | None = None,
        chat_config: ChatConfig | None = None,
        background: BackgroundTasks | None = None,
    ) -> None:
        self.adapter = adapter
        self.retriever = retriever
        self.registry = registry
        self.dispatcher = dispatcher
        self.conversations = conversations
        self.security = security
        self.rate_limiter = rate_limiter
        self.usage = usage
        self.provider_config = provider_config or ProviderConfig()
        self.chat_config = chat_config or ChatConfig()
        self.background = background or BackgroundTasks("finalize")

    async def prepare(self, request: ChatTurnRequest) -> PreparedTurn:
        last_user = _validate(request)
        await self._admit(request)

        model, temperature, base_prompt = await self._resolve_agent(request)
        turn = PreparedTurn(
            agent_id=request.agent_id,
            conversation_id=request.conversation_id or str(uuid.uuid4()),
            message_id=str(uuid.uuid4()),
            model=model,
            temperature=temperature,
            max_tokens=self.provider_config.default_max_tokens,
            system_prompt=base_prompt,
            messages=list(request.messages),
            tools=[tool.as_definition() for tool in await self.registry.list_tools(request.agent_id)],
            user_id=request.user_id,
        )

        self._enter(turn, TurnState.RETRIEVING)
        passages = await self._retrieve(last_user.content, request.agent_id)
        turn.context_count = len(passages)
        turn.system_prompt = build_system_prompt(
            base_prompt, passages, self.chat_config.context_template
        )

        await self._persist_user_message(turn, request, last_user)
        return turn

    async def run(self, turn: PreparedTurn) -> AsyncIterator[TurnEvent]:
        yield TurnStarted(message_id=turn.message_id, conversation_id=turn.conversation_id)

        usage = Usage()
        relayed: list[str] = []
        invocation: ToolInvocation | None = None
        tool_result = ""

        try:
            self._enter(turn, TurnState.STREAMING_1)
            first_pass = StreamRequest(
                model=turn.model,
                max_tokens=turn.max_tokens,
                temperature=turn.temperature,
                system_prompt=turn.system_prompt,
                messages=turn.messages,
                tools=turn.tools or None,
            )
            async with aclosing(self.adapter.stream(first_pass)) as events:
                async for event in events:
                    if isinstance(event, TextDelta):
                        if event.text:
                            relayed.append(event.text)
                            yield event
                    elif isinstance(event, ToolUse):
                        if invocation is None:
                            invocation = event.invocation
                        else:
                            logger.warning(
                                "Ignoring extra tool call %s in turn %s",
                                event.invocation.name,
                                turn.message_id,
                            )
                    elif isinstance(event, Done):
                        usage = usage + event.usage
                    elif isinstance(event, Error):
                        raise UpstreamError(event.message)

            if invocation is not None:
                self._enter(turn, TurnState.TOOL_PENDING)
                tool_result = await self._dispatch(invocation, turn.agent_id)
                yield ToolDispatched(
                    name=invocation.name, input=invocation.input, result=tool_result
                )

                self._enter(turn, TurnState.STREAMING_2)
                partial = "".join(relayed)
                second_pass = StreamRequest(
                    model=turn.model,
                    max_tokens=turn.max_tokens,
                    temperature=turn.temperature,
                    system_prompt=turn.system_prompt,
                    messages=[
                        *turn.messages,
                        ChatMessage(role="assistant", content=partial or f"Using {invocation.name}..."),
                        ChatMessage(role="user", content=TOOL_FOLLOW_UP.format(result=tool_result)),
                    ],
                )
                async with aclosing(self.adapter.stream(second_pass)) as events:
                    async for event in events:
                        if isinstance(event, TextDelta):
                            if event.text:
                                relayed.append(event.text)
                                yield event
                        elif isinstance(event, ToolUse):
                            logger.warning(
                                "Ignoring tool call %s in follow-up of turn %s",
                                event.invocation.name,
                                turn.message_id,
                            )
                        elif isinstance(event, Done):
                            usage = usage + event.usage
                        elif isinstance(event, Error):
                            raise UpstreamError(event.message)
        except UpstreamError as exc:
            logger.warning("Turn %s failed upstream: %s", turn.message_id, exc)
            self._enter(turn, TurnState.CLOSED)
            self._record_turn(turn, usage, invocation, succeeded=False)
            yield TurnFailed(message=str(exc))
            return

        self._enter(turn, TurnState.FINALIZING)
        self.background.spawn(
            self._finalize(turn, "".join(relayed), usage, invocation),
            label=f"turn {turn.message_id}",
        )
        self._enter(turn, TurnState.CLOSED)
        yield TurnCompleted(conversation_id=turn.conversation_id, usage=usage)

    async def drain(self) -> None:
        await self.background.drain()
        await self.dispatcher.drain()

    async def _admit(self, request: ChatTurnRequest) -> None:
        settings = await self.security.get(request.agent_id)
        if settings is None:
            return
        if not is_domain_allowed(request.origin, settings.allowed_domains):
            logger.info("Blocked origin %s for agent %s", request.origin, request.agent_id)
            raise DomainBlocked()
        decision = self.rate_limiter.check_and_record(
            request.agent_id,
            request.caller_key,
            settings.message_limit,
            settings.message_limit_window,
        )
        if not decision.allowed:
            logger.info("Rate limited %s for agent %s", request.caller_key, request.agent_id)
            raise RateLimited(settings.message_limit_window)

    async def _resolve_agent(self, request: ChatTurnRequest) -> tuple[str, float, str]:
        agent = await self.registry.get_agent(request.agent_id)
        if agent is None:
            agent = await self.registry.get_default_agent()

        model = request.custom_model or (agent.model if agent else None)
        if request.custom_temp is not None:
            temperature = request.custom_temp / 100
        elif agent is not None and agent.temperature is not None:
            temperature = agent.temperature
        else:
            temperature = self.provider_config.default_temperature
        prompt = request.custom_prompt or (agent.system_prompt if agent else None)
        return (
            model or self.provider_config.default_model,
            temperature,
            prompt or self.chat_config.default_system_prompt,
        )

    async def _retrieve(self, query: str, agent_id: str) -> list[str]:
        try:
            passages = await self.retriever.search(query, agent_id)
        except Exception as exc:
            logger.warning("Retrieval failed for agent %s, using base prompt: %s", agent_id, exc)
            return []
        return [passage.content for passage in passages]

    async def _persist_user_message(
        self, turn: PreparedTurn, request: ChatTurnRequest, last_user: ChatMessage
    ) -> None:
        try:
            conversation = await self.conversations.get(turn.conversation_id)
            if conversation is None:
                await self.conversations.create(
                    turn.agent_id,
                    last_user.content[: self.chat_config.title_max_length],
                    country=request.country,
                    conversation_id=turn.conversation_id,
                )
            await self.conversations.append_message(turn.conversation_id, "user", last_user.content)
        except Exception:
            logger.exception("Failed to persist user message for %s", turn.conversation_id)

    async def _dispatch(self, invocation: ToolInvocation, agent_id: str) -> str:
        try:
            return await self.dispatcher.execute(invocation, agent_id)
        except Exception as exc:
            logger.exception("Tool dispatch crashed for %s", invocation.name)
            return json.dumps({"error": str(exc) or exc.__class__.__name__})

    async def _finalize(
        self,
        turn: PreparedTurn,
        text: str,
        usage: Usage,
        invocation: ToolInvocation | None,
    ) -> None:
        try:
            await self.conversations.append_message(
                turn.conversation_id, "assistant", text, message_id=turn.message_id
            )
            await self.conversations.touch(turn.conversation_id)
        except Exception:
            logger.exception("Failed to persist assistant message %s", turn.message_id)

        if turn.user_id:
            try:
                await self.usage.track_message(
                    turn.user_id, {"conversation_id": turn.conversation_id, "model": turn.model}
                )
                if usage.input_tokens > 0 or usage.output_tokens > 0:
                    await self.usage.track_llm_cost(
                        turn.user_id,
                        model=turn.model,
                        input_tokens=usage.input_tokens,
                        output_tokens=usage.output_tokens,
                        conversation_id=turn.conversation_id,
                        agent_id=turn.agent_id,
                    )
            except Exception:
                logger.exception("Failed to track usage for %s", turn.user_id)

        self._record_turn(turn, usage, invocation, succeeded=True)

    def _record_turn(
        self,
        turn: PreparedTurn,
        usage: Usage,
        invocation: ToolInvocation | None,
        *,
        succeeded: bool,
    ) -> None:
        try:
            self.usage.record_turn(
                agent_id=turn.agent_id,
                conversation_id=turn.conversation_id,
                model=turn.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                latency_ms=(time.perf_counter() - turn.started_at) * 1000.0,
                tool_name=invocation.name if invocation else None,
                succeeded=succeeded,
            )
        except Exception:
            logger.exception("Failed to record turn %s", turn.message_id)

    @staticmethod
    def _enter(turn: PreparedTurn, state: TurnState) -> None:
        turn.state = state
        logger.debug("Turn %s: %s", turn.message_id, state.value)


def _validate(request: ChatTurnRequest) -> ChatMessage:
    if not request.messages:
        raise InvalidChatRequest("messages array required")
    if not request.agent_id:
        raise InvalidChatRequest("agentId required")
    last_user = next(
        (message for message in reversed(request.messages) if message.role == "user"), None
    )
    if last_user is None:
        raise InvalidChatRequest("at least one user message required")
    return last_user
