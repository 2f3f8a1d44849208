"""In-memory conversation and security-settings collaborators."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecuritySettings(BaseModel):
    """Per-agent admission settings."""

    agent_id: str
    message_limit: int = Field(default=100, ge=1)
    message_limit_window: int = Field(default=60, ge=1)
    allowed_domains: list[str] = Field(default_factory=list)


@dataclass(slots=True)
class StoredMessage:
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class Conversation:
    id: str
    agent_id: str
    title: str
    country: str | None = None
    messages: list[StoredMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


class InMemoryConversationStore:
    """Conversation persistence collaborator."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        agent_id: str,
        title: str,
        *,
        country: str | None = None,
        conversation_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            id=conversation_id or str(uuid.uuid4()),
            agent_id=agent_id,
            title=title,
            country=country,
        )
        async with self._lock:
            self._conversations[conversation.id] = conversation
        return conversation

    async def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        message_id: str | None = None,
    ) -> StoredMessage:
        message = StoredMessage(
            id=message_id or str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
        )
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise KeyError(f"Conversation not found: {conversation_id}")
            conversation.messages.append(message)
        return message

    async def touch(self, conversation_id: str) -> None:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                conversation.updated_at = _utcnow()


class InMemorySecuritySettingsStore:
    def __init__(self) -> None:
        self._settings: dict[str, SecuritySettings] = {}

    async def get(self, agent_id: str) -> SecuritySettings | None:
        return self._settings.get(agent_id)

    async def put(self, settings: SecuritySettings) -> SecuritySettings:
        self._settings[settings.agent_id] = settings
        return settings
