"""Selects the streaming adapter for the configured backend."""

from __future__ import annotations

import httpx

from rag_chat.config import ProviderConfig
from rag_chat.providers.base import StreamAdapter
from rag_chat.providers.emulated import EmulatedToolStreamAdapter
from rag_chat.providers.native import NativeToolStreamAdapter


def create_adapter(
    config: ProviderConfig, *, client: httpx.AsyncClient | None = None
) -> StreamAdapter:
    """OpenAI-compatible base URL configured -> emulated tools, else native."""

    if config.mode == "emulated":
        return EmulatedToolStreamAdapter(config, client=client)
    return NativeToolStreamAdapter(config)
