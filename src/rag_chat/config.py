"""Configuration models for the streaming chat engine."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, model_validator


class ChunkingConfig(BaseModel):
    """Configures character-window chunking with sentence-aware cuts."""

    max_chunk_size: int = Field(default=1000, ge=10)
    overlap: int = Field(default=200, ge=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkingConfig":
        # A boundary cut can land at half the window, so the overlap must stay
        # below that or the offset would stop advancing.
        if self.overlap * 2 >= self.max_chunk_size:
            raise ValueError("overlap must be less than half of max_chunk_size")
        return self


class EmbeddingConfig(BaseModel):
    """Selects and configures the embedding backend."""

    voyage_api_key: str | None = None
    voyage_model: str = "voyage-3"
    voyage_url: str = "https://api.voyageai.com/v1/embeddings"
    batch_size: int = Field(default=128, ge=1)
    self_hosted: bool = False
    local_base_url: str | None = None
    local_model: str = "mxbai-embed-large"
    timeout_seconds: float = Field(default=30.0, gt=0.0)

    @property
    def use_local(self) -> bool:
        return self.self_hosted and bool(self.local_base_url) and not self.voyage_api_key


class RetrievalConfig(BaseModel):
    """Configures the fan-out similarity search."""

    final_k: int = Field(default=5, ge=1)
    fanout_timeout_seconds: float = Field(default=10.0, gt=0.0)


class ProviderConfig(BaseModel):
    """Configures which streaming adapter is used and its defaults."""

    openai_api_base: str | None = None
    openai_api_key: str = ""
    openai_model: str | None = None
    default_model: str = "gpt-4o-mini"
    default_max_tokens: int = Field(default=4096, ge=1)
    default_temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    request_timeout_seconds: float = Field(default=120.0, gt=0.0)

    @property
    def mode(self) -> str:
        return "emulated" if self.openai_api_base else "native"


class DispatcherConfig(BaseModel):
    """Configures outbound tool execution."""

    http_timeout_seconds: float = Field(default=30.0, gt=0.0)


class RateLimitConfig(BaseModel):
    """Configures the background sweep of the rate-limit store."""

    sweep_interval_seconds: float = Field(default=300.0, gt=0.0)
    retention_seconds: float = Field(default=86400.0, gt=0.0)


class ChatConfig(BaseModel):
    """Configures prompt assembly for a chat turn."""

    default_system_prompt: str = "You are a helpful assistant."
    title_max_length: int = Field(default=100, ge=1)
    context_template: str = (
        "{base}\n\nUse the following context to answer questions:\n\n"
        "<context>\n{context}\n</context>\n\n"
        "Answer based on the context when relevant. If the context doesn't contain "
        "relevant information, answer from your general knowledge."
    )


class Settings(BaseModel):
    """Aggregated runtime settings."""

    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        api_base = os.getenv("OPENAI_API_BASE") or None
        return cls(
            embedding=EmbeddingConfig(
                voyage_api_key=os.getenv("VOYAGE_API_KEY") or None,
                self_hosted=os.getenv("SELF_HOSTED") == "true",
                local_base_url=api_base.replace("/v1", "") if api_base else "http://localhost:11434",
            ),
            provider=ProviderConfig(
                openai_api_base=api_base,
                openai_api_key=os.getenv("OPENAI_API_KEY", ""),
                openai_model=os.getenv("OPENAI_MODEL") or None,
                default_model=os.getenv("DEFAULT_MODEL", "gpt-4o-mini"),
            ),
            dispatcher=DispatcherConfig(
                http_timeout_seconds=float(os.getenv("TOOL_TIMEOUT_SECONDS", "30")),
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
