"""RAG chat engine package."""

from .config import ChunkingConfig, RetrievalConfig, Settings

__all__ = ["ChunkingConfig", "RetrievalConfig", "Settings"]
