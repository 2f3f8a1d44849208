"""FastAPI entrypoint for chat streaming, knowledge sources and metrics."""

from __future__ import annotations

import argparse
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rag_chat.admission.domains import caller_key, request_origin
from rag_chat.admission.rate_limiter import SlidingWindowRateLimiter
from rag_chat.agent.orchestrator import ChatOrchestrator, ChatTurnRequest
from rag_chat.agent.registry import AgentRegistry
from rag_chat.agent.tools import ToolDispatcher
from rag_chat.api.sse import MEDIA_TYPE, SSEEmitter
from rag_chat.config import Settings
from rag_chat.errors import AdmissionError
from rag_chat.ingest.chunker import TextChunker
from rag_chat.ingest.embedder import Embedder, create_embedder
from rag_chat.ingest.pipeline import IngestPipeline
from rag_chat.obs.log_setup import setup_logging
from rag_chat.obs.tracing import InMemoryToolExecutionLog, InMemoryUsageTracker
from rag_chat.providers.base import StreamAdapter
from rag_chat.providers.factory import create_adapter
from rag_chat.retrieval.retriever import ContextRetriever
from rag_chat.retrieval.vector_store import InMemoryChunkStore, SourceType, default_chunk_stores
from rag_chat.store.memory import InMemoryConversationStore, InMemorySecuritySettingsStore
from rag_chat.types import ChatMessage

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageIn(_CamelModel):
    role: str
    content: str


class ChatRequestBody(_CamelModel):
    messages: list[MessageIn] = Field(default_factory=list)
    agent_id: str | None = None
    conversation_id: str | None = None
    custom_model: str | None = None
    custom_temp: float | None = Field(default=None, ge=0, le=100)
    custom_prompt: str | None = None


class SourceIngestRequest(_CamelModel):
    agent_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    source_id: str | None = None
    status: str | None = None


class SourceSearchRequest(_CamelModel):
    agent_id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=20)


@dataclass(slots=True)
class ChatServices:
    settings: Settings
    stores: dict[SourceType, InMemoryChunkStore]
    embedder: Embedder
    retriever: ContextRetriever
    ingest: IngestPipeline
    registry: AgentRegistry
    tool_log: InMemoryToolExecutionLog
    dispatcher: ToolDispatcher
    conversations: InMemoryConversationStore
    security: InMemorySecuritySettingsStore
    rate_limiter: SlidingWindowRateLimiter
    usage: InMemoryUsageTracker
    adapter: StreamAdapter
    orchestrator: ChatOrchestrator


def build_services(
    settings: Settings | None = None,
    *,
    adapter: StreamAdapter | None = None,
    embedder: Embedder | None = None,
    client: httpx.AsyncClient | None = None,
) -> ChatServices:
    """Wire the engine; `adapter`, `embedder` and `client` are test seams."""

    settings = settings or Settings.from_env()
    stores = default_chunk_stores()
    embedder = embedder or create_embedder(settings.embedding, client=client)
    retriever = ContextRetriever(stores, embedder, settings.retrieval)
    registry = AgentRegistry()
    tool_log = InMemoryToolExecutionLog()
    dispatcher = ToolDispatcher(registry, tool_log, settings.dispatcher, client=client)
    conversations = InMemoryConversationStore()
    security = InMemorySecuritySettingsStore()
    rate_limiter = SlidingWindowRateLimiter(settings.rate_limit)
    usage = InMemoryUsageTracker()
    adapter = adapter or create_adapter(settings.provider, client=client)
    orchestrator = ChatOrchestrator(
        adapter=adapter,
        retriever=retriever,
        registry=registry,
        dispatcher=dispatcher,
        conversations=conversations,
        security=security,
        rate_limiter=rate_limiter,
        usage=usage,
        provider_config=settings.provider,
        chat_config=settings.chat,
    )
    return ChatServices(
        settings=settings,
        stores=stores,
        embedder=embedder,
        retriever=retriever,
        ingest=IngestPipeline(TextChunker(settings.chunking), embedder, stores),
        registry=registry,
        tool_log=tool_log,
        dispatcher=dispatcher,
        conversations=conversations,
        security=security,
        rate_limiter=rate_limiter,
        usage=usage,
        adapter=adapter,
        orchestrator=orchestrator,
    )


def create_app(services: ChatServices | None = None) -> FastAPI:
    services = services or build_services()
    setup_logging(services.settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services.rate_limiter.start()
        logger.info("Chat engine started with %s provider", services.adapter.name)
        try:
            yield
        finally:
            await services.orchestrator.drain()
            await services.rate_limiter.stop()

    app = FastAPI(title="RAG Chat Engine", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(AdmissionError)
    async def admission_error(request: Request, exc: AdmissionError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.message, "code": exc.code}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "invalid request")
        return JSONResponse(
            status_code=400,
            content={
                "error": f"{location}: {message}" if location else message,
                "code": "INVALID_REQUEST",
            },
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "provider_mode": services.adapter.name,
            "embedder": services.embedder.name,
            "rate_limit_keys": services.rate_limiter.tracked_keys(),
        }

    @app.post("/chat")
    async def chat(body: ChatRequestBody, request: Request) -> StreamingResponse:
        turn = await services.orchestrator.prepare(
            ChatTurnRequest(
                messages=[ChatMessage(role=m.role, content=m.content) for m in body.messages],
                agent_id=body.agent_id or "",
                conversation_id=body.conversation_id,
                custom_model=body.custom_model,
                custom_temp=body.custom_temp,
                custom_prompt=body.custom_prompt,
                origin=request_origin(request.headers),
                caller_key=caller_key(
                    request.headers, request.client.host if request.client else None
                ),
                country=request.headers.get("cf-ipcountry"),
                user_id=getattr(request.state, "user_id", None),
            )
        )
        return StreamingResponse(
            SSEEmitter().stream(services.orchestrator.run(turn)),
            media_type=MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/sources/search")
    async def source_search(body: SourceSearchRequest) -> dict[str, Any]:
        passages = await services.retriever.search(body.query, body.agent_id, body.top_k)
        return {
            "items": [
                {"id": passage.id, "score": passage.score, "content": passage.content}
                for passage in passages
            ]
        }

    @app.post("/sources/{source_type}")
    async def ingest_source(source_type: SourceType, body: SourceIngestRequest) -> dict[str, Any]:
        chunks = await services.ingest.ingest_text(
            body.agent_id,
            source_type,
            body.text,
            source_id=body.source_id,
            status=body.status,
        )
        return {
            "chunks_created": len(chunks),
            "chunk_ids": [chunk.chunk_id for chunk in chunks],
            "embedded": sum(1 for chunk in chunks if chunk.embedding),
        }

    @app.get("/metrics")
    async def metrics() -> dict[str, Any]:
        return {**services.usage.summary(), **services.tool_log.summary()}

    return app


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the streaming RAG chat engine.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=3001, help="Port to bind.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logger.info("Starting chat engine on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


app = create_app()


if __name__ == "__main__":
    main()
