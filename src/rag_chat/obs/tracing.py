"""Turn tracing, tool execution logs, and LLM cost accounting."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from rag_chat.types import ToolExecution

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """USD per million tokens."""

    input: float
    output: float


ANTHROPIC_PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-5-20251101": ModelPricing(5, 25),
    "claude-opus-4-5": ModelPricing(5, 25),
    "claude-sonnet-4-5-20250929": ModelPricing(3, 15),
    "claude-sonnet-4-5": ModelPricing(3, 15),
    "claude-haiku-4-5-20251001": ModelPricing(1, 5),
    "claude-haiku-4-5": ModelPricing(1, 5),
    "claude-sonnet-4-20250514": ModelPricing(3, 15),
    "claude-sonnet-4": ModelPricing(3, 15),
    "claude-opus-4-20250514": ModelPricing(15, 75),
    "claude-opus-4": ModelPricing(15, 75),
    "claude-3-5-sonnet-20241022": ModelPricing(3, 15),
    "claude-3-5-sonnet-latest": ModelPricing(3, 15),
    "claude-3-5-haiku-20241022": ModelPricing(1, 5),
    "claude-3-5-haiku-latest": ModelPricing(1, 5),
    "claude-3-opus-20240229": ModelPricing(15, 75),
    "claude-3-sonnet-20240229": ModelPricing(3, 15),
    "claude-3-haiku-20240307": ModelPricing(0.25, 1.25),
}

OPENAI_PRICING: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(2.5, 10),
    "gpt-4o-2024-11-20": ModelPricing(2.5, 10),
    "gpt-4o-mini": ModelPricing(0.15, 0.6),
    "gpt-4o-mini-2024-07-18": ModelPricing(0.15, 0.6),
    "gpt-4-turbo": ModelPricing(10, 30),
    "gpt-4-turbo-2024-04-09": ModelPricing(10, 30),
    "gpt-4": ModelPricing(30, 60),
    "gpt-4-0613": ModelPricing(30, 60),
    "gpt-3.5-turbo": ModelPricing(0.5, 1.5),
    "gpt-3.5-turbo-0125": ModelPricing(0.5, 1.5),
    "o1": ModelPricing(15, 60),
    "o1-2024-12-17": ModelPricing(15, 60),
    "o1-mini": ModelPricing(1.1, 4.4),
    "o1-mini-2024-09-12": ModelPricing(1.1, 4.4),
    "o3-mini": ModelPricing(1.1, 4.4),
    "o3-mini-2025-01-31": ModelPricing(1.1, 4.4),
}


def model_pricing(model: str) -> ModelPricing | None:
    # init_chat_model style "provider:model" names price like the bare model.
    name = model.split(":", 1)[-1]
    return ANTHROPIC_PRICING.get(name) or OPENAI_PRICING.get(name)


def calculate_llm_cost_cents(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost of one call in cents, kept to three decimals; unknown models cost 0."""

    pricing = model_pricing(model)
    if pricing is None:
        logger.warning("Unknown model pricing for: %s", model)
        return 0.0
    dollars = (input_tokens / 1_000_000) * pricing.input + (
        output_tokens / 1_000_000
    ) * pricing.output
    return round(dollars * 100, 3)


@dataclass(slots=True)
class TurnRecord:
    trace_id: str
    timestamp_utc: str
    agent_id: str
    conversation_id: str
    model: str
    input_tokens: int
    output_tokens: int
    estimated_cost_cents: float
    latency_ms: float
    tool_name: str | None = None
    succeeded: bool = True


@dataclass(slots=True)
class UsageEvent:
    kind: str
    user_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemoryUsageTracker:
    """Usage/billing collaborator plus turn traces for the metrics endpoint.

    `track_message` and `track_llm_cost` stand in for an external billing
    service; `record_turn` keeps one trace per finished turn.
    """

    def __init__(self) -> None:
        self.events: list[UsageEvent] = []
        self._turns: dict[str, TurnRecord] = {}
        self._lock = asyncio.Lock()

    async def track_message(self, user_id: str, metadata: dict[str, Any] | None = None) -> None:
        async with self._lock:
            self.events.append(UsageEvent(kind="message", user_id=user_id, metadata=metadata or {}))

    async def track_llm_cost(
        self,
        user_id: str,
        *,
        model: str,
        input_tokens: int,
        output_tokens: int,
        conversation_id: str = "",
        agent_id: str = "",
    ) -> float:
        cost_cents = calculate_llm_cost_cents(model, input_tokens, output_tokens)
        if cost_cents <= 0:
            logger.warning("Skipping cost tracking for zero/unknown cost: %s", model)
            return 0.0
        async with self._lock:
            self.events.append(
                UsageEvent(
                    kind="llm_call",
                    user_id=user_id,
                    metadata={
                        "model": model,
                        "input_tokens": input_tokens,
                        "output_tokens": output_tokens,
                        "conversation_id": conversation_id,
                        "agent_id": agent_id,
                        "cost_cents": cost_cents,
                    },
                )
            )
        logger.info(
            "Tracked LLM cost: %s cents for user %s (%s: %d in, %d out)",
            cost_cents,
            user_id,
            model,
            input_tokens,
            output_tokens,
        )
        return cost_cents

    def record_turn(
        self,
        *,
        agent_id: str,
        conversation_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        latency_ms: float,
        tool_name: str | None = None,
        succeeded: bool = True,
    ) -> TurnRecord:
        pricing = model_pricing(model)
        cost = 0.0
        if pricing is not None:
            cost = calculate_llm_cost_cents(model, input_tokens, output_tokens)
        record = TurnRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            agent_id=agent_id,
            conversation_id=conversation_id,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost_cents=cost,
            latency_ms=latency_ms,
            tool_name=tool_name,
            succeeded=succeeded,
        )
        self._turns[record.trace_id] = record
        return record

    def list_recent(self, limit: int = 20) -> list[TurnRecord]:
        return list(self._turns.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate turn metrics for dashboard display."""
        records = list(self._turns.values())
        total = len(records)
        if total == 0:
            return {
                "total_turns": 0,
                "failed_turns": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "total_estimated_cost_cents": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_turns": total,
            "failed_turns": sum(1 for record in records if not record.succeeded),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_estimated_cost_cents": round(
                sum(record.estimated_cost_cents for record in records), 3
            ),
        }


class InMemoryToolExecutionLog:
    """Append-only store of tool execution outcomes."""

    def __init__(self) -> None:
        self._entries: list[ToolExecution] = []
        self._lock = asyncio.Lock()

    async def record(self, entry: ToolExecution) -> None:
        async with self._lock:
            self._entries.append(entry)

    def entries(self, agent_id: str | None = None) -> list[ToolExecution]:
        if agent_id is None:
            return list(self._entries)
        return [entry for entry in self._entries if entry.agent_id == agent_id]

    def summary(self) -> dict[str, float | int]:
        total = len(self._entries)
        succeeded = sum(1 for entry in self._entries if entry.success)
        return {
            "total_tool_calls": total,
            "tool_success_rate": (succeeded / total) if total else 0.0,
            "avg_tool_duration_ms": (
                sum(entry.duration_ms for entry in self._entries) / total if total else 0.0
            ),
        }


class Timer:
    """Simple context timer used around tool calls and turns."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
