"""Sliding-window rate limiter keyed by (agent, caller)."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from rag_chat.config import RateLimitConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateDecision:
    allowed: bool
    remaining: int


@dataclass(slots=True)
class _Window:
    timestamps: list[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)
    retired: bool = False


class SlidingWindowRateLimiter:
    """Advisory admission control over per-key request timestamps.

    Every key owns its own lock, so admission decisions for different callers
    never contend. The map lock only guards inserting and removing keys. The
    background sweep drops timestamps older than `retention_seconds` and
    retires empty windows while holding that window's lock; a request that
    raced with the retirement sees the `retired` flag and starts over on a
    fresh window instead of writing into a detached one.

    Lifecycle: create at server start, `start()` the sweeper inside a running
    event loop, `await stop()` on shutdown.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._map_lock = threading.Lock()
        self._sweeper: asyncio.Task[None] | None = None

    def check_and_record(
        self, agent_id: str, caller_key: str, limit: int, window_seconds: float
    ) -> RateDecision:
        key = f"{agent_id}:{caller_key}"
        while True:
            window = self._window_for(key)
            with window.lock:
                if window.retired:
                    continue
                now = self._clock()
                window.timestamps = [t for t in window.timestamps if now - t < window_seconds]
                if len(window.timestamps) >= limit:
                    return RateDecision(allowed=False, remaining=0)
                window.timestamps.append(now)
                return RateDecision(allowed=True, remaining=limit - len(window.timestamps))

    def sweep(self) -> int:
        """Drop expired timestamps; return how many keys were retired."""

        now = self._clock()
        retention = self.config.retention_seconds
        retired = 0
        for key, window in list(self._windows.items()):
            with window.lock:
                window.timestamps = [t for t in window.timestamps if now - t < retention]
                if window.timestamps:
                    continue
                window.retired = True
                with self._map_lock:
                    if self._windows.get(key) is window:
                        del self._windows[key]
                retired += 1
        return retired

    def tracked_keys(self) -> int:
        return len(self._windows)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._run_sweeper())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                retired = self.sweep()
            except Exception:
                logger.exception("Rate limit sweep failed")
                continue
            if retired:
                logger.debug("Rate limit sweep retired %d key(s)", retired)

    def _window_for(self, key: str) -> _Window:
        window = self._windows.get(key)
        if window is not None:
            return window
        with self._map_lock:
            return self._windows.setdefault(key, _Window())
