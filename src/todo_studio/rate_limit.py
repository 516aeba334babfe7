"""Fixed-window rate limiting behind an injectable capability.

Call sites depend only on :class:`RateLimiter`, so the process-local
:class:`InMemoryRateLimiter` can be swapped for a shared backend in
multi-instance deployments.
"""

from __future__ import annotations

import abc
import asyncio
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from todo_studio.errors import RateLimitedError


@dataclass(frozen=True)
class RateLimitDecision:
    ok: bool
    retry_after_seconds: int = 0


class RateLimiter(abc.ABC):
    @abc.abstractmethod
    async def check(self, key: str, max_requests: int, window_seconds: float) -> RateLimitDecision:
        """Count one request against *key* and report whether it is allowed."""

    async def enforce(self, key: str, max_requests: int, window_seconds: float) -> None:
        """Like :meth:`check` but raise :class:`RateLimitedError` when rejected."""
        decision = await self.check(key, max_requests, window_seconds)
        if not decision.ok:
            raise RateLimitedError(decision.retry_after_seconds)


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter(RateLimiter):
    """Process-local fixed windows keyed by an arbitrary string."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str, max_requests: int, window_seconds: float) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            self._prune(now)

            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                self._windows[key] = _Window(count=1, reset_at=now + window_seconds)
                return RateLimitDecision(ok=True)

            if window.count >= max_requests:
                retry_after = max(1, math.ceil(window.reset_at - now))
                return RateLimitDecision(ok=False, retry_after_seconds=retry_after)

            window.count += 1
            return RateLimitDecision(ok=True)

    def _prune(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]


def client_ip_from_headers(headers: Mapping[str, str], fallback: str | None = None) -> str:
    """Best client address from proxy headers.

    Uses the first ``x-forwarded-for`` hop, then ``x-real-ip``, then
    *fallback*, then ``"unknown"``.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return fallback or "unknown"
