"""Sliding-window rate limiter guarding the completion capability.

Every `complete()` call reserves a slot here first so that workflow agent
nodes, orchestrator roles, refinement and synthesis calls share one
requests-per-minute and tokens-per-minute budget.

Usage:
    >>> limiter = get_rate_limiter()
    >>> await limiter.acquire(estimated_tokens=1500)
    >>> # ... call the provider ...
    >>> limiter.record_usage(1234)
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass

import structlog

from config import settings

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitExceededError(Exception):
    """Raised when waiting for capacity would pass the caller's deadline."""


@dataclass
class _Reservation:
    at: float
    tokens: int


class RateLimiter:
    """Enforce RPM and TPM limits over a trailing 60 second window.

    ``acquire()`` reserves capacity using an estimate; ``record_usage()``
    replaces the latest estimate with the real token count once the
    provider reports it.
    """

    def __init__(
        self,
        max_calls_per_minute: int = 30,
        max_tokens_per_minute: int = 100_000,
    ) -> None:
        self.max_calls_per_minute = max_calls_per_minute
        self.max_tokens_per_minute = max_tokens_per_minute
        self._window: deque[_Reservation] = deque()
        self._lock = asyncio.Lock()

    def _expire(self, now: float) -> None:
        while self._window and self._window[0].at <= now - WINDOW_SECONDS:
            self._window.popleft()

    def _tokens_in_window(self) -> int:
        return sum(r.tokens for r in self._window)

    def _seconds_until_capacity(self, now: float, estimated_tokens: int) -> float:
        """Time until both limits admit one more reservation of this size."""
        wait = 0.0
        if len(self._window) >= self.max_calls_per_minute:
            # the oldest call that must expire to drop below the RPM cap
            idx = len(self._window) - self.max_calls_per_minute
            wait = self._window[idx].at + WINDOW_SECONDS - now

        excess = self._tokens_in_window() + estimated_tokens - self.max_tokens_per_minute
        if excess > 0:
            freed = 0
            for reservation in self._window:
                freed += reservation.tokens
                if freed >= excess:
                    wait = max(wait, reservation.at + WINDOW_SECONDS - now)
                    break

        return max(wait, 0.1)

    async def acquire(
        self,
        estimated_tokens: int = 1000,
        max_wait_seconds: float = 120.0,
    ) -> None:
        """Wait for capacity, then reserve it.

        Args:
            estimated_tokens: Token budget reserved until usage is recorded.
                Values above the TPM limit are clamped so a single large
                prompt can still go through on an empty window.
            max_wait_seconds: Deadline for obtaining capacity.

        Raises:
            RateLimitExceededError: If capacity is not available before the deadline.
        """
        estimated_tokens = min(estimated_tokens, self.max_tokens_per_minute)
        deadline = time.monotonic() + max_wait_seconds

        while True:
            async with self._lock:
                now = time.monotonic()
                self._expire(now)
                calls_ok = len(self._window) < self.max_calls_per_minute
                tokens_ok = (
                    self._tokens_in_window() + estimated_tokens
                    <= self.max_tokens_per_minute
                )
                if calls_ok and tokens_ok:
                    self._window.append(_Reservation(now, estimated_tokens))
                    return
                if now >= deadline:
                    raise RateLimitExceededError(
                        f"no LLM capacity within {max_wait_seconds}s"
                    )
                wait = min(self._seconds_until_capacity(now, estimated_tokens), deadline - now)

            logger.info(
                "rate_limiter_waiting",
                wait_seconds=round(wait, 2),
                calls_in_window=len(self._window),
            )
            await asyncio.sleep(wait)

    def record_usage(self, tokens_used: int) -> None:
        """Replace the most recent reservation's estimate with actual usage."""
        if self._window:
            self._window[-1].tokens = tokens_used

    def get_status(self) -> dict[str, int]:
        self._expire(time.monotonic())
        return {
            "current_rpm": len(self._window),
            "current_tpm": self._tokens_in_window(),
            "max_rpm": self.max_calls_per_minute,
            "max_tpm": self.max_tokens_per_minute,
        }


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Return the process-wide limiter built from settings."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(
            max_calls_per_minute=settings.llm_rate_limit_rpm,
            max_tokens_per_minute=settings.llm_rate_limit_tpm,
        )
    return _rate_limiter


def reset_rate_limiter() -> None:
    global _rate_limiter
    _rate_limiter = None
