"""Per-subject rate limits and per-command cooldowns.

Rate limits are fixed-window counters kept in the cache so they hold across
bot instances. Cooldowns are an in-process best-effort extra keyed by
``(user, command)``.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from naffles_bot.bot.services.base import CacheManagerProtocol

logger = logging.getLogger(__name__)

# class -> (max requests, window seconds)
RATE_LIMITS: dict[str, tuple[int, int]] = {
    "command": (5, 60),
    "button": (10, 60),
    "modal": (5, 60),
    "menu": (10, 60),
    "interaction": (10, 60),
    "api": (20, 60),
    "global": (100, 60),
}

# seconds between invocations of the same command by the same user
COMMAND_COOLDOWNS: dict[str, float] = {
    "link-community": 30,
    "connect-allowlist": 15,
    "create-task": 10,
    "allowlist-analytics": 10,
    "list-tasks": 5,
    "status": 5,
    "security": 5,
    "help": 2,
}
DEFAULT_COOLDOWN = 5.0


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int
    reset_time: float
    retry_after_ms: int

    @property
    def retry_after_seconds(self) -> int:
        return max(0, math.ceil(self.retry_after_ms / 1000))


class RateLimiter:
    """Cache-backed request counters per ``(subject, class)``.

    A failing cache lets requests through (fail open) and logs a warning.

    Args:
        cache: Cache with atomic ``increment``
        limits: Overrides for :data:`RATE_LIMITS`
        clock: Wall clock used for ``reset_time``
    """

    def __init__(
        self,
        cache: CacheManagerProtocol,
        limits: Optional[dict[str, tuple[int, int]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.limits = {**RATE_LIMITS, **(limits or {})}
        self._clock = clock

    @staticmethod
    def _key(subject: str, limit_class: str) -> str:
        return f"rate_limit:{limit_class}:{subject}"

    async def check(self, subject: str, limit_class: str = "command") -> RateLimitResult:
        """Count one request and report whether it is within budget."""
        max_requests, window = self.limits.get(limit_class, self.limits["command"])
        key = self._key(subject, limit_class)
        now = self._clock()
        try:
            count = await self.cache.increment(key, window)
            ttl = await self.cache.ttl(key)
        except Exception as e:
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            return RateLimitResult(allowed=True, remaining=max_requests, reset_time=now + window, retry_after_ms=0)

        ttl = ttl if ttl > 0 else window
        reset_time = now + ttl
        if count > max_requests:
            logger.info(f"Rate limit hit for {subject} ({limit_class}): {count}/{max_requests}")
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                retry_after_ms=int(ttl * 1000),
            )
        return RateLimitResult(
            allowed=True,
            remaining=max_requests - count,
            reset_time=reset_time,
            retry_after_ms=0,
        )

    async def get_status(self, subject: str, limit_class: str = "command") -> dict:
        max_requests, window = self.limits.get(limit_class, self.limits["command"])
        key = self._key(subject, limit_class)
        count = await self.cache.get_json(key) or 0
        ttl = await self.cache.ttl(key)
        return {
            "count": int(count),
            "limit": max_requests,
            "remaining": max(0, max_requests - int(count)),
            "reset_in": ttl if ttl > 0 else 0,
        }

    async def reset(self, subject: str, limit_class: str = "command") -> None:
        await self.cache.delete(self._key(subject, limit_class))


def rate_limit_message(limit_class: str, result: RateLimitResult) -> str:
    seconds = result.retry_after_seconds
    if limit_class in ("button", "menu"):
        return f"You are clicking buttons too quickly. Please wait {seconds} seconds."
    return f"You are using commands too quickly. Please wait {seconds} seconds before trying again."


class CooldownTracker:
    """In-process minimum gap between invocations of one command by one user.

    Args:
        cooldowns: Overrides for :data:`COMMAND_COOLDOWNS`
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        cooldowns: Optional[dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldowns = {**COMMAND_COOLDOWNS, **(cooldowns or {})}
        self._clock = clock
        self._last_used: dict[tuple[str, str], float] = {}

    def cooldown_for(self, command: str) -> float:
        return self.cooldowns.get(command, DEFAULT_COOLDOWN)

    def remaining(self, user_id: str, command: str) -> float:
        """Seconds left before ``command`` may run again; 0 when ready."""
        last = self._last_used.get((user_id, command))
        if last is None:
            return 0.0
        elapsed = self._clock() - last
        gap = self.cooldown_for(command)
        return 0.0 if elapsed >= gap else gap - elapsed

    def mark_used(self, user_id: str, command: str) -> None:
        self._last_used[(user_id, command)] = self._clock()

    def purge(self) -> int:
        """Drop entries whose cooldown has passed."""
        now = self._clock()
        stale = [
            key for key, last in self._last_used.items()
            if now - last >= self.cooldown_for(key[1])
        ]
        for key in stale:
            del self._last_used[key]
        return len(stale)


def cooldown_message(remaining: float) -> str:
    return f"⏰ Please wait {math.ceil(remaining)} more seconds before using this command again."
