"""Fixed-window request budgets per client and endpoint class."""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPreset:
    name: str
    limit: int
    window_seconds: int


VERIFICATION_INIT = RateLimitPreset("verification_init", 10, 60)
VERIFICATION_STATUS = RateLimitPreset("verification_status", 60, 60)
TOKEN_VALIDATE = RateLimitPreset("token_validate", 30, 60)
GUARDIAN = RateLimitPreset("guardian", 5, 300)
POSTBACK = RateLimitPreset("postback", 1000, 3600)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiter(ABC):
    @abstractmethod
    async def check(self, identifier: str, preset: RateLimitPreset) -> RateLimitDecision:
        """Count one request against identifier's budget for preset."""
        ...


class InMemoryRateLimiter(RateLimiter):
    """Fixed-window counter kept in process memory.

    Closed windows are swept at most once per prune_interval seconds.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        prune_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._prune_interval = prune_interval
        self._next_prune = clock() + prune_interval
        # (preset, identifier) -> (window start, count, window length)
        self._windows: dict[tuple[str, str], tuple[float, int, int]] = {}

    async def check(self, identifier: str, preset: RateLimitPreset) -> RateLimitDecision:
        now = self._clock()
        if now >= self._next_prune:
            self._prune(now)

        key = (preset.name, identifier)
        window_start, count, _ = self._windows.get(key, (now, 0, preset.window_seconds))

        if now - window_start >= preset.window_seconds:
            window_start, count = now, 0

        if count >= preset.limit:
            retry_after = math.ceil(window_start + preset.window_seconds - now)
            logger.warning(f"Rate limit hit: preset={preset.name}")
            return RateLimitDecision(
                allowed=False,
                limit=preset.limit,
                remaining=0,
                retry_after=max(retry_after, 1),
            )

        self._windows[key] = (window_start, count + 1, preset.window_seconds)
        return RateLimitDecision(
            allowed=True,
            limit=preset.limit,
            remaining=preset.limit - count - 1,
        )

    def reset(self) -> None:
        self._windows.clear()

    def _prune(self, now: float) -> None:
        self._windows = {
            key: entry
            for key, entry in self._windows.items()
            if now - entry[0] < entry[2]
        }
        self._next_prune = now + self._prune_interval

    def __len__(self) -> int:
        return len(self._windows)


def client_identifier(
    headers: Mapping[str, str],
    fallback: str | None = None,
    trust_proxy: bool = False,
) -> str:
    """Identify a caller for rate limiting.

    Proxy headers are ignored unless trust_proxy is set.

    Args:
        headers: Request headers (case-insensitive mapping)
        fallback: Socket peer address
        trust_proxy: Use the first proxy-reported address when present
    """
    if not trust_proxy:
        return f"ip:{fallback or 'unknown'}"

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    for header in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(header)
        if value:
            return f"ip:{value.strip()}"

    return f"ip:{fallback or 'unknown'}"
