"""Short-lived key-value storage for pending authorizations.

Entries live for the provider's code validity window. Redemption is a
single atomic get-and-delete so an authorization code can be exchanged at
most once, even when two callbacks race.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """TTL key-value store with atomic get-and-delete."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store value under key, replacing any previous value."""
        ...

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def get_and_delete(self, key: str) -> str | None:
        """Return and remove the value in one step.

        Of any number of concurrent callers for the same key, at most one
        receives the value; the rest get None.
        """
        ...

    async def close(self) -> None:
        """Release connections held by the store."""
        return None


class RedisSessionStore(SessionStore):
    """Session store backed by Redis. Requires Redis 6.2+ for GETDEL."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisSessionStore:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def get_and_delete(self, key: str) -> str | None:
        return await self._client.getdel(key)

    async def close(self) -> None:
        await self._client.aclose()


class InMemorySessionStore(SessionStore):
    """Process-local session store for tests and single-instance deployments."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        prune_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._prune_interval = prune_interval
        self._next_prune = clock() + prune_interval
        self._entries: dict[str, tuple[str, float]] = {}

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = self._clock()
        if now >= self._next_prune:
            self._prune(now)
        self._entries[key] = (value, now + ttl_seconds)

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def get_and_delete(self, key: str) -> str | None:
        # No await between lookup and removal, so this is atomic on the loop
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            logger.debug("Session store entry expired before redemption")
            return None
        return value

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_prune = now + self._prune_interval

    def __len__(self) -> int:
        return len(self._entries)
