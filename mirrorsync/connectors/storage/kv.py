"""Key/value stores backing engine state.

The engine needs four primitives: get, set, atomic set-if-absent (for the
sync lock) and delete, plus a prefix scan for maintenance. Values are JSON
strings produced by the state repository.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog
from redis.asyncio import Redis

from mirrorsync.config import Settings, get_settings

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def set_if_absent(self, key: str, value: str) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def scan(self, prefix: str) -> list[str]: ...


class InMemoryKeyValueStore:
    """Process-local store for tests and single-process development."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def set_if_absent(self, key: str, value: str) -> bool:
        async with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def scan(self, prefix: str) -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))


class RedisKeyValueStore:
    """Redis-backed store. `set_if_absent` maps to `SET NX`, so the lock is atomic across workers."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisKeyValueStore:
        return cls(Redis.from_url(url, decode_responses=True))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RedisKeyValueStore:
        """Store on `MIRRORSYNC_REDIS_URL`. No connection is made until the first command."""
        settings = settings or get_settings()
        return cls.from_url(str(settings.redis_url))

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    async def set_if_absent(self, key: str, value: str) -> bool:
        return bool(await self._client.set(key, value, nx=True))

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(key))

    async def scan(self, prefix: str) -> list[str]:
        keys = [key async for key in self._client.scan_iter(match=f"{prefix}*")]
        return sorted(keys)

    async def close(self) -> None:
        """Close the client (best-effort)."""
        try:
            await self._client.aclose()
        except Exception as exc:
            logger.warning("Failed to close Redis client", error=str(exc))
