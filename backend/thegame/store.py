"""Key-value persistence for rooms and player stats.

``RoomStore`` speaks in plain dicts and knows the key layout and expiry
windows; subclasses only provide get / set-with-expiry / delete / scan.
``RedisStore`` is used in production, ``MemoryStore`` in tests.
"""

from __future__ import annotations

import fnmatch
import json
import os
import time
from typing import Any, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from thegame import errors

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", "86400"))
STATS_TTL_SECONDS = ROOM_TTL_SECONDS * 7

KEY_PREFIX = "thegame"


def _room_key(code: str) -> str:
    return f"{KEY_PREFIX}:room:{code}"


def _stats_key(token: str) -> str:
    return f"{KEY_PREFIX}:stats:{token}"


class RoomStore:
    """Room and stats records on top of a generic expiring key-value store."""

    room_ttl: int = ROOM_TTL_SECONDS
    stats_ttl: int = STATS_TTL_SECONDS

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    async def delete(self, *keys: str) -> None:
        raise NotImplementedError

    async def scan(self, pattern: str) -> list[str]:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def _load_json(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def load_room(self, code: str) -> Optional[dict[str, Any]]:
        return await self._load_json(_room_key(code))

    async def store_room(self, code: str, data: dict[str, Any]) -> None:
        """Write a room record; every write refreshes its expiry."""
        await self.set(_room_key(code), json.dumps(data), self.room_ttl)

    async def delete_room(self, code: str) -> None:
        await self.delete(_room_key(code))

    async def list_room_codes(self) -> list[str]:
        prefix = _room_key("")
        return [key[len(prefix):] for key in await self.scan(prefix + "*")]

    async def load_stats(self, token: str) -> Optional[dict[str, Any]]:
        return await self._load_json(_stats_key(token))

    async def store_stats(self, token: str, data: dict[str, Any]) -> None:
        await self.set(_stats_key(token), json.dumps(data), self.stats_ttl)


class RedisStore(RoomStore):
    def __init__(self, url: str = REDIS_URL) -> None:
        self._url = url
        self._pool: Optional[redis.Redis] = None

    def _redis(self) -> redis.Redis:
        if self._pool is None:
            self._pool = redis.from_url(self._url, decode_responses=True)
        return self._pool

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis().get(key)
        except RedisError as exc:
            raise errors.InfrastructureFailure("Store unavailable") from exc

    async def set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._redis().set(key, value, ex=ttl)
        except RedisError as exc:
            raise errors.InfrastructureFailure("Store unavailable") from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._redis().delete(*keys)
        except RedisError as exc:
            raise errors.InfrastructureFailure("Store unavailable") from exc

    async def scan(self, pattern: str) -> list[str]:
        try:
            return [key async for key in self._redis().scan_iter(match=pattern, count=200)]
        except RedisError as exc:
            raise errors.InfrastructureFailure("Store unavailable") from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None


class MemoryStore(RoomStore):
    """In-process store with the same expiry semantics as Redis."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # key -> (value, expires_at)
        self._data: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, self._clock() + ttl)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def scan(self, pattern: str) -> list[str]:
        return [
            key
            for key in list(self._data)
            if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
        ]
