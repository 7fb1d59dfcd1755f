from __future__ import annotations

from typing import Protocol
from urllib.parse import quote

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError


logger = structlog.get_logger(__name__)


class StorageError(Exception):
    """The key-value store is unreachable or an operation on it failed."""


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> bool: ...

    async def delete(self, key: str) -> bool: ...


class RedisStore:
    """
    KeyValueStore backed by a redis.asyncio client.

    Values are plain strings (the registry stores JSON blobs). Any client-side
    failure is re-raised as StorageError so callers deal with one error type.
    """

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            value = await self.client.get(key)
        except (RedisError, OSError) as exc:
            raise StorageError(f"get {key!r} failed: {exc}") from exc
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    async def set(self, key: str, value: str) -> bool:
        try:
            return bool(await self.client.set(key, value))
        except (RedisError, OSError) as exc:
            raise StorageError(f"set {key!r} failed: {exc}") from exc

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(key))
        except (RedisError, OSError) as exc:
            raise StorageError(f"delete {key!r} failed: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as exc:
            logger.warning("Redis ping failed", error=str(exc))
            return False

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("Redis disconnect failed", error=str(exc))


def build_redis_url(host: str, port: int | str, password: str | None = None) -> str:
    host = str(host or "").strip()
    if password:
        return f"redis://:{quote(str(password), safe='')}@{host}:{port}"
    return f"redis://{host}:{port}"
