from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from redis.asyncio import Redis

LOGGER = logging.getLogger("shortless.cache")

DEFAULT_CONNECT_TIMEOUT_SECONDS = 0.5
DEFAULT_SOCKET_TIMEOUT_SECONDS = 0.5


def remote_ttl_seconds(ttl_seconds: float) -> int:
    return max(1, round(ttl_seconds))


class RemoteCacheStore(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ...

    async def mset(self, items: Mapping[str, str], ttl_seconds: float) -> None:
        ...

    async def close(self) -> None:
        ...


class RedisRemoteCacheStore:
    """
    Redis-backed L2 store.

    Every failure is logged and swallowed: reads degrade to a miss, writes are dropped.
    """

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        socket_timeout_seconds: float = DEFAULT_SOCKET_TIMEOUT_SECONDS,
    ) -> RedisRemoteCacheStore:
        return cls(
            Redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=connect_timeout_seconds,
                socket_timeout=socket_timeout_seconds,
            )
        )

    @property
    def client(self) -> Redis:
        return self._client

    async def get(self, key: str) -> str | None:
        try:
            raw_value = await self._client.get(key)
        except Exception:
            LOGGER.warning("remote cache get failed key=%s", key, exc_info=True)
            return None
        return _as_text(raw_value)

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        if not keys:
            return []
        try:
            raw_values = await self._client.mget(list(keys))
        except Exception:
            LOGGER.warning("remote cache mget failed key_count=%s", len(keys), exc_info=True)
            return [None for _ in keys]
        values = [_as_text(raw_value) for raw_value in raw_values]
        if len(values) != len(keys):
            return [None for _ in keys]
        return values

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        try:
            await self._client.set(key, value, ex=remote_ttl_seconds(ttl_seconds))
        except Exception:
            LOGGER.warning("remote cache set failed key=%s", key, exc_info=True)

    async def mset(self, items: Mapping[str, str], ttl_seconds: float) -> None:
        if not items:
            return
        expire_seconds = remote_ttl_seconds(ttl_seconds)
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for key, value in items.items():
                    pipe.set(key, value, ex=expire_seconds)
                await pipe.execute()
        except Exception:
            LOGGER.warning("remote cache mset failed key_count=%s", len(items), exc_info=True)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception:
            LOGGER.warning("remote cache close failed", exc_info=True)


def _as_text(raw_value: Any) -> str | None:
    if raw_value is None:
        return None
    if isinstance(raw_value, bytes):
        return raw_value.decode("utf-8", errors="replace")
    if isinstance(raw_value, str):
        return raw_value
    return None
