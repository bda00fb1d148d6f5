from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Coroutine, Iterable, Mapping
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any

from backend.app.repositories.remote_cache_repository import RemoteCacheStore

LOGGER = logging.getLogger("shortless.cache")

PUBLIC_CACHE_PREFIX = "pub:"
USER_CACHE_PREFIX = "usr:"
SHORTS_VERDICT_CACHE_PREFIX = "shorts:"
DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0

Decoder = Callable[[Any], Any]


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class TwoTierCache:
    """
    In-process TTL cache (L1) mirrored to an optional remote store (L2).

    L1 reads and writes are synchronous. L2 writes are fire-and-forget tasks whose
    failures are logged and dropped. Values written to L2 are JSON, with dataclasses
    flattened through `asdict`; readers pass a `decode` callable to rebuild them.

    When `max_entries` is set, L1 is a bounded LRU: reads refresh recency and inserts
    past capacity evict the least recently used key.
    """

    def __init__(
        self,
        *,
        prefix: str,
        remote_store: RemoteCacheStore | None = None,
        clock: Callable[[], float] = time.time,
        max_entries: int | None = None,
    ) -> None:
        self._prefix = prefix
        self._remote = remote_store
        self._clock = clock
        self._max_entries = max(1, max_entries) if max_entries is not None else None
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._pending_writes: set[asyncio.Task[None]] = set()
        self._sweeper_task: asyncio.Task[None] | None = None

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def has_remote(self) -> bool:
        return self._remote is not None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_valid(self._clock()):
            del self._entries[key]
            return None
        if self._max_entries is not None:
            self._entries.move_to_end(key)
        return entry.value

    async def get_with_promotion(
        self,
        key: str,
        promote_ttl_seconds: float,
        decode: Decoder | None = None,
    ) -> Any | None:
        value = self.get(key)
        if value is not None:
            return value
        if self._remote is None:
            return None

        raw_value = await self._remote.get(self._remote_key(key))
        value = self._decode(key, raw_value, decode)
        if value is None:
            return None
        self._store_local(key, value, promote_ttl_seconds)
        LOGGER.debug("cache l2 promotion prefix=%s key=%s", self._prefix, key)
        return value

    async def get_many_with_promotion(
        self,
        keys: Iterable[str],
        promote_ttl_seconds: float,
        decode: Decoder | None = None,
    ) -> dict[str, Any]:
        found: dict[str, Any] = {}
        misses: list[str] = []
        for key in dict.fromkeys(keys):
            value = self.get(key)
            if value is None:
                misses.append(key)
            else:
                found[key] = value

        if not misses or self._remote is None:
            return found

        raw_values = await self._remote.mget([self._remote_key(key) for key in misses])
        for key, raw_value in zip(misses, raw_values, strict=True):
            value = self._decode(key, raw_value, decode)
            if value is None:
                continue
            self._store_local(key, value, promote_ttl_seconds)
            found[key] = value
        return found

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if value is None:
            raise ValueError("cache values must not be None")
        self._store_local(key, value, ttl_seconds)
        if self._remote is not None:
            self._schedule(self._mirror_one(key, value, ttl_seconds))

    def set_many(self, items: Mapping[str, Any], ttl_seconds: float) -> None:
        if not items:
            return
        for key, value in items.items():
            if value is None:
                raise ValueError("cache values must not be None")
            self._store_local(key, value, ttl_seconds)
        if self._remote is not None:
            self._schedule(self._mirror_many(dict(items), ttl_seconds))

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        expired_keys = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired_keys:
            del self._entries[key]
        return len(expired_keys)

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return
        self._sweeper_task = asyncio.get_running_loop().create_task(
            self._sweep_forever(max(1.0, interval_seconds))
        )

    async def flush(self) -> None:
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def close(self) -> None:
        sweeper = self._sweeper_task
        self._sweeper_task = None
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        await self.flush()

    def _remote_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _store_local(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)
        if self._max_entries is None:
            return
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted_key, _ = self._entries.popitem(last=False)
            LOGGER.debug("cache lru eviction prefix=%s key=%s", self._prefix, evicted_key)

    def _schedule(self, coroutine: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coroutine.close()
            return
        task = loop.create_task(coroutine)
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _mirror_one(self, key: str, value: Any, ttl_seconds: float) -> None:
        assert self._remote is not None
        encoded = _encode_value(key, value)
        if encoded is None:
            return
        await self._remote.set(self._remote_key(key), encoded, ttl_seconds)

    async def _mirror_many(self, items: dict[str, Any], ttl_seconds: float) -> None:
        assert self._remote is not None
        encoded_items: dict[str, str] = {}
        for key, value in items.items():
            encoded = _encode_value(key, value)
            if encoded is not None:
                encoded_items[self._remote_key(key)] = encoded
        await self._remote.mset(encoded_items, ttl_seconds)

    def _decode(self, key: str, raw_value: str | None, decode: Decoder | None) -> Any | None:
        if raw_value is None:
            return None
        try:
            payload = json.loads(raw_value)
        except ValueError:
            LOGGER.warning("cache l2 payload is not json prefix=%s key=%s", self._prefix, key)
            return None
        if decode is None:
            return payload
        try:
            return decode(payload)
        except (KeyError, TypeError, ValueError):
            LOGGER.warning(
                "cache l2 payload could not be decoded prefix=%s key=%s",
                self._prefix,
                key,
                exc_info=True,
            )
            return None

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                LOGGER.debug(
                    "cache sweep prefix=%s removed=%s remaining=%s",
                    self._prefix,
                    removed,
                    len(self._entries),
                )


def _encode_value(key: str, value: Any) -> str | None:
    try:
        return json.dumps(_to_jsonable(value), separators=(",", ":"))
    except (TypeError, ValueError):
        LOGGER.warning("cache value is not json serializable key=%s", key, exc_info=True)
        return None


def _to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, list | tuple):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    return value
