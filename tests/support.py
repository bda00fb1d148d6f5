from __future__ import annotations

from collections.abc import Mapping, Sequence


class FakeRemoteStore:
    """In-memory stand-in for the redis L2 store that records every call."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, float] = {}
        self.get_calls: list[str] = []
        self.mget_calls: list[list[str]] = []
        self.closed = False

    async def get(self, key: str) -> str | None:
        self.get_calls.append(key)
        return self.values.get(key)

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        self.mget_calls.append(list(keys))
        return [self.values.get(key) for key in keys]

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self.values[key] = value
        self.ttls[key] = ttl_seconds

    async def mset(self, items: Mapping[str, str], ttl_seconds: float) -> None:
        for key, value in items.items():
            self.values[key] = value
            self.ttls[key] = ttl_seconds

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
