from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from backend.app.dependencies import reset_cached_dependencies
from tests.support import FakeClock, FakeRemoteStore


@pytest.fixture
def remote_store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runtime_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    data_dir = tmp_path / "runtime-data"
    monkeypatch.setenv("SHORTLESS_DATA_DIR", str(data_dir))
    monkeypatch.setenv("SHORTLESS_YOUTUBE_API_KEY", "test-api-key")
    monkeypatch.setenv("SHORTLESS_TELEMETRY_SINK", "none")
    monkeypatch.delenv("SHORTLESS_REDIS_URL", raising=False)
    reset_cached_dependencies()
    yield data_dir
    reset_cached_dependencies()
