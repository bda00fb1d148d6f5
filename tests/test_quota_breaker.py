from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from backend.app.services.quota_breaker import (
    QuotaBreaker,
    is_quota_exceeded_body,
    next_quota_reset,
)
from backend.app.services.youtube_errors import QuotaExhaustedError
from backend.app.telemetry import TelemetryClient


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


class _MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_next_quota_reset_is_next_pacific_midnight() -> None:
    # 2026-03-10 15:00 UTC is 08:00 PDT.
    now = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)

    reset_at = next_quota_reset(now, ZoneInfo("America/Los_Angeles"))

    assert reset_at == datetime(2026, 3, 11, 7, 0, tzinfo=UTC)


def test_next_quota_reset_uses_standard_time_in_winter() -> None:
    now = datetime(2026, 1, 10, 9, 0, tzinfo=UTC)

    reset_at = next_quota_reset(now, ZoneInfo("America/Los_Angeles"))

    assert reset_at == datetime(2026, 1, 11, 8, 0, tzinfo=UTC)


def test_quota_marker_detection() -> None:
    assert is_quota_exceeded_body('{"error": {"errors": [{"reason": "quotaExceeded"}]}}')
    assert not is_quota_exceeded_body('{"error": {"errors": [{"reason": "forbidden"}]}}')


def test_check_passes_until_tripped_then_raises_with_retry_after() -> None:
    clock = _MutableClock(datetime(2026, 1, 10, 23, 0, tzinfo=UTC))
    breaker = QuotaBreaker(clock=clock)
    breaker.check()

    reset_at = breaker.trip()

    with pytest.raises(QuotaExhaustedError) as raised:
        breaker.check()
    assert raised.value.reset_at == reset_at
    assert raised.value.retry_after_seconds == int((reset_at - clock.now).total_seconds())
    assert breaker.status().exhausted is True


def test_breaker_closes_on_its_own_after_reset() -> None:
    clock = _MutableClock(datetime(2026, 1, 10, 23, 0, tzinfo=UTC))
    breaker = QuotaBreaker(clock=clock)
    reset_at = breaker.trip()

    clock.now = reset_at + timedelta(seconds=1)

    breaker.check()
    status = breaker.status()
    assert status.exhausted is False
    assert status.reset_at is None
    assert breaker.exhausted_until is None


def test_repeated_trips_emit_telemetry_once() -> None:
    sink = _CaptureSink()
    clock = _MutableClock(datetime(2026, 1, 10, 23, 0, tzinfo=UTC))
    breaker = QuotaBreaker(clock=clock, telemetry=TelemetryClient(enabled=True, sink=sink))

    breaker.trip()
    breaker.trip()

    assert [name for name, _ in sink.events] == ["youtube.quota.tripped"]
