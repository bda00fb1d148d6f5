from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from threading import Lock
from zoneinfo import ZoneInfo

from backend.app.services.youtube_errors import QuotaExhaustedError
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("shortless.quota")

DEFAULT_QUOTA_RESET_TIMEZONE = "America/Los_Angeles"
QUOTA_EXCEEDED_MARKER = "quotaExceeded"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def is_quota_exceeded_body(body: str) -> bool:
    return QUOTA_EXCEEDED_MARKER in body


def next_quota_reset(now: datetime, reset_timezone: ZoneInfo) -> datetime:
    """Next local midnight in `reset_timezone`, returned in UTC."""
    local_now = now.astimezone(reset_timezone)
    next_local_date = local_now.date() + timedelta(days=1)
    local_midnight = datetime.combine(next_local_date, time.min, tzinfo=reset_timezone)
    return local_midnight.astimezone(UTC)


@dataclass(frozen=True)
class QuotaStatus:
    exhausted: bool
    reset_at: datetime | None
    retry_after_seconds: int


class QuotaBreaker:
    def __init__(
        self,
        *,
        reset_timezone: str = DEFAULT_QUOTA_RESET_TIMEZONE,
        clock: Callable[[], datetime] = _utc_now,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._reset_timezone = ZoneInfo(reset_timezone)
        self._clock = clock
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._lock = Lock()
        self._exhausted_until: datetime | None = None

    @property
    def exhausted_until(self) -> datetime | None:
        with self._lock:
            return self._exhausted_until

    def check(self) -> None:
        now = self._clock()
        with self._lock:
            exhausted_until = self._current_exhausted_until(now)
        if exhausted_until is None:
            return
        raise QuotaExhaustedError(
            f"YouTube API quota exhausted until {exhausted_until.isoformat()}",
            reset_at=exhausted_until,
            retry_after_seconds=_seconds_until(now, exhausted_until),
        )

    def trip(self) -> datetime:
        now = self._clock()
        reset_at = next_quota_reset(now, self._reset_timezone)
        with self._lock:
            already_tripped = self._current_exhausted_until(now) is not None
            self._exhausted_until = reset_at
        if not already_tripped:
            LOGGER.warning(
                "youtube quota exhausted reset_at=%s retry_after_seconds=%s",
                reset_at.isoformat(),
                _seconds_until(now, reset_at),
            )
            self._telemetry.emit(
                "youtube.quota.tripped",
                reset_at=reset_at.isoformat(),
                retry_after_seconds=_seconds_until(now, reset_at),
            )
        return reset_at

    def status(self) -> QuotaStatus:
        now = self._clock()
        with self._lock:
            exhausted_until = self._current_exhausted_until(now)
        if exhausted_until is None:
            return QuotaStatus(exhausted=False, reset_at=None, retry_after_seconds=0)
        return QuotaStatus(
            exhausted=True,
            reset_at=exhausted_until,
            retry_after_seconds=_seconds_until(now, exhausted_until),
        )

    def _current_exhausted_until(self, now: datetime) -> datetime | None:
        # Caller holds the lock.
        if self._exhausted_until is not None and now >= self._exhausted_until:
            LOGGER.info("youtube quota breaker reset at=%s", now.isoformat())
            self._exhausted_until = None
        return self._exhausted_until


def _seconds_until(now: datetime, target: datetime) -> int:
    return max(1, math.ceil((target - now).total_seconds()))
