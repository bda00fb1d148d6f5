from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from enum import StrEnum
from typing import Any

import httpx

from backend.app.services.two_tier_cache import TwoTierCache
from backend.app.services.youtube_catalog_service import VideoItem
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("shortless.shorts")

SHORTS_DURATION_THRESHOLD_SECONDS = 180
SHORTS_PROBE_URL_TEMPLATE = "https://www.youtube.com/shorts/{video_id}"
SHORTS_PROBE_CONCURRENCY = 20
SHORTS_PROBE_TIMEOUT_SECONDS = 2.0
SHORTS_VERDICT_TTL_SECONDS = 30 * 24 * 60 * 60
GHOST_VIDEO_TITLES: frozenset[str] = frozenset({"deleted video", "private video"})


class ShortVerdict(StrEnum):
    SHORT = "short"
    NOT_SHORT = "not_short"
    UNKNOWN = "unknown"


def is_broken_video(video: VideoItem) -> bool:
    if not video.video_id.strip():
        return True
    title = video.title.strip()
    if not title or title.lower() in GHOST_VIDEO_TITLES:
        return True
    if not video.thumbnail_url.strip():
        return True
    return video.duration_seconds == 0 and video.view_count == 0


def filter_out_broken(videos: Iterable[VideoItem]) -> list[VideoItem]:
    """Drop deleted, private and otherwise empty placeholder entries."""
    return [video for video in videos if not is_broken_video(video)]


def classify_by_duration(
    video: VideoItem,
    threshold_seconds: int = SHORTS_DURATION_THRESHOLD_SECONDS,
) -> ShortVerdict:
    if video.duration_seconds > threshold_seconds:
        return ShortVerdict.NOT_SHORT
    if video.duration_seconds == 0 and video.view_count > 0:
        # Live broadcasts report no duration.
        return ShortVerdict.NOT_SHORT
    return ShortVerdict.UNKNOWN


class ShortsClassifier:
    """
    Removes short-form videos from a batch, cheapest check first.

    1. duration heuristic (no I/O)
    2. L1 verdict cache
    3. one batched L2 lookup for the L1 misses
    4. HEAD probes against the shorts URL namespace, at most `probe_concurrency` in flight

    Probe timeouts and errors keep the video and are not cached, so they are retried
    on a later request.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        verdict_cache: TwoTierCache,
        threshold_seconds: int = SHORTS_DURATION_THRESHOLD_SECONDS,
        probe_url_template: str = SHORTS_PROBE_URL_TEMPLATE,
        probe_concurrency: int = SHORTS_PROBE_CONCURRENCY,
        probe_timeout_seconds: float = SHORTS_PROBE_TIMEOUT_SECONDS,
        verdict_ttl_seconds: float = SHORTS_VERDICT_TTL_SECONDS,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._http_client = http_client
        self._verdict_cache = verdict_cache
        self._threshold_seconds = threshold_seconds
        self._probe_url_template = probe_url_template
        self._probe_concurrency = max(1, probe_concurrency)
        self._probe_timeout_seconds = max(0.1, probe_timeout_seconds)
        self._verdict_ttl_seconds = verdict_ttl_seconds
        self._telemetry = telemetry or TelemetryClient.disabled()

    def classify(self, video: VideoItem) -> ShortVerdict:
        return classify_by_duration(video, self._threshold_seconds)

    async def filter_videos(self, videos: Sequence[VideoItem]) -> list[VideoItem]:
        return await self.filter_out_shorts(filter_out_broken(videos))

    async def filter_out_shorts(self, videos: Sequence[VideoItem]) -> list[VideoItem]:
        duration_verdicts = [self.classify(video) for video in videos]
        candidate_ids = list(
            dict.fromkeys(
                video.video_id
                for video, verdict in zip(videos, duration_verdicts, strict=True)
                if verdict is ShortVerdict.UNKNOWN
            )
        )
        duration_keeps = duration_verdicts.count(ShortVerdict.NOT_SHORT)

        short_ids: set[str] = set()
        l1_misses: list[str] = []
        l1_hits = 0
        for video_id in candidate_ids:
            cached = self._verdict_cache.get(video_id)
            if cached is None:
                l1_misses.append(video_id)
                continue
            l1_hits += 1
            if cached is True:
                short_ids.add(video_id)

        l2_found = await self._verdict_cache.get_many_with_promotion(
            l1_misses,
            self._verdict_ttl_seconds,
            decode=_decode_verdict,
        )
        short_ids.update(video_id for video_id, is_short in l2_found.items() if is_short)

        to_probe = [video_id for video_id in l1_misses if video_id not in l2_found]
        probe_verdicts = await self._probe_many(to_probe)
        definite = {
            video_id: verdict is ShortVerdict.SHORT
            for video_id, verdict in probe_verdicts.items()
            if verdict is not ShortVerdict.UNKNOWN
        }
        self._verdict_cache.set_many(definite, self._verdict_ttl_seconds)
        short_ids.update(video_id for video_id, is_short in definite.items() if is_short)

        kept = [
            video
            for video, verdict in zip(videos, duration_verdicts, strict=True)
            if verdict is ShortVerdict.NOT_SHORT or video.video_id not in short_ids
        ]
        unknown_count = len(probe_verdicts) - len(definite)
        LOGGER.info(
            (
                "shorts filter total=%s duration_keeps=%s l1_hits=%s l2_hits=%s "
                "probes=%s unknown=%s removed=%s"
            ),
            len(videos),
            duration_keeps,
            l1_hits,
            len(l2_found),
            len(to_probe),
            unknown_count,
            len(videos) - len(kept),
        )
        self._telemetry.emit(
            "shorts.filter",
            total=len(videos),
            duration_keeps=duration_keeps,
            cache_hits=l1_hits + len(l2_found),
            probes=len(to_probe),
            unknown=unknown_count,
            removed=len(videos) - len(kept),
        )
        return kept

    async def probe(self, video_id: str) -> ShortVerdict:
        url = self._probe_url_template.format(video_id=video_id)
        try:
            async with asyncio.timeout(self._probe_timeout_seconds):
                response = await self._http_client.head(
                    url,
                    follow_redirects=False,
                    timeout=self._probe_timeout_seconds,
                )
        except (TimeoutError, httpx.TimeoutException):
            LOGGER.debug("shorts probe timeout video_id=%s", video_id)
            return ShortVerdict.UNKNOWN
        except httpx.HTTPError as exc:
            LOGGER.debug("shorts probe failed video_id=%s error=%s", video_id, type(exc).__name__)
            return ShortVerdict.UNKNOWN

        if response.status_code == 200:
            return ShortVerdict.SHORT
        if 300 <= response.status_code < 400:
            return ShortVerdict.NOT_SHORT
        LOGGER.debug(
            "shorts probe inconclusive video_id=%s status=%s",
            video_id,
            response.status_code,
        )
        return ShortVerdict.UNKNOWN

    async def _probe_many(self, video_ids: Sequence[str]) -> dict[str, ShortVerdict]:
        if not video_ids:
            return {}
        semaphore = asyncio.Semaphore(self._probe_concurrency)

        async def probe_with_limit(video_id: str) -> ShortVerdict:
            async with semaphore:
                return await self.probe(video_id)

        verdicts = await asyncio.gather(*(probe_with_limit(video_id) for video_id in video_ids))
        return dict(zip(video_ids, verdicts, strict=True))


def _decode_verdict(payload: Any) -> bool:
    if isinstance(payload, bool):
        return payload
    raise TypeError("shorts verdict payload must be a boolean")
