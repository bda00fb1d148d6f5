from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, cast

from backend.app.services.youtube_catalog_service import (
    UploadBatch,
    VideoItem,
    VideoRef,
    YouTubeCatalogService,
    order_by_ids,
)
from backend.app.services.youtube_errors import (
    InvalidFeedCursorError,
    QuotaExhaustedError,
    UpstreamError,
)
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("shortless.feed")

DEFAULT_FEED_PAGE_SIZE = 20
DEFAULT_FEED_MAX_CHANNELS = 15
DEFAULT_FEED_BATCH_SIZE = 20
MAX_EMPTY_REFILLS = 3
_EPOCH = datetime.fromtimestamp(0, tz=UTC)

SubFeedCursor = list[dict[str, Any]]


@dataclass
class ChannelBuffer:
    uploads_stream_id: str
    refs: list[VideoRef]
    offset: int = 0
    current_batch_token: str | None = None
    next_batch_token: str | None = None
    stalled: bool = field(default=False, compare=False)

    def head(self) -> VideoRef | None:
        if self.offset < len(self.refs):
            return self.refs[self.offset]
        return None

    def has_unconsumed(self) -> bool:
        return self.offset < len(self.refs)

    def is_exhausted(self) -> bool:
        return not self.has_unconsumed() and self.next_batch_token is None


@dataclass(frozen=True)
class SubFeedCursorEntry:
    uploads_stream_id: str
    offset: int
    current_batch_token: str | None = None
    next_batch_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "uploads_stream_id": self.uploads_stream_id,
            "offset": self.offset,
            "current_batch_token": self.current_batch_token,
            "next_batch_token": self.next_batch_token,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> SubFeedCursorEntry:
        if not isinstance(payload, Mapping):
            raise InvalidFeedCursorError("Cursor entries must be objects.")
        data = cast(Mapping[str, Any], payload)
        stream_id = data.get("uploads_stream_id")
        offset = data.get("offset")
        if not isinstance(stream_id, str) or not stream_id.strip():
            raise InvalidFeedCursorError("Cursor entry is missing uploads_stream_id.")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise InvalidFeedCursorError("Cursor entry offset must be a non-negative integer.")
        return cls(
            uploads_stream_id=stream_id,
            offset=offset,
            current_batch_token=_optional_token(data.get("current_batch_token")),
            next_batch_token=_optional_token(data.get("next_batch_token")),
        )


@dataclass(frozen=True)
class FeedPage:
    items: tuple[VideoItem, ...]
    cursor: SubFeedCursor | None


def parse_feed_cursor(raw_cursor: Any, *, max_entries: int) -> list[SubFeedCursorEntry]:
    if not isinstance(raw_cursor, list):
        raise InvalidFeedCursorError("Cursor must be a list.")
    entries = cast(list[Any], raw_cursor)
    if len(entries) > max_entries:
        raise InvalidFeedCursorError(f"Cursor must contain at most {max_entries} entries.")
    return [SubFeedCursorEntry.from_dict(entry) for entry in entries]


def build_feed_cursor(buffers: Sequence[ChannelBuffer]) -> SubFeedCursor | None:
    entries = [
        SubFeedCursorEntry(
            uploads_stream_id=buffer.uploads_stream_id,
            offset=buffer.offset,
            current_batch_token=buffer.current_batch_token,
            next_batch_token=buffer.next_batch_token,
        ).to_dict()
        for buffer in buffers
        if not buffer.is_exhausted()
    ]
    return entries or None


class SubscriptionFeedService:
    """
    Builds a time-ordered feed across the uploads of subscribed channels.

    Only `(id, published_at)` refs are fetched per channel; full video details are
    fetched for the refs that make it onto the page. The returned cursor records where
    each still-producing channel left off.
    """

    def __init__(
        self,
        *,
        catalog: YouTubeCatalogService,
        page_size: int = DEFAULT_FEED_PAGE_SIZE,
        max_channels: int = DEFAULT_FEED_MAX_CHANNELS,
        batch_size: int = DEFAULT_FEED_BATCH_SIZE,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._catalog = catalog
        self._page_size = max(1, page_size)
        self._max_channels = max(1, max_channels)
        self._batch_size = max(1, batch_size)
        self._telemetry = telemetry or TelemetryClient.disabled()

    @property
    def max_channels(self) -> int:
        return self._max_channels

    async def get_subscription_feed(
        self,
        credential: str,
        cursor: SubFeedCursor | None = None,
        page_size: int | None = None,
    ) -> FeedPage:
        limit = max(1, page_size or self._page_size)
        if cursor is None:
            buffers = await self._initial_buffers(credential)
        else:
            entries = parse_feed_cursor(cursor, max_entries=self._max_channels)
            buffers = await self._resume_buffers(entries)

        # Handed back when hydration fails so the same page can be requested again.
        retry_cursor = cursor if cursor is not None else build_feed_cursor(buffers)
        selected = await self._merge(buffers, limit)
        selected_ids = [ref.video_id for ref in selected]
        try:
            hydrated = await self._catalog.get_video_details(selected_ids, best_effort=False)
        except UpstreamError as exc:
            LOGGER.warning(
                "subscription feed hydration failed selected=%s status=%s",
                len(selected_ids),
                exc.status_code,
            )
            self._telemetry.emit(
                "feed.page",
                first_page=cursor is None,
                channels=len(buffers),
                selected=len(selected),
                hydrated=0,
                hydration_failed=True,
            )
            return FeedPage(items=(), cursor=retry_cursor)
        videos = order_by_ids(hydrated, selected_ids, _video_identity)
        next_cursor = build_feed_cursor(buffers)

        LOGGER.info(
            "subscription feed page first_page=%s channels=%s selected=%s hydrated=%s cursor_entries=%s",
            cursor is None,
            len(buffers),
            len(selected),
            len(videos),
            len(next_cursor or []),
        )
        self._telemetry.emit(
            "feed.page",
            first_page=cursor is None,
            channels=len(buffers),
            selected=len(selected),
            hydrated=len(videos),
            cursor_entries=len(next_cursor or []),
        )
        return FeedPage(items=tuple(videos), cursor=next_cursor)

    async def _initial_buffers(self, credential: str) -> list[ChannelBuffer]:
        channel_ids = await self._catalog.list_subscription_channel_ids(
            credential,
            limit=self._max_channels,
        )
        uploads = await self._catalog.resolve_uploads_stream_ids(channel_ids)
        starts = [
            SubFeedCursorEntry(uploads_stream_id=uploads[channel_id], offset=0)
            for channel_id in channel_ids
            if channel_id in uploads
        ]
        return await self._load_buffers(starts)

    async def _resume_buffers(self, entries: Sequence[SubFeedCursorEntry]) -> list[ChannelBuffer]:
        return await self._load_buffers(entries)

    async def _load_buffers(self, entries: Sequence[SubFeedCursorEntry]) -> list[ChannelBuffer]:
        batches = await asyncio.gather(
            *(
                self._catalog.list_upload_refs(
                    entry.uploads_stream_id,
                    entry.current_batch_token,
                    max_results=self._batch_size,
                )
                for entry in entries
            ),
            return_exceptions=True,
        )
        buffers: list[ChannelBuffer] = []
        for entry, batch in zip(entries, batches, strict=True):
            if isinstance(batch, QuotaExhaustedError):
                raise batch
            if isinstance(batch, Exception):
                LOGGER.warning(
                    "subscription feed channel skipped uploads_stream_id=%s error=%s",
                    entry.uploads_stream_id,
                    type(batch).__name__,
                )
                continue
            if isinstance(batch, BaseException):
                raise batch
            refs = _sorted_newest_first(batch.refs)
            buffers.append(
                ChannelBuffer(
                    uploads_stream_id=entry.uploads_stream_id,
                    refs=refs,
                    offset=min(entry.offset, len(refs)),
                    current_batch_token=entry.current_batch_token,
                    next_batch_token=batch.next_page_token,
                )
            )
        return buffers

    async def _merge(self, buffers: Sequence[ChannelBuffer], limit: int) -> list[VideoRef]:
        # Newest head wins; ties go to the buffer discovered first.
        for buffer in buffers:
            await self._refill(buffer)

        selected: list[VideoRef] = []
        seen: set[str] = set()
        while len(selected) < limit:
            buffer = _newest_head_buffer(buffers)
            if buffer is None:
                break
            ref = buffer.refs[buffer.offset]
            buffer.offset += 1
            if ref.video_id not in seen:
                seen.add(ref.video_id)
                selected.append(ref)
            await self._refill(buffer)
        return selected

    async def _refill(self, buffer: ChannelBuffer) -> None:
        empty_refills = 0
        while (
            not buffer.has_unconsumed()
            and buffer.next_batch_token is not None
            and not buffer.stalled
        ):
            token = buffer.next_batch_token
            try:
                batch: UploadBatch = await self._catalog.list_upload_refs(
                    buffer.uploads_stream_id,
                    token,
                    max_results=self._batch_size,
                )
            except QuotaExhaustedError:
                raise
            except Exception:
                # Keep the token so the next page retries this channel.
                LOGGER.warning(
                    "subscription feed refill failed uploads_stream_id=%s",
                    buffer.uploads_stream_id,
                    exc_info=True,
                )
                buffer.stalled = True
                return

            buffer.refs = _sorted_newest_first(batch.refs)
            buffer.offset = 0
            buffer.current_batch_token = token
            buffer.next_batch_token = batch.next_page_token
            if not buffer.refs:
                empty_refills += 1
                if empty_refills >= MAX_EMPTY_REFILLS:
                    buffer.stalled = True


def _newest_head_buffer(buffers: Sequence[ChannelBuffer]) -> ChannelBuffer | None:
    best: ChannelBuffer | None = None
    best_published: datetime | None = None
    for buffer in buffers:
        head = buffer.head()
        if head is None:
            continue
        published = published_datetime(head)
        if best_published is None or published > best_published:
            best = buffer
            best_published = published
    return best


def published_datetime(ref: VideoRef) -> datetime:
    parsed = _parse_datetime_utc(ref.published_at)
    if parsed is not None:
        return parsed
    return _EPOCH


def _sorted_newest_first(refs: Sequence[VideoRef]) -> list[VideoRef]:
    return sorted(refs, key=published_datetime, reverse=True)


def _parse_datetime_utc(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None

    normalized = raw_value.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _optional_token(raw_value: Any) -> str | None:
    if raw_value is None:
        return None
    if not isinstance(raw_value, str):
        raise InvalidFeedCursorError("Cursor batch tokens must be strings or null.")
    return raw_value or None


def _video_identity(video: VideoItem) -> str:
    return video.video_id
