from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, fields
from typing import Any, Generic, Literal, TypeVar, cast

import httpx

from backend.app.services.two_tier_cache import TwoTierCache
from backend.app.services.youtube_errors import UpstreamError
from backend.app.services.youtube_gateway import YouTubeGatewayClient, credential_fragment
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("shortless.youtube")

T = TypeVar("T")
EntityKind = Literal["video", "channel", "playlist"]

MAX_IDS_PER_CALL = 50
DEFAULT_PAGE_SIZE = 20
DEFAULT_REGION_CODE = "US"
SUGGEST_URL = "https://suggestqueries-clients6.youtube.com/complete/search"
SEARCH_TYPES: tuple[EntityKind, ...] = ("video", "channel", "playlist")
VIDEO_DURATION_FILTERS: frozenset[str] = frozenset({"any", "short", "medium", "long"})
SEARCH_ORDERS: frozenset[str] = frozenset(
    {"date", "rating", "relevance", "title", "videoCount", "viewCount"}
)
ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
_JSONP_ARRAY_PATTERN = re.compile(r"\[.+\]", re.DOTALL)


@dataclass(frozen=True)
class CatalogTtls:
    list_seconds: float = 5 * 60
    video_seconds: float = 15 * 60
    playlist_seconds: float = 15 * 60
    channel_seconds: float = 60 * 60
    uploads_mapping_seconds: float = 24 * 60 * 60
    categories_seconds: float = 24 * 60 * 60
    user_seconds: float = 5 * 60


@dataclass(frozen=True)
class VideoItem:
    video_id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str = ""
    channel_id: str = ""
    channel_title: str = ""
    published_at: str = ""
    duration: str = ""
    duration_seconds: int = 0
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    live_broadcast_content: str = ""
    category_id: str = ""


@dataclass(frozen=True)
class ChannelItem:
    channel_id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str = ""
    custom_url: str = ""
    published_at: str = ""
    subscriber_count: int = 0
    video_count: int = 0
    view_count: int = 0
    banner_url: str = ""


@dataclass(frozen=True)
class PlaylistItem:
    playlist_id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str = ""
    channel_id: str = ""
    channel_title: str = ""
    item_count: int = 0


@dataclass(frozen=True)
class CommentItem:
    comment_id: str
    author_name: str = ""
    author_avatar_url: str = ""
    author_channel_id: str = ""
    text: str = ""
    like_count: int = 0
    published_at: str = ""
    updated_at: str = ""
    reply_count: int = 0


@dataclass(frozen=True)
class VideoCategory:
    category_id: str
    title: str


@dataclass(frozen=True)
class UserProfile:
    channel_id: str
    channel_title: str
    avatar_url: str


@dataclass(frozen=True)
class PageInfo:
    next_page_token: str | None = None
    total_results: int = 0


@dataclass(frozen=True)
class PaginatedResult(Generic[T]):
    items: tuple[T, ...]
    page_info: PageInfo


@dataclass(frozen=True)
class SearchHit:
    kind: EntityKind
    item: VideoItem | ChannelItem | PlaylistItem


@dataclass(frozen=True)
class VideoRef:
    video_id: str
    published_at: str


@dataclass(frozen=True)
class UploadBatch:
    refs: tuple[VideoRef, ...]
    next_page_token: str | None = None
    total_results: int = 0


@dataclass(frozen=True)
class _SearchRef:
    kind: EntityKind
    entity_id: str


@dataclass(frozen=True)
class _SearchPage:
    refs: tuple[_SearchRef, ...]
    page_info: PageInfo


@dataclass(frozen=True)
class _IdPage:
    ids: tuple[str, ...]
    page_info: PageInfo


@dataclass(frozen=True)
class _EntitySpec:
    endpoint: str
    part: str
    cache_prefix: str
    parse: Callable[[dict[str, Any]], Any]
    decode: Callable[[Any], Any]
    identity: Callable[[Any], str]


class YouTubeCatalogService:
    """
    Read-side catalog operations over the YouTube Data API.

    Entities are cached per identity (`video:{id}`, `channel:{id}`, `playlist:{id}`) in the
    public cache so search, trending, playlists and feeds share one cache line per entity.
    Listing pages are cached as id lists and re-hydrated from those per-identity entries.
    Authenticated listings live in the per-user cache, keyed by a credential hash fragment.
    """

    def __init__(
        self,
        *,
        gateway: YouTubeGatewayClient,
        public_cache: TwoTierCache,
        user_cache: TwoTierCache,
        http_client: httpx.AsyncClient,
        ttls: CatalogTtls | None = None,
        region_code: str = DEFAULT_REGION_CODE,
        page_size: int = DEFAULT_PAGE_SIZE,
        suggest_url: str = SUGGEST_URL,
        suggest_timeout_seconds: float = 5.0,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._gateway = gateway
        self._public_cache = public_cache
        self._user_cache = user_cache
        self._http_client = http_client
        self._ttls = ttls or CatalogTtls()
        self._region_code = region_code
        self._page_size = max(1, min(page_size, MAX_IDS_PER_CALL))
        self._suggest_url = suggest_url
        self._suggest_timeout_seconds = suggest_timeout_seconds
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._entity_specs: dict[EntityKind, _EntitySpec] = {
            "video": _EntitySpec(
                endpoint="videos",
                part="snippet,contentDetails,statistics",
                cache_prefix="video",
                parse=parse_video_item,
                decode=_decoder(VideoItem),
                identity=lambda item: cast(VideoItem, item).video_id,
            ),
            "channel": _EntitySpec(
                endpoint="channels",
                part="snippet,statistics,brandingSettings",
                cache_prefix="channel",
                parse=parse_channel_item,
                decode=_decoder(ChannelItem),
                identity=lambda item: cast(ChannelItem, item).channel_id,
            ),
            "playlist": _EntitySpec(
                endpoint="playlists",
                part="snippet,contentDetails",
                cache_prefix="playlist",
                parse=parse_playlist_item,
                decode=_decoder(PlaylistItem),
                identity=lambda item: cast(PlaylistItem, item).playlist_id,
            ),
        }

    # Entity detail hydration.

    async def get_details(
        self,
        ids: Iterable[str],
        kind: EntityKind,
        *,
        best_effort: bool = True,
    ) -> list[Any]:
        """
        Hydrate entities by id. Result order is not guaranteed to match `ids`.

        Cached entities come from the per-identity cache (L1, then one batched L2 lookup);
        the rest are fetched in batches of 50 and cached individually. With `best_effort`,
        a batch that fails upstream is skipped and the other batches are still returned;
        otherwise the `UpstreamError` propagates. Quota exhaustion always propagates.
        """
        spec = self._entity_specs[kind]
        ttl_seconds = self._ttl_for(kind)
        unique_ids = _unique_nonempty(ids)
        if not unique_ids:
            return []

        keys = {f"{spec.cache_prefix}:{entity_id}": entity_id for entity_id in unique_ids}
        cached = await self._public_cache.get_many_with_promotion(
            keys.keys(),
            ttl_seconds,
            decode=spec.decode,
        )
        results: list[Any] = list(cached.values())
        uncached_ids = [entity_id for key, entity_id in keys.items() if key not in cached]

        fetched_count = 0
        failed_batches = 0
        for start in range(0, len(uncached_ids), MAX_IDS_PER_CALL):
            batch = uncached_ids[start : start + MAX_IDS_PER_CALL]
            try:
                payload = await self._gateway.call(
                    spec.endpoint,
                    {"part": spec.part, "id": ",".join(batch), "maxResults": MAX_IDS_PER_CALL},
                )
            except UpstreamError as exc:
                if not best_effort:
                    raise
                failed_batches += 1
                LOGGER.warning(
                    "youtube hydrate batch skipped kind=%s batch_size=%s status=%s",
                    kind,
                    len(batch),
                    exc.status_code,
                )
                continue
            entities = [
                entity
                for entity in (spec.parse(_as_dict(raw)) for raw in _as_list(payload.get("items")))
                if spec.identity(entity)
            ]
            self._public_cache.set_many(
                {f"{spec.cache_prefix}:{spec.identity(entity)}": entity for entity in entities},
                ttl_seconds,
            )
            fetched_count += len(entities)
            results.extend(entities)

        LOGGER.info(
            "youtube hydrate kind=%s requested=%s cache_hits=%s fetched=%s failed_batches=%s",
            kind,
            len(unique_ids),
            len(cached),
            fetched_count,
            failed_batches,
        )
        return results

    async def get_video_details(
        self,
        ids: Iterable[str],
        *,
        best_effort: bool = True,
    ) -> list[VideoItem]:
        return cast(list[VideoItem], await self.get_details(ids, "video", best_effort=best_effort))

    async def get_channel_details(self, ids: Iterable[str]) -> list[ChannelItem]:
        return cast(list[ChannelItem], await self.get_details(ids, "channel"))

    async def get_playlist_details(self, ids: Iterable[str]) -> list[PlaylistItem]:
        return cast(list[PlaylistItem], await self.get_details(ids, "playlist"))

    async def get_playlist(self, playlist_id: str) -> PlaylistItem | None:
        playlists = await self.get_playlist_details([playlist_id])
        return playlists[0] if playlists else None

    # Search.

    async def search_videos(
        self,
        query: str,
        *,
        page_token: str | None = None,
        duration: str | None = None,
        order: str | None = None,
    ) -> PaginatedResult[VideoItem]:
        page = await self._search_page(
            query,
            ("video",),
            page_token=page_token,
            duration=duration,
            order=order,
        )
        ids = [ref.entity_id for ref in page.refs]
        videos = order_by_ids(await self.get_video_details(ids), ids, _video_identity)
        return PaginatedResult(items=tuple(videos), page_info=page.page_info)

    async def search_channels(
        self,
        query: str,
        *,
        page_token: str | None = None,
    ) -> PaginatedResult[ChannelItem]:
        page = await self._search_page(query, ("channel",), page_token=page_token)
        ids = [ref.entity_id for ref in page.refs]
        channels = order_by_ids(await self.get_channel_details(ids), ids, _channel_identity)
        return PaginatedResult(items=tuple(channels), page_info=page.page_info)

    async def search_playlists(
        self,
        query: str,
        *,
        page_token: str | None = None,
    ) -> PaginatedResult[PlaylistItem]:
        page = await self._search_page(query, ("playlist",), page_token=page_token)
        ids = [ref.entity_id for ref in page.refs]
        playlists = order_by_ids(await self.get_playlist_details(ids), ids, _playlist_identity)
        return PaginatedResult(items=tuple(playlists), page_info=page.page_info)

    async def search_mixed(
        self,
        query: str,
        types: Sequence[EntityKind] = SEARCH_TYPES,
        *,
        page_token: str | None = None,
    ) -> PaginatedResult[SearchHit]:
        requested_types = tuple(kind for kind in SEARCH_TYPES if kind in set(types)) or SEARCH_TYPES
        page = await self._search_page(query, requested_types, page_token=page_token)

        hydrated: dict[tuple[EntityKind, str], Any] = {}
        for kind in requested_types:
            ids = [ref.entity_id for ref in page.refs if ref.kind == kind]
            if not ids:
                continue
            spec = self._entity_specs[kind]
            for entity in await self.get_details(ids, kind):
                hydrated[(kind, spec.identity(entity))] = entity

        hits = [
            SearchHit(kind=ref.kind, item=hydrated[(ref.kind, ref.entity_id)])
            for ref in page.refs
            if (ref.kind, ref.entity_id) in hydrated
        ]
        return PaginatedResult(items=tuple(hits), page_info=page.page_info)

    async def _search_page(
        self,
        query: str,
        types: tuple[EntityKind, ...],
        *,
        page_token: str | None = None,
        duration: str | None = None,
        order: str | None = None,
    ) -> _SearchPage:
        normalized_query = query.strip()
        if not normalized_query:
            return _SearchPage(refs=(), page_info=PageInfo())

        duration_filter = duration if duration in VIDEO_DURATION_FILTERS else None
        order_filter = order if order in SEARCH_ORDERS else None
        if duration_filter is not None and types != ("video",):
            duration_filter = None

        cache_key = ":".join(
            (
                "search",
                ",".join(types),
                normalized_query,
                page_token or "",
                duration_filter or "",
                order_filter or "",
            )
        )
        cached = await self._public_cache.get_with_promotion(
            cache_key,
            self._ttls.list_seconds,
            decode=_decode_search_page,
        )
        if isinstance(cached, _SearchPage):
            LOGGER.debug("youtube search cache_hit query=%s types=%s", normalized_query, types)
            return cast(_SearchPage, cached)

        payload = await self._gateway.call(
            "search",
            {
                "part": "snippet",
                "type": ",".join(types),
                "q": normalized_query,
                "maxResults": self._page_size,
                "pageToken": page_token,
                "videoDuration": duration_filter,
                "order": order_filter,
            },
        )
        refs = tuple(
            ref
            for ref in (_parse_search_ref(_as_dict(raw)) for raw in _as_list(payload.get("items")))
            if ref is not None
        )
        page = _SearchPage(refs=refs, page_info=_parse_page_info(payload))
        self._public_cache.set(cache_key, page, self._ttls.list_seconds)
        LOGGER.info(
            "youtube search cache_miss query=%s types=%s results=%s",
            normalized_query,
            ",".join(types),
            len(refs),
        )
        return page

    # Trending and categories.

    async def get_trending(
        self,
        category_id: str | None = None,
        page_token: str | None = None,
    ) -> PaginatedResult[VideoItem]:
        cache_key = f"trending:{self._region_code}:{category_id or ''}:{page_token or ''}"
        cached = await self._public_cache.get_with_promotion(
            cache_key,
            self._ttls.list_seconds,
            decode=_decode_id_page,
        )
        if isinstance(cached, _IdPage):
            id_page = cast(_IdPage, cached)
            videos = await self.get_video_details(id_page.ids)
            ordered = order_by_ids(videos, id_page.ids, _video_identity)
            return PaginatedResult(items=tuple(ordered), page_info=id_page.page_info)

        payload = await self._gateway.call(
            "videos",
            {
                "part": "snippet,contentDetails,statistics",
                "chart": "mostPopular",
                "regionCode": self._region_code,
                "maxResults": self._page_size,
                "videoCategoryId": category_id,
                "pageToken": page_token,
            },
        )
        videos = [
            video
            for video in (parse_video_item(_as_dict(raw)) for raw in _as_list(payload.get("items")))
            if video.video_id
        ]
        # Chart results are complete entities; share them through the per-identity cache.
        self._public_cache.set_many(
            {f"video:{video.video_id}": video for video in videos},
            self._ttls.video_seconds,
        )
        page_info = _parse_page_info(payload)
        self._public_cache.set(
            cache_key,
            _IdPage(ids=tuple(video.video_id for video in videos), page_info=page_info),
            self._ttls.list_seconds,
        )
        LOGGER.info(
            "youtube trending cache_miss category=%s videos=%s",
            category_id or "all",
            len(videos),
        )
        return PaginatedResult(items=tuple(videos), page_info=page_info)

    async def get_video_categories(self) -> list[VideoCategory]:
        cache_key = f"categories:{self._region_code}"
        cached = await self._public_cache.get_with_promotion(
            cache_key,
            self._ttls.categories_seconds,
            decode=_list_decoder(_decoder(VideoCategory)),
        )
        if isinstance(cached, list):
            return cast(list[VideoCategory], cached)

        payload = await self._gateway.call(
            "videoCategories",
            {"part": "snippet", "regionCode": self._region_code},
        )
        categories: list[VideoCategory] = []
        for raw_item in _as_list(payload.get("items")):
            item = _as_dict(raw_item)
            snippet = _as_dict(item.get("snippet"))
            if snippet.get("assignable") is not True:
                continue
            category_id = _coerce_text(item.get("id"))
            if category_id:
                categories.append(
                    VideoCategory(category_id=category_id, title=_coerce_text(snippet.get("title")))
                )
        if categories:
            self._public_cache.set(cache_key, categories, self._ttls.categories_seconds)
        return categories

    # Channels and playlists.

    async def resolve_uploads_stream_ids(self, channel_ids: Iterable[str]) -> dict[str, str]:
        """Map channel ids to their uploads playlist ids. Channels without one are omitted."""
        unique_ids = _unique_nonempty(channel_ids)
        if not unique_ids:
            return {}

        keys = {f"uploads:{channel_id}": channel_id for channel_id in unique_ids}
        cached = await self._public_cache.get_many_with_promotion(
            keys.keys(),
            self._ttls.uploads_mapping_seconds,
        )
        resolved: dict[str, str] = {
            keys[key]: value for key, value in cached.items() if isinstance(value, str) and value
        }
        missing = [channel_id for channel_id in unique_ids if channel_id not in resolved]

        for start in range(0, len(missing), MAX_IDS_PER_CALL):
            batch = missing[start : start + MAX_IDS_PER_CALL]
            payload = await self._gateway.call(
                "channels",
                {"part": "contentDetails", "id": ",".join(batch), "maxResults": MAX_IDS_PER_CALL},
            )
            fetched: dict[str, str] = {}
            for raw_item in _as_list(payload.get("items")):
                item = _as_dict(raw_item)
                channel_id = _coerce_text(item.get("id"))
                related = _as_dict(_as_dict(item.get("contentDetails")).get("relatedPlaylists"))
                uploads_id = _coerce_text(related.get("uploads"))
                if channel_id and uploads_id:
                    fetched[channel_id] = uploads_id
            self._public_cache.set_many(
                {f"uploads:{channel_id}": uploads_id for channel_id, uploads_id in fetched.items()},
                self._ttls.uploads_mapping_seconds,
            )
            resolved.update(fetched)

        return {
            channel_id: resolved[channel_id] for channel_id in unique_ids if channel_id in resolved
        }

    async def list_upload_refs(
        self,
        playlist_id: str,
        page_token: str | None = None,
        *,
        max_results: int | None = None,
    ) -> UploadBatch:
        """Lightweight `(id, published_at)` listing of one playlist page."""
        page_size = max(1, min(max_results or self._page_size, MAX_IDS_PER_CALL))
        cache_key = f"plitems:{playlist_id}:{page_token or ''}:{page_size}"
        cached = await self._public_cache.get_with_promotion(
            cache_key,
            self._ttls.list_seconds,
            decode=_decode_upload_batch,
        )
        if isinstance(cached, UploadBatch):
            return cast(UploadBatch, cached)

        payload = await self._gateway.call(
            "playlistItems",
            {
                "part": "contentDetails",
                "playlistId": playlist_id,
                "maxResults": page_size,
                "pageToken": page_token,
            },
        )
        refs: list[VideoRef] = []
        for raw_item in _as_list(payload.get("items")):
            details = _as_dict(_as_dict(raw_item).get("contentDetails"))
            video_id = _coerce_text(details.get("videoId"))
            if video_id:
                refs.append(
                    VideoRef(
                        video_id=video_id,
                        published_at=_coerce_text(details.get("videoPublishedAt")),
                    )
                )
        page_info = _parse_page_info(payload)
        batch = UploadBatch(
            refs=tuple(refs),
            next_page_token=page_info.next_page_token,
            total_results=page_info.total_results,
        )
        self._public_cache.set(cache_key, batch, self._ttls.list_seconds)
        return batch

    async def get_playlist_videos(
        self,
        playlist_id: str,
        page_token: str | None = None,
    ) -> PaginatedResult[VideoItem]:
        batch = await self.list_upload_refs(playlist_id, page_token)
        ids = [ref.video_id for ref in batch.refs]
        videos = order_by_ids(await self.get_video_details(ids), ids, _video_identity)
        return PaginatedResult(
            items=tuple(videos),
            page_info=PageInfo(
                next_page_token=batch.next_page_token,
                total_results=batch.total_results,
            ),
        )

    async def get_channel_videos(
        self,
        channel_id: str,
        page_token: str | None = None,
    ) -> PaginatedResult[VideoItem]:
        uploads = await self.resolve_uploads_stream_ids([channel_id])
        uploads_id = uploads.get(channel_id)
        if uploads_id is None:
            return PaginatedResult(items=(), page_info=PageInfo())
        return await self.get_playlist_videos(uploads_id, page_token)

    # Comments.

    async def get_comments(
        self,
        video_id: str,
        page_token: str | None = None,
    ) -> PaginatedResult[CommentItem]:
        return await self._comment_page(
            cache_key=f"comments:{video_id}:{page_token or ''}",
            endpoint="commentThreads",
            params={
                "part": "snippet",
                "videoId": video_id,
                "order": "relevance",
                "maxResults": self._page_size,
                "pageToken": page_token,
            },
            parse=parse_comment_thread,
        )

    async def get_comment_replies(
        self,
        parent_id: str,
        page_token: str | None = None,
    ) -> PaginatedResult[CommentItem]:
        return await self._comment_page(
            cache_key=f"replies:{parent_id}:{page_token or ''}",
            endpoint="comments",
            params={
                "part": "snippet",
                "parentId": parent_id,
                "textFormat": "plainText",
                "maxResults": self._page_size,
                "pageToken": page_token,
            },
            parse=parse_comment,
        )

    async def _comment_page(
        self,
        *,
        cache_key: str,
        endpoint: str,
        params: dict[str, str | int | None],
        parse: Callable[[dict[str, Any]], CommentItem],
    ) -> PaginatedResult[CommentItem]:
        cached = await self._public_cache.get_with_promotion(
            cache_key,
            self._ttls.list_seconds,
            decode=_page_decoder(_decoder(CommentItem)),
        )
        if isinstance(cached, PaginatedResult):
            return cast(PaginatedResult[CommentItem], cached)

        payload = await self._gateway.call(endpoint, params)
        comments = tuple(
            comment
            for comment in (parse(_as_dict(raw)) for raw in _as_list(payload.get("items")))
            if comment.comment_id
        )
        result = PaginatedResult(items=comments, page_info=_parse_page_info(payload))
        self._public_cache.set(cache_key, result, self._ttls.list_seconds)
        return result

    # Authenticated listings.

    async def get_subscriptions(
        self,
        credential: str,
        page_token: str | None = None,
    ) -> PaginatedResult[ChannelItem]:
        return await self._subscription_page(credential, page_token, self._page_size)

    async def list_subscription_channel_ids(self, credential: str, *, limit: int) -> list[str]:
        channel_ids: list[str] = []
        page_token: str | None = None
        while len(channel_ids) < limit:
            page = await self._subscription_page(
                credential,
                page_token,
                min(MAX_IDS_PER_CALL, limit),
            )
            for channel in page.items:
                if channel.channel_id and channel.channel_id not in channel_ids:
                    channel_ids.append(channel.channel_id)
            page_token = page.page_info.next_page_token
            if not page_token or not page.items:
                break
        return channel_ids[:limit]

    async def _subscription_page(
        self,
        credential: str,
        page_token: str | None,
        max_results: int,
    ) -> PaginatedResult[ChannelItem]:
        cache_key = _user_key(credential, "subs", page_token, max_results)
        cached = await self._user_cache.get_with_promotion(
            cache_key,
            self._ttls.user_seconds,
            decode=_page_decoder(_decoder(ChannelItem)),
        )
        if isinstance(cached, PaginatedResult):
            return cast(PaginatedResult[ChannelItem], cached)

        payload = await self._gateway.call(
            "subscriptions",
            {
                "part": "snippet",
                "mine": True,
                "order": "alphabetical",
                "maxResults": max_results,
                "pageToken": page_token,
            },
            credential=credential,
        )
        channels = tuple(
            channel
            for channel in (
                parse_subscription_item(_as_dict(raw)) for raw in _as_list(payload.get("items"))
            )
            if channel.channel_id
        )
        result = PaginatedResult(items=channels, page_info=_parse_page_info(payload))
        self._user_cache.set(cache_key, result, self._ttls.user_seconds)
        return result

    async def get_liked_videos(
        self,
        credential: str,
        page_token: str | None = None,
    ) -> PaginatedResult[VideoItem]:
        cache_key = _user_key(credential, "liked", page_token)
        cached = await self._user_cache.get_with_promotion(
            cache_key,
            self._ttls.user_seconds,
            decode=_page_decoder(_decoder(VideoItem)),
        )
        if isinstance(cached, PaginatedResult):
            return cast(PaginatedResult[VideoItem], cached)

        payload = await self._gateway.call(
            "videos",
            {
                "part": "snippet,contentDetails,statistics",
                "myRating": "like",
                "maxResults": self._page_size,
                "pageToken": page_token,
            },
            credential=credential,
        )
        videos = tuple(
            video
            for video in (parse_video_item(_as_dict(raw)) for raw in _as_list(payload.get("items")))
            if video.video_id
        )
        result = PaginatedResult(items=videos, page_info=_parse_page_info(payload))
        self._user_cache.set(cache_key, result, self._ttls.user_seconds)
        return result

    async def get_user_playlists(
        self,
        credential: str,
        page_token: str | None = None,
    ) -> PaginatedResult[PlaylistItem]:
        cache_key = _user_key(credential, "playlists", page_token)
        cached = await self._user_cache.get_with_promotion(
            cache_key,
            self._ttls.user_seconds,
            decode=_page_decoder(_decoder(PlaylistItem)),
        )
        if isinstance(cached, PaginatedResult):
            return cast(PaginatedResult[PlaylistItem], cached)

        payload = await self._gateway.call(
            "playlists",
            {
                "part": "snippet,contentDetails",
                "mine": True,
                "maxResults": self._page_size,
                "pageToken": page_token,
            },
            credential=credential,
        )
        playlists = tuple(
            playlist
            for playlist in (
                parse_playlist_item(_as_dict(raw)) for raw in _as_list(payload.get("items"))
            )
            if playlist.playlist_id
        )
        result = PaginatedResult(items=playlists, page_info=_parse_page_info(payload))
        self._user_cache.set(cache_key, result, self._ttls.user_seconds)
        return result

    async def get_user_profile(self, credential: str) -> UserProfile | None:
        cache_key = _user_key(credential, "profile")
        cached = await self._user_cache.get_with_promotion(
            cache_key,
            self._ttls.user_seconds,
            decode=_decoder(UserProfile),
        )
        if isinstance(cached, UserProfile):
            return cached

        try:
            payload = await self._gateway.call(
                "channels",
                {"part": "snippet", "mine": True},
                credential=credential,
            )
        except UpstreamError:
            LOGGER.warning("youtube user profile lookup failed", exc_info=True)
            return None

        items = _as_list(payload.get("items"))
        if not items:
            LOGGER.warning("youtube user profile lookup returned no channels")
            return None
        item = _as_dict(items[0])
        snippet = _as_dict(item.get("snippet"))
        thumbnails = _as_dict(snippet.get("thumbnails"))
        profile = UserProfile(
            channel_id=_coerce_text(item.get("id")),
            channel_title=_coerce_text(snippet.get("title")),
            avatar_url=_coerce_text(_as_dict(thumbnails.get("default")).get("url")),
        )
        self._user_cache.set(cache_key, profile, self._ttls.user_seconds)
        return profile

    # Autocomplete.

    async def get_autocomplete_suggestions(self, query: str) -> list[str]:
        """Suggestions from the search-bar endpoint; never raises and costs no API quota."""
        normalized_query = query.strip()
        if not normalized_query:
            return []

        cache_key = f"autocomplete:{normalized_query}"
        cached = await self._public_cache.get_with_promotion(cache_key, self._ttls.list_seconds)
        if isinstance(cached, list):
            return [item for item in cast(list[Any], cached) if isinstance(item, str)]

        try:
            response = await self._http_client.get(
                self._suggest_url,
                params={"client": "youtube", "ds": "yt", "q": normalized_query},
                timeout=self._suggest_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError:
            LOGGER.warning("youtube suggestions failed query=%s", normalized_query, exc_info=True)
            return []

        suggestions = parse_suggestions(response.text)
        if suggestions:
            self._public_cache.set(cache_key, suggestions, self._ttls.list_seconds)
        return suggestions

    def _ttl_for(self, kind: EntityKind) -> float:
        if kind == "channel":
            return self._ttls.channel_seconds
        if kind == "playlist":
            return self._ttls.playlist_seconds
        return self._ttls.video_seconds


def order_by_ids(items: Iterable[T], ids: Sequence[str], identity: Callable[[T], str]) -> list[T]:
    """Reorder hydrated entities to follow `ids`; ids without an entity are skipped."""
    by_id = {identity(item): item for item in items}
    ordered: list[T] = []
    seen: set[str] = set()
    for entity_id in ids:
        if entity_id in seen:
            continue
        item = by_id.get(entity_id)
        if item is not None:
            ordered.append(item)
            seen.add(entity_id)
    return ordered


# Upstream payload parsing. Missing fields default to "" or 0 instead of raising.


def parse_video_item(item: dict[str, Any]) -> VideoItem:
    snippet = _as_dict(item.get("snippet"))
    content_details = _as_dict(item.get("contentDetails"))
    statistics = _as_dict(item.get("statistics"))
    duration = _coerce_text(content_details.get("duration"))
    return VideoItem(
        video_id=_resource_id(item, "videoId"),
        title=_coerce_text(snippet.get("title")),
        description=_coerce_text(snippet.get("description")),
        thumbnail_url=_thumbnail_url(snippet),
        channel_id=_coerce_text(snippet.get("channelId")),
        channel_title=_coerce_text(snippet.get("channelTitle")),
        published_at=_coerce_text(snippet.get("publishedAt")),
        duration=duration,
        duration_seconds=_parse_iso8601_duration_seconds(duration) or 0,
        view_count=_coerce_int(statistics.get("viewCount")) or 0,
        like_count=_coerce_int(statistics.get("likeCount")) or 0,
        comment_count=_coerce_int(statistics.get("commentCount")) or 0,
        live_broadcast_content=_coerce_text(snippet.get("liveBroadcastContent")),
        category_id=_coerce_text(snippet.get("categoryId")),
    )


def parse_channel_item(item: dict[str, Any]) -> ChannelItem:
    snippet = _as_dict(item.get("snippet"))
    statistics = _as_dict(item.get("statistics"))
    branding_image = _as_dict(_as_dict(item.get("brandingSettings")).get("image"))
    return ChannelItem(
        channel_id=_resource_id(item, "channelId"),
        title=_coerce_text(snippet.get("title")),
        description=_coerce_text(snippet.get("description")),
        thumbnail_url=_thumbnail_url(snippet),
        custom_url=_coerce_text(snippet.get("customUrl")),
        published_at=_coerce_text(snippet.get("publishedAt")),
        subscriber_count=_coerce_int(statistics.get("subscriberCount")) or 0,
        video_count=_coerce_int(statistics.get("videoCount")) or 0,
        view_count=_coerce_int(statistics.get("viewCount")) or 0,
        banner_url=_coerce_text(branding_image.get("bannerExternalUrl")),
    )


def parse_subscription_item(item: dict[str, Any]) -> ChannelItem:
    snippet = _as_dict(item.get("snippet"))
    resource = _as_dict(snippet.get("resourceId"))
    return ChannelItem(
        channel_id=_coerce_text(resource.get("channelId")),
        title=_coerce_text(snippet.get("title")),
        description=_coerce_text(snippet.get("description")),
        thumbnail_url=_thumbnail_url(snippet),
    )


def parse_playlist_item(item: dict[str, Any]) -> PlaylistItem:
    snippet = _as_dict(item.get("snippet"))
    content_details = _as_dict(item.get("contentDetails"))
    return PlaylistItem(
        playlist_id=_resource_id(item, "playlistId"),
        title=_coerce_text(snippet.get("title")),
        description=_coerce_text(snippet.get("description")),
        thumbnail_url=_thumbnail_url(snippet),
        channel_id=_coerce_text(snippet.get("channelId")),
        channel_title=_coerce_text(snippet.get("channelTitle")),
        item_count=_coerce_int(content_details.get("itemCount")) or 0,
    )


def parse_comment_thread(item: dict[str, Any]) -> CommentItem:
    snippet = _as_dict(item.get("snippet"))
    top_level = _as_dict(snippet.get("topLevelComment"))
    comment = parse_comment(top_level)
    return CommentItem(
        comment_id=_coerce_text(item.get("id")) or comment.comment_id,
        author_name=comment.author_name,
        author_avatar_url=comment.author_avatar_url,
        author_channel_id=comment.author_channel_id,
        text=comment.text,
        like_count=comment.like_count,
        published_at=comment.published_at,
        updated_at=comment.updated_at,
        reply_count=_coerce_int(snippet.get("totalReplyCount")) or 0,
    )


def parse_comment(item: dict[str, Any]) -> CommentItem:
    snippet = _as_dict(item.get("snippet"))
    author_channel = _as_dict(snippet.get("authorChannelId"))
    # Plain text is preferred; the HTML rendering would be double-escaped by clients.
    text = _coerce_text(snippet.get("textOriginal")) or _coerce_text(snippet.get("textDisplay"))
    return CommentItem(
        comment_id=_coerce_text(item.get("id")),
        author_name=_coerce_text(snippet.get("authorDisplayName")),
        author_avatar_url=_coerce_text(snippet.get("authorProfileImageUrl")),
        author_channel_id=_coerce_text(author_channel.get("value")),
        text=text,
        like_count=_coerce_int(snippet.get("likeCount")) or 0,
        published_at=_coerce_text(snippet.get("publishedAt")),
        updated_at=_coerce_text(snippet.get("updatedAt")),
    )


def parse_suggestions(raw_body: str) -> list[str]:
    """Parse the JSONP body `window.google.ac.h([query, [[suggestion, ...], ...], ...])`."""
    matched = _JSONP_ARRAY_PATTERN.search(raw_body)
    if matched is None:
        return []
    try:
        parsed = json.loads(matched.group(0))
    except json.JSONDecodeError:
        return []
    entries = _as_list(parsed)
    if len(entries) < 2:
        return []
    suggestions: list[str] = []
    for entry in _as_list(entries[1]):
        values = _as_list(entry)
        if values and isinstance(values[0], str) and values[0].strip():
            suggestions.append(values[0])
    return suggestions


def _parse_search_ref(item: dict[str, Any]) -> _SearchRef | None:
    raw_id = _as_dict(item.get("id"))
    kind_marker = _coerce_text(raw_id.get("kind"))
    candidates: tuple[tuple[EntityKind, str], ...] = (
        ("video", "videoId"),
        ("channel", "channelId"),
        ("playlist", "playlistId"),
    )
    for kind, field_name in candidates:
        entity_id = _coerce_text(raw_id.get(field_name))
        if entity_id and (not kind_marker or kind_marker.endswith(f"#{kind}")):
            return _SearchRef(kind=kind, entity_id=entity_id)
    return None


def _parse_page_info(payload: dict[str, Any]) -> PageInfo:
    page_info = _as_dict(payload.get("pageInfo"))
    return PageInfo(
        next_page_token=_coerce_text(payload.get("nextPageToken")) or None,
        total_results=_coerce_int(page_info.get("totalResults")) or 0,
    )


def _resource_id(item: dict[str, Any], nested_field: str) -> str:
    raw_id = item.get("id")
    if isinstance(raw_id, str):
        return raw_id
    return _coerce_text(_as_dict(raw_id).get(nested_field))


def _thumbnail_url(snippet: dict[str, Any]) -> str:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for quality in ("medium", "default"):
        url = _coerce_text(_as_dict(thumbnails.get(quality)).get("url"))
        if url:
            return url
    return ""


def _parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def _user_key(credential: str, resource: str, *parts: object) -> str:
    suffix = ":".join("" if part is None else str(part) for part in parts)
    return f"{credential_fragment(credential)}:{resource}:{suffix}"


def _unique_nonempty(ids: Iterable[str]) -> list[str]:
    return [entity_id for entity_id in dict.fromkeys(raw.strip() for raw in ids) if entity_id]


def _video_identity(item: VideoItem) -> str:
    return item.video_id


def _channel_identity(item: ChannelItem) -> str:
    return item.channel_id


def _playlist_identity(item: PlaylistItem) -> str:
    return item.playlist_id


# L2 payload decoders. Payloads are the `asdict` form written by TwoTierCache.


def _decoder(cls: type[T]) -> Callable[[Any], T]:
    names = {field.name for field in fields(cast(Any, cls))}

    def decode(payload: Any) -> T:
        data = _as_dict(payload)
        return cls(**{key: value for key, value in data.items() if key in names})

    return decode


def _list_decoder(item_decoder: Callable[[Any], T]) -> Callable[[Any], list[T]]:
    def decode(payload: Any) -> list[T]:
        if not isinstance(payload, list):
            raise TypeError("expected a list payload")
        return [item_decoder(item) for item in cast(list[Any], payload)]

    return decode


def _decode_page_info(payload: Any) -> PageInfo:
    data = _as_dict(payload)
    return PageInfo(
        next_page_token=_coerce_text(data.get("next_page_token")) or None,
        total_results=_coerce_int(data.get("total_results")) or 0,
    )


def _page_decoder(item_decoder: Callable[[Any], T]) -> Callable[[Any], PaginatedResult[T]]:
    def decode(payload: Any) -> PaginatedResult[T]:
        data = _as_dict(payload)
        return PaginatedResult(
            items=tuple(item_decoder(item) for item in _as_list(data.get("items"))),
            page_info=_decode_page_info(data.get("page_info")),
        )

    return decode


def _decode_search_page(payload: Any) -> _SearchPage:
    data = _as_dict(payload)
    refs: list[_SearchRef] = []
    for raw_ref in _as_list(data.get("refs")):
        ref = _as_dict(raw_ref)
        kind = ref.get("kind")
        entity_id = _coerce_text(ref.get("entity_id"))
        if kind in SEARCH_TYPES and entity_id:
            refs.append(_SearchRef(kind=cast(EntityKind, kind), entity_id=entity_id))
    return _SearchPage(refs=tuple(refs), page_info=_decode_page_info(data.get("page_info")))


def _decode_id_page(payload: Any) -> _IdPage:
    data = _as_dict(payload)
    ids = tuple(_coerce_text(raw) for raw in _as_list(data.get("ids")))
    return _IdPage(
        ids=tuple(entity_id for entity_id in ids if entity_id),
        page_info=_decode_page_info(data.get("page_info")),
    )


def _decode_upload_batch(payload: Any) -> UploadBatch:
    data = _as_dict(payload)
    return UploadBatch(
        refs=tuple(_decoder(VideoRef)(raw) for raw in _as_list(data.get("refs"))),
        next_page_token=_coerce_text(data.get("next_page_token")) or None,
        total_results=_coerce_int(data.get("total_results")) or 0,
    )


def _coerce_text(raw_value: object) -> str:
    if isinstance(raw_value, str):
        return raw_value
    return ""


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
