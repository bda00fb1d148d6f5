from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Sequence
from typing import Annotated, Any, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.dependencies import (
    get_catalog_service,
    get_feed_service,
    get_quota_breaker,
    get_shorts_classifier,
)
from backend.app.models.catalog_contracts import (
    CategoriesResponse,
    CategoryModel,
    ChannelListResponse,
    ChannelModel,
    CommentListResponse,
    CommentModel,
    DetailsResponse,
    EntityKindName,
    PlaylistListResponse,
    PlaylistModel,
    QuotaStatusResponse,
    SearchHitModel,
    SearchResponse,
    SuggestResponse,
    UserProfileModel,
    VideoListResponse,
    VideoModel,
    VideoSource,
)
from backend.app.services.quota_breaker import QuotaBreaker
from backend.app.services.shorts_filter import ShortsClassifier
from backend.app.services.subscription_feed import SubscriptionFeedService
from backend.app.services.youtube_catalog_service import (
    MAX_IDS_PER_CALL,
    SEARCH_TYPES,
    ChannelItem,
    PageInfo,
    PaginatedResult,
    PlaylistItem,
    VideoItem,
    YouTubeCatalogService,
    order_by_ids,
)
from backend.app.services.youtube_errors import InvalidFeedCursorError, UpstreamError

LOGGER = logging.getLogger("shortless.api")

MAX_PAGE_TOKEN_LENGTH = 200
MAX_QUERY_LENGTH = 500
MAX_CHANNEL_ID_LENGTH = 30
MAX_ENTITY_ID_LENGTH = 64
MAX_CURSOR_LENGTH = 5000

T = TypeVar("T")

router = APIRouter(prefix="/api")

CatalogDep = Annotated[YouTubeCatalogService, Depends(get_catalog_service)]
ShortsDep = Annotated[ShortsClassifier, Depends(get_shorts_classifier)]


def get_bearer_credential(
    authorization: Annotated[str | None, Header()] = None,
) -> str | None:
    if authorization is None:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


CredentialDep = Annotated[str | None, Depends(get_bearer_credential)]


def _require_credential(credential: str | None) -> str:
    if credential is None:
        raise HTTPException(
            status_code=401,
            detail="This source requires an OAuth bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credential


def _check_length(name: str, value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    if len(value) > limit:
        raise HTTPException(status_code=400, detail=f"{name} must be at most {limit} characters.")
    return value


def _require_text(name: str, value: str | None, limit: int) -> str:
    normalized = (_check_length(name, value, limit) or "").strip()
    if not normalized:
        raise HTTPException(status_code=400, detail=f"{name} is required.")
    return normalized


def _split_ids(raw_ids: str) -> list[str]:
    ids = [part.strip() for part in raw_ids.split(",") if part.strip()]
    if not ids:
        raise HTTPException(status_code=400, detail="ids must contain at least one id.")
    if len(ids) > MAX_IDS_PER_CALL:
        raise HTTPException(
            status_code=400,
            detail=f"ids must contain at most {MAX_IDS_PER_CALL} ids.",
        )
    for entity_id in ids:
        _check_length("ids", entity_id, MAX_ENTITY_ID_LENGTH)
    return ids


def _decode_cursor(raw_cursor: str | None) -> list[dict[str, Any]] | None:
    if raw_cursor is None or not raw_cursor.strip():
        return None
    _check_length("cursor", raw_cursor, MAX_CURSOR_LENGTH)
    try:
        decoded = json.loads(raw_cursor)
    except ValueError as exc:
        raise InvalidFeedCursorError("Cursor is not valid JSON.") from exc
    if not isinstance(decoded, list):
        raise InvalidFeedCursorError("Cursor must be a list.")
    return decoded


async def _best_effort(
    label: str,
    pending: Awaitable[PaginatedResult[T]],
) -> PaginatedResult[T]:
    try:
        return await pending
    except UpstreamError as exc:
        LOGGER.warning(
            "listing degraded to empty source=%s endpoint=%s status=%s",
            label,
            exc.endpoint,
            exc.status_code,
        )
        return PaginatedResult(items=(), page_info=PageInfo())


def _video_models(videos: Sequence[VideoItem]) -> list[VideoModel]:
    return [VideoModel.model_validate(video) for video in videos]


@router.get(
    "/quota",
    response_model=QuotaStatusResponse,
    tags=["system"],
    operation_id="quota_status",
)
def quota_status(
    breaker: Annotated[QuotaBreaker, Depends(get_quota_breaker)],
) -> QuotaStatusResponse:
    status = breaker.status()
    return QuotaStatusResponse(
        exhausted=status.exhausted,
        reset_at=status.reset_at,
        retry_after_seconds=status.retry_after_seconds,
    )


@router.get(
    "/videos",
    response_model=VideoListResponse,
    tags=["videos"],
    operation_id="list_videos",
)
async def list_videos(
    catalog: CatalogDep,
    shorts: ShortsDep,
    feed: Annotated[SubscriptionFeedService, Depends(get_feed_service)],
    credential: CredentialDep,
    source: VideoSource = "trending",
    page_token: Annotated[str | None, Query(alias="pageToken")] = None,
    q: str | None = None,
    channel_id: str | None = None,
    playlist_id: str | None = None,
    category_id: str | None = None,
    duration: str | None = None,
    order: str | None = None,
    cursor: str | None = None,
) -> VideoListResponse:
    page_token = _check_length("pageToken", page_token, MAX_PAGE_TOKEN_LENGTH) or None
    context_tokens = bind_contextvars(video_source=source)
    try:
        if source == "subfeed":
            subscriber = _require_credential(credential)
            raw_cursor = _decode_cursor(cursor)
            try:
                feed_page = await feed.get_subscription_feed(subscriber, raw_cursor)
            except UpstreamError as exc:
                LOGGER.warning(
                    "listing degraded to empty source=subfeed endpoint=%s status=%s",
                    exc.endpoint,
                    exc.status_code,
                )
                # A missing cursor means end of feed; echo the request's so the client retries.
                return VideoListResponse(
                    source=source,
                    cursor=json.dumps(raw_cursor) if raw_cursor is not None else None,
                )
            kept = await shorts.filter_videos(feed_page.items)
            return VideoListResponse(
                source=source,
                items=_video_models(kept),
                cursor=json.dumps(feed_page.cursor) if feed_page.cursor is not None else None,
            )

        result = await _best_effort(
            source,
            _load_video_page(
                catalog,
                source=source,
                credential=credential,
                page_token=page_token,
                q=q,
                channel_id=channel_id,
                playlist_id=playlist_id,
                category_id=category_id,
                duration=duration,
                order=order,
            ),
        )
        kept = await shorts.filter_videos(result.items)
        return VideoListResponse(
            source=source,
            items=_video_models(kept),
            next_page_token=result.page_info.next_page_token,
            total_results=result.page_info.total_results,
        )
    finally:
        reset_contextvars(**context_tokens)


def _load_video_page(
    catalog: YouTubeCatalogService,
    *,
    source: VideoSource,
    credential: str | None,
    page_token: str | None,
    q: str | None,
    channel_id: str | None,
    playlist_id: str | None,
    category_id: str | None,
    duration: str | None,
    order: str | None,
) -> Awaitable[PaginatedResult[VideoItem]]:
    if source == "search":
        return catalog.search_videos(
            _require_text("q", q, MAX_QUERY_LENGTH),
            page_token=page_token,
            duration=duration,
            order=order,
        )
    if source == "channel":
        return catalog.get_channel_videos(
            _require_text("channel_id", channel_id, MAX_CHANNEL_ID_LENGTH),
            page_token,
        )
    if source == "playlist":
        return catalog.get_playlist_videos(
            _require_text("playlist_id", playlist_id, MAX_ENTITY_ID_LENGTH),
            page_token,
        )
    if source == "liked":
        return catalog.get_liked_videos(_require_credential(credential), page_token)
    return catalog.get_trending(
        _check_length("category_id", category_id, MAX_ENTITY_ID_LENGTH) or None,
        page_token,
    )


@router.get(
    "/search",
    response_model=SearchResponse,
    tags=["search"],
    operation_id="search",
)
async def search(
    catalog: CatalogDep,
    shorts: ShortsDep,
    q: str,
    result_type: Annotated[EntityKindName | None, Query(alias="type")] = None,
    page_token: Annotated[str | None, Query(alias="pageToken")] = None,
) -> SearchResponse:
    query = _require_text("q", q, MAX_QUERY_LENGTH)
    page_token = _check_length("pageToken", page_token, MAX_PAGE_TOKEN_LENGTH) or None
    types = (result_type,) if result_type is not None else SEARCH_TYPES
    result = await _best_effort(
        "search",
        catalog.search_mixed(query, types, page_token=page_token),
    )

    videos = [hit.item for hit in result.items if isinstance(hit.item, VideoItem)]
    kept_ids = {video.video_id for video in await shorts.filter_videos(videos)}
    hits: list[SearchHitModel] = []
    for hit in result.items:
        item = hit.item
        if isinstance(item, VideoItem):
            if item.video_id in kept_ids:
                hits.append(SearchHitModel(kind="video", video=VideoModel.model_validate(item)))
        elif isinstance(item, ChannelItem):
            hits.append(SearchHitModel(kind="channel", channel=ChannelModel.model_validate(item)))
        elif isinstance(item, PlaylistItem):
            hits.append(
                SearchHitModel(kind="playlist", playlist=PlaylistModel.model_validate(item))
            )
    return SearchResponse(
        query=query,
        items=hits,
        next_page_token=result.page_info.next_page_token,
        total_results=result.page_info.total_results,
    )


@router.get(
    "/details",
    response_model=DetailsResponse,
    tags=["videos"],
    operation_id="entity_details",
)
async def entity_details(
    catalog: CatalogDep,
    kind: EntityKindName,
    ids: str,
) -> DetailsResponse:
    requested_ids = _split_ids(ids)
    if kind == "video":
        videos = order_by_ids(
            await catalog.get_video_details(requested_ids),
            requested_ids,
            lambda video: video.video_id,
        )
        return DetailsResponse(kind=kind, videos=_video_models(videos))
    if kind == "channel":
        channels = order_by_ids(
            await catalog.get_channel_details(requested_ids),
            requested_ids,
            lambda channel: channel.channel_id,
        )
        return DetailsResponse(
            kind=kind,
            channels=[ChannelModel.model_validate(channel) for channel in channels],
        )
    playlists = order_by_ids(
        await catalog.get_playlist_details(requested_ids),
        requested_ids,
        lambda playlist: playlist.playlist_id,
    )
    return DetailsResponse(
        kind=kind,
        playlists=[PlaylistModel.model_validate(playlist) for playlist in playlists],
    )


@router.get(
    "/categories",
    response_model=CategoriesResponse,
    tags=["videos"],
    operation_id="video_categories",
)
async def video_categories(catalog: CatalogDep) -> CategoriesResponse:
    try:
        categories = await catalog.get_video_categories()
    except UpstreamError as exc:
        LOGGER.warning("categories degraded to empty status=%s", exc.status_code)
        categories = []
    return CategoriesResponse(
        items=[CategoryModel.model_validate(category) for category in categories]
    )


@router.get(
    "/comments",
    response_model=CommentListResponse,
    tags=["comments"],
    operation_id="list_comments",
)
async def list_comments(
    catalog: CatalogDep,
    video_id: str,
    page_token: Annotated[str | None, Query(alias="pageToken")] = None,
) -> CommentListResponse:
    normalized_id = _require_text("video_id", video_id, MAX_ENTITY_ID_LENGTH)
    page_token = _check_length("pageToken", page_token, MAX_PAGE_TOKEN_LENGTH) or None
    result = await _best_effort("comments", catalog.get_comments(normalized_id, page_token))
    return CommentListResponse(
        items=[CommentModel.model_validate(comment) for comment in result.items],
        next_page_token=result.page_info.next_page_token,
    )


@router.get(
    "/replies",
    response_model=CommentListResponse,
    tags=["comments"],
    operation_id="list_comment_replies",
)
async def list_comment_replies(
    catalog: CatalogDep,
    comment_id: str,
    page_token: Annotated[str | None, Query(alias="pageToken")] = None,
) -> CommentListResponse:
    normalized_id = _require_text("comment_id", comment_id, MAX_ENTITY_ID_LENGTH)
    page_token = _check_length("pageToken", page_token, MAX_PAGE_TOKEN_LENGTH) or None
    result = await _best_effort(
        "replies",
        catalog.get_comment_replies(normalized_id, page_token),
    )
    return CommentListResponse(
        items=[CommentModel.model_validate(comment) for comment in result.items],
        next_page_token=result.page_info.next_page_token,
    )


@router.get(
    "/suggest",
    response_model=SuggestResponse,
    tags=["search"],
    operation_id="search_suggestions",
)
async def search_suggestions(catalog: CatalogDep, q: str = "") -> SuggestResponse:
    query = (_check_length("q", q, MAX_QUERY_LENGTH) or "").strip()
    return SuggestResponse(
        query=query,
        suggestions=await catalog.get_autocomplete_suggestions(query),
    )


@router.get(
    "/me",
    response_model=UserProfileModel | None,
    tags=["account"],
    operation_id="user_profile",
)
async def user_profile(catalog: CatalogDep, credential: CredentialDep) -> UserProfileModel | None:
    profile = await catalog.get_user_profile(_require_credential(credential))
    if profile is None:
        return None
    return UserProfileModel.model_validate(profile)


@router.get(
    "/me/subscriptions",
    response_model=ChannelListResponse,
    tags=["account"],
    operation_id="user_subscriptions",
)
async def user_subscriptions(
    catalog: CatalogDep,
    credential: CredentialDep,
    page_token: Annotated[str | None, Query(alias="pageToken")] = None,
) -> ChannelListResponse:
    page_token = _check_length("pageToken", page_token, MAX_PAGE_TOKEN_LENGTH) or None
    result = await _best_effort(
        "subscriptions",
        catalog.get_subscriptions(_require_credential(credential), page_token),
    )
    return ChannelListResponse(
        items=[ChannelModel.model_validate(channel) for channel in result.items],
        next_page_token=result.page_info.next_page_token,
        total_results=result.page_info.total_results,
    )


@router.get(
    "/me/playlists",
    response_model=PlaylistListResponse,
    tags=["account"],
    operation_id="user_playlists",
)
async def user_playlists(
    catalog: CatalogDep,
    credential: CredentialDep,
    page_token: Annotated[str | None, Query(alias="pageToken")] = None,
) -> PlaylistListResponse:
    page_token = _check_length("pageToken", page_token, MAX_PAGE_TOKEN_LENGTH) or None
    result = await _best_effort(
        "playlists",
        catalog.get_user_playlists(_require_credential(credential), page_token),
    )
    return PlaylistListResponse(
        items=[PlaylistModel.model_validate(playlist) for playlist in result.items],
        next_page_token=result.page_info.next_page_token,
        total_results=result.page_info.total_results,
    )
