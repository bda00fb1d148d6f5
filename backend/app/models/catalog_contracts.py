from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

VideoSource = Literal["trending", "search", "channel", "playlist", "liked", "subfeed"]
EntityKindName = Literal["video", "channel", "playlist"]


def _default_videos() -> list[VideoModel]:
    return []


def _default_channels() -> list[ChannelModel]:
    return []


def _default_playlists() -> list[PlaylistModel]:
    return []


class VideoModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")

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


class ChannelModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")

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


class PlaylistModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")

    playlist_id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str = ""
    channel_id: str = ""
    channel_title: str = ""
    item_count: int = 0


class CommentModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")

    comment_id: str
    author_name: str = ""
    author_avatar_url: str = ""
    author_channel_id: str = ""
    text: str = ""
    like_count: int = 0
    published_at: str = ""
    updated_at: str = ""
    reply_count: int = 0


class CategoryModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")

    category_id: str
    title: str


class UserProfileModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")

    channel_id: str
    channel_title: str
    avatar_url: str


class VideoListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: VideoSource
    items: list[VideoModel] = Field(default_factory=_default_videos)
    next_page_token: str | None = None
    total_results: int = 0
    cursor: str | None = Field(
        default=None,
        description="Opaque subscription feed cursor. Send it back unchanged to get the next page.",
    )


class SearchHitModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: EntityKindName
    video: VideoModel | None = None
    channel: ChannelModel | None = None
    playlist: PlaylistModel | None = None


class SearchResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str
    items: list[SearchHitModel]
    next_page_token: str | None = None
    total_results: int = 0


class DetailsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: EntityKindName
    videos: list[VideoModel] = Field(default_factory=_default_videos)
    channels: list[ChannelModel] = Field(default_factory=_default_channels)
    playlists: list[PlaylistModel] = Field(default_factory=_default_playlists)


class CategoriesResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[CategoryModel]


class CommentListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[CommentModel]
    next_page_token: str | None = None


class ChannelListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[ChannelModel]
    next_page_token: str | None = None
    total_results: int = 0


class PlaylistListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[PlaylistModel]
    next_page_token: str | None = None
    total_results: int = 0


class SuggestResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str
    suggestions: list[str]


class QuotaStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    exhausted: bool
    reset_at: datetime | None = None
    retry_after_seconds: int = 0


class QuotaExhaustedResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    detail: str
    reset_at: datetime
    retry_after_seconds: int
