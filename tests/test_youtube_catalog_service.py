from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from backend.app.services.quota_breaker import QuotaBreaker
from backend.app.services.two_tier_cache import TwoTierCache
from backend.app.services.youtube_catalog_service import (
    VideoItem,
    YouTubeCatalogService,
    order_by_ids,
    parse_comment,
    parse_suggestions,
    parse_video_item,
)
from backend.app.services.youtube_errors import QuotaExhaustedError, UpstreamError
from backend.app.services.youtube_gateway import YouTubeGatewayClient
from tests.support import FakeRemoteStore

Handler = Callable[[httpx.Request], httpx.Response]


def _video_payload(video_id: str, *, duration: str = "PT10M", views: int = 100) -> dict[str, Any]:
    return {
        "id": video_id,
        "snippet": {
            "title": f"Video {video_id}",
            "channelId": "UC1",
            "channelTitle": "Channel One",
            "publishedAt": "2026-01-01T00:00:00Z",
            "thumbnails": {
                "default": {"url": f"https://i.test/{video_id}/default.jpg"},
                "medium": {"url": f"https://i.test/{video_id}/medium.jpg"},
            },
        },
        "contentDetails": {"duration": duration},
        "statistics": {"viewCount": str(views), "likeCount": "5"},
    }


class _FakeYouTube:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, Handler] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        endpoint = request.url.path.rsplit("/", 1)[-1]
        handler = self.routes.get(endpoint)
        if handler is None:
            return httpx.Response(404, text=f"no route for {endpoint}")
        return handler(request)

    def calls_to(self, endpoint: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith(f"/{endpoint}")]


def _videos_by_id(request: httpx.Request) -> httpx.Response:
    ids = request.url.params.get("id", "").split(",")
    return httpx.Response(200, json={"items": [_video_payload(video_id) for video_id in ids]})


def _catalog(
    fake: _FakeYouTube,
    *,
    remote_store: FakeRemoteStore | None = None,
    suggest_handler: Handler | None = None,
) -> YouTubeCatalogService:
    def transport_handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "suggest.test":
            assert suggest_handler is not None
            return suggest_handler(request)
        return fake(request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(transport_handler))
    gateway = YouTubeGatewayClient(
        http_client=http_client,
        api_key="test-key",
        breaker=QuotaBreaker(clock=lambda: datetime(2026, 1, 10, tzinfo=UTC)),
        base_url="https://youtube.test/v3",
    )
    return YouTubeCatalogService(
        gateway=gateway,
        public_cache=TwoTierCache(prefix="pub:", remote_store=remote_store),
        user_cache=TwoTierCache(prefix="usr:", remote_store=remote_store),
        http_client=http_client,
        suggest_url="https://suggest.test/complete/search",
    )


def test_get_details_fetches_only_uncached_ids() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = _videos_by_id
    catalog = _catalog(fake)

    async def scenario() -> tuple[list[VideoItem], list[VideoItem]]:
        first = await catalog.get_video_details(["a", "b"])
        second = await catalog.get_video_details(["b", "c", "a"])
        return first, second

    first, second = asyncio.run(scenario())

    assert {video.video_id for video in first} == {"a", "b"}
    assert {video.video_id for video in second} == {"a", "b", "c"}
    video_calls = fake.calls_to("videos")
    assert [call.url.params["id"] for call in video_calls] == ["a,b", "c"]


def test_get_details_batches_requests_by_fifty() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = _videos_by_id
    catalog = _catalog(fake)
    ids = [f"v{index}" for index in range(120)]

    videos = asyncio.run(catalog.get_video_details(ids))

    assert len(videos) == 120
    batch_sizes = [len(call.url.params["id"].split(",")) for call in fake.calls_to("videos")]
    assert batch_sizes == [50, 50, 20]


def _second_batch_fails(status_code: int, body: str) -> Handler:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 2:
            return httpx.Response(status_code, text=body)
        return _videos_by_id(request)

    return handler


def test_get_details_keeps_successful_batches_when_one_fails() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = _second_batch_fails(500, "backend error")
    catalog = _catalog(fake)
    ids = [f"v{index}" for index in range(60)]

    videos = asyncio.run(catalog.get_video_details(ids))

    assert {video.video_id for video in videos} == set(ids[:50])
    assert len(fake.calls_to("videos")) == 2


def test_get_details_strict_mode_raises_upstream_errors() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = lambda request: httpx.Response(503, text="unavailable")
    catalog = _catalog(fake)

    with pytest.raises(UpstreamError):
        asyncio.run(catalog.get_video_details(["a"], best_effort=False))


def test_get_details_propagates_quota_exhaustion_from_a_batch() -> None:
    quota_body = json.dumps({"error": {"code": 403, "errors": [{"reason": "quotaExceeded"}]}})
    fake = _FakeYouTube()
    fake.routes["videos"] = _second_batch_fails(403, quota_body)
    catalog = _catalog(fake)

    with pytest.raises(QuotaExhaustedError):
        asyncio.run(catalog.get_video_details([f"v{index}" for index in range(60)]))


def test_get_details_reads_remote_cache_before_upstream() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = _videos_by_id
    remote_store = FakeRemoteStore()
    remote_store.values["pub:video:warm"] = json.dumps(
        {"video_id": "warm", "title": "From L2", "duration_seconds": 600}
    )
    catalog = _catalog(fake, remote_store=remote_store)

    videos = asyncio.run(catalog.get_video_details(["warm", "cold"]))

    by_id = {video.video_id: video for video in videos}
    assert by_id["warm"].title == "From L2"
    assert by_id["cold"].title == "Video cold"
    assert [call.url.params["id"] for call in fake.calls_to("videos")] == ["cold"]


def test_search_results_are_rehydrated_in_search_order() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = _videos_by_id
    fake.routes["search"] = lambda request: httpx.Response(
        200,
        json={
            "nextPageToken": "NEXT",
            "pageInfo": {"totalResults": 2},
            "items": [
                {"id": {"kind": "youtube#video", "videoId": "z"}},
                {"id": {"kind": "youtube#video", "videoId": "y"}},
            ],
        },
    )
    catalog = _catalog(fake)

    async def scenario() -> list[str]:
        first = await catalog.search_videos("cats", duration="long", order="date")
        await catalog.search_videos("cats", duration="long", order="date")
        assert first.page_info.next_page_token == "NEXT"
        return [video.video_id for video in first.items]

    assert asyncio.run(scenario()) == ["z", "y"]
    search_calls = fake.calls_to("search")
    assert len(search_calls) == 1
    assert search_calls[0].url.params["videoDuration"] == "long"
    assert search_calls[0].url.params["type"] == "video"


def test_search_mixed_returns_kind_tagged_hits() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = _videos_by_id
    fake.routes["channels"] = lambda request: httpx.Response(
        200,
        json={"items": [{"id": "UCx", "snippet": {"title": "Chan X"}}]},
    )
    fake.routes["search"] = lambda request: httpx.Response(
        200,
        json={
            "items": [
                {"id": {"kind": "youtube#channel", "channelId": "UCx"}},
                {"id": {"kind": "youtube#video", "videoId": "v1"}},
            ]
        },
    )
    catalog = _catalog(fake)

    result = asyncio.run(catalog.search_mixed("x", ("video", "channel")))

    assert [(hit.kind, type(hit.item).__name__) for hit in result.items] == [
        ("channel", "ChannelItem"),
        ("video", "VideoItem"),
    ]
    assert fake.calls_to("search")[0].url.params["type"] == "video,channel"


def test_blank_search_query_makes_no_call() -> None:
    fake = _FakeYouTube()
    catalog = _catalog(fake)

    result = asyncio.run(catalog.search_videos("   "))

    assert result.items == ()
    assert fake.requests == []


def test_trending_caches_page_and_shares_video_entries() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = lambda request: (
        httpx.Response(200, json={"items": [_video_payload("t1"), _video_payload("t2")]})
        if request.url.params.get("chart") == "mostPopular"
        else _videos_by_id(request)
    )
    catalog = _catalog(fake)

    async def scenario() -> None:
        first = await catalog.get_trending()
        second = await catalog.get_trending()
        details = await catalog.get_video_details(["t2"])
        assert [video.video_id for video in first.items] == ["t1", "t2"]
        assert [video.video_id for video in second.items] == ["t1", "t2"]
        assert details[0].video_id == "t2"

    asyncio.run(scenario())

    assert len(fake.calls_to("videos")) == 1


def test_categories_keep_only_assignable_entries() -> None:
    fake = _FakeYouTube()
    fake.routes["videoCategories"] = lambda request: httpx.Response(
        200,
        json={
            "items": [
                {"id": "10", "snippet": {"title": "Music", "assignable": True}},
                {"id": "18", "snippet": {"title": "Short Movies", "assignable": False}},
            ]
        },
    )
    catalog = _catalog(fake)

    categories = asyncio.run(catalog.get_video_categories())

    assert [(category.category_id, category.title) for category in categories] == [("10", "Music")]


def test_channel_videos_resolve_uploads_playlist_once() -> None:
    fake = _FakeYouTube()
    fake.routes["videos"] = _videos_by_id
    fake.routes["channels"] = lambda request: httpx.Response(
        200,
        json={"items": [{"id": "UC1", "contentDetails": {"relatedPlaylists": {"uploads": "UU1"}}}]},
    )
    fake.routes["playlistItems"] = lambda request: httpx.Response(
        200,
        json={
            "items": [
                {"contentDetails": {"videoId": "p2", "videoPublishedAt": "2026-01-02T00:00:00Z"}},
                {"contentDetails": {"videoId": "p1", "videoPublishedAt": "2026-01-01T00:00:00Z"}},
            ]
        },
    )
    catalog = _catalog(fake)

    async def scenario() -> list[str]:
        first = await catalog.get_channel_videos("UC1")
        await catalog.get_channel_videos("UC1", "TOKEN2")
        return [video.video_id for video in first.items]

    assert asyncio.run(scenario()) == ["p2", "p1"]
    assert len(fake.calls_to("channels")) == 1
    assert fake.calls_to("playlistItems")[0].url.params["playlistId"] == "UU1"


def test_channel_without_uploads_playlist_yields_empty_page() -> None:
    fake = _FakeYouTube()
    fake.routes["channels"] = lambda request: httpx.Response(200, json={"items": []})
    catalog = _catalog(fake)

    result = asyncio.run(catalog.get_channel_videos("UCmissing"))

    assert result.items == ()
    assert fake.calls_to("playlistItems") == []


def test_user_listings_are_isolated_per_credential() -> None:
    fake = _FakeYouTube()

    def liked(request: httpx.Request) -> httpx.Response:
        token = request.headers["authorization"].removeprefix("Bearer ")
        return httpx.Response(200, json={"items": [_video_payload(f"liked-by-{token}")]})

    fake.routes["videos"] = liked
    catalog = _catalog(fake)

    async def scenario() -> tuple[list[str], list[str], list[str]]:
        alice = await catalog.get_liked_videos("alice")
        bob = await catalog.get_liked_videos("bob")
        alice_again = await catalog.get_liked_videos("alice")
        return (
            [video.video_id for video in alice.items],
            [video.video_id for video in bob.items],
            [video.video_id for video in alice_again.items],
        )

    alice, bob, alice_again = asyncio.run(scenario())

    assert alice == ["liked-by-alice"]
    assert bob == ["liked-by-bob"]
    assert alice_again == alice
    assert len(fake.calls_to("videos")) == 2


def test_subscription_channel_ids_follow_pages_up_to_limit() -> None:
    fake = _FakeYouTube()

    def subscriptions(request: httpx.Request) -> httpx.Response:
        assert request.url.params["order"] == "alphabetical"
        if request.url.params.get("pageToken") == "P2":
            items = [{"snippet": {"resourceId": {"channelId": "UC3"}}}]
            return httpx.Response(200, json={"items": items})
        items = [
            {"snippet": {"resourceId": {"channelId": "UC1"}}},
            {"snippet": {"resourceId": {"channelId": "UC2"}}},
        ]
        return httpx.Response(200, json={"items": items, "nextPageToken": "P2"})

    fake.routes["subscriptions"] = subscriptions
    catalog = _catalog(fake)

    assert asyncio.run(catalog.list_subscription_channel_ids("token", limit=3)) == [
        "UC1",
        "UC2",
        "UC3",
    ]
    assert asyncio.run(catalog.list_subscription_channel_ids("token", limit=2)) == ["UC1", "UC2"]


def test_user_profile_failure_returns_none() -> None:
    fake = _FakeYouTube()
    fake.routes["channels"] = lambda request: httpx.Response(401, text="invalid credentials")
    catalog = _catalog(fake)

    assert asyncio.run(catalog.get_user_profile("expired")) is None


def test_comments_prefer_original_text_and_cache_pages() -> None:
    fake = _FakeYouTube()
    fake.routes["commentThreads"] = lambda request: httpx.Response(
        200,
        json={
            "items": [
                {
                    "id": "c1",
                    "snippet": {
                        "totalReplyCount": 2,
                        "topLevelComment": {
                            "id": "c1",
                            "snippet": {
                                "authorDisplayName": "Ann",
                                "textDisplay": "a &amp; b",
                                "textOriginal": "a & b",
                            },
                        },
                    },
                }
            ]
        },
    )
    catalog = _catalog(fake)

    async def scenario() -> None:
        first = await catalog.get_comments("v1")
        await catalog.get_comments("v1")
        comment = first.items[0]
        assert comment.text == "a & b"
        assert comment.reply_count == 2
        assert comment.author_name == "Ann"

    asyncio.run(scenario())

    assert len(fake.calls_to("commentThreads")) == 1


def test_suggestions_parse_jsonp_and_swallow_failures() -> None:
    body = 'window.google.ac.h(["cat",[["cat videos",0],["cats",0]],{"k":1}])'
    fake = _FakeYouTube()
    catalog = _catalog(fake, suggest_handler=lambda request: httpx.Response(200, text=body))
    failing = _catalog(fake, suggest_handler=lambda request: httpx.Response(500, text="nope"))

    assert asyncio.run(catalog.get_autocomplete_suggestions("cat")) == ["cat videos", "cats"]
    assert asyncio.run(failing.get_autocomplete_suggestions("cat")) == []
    assert asyncio.run(catalog.get_autocomplete_suggestions("  ")) == []


def test_parse_helpers_tolerate_sparse_payloads() -> None:
    video = parse_video_item({"id": "bare"})
    assert video.video_id == "bare"
    assert video.duration_seconds == 0
    assert video.thumbnail_url == ""

    thumb_fallback = parse_video_item(
        {"id": "x", "snippet": {"thumbnails": {"default": {"url": "d.jpg"}}}}
    )
    assert thumb_fallback.thumbnail_url == "d.jpg"

    long_video = parse_video_item({"id": "y", "contentDetails": {"duration": "P1DT1H2M3S"}})
    assert long_video.duration_seconds == 86_400 + 3_600 + 123

    comment = parse_comment({"id": "c", "snippet": {"textDisplay": "only display"}})
    assert comment.text == "only display"

    assert parse_suggestions("not jsonp") == []


def test_order_by_ids_skips_missing_and_duplicates() -> None:
    items = [VideoItem(video_id="b"), VideoItem(video_id="a")]

    ordered = order_by_ids(items, ["a", "missing", "b", "a"], lambda video: video.video_id)

    assert [video.video_id for video in ordered] == ["a", "b"]
