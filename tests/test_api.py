from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import (
    get_catalog_service,
    get_feed_service,
    get_quota_breaker,
    get_shorts_classifier,
)
from backend.app.main import create_app
from backend.app.services.quota_breaker import QuotaBreaker
from backend.app.services.shorts_filter import ShortsClassifier
from backend.app.services.subscription_feed import SubscriptionFeedService
from backend.app.services.two_tier_cache import TwoTierCache
from backend.app.services.youtube_catalog_service import YouTubeCatalogService
from backend.app.services.youtube_gateway import YouTubeGatewayClient

QUOTA_BODY = json.dumps({"error": {"code": 403, "errors": [{"reason": "quotaExceeded"}]}})
SHORT_IDS = frozenset({"short1", "short2"})

Route = Callable[[httpx.Request], httpx.Response]


def _video_payload(
    video_id: str,
    *,
    duration: str = "PT10M",
    title: str | None = None,
) -> dict[str, Any]:
    return {
        "id": video_id,
        "snippet": {
            "title": title or f"Video {video_id}",
            "channelId": "UC1",
            "channelTitle": "Channel One",
            "publishedAt": "2026-01-01T00:00:00Z",
            "thumbnails": {"medium": {"url": f"https://i.test/{video_id}.jpg"}},
        },
        "contentDetails": {"duration": duration},
        "statistics": {"viewCount": "1000"},
    }


def _duration_for(video_id: str) -> str:
    return "PT45S" if video_id.startswith("short") or video_id.startswith("clip") else "PT12M"


@dataclass
class _FakeUpstream:
    routes: dict[str, Route] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "yt.test":
            video_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200 if video_id in SHORT_IDS else 303)
        endpoint = request.url.path.rsplit("/", 1)[-1]
        route = self.routes.get(endpoint)
        if route is not None:
            return route(request)
        if endpoint == "videos":
            ids = request.url.params.get("id", "").split(",")
            items = [_video_payload(video_id, duration=_duration_for(video_id)) for video_id in ids]
            return httpx.Response(200, json={"items": items})
        return httpx.Response(404, text=f"unexpected endpoint {endpoint}")

    def calls_to(self, endpoint: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith(f"/{endpoint}")]


@dataclass
class _ApiHarness:
    client: TestClient
    upstream: _FakeUpstream
    breaker: QuotaBreaker


@pytest.fixture
def api(runtime_env: Path) -> Iterator[_ApiHarness]:
    upstream = _FakeUpstream()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    breaker = QuotaBreaker(clock=lambda: datetime(2026, 1, 10, 12, 0, tzinfo=UTC))
    gateway = YouTubeGatewayClient(
        http_client=http_client,
        api_key="test-key",
        breaker=breaker,
        base_url="https://youtube.test/v3",
    )
    catalog = YouTubeCatalogService(
        gateway=gateway,
        public_cache=TwoTierCache(prefix="pub:"),
        user_cache=TwoTierCache(prefix="usr:"),
        http_client=http_client,
        suggest_url="https://suggest.test/complete/search",
    )
    classifier = ShortsClassifier(
        http_client=http_client,
        verdict_cache=TwoTierCache(prefix="shorts:", max_entries=100),
        probe_url_template="https://yt.test/shorts/{video_id}",
    )
    feed = SubscriptionFeedService(catalog=catalog, page_size=2)

    app = create_app()
    app.dependency_overrides[get_catalog_service] = lambda: catalog
    app.dependency_overrides[get_shorts_classifier] = lambda: classifier
    app.dependency_overrides[get_feed_service] = lambda: feed
    app.dependency_overrides[get_quota_breaker] = lambda: breaker
    with TestClient(app) as test_client:
        yield _ApiHarness(client=test_client, upstream=upstream, breaker=breaker)


def _trending_route(*video_ids: str) -> Route:
    def route(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("chart") != "mostPopular":
            ids = request.url.params.get("id", "").split(",")
            items = [_video_payload(video_id, duration=_duration_for(video_id)) for video_id in ids]
            return httpx.Response(200, json={"items": items})
        items = [
            _video_payload(
                video_id,
                duration=_duration_for(video_id),
                title="Deleted video" if video_id.startswith("gone") else None,
            )
            for video_id in video_ids
        ]
        return httpx.Response(200, json={"items": items, "nextPageToken": "T2"})

    return route


def test_health_check_echoes_request_id(api: _ApiHarness) -> None:
    response = api.client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-42"


def test_unusable_request_id_is_replaced(api: _ApiHarness) -> None:
    response = api.client.get("/health", headers={"X-Request-ID": "bad id\twith spaces"})

    assert response.status_code == 200
    replaced = response.headers["X-Request-ID"]
    assert replaced != "bad id\twith spaces"
    assert len(replaced) == 36


def test_trending_removes_shorts_and_broken_entries(api: _ApiHarness) -> None:
    api.upstream.routes["videos"] = _trending_route("long1", "short1", "gone1", "clip1", "long2")

    response = api.client.get("/api/videos", params={"source": "trending"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["source"] == "trending"
    assert [item["video_id"] for item in payload["items"]] == ["long1", "clip1", "long2"]
    assert payload["next_page_token"] == "T2"
    assert payload["items"][0]["thumbnail_url"] == "https://i.test/long1.jpg"


def test_upstream_failure_degrades_listing_to_empty(api: _ApiHarness) -> None:
    api.upstream.routes["videos"] = lambda request: httpx.Response(500, text="backend error")

    response = api.client.get("/api/videos", params={"source": "trending"})

    assert response.status_code == 200
    assert response.json()["items"] == []
    assert response.json()["next_page_token"] is None


def test_quota_exhaustion_maps_to_503_with_retry_after(api: _ApiHarness) -> None:
    api.upstream.routes["search"] = lambda request: httpx.Response(403, text=QUOTA_BODY)

    response = api.client.get("/api/videos", params={"source": "search", "q": "cats"})

    assert response.status_code == 503
    body = response.json()
    assert body["retry_after_seconds"] > 0
    assert response.headers["Retry-After"] == str(body["retry_after_seconds"])
    assert body["reset_at"].startswith("2026-01-11T08:00:00")

    quota = api.client.get("/api/quota").json()
    assert quota["exhausted"] is True

    calls_before = len(api.upstream.requests)
    again = api.client.get("/api/videos", params={"source": "channel", "channel_id": "UC1"})
    assert again.status_code == 503
    assert len(api.upstream.requests) == calls_before


def test_quota_status_when_healthy(api: _ApiHarness) -> None:
    assert api.client.get("/api/quota").json() == {
        "exhausted": False,
        "reset_at": None,
        "retry_after_seconds": 0,
    }


@pytest.mark.parametrize(
    ("params", "detail_fragment"),
    [
        ({"source": "trending", "pageToken": "x" * 201}, "pageToken"),
        ({"source": "search", "q": "x" * 501}, "q must be"),
        ({"source": "search"}, "q is required"),
        ({"source": "channel", "channel_id": "UC" + "x" * 40}, "channel_id"),
        ({"source": "subfeed", "cursor": "[" + "x" * 5000 + "]"}, "cursor"),
    ],
)
def test_length_limits_are_rejected(
    api: _ApiHarness,
    params: dict[str, str],
    detail_fragment: str,
) -> None:
    response = api.client.get(
        "/api/videos",
        params=params,
        headers={"Authorization": "Bearer user-token"},
    )

    assert response.status_code == 400
    assert detail_fragment in response.json()["detail"]


@pytest.mark.parametrize("source", ["liked", "subfeed"])
def test_authenticated_sources_require_bearer_token(api: _ApiHarness, source: str) -> None:
    response = api.client.get("/api/videos", params={"source": source})

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_subscription_feed_round_trips_cursor(api: _ApiHarness) -> None:
    api.upstream.routes["subscriptions"] = lambda request: httpx.Response(
        200,
        json={
            "items": [
                {"snippet": {"resourceId": {"channelId": "UCa"}}},
                {"snippet": {"resourceId": {"channelId": "UCb"}}},
            ]
        },
    )
    api.upstream.routes["channels"] = lambda request: httpx.Response(
        200,
        json={
            "items": [
                {"id": "UCa", "contentDetails": {"relatedPlaylists": {"uploads": "UUa"}}},
                {"id": "UCb", "contentDetails": {"relatedPlaylists": {"uploads": "UUb"}}},
            ]
        },
    )

    def playlist_items(request: httpx.Request) -> httpx.Response:
        refs = {
            "UUa": [("a3", "2026-01-03"), ("a1", "2026-01-01")],
            "UUb": [("b2", "2026-01-02")],
        }[request.url.params["playlistId"]]
        items = [
            {"contentDetails": {"videoId": video_id, "videoPublishedAt": f"{day}T00:00:00Z"}}
            for video_id, day in refs
        ]
        return httpx.Response(200, json={"items": items})

    api.upstream.routes["playlistItems"] = playlist_items
    headers = {"Authorization": "Bearer user-token"}

    first = api.client.get("/api/videos", params={"source": "subfeed"}, headers=headers)
    assert first.status_code == 200
    first_payload = first.json()
    assert [item["video_id"] for item in first_payload["items"]] == ["a3", "b2"]
    assert isinstance(first_payload["cursor"], str)

    second = api.client.get(
        "/api/videos",
        params={"source": "subfeed", "cursor": first_payload["cursor"]},
        headers=headers,
    )
    assert second.status_code == 200
    assert [item["video_id"] for item in second.json()["items"]] == ["a1"]
    assert second.json()["cursor"] is None

    subscription_call = api.upstream.calls_to("subscriptions")[0]
    assert subscription_call.headers["authorization"] == "Bearer user-token"


def _single_channel_feed(api: _ApiHarness, *video_ids: str) -> None:
    api.upstream.routes["subscriptions"] = lambda request: httpx.Response(
        200,
        json={"items": [{"snippet": {"resourceId": {"channelId": "UCa"}}}]},
    )
    api.upstream.routes["channels"] = lambda request: httpx.Response(
        200,
        json={"items": [{"id": "UCa", "contentDetails": {"relatedPlaylists": {"uploads": "UUa"}}}]},
    )
    items = [
        {
            "contentDetails": {
                "videoId": video_id,
                "videoPublishedAt": f"2026-01-{20 - index:02d}T00:00:00Z",
            }
        }
        for index, video_id in enumerate(video_ids)
    ]
    api.upstream.routes["playlistItems"] = lambda request: httpx.Response(
        200,
        json={"items": items},
    )


def test_subscription_feed_hydration_outage_does_not_end_feed(api: _ApiHarness) -> None:
    _single_channel_feed(api, "a9", "a8", "a7", "a6")
    api.upstream.routes["videos"] = lambda request: httpx.Response(503, text="backend error")
    headers = {"Authorization": "Bearer user-token"}

    degraded = api.client.get("/api/videos", params={"source": "subfeed"}, headers=headers)

    assert degraded.status_code == 200
    assert degraded.json()["items"] == []
    retry_cursor = degraded.json()["cursor"]
    assert isinstance(retry_cursor, str)

    del api.upstream.routes["videos"]
    recovered = api.client.get(
        "/api/videos",
        params={"source": "subfeed", "cursor": retry_cursor},
        headers=headers,
    )

    assert recovered.status_code == 200
    assert [item["video_id"] for item in recovered.json()["items"]] == ["a9", "a8"]
    assert isinstance(recovered.json()["cursor"], str)


@pytest.mark.parametrize("cursor", ["not json", '{"a": 1}', '[{"offset": 0}]'])
def test_malformed_feed_cursor_is_400(api: _ApiHarness, cursor: str) -> None:
    response = api.client.get(
        "/api/videos",
        params={"source": "subfeed", "cursor": cursor},
        headers={"Authorization": "Bearer user-token"},
    )

    assert response.status_code == 400


def test_search_filters_video_hits_and_keeps_other_kinds(api: _ApiHarness) -> None:
    api.upstream.routes["search"] = lambda request: httpx.Response(
        200,
        json={
            "items": [
                {"id": {"kind": "youtube#video", "videoId": "short2"}},
                {"id": {"kind": "youtube#channel", "channelId": "UCz"}},
                {"id": {"kind": "youtube#video", "videoId": "long9"}},
            ]
        },
    )
    api.upstream.routes["channels"] = lambda request: httpx.Response(
        200,
        json={"items": [{"id": "UCz", "snippet": {"title": "Zed"}}]},
    )

    response = api.client.get("/api/search", params={"q": "zed"})

    assert response.status_code == 200
    hits = response.json()["items"]
    assert [(hit["kind"], (hit["video"] or hit["channel"])["title"]) for hit in hits] == [
        ("channel", "Zed"),
        ("video", "Video long9"),
    ]


def test_details_follow_request_order(api: _ApiHarness) -> None:
    response = api.client.get("/api/details", params={"kind": "video", "ids": "v2, v1 ,v2"})

    assert response.status_code == 200
    assert [item["video_id"] for item in response.json()["videos"]] == ["v2", "v1"]


def test_details_degrade_to_empty_when_upstream_fails(api: _ApiHarness) -> None:
    api.upstream.routes["videos"] = lambda request: httpx.Response(500, text="backend error")

    response = api.client.get("/api/details", params={"kind": "video", "ids": "a,b"})

    assert response.status_code == 200
    assert response.json()["videos"] == []


def test_categories_and_comments(api: _ApiHarness) -> None:
    api.upstream.routes["videoCategories"] = lambda request: httpx.Response(
        200,
        json={"items": [{"id": "10", "snippet": {"title": "Music", "assignable": True}}]},
    )
    api.upstream.routes["comments"] = lambda request: httpx.Response(
        200,
        json={
            "nextPageToken": "R2",
            "items": [{"id": "r1", "snippet": {"textOriginal": "reply text"}}],
        },
    )

    categories = api.client.get("/api/categories").json()
    replies = api.client.get("/api/replies", params={"comment_id": "c1"}).json()

    assert categories == {"items": [{"category_id": "10", "title": "Music"}]}
    assert replies["items"][0]["text"] == "reply text"
    assert replies["next_page_token"] == "R2"
    assert api.upstream.calls_to("comments")[0].url.params["parentId"] == "c1"


def test_suggest_never_fails(api: _ApiHarness) -> None:
    response = api.client.get("/api/suggest", params={"q": "cats"})

    assert response.status_code == 200
    assert response.json() == {"query": "cats", "suggestions": []}


def test_user_profile_requires_token_and_tolerates_failure(api: _ApiHarness) -> None:
    api.upstream.routes["channels"] = lambda request: httpx.Response(401, text="expired")

    assert api.client.get("/api/me").status_code == 401
    response = api.client.get("/api/me", headers={"Authorization": "Bearer stale"})
    assert response.status_code == 200
    assert response.json() is None


def test_app_without_overrides_starts_and_serves_health(runtime_env: Path) -> None:
    with TestClient(create_app()) as client:
        assert client.get("/health").json() == {"status": "ok"}
    assert (runtime_env / "logs" / "shortless.log").exists()
