from __future__ import annotations

from functools import lru_cache

import httpx

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.remote_cache_repository import RedisRemoteCacheStore
from backend.app.services.quota_breaker import QuotaBreaker
from backend.app.services.request_coalescer import RequestCoalescer
from backend.app.services.shorts_filter import ShortsClassifier
from backend.app.services.subscription_feed import SubscriptionFeedService
from backend.app.services.two_tier_cache import (
    PUBLIC_CACHE_PREFIX,
    SHORTS_VERDICT_CACHE_PREFIX,
    USER_CACHE_PREFIX,
    TwoTierCache,
)
from backend.app.services.youtube_catalog_service import CatalogTtls, YouTubeCatalogService
from backend.app.services.youtube_gateway import YouTubeGatewayClient
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_remote_cache_store() -> RedisRemoteCacheStore | None:
    settings = get_settings()
    if settings.redis_url is None:
        return None
    return RedisRemoteCacheStore.from_url(
        settings.redis_url,
        connect_timeout_seconds=settings.redis_connect_timeout_seconds,
        socket_timeout_seconds=settings.redis_socket_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_public_cache() -> TwoTierCache:
    return TwoTierCache(prefix=PUBLIC_CACHE_PREFIX, remote_store=get_remote_cache_store())


@lru_cache(maxsize=1)
def get_user_cache() -> TwoTierCache:
    return TwoTierCache(prefix=USER_CACHE_PREFIX, remote_store=get_remote_cache_store())


@lru_cache(maxsize=1)
def get_shorts_verdict_cache() -> TwoTierCache:
    settings = get_settings()
    return TwoTierCache(
        prefix=SHORTS_VERDICT_CACHE_PREFIX,
        remote_store=get_remote_cache_store(),
        max_entries=settings.shorts_verdict_cache_max_entries,
    )


def get_all_caches() -> tuple[TwoTierCache, ...]:
    return (get_public_cache(), get_user_cache(), get_shorts_verdict_cache())


@lru_cache(maxsize=1)
def get_http_client() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(timeout=httpx.Timeout(settings.youtube_http_timeout_seconds))


@lru_cache(maxsize=1)
def get_quota_breaker() -> QuotaBreaker:
    settings = get_settings()
    return QuotaBreaker(
        reset_timezone=settings.quota_reset_timezone,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_gateway() -> YouTubeGatewayClient:
    settings = get_settings()
    return YouTubeGatewayClient(
        http_client=get_http_client(),
        api_key=settings.youtube_api_key,
        breaker=get_quota_breaker(),
        coalescer=RequestCoalescer(),
        base_url=settings.youtube_api_base_url,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_catalog_service() -> YouTubeCatalogService:
    settings = get_settings()
    return YouTubeCatalogService(
        gateway=get_gateway(),
        public_cache=get_public_cache(),
        user_cache=get_user_cache(),
        http_client=get_http_client(),
        ttls=CatalogTtls(
            list_seconds=settings.cache_list_ttl_seconds,
            video_seconds=settings.cache_video_ttl_seconds,
            playlist_seconds=settings.cache_playlist_ttl_seconds,
            channel_seconds=settings.cache_channel_ttl_seconds,
            uploads_mapping_seconds=settings.cache_uploads_mapping_ttl_seconds,
            categories_seconds=settings.cache_categories_ttl_seconds,
            user_seconds=settings.cache_user_ttl_seconds,
        ),
        region_code=settings.youtube_region_code,
        page_size=settings.youtube_page_size,
        suggest_url=settings.suggest_url,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_shorts_classifier() -> ShortsClassifier:
    settings = get_settings()
    return ShortsClassifier(
        http_client=get_http_client(),
        verdict_cache=get_shorts_verdict_cache(),
        threshold_seconds=settings.shorts_duration_threshold_seconds,
        probe_url_template=settings.shorts_probe_url_template,
        probe_concurrency=settings.shorts_probe_concurrency,
        probe_timeout_seconds=settings.shorts_probe_timeout_seconds,
        verdict_ttl_seconds=settings.shorts_verdict_ttl_seconds,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_feed_service() -> SubscriptionFeedService:
    settings = get_settings()
    return SubscriptionFeedService(
        catalog=get_catalog_service(),
        page_size=settings.feed_page_size,
        max_channels=settings.feed_max_channels,
        batch_size=settings.feed_batch_size,
        telemetry=get_telemetry(),
    )


def reset_cached_dependencies() -> None:
    get_feed_service.cache_clear()
    get_shorts_classifier.cache_clear()
    get_catalog_service.cache_clear()
    get_gateway.cache_clear()
    get_quota_breaker.cache_clear()
    get_http_client.cache_clear()
    get_shorts_verdict_cache.cache_clear()
    get_user_cache.cache_clear()
    get_public_cache.cache_clear()
    get_remote_cache_store.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
