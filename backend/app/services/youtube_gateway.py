from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from typing import Any, cast
from urllib.parse import urlencode

import httpx

from backend.app.services.quota_breaker import QuotaBreaker, is_quota_exceeded_body
from backend.app.services.request_coalescer import RequestCoalescer
from backend.app.services.youtube_errors import QuotaExhaustedError, UpstreamError
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("shortless.youtube")

YOUTUBE_API_BASE_URL = "https://www.googleapis.com/youtube/v3"
DEFAULT_QUOTA_UNITS = 1
ENDPOINT_QUOTA_UNITS: dict[str, int] = {"search": 100}
_ERROR_BODY_EXCERPT_LENGTH = 400

ParamValue = str | int | bool | None


def credential_fragment(credential: str) -> str:
    """One-way identifier for a bearer credential, safe for cache keys and logs."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]


def estimate_quota_units(endpoint: str) -> int:
    return ENDPOINT_QUOTA_UNITS.get(endpoint, DEFAULT_QUOTA_UNITS)


class YouTubeGatewayClient:
    """
    Single point of contact with the YouTube Data API.

    Calls are refused up front while the quota breaker is tripped, and identical
    concurrent calls share one HTTP request. Responses are returned as parsed JSON
    objects without any field normalization.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        api_key: str | None,
        breaker: QuotaBreaker,
        coalescer: RequestCoalescer | None = None,
        base_url: str = YOUTUBE_API_BASE_URL,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._http_client = http_client
        self._api_key = api_key
        self._breaker = breaker
        self._coalescer = coalescer or RequestCoalescer()
        self._base_url = base_url.rstrip("/")
        self._telemetry = telemetry or TelemetryClient.disabled()

    @property
    def breaker(self) -> QuotaBreaker:
        return self._breaker

    async def call(
        self,
        endpoint: str,
        params: Mapping[str, ParamValue],
        credential: str | None = None,
    ) -> dict[str, Any]:
        self._breaker.check()
        query = _normalize_params(params)
        coalesce_key = _build_coalesce_key(endpoint, query, credential)
        result = await self._coalescer.coalesce(
            coalesce_key,
            lambda: self._fetch(endpoint, query, credential),
        )
        return cast(dict[str, Any], result)

    async def _fetch(
        self,
        endpoint: str,
        query: dict[str, str],
        credential: str | None,
    ) -> dict[str, Any]:
        headers: dict[str, str] = {"Accept": "application/json"}
        request_params = dict(query)
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        elif self._api_key:
            request_params["key"] = self._api_key
        else:
            raise UpstreamError(
                "YouTube API key is not configured.",
                endpoint=endpoint,
                status_code=None,
            )

        url = f"{self._base_url}/{endpoint}"
        LOGGER.debug(
            "youtube api request endpoint=%s authenticated=%s params=%s",
            endpoint,
            bool(credential),
            urlencode(sorted(query.items())),
        )
        with self._telemetry.timed(
            "youtube.api.call",
            endpoint=endpoint,
            authenticated=bool(credential),
            quota_units=estimate_quota_units(endpoint),
        ) as call_attributes:
            try:
                response = await self._http_client.get(url, params=request_params, headers=headers)
            except httpx.HTTPError as exc:
                LOGGER.warning(
                    "youtube api transport failure endpoint=%s error=%s",
                    endpoint,
                    type(exc).__name__,
                )
                raise UpstreamError(
                    f"YouTube API request failed on {endpoint}: {type(exc).__name__}",
                    endpoint=endpoint,
                    status_code=None,
                ) from exc

            call_attributes["status_code"] = response.status_code
            if response.is_success:
                LOGGER.debug(
                    "youtube api success endpoint=%s status=%s",
                    endpoint,
                    response.status_code,
                )
                return _parse_json_dict(response.text)

            body = response.text
            if is_quota_exceeded_body(body):
                reset_at = self._breaker.trip()
                raise QuotaExhaustedError(
                    f"YouTube API quota exhausted on {endpoint}",
                    reset_at=reset_at,
                    retry_after_seconds=self._breaker.status().retry_after_seconds,
                )

            excerpt = _excerpt(body)
            LOGGER.warning(
                "youtube api error endpoint=%s status=%s body=%s",
                endpoint,
                response.status_code,
                excerpt,
            )
            raise UpstreamError(
                f"YouTube API error {response.status_code} on {endpoint}",
                endpoint=endpoint,
                status_code=response.status_code,
                body=excerpt,
            )


def _normalize_params(params: Mapping[str, ParamValue]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            normalized[key] = "true" if value else "false"
            continue
        text = str(value)
        if text:
            normalized[key] = text
    return normalized


def _build_coalesce_key(endpoint: str, query: Mapping[str, str], credential: str | None) -> str:
    identity = credential_fragment(credential) if credential else "anonymous"
    return f"{endpoint}?{urlencode(sorted(query.items()))}#{identity}"


def _parse_json_dict(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return cast(dict[str, Any], parsed)
    return {}


def _excerpt(body: str) -> str:
    compact = " ".join(body.split())
    if len(compact) <= _ERROR_BODY_EXCERPT_LENGTH:
        return compact
    return f"{compact[:_ERROR_BODY_EXCERPT_LENGTH]}..."
