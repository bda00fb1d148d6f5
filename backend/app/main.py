from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.routes import router
from backend.app.dependencies import (
    get_all_caches,
    get_http_client,
    get_remote_cache_store,
    get_settings,
    get_telemetry,
)
from backend.app.logging_config import configure_application_logging
from backend.app.models.catalog_contracts import QuotaExhaustedResponse
from backend.app.services.youtube_errors import InvalidFeedCursorError, QuotaExhaustedError

LOGGER = logging.getLogger("shortless.app")

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
_UNTRACED_PATHS: frozenset[str] = frozenset({"/health"})


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    caches = get_all_caches()
    for cache in caches:
        cache.start_sweeper(settings.cache_sweep_interval_seconds)
    LOGGER.info(
        "shortless started remote_cache=%s region=%s",
        settings.redis_url is not None,
        settings.youtube_region_code,
    )

    try:
        yield
    finally:
        for cache in caches:
            await cache.close()
        await get_http_client().aclose()
        remote_store = get_remote_cache_store()
        if remote_store is not None:
            await remote_store.close()
        LOGGER.info("shortless stopped")


def _resolve_request_id(raw_value: str | None) -> str:
    candidate = (raw_value or "").strip()
    if _REQUEST_ID_PATTERN.match(candidate):
        return candidate
    return str(uuid4())


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Tag logs and telemetry for one request with its id, route and auth state."""
    telemetry = get_telemetry()
    request_id = _resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
    path = request.url.path
    traced = path not in _UNTRACED_PATHS
    context_tokens = bind_contextvars(
        http_request_id=request_id,
        http_method=request.method,
        http_path=path,
        authenticated="authorization" in request.headers,
    )
    started_at = perf_counter()
    if traced:
        telemetry.emit(
            "http.request.start",
            request_id=request_id,
            method=request.method,
            path=path,
        )
    try:
        response = await call_next(request)
    except Exception as exc:
        telemetry.emit(
            "http.request.error",
            request_id=request_id,
            method=request.method,
            path=path,
            duration_ms=int((perf_counter() - started_at) * 1000),
            error_type=type(exc).__name__,
        )
        LOGGER.exception("request failed method=%s path=%s", request.method, path)
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        if traced:
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                method=request.method,
                path=path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
        return response
    finally:
        reset_contextvars(**context_tokens)


async def quota_exhausted_handler(_: Request, exc: Exception) -> Response:
    assert isinstance(exc, QuotaExhaustedError)
    body = QuotaExhaustedResponse(
        detail=str(exc),
        reset_at=exc.reset_at,
        retry_after_seconds=exc.retry_after_seconds,
    )
    return JSONResponse(
        status_code=503,
        content=body.model_dump(mode="json"),
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


async def invalid_cursor_handler(_: Request, exc: Exception) -> Response:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def create_app() -> FastAPI:
    app = FastAPI(title="Shortless API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(QuotaExhaustedError, quota_exhausted_handler)
    app.add_exception_handler(InvalidFeedCursorError, invalid_cursor_handler)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
