from __future__ import annotations

from datetime import datetime


class YouTubeServiceError(Exception):
    pass


class QuotaExhaustedError(YouTubeServiceError):
    def __init__(
        self,
        message: str,
        *,
        reset_at: datetime,
        retry_after_seconds: int,
    ) -> None:
        super().__init__(message)
        self.reset_at = reset_at
        self.retry_after_seconds = max(1, retry_after_seconds)


class UpstreamError(YouTubeServiceError):
    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        status_code: int | None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code
        self.body = body


class InvalidFeedCursorError(YouTubeServiceError):
    pass
