from __future__ import annotations

from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".shortless"
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Runtime configuration, read from `SHORTLESS_*` environment variables and `.env`.

    Every option documents what it controls and its default.
    """

    model_config = SettingsConfigDict(
        env_prefix="SHORTLESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Runtime paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    log_dir: Path | None = Field(
        default=None,
        description="Directory for backend log files. Defaults to `${SHORTLESS_DATA_DIR}/logs`.",
    )

    # Upstream API.
    youtube_api_key: str | None = Field(
        default=None,
        description="YouTube Data API key used for unauthenticated calls.",
    )
    youtube_api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3",
        description="YouTube Data API base URL.",
    )
    youtube_region_code: str = Field(
        default="US",
        description="Region used for trending charts and category listings.",
    )
    youtube_page_size: int = Field(
        default=20,
        ge=1,
        le=50,
        description="maxResults for search and listing calls.",
    )
    youtube_http_timeout_seconds: float = Field(
        default=10.0,
        description="Overall HTTP timeout for YouTube Data API calls.",
    )
    quota_reset_timezone: str = Field(
        default="America/Los_Angeles",
        description="Timezone whose midnight resets the daily API quota.",
    )
    suggest_url: str = Field(
        default="https://suggestqueries-clients6.youtube.com/complete/search",
        description="Autocomplete endpoint. It is not part of the Data API and costs no quota.",
    )

    # Caching.
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for the shared L2 cache. Unset means in-process caching only.",
    )
    redis_connect_timeout_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Connect timeout for the L2 store. A slow store counts as a miss.",
    )
    redis_socket_timeout_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Per-command timeout for the L2 store.",
    )
    cache_sweep_interval_seconds: float = Field(
        default=300.0,
        description="Cadence of the background sweep that evicts expired L1 entries.",
    )
    cache_list_ttl_seconds: float = Field(
        default=300.0,
        description="TTL for search, trending, playlist-item and comment pages.",
    )
    cache_video_ttl_seconds: float = Field(
        default=900.0,
        description="TTL for per-video detail entries.",
    )
    cache_playlist_ttl_seconds: float = Field(
        default=900.0,
        description="TTL for per-playlist detail entries.",
    )
    cache_channel_ttl_seconds: float = Field(
        default=3600.0,
        description="TTL for per-channel detail entries.",
    )
    cache_uploads_mapping_ttl_seconds: float = Field(
        default=86_400.0,
        description="TTL for channel to uploads-playlist mappings.",
    )
    cache_categories_ttl_seconds: float = Field(
        default=86_400.0,
        description="TTL for the video category list.",
    )
    cache_user_ttl_seconds: float = Field(
        default=300.0,
        description="TTL for per-user listings (subscriptions, likes, playlists, profile).",
    )

    # Short-form classification.
    shorts_duration_threshold_seconds: int = Field(
        default=180,
        description="Videos longer than this are never treated as shorts.",
    )
    shorts_probe_url_template: str = Field(
        default="https://www.youtube.com/shorts/{video_id}",
        description="URL probed with HEAD to detect shorts; must contain `{video_id}`.",
    )
    shorts_probe_concurrency: int = Field(
        default=20,
        ge=1,
        le=200,
        description="Maximum simultaneous shorts probes.",
    )
    shorts_probe_timeout_seconds: float = Field(
        default=2.0,
        description="Per-probe timeout. Timed-out videos are kept and re-probed later.",
    )
    shorts_verdict_ttl_seconds: float = Field(
        default=30 * 86_400.0,
        description="TTL for probe verdicts in both cache tiers.",
    )
    shorts_verdict_cache_max_entries: int = Field(
        default=10_000,
        ge=1,
        description="L1 capacity of the verdict cache (least recently used entries are evicted).",
    )

    # Subscription feed.
    feed_page_size: int = Field(
        default=20,
        ge=1,
        le=50,
        description="Videos per subscription feed page.",
    )
    feed_max_channels: int = Field(
        default=15,
        ge=1,
        le=50,
        description="Subscribed channels merged into the feed (also the cursor entry limit).",
    )
    feed_batch_size: int = Field(
        default=20,
        ge=1,
        le=50,
        description="Upload refs fetched per channel per batch.",
    )

    # Logging.
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @property
    def resolved_log_dir(self) -> Path:
        if self.log_dir is not None:
            return self.log_dir
        return self.data_dir / "logs"

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SHORTLESS_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("SHORTLESS_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("youtube_api_base_url", "suggest_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"SHORTLESS_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator("shorts_probe_url_template", mode="before")
    @classmethod
    def _validate_probe_template(cls, value: Any) -> str:
        if not isinstance(value, str) or "{video_id}" not in value:
            raise ValueError("SHORTLESS_SHORTS_PROBE_URL_TEMPLATE must contain `{video_id}`.")
        return value.strip()

    @field_validator("youtube_region_code", mode="before")
    @classmethod
    def _normalize_region_code(cls, value: Any) -> str:
        if not isinstance(value, str) or len(value.strip()) != 2:
            raise ValueError("SHORTLESS_YOUTUBE_REGION_CODE must be a two-letter region code.")
        return value.strip().upper()

    @field_validator("data_dir", mode="before")
    @classmethod
    def _normalize_data_dir(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return Path(DEFAULT_DATA_DIR)
        return _resolve_path(value)

    @field_validator("log_dir", mode="before")
    @classmethod
    def _normalize_log_dir(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("youtube_api_key", "redis_url", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_runtime_configuration(
    *,
    youtube_api_key: str | None,
    quota_reset_timezone: str,
    validate_api_key: bool,
) -> None:
    errors: list[str] = []

    if validate_api_key and youtube_api_key is None:
        errors.append("SHORTLESS_YOUTUBE_API_KEY is required for unauthenticated API calls.")
    try:
        ZoneInfo(quota_reset_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(
            f"SHORTLESS_QUOTA_RESET_TIMEZONE is not a known timezone: {quota_reset_timezone}"
        )

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid runtime configuration:\n{bullets}")


def load_settings(*, validate_api_key: bool = True) -> AppSettings:
    settings = AppSettings()
    data_dir = _resolve_path(settings.data_dir)
    settings = settings.model_copy(
        update={
            "data_dir": data_dir,
            "log_dir": settings.log_dir or data_dir / "logs",
        }
    )

    _validate_runtime_configuration(
        youtube_api_key=settings.youtube_api_key,
        quota_reset_timezone=settings.quota_reset_timezone,
        validate_api_key=validate_api_key,
    )
    return settings
