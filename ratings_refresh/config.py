from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".ratings-refresh"
MIN_VOTES_FLOOR = 1
MIN_VOTES_CEILING = 1_000_000
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("catalog.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "include_movies",
    "include_series",
    "enable_item_debug_logging",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{RATINGS_REFRESH_DATA_DIR}}/{relative_path}` when not explicitly set."


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


def clamp_minimum_votes(value: int) -> int:
    return max(MIN_VOTES_FLOOR, min(MIN_VOTES_CEILING, value))


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `RATINGS_REFRESH_*` environment variables (or a
    `.env` file) and is frozen once loaded. Refresh policy options are copied
    into a per-run `RefreshOptions` rather than read globally.
    """

    model_config = SettingsConfigDict(
        env_prefix="RATINGS_REFRESH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the ratings cache, catalog database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("catalog.db")),
        description=f"SQLite catalog database path. {_data_dir_default_note(Path('catalog.db'))}",
    )
    default_timezone: str = Field(
        default="UTC",
        description="Timezone used to interpret the daily refresh trigger time.",
    )

    # Dataset download.
    dataset_url: str = Field(
        default="https://datasets.imdbws.com/title.ratings.tsv.gz",
        description="Location of the gzip-compressed ratings dataset.",
    )
    dataset_http_timeout_seconds: float = Field(
        default=60.0,
        description="Socket timeout for the dataset download.",
    )
    dataset_user_agent: str = Field(
        default="ratings-refresh/0.1",
        description="User-Agent sent when downloading the dataset.",
    )
    cache_max_age_hours: float = Field(
        default=23.0,
        description="Freshness window of the decompressed dataset cache.",
    )
    transient_retry_delay_seconds: float = Field(
        default=3.0,
        description="Delay before retrying a download after a transient network failure.",
    )

    # Refresh policy.
    minimum_votes: int = Field(
        default=1,
        description=(
            "Minimum vote count a rating needs before it is applied. "
            f"Clamped to [{MIN_VOTES_FLOOR}, {MIN_VOTES_CEILING}]."
        ),
    )
    include_movies: bool = Field(
        default=True,
        description="Refresh ratings on movies.",
    )
    include_series: bool = Field(
        default=True,
        description="Refresh ratings on series and episodes.",
    )
    enable_item_debug_logging: bool = Field(
        default=False,
        description="Emit sampled per-item debug lines for not-found and below-minimum items.",
    )

    # Scheduler.
    scheduler_enabled: bool = Field(
        default=True,
        description="Run the daily refresh trigger in the API process.",
    )
    refresh_daily_hour: int = Field(
        default=3,
        ge=0,
        le=23,
        description="Hour of day (in default_timezone) of the daily refresh trigger.",
    )
    refresh_daily_minute: int = Field(
        default=0,
        ge=0,
        le=59,
        description="Minute of the daily refresh trigger.",
    )
    scheduler_poll_interval_seconds: int = Field(
        default=30,
        description="How often the scheduler loop checks whether a refresh is due.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
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

    @field_validator("minimum_votes", mode="before")
    @classmethod
    def _clamp_minimum_votes(cls, value: Any) -> int:
        if isinstance(value, str):
            value = value.strip()
        try:
            parsed = int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("RATINGS_REFRESH_MINIMUM_VOTES must be an integer.") from exc
        return clamp_minimum_votes(parsed)

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("RATINGS_REFRESH_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("RATINGS_REFRESH_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("dataset_url", mode="before")
    @classmethod
    def _normalize_dataset_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("RATINGS_REFRESH_DATASET_URL must be a string.")
        normalized = value.strip()
        if not normalized.startswith(("http://", "https://", "file://")):
            raise ValueError("RATINGS_REFRESH_DATASET_URL must be an http(s) or file URL.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
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


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
