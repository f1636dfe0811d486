"""Configuration loading and validation.

Reads ``plantracker.toml``, resolves ``${VAR}`` references from the
environment, and returns a validated :class:`PlanTrackerConfig`. Every field
has a default, so an empty file (or no file at the default location) yields a
working configuration.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_ENV_VAR = "PLANTRACKER_CONFIG"
DEFAULT_CONFIG_FILENAME = "plantracker.toml"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class SchedulingConfig:
    """Scheduling engine settings from the [scheduling] section."""

    timezone: str = "Asia/Ho_Chi_Minh"
    working_hours_start: int = 9
    working_hours_end: int = 18
    default_duration_minutes: int = 60
    default_max_suggestions: int = 5
    refresh_margin_minutes: int = 5
    max_concurrency: int = 20
    request_timeout_seconds: float = 30.0
    provider: str = "google_calendar"


@dataclass
class GoogleConfig:
    """OAuth client settings from the [google] section."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8000/api/scheduling/oauth/callback"
    calendar_id: str = "primary"

    def __repr__(self) -> str:
        return (
            f"GoogleConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r}, calendar_id={self.calendar_id!r})"
        )


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section.

    ``url`` falls back to the ``DATABASE_URL`` environment variable.
    """

    url: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class PlanTrackerConfig:
    """Parsed and validated configuration."""

    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source: Path | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _int_field(section: dict[str, Any], section_name: str, key: str, default: int) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{section_name}.{key} must be an integer, got {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section_name}.{key} must be an integer, got {raw!r}") from exc


def _str_field(section: dict[str, Any], section_name: str, key: str, default: str) -> str:
    raw = section.get(key, default)
    if not isinstance(raw, str):
        raise ConfigError(f"{section_name}.{key} must be a string, got {raw!r}")
    return raw.strip()


def _parse_scheduling(section: dict[str, Any]) -> SchedulingConfig:
    defaults = SchedulingConfig()
    timezone = _str_field(section, "scheduling", "timezone", defaults.timezone)
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid scheduling.timezone: {timezone!r}") from exc

    start = _int_field(section, "scheduling", "working_hours_start", defaults.working_hours_start)
    end = _int_field(section, "scheduling", "working_hours_end", defaults.working_hours_end)
    if not 0 <= start < end <= 24:
        raise ConfigError(
            f"Invalid working hours {start}-{end}: expected 0 <= start < end <= 24"
        )

    duration = _int_field(
        section, "scheduling", "default_duration_minutes", defaults.default_duration_minutes
    )
    if not 15 <= duration <= 480:
        raise ConfigError(
            f"scheduling.default_duration_minutes must be in [15, 480], got {duration}"
        )

    max_suggestions = _int_field(
        section, "scheduling", "default_max_suggestions", defaults.default_max_suggestions
    )
    if not 1 <= max_suggestions <= 10:
        raise ConfigError(
            f"scheduling.default_max_suggestions must be in [1, 10], got {max_suggestions}"
        )

    margin = _int_field(
        section, "scheduling", "refresh_margin_minutes", defaults.refresh_margin_minutes
    )
    if margin < 0:
        raise ConfigError("scheduling.refresh_margin_minutes must not be negative")

    max_concurrency = _int_field(section, "scheduling", "max_concurrency", defaults.max_concurrency)
    if max_concurrency <= 0:
        raise ConfigError(
            f"Invalid scheduling.max_concurrency: {max_concurrency!r}. "
            "Must be a positive integer."
        )

    timeout_raw = section.get("request_timeout_seconds", defaults.request_timeout_seconds)
    try:
        timeout = float(timeout_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"scheduling.request_timeout_seconds must be a number, got {timeout_raw!r}"
        ) from exc
    if timeout <= 0:
        raise ConfigError("scheduling.request_timeout_seconds must be positive")

    provider = _str_field(section, "scheduling", "provider", defaults.provider)
    if provider != "google_calendar":
        raise ConfigError(f"Unsupported scheduling.provider: {provider!r}")

    return SchedulingConfig(
        timezone=timezone,
        working_hours_start=start,
        working_hours_end=end,
        default_duration_minutes=duration,
        default_max_suggestions=max_suggestions,
        refresh_margin_minutes=margin,
        max_concurrency=max_concurrency,
        request_timeout_seconds=timeout,
        provider=provider,
    )


def _parse_google(section: dict[str, Any]) -> GoogleConfig:
    defaults = GoogleConfig()
    calendar_id = _str_field(section, "google", "calendar_id", defaults.calendar_id)
    if not calendar_id:
        raise ConfigError("google.calendar_id must be a non-empty string")
    return GoogleConfig(
        client_id=_str_field(section, "google", "client_id", defaults.client_id),
        client_secret=_str_field(section, "google", "client_secret", defaults.client_secret),
        redirect_uri=_str_field(section, "google", "redirect_uri", defaults.redirect_uri),
        calendar_id=calendar_id,
    )


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    url = section.get("url")
    if url is not None and not isinstance(url, str):
        raise ConfigError("database.url must be a string when set")
    min_size = _int_field(section, "database", "min_pool_size", 1)
    max_size = _int_field(section, "database", "max_pool_size", 10)
    if min_size < 0 or max_size < 1 or min_size > max_size:
        raise ConfigError(
            f"Invalid database pool sizes: min={min_size} max={max_size}"
        )
    return DatabaseConfig(
        url=(url.strip() or None) if url is not None else None,
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("logging.log_root must be a string when set")
    return LoggingConfig(level=level, format=log_format, log_root=log_root)


def parse_config(data: dict[str, Any], *, source: Path | None = None) -> PlanTrackerConfig:
    """Validate already-parsed TOML data."""
    data = resolve_env_vars(data)
    return PlanTrackerConfig(
        scheduling=_parse_scheduling(_section(data, "scheduling")),
        google=_parse_google(_section(data, "google")),
        database=_parse_database(_section(data, "database")),
        logging=_parse_logging(_section(data, "logging")),
        source=source,
    )


def load_config(path: Path | str | None = None) -> PlanTrackerConfig:
    """Load configuration from *path*, ``$PLANTRACKER_CONFIG`` or ``./plantracker.toml``.

    An explicitly named file must exist. When neither *path* nor the
    environment variable is set and the default file is absent, defaults
    are returned.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    explicit = path if path is not None else os.environ.get(CONFIG_ENV_VAR)
    toml_path = Path(explicit) if explicit else Path.cwd() / DEFAULT_CONFIG_FILENAME

    if not toml_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {toml_path}")
        return PlanTrackerConfig()

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data, source=toml_path)
