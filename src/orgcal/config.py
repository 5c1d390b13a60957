"""Agenda configuration loading and validation.

Reads an ``agenda.toml`` file, resolves ``${VAR}`` references against the
environment, and returns a validated :class:`AgendaConfig`.  Every section is
optional; an empty file yields the defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from orgcal.errors import ConfigError

DEFAULT_ORGANIZATION_PREFIX = "MultiappOrg · "
DEFAULT_GOOGLE_SCOPES = "openid email profile https://www.googleapis.com/auth/calendar"
DEFAULT_REDIRECT_URI = "http://localhost:40200/oauth/callback"
DEFAULT_SYNC_INTERVAL_MINUTES = 15
DEFAULT_MAX_EVENTS_PER_CALENDAR = 2500
DEFAULT_CALENDAR_LIST_PAGE_SIZE = 250
DEFAULT_WIDGET_LIMIT = 3

# Pattern matching ${VAR_NAME}, alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class GoogleConfig(BaseModel):
    """OAuth client settings for the interactive consent flow."""

    model_config = ConfigDict(extra="forbid")

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: str = DEFAULT_GOOGLE_SCOPES

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class SyncConfig(BaseModel):
    """Polling and fetch bounds."""

    model_config = ConfigDict(extra="forbid")

    interval_minutes: int = Field(default=DEFAULT_SYNC_INTERVAL_MINUTES, ge=1)
    max_events_per_calendar: int = Field(default=DEFAULT_MAX_EVENTS_PER_CALENDAR, ge=1, le=2500)
    calendar_list_page_size: int = Field(default=DEFAULT_CALENDAR_LIST_PAGE_SIZE, ge=1, le=250)


class WidgetConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int = Field(default=DEFAULT_WIDGET_LIMIT, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration from the [agenda.logging] section."""

    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    log_file: str | None = None


class AgendaConfig(BaseModel):
    """Top-level engine configuration."""

    model_config = ConfigDict(extra="forbid")

    timezone: str = "UTC"
    organization_prefix: str = DEFAULT_ORGANIZATION_PREFIX
    state_path: str = "agenda-state.json"
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    widget: WidgetConfig = Field(default_factory=WidgetConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value!r}") from exc
        return normalized

    @field_validator("organization_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("organization_prefix must be a non-empty string")
        return value

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def parse_config(data: dict[str, Any]) -> AgendaConfig:
    """Validate an already-parsed ``{"agenda": {...}}`` mapping."""
    data = resolve_env_vars(data)
    section = data.get("agenda", {})
    if not isinstance(section, dict):
        raise ConfigError("[agenda] must be a TOML table")
    try:
        return AgendaConfig.model_validate(section)
    except ValidationError as exc:
        raise ConfigError(f"Invalid [agenda] configuration: {exc}") from exc


def load_config(path: Path) -> AgendaConfig:
    """Load and validate an agenda TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
