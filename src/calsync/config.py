"""Provider settings, connection inputs and config-file loading.

Settings are resolved explicitly: :func:`resolve_settings` takes a fully
populated ``ProviderSettings`` plus a partial override and returns a new, fully
populated ``ProviderSettings``. Nothing is merged implicitly at call sites.

Config files are TOML with ``${VAR_NAME}`` references resolved from the
environment before validation::

    [provider]
    calendar_id = "primary"
    timezone = "Europe/Berlin"

    [credentials]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"
    refresh_token = "${GOOGLE_REFRESH_TOKEN}"

    [logging]
    level = "INFO"
    format = "text"
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from calsync.errors import ConfigurationError
from calsync.events import ensure_valid_timezone

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
)
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_REDIRECT_URI = "http://localhost:8080/oauth/google/callback"
DEFAULT_PAGE_SIZE = 250

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ProviderSettings(BaseModel):
    """Endpoints and defaults for one provider. Always fully populated."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    provider: str = "google"
    authorization_url: str = GOOGLE_AUTH_URL
    token_url: str = GOOGLE_OAUTH_TOKEN_URL
    revocation_url: str = GOOGLE_OAUTH_REVOKE_URL
    api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL
    scopes: tuple[str, ...] = GOOGLE_CALENDAR_SCOPES
    redirect_uri: str = DEFAULT_REDIRECT_URI
    calendar_id: str = Field(default=DEFAULT_CALENDAR_ID, min_length=1)
    timezone: str = "UTC"
    timeout_seconds: float = Field(default=30.0, gt=0)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=2500)

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("provider must be a non-empty string")
        return normalized

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        ensure_valid_timezone(normalized)
        return normalized

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class ProviderSettingsOverride(BaseModel):
    """Partial settings; ``None`` means "keep the base value"."""

    model_config = ConfigDict(extra="forbid")

    provider: str | None = None
    authorization_url: str | None = None
    token_url: str | None = None
    revocation_url: str | None = None
    api_base_url: str | None = None
    scopes: tuple[str, ...] | None = None
    redirect_uri: str | None = None
    calendar_id: str | None = None
    timezone: str | None = None
    timeout_seconds: float | None = None
    page_size: int | None = None


def resolve_settings(
    base: ProviderSettings,
    overrides: ProviderSettingsOverride | Mapping[str, Any] | None = None,
) -> ProviderSettings:
    """Return ``base`` with every non-``None`` override applied.

    The result is validated as a whole, so an override can never produce a
    partially populated or invalid settings object.
    """
    if overrides is None:
        return base
    patch = (
        overrides
        if isinstance(overrides, ProviderSettingsOverride)
        else ProviderSettingsOverride.model_validate(dict(overrides))
    )
    values = base.model_dump()
    values.update(patch.model_dump(exclude_none=True))
    return ProviderSettings.model_validate(values)


class ConnectionConfig(BaseModel):
    """Credentials handed over by the connection-storage layer."""

    model_config = ConfigDict(extra="forbid")

    client_id: str | None = None
    client_secret: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None

    @field_validator("client_id", "client_secret", "access_token", "refresh_token")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @property
    def has_client_credentials(self) -> bool:
        return self.client_id is not None and self.client_secret is not None

    def __repr__(self) -> str:
        return (
            "ConnectionConfig("
            f"client_id={self.client_id!r}, "
            f"client_secret={'<REDACTED>' if self.client_secret else None}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r})"
        )

    __str__ = __repr__


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass
class CalsyncConfig:
    settings: ProviderSettings = field(default_factory=ProviderSettings)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in parsed TOML values.

    Raises
    ------
    ConfigurationError
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
        vars_str = ", ".join(missing)
        raise ConfigurationError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def load_config(path: Path) -> CalsyncConfig:
    """Load and validate a calsync TOML config file.

    Raises
    ------
    ConfigurationError
        If the file is missing, is not valid TOML, or fails validation.
    """
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {path}: {exc}") from exc

    data = resolve_env_vars(data)

    provider_section = data.get("provider", {})
    credentials_section = data.get("credentials", {})
    logging_section = data.get("logging", {})
    for name, section in (
        ("provider", provider_section),
        ("credentials", credentials_section),
        ("logging", logging_section),
    ):
        if not isinstance(section, dict):
            raise ConfigurationError(f"[{name}] must be a table in {path}")

    if "scopes" in provider_section and isinstance(provider_section["scopes"], list):
        provider_section["scopes"] = tuple(provider_section["scopes"])

    try:
        settings = resolve_settings(ProviderSettings(), provider_section)
        connection = ConnectionConfig.model_validate(credentials_section)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid config in {path}: {exc}") from exc

    log_format = str(logging_section.get("format", "text"))
    if log_format not in ("text", "json"):
        raise ConfigurationError(f"logging.format must be 'text' or 'json', got {log_format!r}")

    return CalsyncConfig(
        settings=settings,
        connection=connection,
        logging=LoggingConfig(
            level=str(logging_section.get("level", "INFO")),
            format=log_format,
        ),
    )
