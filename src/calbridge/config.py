"""Service configuration loading and validation.

Configuration is read from an optional ``calbridge.toml`` and completed from
environment variables.  String values in the TOML file may reference the
environment with ``${VAR_NAME}``.

Recognised environment variables:

- ``GOOGLE_OAUTH_CLIENT_ID`` / ``GOOGLE_OAUTH_CLIENT_SECRET`` — OAuth app
  credentials.  ``GOOGLE_CREDENTIALS`` may instead hold Google's
  ``{"web": {...}}`` / ``{"installed": {...}}`` client JSON bundle.
- ``GOOGLE_OAUTH_REDIRECT_URI`` — callback URL registered with Google.
- ``CALBRIDGE_ENCRYPTION_KEY`` — 32-byte token encryption key (hex/base64).
- ``DATABASE_URL`` or ``POSTGRES_HOST``/``POSTGRES_PORT``/``POSTGRES_USER``/
  ``POSTGRES_PASSWORD``/``POSTGRES_DB`` — PostgreSQL connection.
- ``CALBRIDGE_TIMEZONE`` — timezone used to lay out availability anchors.
- ``CALBRIDGE_LOG_LEVEL`` / ``CALBRIDGE_LOG_FORMAT`` — logging.

Secret values never appear in ``repr()`` of any config object.
"""

from __future__ import annotations

import json
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calbridge.db import db_params_from_env
from calbridge.retry import RetryPolicy

DEFAULT_CONFIG_FILENAME = "calbridge.toml"
DEFAULT_REDIRECT_URI = "http://localhost:8000/api/integrations/google/callback"
DEFAULT_GOOGLE_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
)
DEFAULT_CALENDAR_TIMEOUT_SECONDS = 10.0

# Matches ${VAR_NAME}; alphanumeric and underscore names only.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class OAuthClientConfig:
    """OAuth app credentials and redirect for one provider."""

    client_id: str
    client_secret: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: tuple[str, ...] = DEFAULT_GOOGLE_SCOPES

    def __repr__(self) -> str:
        return (
            f"OAuthClientConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r}, scopes={self.scopes!r})"
        )


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings from the [database] section."""

    name: str = "calbridge"
    host: str = "localhost"
    port: int = 5432
    user: str = "calbridge"
    password: str = "calbridge"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(name={self.name!r}, host={self.host!r}, port={self.port!r}, "
            f"user={self.user!r}, password=<REDACTED>, ssl={self.ssl!r})"
        )


@dataclass
class AggregationConfig:
    """Per-calendar fetch settings from the [aggregation] section."""

    calendar_timeout_seconds: float = DEFAULT_CALENDAR_TIMEOUT_SECONDS


@dataclass
class CacheConfig:
    """Provider response cache settings from the [cache] section.

    ``calendar_list_ttl_seconds <= 0`` disables caching.
    """

    calendar_list_ttl_seconds: float = 0.0
    max_entries: int = 1024


@dataclass
class ServiceConfig:
    """Fully resolved service configuration."""

    google: OAuthClientConfig
    encryption_key: str = field(repr=False)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timezone: str = "UTC"
    cors_origins: list[str] = field(default_factory=list)
    dashboard_url: str | None = None

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ---------------------------------------------------------------------------
# Environment interpolation
# ---------------------------------------------------------------------------


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
    The original value is not echoed because it may hold a secret template.
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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table")
    return raw


def _google_bundle_from_env() -> dict[str, Any]:
    """Read Google's client JSON bundle from ``GOOGLE_CREDENTIALS`` if present."""
    raw = os.environ.get("GOOGLE_CREDENTIALS", "").strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"GOOGLE_CREDENTIALS must be valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("GOOGLE_CREDENTIALS must decode to a JSON object")
    for nested_key in ("web", "installed"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict):
            return nested
    return payload


def _parse_google(section: dict[str, Any]) -> OAuthClientConfig:
    bundle = _google_bundle_from_env()

    client_id = str(
        section.get("client_id")
        or os.environ.get("GOOGLE_OAUTH_CLIENT_ID")
        or bundle.get("client_id")
        or ""
    ).strip()
    client_secret = str(
        section.get("client_secret")
        or os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET")
        or bundle.get("client_secret")
        or ""
    ).strip()
    if not client_id or not client_secret:
        raise ConfigError(
            "Google OAuth client credentials are not configured. Set "
            "GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET (or GOOGLE_CREDENTIALS)."
        )

    bundle_redirects = bundle.get("redirect_uris")
    bundle_redirect = bundle_redirects[0] if isinstance(bundle_redirects, list) and bundle_redirects else None
    redirect_uri = str(
        section.get("redirect_uri")
        or os.environ.get("GOOGLE_OAUTH_REDIRECT_URI")
        or bundle_redirect
        or DEFAULT_REDIRECT_URI
    ).strip()

    scopes_raw = section.get("scopes")
    if scopes_raw is None:
        scopes = DEFAULT_GOOGLE_SCOPES
    elif isinstance(scopes_raw, list) and all(isinstance(s, str) for s in scopes_raw):
        scopes = tuple(s.strip() for s in scopes_raw if s.strip())
    else:
        raise ConfigError("oauth.google.scopes must be a list of strings")

    return OAuthClientConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scopes=scopes,
    )


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    env_params = db_params_from_env()
    try:
        port = int(section.get("port", env_params.port))
        min_pool_size = int(section.get("min_pool_size", 2))
        max_pool_size = int(section.get("max_pool_size", 10))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric value in [database]: {exc}") from exc

    if min_pool_size < 1 or max_pool_size < min_pool_size:
        raise ConfigError("database pool sizes must satisfy 1 <= min_pool_size <= max_pool_size")

    return DatabaseConfig(
        name=str(section.get("name", env_params.database)),
        host=str(section.get("host", env_params.host)),
        port=port,
        user=str(section.get("user", env_params.user)),
        password=str(section.get("password", env_params.password)),
        ssl=section.get("ssl", env_params.ssl),
        min_pool_size=min_pool_size,
        max_pool_size=max_pool_size,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", os.environ.get("CALBRIDGE_LOG_LEVEL", "INFO"))).upper()
    fmt = str(section.get("format", os.environ.get("CALBRIDGE_LOG_FORMAT", "text"))).lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"logging.format must be one of: {', '.join(sorted(_VALID_LOG_FORMATS))}")
    log_root = section.get("log_root")
    return LoggingConfig(level=level, format=fmt, log_root=str(log_root) if log_root else None)


def _parse_float(section: dict[str, Any], key: str, default: float, label: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{label} must be a number")
    return float(raw)


def _parse_timezone(raw: Any) -> str:
    timezone = str(raw or "UTC").strip() or "UTC"
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone: {timezone!r}") from exc
    return timezone


def config_from_dict(data: dict[str, Any]) -> ServiceConfig:
    """Build a :class:`ServiceConfig` from already-parsed TOML data."""
    data = resolve_env_vars(data)

    oauth_section = _section(data, "oauth")
    google_section = oauth_section.get("google", {})
    if not isinstance(google_section, dict):
        raise ConfigError("[oauth.google] must be a table")

    service_section = _section(data, "service")
    encryption_key = str(
        service_section.get("encryption_key") or os.environ.get("CALBRIDGE_ENCRYPTION_KEY") or ""
    ).strip()
    if not encryption_key:
        raise ConfigError(
            "Token encryption key is not configured. Set CALBRIDGE_ENCRYPTION_KEY "
            "(generate one with `calbridge generate-key`)."
        )

    aggregation_section = _section(data, "aggregation")
    timeout = _parse_float(
        aggregation_section,
        "calendar_timeout_seconds",
        DEFAULT_CALENDAR_TIMEOUT_SECONDS,
        "aggregation.calendar_timeout_seconds",
    )
    if timeout <= 0:
        raise ConfigError("aggregation.calendar_timeout_seconds must be positive")

    cache_section = _section(data, "cache")
    cache = CacheConfig(
        calendar_list_ttl_seconds=_parse_float(
            cache_section, "calendar_list_ttl_seconds", 0.0, "cache.calendar_list_ttl_seconds"
        ),
        max_entries=int(cache_section.get("max_entries", 1024)),
    )

    retry_section = _section(data, "retry")
    try:
        retry = RetryPolicy.from_config(retry_section)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid [retry] section: {exc}") from exc
    if retry.max_attempts < 1:
        raise ConfigError("retry.max_attempts must be at least 1")

    cors_origins = service_section.get("cors_origins", [])
    if not isinstance(cors_origins, list):
        raise ConfigError("service.cors_origins must be a list of strings")

    dashboard_url = service_section.get("dashboard_url") or os.environ.get("CALBRIDGE_DASHBOARD_URL")

    return ServiceConfig(
        google=_parse_google(google_section),
        encryption_key=encryption_key,
        database=_parse_database(_section(data, "database")),
        logging=_parse_logging(_section(data, "logging")),
        aggregation=AggregationConfig(calendar_timeout_seconds=timeout),
        cache=cache,
        retry=retry,
        timezone=_parse_timezone(
            service_section.get("timezone") or os.environ.get("CALBRIDGE_TIMEZONE")
        ),
        cors_origins=[str(origin) for origin in cors_origins],
        dashboard_url=str(dashboard_url).strip() or None if dashboard_url else None,
    )


def load_config(path: Path | None = None) -> ServiceConfig:
    """Load configuration from *path* (or ``./calbridge.toml``) and the environment.

    A missing file is not an error when *path* is not given: every setting
    has an environment-variable source.

    Raises
    ------
    ConfigError
        If the file is unreadable, contains invalid TOML, or required values
        are missing.
    """
    explicit = path is not None
    toml_path = path or Path(os.environ.get("CALBRIDGE_CONFIG", DEFAULT_CONFIG_FILENAME))

    data: dict[str, Any] = {}
    if toml_path.exists():
        try:
            data = tomllib.loads(toml_path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
    elif explicit:
        raise ConfigError(f"Config file not found: {toml_path}")

    return config_from_dict(data)
