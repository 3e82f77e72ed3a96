"""calsync configuration loading and validation.

Reads ``calsync.toml`` (or the file named by ``CALSYNC_CONFIG``), resolves
``${VAR}`` references, and returns a validated :class:`CalsyncConfig`.
"""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, quote, unquote, urlparse

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "calsync.toml"
CONFIG_PATH_ENV_VAR = "CALSYNC_CONFIG"
DEFAULT_CREDENTIALS_ENV = "GOOGLE_OAUTH_CREDENTIALS"
DEFAULT_DB_NAME = "calsync"

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = ("text", "json")
_VALID_SSL_MODES = ("disable", "prefer", "allow", "require", "verify-ca", "verify-full")
_SCHEMA_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings from the [database] section."""

    name: str = DEFAULT_DB_NAME
    schema: str | None = None
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def url(self) -> str:
        """SQLAlchemy-style URL used to drive alembic."""
        user = quote(self.user, safe="")
        password = quote(self.password, safe="")
        url = f"postgresql://{user}:{password}@{self.host}:{self.port}/{self.name}"
        if self.ssl:
            url += f"?sslmode={self.ssl}"
        return url


@dataclass(frozen=True)
class GoogleConfig:
    """Remote calendar settings from the [google] section."""

    credentials_env: str = DEFAULT_CREDENTIALS_ENV
    calendar_id: str | None = None
    holiday_calendar_id: str | None = None
    request_timeout_s: float = 30.0


@dataclass(frozen=True)
class SyncConfig:
    """Timers and limits from the [sync] section."""

    outbox_interval_s: float = 60.0
    sync_interval_s: float = 300.0
    stuck_job_minutes: float = 5.0
    max_attempts: int = 8
    force_push_batch_size: int = 200
    window_past_days: int = 1825
    window_future_days: int = 365


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass(frozen=True)
class CalsyncConfig:
    """Parsed calsync.toml."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source: Path | None = None


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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


# ---------------------------------------------------------------------------
# Field validators
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _optional_str(section: dict[str, Any], key: str, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    value = value.strip()
    return value or None


def _number(
    section: dict[str, Any],
    key: str,
    path: str,
    default: float,
    *,
    integer: bool = False,
    minimum: float = 0,
) -> Any:
    value = section.get(key, default)
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{path}.{key} must be a number")
    if integer and not isinstance(value, int):
        raise ConfigError(f"{path}.{key} must be an integer")
    if value < minimum:
        raise ConfigError(f"{path}.{key} must be >= {minimum}, got {value}")
    return value


def _database_env_defaults() -> dict[str, Any]:
    """Connection defaults from ``DATABASE_URL`` or the ``POSTGRES_*`` variables.

    ``DATABASE_URL`` wins when set; its database name is ignored.
    """
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        parsed = urlparse(database_url)
        return {
            "host": parsed.hostname or "localhost",
            "port": parsed.port or 5432,
            "user": unquote(parsed.username) if parsed.username else "postgres",
            "password": unquote(parsed.password) if parsed.password else "postgres",
            "ssl": _ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        }
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": os.environ.get("POSTGRES_PORT", 5432),
        "user": os.environ.get("POSTGRES_USER", "postgres"),
        "password": os.environ.get("POSTGRES_PASSWORD", "postgres"),
        "ssl": _ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    }


def _ssl_mode(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    normalized = value.strip().lower()
    if normalized not in _VALID_SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return normalized


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    env = _database_env_defaults()
    name = _optional_str(section, "name", "database") or DEFAULT_DB_NAME
    port = section.get("port", env["port"])
    if isinstance(port, str) and port.isdigit():
        port = int(port)
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigError("database.port must be an integer")

    min_pool = _number(section, "min_pool_size", "database", 2, integer=True, minimum=1)
    max_pool = _number(section, "max_pool_size", "database", 10, integer=True, minimum=1)
    if max_pool < min_pool:
        raise ConfigError(
            f"database.max_pool_size ({max_pool}) must be >= database.min_pool_size ({min_pool})"
        )

    ssl = _ssl_mode(_optional_str(section, "ssl", "database")) or env["ssl"]

    schema = _optional_str(section, "schema", "database")
    if schema is not None and _SCHEMA_NAME_PATTERN.fullmatch(schema) is None:
        raise ConfigError(f"database.schema must be a SQL identifier, got {schema!r}")

    return DatabaseConfig(
        name=name,
        schema=schema,
        host=_optional_str(section, "host", "database") or str(env["host"]),
        port=port,
        user=_optional_str(section, "user", "database") or str(env["user"]),
        password=_optional_str(section, "password", "database") or str(env["password"]),
        ssl=ssl,
        min_pool_size=min_pool,
        max_pool_size=max_pool,
    )


def _parse_google(section: dict[str, Any]) -> GoogleConfig:
    return GoogleConfig(
        credentials_env=(
            _optional_str(section, "credentials_env", "google") or DEFAULT_CREDENTIALS_ENV
        ),
        calendar_id=_optional_str(section, "calendar_id", "google"),
        holiday_calendar_id=_optional_str(section, "holiday_calendar_id", "google"),
        request_timeout_s=_number(section, "request_timeout_s", "google", 30.0, minimum=1),
    )


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    return SyncConfig(
        outbox_interval_s=_number(section, "outbox_interval_s", "sync", 60.0, minimum=1),
        sync_interval_s=_number(section, "sync_interval_s", "sync", 300.0, minimum=1),
        stuck_job_minutes=_number(section, "stuck_job_minutes", "sync", 5.0, minimum=1),
        max_attempts=_number(section, "max_attempts", "sync", 8, integer=True, minimum=1),
        force_push_batch_size=_number(
            section, "force_push_batch_size", "sync", 200, integer=True, minimum=1
        ),
        window_past_days=_number(section, "window_past_days", "sync", 1825, integer=True),
        window_future_days=_number(section, "window_future_days", "sync", 365, integer=True),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = (_optional_str(section, "level", "logging") or "INFO").upper()
    fmt = (_optional_str(section, "format", "logging") or "text").lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(
            f"logging.format must be one of {', '.join(_VALID_LOG_FORMATS)}, got {fmt!r}"
        )
    return LoggingConfig(
        level=level,
        format=fmt,
        log_root=_optional_str(section, "log_root", "logging"),
    )


def parse_config(data: dict[str, Any], *, source: Path | None = None) -> CalsyncConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    return CalsyncConfig(
        database=_parse_database(_section(data, "database")),
        google=_parse_google(_section(data, "google")),
        sync=_parse_sync(_section(data, "sync")),
        logging=_parse_logging(_section(data, "logging")),
        source=source,
    )


def load_config(path: Path | str | None = None) -> CalsyncConfig:
    """Load and validate calsync configuration.

    Parameters
    ----------
    path:
        Explicit config file. When ``None``, ``$CALSYNC_CONFIG`` is used if
        set, otherwise ``./calsync.toml``.

    Returns
    -------
    CalsyncConfig
        Parsed configuration. A missing default file yields all defaults.

    Raises
    ------
    ConfigError
        If an explicitly named file is missing, the TOML is invalid, or a
        value fails validation.
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_PATH_ENV_VAR))
    if path is None:
        path = os.environ.get(CONFIG_PATH_ENV_VAR) or DEFAULT_CONFIG_FILENAME
    toml_path = Path(path)

    if not toml_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {toml_path}")
        return parse_config({})

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data, source=toml_path)
