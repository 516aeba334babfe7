"""Application configuration loading and validation.

Reads ``todo_studio.toml``, resolves ``${VAR}`` references from the
environment and returns a validated :class:`AppConfig`.  Without a TOML file,
:meth:`AppConfig.from_env` builds the same structure from environment
variables alone.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from todo_studio.db import DEFAULT_DB_NAME
from todo_studio.errors import ConfigurationError
from todo_studio.sealing import ENCRYPTION_KEY_ENV

CONFIG_FILENAME = "todo_studio.toml"
DEFAULT_BASE_URL = "http://localhost:3000"

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class LoggingConfig:
    """Logging configuration from [app.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    name: str = DEFAULT_DB_NAME


@dataclass
class GoogleConfig:
    """OAuth client settings from [integrations.google]."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None

    def __repr__(self) -> str:
        secret = "<REDACTED>" if self.client_secret else None
        return (
            f"GoogleConfig(client_id={self.client_id!r}, client_secret={secret!r}, "
            f"redirect_uri={self.redirect_uri!r})"
        )

    @classmethod
    def from_env(cls) -> GoogleConfig:
        return cls(
            client_id=os.environ.get("GOOGLE_CLIENT_ID") or None,
            client_secret=os.environ.get("GOOGLE_CLIENT_SECRET") or None,
            redirect_uri=os.environ.get("GOOGLE_REDIRECT_URI") or None,
        )


@dataclass
class RateLimitConfig:
    webhook_max_requests: int = 30
    webhook_window_seconds: int = 60
    sync_max_requests: int = 6
    sync_window_seconds: int = 60


@dataclass
class AppConfig:
    base_url: str = DEFAULT_BASE_URL
    host: str = "127.0.0.1"
    port: int = 8000
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    encryption_key: str | None = field(default=None, repr=False)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Build a configuration from environment variables only."""
        return cls(
            base_url=_normalize_base_url(os.environ.get("APP_URL") or DEFAULT_BASE_URL),
            logging=LoggingConfig(
                level=os.environ.get("LOG_LEVEL", "INFO").upper(),
                format=_validate_log_format(os.environ.get("LOG_FORMAT", "text").lower()),
                log_root=os.environ.get("LOG_ROOT") or None,
            ),
            google=GoogleConfig.from_env(),
            encryption_key=os.environ.get(ENCRYPTION_KEY_ENV) or None,
        )


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
        raise ConfigurationError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _normalize_base_url(value: str) -> str:
    normalized = value.strip().rstrip("/")
    if not normalized.startswith(("http://", "https://")):
        raise ConfigurationError(f"Invalid app.base_url: {value!r}. Expected an http(s) URL.")
    return normalized


def _validate_log_format(value: str) -> str:
    if value not in ("text", "json"):
        raise ConfigurationError(
            f"Invalid app.logging.format: {value!r}. Expected 'text' or 'json'."
        )
    return value


def _positive_int(section: dict[str, Any], key: str, default: int) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"rate_limits.{key} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationError(f"rate_limits.{key} must be a positive integer, got {value!r}")
    return value


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def load_config(path: Path) -> AppConfig:
    """Load and validate ``todo_studio.toml``.

    *path* may be the file itself or the directory containing it.

    Raises
    ------
    ConfigurationError
        If the file is missing, contains invalid TOML, references unset
        environment variables, or holds invalid values.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigurationError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    # --- [app] ---
    app_section = data.get("app", {})
    if not isinstance(app_section, dict):
        raise ConfigurationError("[app] must be a TOML table")
    base_url = _normalize_base_url(str(app_section.get("base_url", DEFAULT_BASE_URL)))
    host = str(app_section.get("host", "127.0.0.1"))
    port = int(app_section.get("port", 8000))

    logging_section = app_section.get("logging", {})
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=_validate_log_format(str(logging_section.get("format", "text")).lower()),
        log_root=logging_section.get("log_root"),
    )

    db_section = app_section.get("db", {})
    db_name = str(db_section.get("name", DEFAULT_DB_NAME)).strip()
    if not db_name:
        raise ConfigurationError("app.db.name must be a non-empty string")

    # --- [integrations] ---
    integrations_section = data.get("integrations", {})
    google_section = integrations_section.get("google", {})
    env_google = GoogleConfig.from_env()
    google = GoogleConfig(
        client_id=_optional_str(google_section.get("client_id")) or env_google.client_id,
        client_secret=_optional_str(google_section.get("client_secret"))
        or env_google.client_secret,
        redirect_uri=_optional_str(google_section.get("redirect_uri"))
        or env_google.redirect_uri,
    )
    encryption_key = _optional_str(integrations_section.get("encryption_key")) or (
        os.environ.get(ENCRYPTION_KEY_ENV) or None
    )

    # --- [rate_limits] ---
    limits_section = data.get("rate_limits", {})
    rate_limits = RateLimitConfig(
        webhook_max_requests=_positive_int(limits_section, "webhook_max_requests", 30),
        webhook_window_seconds=_positive_int(limits_section, "webhook_window_seconds", 60),
        sync_max_requests=_positive_int(limits_section, "sync_max_requests", 6),
        sync_window_seconds=_positive_int(limits_section, "sync_window_seconds", 60),
    )

    return AppConfig(
        base_url=base_url,
        host=host,
        port=port,
        logging=logging_config,
        db=DatabaseConfig(name=db_name),
        google=google,
        encryption_key=encryption_key,
        rate_limits=rate_limits,
    )
