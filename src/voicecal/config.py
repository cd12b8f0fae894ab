"""Application configuration loading and validation.

Reads an optional ``voicecal.toml``, resolves ``${VAR}`` references, fills
unset values from the environment, and returns a validated ``AppConfig``
dataclass.

Resolution order for every value:
1. The TOML file (when ``path`` is given or ``VOICECAL_CONFIG`` is set).
2. The matching environment variable.
3. The dataclass default.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

ENV_CONFIG_PATH = "VOICECAL_CONFIG"

DEFAULT_REDIRECT_URI = "http://localhost:8000/api/oauth/google/callback"
DEFAULT_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
)
DEFAULT_REALTIME_MODEL = "gpt-realtime-mini-2025-10-06"
DEFAULT_CLIENT_SECRET_URL = "https://api.openai.com/v1/realtime/client_secrets"
DEFAULT_REALTIME_WEBSOCKET_URL = "wss://api.openai.com/v1/realtime"
DEFAULT_AGENT_INSTRUCTIONS = (
    "You are a helpful assistant for managing Google Calendar. "
    "You can help users create, update, and delete calendar events. "
    "When users ask about events, use find_events to search for them. "
    "Always confirm before deleting events. "
    "When the user wants to stop talking, ask for confirmation and then call "
    "end_voice_session."
)


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class GoogleOAuthConfig:
    """Google OAuth client settings from the [google] section."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    refresh_margin_seconds: int = 300
    dashboard_url: str | None = None

    def require_client(self) -> tuple[str, str]:
        """Return ``(client_id, client_secret)`` or raise ``ConfigError``."""
        missing = [
            name
            for name, value in (
                ("GOOGLE_CLIENT_ID", self.client_id),
                ("GOOGLE_CLIENT_SECRET", self.client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Google OAuth is not configured: missing {', '.join(missing)}")
        return self.client_id, self.client_secret  # type: ignore[return-value]


@dataclass
class RealtimeConfig:
    """Speech-agent service settings from the [realtime] section."""

    api_key: str | None = None
    model: str = DEFAULT_REALTIME_MODEL
    client_secret_url: str = DEFAULT_CLIENT_SECRET_URL
    websocket_url: str = DEFAULT_REALTIME_WEBSOCKET_URL
    instructions: str = DEFAULT_AGENT_INSTRUCTIONS


@dataclass
class DatabaseConfig:
    """Record store settings from the [database] section."""

    url: str | None = None
    min_size: int = 1
    max_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class VoiceConfig:
    """Voice session timing from the [voice] section."""

    teardown_grace_seconds: float = 0.5
    end_signal_delay_seconds: float = 0.4


@dataclass
class ApiConfig:
    """HTTP surface settings from the [api] section."""

    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])


@dataclass
class AppConfig:
    """Parsed and validated application configuration."""

    google: GoogleOAuthConfig = field(default_factory=GoogleOAuthConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

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
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def _pick(section: dict[str, Any], key: str, env_name: str | None, default: Any) -> Any:
    if key in section and section[key] is not None:
        return section[key]
    if env_name is not None:
        env_value = _env(env_name)
        if env_value is not None:
            return env_value
    return default


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got: {value!r}") from exc


def _as_float(value: Any, name: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got: {value!r}") from exc
    if result < 0:
        raise ConfigError(f"{name} must not be negative, got: {value!r}")
    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _parse_google(section: dict[str, Any]) -> GoogleOAuthConfig:
    scopes_raw = section.get("scopes")
    if scopes_raw is None:
        scopes = DEFAULT_SCOPES
    elif isinstance(scopes_raw, list) and all(isinstance(s, str) for s in scopes_raw):
        scopes = tuple(scopes_raw)
    else:
        raise ConfigError("google.scopes must be a list of strings")

    margin = _as_int(
        _pick(section, "refresh_margin_seconds", "GOOGLE_REFRESH_MARGIN_SECONDS", 300),
        "google.refresh_margin_seconds",
    )
    if margin < 0:
        raise ConfigError("google.refresh_margin_seconds must not be negative")

    return GoogleOAuthConfig(
        client_id=_pick(section, "client_id", "GOOGLE_CLIENT_ID", None),
        client_secret=_pick(section, "client_secret", "GOOGLE_CLIENT_SECRET", None),
        redirect_uri=_pick(section, "redirect_uri", "GOOGLE_OAUTH_REDIRECT", DEFAULT_REDIRECT_URI),
        scopes=scopes,
        refresh_margin_seconds=margin,
        dashboard_url=_pick(section, "dashboard_url", "OAUTH_DASHBOARD_URL", None),
    )


def _parse_realtime(section: dict[str, Any]) -> RealtimeConfig:
    return RealtimeConfig(
        api_key=_pick(section, "api_key", "OPENAI_API_KEY", None),
        model=_pick(section, "model", "REALTIME_MODEL", DEFAULT_REALTIME_MODEL),
        client_secret_url=_pick(section, "client_secret_url", None, DEFAULT_CLIENT_SECRET_URL),
        websocket_url=_pick(section, "websocket_url", None, DEFAULT_REALTIME_WEBSOCKET_URL),
        instructions=_pick(section, "instructions", None, DEFAULT_AGENT_INSTRUCTIONS),
    )


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    min_size = _as_int(_pick(section, "min_size", None, 1), "database.min_size")
    max_size = _as_int(_pick(section, "max_size", None, 10), "database.max_size")
    if min_size < 0 or max_size < 1 or min_size > max_size:
        raise ConfigError(
            f"database pool bounds are invalid (min_size={min_size}, max_size={max_size})"
        )
    return DatabaseConfig(
        url=_pick(section, "url", "DATABASE_URL", None),
        min_size=min_size,
        max_size=max_size,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    fmt = str(_pick(section, "format", "VOICECAL_LOG_FORMAT", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json', got: {fmt!r}")
    return LoggingConfig(
        level=str(_pick(section, "level", "VOICECAL_LOG_LEVEL", "INFO")).upper(),
        format=fmt,
        log_root=_pick(section, "log_root", "VOICECAL_LOG_ROOT", None),
    )


def _parse_voice(section: dict[str, Any]) -> VoiceConfig:
    return VoiceConfig(
        teardown_grace_seconds=_as_float(
            _pick(section, "teardown_grace_seconds", None, 0.5), "voice.teardown_grace_seconds"
        ),
        end_signal_delay_seconds=_as_float(
            _pick(section, "end_signal_delay_seconds", None, 0.4),
            "voice.end_signal_delay_seconds",
        ),
    )


def _parse_api(section: dict[str, Any]) -> ApiConfig:
    origins = section.get("cors_origins")
    if origins is None:
        env_origins = _env("VOICECAL_CORS_ORIGINS")
        if env_origins is None:
            return ApiConfig()
        origins = [o.strip() for o in env_origins.split(",") if o.strip()]
    if not isinstance(origins, list) or not all(isinstance(o, str) for o in origins):
        raise ConfigError("api.cors_origins must be a list of strings")
    return ApiConfig(cors_origins=list(origins))


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate application configuration.

    Parameters
    ----------
    path:
        Optional path to a TOML file.  Falls back to ``VOICECAL_CONFIG``;
        when neither is set, configuration comes from the environment only.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    if path is None:
        env_path = _env(ENV_CONFIG_PATH)
        path = Path(env_path) if env_path else None

    data: dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            data = tomllib.loads(path.read_bytes().decode())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
        data = resolve_env_vars(data)

    return AppConfig(
        google=_parse_google(_section(data, "google")),
        realtime=_parse_realtime(_section(data, "realtime")),
        database=_parse_database(_section(data, "database")),
        logging=_parse_logging(_section(data, "logging")),
        voice=_parse_voice(_section(data, "voice")),
        api=_parse_api(_section(data, "api")),
    )
