"""Tests for application configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from voicecal.config import (
    DEFAULT_REALTIME_MODEL,
    DEFAULT_REDIRECT_URI,
    DEFAULT_SCOPES,
    AppConfig,
    ConfigError,
    GoogleOAuthConfig,
    load_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

_ENV_NAMES = (
    "VOICECAL_CONFIG",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_OAUTH_REDIRECT",
    "GOOGLE_REFRESH_MARGIN_SECONDS",
    "OAUTH_DASHBOARD_URL",
    "OPENAI_API_KEY",
    "REALTIME_MODEL",
    "DATABASE_URL",
    "VOICECAL_LOG_FORMAT",
    "VOICECAL_LOG_LEVEL",
    "VOICECAL_LOG_ROOT",
    "VOICECAL_CORS_ORIGINS",
)

FULL_TOML = """\
[google]
client_id = "cid.apps.googleusercontent.com"
client_secret = "${TEST_GOOGLE_SECRET}"
redirect_uri = "https://cal.example.com/api/oauth/google/callback"
scopes = ["https://www.googleapis.com/auth/calendar.events"]
refresh_margin_seconds = 120
dashboard_url = "https://cal.example.com/settings"

[realtime]
api_key = "sk-from-file"
model = "gpt-realtime"

[database]
url = "postgres://localhost/voicecal"
min_size = 2
max_size = 4

[logging]
level = "debug"
format = "JSON"

[voice]
teardown_grace_seconds = 1.5

[api]
cors_origins = ["https://cal.example.com"]
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def _write_toml(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "voicecal.toml"
    path.write_text(content)
    return path


class TestDefaults:
    def test_no_file_no_env(self):
        cfg = load_config()

        assert isinstance(cfg, AppConfig)
        assert cfg.google.client_id is None
        assert cfg.google.redirect_uri == DEFAULT_REDIRECT_URI
        assert cfg.google.scopes == DEFAULT_SCOPES
        assert cfg.google.refresh_margin_seconds == 300
        assert cfg.realtime.model == DEFAULT_REALTIME_MODEL
        assert cfg.logging.format == "text"
        assert cfg.voice.teardown_grace_seconds == 0.5
        assert cfg.api.cors_origins == ["http://localhost:3000"]

    def test_environment_fills_unset_values(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "env-id")
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "env-secret")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("VOICECAL_CORS_ORIGINS", "https://a.example, https://b.example,")

        cfg = load_config()

        assert cfg.google.require_client() == ("env-id", "env-secret")
        assert cfg.realtime.api_key == "sk-env"
        assert cfg.api.cors_origins == ["https://a.example", "https://b.example"]

    def test_blank_env_treated_as_unset(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "   ")
        assert load_config().google.client_id is None


class TestTomlFile:
    def test_full_file(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("TEST_GOOGLE_SECRET", "resolved-secret")
        cfg = load_config(_write_toml(tmp_path, FULL_TOML))

        assert cfg.google.client_secret == "resolved-secret"
        assert cfg.google.scopes == ("https://www.googleapis.com/auth/calendar.events",)
        assert cfg.google.refresh_margin_seconds == 120
        assert cfg.google.dashboard_url == "https://cal.example.com/settings"
        assert cfg.realtime.api_key == "sk-from-file"
        assert cfg.realtime.model == "gpt-realtime"
        assert cfg.database.url == "postgres://localhost/voicecal"
        assert (cfg.database.min_size, cfg.database.max_size) == (2, 4)
        assert cfg.logging.level == "DEBUG"
        assert cfg.logging.format == "json"
        assert cfg.voice.teardown_grace_seconds == 1.5
        assert cfg.voice.end_signal_delay_seconds == 0.4
        assert cfg.api.cors_origins == ["https://cal.example.com"]

    def test_file_wins_over_environment(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        path = _write_toml(tmp_path, '[realtime]\napi_key = "sk-file"\n')
        assert load_config(path).realtime.api_key == "sk-file"

    def test_path_from_environment(self, tmp_path: Path, monkeypatch):
        path = _write_toml(tmp_path, '[google]\nclient_id = "from-env-path"\n')
        monkeypatch.setenv("VOICECAL_CONFIG", str(path))
        assert load_config().google.client_id == "from-env-path"


class TestErrors:
    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write_toml(tmp_path, "[google\n"))

    def test_unresolved_reference(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("TEST_GOOGLE_SECRET", raising=False)
        with pytest.raises(ConfigError, match="TEST_GOOGLE_SECRET"):
            load_config(_write_toml(tmp_path, FULL_TOML))

    @pytest.mark.parametrize(
        ("content", "match"),
        [
            ('google = "flat"\n', r"\[google\] must be a table"),
            ("[google]\nscopes = [1, 2]\n", "google.scopes"),
            ("[google]\nrefresh_margin_seconds = -1\n", "must not be negative"),
            ('[google]\nrefresh_margin_seconds = "soon"\n', "must be an integer"),
            ("[database]\nmin_size = 5\nmax_size = 2\n", "pool bounds"),
            ('[logging]\nformat = "xml"\n', "logging.format"),
            ("[voice]\nteardown_grace_seconds = -0.1\n", "must not be negative"),
            ('[api]\ncors_origins = "*"\n', "api.cors_origins"),
        ],
    )
    def test_invalid_values(self, tmp_path: Path, content: str, match: str):
        with pytest.raises(ConfigError, match=match):
            load_config(_write_toml(tmp_path, content))

    def test_require_client_names_missing_values(self):
        with pytest.raises(ConfigError, match="GOOGLE_CLIENT_SECRET"):
            GoogleOAuthConfig(client_id="id").require_client()


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch):
        monkeypatch.setenv("HOST", "db.internal")
        resolved = resolve_env_vars({"a": ["postgres://${HOST}/x", 3], "b": {"c": "${HOST}"}})
        assert resolved == {"a": ["postgres://db.internal/x", 3], "b": {"c": "db.internal"}}
