import pytest

from spotify_session_mcp.config import DEFAULT_REDIRECT_URI, Settings
from spotify_session_mcp.errors import ConfigError


@pytest.fixture
def env(monkeypatch):
    for name in (
        "SPOTIFY_CLIENT_ID",
        "SPOTIFY_CLIENT_SECRET",
        "SPOTIFY_REDIRECT_URI",
        "SPOTIFY_AUTH_MODE",
        "SPOTIFY_REFRESH_TOKEN",
        "SPOTIFY_HTTP_TIMEOUT",
        "PORT",
        "MCP_JSON_RESPONSE",
        "CORS_ALLOW_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("spotify_session_mcp.config.load_dotenv", lambda: None)
    return monkeypatch


def test_defaults_from_empty_environment(env):
    settings = Settings.from_env()
    assert settings.redirect_uri == DEFAULT_REDIRECT_URI
    assert settings.auth_mode == "session"
    assert settings.refresh_token is None
    assert settings.port == 8080
    assert settings.json_response is False
    assert settings.cors_allow_origins == ["*"]
    assert not settings.single_tenant


def test_values_from_environment(env):
    env.setenv("SPOTIFY_CLIENT_ID", "cid")
    env.setenv("SPOTIFY_CLIENT_SECRET", "secret")
    env.setenv("SPOTIFY_AUTH_MODE", " Single ")
    env.setenv("SPOTIFY_REFRESH_TOKEN", "r")
    env.setenv("SPOTIFY_HTTP_TIMEOUT", "2.5")
    env.setenv("PORT", "3000")
    env.setenv("MCP_JSON_RESPONSE", "true")
    env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

    settings = Settings.from_env()

    assert settings.client_id == "cid"
    assert settings.single_tenant
    assert settings.refresh_token == "r"
    assert settings.http_timeout == 2.5
    assert settings.port == 3000
    assert settings.json_response is True
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.validate()


def test_overrides_skip_none():
    settings = Settings(client_id="cid", port=1)
    changed = settings.with_overrides(port=None, auth_mode="single")
    assert changed.port == 1
    assert changed.auth_mode == "single"
    assert settings.auth_mode == "session"


def test_validate_reports_missing_credentials():
    with pytest.raises(ConfigError) as excinfo:
        Settings().validate()
    assert "SPOTIFY_CLIENT_ID" in str(excinfo.value)
    assert "SPOTIFY_CLIENT_SECRET" in str(excinfo.value)


@pytest.mark.parametrize(
    "changes",
    [
        {"redirect_uri": "localhost:8080/callback"},
        {"auth_mode": "shared"},
        {"http_timeout": 0},
    ],
)
def test_validate_rejects_bad_values(changes):
    settings = Settings(client_id="cid", client_secret="secret").with_overrides(**changes)
    with pytest.raises(ConfigError):
        settings.validate()


@pytest.mark.parametrize("name, value", [("PORT", "eighty"), ("SPOTIFY_HTTP_TIMEOUT", "soon")])
def test_non_numeric_values_raise_config_error(env, name, value):
    env.setenv(name, value)
    with pytest.raises(ConfigError) as excinfo:
        Settings.from_env()
    assert name in str(excinfo.value)
