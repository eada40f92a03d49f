import os
from dataclasses import dataclass, field, replace
from typing import Any, Callable, List, Optional

from dotenv import load_dotenv

from .errors import ConfigError


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

SPOTIFY_API_BASE = "https://api.spotify.com/v1"
SPOTIFY_ACCOUNTS_BASE = "https://accounts.spotify.com"

SPOTIFY_SCOPES = [
    "user-read-private",
    "user-read-email",
    "playlist-read-private",
    "playlist-modify-private",
    "playlist-modify-public",
]

AUTH_MODE_SESSION = "session"
AUTH_MODE_SINGLE = "single"
AUTH_MODES = (AUTH_MODE_SESSION, AUTH_MODE_SINGLE)

DEFAULT_REDIRECT_URI = "http://localhost:8080/callback/spotify"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_number(name: str, default: str, cast: Callable[[str], Any]) -> Any:
    raw = os.getenv(name, default)
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    """Server configuration (env and .env driven, overridable from the CLI)."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = DEFAULT_REDIRECT_URI
    auth_mode: str = AUTH_MODE_SESSION
    refresh_token: Optional[str] = None
    http_timeout: float = 30.0
    host: str = "0.0.0.0"
    port: int = 8080
    json_response: bool = False
    cors_allow_origins: List[str] = field(default_factory=lambda: ["*"])
    api_base: str = SPOTIFY_API_BASE
    accounts_base: str = SPOTIFY_ACCOUNTS_BASE
    scopes: List[str] = field(default_factory=lambda: list(SPOTIFY_SCOPES))

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            client_id=os.getenv("SPOTIFY_CLIENT_ID", ""),
            client_secret=os.getenv("SPOTIFY_CLIENT_SECRET", ""),
            redirect_uri=os.getenv("SPOTIFY_REDIRECT_URI", DEFAULT_REDIRECT_URI),
            auth_mode=os.getenv("SPOTIFY_AUTH_MODE", AUTH_MODE_SESSION).strip().lower(),
            refresh_token=os.getenv("SPOTIFY_REFRESH_TOKEN") or None,
            http_timeout=_env_number("SPOTIFY_HTTP_TIMEOUT", "30", float),
            port=_env_number("PORT", "8080", int),
            json_response=_env_bool("MCP_JSON_RESPONSE"),
            cors_allow_origins=_env_list("CORS_ALLOW_ORIGINS", "*"),
        )

    def with_overrides(self, **changes) -> "Settings":
        """Copy with every non-None keyword applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def single_tenant(self) -> bool:
        return self.auth_mode == AUTH_MODE_SINGLE

    def validate(self) -> bool:
        missing = []
        if not self.client_id:
            missing.append("SPOTIFY_CLIENT_ID")
        if not self.client_secret:
            missing.append("SPOTIFY_CLIENT_SECRET")
        if not self.redirect_uri:
            missing.append("SPOTIFY_REDIRECT_URI")
        if missing:
            raise ConfigError(f"Missing required config values: {', '.join(missing)}")
        if not self.redirect_uri.startswith(("http://", "https://")):
            raise ConfigError("SPOTIFY_REDIRECT_URI must be a valid URL starting with http:// or https://")
        if self.auth_mode not in AUTH_MODES:
            raise ConfigError(f"SPOTIFY_AUTH_MODE must be one of: {', '.join(AUTH_MODES)}")
        if self.http_timeout <= 0:
            raise ConfigError("SPOTIFY_HTTP_TIMEOUT must be a positive number of seconds")
        return True
