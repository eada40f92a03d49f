import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest

from spotify_session_mcp.auth_gate import AuthGate
from spotify_session_mcp.config import Settings
from spotify_session_mcp.errors import TokenEndpointError, UpstreamError, UpstreamUnauthorized
from spotify_session_mcp.spotify_api import TokenGrant
from spotify_session_mcp.token_store import TokenStore
from spotify_session_mcp.tools import ToolDispatcher


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSpotifyClient:
    """Stands in for SpotifyClient; records every call and the token it used."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.refresh_calls: List[str] = []
        self.exchange_calls: List[str] = []
        self.closed = False

        self.exchange_grant = TokenGrant("T1", "R1", 3600)
        self.refresh_grants: List[TokenGrant] = []
        self.refresh_error: Optional[str] = None
        self.exchange_error: Optional[str] = None
        self.refresh_delay = 0.0
        # awaited in the middle of a code exchange
        self.during_exchange: Optional[Callable[[], Awaitable[None]]] = None

        # token -> exception raised by any Web API call made with it
        self.failing_tokens: Dict[str, Exception] = {}
        self.user = {
            "id": "user-1",
            "display_name": "Test User",
            "email": "test@example.com",
            "country": "US",
            "followers": 7,
        }

    # accounts service

    async def exchange_authorization_code(self, code: str) -> TokenGrant:
        self.exchange_calls.append(code)
        if self.during_exchange is not None:
            await self.during_exchange()
        if self.exchange_error:
            raise TokenEndpointError(self.exchange_error, status=400)
        return self.exchange_grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise TokenEndpointError(self.refresh_error, status=400)
        if self.refresh_grants:
            return self.refresh_grants.pop(0)
        return TokenGrant("T-refreshed", None, 3600)

    # web api

    def _record(self, name: str, token: str, *args: Any) -> None:
        self.calls.append((name, token) + args)
        error = self.failing_tokens.get(token)
        if error is not None:
            raise error

    async def search_tracks(self, token: str, query: str, limit: int = 10):
        self._record("search_tracks", token, query, limit)
        return [{"id": "t1", "name": "Song", "artist": "Band", "album": "Album", "uri": "spotify:track:t1"}]

    async def get_current_user(self, token: str):
        self._record("get_current_user", token)
        return dict(self.user)

    async def create_playlist(self, token: str, owner_id: str, name: str, description: str = "", public: bool = False):
        self._record("create_playlist", token, owner_id, name, description, public)
        return {"id": "pl-1", "name": name, "url": "https://open.spotify.com/playlist/pl-1"}

    async def add_tracks(self, token: str, playlist_id: str, track_uris: List[str]) -> int:
        self._record("add_tracks", token, playlist_id, list(track_uris))
        return len(track_uris)

    async def get_recommendations(self, token: str, seed_track_ids: List[str], limit: int = 20):
        self._record("get_recommendations", token, list(seed_track_ids), limit)
        return [{"id": "t9", "name": "Rec", "artist": "Other", "album": "Album", "uri": "spotify:track:t9"}]

    async def close(self) -> None:
        self.closed = True

    def used_tokens(self) -> List[str]:
        return [call[1] for call in self.calls]


def unauthorized() -> UpstreamUnauthorized:
    return UpstreamUnauthorized()


def upstream_error(message: str = "Spotify API error: Not found", status: int = 404) -> UpstreamError:
    return UpstreamError(message, status=status)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost:8080/callback/spotify",
    )


@pytest.fixture
def single_settings(settings) -> Settings:
    return settings.with_overrides(auth_mode="single")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeSpotifyClient:
    return FakeSpotifyClient()


@pytest.fixture
def store(fake_client, clock) -> TokenStore:
    return TokenStore(fake_client, clock=clock)


@pytest.fixture
def gate(store, settings) -> AuthGate:
    return AuthGate(store, settings)


@pytest.fixture
def dispatcher(gate, fake_client) -> ToolDispatcher:
    return ToolDispatcher(gate, fake_client)


def result_text(result) -> str:
    return "\n".join(block.text for block in result.content)
