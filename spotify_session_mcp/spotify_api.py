import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from .config import Settings
from .errors import TokenEndpointError, UpstreamError, UpstreamUnauthorized

logger = logging.getLogger(__name__)

MAX_TRACKS_PER_REQUEST = 100


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


def _format_track(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": item.get("id"),
        "name": item.get("name"),
        "artist": ", ".join(a.get("name", "") for a in item.get("artists", []) or []),
        "album": (item.get("album") or {}).get("name"),
        "uri": item.get("uri"),
    }


def _track_id(value: str) -> str:
    # accepts bare ids as well as spotify:track:<id> URIs
    return value.split(":")[-1]


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if isinstance(error, str):
            return body.get("error_description") or error
    return fallback


class SpotifyClient:
    """Thin async client for the Spotify accounts service and Web API.

    One aiohttp session is shared by every call and opened lazily; call
    close() on shutdown.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._http_session: Optional[aiohttp.ClientSession] = None

    # -------------------------------------------------------------------------
    # Shared HTTP session
    # -------------------------------------------------------------------------

    async def get_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            timeout = aiohttp.ClientTimeout(total=self.settings.http_timeout)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
        return self._http_session

    async def close(self) -> None:
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
        self._http_session = None

    # -------------------------------------------------------------------------
    # Accounts service (token endpoint)
    # -------------------------------------------------------------------------

    def _basic_auth_header(self) -> str:
        auth_string = f"{self.settings.client_id}:{self.settings.client_secret}"
        return "Basic " + base64.b64encode(auth_string.encode("ascii")).decode("ascii")

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
        }
        url = f"{self.settings.accounts_base}/api/token"
        session = await self.get_http_session()
        async with session.post(url, headers=headers, data=data) as response:
            text = await response.text()
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None
            if response.status != 200:
                description = _error_message(body, text or f"HTTP {response.status}")
                logger.warning(f"Token endpoint rejected {data.get('grant_type')}: {response.status} - {description}")
                raise TokenEndpointError(description, status=response.status)
            if not isinstance(body, dict) or not body.get("access_token"):
                raise TokenEndpointError("Token endpoint returned no access_token", status=response.status)
            return body

    async def exchange_authorization_code(self, code: str) -> TokenGrant:
        body = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.redirect_uri,
        })
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=int(body.get("expires_in", 3600)),
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        body = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=int(body.get("expires_in", 3600)),
        )

    # -------------------------------------------------------------------------
    # Web API
    # -------------------------------------------------------------------------

    async def _request(
        self,
        access_token: str,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        url = f"{self.settings.api_base}/{endpoint.lstrip('/')}"
        session = await self.get_http_session()

        async with session.request(method=method, url=url, headers=headers, params=params, json=json_data) as response:
            if response.status == 204:
                return {}

            body_text = await response.text()
            try:
                body = await response.json(content_type=None) if body_text.strip() else {}
            except ValueError:
                body = {"_raw": body_text}

            if response.status == 401:
                logger.info(f"Spotify returned 401 for {method} {url}")
                raise UpstreamUnauthorized(_error_message(body, "The access token expired or was revoked"))

            if response.status >= 400:
                logger.error(
                    "Spotify API error %s\n-> %s %s\n-> params=%s json=%s\n-> body=%s",
                    response.status, method, url, params, json_data, body_text[:800],
                )
                message = _error_message(body, "Unknown error")
                raise UpstreamError(f"Spotify API error: {message}", status=response.status)

            return body if isinstance(body, dict) else {"_raw": body}

    async def search_tracks(self, access_token: str, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        result = await self._request(access_token, "search", params={"q": query, "type": "track", "limit": limit})
        items = (result.get("tracks") or {}).get("items", []) or []
        return [_format_track(item) for item in items]

    async def get_current_user(self, access_token: str) -> Dict[str, Any]:
        data = await self._request(access_token, "me")
        return {
            "id": data.get("id"),
            "display_name": data.get("display_name"),
            "email": data.get("email"),
            "country": data.get("country"),
            "followers": (data.get("followers") or {}).get("total") or 0,
        }

    async def create_playlist(
        self,
        access_token: str,
        owner_id: str,
        name: str,
        description: str = "",
        public: bool = False,
    ) -> Dict[str, Any]:
        data = await self._request(
            access_token,
            f"users/{owner_id}/playlists",
            method="POST",
            json_data={"name": name, "description": description, "public": public},
        )
        return {
            "id": data.get("id"),
            "name": data.get("name"),
            "url": (data.get("external_urls") or {}).get("spotify"),
        }

    async def add_tracks(self, access_token: str, playlist_id: str, track_uris: List[str]) -> int:
        added = 0
        for start in range(0, len(track_uris), MAX_TRACKS_PER_REQUEST):
            chunk = track_uris[start:start + MAX_TRACKS_PER_REQUEST]
            try:
                await self._request(
                    access_token,
                    f"playlists/{playlist_id}/tracks",
                    method="POST",
                    json_data={"uris": chunk},
                )
            except UpstreamUnauthorized:
                raise
            except UpstreamError as e:
                if not added:
                    raise
                raise UpstreamError(
                    f"{e.message} ({added} of {len(track_uris)} track(s) were already added)",
                    status=e.status,
                ) from e
            added += len(chunk)
        return added

    async def get_recommendations(
        self, access_token: str, seed_track_ids: List[str], limit: int = 20
    ) -> List[Dict[str, Any]]:
        params = {
            "seed_tracks": ",".join(_track_id(t) for t in seed_track_ids),
            "limit": limit,
        }
        result = await self._request(access_token, "recommendations", params=params)
        return [_format_track(item) for item in result.get("tracks", []) or []]
