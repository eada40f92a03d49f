"""
Auth gate: the single choke point between tool handlers and Spotify.

Every tool call obtains its bearer token through ``AuthGate.wrap``. Missing
credentials produce a plain (non-error) prompt with an authorization link;
credentials that stop working mid-call produce the same kind of link but the
result is flagged as an error.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union
from urllib.parse import urlencode

import mcp.types as types

from .config import Settings
from .errors import RefreshError, UpstreamError, UpstreamUnauthorized
from .token_store import TokenStore

logger = logging.getLogger(__name__)

# Credential key shared by every session in single-tenant mode
SINGLE_TENANT_KEY = "__single_tenant__"

ApiCall = Callable[[str], Awaitable[types.CallToolResult]]


@dataclass(frozen=True)
class AuthRequired:
    """No usable credentials for the session (never authenticated, or refresh failed)."""

    session_id: str
    reason: str = "missing"


@dataclass(frozen=True)
class AuthExpiredDuringCall:
    """Credentials were accepted locally but Spotify answered 401."""

    session_id: str


def text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


def error_result(message: str) -> types.CallToolResult:
    return text_result(f"❌ **Spotify API Error**\n\n{message}", is_error=True)


class AuthGate:
    def __init__(self, store: TokenStore, settings: Settings):
        self.store = store
        self.settings = settings

    def credential_key(self, session_id: str) -> str:
        if self.settings.single_tenant:
            return SINGLE_TENANT_KEY
        return session_id

    def forget_session(self, session_id: str) -> None:
        """Drop credentials owned by a session that is going away."""
        if self.settings.single_tenant:
            return
        self.store.remove(session_id)

    def authorization_url(self, session_id: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "scope": " ".join(self.settings.scopes),
            "redirect_uri": self.settings.redirect_uri,
            "state": session_id,
        }
        return f"{self.settings.accounts_base}/authorize?" + urlencode(params)

    # -------------------------------------------------------------------------
    # Token resolution
    # -------------------------------------------------------------------------

    async def resolve_token(self, session_id: str) -> Union[str, AuthRequired]:
        key = self.credential_key(session_id)
        record = self.store.get(key)
        if record is None:
            return AuthRequired(session_id)

        if not self.store.is_expired(record):
            return record.access_token

        async with self.store.lock_for(key):
            current = self.store.get(key)
            if current is None:
                return AuthRequired(session_id, reason="refresh_failed")
            if current is not record and not self.store.is_expired(current):
                # another task refreshed while we waited
                return current.access_token
            try:
                refreshed = await self.store.refresh(current)
            except RefreshError as e:
                logger.warning(f"Token refresh failed for session {session_id}: {e.description}")
                if self.store.get(key) is current:
                    self.store.remove(key)
                return AuthRequired(session_id, reason="refresh_failed")

            latest = self.store.get(key)
            if latest is not current:
                # removed (session closed) or replaced (new login) during the refresh
                if latest is not None and not self.store.is_expired(latest):
                    return latest.access_token
                logger.info(f"Discarding refreshed token for session {session_id}: credentials changed mid-refresh")
                return AuthRequired(session_id, reason="refresh_failed")
            self.store.put(key, refreshed)
            logger.info(f"Refreshed Spotify access token for session {session_id}")
            return refreshed.access_token

    # -------------------------------------------------------------------------
    # Tool wrapping
    # -------------------------------------------------------------------------

    def auth_required_result(self, outcome: AuthRequired) -> types.CallToolResult:
        url = self.authorization_url(outcome.session_id)
        return text_result(
            "🎵 **Spotify Authentication Required**\n\n"
            "To use Spotify features, please visit:\n\n"
            f"{url}\n\n"
            "This will connect your Spotify account. After authentication, "
            "return here and try your request again."
        )

    def auth_expired_result(self, outcome: AuthExpiredDuringCall) -> types.CallToolResult:
        url = self.authorization_url(outcome.session_id)
        return text_result(
            "🔐 **Spotify Authentication Expired**\n\n"
            "Your Spotify session has expired. Please visit:\n\n"
            f"{url}\n\n"
            "After completing authentication, return here and try your request again.",
            is_error=True,
        )

    async def wrap(self, session_id: str, api_call: ApiCall) -> types.CallToolResult:
        try:
            token = await self.resolve_token(session_id)
        except Exception as e:
            logger.exception(f"Could not resolve a token for session {session_id}: {e}")
            return error_result(f"Could not obtain a Spotify access token: {e}")
        if isinstance(token, AuthRequired):
            logger.info(f"Auth required for session {session_id} ({token.reason})")
            return self.auth_required_result(token)

        try:
            return await api_call(token)
        except UpstreamUnauthorized:
            logger.info(f"Spotify rejected the token for session {session_id}; requesting re-auth")
            key = self.credential_key(session_id)
            record = self.store.get(key)
            # a concurrent refresh may already have replaced the rejected token
            if record is not None and record.access_token == token:
                self.store.remove(key)
            return self.auth_expired_result(AuthExpiredDuringCall(session_id))
        except UpstreamError as e:
            logger.error(f"Spotify API error for session {session_id}: {e}")
            return error_result(e.message)
        except Exception as e:
            logger.exception(f"Unexpected error for session {session_id}: {e}")
            return error_result(str(e))
