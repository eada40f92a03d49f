import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import AuthExchangeError, RefreshError, TokenEndpointError
from .spotify_api import SpotifyClient, TokenGrant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenRecord:
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[float]


class TokenStore:
    """Per-session Spotify credentials.

    The store is the single authority on token validity: a record is usable
    only while ``now < expires_at``. Expiry is judged against the local clock
    rather than by probing the Web API.

    All mutation happens on the event loop thread. Refreshes for one session
    are serialized through ``lock_for(session_id)``.
    """

    def __init__(self, client: SpotifyClient, clock: Callable[[], float] = time.time):
        self._client = client
        self._clock = clock
        self._records: Dict[str, TokenRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._records

    def get(self, session_id: str) -> Optional[TokenRecord]:
        return self._records.get(session_id)

    def put(self, session_id: str, record: TokenRecord) -> None:
        self._records[session_id] = record

    def remove(self, session_id: str) -> None:
        if self._records.pop(session_id, None) is not None:
            logger.debug(f"Removed token record for session {session_id}")
        self._locks.pop(session_id, None)

    def clear(self) -> None:
        self._records.clear()
        self._locks.clear()

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def is_expired(self, record: TokenRecord) -> bool:
        if not record.expires_at:
            return True
        return self._clock() >= record.expires_at

    def _record_from_grant(self, grant: TokenGrant, issued_at: float, previous_refresh: Optional[str] = None) -> TokenRecord:
        return TokenRecord(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or previous_refresh,
            expires_at=issued_at + grant.expires_in,
        )

    async def exchange_code(self, code: str) -> TokenRecord:
        issued_at = self._clock()
        try:
            grant = await self._client.exchange_authorization_code(code)
        except TokenEndpointError as e:
            raise AuthExchangeError(e.description) from e
        return self._record_from_grant(grant, issued_at)

    async def refresh(self, record: TokenRecord) -> TokenRecord:
        if not record.refresh_token:
            raise RefreshError("no refresh token stored for this session")
        issued_at = self._clock()
        try:
            grant = await self._client.refresh_access_token(record.refresh_token)
        except TokenEndpointError as e:
            raise RefreshError(e.description) from e
        # Spotify may omit refresh_token on refresh; keep the one we have
        return self._record_from_grant(grant, issued_at, previous_refresh=record.refresh_token)
