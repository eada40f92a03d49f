from typing import Optional


class SpotifyMCPError(Exception):
    pass


class ConfigError(SpotifyMCPError):
    pass


class UpstreamError(SpotifyMCPError):
    """Non-2xx response from the Spotify Web API."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class UpstreamUnauthorized(UpstreamError):
    """HTTP 401 from the Spotify Web API: the bearer token is no longer accepted."""

    def __init__(self, message: str = "The access token expired or was revoked"):
        super().__init__(message, status=401)


class TokenEndpointError(SpotifyMCPError):
    """The accounts service rejected a token request."""

    def __init__(self, description: str, status: Optional[int] = None):
        super().__init__(description)
        self.description = description
        self.status = status


class AuthExchangeError(SpotifyMCPError):
    def __init__(self, description: str):
        super().__init__(f"Token exchange failed: {description}")
        self.description = description


class RefreshError(SpotifyMCPError):
    def __init__(self, description: str):
        super().__init__(f"Token refresh failed: {description}")
        self.description = description


class ToolArgumentError(SpotifyMCPError):
    pass
