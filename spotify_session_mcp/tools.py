import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List

import mcp.types as types
from mcp.server.lowlevel import Server

from . import __version__
from .auth_gate import AuthGate, error_result, text_result
from .errors import ToolArgumentError
from .spotify_api import SpotifyClient

logger = logging.getLogger(__name__)

SERVER_NAME = "spotify-mcp-server"

MAX_SEED_TRACKS = 5


@dataclass(frozen=True)
class ToolContext:
    """Per-call context handed to every tool handler by the transport layer."""

    session_id: str


# -----------------------------------------------------------------------------
# Tool definitions (exportable for tests)
# -----------------------------------------------------------------------------

def get_tool_definitions() -> List[types.Tool]:
    return [
        types.Tool(
            name="search-tracks",
            title="Search Spotify Tracks",
            description="Search for tracks on Spotify. Returns id, name, artist, album and URI for each match.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query for tracks"},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10, "description": "Number of results to return (1-50)"},
                },
                "required": ["query"],
            },
        ),
        types.Tool(
            name="get-current-user",
            title="Get Current User",
            description="Get the profile of the Spotify user connected to this session.",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        types.Tool(
            name="create-playlist",
            title="Create Playlist",
            description="Create a new playlist in the connected user's Spotify account.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Name of the playlist"},
                    "description": {"type": "string", "default": "", "description": "Description of the playlist"},
                    "public": {"type": "boolean", "default": False, "description": "Whether the playlist should be public"},
                },
                "required": ["name"],
            },
        ),
        types.Tool(
            name="add-tracks-to-playlist",
            title="Add Tracks to Playlist",
            description="Add tracks to an existing playlist.",
            inputSchema={
                "type": "object",
                "properties": {
                    "playlistId": {"type": "string", "description": "The Spotify playlist ID"},
                    "trackUris": {"type": "array", "items": {"type": "string"}, "description": "Spotify track URIs to add"},
                },
                "required": ["playlistId", "trackUris"],
            },
        ),
        types.Tool(
            name="get-recommendations",
            title="Get Recommendations",
            description="Get music recommendations based on up to 5 seed tracks.",
            inputSchema={
                "type": "object",
                "properties": {
                    "seedTracks": {
                        "type": "array",
                        "items": {"type": "string"},
                        "minItems": 1,
                        "maxItems": MAX_SEED_TRACKS,
                        "description": "Spotify track IDs to use as seeds (max 5)",
                    },
                    "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 20, "description": "Number of recommendations to return"},
                },
                "required": ["seedTracks"],
            },
        ),
        types.Tool(
            name="check-credentials-status",
            title="Check Credentials Status",
            description="Check whether this session's Spotify credentials work and which account they belong to.",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
    ]


# -----------------------------------------------------------------------------
# Argument validation
# -----------------------------------------------------------------------------

def _string(arguments: Dict[str, Any], key: str, default: Any = None, required: bool = True) -> str:
    value = arguments.get(key, default)
    if value is None:
        if required:
            raise ToolArgumentError(f"'{key}' is required")
        return default
    if not isinstance(value, str):
        raise ToolArgumentError(f"'{key}' must be a string")
    return value


def _integer(arguments: Dict[str, Any], key: str, default: int, minimum: int, maximum: int) -> int:
    value = arguments.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ToolArgumentError(f"'{key}' must be an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ToolArgumentError(f"'{key}' must be an integer")
        value = int(value)
    if not minimum <= value <= maximum:
        raise ToolArgumentError(f"'{key}' must be between {minimum} and {maximum}")
    return value


def _boolean(arguments: Dict[str, Any], key: str, default: bool) -> bool:
    value = arguments.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ToolArgumentError(f"'{key}' must be a boolean")
    return value


def _string_list(arguments: Dict[str, Any], key: str) -> List[str]:
    value = arguments.get(key)
    if value is None:
        raise ToolArgumentError(f"'{key}' is required")
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ToolArgumentError(f"'{key}' must be an array of strings")
    return value


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------

class ToolDispatcher:
    """Validates tool arguments and runs each tool through the auth gate."""

    def __init__(self, gate: AuthGate, client: SpotifyClient):
        self.gate = gate
        self.client = client
        self._handlers: Dict[str, Callable[[ToolContext, Dict[str, Any]], Awaitable[types.CallToolResult]]] = {
            "search-tracks": self.search_tracks,
            "get-current-user": self.get_current_user,
            "create-playlist": self.create_playlist,
            "add-tracks-to-playlist": self.add_tracks_to_playlist,
            "get-recommendations": self.get_recommendations,
            "check-credentials-status": self.check_credentials_status,
        }

    @property
    def tool_names(self) -> List[str]:
        return list(self._handlers)

    async def dispatch(self, ctx: ToolContext, name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        logger.info(f"Tool called: {name} (session {ctx.session_id}) with args: {arguments}")
        handler = self._handlers.get(name)
        if handler is None:
            return text_result(f"Unknown tool: {name}", is_error=True)
        try:
            return await handler(ctx, arguments or {})
        except ToolArgumentError as e:
            logger.warning(f"Invalid arguments for {name}: {e}")
            return text_result(f"Invalid arguments for '{name}': {e}", is_error=True)

    async def search_tracks(self, ctx: ToolContext, arguments: Dict[str, Any]) -> types.CallToolResult:
        query = _string(arguments, "query")
        limit = _integer(arguments, "limit", default=10, minimum=1, maximum=50)

        async def call(token: str) -> types.CallToolResult:
            tracks = await self.client.search_tracks(token, query, limit)
            return text_result(json.dumps(tracks, indent=2))

        return await self.gate.wrap(ctx.session_id, call)

    async def get_current_user(self, ctx: ToolContext, arguments: Dict[str, Any]) -> types.CallToolResult:
        async def call(token: str) -> types.CallToolResult:
            user = await self.client.get_current_user(token)
            profile = {
                "id": user["id"],
                "name": user["display_name"],
                "email": user["email"],
                "country": user["country"],
                "followers": user["followers"],
            }
            return text_result(json.dumps(profile, indent=2))

        return await self.gate.wrap(ctx.session_id, call)

    async def create_playlist(self, ctx: ToolContext, arguments: Dict[str, Any]) -> types.CallToolResult:
        name = _string(arguments, "name")
        description = _string(arguments, "description", default="", required=False)
        public = _boolean(arguments, "public", default=False)

        async def call(token: str) -> types.CallToolResult:
            user = await self.client.get_current_user(token)
            playlist = await self.client.create_playlist(token, user["id"], name, description, public)
            return text_result(
                "✅ Playlist created successfully!\n\n"
                f"**{playlist['name']}**\n"
                f"ID: {playlist['id']}\n"
                f"🔗 [Open in Spotify]({playlist['url']})"
            )

        return await self.gate.wrap(ctx.session_id, call)

    async def add_tracks_to_playlist(self, ctx: ToolContext, arguments: Dict[str, Any]) -> types.CallToolResult:
        playlist_id = _string(arguments, "playlistId")
        track_uris = _string_list(arguments, "trackUris")

        async def call(token: str) -> types.CallToolResult:
            added = await self.client.add_tracks(token, playlist_id, track_uris)
            return text_result(f"✅ Successfully added {added} track(s) to playlist!")

        return await self.gate.wrap(ctx.session_id, call)

    async def get_recommendations(self, ctx: ToolContext, arguments: Dict[str, Any]) -> types.CallToolResult:
        seed_tracks = _string_list(arguments, "seedTracks")
        if not seed_tracks:
            raise ToolArgumentError("At least one seed track is required")
        if len(seed_tracks) > MAX_SEED_TRACKS:
            raise ToolArgumentError(f"At most {MAX_SEED_TRACKS} seed tracks are allowed")
        limit = _integer(arguments, "limit", default=20, minimum=1, maximum=100)

        async def call(token: str) -> types.CallToolResult:
            tracks = await self.client.get_recommendations(token, seed_tracks, limit)
            return text_result(json.dumps(tracks, indent=2))

        return await self.gate.wrap(ctx.session_id, call)

    async def check_credentials_status(self, ctx: ToolContext, arguments: Dict[str, Any]) -> types.CallToolResult:
        async def call(token: str) -> types.CallToolResult:
            user = await self.client.get_current_user(token)
            email = user.get("email") or "email not available"
            return text_result(
                "✅ Spotify credentials are valid.\n"
                f"Logged in as: {user.get('display_name') or user.get('id')} ({email})"
            )

        return await self.gate.wrap(ctx.session_id, call)


# -----------------------------------------------------------------------------
# Per-session MCP server
# -----------------------------------------------------------------------------

def build_server(ctx: ToolContext, dispatcher: ToolDispatcher) -> Server:
    server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def handle_list_tools() -> List[types.Tool]:
        return get_tool_definitions()

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        try:
            return await dispatcher.dispatch(ctx, name, arguments)
        except Exception as e:
            logger.exception(f"Unexpected error in {name}: {e}")
            return error_result(f"An unexpected error occurred: {e}")

    return server
