import contextlib
import html
import json
import logging
import sys
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import aiohttp
import click
import uvicorn
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

from . import __version__
from .auth_gate import SINGLE_TENANT_KEY, AuthGate
from .config import AUTH_MODES, Settings
from .errors import AuthExchangeError, ConfigError
from .registry import SessionRegistry
from .spotify_api import SpotifyClient
from .token_store import TokenRecord, TokenStore
from .tools import ToolDispatcher

logger = logging.getLogger(__name__)

# Largest body accepted from a POST that carries no session ID (an initialize request)
MAX_INITIALIZE_BODY_BYTES = 64 * 1024


# -----------------------------------------------------------------------------
# JSON-RPC error bodies for requests that never reach a transport
# -----------------------------------------------------------------------------

def jsonrpc_error(code: int, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status_code,
    )


def is_initialize_request(payload: Any) -> bool:
    if isinstance(payload, list):
        return any(is_initialize_request(item) for item in payload)
    return isinstance(payload, dict) and payload.get("method") == "initialize"


async def _read_capped_body(request: Request, limit: int) -> Optional[bytes]:
    """Read the request body, or return None once it exceeds ``limit`` bytes."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        return None
    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


def _replay_body(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


# -----------------------------------------------------------------------------
# MCP endpoint (POST / GET / DELETE on /mcp)
# -----------------------------------------------------------------------------

class StreamableHTTPEndpoint:
    """ASGI app routing /mcp requests to the session's transport."""

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        started = False
        status: Optional[int] = None

        async def tracking_send(message: Message) -> None:
            nonlocal started, status
            if message["type"] == "http.response.start":
                started = True
                status = message["status"]
            await send(message)

        try:
            if request.method == "POST":
                await self._handle_post(request, scope, receive, tracking_send, lambda: status)
            elif request.method == "GET":
                await self._handle_get(request, scope, receive, tracking_send)
            elif request.method == "DELETE":
                await self._handle_delete(request, scope, receive, tracking_send)
            else:
                await PlainTextResponse("Method Not Allowed", status_code=405)(scope, receive, tracking_send)
        except Exception as e:
            logger.exception(f"MCP request error: {e}")
            if not started:
                await jsonrpc_error(-32603, "Internal server error", 500)(scope, receive, send)

    async def _handle_post(
        self,
        request: Request,
        scope: Scope,
        receive: Receive,
        send: Send,
        response_status: Callable[[], Optional[int]],
    ) -> None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id:
            session = self.registry.get(session_id)
            if session is None:
                logger.info(f"POST for unknown session {session_id}")
                await jsonrpc_error(-32000, "Bad Request: No valid session ID provided", 400)(scope, receive, send)
                return
            await session.transport.handle_request(scope, receive, send)
            return

        body = await _read_capped_body(request, MAX_INITIALIZE_BODY_BYTES)
        if body is None:
            logger.info("Rejecting oversized POST without a session ID")
            await jsonrpc_error(-32000, "Request body too large", 413)(scope, receive, send)
            return
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            payload = None
        if not is_initialize_request(payload):
            await jsonrpc_error(-32000, "Bad Request: No valid session ID provided", 400)(scope, receive, send)
            return

        session = await self.registry.create()
        await session.transport.handle_request(scope, _replay_body(body, receive), send)
        code = response_status()
        if code is None or code >= 400:
            # initialization was refused by the transport: nothing to keep
            logger.info(f"Discarding session {session.session_id}: initialize answered {code}")
            await self.registry.destroy(session.session_id)

    async def _handle_get(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        session = self.registry.get(request.headers.get(MCP_SESSION_ID_HEADER, ""))
        if session is None:
            await PlainTextResponse("Invalid or missing session ID", status_code=400)(scope, receive, send)
            return
        await session.transport.handle_request(scope, receive, send)

    async def _handle_delete(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER, "")
        session = self.registry.get(session_id)
        if session is None:
            await PlainTextResponse("Invalid or missing session ID", status_code=400)(scope, receive, send)
            return
        await session.transport.handle_request(scope, receive, send)
        await self.registry.destroy(session_id)


# -----------------------------------------------------------------------------
# Plain HTTP routes
# -----------------------------------------------------------------------------

_PAGE_STYLE = """
    body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
           text-align: center; padding: 50px; color: white; margin: 0; background: %s; }
    .container { background: rgba(0,0,0,0.1); padding: 40px; border-radius: 20px;
                 display: inline-block; max-width: 500px; }
    .icon { font-size: 60px; margin-bottom: 20px; }
    .auth-button { display: inline-block; background: #1db954; color: white; padding: 15px 30px;
                   border-radius: 50px; text-decoration: none; font-size: 18px; font-weight: bold; margin: 20px 0; }
"""


def _page(title: str, background: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><title>{title}</title><style>{_PAGE_STYLE % background}</style></head>
<body><div class="container">{body}</div></body>
</html>"""


async def handle_root(request: Request) -> Response:
    return PlainTextResponse(
        "🎵 Spotify MCP Server is running!\n\n"
        "Available endpoints:\n"
        "• POST/GET/DELETE /mcp - MCP Streamable HTTP endpoint\n"
        "• GET /auth?session=<id> - Connect a Spotify account to an MCP session\n"
        "• GET /callback/spotify - OAuth redirect target\n"
        "• GET /health - Health check"
    )


async def handle_health(request: Request) -> Response:
    state = request.app.state
    return JSONResponse({
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "activeSessions": len(state.registry),
        "authMode": state.settings.auth_mode,
        "version": __version__,
    })


async def handle_auth_page(request: Request) -> Response:
    session_id = request.query_params.get("session")
    if not session_id:
        return PlainTextResponse("Missing session ID", status_code=400)

    auth_url = html.escape(request.app.state.gate.authorization_url(session_id), quote=True)
    body = (
        '<div class="icon">🎵</div>'
        "<h1>Connect Spotify</h1>"
        "<p>Click the button below to connect your Spotify account to your MCP session.</p>"
        f'<a href="{auth_url}" class="auth-button">Connect Spotify Account</a>'
        "<p>After connecting, return to your conversation to use Spotify features.</p>"
    )
    return HTMLResponse(_page("Connect Spotify", "linear-gradient(135deg, #667eea, #764ba2)", body))


def _session_alive(state: Any, session_id: str) -> bool:
    return state.settings.single_tenant or session_id in state.registry


def _unknown_session_response() -> Response:
    return PlainTextResponse("Unknown or expired session. Start again from your MCP client.", status_code=400)


async def handle_spotify_callback(request: Request) -> Response:
    state = request.app.state
    q = request.query_params
    code = q.get("code")
    session_id = q.get("state")
    error = q.get("error")

    if error:
        logger.info(f"OAuth error: {error}")
        return PlainTextResponse(f"Authentication error: {error}", status_code=400)
    if not code or not session_id:
        logger.info("OAuth callback missing code or session id")
        return PlainTextResponse("Missing authorization code or session ID", status_code=400)
    if not _session_alive(state, session_id):
        logger.info(f"OAuth callback for unknown session {session_id}")
        return _unknown_session_response()

    logger.info(f"Processing OAuth callback for session: {session_id}")
    try:
        record = await state.store.exchange_code(code)
    except AuthExchangeError as e:
        logger.error(f"Token exchange failed for session {session_id}: {e.description}")
        return PlainTextResponse(f"Authentication error: {e.description}", status_code=500)
    except aiohttp.ClientError as e:
        logger.error(f"Could not reach Spotify for session {session_id}: {e}")
        return PlainTextResponse(f"Authentication error: could not reach Spotify ({e})", status_code=502)

    if not _session_alive(state, session_id):
        logger.info(f"Session {session_id} closed during token exchange; discarding credentials")
        return _unknown_session_response()

    state.store.put(state.gate.credential_key(session_id), record)
    logger.info(f"OAuth successful for session: {session_id}")

    body = (
        '<div class="icon">🎵</div>'
        "<h1>Successfully Connected to Spotify!</h1>"
        "<p>Your Spotify account is now linked to your MCP session.</p>"
        "<p><strong>Next steps:</strong><br>"
        "1. Return to your conversation<br>"
        "2. Try your Spotify request again<br>"
        "3. This window can be closed</p>"
    )
    return HTMLResponse(_page("Spotify Connected", "linear-gradient(135deg, #1db954, #1ed760)", body))


# -----------------------------------------------------------------------------
# App wiring
# -----------------------------------------------------------------------------

def create_app(settings: Settings, client: Optional[SpotifyClient] = None) -> Starlette:
    client = client or SpotifyClient(settings)
    store = TokenStore(client)
    gate = AuthGate(store, settings)
    dispatcher = ToolDispatcher(gate, client)
    registry = SessionRegistry(gate, dispatcher, json_response=settings.json_response)

    if settings.single_tenant and settings.refresh_token:
        # no access token yet: the first tool call refreshes it
        store.put(SINGLE_TENANT_KEY, TokenRecord(access_token="", refresh_token=settings.refresh_token, expires_at=None))
        logger.info("Seeded single-tenant credentials from SPOTIFY_REFRESH_TOKEN")

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with registry.run():
            try:
                yield
            finally:
                await client.close()
                store.clear()

    app = Starlette(
        routes=[
            Route("/", handle_root),
            Route("/health", handle_health),
            Route("/auth", handle_auth_page),
            Route("/callback/spotify", handle_spotify_callback),
            Route("/mcp", StreamableHTTPEndpoint(registry), methods=["GET", "POST", "DELETE"]),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=settings.cors_allow_origins,
                allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                allow_headers=["Content-Type", "mcp-session-id", "mcp-protocol-version", "last-event-id"],
                expose_headers=["Mcp-Session-Id"],
            )
        ],
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.client = client
    app.state.store = store
    app.state.gate = gate
    app.state.registry = registry
    return app


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------

@click.command()
@click.option("--port", type=int, default=None, help="Port to listen on for HTTP (default: $PORT or 8080)")
@click.option("--host", default=None, help="Interface to bind (default: 0.0.0.0)")
@click.option("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
@click.option("--auth-mode", type=click.Choice(AUTH_MODES), default=None, help="Per-session tokens or one shared credential set")
@click.option("--json-response/--sse-response", default=None, help="Answer POSTs with JSON instead of SSE streams")
def main(port: Optional[int], host: Optional[str], log_level: str, auth_mode: Optional[str], json_response: Optional[bool]):
    """Spotify MCP Server - Spotify tools over Streamable HTTP with per-session OAuth."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        settings = Settings.from_env().with_overrides(
            port=port, host=host, auth_mode=auth_mode, json_response=json_response
        )
        settings.validate()
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    click.echo("🎵 Spotify MCP Server")
    click.echo("=" * 50)
    click.echo(f"   • Client ID:    {settings.client_id[:8]}...")
    click.echo(f"   • Redirect URI: {settings.redirect_uri}")
    click.echo(f"   • Auth mode:    {settings.auth_mode}")
    click.echo(f"\n📡 Server endpoints:")
    click.echo(f"   • MCP:      http://localhost:{settings.port}/mcp")
    click.echo(f"   • Health:   http://localhost:{settings.port}/health")
    click.echo(f"   • Callback: http://localhost:{settings.port}/callback/spotify")

    app = create_app(settings)
    logger.info(f"Spotify MCP Server starting on http://{settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=log_level.lower())


if __name__ == "__main__":
    main()
