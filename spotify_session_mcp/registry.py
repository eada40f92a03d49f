import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Awaitable, Callable, Dict, Optional
from uuid import uuid4

import anyio
from anyio.abc import TaskStatus
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from mcp.server.transport_security import TransportSecuritySettings

from .auth_gate import AuthGate
from .tools import ToolContext, ToolDispatcher, build_server

logger = logging.getLogger(__name__)


class Session:
    """One MCP session: its transport, its server and its close hook."""

    def __init__(
        self,
        session_id: str,
        transport: StreamableHTTPServerTransport,
        server: Server,
        on_close: Callable[[str], Awaitable[None]],
    ):
        self.session_id = session_id
        self.transport = transport
        self.server = server
        self.on_close = on_close
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed and not self.transport.is_terminated

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.transport.terminate()


class SessionRegistry:
    """Maps MCP session ids to live transports.

    Each session gets its own lowlevel MCP server whose loop runs in the
    registry's task group; when that loop ends for any reason the session is
    destroyed, which also drops its Spotify credentials.
    """

    def __init__(
        self,
        gate: AuthGate,
        dispatcher: ToolDispatcher,
        json_response: bool = False,
        security_settings: Optional[TransportSecuritySettings] = None,
    ):
        self.gate = gate
        self.dispatcher = dispatcher
        self.json_response = json_response
        self.security_settings = security_settings
        self._sessions: Dict[str, Session] = {}
        self._task_group = None
        self._creation_lock = anyio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator["SessionRegistry"]:
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Session registry started")
            try:
                yield self
            finally:
                logger.info(f"Session registry shutting down ({len(self._sessions)} active)")
                with anyio.CancelScope(shield=True):
                    for session_id in list(self._sessions):
                        await self.destroy(session_id)
                tg.cancel_scope.cancel()
                self._task_group = None

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def create(self) -> Session:
        if self._task_group is None:
            raise RuntimeError("Session registry is not running. Make sure to use run().")

        async with self._creation_lock:
            session_id = uuid4().hex
            transport = StreamableHTTPServerTransport(
                mcp_session_id=session_id,
                is_json_response_enabled=self.json_response,
                event_store=None,
                security_settings=self.security_settings,
            )
            server = build_server(ToolContext(session_id=session_id), self.dispatcher)
            session = Session(session_id, transport, server, on_close=self.destroy)
            self._sessions[session_id] = session

            async def run_server(*, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
                async with transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    try:
                        await server.run(
                            read_stream,
                            write_stream,
                            server.create_initialization_options(),
                            stateless=False,
                        )
                    except Exception as e:
                        logger.error(f"Session {session_id} crashed: {e}", exc_info=True)
                    finally:
                        logger.info(f"MCP session closed: {session_id}")
                        with anyio.CancelScope(shield=True):
                            await session.on_close(session_id)

            await self._task_group.start(run_server)
            logger.info(f"New MCP session initialized: {session_id}")
            return session

    async def destroy(self, session_id: str) -> None:
        """Close the session's transport and drop its credentials. Idempotent."""
        session = self._sessions.pop(session_id, None)
        self.gate.forget_session(session_id)
        if session is None:
            return
        logger.info(f"Cleaning up session: {session_id}")
        with anyio.CancelScope(shield=True):
            await session.close()
