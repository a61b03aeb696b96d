import asyncio
import json
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Message, Receive, Scope, Send

logger = logging.getLogger("smartthings-mcp-sessions")

NO_SESSION_ERROR = {
    "jsonrpc": "2.0",
    "error": {"code": -32000, "message": "Bad Request: No valid session ID provided"},
    "id": None,
}


def is_initialize_request(body: bytes) -> bool:
    try:
        message = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return False
    if isinstance(message, list):
        return any(isinstance(m, dict) and m.get("method") == "initialize" for m in message)
    return isinstance(message, dict) and message.get("method") == "initialize"


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Receive callable that yields an already-read body once, then defers to ``receive``."""
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class SessionEntry:
    def __init__(self, transport: StreamableHTTPServerTransport):
        self.transport = transport
        self.task: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> str:
        return self.transport.mcp_session_id


class SessionMultiplexer:
    """Maps HTTP requests on one MCP endpoint onto transport sessions.

    Policy: one active session per endpoint. A successful initialize evicts and
    closes the previously active session; requests that still carry its id are
    rejected. A new transport is registered by id only once its initialize
    response starts, until then only the request that created it can reach it.
    """

    def __init__(
        self,
        server: Server,
        name: str = "mcp",
        json_response: bool = False,
        notification_options: Optional[NotificationOptions] = None,
        security_settings: Optional[TransportSecuritySettings] = None,
    ):
        self.server = server
        self.name = name
        self.json_response = json_response
        self.notification_options = notification_options
        # Host/origin checks happen in front of the multiplexer
        self.security_settings = security_settings or TransportSecuritySettings(
            enable_dns_rebinding_protection=False
        )
        self._sessions: Dict[str, SessionEntry] = {}
        self._active: Optional[SessionEntry] = None
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active.session_id if self._active else None

    async def start(self):
        async with self._lock:
            if self._running:
                return
            self._running = True
            logger.info(f"[{self.name}] Session multiplexer started")

    async def stop(self):
        """Close every session."""
        async with self._lock:
            if not self._running:
                return
            self._running = False
            entries = list(self._sessions.values())
            if self._active and self._active not in entries:
                entries.append(self._active)
            self._sessions.clear()
            self._active = None

        for entry in entries:
            await self._close_entry(entry)
        logger.info(f"[{self.name}] Session multiplexer stopped ({len(entries)} sessions closed).")

    # --- Request handling ---

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        if not self._running:
            response = JSONResponse({"error": "MCP endpoint not running"}, status_code=503)
            await response(scope, receive, send)
            return

        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if session_id is not None:
            entry = self._sessions.get(session_id)
            if entry is None:
                logger.debug(f"[{self.name}] Rejecting unknown session {session_id}")
                await self._reject(scope, receive, send)
                return
            await self._dispatch(entry, scope, receive, send)
            if entry.transport.is_terminated:
                self._forget(entry)
                logger.info(f"[{self.name}] Session {entry.session_id} terminated by client")
            return

        body = await request.body() if request.method == "POST" else b""
        if not is_initialize_request(body):
            await self._reject(scope, receive, send)
            return

        entry = await self._open_session()
        committed = False
        evicted: Optional[SessionEntry] = None

        async def send_and_commit(message: Message) -> None:
            nonlocal committed, evicted
            if message["type"] == "http.response.start" and not committed:
                if 200 <= message["status"] < 300:
                    committed = True
                    evicted = self._commit(entry)
            await send(message)

        try:
            await self._dispatch(entry, scope, _replay_body(body, receive), send_and_commit)
        finally:
            if not committed:
                logger.warning(f"[{self.name}] Initialization failed; closing pending session")
                await self._close_entry(entry)
            if evicted is not None:
                logger.info(f"[{self.name}] Evicting session {evicted.session_id} for {entry.session_id}")
                await self._close_entry(evicted)

    async def _dispatch(self, entry: SessionEntry, scope: Scope, receive: Receive, send: Send) -> None:
        started = False

        async def tracking_send(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await entry.transport.handle_request(scope, receive, tracking_send)
        except Exception as e:
            logger.error(f"[{self.name}] MCP transport error: {e}", exc_info=True)
            if not started:
                response = JSONResponse({"error": "MCP error"}, status_code=500)
                await response(scope, receive, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send) -> None:
        response = JSONResponse(NO_SESSION_ERROR, status_code=400)
        await response(scope, receive, send)

    # --- Session lifecycle ---

    async def _open_session(self) -> SessionEntry:
        transport = StreamableHTTPServerTransport(
            mcp_session_id=uuid4().hex,
            is_json_response_enabled=self.json_response,
            event_store=None,
            security_settings=self.security_settings,
        )
        entry = SessionEntry(transport)
        ready = asyncio.Event()
        entry.task = asyncio.create_task(self._run_server(entry, ready))
        await ready.wait()
        if entry.task.done():
            raise RuntimeError(f"MCP server for session {entry.session_id} exited during startup")
        logger.debug(f"[{self.name}] Opened pending session {entry.session_id}")
        return entry

    async def _run_server(self, entry: SessionEntry, ready: asyncio.Event) -> None:
        try:
            async with entry.transport.connect() as (read_stream, write_stream):
                ready.set()
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(self.notification_options),
                    stateless=False,
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.name}] Session {entry.session_id} crashed: {e}", exc_info=True)
        finally:
            ready.set()
            self._forget(entry)

    def _commit(self, entry: SessionEntry) -> Optional[SessionEntry]:
        """Register ``entry`` by id and make it the active session.

        Returns the session it displaced, already unreachable by id.
        """
        previous = self._active
        if previous is not None and previous is not entry:
            self._sessions.pop(previous.session_id, None)
        else:
            previous = None
        self._sessions[entry.session_id] = entry
        self._active = entry
        logger.info(f"[{self.name}] Session {entry.session_id} initialized")
        return previous

    def _forget(self, entry: SessionEntry) -> None:
        if self._sessions.get(entry.session_id) is entry:
            del self._sessions[entry.session_id]
        if self._active is entry:
            self._active = None

    async def _close_entry(self, entry: SessionEntry) -> None:
        self._forget(entry)
        try:
            await entry.transport.terminate()
        except Exception as e:
            logger.warning(f"[{self.name}] Error terminating session {entry.session_id}: {e}")

        task = entry.task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=5.0)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        except Exception as e:
            logger.warning(f"[{self.name}] Session {entry.session_id} ended with error: {e}")
