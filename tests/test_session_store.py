import asyncio
import json
import unittest
from contextlib import asynccontextmanager
from unittest.mock import MagicMock, patch

from smartthings_mcp.session_store import (
    NO_SESSION_ERROR,
    SessionMultiplexer,
    is_initialize_request,
)

INIT_BODY = json.dumps({
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {"protocolVersion": "2025-06-18", "capabilities": {}, "clientInfo": {"name": "t", "version": "1"}},
}).encode()
LIST_BODY = json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}).encode()


class FakeTransport:
    """Stands in for the SDK transport; answers every request with ``status``."""

    instances = []
    next_status = 200
    next_error = None

    def __init__(self, mcp_session_id, is_json_response_enabled, event_store, security_settings):
        self.mcp_session_id = mcp_session_id
        self.is_terminated = False
        self.closed = asyncio.Event()
        self.status = FakeTransport.next_status
        self.error = FakeTransport.next_error
        self.bodies = []
        FakeTransport.instances.append(self)

    @asynccontextmanager
    async def connect(self):
        yield self.closed, None

    async def handle_request(self, scope, receive, send):
        if self.error:
            raise self.error
        message = await receive()
        self.bodies.append(message.get("body", b""))
        if scope["method"] == "DELETE":
            await self.terminate()
        await send({
            "type": "http.response.start",
            "status": self.status,
            "headers": [(b"mcp-session-id", self.mcp_session_id.encode())],
        })
        await send({"type": "http.response.body", "body": b"{}"})

    async def terminate(self):
        self.is_terminated = True
        self.closed.set()


async def fake_run(read_stream, write_stream, options, stateless=False):
    await read_stream.wait()


async def asgi_request(app, method="POST", body=b"", session_id=None):
    headers = [(b"content-type", b"application/json"), (b"host", b"localhost")]
    if session_id:
        headers.append((b"mcp-session-id", session_id.encode()))
    scope = {
        "type": "http",
        "method": method,
        "path": "/mcp-gateway",
        "raw_path": b"/mcp-gateway",
        "query_string": b"",
        "headers": headers,
    }
    delivered = False

    async def receive():
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        await asyncio.Event().wait()

    sent = []

    async def send(message):
        sent.append(message)

    await app(scope, receive, send)
    start = next(m for m in sent if m["type"] == "http.response.start")
    payload = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    return start["status"], payload


class TestInitializeDetection(unittest.TestCase):
    def test_detects_single_and_batch(self):
        self.assertTrue(is_initialize_request(INIT_BODY))
        self.assertTrue(is_initialize_request(b'[{"method": "ping"}, {"method": "initialize"}]'))
        self.assertFalse(is_initialize_request(LIST_BODY))
        self.assertFalse(is_initialize_request(b"not json"))
        self.assertFalse(is_initialize_request(b""))


class TestSessionMultiplexer(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        FakeTransport.instances = []
        FakeTransport.next_status = 200
        FakeTransport.next_error = None
        patcher = patch("smartthings_mcp.session_store.StreamableHTTPServerTransport", FakeTransport)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.server = MagicMock()
        self.server.run.side_effect = fake_run
        self.mux = SessionMultiplexer(self.server, name="test", json_response=True)
        await self.mux.start()

    async def asyncTearDown(self):
        await self.mux.stop()

    async def initialize(self):
        status, _ = await asgi_request(self.mux.handle_request, body=INIT_BODY)
        return status, FakeTransport.instances[-1]

    async def test_initialize_registers_session(self):
        status, transport = await self.initialize()

        self.assertEqual(status, 200)
        self.assertEqual(self.mux.session_count, 1)
        self.assertEqual(self.mux.active_session_id, transport.mcp_session_id)
        self.assertEqual(transport.bodies, [INIT_BODY])
        self.server.run.assert_called_once()

    async def test_known_session_is_dispatched(self):
        _, transport = await self.initialize()

        status, _ = await asgi_request(self.mux.handle_request, body=LIST_BODY,
                                       session_id=transport.mcp_session_id)

        self.assertEqual(status, 200)
        self.assertEqual(transport.bodies[-1], LIST_BODY)

    async def test_request_without_session_is_rejected(self):
        for method, body in [("POST", LIST_BODY), ("GET", b""), ("DELETE", b"")]:
            with self.subTest(method=method):
                status, payload = await asgi_request(self.mux.handle_request, method=method, body=body)
                self.assertEqual(status, 400)
                self.assertEqual(json.loads(payload), NO_SESSION_ERROR)
        self.assertEqual(FakeTransport.instances, [])

    async def test_unknown_session_is_rejected(self):
        status, payload = await asgi_request(self.mux.handle_request, body=LIST_BODY, session_id="deadbeef")
        self.assertEqual(status, 400)
        self.assertEqual(json.loads(payload)["error"]["code"], -32000)

    async def test_new_initialize_evicts_previous_session(self):
        _, first = await self.initialize()
        _, second = await self.initialize()

        self.assertTrue(first.is_terminated)
        self.assertFalse(second.is_terminated)
        self.assertEqual(self.mux.session_count, 1)
        self.assertEqual(self.mux.active_session_id, second.mcp_session_id)

        status, _ = await asgi_request(self.mux.handle_request, body=LIST_BODY, session_id=first.mcp_session_id)
        self.assertEqual(status, 400)
        status, _ = await asgi_request(self.mux.handle_request, body=LIST_BODY, session_id=second.mcp_session_id)
        self.assertEqual(status, 200)

    async def test_failed_initialize_keeps_previous_session(self):
        _, first = await self.initialize()
        FakeTransport.next_status = 406

        status, pending = await self.initialize()

        self.assertEqual(status, 406)
        self.assertTrue(pending.is_terminated)
        self.assertFalse(first.is_terminated)
        self.assertEqual(self.mux.active_session_id, first.mcp_session_id)
        self.assertEqual(self.mux.session_count, 1)

    async def test_transport_exception_returns_500(self):
        FakeTransport.next_error = RuntimeError("boom")

        status, payload = await asgi_request(self.mux.handle_request, body=INIT_BODY)

        self.assertEqual(status, 500)
        self.assertEqual(json.loads(payload), {"error": "MCP error"})
        self.assertTrue(FakeTransport.instances[-1].is_terminated)
        self.assertEqual(self.mux.session_count, 0)

    async def test_client_delete_forgets_session(self):
        _, transport = await self.initialize()

        status, _ = await asgi_request(self.mux.handle_request, method="DELETE",
                                       session_id=transport.mcp_session_id)

        self.assertEqual(status, 200)
        self.assertEqual(self.mux.session_count, 0)
        self.assertIsNone(self.mux.active_session_id)

    async def test_stop_closes_sessions(self):
        _, transport = await self.initialize()

        await self.mux.stop()

        self.assertTrue(transport.is_terminated)
        self.assertEqual(self.mux.session_count, 0)

    async def test_requests_after_stop_are_refused(self):
        await self.mux.stop()

        status, payload = await asgi_request(self.mux.handle_request, body=INIT_BODY)

        self.assertEqual(status, 503)
        self.assertEqual(json.loads(payload), {"error": "MCP endpoint not running"})
        self.assertEqual(FakeTransport.instances, [])
        self.assertEqual(self.mux.session_count, 0)


if __name__ == "__main__":
    unittest.main()
