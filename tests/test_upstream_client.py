import asyncio
import unittest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

from mcp import types

from smartthings_mcp.upstream_client import CLIENT_INFO, UpstreamClient
from smartthings_mcp.upstreams import UpstreamConfig


@asynccontextmanager
async def fake_streams(url, headers=None, timeout=None):
    yield MagicMock(), MagicMock(), MagicMock()


@asynccontextmanager
async def refused_streams(url, headers=None, timeout=None):
    raise OSError("connection refused")
    yield


def initialize_result(**capabilities):
    return types.InitializeResult(
        protocolVersion=types.LATEST_PROTOCOL_VERSION,
        capabilities=types.ServerCapabilities(**capabilities),
        serverInfo=types.Implementation(name="weather", version="1.0"),
    )


class TestUpstreamClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.config = UpstreamConfig(
            name="weather", url="https://wx.example.com/mcp", headers={"Authorization": "Bearer t"}
        )
        self.session = AsyncMock()
        self.session.initialize.return_value = initialize_result(tools=types.ToolsCapability())

        session_cm = MagicMock()
        session_cm.__aenter__.return_value = self.session
        session_cm.__aexit__.return_value = False

        self.transport = MagicMock(side_effect=fake_streams)
        self.session_cls = MagicMock(return_value=session_cm)
        for target, mock in [
            ("smartthings_mcp.upstream_client.streamablehttp_client", self.transport),
            ("smartthings_mcp.upstream_client.ClientSession", self.session_cls),
        ]:
            patcher = patch(target, mock)
            patcher.start()
            self.addCleanup(patcher.stop)

    async def test_connect(self):
        client = UpstreamClient(self.config, timeout_seconds=2.0)

        capabilities = await client.connect()

        self.assertIsNotNone(capabilities.tools)
        self.assertTrue(client.connected)
        args, kwargs = self.transport.call_args
        self.assertEqual(args[0], "https://wx.example.com/mcp")
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer t"})
        self.assertEqual(kwargs["timeout"].total_seconds(), 2.0)
        self.assertIs(self.session_cls.call_args.kwargs["client_info"], CLIENT_INFO)
        self.session.initialize.assert_awaited_once()

        # already connected: no second handshake
        await client.connect()
        self.session.initialize.assert_awaited_once()
        await client.close()

    async def test_connect_failure(self):
        self.transport.side_effect = refused_streams
        client = UpstreamClient(self.config, timeout_seconds=2.0)

        with self.assertRaises(ConnectionError) as ctx:
            await client.connect()

        self.assertIn("connection refused", str(ctx.exception))
        self.assertFalse(client.connected)

    async def test_handshake_timeout(self):
        async def hang():
            await asyncio.Event().wait()

        self.session.initialize.side_effect = hang
        client = UpstreamClient(self.config, timeout_seconds=0.05)

        with self.assertRaises(TimeoutError):
            await client.connect()
        self.assertFalse(client.connected)

    async def test_list_tools_follows_pagination(self):
        self.session.list_tools.side_effect = [
            types.ListToolsResult(tools=[types.Tool(name="a", inputSchema={"type": "object"})], nextCursor="p2"),
            types.ListToolsResult(tools=[types.Tool(name="b", inputSchema={"type": "object"})]),
        ]
        client = UpstreamClient(self.config)
        await client.connect()

        tools = await client.list_tools()

        self.assertEqual([t["name"] for t in tools], ["a", "b"])
        self.assertEqual(self.session.list_tools.call_args_list[1].kwargs, {"cursor": "p2"})
        await client.close()

    async def test_call_tool_sends_params_verbatim(self):
        expected = types.CallToolResult(content=[types.TextContent(type="text", text="ok")])
        self.session.send_request.return_value = expected
        client = UpstreamClient(self.config)
        await client.connect()

        params = types.CallToolRequestParams(name="get_forecast", arguments={"city": "Oslo"})
        result = await client.call_tool(params)

        self.assertIs(result, expected)
        request, result_type = self.session.send_request.call_args.args
        self.assertEqual(request.root.method, "tools/call")
        self.assertIs(request.root.params, params)
        self.assertIs(result_type, types.CallToolResult)
        await client.close()

    async def test_calls_require_connection(self):
        client = UpstreamClient(self.config)
        with self.assertRaises(ConnectionError):
            await client.list_tools()
        with self.assertRaises(ConnectionError):
            await client.call_tool(types.CallToolRequestParams(name="x"))

    async def test_close_is_final(self):
        client = UpstreamClient(self.config)
        await client.connect()

        await client.close()

        self.assertFalse(client.connected)
        self.assertIsNone(client.session)
        with self.assertRaises(ConnectionError):
            await client.connect()


if __name__ == "__main__":
    unittest.main()
