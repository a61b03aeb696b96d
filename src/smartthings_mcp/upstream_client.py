import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, Dict, List, Optional

from mcp import ClientSession, types
from mcp.client.streamable_http import streamablehttp_client

from .upstreams import UpstreamConfig

logger = logging.getLogger("smartthings-mcp-gateway")

CLIENT_INFO = types.Implementation(name="smartthings-mcp-gateway", version="0.1.0")


def _root_cause(exc: BaseException) -> BaseException:
    # anyio task groups wrap failures in exception groups
    while getattr(exc, "exceptions", None):
        exc = exc.exceptions[0]
    return exc


def _dump(items) -> List[Dict[str, Any]]:
    return [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in items]


class UpstreamClient:
    """One MCP client connection to an upstream server.

    The streamable HTTP client and the ClientSession are async context managers
    bound to the task that entered them, so a dedicated task owns both for the
    lifetime of the connection. ``close()`` signals that task and waits for it.
    """

    def __init__(self, config: UpstreamConfig, timeout_seconds: float = 15.0):
        self.config = config
        self.timeout = timeout_seconds
        self.session: Optional[ClientSession] = None
        self.capabilities: Optional[types.ServerCapabilities] = None
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._error: Optional[BaseException] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.session is not None and self._task is not None and not self._task.done()

    async def connect(self) -> types.ServerCapabilities:
        async with self._lock:
            if self.connected:
                return self.capabilities
            if self._task is not None:
                raise ConnectionError(f"Upstream {self.config.name} client already closed")

            logger.info(f"Connecting to upstream {self.config.name} at {self.config.url}...")
            self._task = asyncio.create_task(self._run(), name=f"upstream-{self.config.name}")
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=self.timeout)
            except asyncio.TimeoutError:
                await self._shutdown()
                raise TimeoutError(
                    f"Connecting to upstream {self.config.name} timed out after {self.timeout} seconds"
                )

            if self.session is None:
                cause = self._error or RuntimeError("connection closed during handshake")
                raise ConnectionError(f"Failed to connect: {cause}")

            logger.info(f"Connected to upstream {self.config.name}")
            return self.capabilities

    async def _run(self) -> None:
        timeout = timedelta(seconds=self.timeout)
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream, _ = await stack.enter_async_context(
                    streamablehttp_client(
                        self.config.url,
                        headers=self.config.headers or None,
                        timeout=timeout,
                    )
                )
                session = await stack.enter_async_context(
                    ClientSession(
                        read_stream,
                        write_stream,
                        read_timeout_seconds=timeout,
                        client_info=CLIENT_INFO,
                    )
                )
                result = await session.initialize()
                self.capabilities = result.capabilities
                self.session = session
                self._ready.set()
                await self._closing.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._error = _root_cause(e)
            logger.warning(f"Upstream {self.config.name} connection ended: {self._error}")
        finally:
            self.session = None
            self._ready.set()

    def _require_session(self) -> ClientSession:
        session = self.session
        if session is None or not self.connected:
            raise ConnectionError(f"Upstream {self.config.name} is not connected.")
        return session

    async def list_tools(self) -> List[Dict[str, Any]]:
        session = self._require_session()
        tools: List[Dict[str, Any]] = []
        cursor = None
        while True:
            result = await session.list_tools(cursor=cursor)
            tools.extend(_dump(result.tools or []))
            cursor = result.nextCursor
            if not cursor:
                return tools

    async def list_prompts(self) -> List[Dict[str, Any]]:
        session = self._require_session()
        prompts: List[Dict[str, Any]] = []
        cursor = None
        while True:
            result = await session.list_prompts(cursor=cursor)
            prompts.extend(_dump(result.prompts or []))
            cursor = result.nextCursor
            if not cursor:
                return prompts

    async def list_resources(self) -> List[Dict[str, Any]]:
        session = self._require_session()
        resources: List[Dict[str, Any]] = []
        cursor = None
        while True:
            result = await session.list_resources(cursor=cursor)
            resources.extend(_dump(result.resources or []))
            cursor = result.nextCursor
            if not cursor:
                return resources

    # Forwarded calls send the caller's params through untouched, so fields the
    # SDK helpers do not expose (task, _meta) still reach the upstream.

    async def call_tool(self, params: types.CallToolRequestParams) -> types.CallToolResult:
        session = self._require_session()
        request = types.CallToolRequest(method="tools/call", params=params)
        return await session.send_request(types.ClientRequest(request), types.CallToolResult)

    async def get_prompt(self, params: types.GetPromptRequestParams) -> types.GetPromptResult:
        session = self._require_session()
        request = types.GetPromptRequest(method="prompts/get", params=params)
        return await session.send_request(types.ClientRequest(request), types.GetPromptResult)

    async def read_resource(self, params: types.ReadResourceRequestParams) -> types.ReadResourceResult:
        session = self._require_session()
        request = types.ReadResourceRequest(method="resources/read", params=params)
        return await session.send_request(types.ClientRequest(request), types.ReadResourceResult)

    async def close(self) -> None:
        async with self._lock:
            await self._shutdown()

    async def _shutdown(self) -> None:
        task = self._task
        self._closing.set()
        if task is None or task.done():
            self.session = None
            return
        logger.info(f"Disconnecting upstream {self.config.name}.")
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self.session = None
