"""Streamable HTTP server.

Serves the gateway endpoint (aggregated upstreams) and, when one is supplied,
a direct MCP tool server on its own endpoint. Each endpoint has its own
session multiplexer.
"""

import logging
import sys
import time
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

import uvicorn
from mcp.server.lowlevel import Server
from starlette.applications import Starlette
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from .config import GatewaySettings
from .gateway import NOTIFICATION_OPTIONS, Gateway
from .session_store import SessionMultiplexer
from .upstreams import UpstreamConfigError

logger = logging.getLogger("smartthings-mcp-http")

SERVICE_NAME = "smartthings-mcp"
VERSION = "0.1.0"


class HostAllowlist:
    def __init__(self, hosts: Iterable[str]):
        self.hosts = {h.lower() for h in hosts}

    def host_allowed(self, host_header: Optional[str]) -> bool:
        if not host_header:
            return False
        host = host_header.split(":")[0].lower()
        return host in self.hosts

    def origin_allowed(self, origin_header: Optional[str]) -> bool:
        if not origin_header:
            return True
        try:
            hostname = urlsplit(origin_header).hostname
        except ValueError:
            return False
        return bool(hostname) and hostname.lower() in self.hosts


class MCPEndpoint:
    """ASGI app guarding one multiplexer with the host/origin allowlist."""

    def __init__(self, multiplexer: SessionMultiplexer, allowlist: HostAllowlist):
        self.multiplexer = multiplexer
        self.allowlist = allowlist

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        headers = Headers(scope=scope)
        if not self.allowlist.host_allowed(headers.get("host")):
            response = JSONResponse({"error": "Host not allowed"}, status_code=403)
            await response(scope, receive, send)
            return
        if not self.allowlist.origin_allowed(headers.get("origin")):
            response = JSONResponse({"error": "Origin not allowed"}, status_code=403)
            await response(scope, receive, send)
            return
        await self.multiplexer.handle_request(scope, receive, send)


def create_app(
    settings: GatewaySettings,
    gateway: Optional[Gateway] = None,
    direct_server: Optional[Server] = None,
) -> Starlette:
    if gateway is None and settings.gateway_enabled:
        gateway = Gateway(settings)

    allowlist = HostAllowlist(settings.effective_allowed_hosts())
    started_at = time.monotonic()
    multiplexers: List[SessionMultiplexer] = []
    routes = []

    if direct_server is not None:
        direct_mux = SessionMultiplexer(
            direct_server, name="mcp", json_response=settings.json_response
        )
        multiplexers.append(direct_mux)
        routes.append(Route(settings.mcp_path, MCPEndpoint(direct_mux, allowlist)))

    if gateway is not None:
        gateway_mux = SessionMultiplexer(
            gateway.server,
            name="gateway",
            json_response=settings.json_response,
            notification_options=NOTIFICATION_OPTIONS,
        )
        multiplexers.append(gateway_mux)
        routes.append(Route(settings.gateway_path, MCPEndpoint(gateway_mux, allowlist)))

    async def healthz(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "service": SERVICE_NAME,
                "version": VERSION,
                "time": datetime.now(timezone.utc).isoformat(),
                "uptimeSec": int(time.monotonic() - started_at),
                "gateway": gateway.status() if gateway else None,
            }
        )

    routes.insert(0, Route("/healthz", healthz, methods=["GET"]))

    @asynccontextmanager
    async def lifespan(app):
        async with AsyncExitStack() as stack:
            for mux in multiplexers:
                await mux.start()
                stack.push_async_callback(mux.stop)
            if gateway is not None:
                try:
                    await gateway.start()
                except UpstreamConfigError as e:
                    logger.error(f"Gateway upstream config rejected; serving without upstreams: {e.errors}")
                stack.push_async_callback(gateway.stop)
            logger.info(f"{SERVICE_NAME} listening on port {settings.port}")
            yield

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.gateway = gateway
    app.state.multiplexers = multiplexers
    return app


def main() -> None:
    settings = GatewaySettings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if settings.gateway_enabled and settings.gateway_path == settings.mcp_path:
        logger.error("MCP_GATEWAY_PATH must differ from MCP_HTTP_PATH")
        sys.exit(1)

    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
