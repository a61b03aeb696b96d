"""Process configuration, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping
from urllib.parse import urlsplit


def _env_truthy(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _split_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class GatewaySettings:
    host: str = "0.0.0.0"
    port: int = 8080
    public_url: str = "http://localhost:8080"
    mcp_path: str = "/mcp"
    gateway_path: str = "/mcp-gateway"
    gateway_enabled: bool = True
    json_response: bool = False
    upstreams_config_path: str = "config/upstreams.json"
    upstreams_refresh_interval_sec: int = 300
    upstreams_request_timeout_ms: int = 15000
    allowed_hosts: tuple[str, ...] = field(default_factory=tuple)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewaySettings":
        env = os.environ if environ is None else environ
        port = int(env.get("PORT", "8080"))
        public_url = env.get("PUBLIC_URL") or f"http://localhost:{port}"
        return cls(
            host=env.get("HOST", "0.0.0.0"),
            port=port,
            public_url=public_url.rstrip("/"),
            mcp_path=env.get("MCP_HTTP_PATH", "/mcp"),
            gateway_path=env.get("MCP_GATEWAY_PATH", "/mcp-gateway"),
            gateway_enabled=_env_truthy(env.get("MCP_GATEWAY_ENABLED"), default=True),
            json_response=_env_truthy(env.get("MCP_JSON_RESPONSE"), default=False),
            upstreams_config_path=env.get("UPSTREAMS_CONFIG_PATH", "config/upstreams.json"),
            upstreams_refresh_interval_sec=int(env.get("UPSTREAMS_REFRESH_INTERVAL_SEC", "300")),
            upstreams_request_timeout_ms=int(env.get("UPSTREAMS_REQUEST_TIMEOUT_MS", "15000")),
            allowed_hosts=_split_csv(env.get("ALLOWED_MCP_HOSTS")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def request_timeout_seconds(self) -> float:
        return self.upstreams_request_timeout_ms / 1000.0

    def gateway_urls(self) -> set[str]:
        """URLs under which this process serves its own gateway endpoint."""
        urls = {
            f"{self.public_url}{self.gateway_path}",
            f"http://localhost:{self.port}{self.gateway_path}",
            f"http://127.0.0.1:{self.port}{self.gateway_path}",
        }
        return {url.rstrip("/") for url in urls}

    def effective_allowed_hosts(self) -> tuple[str, ...]:
        if self.allowed_hosts:
            return self.allowed_hosts
        hosts = ["localhost", "127.0.0.1"]
        public_host = urlsplit(self.public_url).hostname
        if public_host:
            hosts.append(public_host.lower())
        return tuple(hosts)
