"""Aggregation engine: many upstream MCP servers behind one namespaced server."""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from mcp import types
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.shared.exceptions import McpError

from .config import GatewaySettings
from .resource_uri import decode_resource_uri, encode_resource_uri
from .upstream_client import UpstreamClient
from .upstreams import UpstreamConfig, UpstreamConfigError, load_upstreams

logger = logging.getLogger("smartthings-mcp-gateway")

GATEWAY_PREFIX = "gateway"
LIST_UPSTREAMS_TOOL = f"{GATEWAY_PREFIX}.list_upstreams"
RELOAD_UPSTREAMS_TOOL = f"{GATEWAY_PREFIX}.reload_upstreams"

UpstreamStatus = Literal["connected", "error", "disabled"]
ClientFactory = Callable[[UpstreamConfig, float], Any]

NOTIFICATION_OPTIONS = NotificationOptions(
    prompts_changed=True, resources_changed=True, tools_changed=True
)

_EMPTY_OBJECT_SCHEMA = {"type": "object", "properties": {}, "additionalProperties": False}
_RELOAD_SCHEMA = {
    "type": "object",
    "properties": {"force": {"type": "boolean"}},
    "additionalProperties": False,
}


def hash_config(config: UpstreamConfig) -> str:
    canonical = json.dumps(config.model_dump(mode="json"), sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def split_namespaced(name: str) -> tuple[str, str] | None:
    upstream, sep, local = name.partition(".")
    if not sep:
        return None
    return upstream, local


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_text(data: Any) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=json.dumps(data, indent=2))]
    )


def _invalid_params(message: str) -> McpError:
    return McpError(types.ErrorData(code=types.INVALID_PARAMS, message=message))


def _internal_error(message: str) -> McpError:
    return McpError(types.ErrorData(code=types.INTERNAL_ERROR, message=message))


@dataclass
class UpstreamState:
    config: UpstreamConfig
    config_hash: str
    client: Any = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    prompts: list[dict[str, Any]] = field(default_factory=list)
    resources: list[dict[str, Any]] = field(default_factory=list)
    status: UpstreamStatus = "disabled"
    last_error: str | None = None
    last_sync: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.config.name


class Gateway:
    """Owns the upstream connections and serves them through one MCP server.

    The upstream map is only ever swapped wholesale by ``reload_upstreams``;
    everything else reads a snapshot of it.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        client_factory: ClientFactory = UpstreamClient,
        server: Server | None = None,
    ):
        self.settings = settings
        self._client_factory = client_factory
        self._upstreams: dict[str, UpstreamState] = {}
        self._reloading = False
        self._refresh_task: asyncio.Task | None = None
        self._initial_sync: asyncio.Task | None = None
        self._running = False
        self._listeners: "weakref.WeakSet[Any]" = weakref.WeakSet()
        self.server = server or Server("smartthings-mcp-gateway", version="0.1.0")
        self._install_handlers()

    # --- Lifecycle ---

    async def start(self) -> None:
        """Load the registry, then sync upstreams in the background.

        Connecting is deferred so that an upstream served by this same process
        is reachable by the time we dial it.
        """
        if self._running:
            return
        self._running = True
        interval = self.settings.upstreams_refresh_interval_sec
        if interval > 0:
            self._refresh_task = asyncio.create_task(self._refresh_loop(interval))
        await self.reload_upstreams(force=True, sync=False)
        self._initial_sync = asyncio.create_task(self._background_reload())
        logger.info(f"Gateway started ({len(self._upstreams)} upstreams, refresh every {interval}s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in (self._refresh_task, self._initial_sync):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._refresh_task = None
        self._initial_sync = None

        upstreams, self._upstreams = self._upstreams, {}
        for state in upstreams.values():
            await self._close_client(state.name, state.client)
        logger.info(f"Gateway stopped ({len(upstreams)} upstreams closed).")

    async def _background_reload(self) -> None:
        try:
            result = await self.reload_upstreams(force=False, sync=True)
            if not result.get("ok"):
                logger.info(f"Skipped upstream refresh: {result.get('message')}")
        except Exception as e:
            logger.warning(f"Gateway upstream refresh failed: {e}")

    async def _refresh_loop(self, interval: float) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval)
                await self._background_reload()
            except asyncio.CancelledError:
                break

    async def refresh_now(self, force: bool = True) -> dict[str, Any]:
        return await self.reload_upstreams(force=force, sync=True)

    # --- Reload / sync ---

    async def reload_upstreams(self, force: bool = False, sync: bool = True) -> dict[str, Any]:
        if self._reloading:
            return {"ok": False, "message": "Reload already in progress"}
        self._reloading = True
        try:
            incoming = load_upstreams(self.settings)

            current = self._upstreams
            upstreams: dict[str, UpstreamState] = {}
            stale_clients: list[tuple[str, Any]] = []

            incoming_names = {config.name for config in incoming}
            for name, state in current.items():
                if name not in incoming_names:
                    logger.info(f"Removing upstream {name}")
                    stale_clients.append((name, state.client))

            for config in incoming:
                config_hash = hash_config(config)
                existing = current.get(config.name)
                if existing is None:
                    upstreams[config.name] = UpstreamState(config=config, config_hash=config_hash)
                elif existing.config_hash != config_hash or force:
                    stale_clients.append((config.name, existing.client))
                    upstreams[config.name] = dataclasses.replace(
                        existing, config=config, config_hash=config_hash, client=None
                    )
                else:
                    upstreams[config.name] = existing

            self._upstreams = upstreams

            for name, client in stale_clients:
                await self._close_client(name, client)

            if sync:
                await asyncio.gather(*(self.sync_upstream(s) for s in list(upstreams.values())))

            await self._notify_list_changed()
            return {"ok": True, "upstreamCount": len(self._upstreams)}
        finally:
            self._reloading = False

    async def _close_client(self, name: str, client: Any) -> None:
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error closing upstream {name}: {e}")

    async def sync_upstream(self, state: UpstreamState) -> None:
        """Connect if needed and refresh the cached listings of one upstream.

        Never raises; failures are recorded on the state and the previous
        listings stay in place.
        """
        async with state.lock:
            if not self._is_current(state):
                return
            if not state.config.enabled:
                state.status = "disabled"
                return

            try:
                if state.client is None or not state.client.connected:
                    previous = state.client
                    state.client = None
                    await self._close_client(state.name, previous)
                    client = self._client_factory(state.config, self.settings.request_timeout_seconds)
                    await client.connect()
                    if not self._is_current(state):
                        # replaced or removed by a reload while connecting
                        await self._close_client(state.name, client)
                        raise ConnectionError(f"Upstream {state.name} was reloaded while connecting")
                    state.client = client

                client = state.client
                tools = await client.list_tools()
                caps = client.capabilities
                prompts = await client.list_prompts() if caps and caps.prompts else []
                resources = await client.list_resources() if caps and caps.resources else []

                state.tools, state.prompts, state.resources = tools, prompts, resources
                state.status = "connected"
                state.last_error = None
                state.last_sync = _utcnow()
            except Exception as e:
                state.status = "error"
                state.last_error = str(e) or type(e).__name__
                logger.warning(f"Failed to sync upstream {state.name}: {state.last_error}")

    # --- Status ---

    def status(self) -> dict[str, Any]:
        upstreams = {}
        for name, state in list(self._upstreams.items()):
            upstreams[name] = {
                "status": state.status,
                "lastError": state.last_error,
                "lastSync": state.last_sync,
                "url": state.config.url,
            }
        return {"enabled": True, "upstreams": upstreams}

    def get_upstream(self, name: str) -> UpstreamState | None:
        return self._upstreams.get(name)

    def _is_current(self, state: UpstreamState) -> bool:
        return self._upstreams.get(state.name) is state

    # --- Listing ---

    def _gateway_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": LIST_UPSTREAMS_TOOL,
                "title": "List upstreams",
                "description": "List configured upstreams and their current status.",
                "inputSchema": _EMPTY_OBJECT_SCHEMA,
            },
            {
                "name": RELOAD_UPSTREAMS_TOOL,
                "title": "Reload upstreams",
                "description": "Reload upstream config and refresh cached tool lists.",
                "inputSchema": _RELOAD_SCHEMA,
            },
        ]

    def _connected(self) -> list[UpstreamState]:
        return [s for s in list(self._upstreams.values()) if s.status == "connected"]

    @staticmethod
    def _annotate(item: dict[str, Any], state: UpstreamState, kind: str) -> dict[str, Any]:
        name = state.name
        description = item.get("description")
        meta = dict(item.get("_meta") or {})
        meta["upstream"] = {"name": name, "url": state.config.url}
        return {
            **item,
            "name": f"{name}.{item['name']}",
            "description": f"{description} (upstream: {name})" if description else f"Upstream {kind} from {name}",
            "_meta": meta,
        }

    def list_tools(self) -> list[dict[str, Any]]:
        tools = self._gateway_tools()
        for state in self._connected():
            tools.extend(self._annotate(tool, state, "tool") for tool in state.tools)
        return tools

    def list_prompts(self) -> list[dict[str, Any]]:
        prompts: list[dict[str, Any]] = []
        for state in self._connected():
            prompts.extend(self._annotate(prompt, state, "prompt") for prompt in state.prompts)
        return prompts

    def list_resources(self) -> list[dict[str, Any]]:
        resources: list[dict[str, Any]] = []
        for state in self._connected():
            for resource in state.resources:
                meta = dict(resource.get("_meta") or {})
                meta["upstream"] = {"name": state.name, "url": state.config.url, "uri": resource["uri"]}
                entry = {
                    **resource,
                    "uri": encode_resource_uri(state.name, resource["uri"]),
                    "_meta": meta,
                }
                if resource.get("name"):
                    entry["name"] = f"{state.name}.{resource['name']}"
                resources.append(entry)
        return resources

    # --- Dispatch ---

    @staticmethod
    def _is_live(state: UpstreamState) -> bool:
        return state.status == "connected" and state.client is not None and state.client.connected

    async def _resolve(self, upstream_name: str) -> UpstreamState:
        state = self._upstreams.get(upstream_name)
        if state is None:
            raise _invalid_params(f"Unknown upstream: {upstream_name}")

        if not self._is_live(state):
            await self.sync_upstream(state)
            current = self._upstreams.get(upstream_name)
            if current is None:
                raise _invalid_params(f"Unknown upstream: {upstream_name}")
            if current is not state:
                state = current
                if not self._is_live(state):
                    await self.sync_upstream(state)

        if state.client is None:
            raise _internal_error(f"Upstream {upstream_name} unavailable")
        return state

    async def _forward(self, state: UpstreamState, call):
        try:
            return await call(state.client)
        except McpError:
            raise
        except Exception as e:
            state.status = "error"
            state.last_error = str(e) or type(e).__name__
            logger.warning(f"Call to upstream {state.name} failed: {state.last_error}")
            raise _internal_error(f"Upstream {state.name} call failed: {state.last_error}")

    async def call_tool(self, params: types.CallToolRequestParams) -> types.CallToolResult:
        name = params.name
        if name == LIST_UPSTREAMS_TOOL:
            return _to_text(self.status())
        if name == RELOAD_UPSTREAMS_TOOL:
            force = (params.arguments or {}).get("force") is True
            try:
                result = await self.reload_upstreams(force=force, sync=True)
            except UpstreamConfigError as e:
                logger.warning(f"Upstream reload rejected: {e}")
                result = {"ok": False, "message": str(e), "errors": e.errors}
            return _to_text(result)

        split = split_namespaced(name)
        if split is None:
            raise _invalid_params("Tool name must be namespaced as <upstream>.<tool>")

        upstream, local = split
        state = await self._resolve(upstream)
        forwarded = params.model_copy(update={"name": local})
        return await self._forward(state, lambda client: client.call_tool(forwarded))

    async def get_prompt(self, params: types.GetPromptRequestParams) -> types.GetPromptResult:
        split = split_namespaced(params.name)
        if split is None:
            raise _invalid_params("Prompt name must be namespaced as <upstream>.<prompt>")

        upstream, local = split
        state = await self._resolve(upstream)
        forwarded = params.model_copy(update={"name": local})
        return await self._forward(state, lambda client: client.get_prompt(forwarded))

    async def read_resource(self, params: types.ReadResourceRequestParams) -> types.ReadResourceResult:
        decoded = decode_resource_uri(str(params.uri))
        if decoded is None:
            raise _invalid_params("Resource URI must be generated by the gateway (mcp+proxy://...)")

        upstream, original = decoded
        state = await self._resolve(upstream)
        forwarded = types.ReadResourceRequestParams.model_validate(
            {**params.model_dump(mode="json", by_alias=True, exclude_none=True), "uri": original}
        )
        return await self._forward(state, lambda client: client.read_resource(forwarded))

    # --- MCP server wiring ---

    def _track_listener(self) -> None:
        try:
            self._listeners.add(self.server.request_context.session)
        except LookupError:
            pass

    async def _notify_list_changed(self) -> None:
        for session in list(self._listeners):
            try:
                await session.send_tool_list_changed()
                await session.send_prompt_list_changed()
                await session.send_resource_list_changed()
            except Exception as e:
                logger.debug(f"Dropping list-change listener: {e}")
                self._listeners.discard(session)

    def _install_handlers(self) -> None:
        handlers = self.server.request_handlers

        async def handle_list_tools(req: types.ListToolsRequest) -> types.ServerResult:
            self._track_listener()
            tools = [types.Tool.model_validate(tool) for tool in self.list_tools()]
            return types.ServerResult(types.ListToolsResult(tools=tools))

        async def handle_call_tool(req: types.CallToolRequest) -> types.ServerResult:
            return types.ServerResult(await self.call_tool(req.params))

        async def handle_list_prompts(req: types.ListPromptsRequest) -> types.ServerResult:
            self._track_listener()
            prompts = [types.Prompt.model_validate(prompt) for prompt in self.list_prompts()]
            return types.ServerResult(types.ListPromptsResult(prompts=prompts))

        async def handle_get_prompt(req: types.GetPromptRequest) -> types.ServerResult:
            return types.ServerResult(await self.get_prompt(req.params))

        async def handle_list_resources(req: types.ListResourcesRequest) -> types.ServerResult:
            self._track_listener()
            resources = [types.Resource.model_validate(r) for r in self.list_resources()]
            return types.ServerResult(types.ListResourcesResult(resources=resources))

        async def handle_read_resource(req: types.ReadResourceRequest) -> types.ServerResult:
            return types.ServerResult(await self.read_resource(req.params))

        async def handle_list_templates(req: types.ListResourceTemplatesRequest) -> types.ServerResult:
            return types.ServerResult(types.ListResourceTemplatesResult(resourceTemplates=[]))

        handlers[types.ListToolsRequest] = handle_list_tools
        handlers[types.CallToolRequest] = handle_call_tool
        handlers[types.ListPromptsRequest] = handle_list_prompts
        handlers[types.GetPromptRequest] = handle_get_prompt
        handlers[types.ListResourcesRequest] = handle_list_resources
        handlers[types.ReadResourceRequest] = handle_read_resource
        handlers[types.ListResourceTemplatesRequest] = handle_list_templates
