"""Upstream registry: load and validate the declarative upstream list."""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Iterable, Mapping
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError

from .config import GatewaySettings

logger = logging.getLogger("smartthings-mcp-upstreams")

RESERVED_NAMES = frozenset({"gateway"})

_ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_LOCAL_HOSTS = {"localhost", "127.0.0.1"}


class UpstreamConfigError(Exception):
    """Raised when the upstream registry cannot be loaded.

    Carries every problem found so a single reload reports all of them at once.
    """

    def __init__(self, message: str, errors: Iterable[str] = ()):
        self.errors = list(errors) or [message]
        super().__init__(message)


class UpstreamConfig(BaseModel):
    name: str = Field(pattern=r"^[A-Za-z0-9_-]{1,32}$")
    url: str = Field(min_length=1)
    description: str | None = None
    enabled: bool = True
    headers: dict[str, str] | None = None


class UpstreamsFile(BaseModel):
    upstreams: list[UpstreamConfig] = Field(default_factory=list)


def expand_env_vars(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Replace ``${VAR}`` references. Unset or empty variables are an error."""
    env = os.environ if environ is None else environ

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        resolved = env.get(name)
        if not resolved:
            raise UpstreamConfigError(f"Missing env var {name} referenced in upstream config")
        return resolved

    return _ENV_PATTERN.sub(_sub, value)


def _resolve_path(config_path: str) -> str:
    if os.path.isabs(config_path):
        return config_path
    return os.path.abspath(config_path)


def load_upstreams_config(
    config_path: str, environ: Mapping[str, str] | None = None
) -> list[UpstreamConfig]:
    """Read the upstream document, expand env references and reject duplicates."""
    path = _resolve_path(config_path)
    if not os.path.exists(path):
        logger.info(f"Upstream config not found at {path}; starting with zero upstreams")
        return []

    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        raise UpstreamConfigError(f"Failed to parse upstream config JSON at {path}: {e}")

    try:
        document = UpstreamsFile.model_validate(parsed)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise UpstreamConfigError(f"Invalid upstream config at {path}", problems)

    errors: list[str] = []
    seen: set[str] = set()
    upstreams: list[UpstreamConfig] = []
    for upstream in document.upstreams:
        if upstream.name in seen:
            errors.append(f"Duplicate upstream name: {upstream.name}")
            continue
        seen.add(upstream.name)
        try:
            url = expand_env_vars(upstream.url, environ)
            headers = None
            if upstream.headers is not None:
                headers = {k: expand_env_vars(v, environ) for k, v in upstream.headers.items()}
        except UpstreamConfigError as e:
            errors.append(f"{upstream.name}: {e}")
            continue
        upstreams.append(upstream.model_copy(update={"url": url, "headers": headers}))

    if errors:
        raise UpstreamConfigError(f"Invalid upstream config at {path}", errors)
    return upstreams


def validate_upstreams(upstreams: list[UpstreamConfig], gateway_urls: set[str]) -> None:
    """Reject reserved names, malformed URLs and URLs pointing back at the gateway."""
    errors: list[str] = []
    for upstream in upstreams:
        if upstream.name in RESERVED_NAMES:
            errors.append(f'Upstream name "{upstream.name}" is reserved')
            continue

        parsed = urlsplit(upstream.url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            errors.append(f'Invalid upstream URL for "{upstream.name}"')
            continue

        if upstream.url.rstrip("/") in gateway_urls:
            errors.append(f'Upstream "{upstream.name}" points to the gateway endpoint')
            continue

        if parsed.scheme != "https" and parsed.hostname not in _LOCAL_HOSTS:
            logger.warning(f"Upstream {upstream.name} is not HTTPS: {upstream.url}")

    if errors:
        raise UpstreamConfigError("Upstream validation failed", errors)


def load_upstreams(
    settings: GatewaySettings, environ: Mapping[str, str] | None = None
) -> list[UpstreamConfig]:
    upstreams = load_upstreams_config(settings.upstreams_config_path, environ)
    validate_upstreams(upstreams, settings.gateway_urls())
    return upstreams
