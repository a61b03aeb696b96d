"""Reversible mapping between upstream resource URIs and gateway URIs.

A gateway URI looks like ``mcp+proxy://<upstream>/<payload>`` where the payload
is the unpadded base64url encoding of the native URI's UTF-8 bytes.
"""

from __future__ import annotations

import base64
import binascii
import re

RESOURCE_SCHEME = "mcp+proxy"

_PREFIX = f"{RESOURCE_SCHEME}://"
_PAYLOAD = re.compile(r"^[A-Za-z0-9_-]+$")


def encode_resource_uri(upstream: str, uri: str) -> str:
    payload = base64.urlsafe_b64encode(uri.encode("utf-8")).rstrip(b"=").decode("ascii")
    return f"{_PREFIX}{upstream}/{payload}"


def decode_resource_uri(uri: str) -> tuple[str, str] | None:
    """Return ``(upstream, native_uri)`` or None when ``uri`` is not one of ours."""
    if not uri.lower().startswith(_PREFIX):
        return None

    rest = uri[len(_PREFIX):]
    upstream, sep, payload = rest.partition("/")
    if not sep or not upstream or not payload:
        return None
    if "@" in upstream or ":" in upstream:
        return None
    if not _PAYLOAD.match(payload):
        return None

    padded = payload + "=" * (-len(payload) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
        return upstream, raw.decode("utf-8")
    except (binascii.Error, ValueError):
        return None
