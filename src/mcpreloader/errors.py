"""
Error taxonomy for the proxy engine.

Child errors are never wrapped: an McpError raised by the child server
reaches the upstream client unchanged. The classes below describe
failures that originate in the proxy itself.
"""

from __future__ import annotations

from mcp.shared.exceptions import McpError
from mcp.types import INTERNAL_ERROR, ErrorData


class ProxyError(Exception):
    """Base class for proxy-internal failures."""


class ChildUnavailable(ProxyError, McpError):
    """No connected child server; the request cannot be forwarded."""

    def __init__(self, message: str = "Child MCP server is not connected"):
        super().__init__(ErrorData(code=INTERNAL_ERROR, message=message))


class ChildSpawnFailure(ProxyError):
    """The child process could not be created or the handshake failed."""


class CapabilityQueryDegraded(ProxyError):
    """The child does not implement a capability-listing method."""

    def __init__(self, category: str):
        super().__init__(f"Child server does not support {category}")
        self.category = category


class CapabilityQueryFatal(ProxyError):
    """A capability query failed for a reason other than a missing method."""


class RestartConflict(ProxyError):
    """A restart was requested while another one is in progress."""


class RestartTimeout(ProxyError):
    """A (re)start did not complete within the configured deadline."""
