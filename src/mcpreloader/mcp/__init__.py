"""
MCP plumbing behind the proxy.

Provides:
- StdioTransport — client-side transport (subprocess + stdio pipes)
- ChildSupervisor / ChildEndpoint — lifecycle of the child server, one endpoint per generation
- CapabilityMirror — cached tools / prompts / resources of the current child
- RestartController — manual and automatic restarts
- ProtocolBridge / UpstreamLink — message routing between client and child
"""

from .transport import StdioTransport, TransportFeatures
from .mirror import CapabilityMirror
from .supervisor import ChildEndpoint, ChildSupervisor, SupervisorHooks
from .restart import RestartController
from .bridge import RESTART_TOOL_NAME, ProtocolBridge, UpstreamLink, restart_tool

__all__ = [
    "StdioTransport",
    "TransportFeatures",
    "CapabilityMirror",
    "ChildEndpoint",
    "ChildSupervisor",
    "SupervisorHooks",
    "RestartController",
    "ProtocolBridge",
    "UpstreamLink",
    "RESTART_TOOL_NAME",
    "restart_tool",
]
