"""
mcpreloader — hot-reload proxy for MCP server development.

Sits between an MCP client and the server under development. The
client keeps one session open while the server process behind it is
restarted, either by calling the synthetic restart_server tool or
automatically after a crash.

Usage:
    # Run as a proxy (what the MCP client launches)
    mcpreloader -- python my_server.py

    # From Python
    from mcpreloader import ReloadingProxy, load_config

    config = load_config(["python", "my_server.py"])
    asyncio.run(ReloadingProxy(config).run())

    # One-shot inspection of a server
    mcpreloader inspect list-tools -- python my_server.py
"""

__version__ = "0.1.0"

from .config import ProxyConfig, environment_overrides, load_config
from .errors import (
    CapabilityQueryDegraded,
    CapabilityQueryFatal,
    ChildSpawnFailure,
    ChildUnavailable,
    ProxyError,
    RestartConflict,
    RestartTimeout,
)
from .models import (
    CapabilitySnapshot,
    ChildCommand,
    ChildExit,
    ConnectionStatus,
    RestartState,
    RestartStatus,
)
from .proxy import ReloadingProxy

__all__ = [
    # Core
    "ReloadingProxy",
    # Config
    "ProxyConfig",
    "load_config",
    "environment_overrides",
    # Models
    "CapabilitySnapshot",
    "ChildCommand",
    "ChildExit",
    "RestartStatus",
    # Enums
    "ConnectionStatus",
    "RestartState",
    # Errors
    "ProxyError",
    "ChildUnavailable",
    "ChildSpawnFailure",
    "CapabilityQueryDegraded",
    "CapabilityQueryFatal",
    "RestartConflict",
    "RestartTimeout",
]
