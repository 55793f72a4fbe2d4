"""
ReloadingProxy — the composition root.

Owns the upstream MCP server, the child supervisor, the capability
mirror and the restart controller, and wires them together. One
instance per process; signal handlers receive it by reference and call
shutdown().

Usage:
    proxy = ReloadingProxy(config)
    await proxy.run()          # stdio upstream until EOF or a signal
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Any

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server

from . import __version__
from .config import ProxyConfig
from .mcp.bridge import ProtocolBridge, UpstreamLink, restart_tool
from .mcp.mirror import CapabilityMirror
from .mcp.restart import RestartController
from .mcp.supervisor import ChildSupervisor, SupervisorHooks

logger = logging.getLogger(__name__)

# Declared to the upstream client regardless of what the child supports
STATIC_CAPABILITIES: dict[str, Any] = {
    "logging": {},
}
PROXY_CAPABILITIES: dict[str, Any] = {
    "tools": {"listChanged": True},
    "prompts": {"listChanged": True},
    "resources": {"subscribe": True, "listChanged": True},
    "completions": {},
    "sampling": {},
}


class ReloadingProxy:
    """Transparent MCP proxy that can restart its child server in place."""

    def __init__(self, config: ProxyConfig):
        self.config = config
        self.upstream = UpstreamLink()
        self.mirror = CapabilityMirror(synthetic_tools=[restart_tool()])
        self.supervisor = ChildSupervisor(config, self.mirror)
        self.controller = RestartController(config, self.supervisor, self.upstream)
        self.bridge = ProtocolBridge(self.supervisor, self.mirror, self.controller, self.upstream)
        self.supervisor.hooks = SupervisorHooks(
            message_handler=self.bridge.relay_child_message,
            sampling_callback=self.bridge.relay_sampling,
            list_roots_callback=self.bridge.relay_list_roots,
            on_exit=self.controller.on_child_exit,
        )

        self.server: Server = Server(f"{config.server_name()}-dev", version=__version__)
        self.bridge.register(self.server)

        self._shutdown_requested: asyncio.Event | None = None
        self._stopped = False

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        """Start the child server. Errors propagate: no child, no proxy."""
        await self.supervisor.start(timeout=self.config.restart_timeout)

    async def serve(
        self,
        read_stream: MemoryObjectReceiveStream,
        write_stream: MemoryObjectSendStream,
    ) -> None:
        """Serve one upstream connection until it closes."""
        self.upstream.attach_stream(write_stream)
        await self.server.run(read_stream, write_stream, self.initialization_options())

    async def run(self) -> None:
        """Start the child, then serve the upstream client over stdio."""
        self._shutdown_requested = asyncio.Event()
        logger.info(f"Starting mcpreloader for: {self.config.child_command().describe()}")

        try:
            await self.start()
            self.install_signal_handlers()

            async with stdio_server() as (read_stream, write_stream):
                logger.info("mcpreloader started successfully")
                await self._serve_until_shutdown(read_stream, write_stream)
                await self.shutdown()
                if self._shutdown_requested.is_set():
                    # stdio_server's stdin reader thread cannot be cancelled; do not wait for it
                    logging.shutdown()
                    os._exit(0)
        finally:
            await self.shutdown()

    async def _serve_until_shutdown(
        self,
        read_stream: MemoryObjectReceiveStream,
        write_stream: MemoryObjectSendStream,
    ) -> None:
        serve_task = asyncio.create_task(self.serve(read_stream, write_stream), name="upstream")
        shutdown_task = asyncio.create_task(self._shutdown_requested.wait(), name="shutdown-wait")
        try:
            await asyncio.wait({serve_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown_task.cancel()
            if not serve_task.done():
                logger.info("Closing upstream connection")
                serve_task.cancel()
            await asyncio.gather(serve_task, return_exceptions=True)

        if not serve_task.cancelled() and serve_task.exception() is not None:
            logger.error(f"Upstream connection failed: {serve_task.exception()}")
        else:
            logger.info("Upstream connection closed")

    async def shutdown(self) -> None:
        """Stop the child and background work. Failures are logged, not raised."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping mcpreloader")
        logger.debug(f"Proxy status at shutdown: {self.status()}")

        for step, action in (
            ("restart controller", self.controller.close),
            ("protocol bridge", self.bridge.close),
            ("child server", self.supervisor.stop),
        ):
            try:
                await action()
            except Exception as e:
                logger.error(f"Error stopping {step}: {e}")

    def request_shutdown(self, signame: str = "signal") -> None:
        logger.info(f"Received {signame}, shutting down gracefully")
        if self._shutdown_requested is not None:
            self._shutdown_requested.set()

    def install_signal_handlers(self) -> None:
        """Route SIGINT / SIGTERM to request_shutdown()."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # e.g. Windows event loops
                signal.signal(
                    sig,
                    lambda signum, frame: loop.call_soon_threadsafe(
                        self.request_shutdown, signal.Signals(signum).name
                    ),
                )

    # ── Upstream handshake ─────────────────────────────────

    def capabilities(self) -> types.ServerCapabilities:
        return types.ServerCapabilities.model_validate({**STATIC_CAPABILITIES, **PROXY_CAPABILITIES})

    def initialization_options(self) -> InitializationOptions:
        name = f"{self.config.server_name()}-dev"
        version = f"{__version__}-dev"
        instructions = None

        endpoint = self.supervisor.endpoint
        if endpoint is not None and endpoint.init_result is not None:
            info = endpoint.init_result.serverInfo
            name = f"{info.name}-dev"
            version = f"{info.version}-dev"
            instructions = endpoint.init_result.instructions

        return InitializationOptions(
            server_name=name,
            server_version=version,
            capabilities=self.capabilities(),
            instructions=instructions,
        )

    def status(self) -> dict[str, Any]:
        snapshot = self.mirror.snapshot
        return {
            "child": self.supervisor.status.value,
            "generation": self.supervisor.generation,
            "restart": self.controller.status().to_dict(),
            "tools": snapshot.tool_names,
        }
