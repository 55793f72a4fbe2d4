"""
Child Supervisor — launches and manages the child MCP server process.

Usage:
    supervisor = ChildSupervisor(config, mirror)
    endpoint = await supervisor.start(timeout=30)
    result = await supervisor.current().request(request, types.CallToolResult)
    await supervisor.stop()

Every start() creates a new ChildEndpoint (a "generation"). Each
endpoint is driven by its own task, which owns the transport and the
ClientSession for its whole life, so the SDK's task groups are always
entered and exited by the same task.
"""

from __future__ import annotations

import asyncio
import collections
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from mcp import ClientSession, types
from mcp.shared.context import RequestContext
from mcp.shared.exceptions import McpError

from .. import __version__
from ..config import ProxyConfig
from ..errors import ChildSpawnFailure, ChildUnavailable, RestartTimeout
from ..models import ChildExit, CapabilitySnapshot, ConnectionStatus
from .mirror import CapabilityMirror
from .transport import StdioTransport

logger = logging.getLogger(__name__)
child_logger = logging.getLogger("mcpreloader.child")

STDERR_TAIL_LINES = 20
EXIT_SETTLE_TIMEOUT = 1.0

MessageHandler = Callable[["ChildEndpoint", Any], Awaitable[None]]
SamplingHandler = Callable[
    [RequestContext, types.CreateMessageRequestParams],
    Awaitable[types.CreateMessageResult | types.ErrorData],
]
RootsHandler = Callable[[RequestContext], Awaitable[types.ListRootsResult | types.ErrorData]]


@dataclass
class SupervisorHooks:
    """Callbacks wired in by the proxy; every field is optional."""
    message_handler: MessageHandler | None = None
    sampling_callback: SamplingHandler | None = None
    list_roots_callback: RootsHandler | None = None
    on_exit: Callable[[ChildExit], None] | None = None


class ChildEndpoint:
    """
    The live connection to one generation of the child server.

    Requests sent through an endpoint can only ever reach that
    generation's process; once the endpoint closes, pending and new
    requests fail with ChildUnavailable.
    """

    def __init__(self, generation: int, transport: StdioTransport | None = None):
        self.generation = generation
        self.transport = transport
        self.session: ClientSession | None = None
        self.init_result: types.InitializeResult | None = None
        self.status = ConnectionStatus.CONNECTING
        self.closed = asyncio.Event()
        self.stop_requested = asyncio.Event()
        self.stop_grace: float | None = None
        self.runner: asyncio.Task | None = None
        self.stderr_tail: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)

    def __repr__(self) -> str:
        pid = self.transport.pid if self.transport else None
        return f"<ChildEndpoint generation={self.generation} status={self.status.value} pid={pid}>"

    @property
    def server_capabilities(self) -> types.ServerCapabilities | None:
        return self.init_result.capabilities if self.init_result else None

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED and not self.closed.is_set()

    async def request(self, request: types.ClientRequest, result_type: type) -> Any:
        """
        Send a request to this generation and wait for its result.

        Child errors propagate unchanged. If the endpoint closes before
        the child answers, the request fails with ChildUnavailable.
        """
        if not self.is_connected or self.session is None:
            raise ChildUnavailable()

        call = asyncio.ensure_future(self.session.send_request(request, result_type))
        closed = asyncio.ensure_future(self.closed.wait())
        try:
            done, _ = await asyncio.wait({call, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not call.done():
                call.cancel()

        gone = ChildUnavailable(f"Child MCP server (generation {self.generation}) exited before responding")
        if call not in done:
            raise gone
        try:
            return call.result()
        except McpError as e:
            # the session fails pending requests as soon as stdout closes
            if e.error.code == types.CONNECTION_CLOSED and await self._closing():
                raise gone from e
            raise

    async def _closing(self) -> bool:
        """Whether this endpoint is closed or closes shortly."""
        if self.closed.is_set():
            return True
        try:
            await asyncio.wait_for(self.closed.wait(), EXIT_SETTLE_TIMEOUT)
        except asyncio.TimeoutError:
            return False
        return True

    async def notify(self, notification: types.ClientNotification) -> None:
        if not self.is_connected or self.session is None:
            raise ChildUnavailable()
        await self.session.send_notification(notification)


class ChildSupervisor:
    """
    Manages the lifecycle of the child MCP server process.

    Responsibilities:
    - Spawn the child and perform the MCP handshake
    - Install endpoint + capability snapshot together
    - Detect unexpected exits and report them through hooks.on_exit
    - Graceful, idempotent shutdown
    """

    def __init__(
        self,
        config: ProxyConfig,
        mirror: CapabilityMirror,
        hooks: SupervisorHooks | None = None,
        transport_factory: Callable[..., StdioTransport] = StdioTransport,
    ):
        self.config = config
        self.mirror = mirror
        self.hooks = hooks or SupervisorHooks()
        self._transport_factory = transport_factory
        self._endpoint: ChildEndpoint | None = None
        self._status = ConnectionStatus.DISCONNECTED
        self._generation = 0

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def endpoint(self) -> ChildEndpoint | None:
        return self._endpoint

    @property
    def generation(self) -> int:
        return self._generation

    def current(self) -> ChildEndpoint:
        """The connected endpoint, or ChildUnavailable."""
        endpoint = self._endpoint
        if endpoint is None or not endpoint.is_connected:
            raise ChildUnavailable()
        return endpoint

    def is_running(self) -> bool:
        return self._endpoint is not None and self._endpoint.is_connected

    async def start(self, *, timeout: float | None = None, force: bool = False) -> ChildEndpoint:
        """
        Start or restart the child server and mirror its capabilities.

        Any existing endpoint is stopped first. On failure the
        supervisor is left disconnected and the error propagates.
        """
        await self.stop(force=force)

        self._generation += 1
        endpoint = ChildEndpoint(self._generation)
        endpoint.transport = self._make_transport(endpoint)
        self._status = ConnectionStatus.CONNECTING
        logger.info(
            f"Starting child MCP server (generation {endpoint.generation}): "
            f"{self.config.child_command().describe()}"
        )

        try:
            snapshot = await asyncio.wait_for(self._connect(endpoint), timeout)
        except asyncio.TimeoutError:
            await self._teardown(endpoint, grace=0)
            self._status = ConnectionStatus.DISCONNECTED
            raise RestartTimeout(
                f"Child MCP server did not become ready within {timeout:g}s"
            ) from None
        except BaseException:
            await self._teardown(endpoint, grace=0)
            self._status = ConnectionStatus.DISCONNECTED
            raise

        if endpoint.closed.is_set():
            # exited after the capability query; its exit was not reported
            await asyncio.gather(endpoint.runner, return_exceptions=True)
            self._status = ConnectionStatus.DISCONNECTED
            tail = "; ".join(endpoint.stderr_tail)
            raise ChildSpawnFailure(
                f"Child MCP server exited with code {endpoint.transport.returncode} during startup"
                + (f": {tail}" if tail else "")
            )

        self._install(endpoint, snapshot)
        server_info = endpoint.init_result.serverInfo
        logger.info(
            f"Connected to child MCP server {server_info.name} {server_info.version} "
            f"(generation {endpoint.generation}, pid={endpoint.transport.pid}): {snapshot.summary()}"
        )
        return endpoint

    async def stop(self, *, force: bool = False) -> None:
        """
        Stop the child server. A no-op when nothing is running.

        The capability cache is always cleared, even if closing fails.
        """
        endpoint = self._endpoint
        self._endpoint = None
        self._status = ConnectionStatus.DISCONNECTED
        try:
            if endpoint is not None:
                logger.info(f"Stopping child MCP server (generation {endpoint.generation})")
                await self._teardown(endpoint, grace=0 if force else None)
        finally:
            self.mirror.clear()

    # ── Internals ──────────────────────────────────────────

    def _make_transport(self, endpoint: ChildEndpoint) -> StdioTransport:
        transport = self._transport_factory(
            self.config.child_command(),
            stderr_sink=functools.partial(self._log_child_stderr, endpoint),
        )
        if not transport.features.stderr:
            logger.debug("Transport does not expose child stderr; child logs will not be relayed")
        return transport

    @staticmethod
    def _log_child_stderr(endpoint: ChildEndpoint, line: str) -> None:
        endpoint.stderr_tail.append(line)
        child_logger.info(line)

    def _install(self, endpoint: ChildEndpoint, snapshot: CapabilitySnapshot) -> None:
        # no await between these two assignments
        self._endpoint = endpoint
        self.mirror.replace(snapshot)
        self._status = ConnectionStatus.CONNECTED

    async def _connect(self, endpoint: ChildEndpoint) -> CapabilitySnapshot:
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        endpoint.runner = asyncio.create_task(
            self._run(endpoint, ready), name=f"child-generation-{endpoint.generation}"
        )
        await ready
        return await self.mirror.fetch(endpoint)

    def _session_kwargs(self, endpoint: ChildEndpoint) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "client_info": types.Implementation(name="mcpreloader", version=__version__),
            "sampling_callback": self.hooks.sampling_callback,
            "list_roots_callback": self.hooks.list_roots_callback,
        }
        if self.hooks.message_handler is not None:
            kwargs["message_handler"] = functools.partial(self.hooks.message_handler, endpoint)
        return kwargs

    async def _run(self, endpoint: ChildEndpoint, ready: asyncio.Future) -> None:
        """Own one generation from spawn to exit."""
        transport = endpoint.transport
        try:
            read_stream, write_stream = await transport.start()
            failure: Exception | None = None
            async with ClientSession(read_stream, write_stream, **self._session_kwargs(endpoint)) as session:
                endpoint.session = session
                try:
                    endpoint.init_result = await self._handshake(endpoint, session)
                except Exception as e:
                    # re-raised below; the session's task group would wrap it
                    failure = e
                else:
                    endpoint.status = ConnectionStatus.CONNECTED
                    if not ready.done():
                        ready.set_result(endpoint)
                    await self._wait_until_closed(endpoint)
                endpoint.status = ConnectionStatus.DISCONNECTED
                endpoint.closed.set()
            if failure is not None:
                raise failure
        except Exception as e:
            if not ready.done():
                error = e if isinstance(e, ChildSpawnFailure) else ChildSpawnFailure(
                    f"Failed to connect to child MCP server: {e}"
                )
                ready.set_exception(error)
            else:
                logger.warning(f"Child connection (generation {endpoint.generation}) failed: {e}")
        finally:
            endpoint.status = ConnectionStatus.DISCONNECTED
            endpoint.closed.set()
            try:
                grace = endpoint.stop_grace
                if grace is None:
                    await transport.close()
                else:
                    await transport.close(grace=grace)
            except Exception as e:
                logger.debug(f"Error closing child transport: {e}")
            self._on_endpoint_exit(endpoint)

    async def _handshake(self, endpoint: ChildEndpoint, session: ClientSession) -> types.InitializeResult:
        """Run initialize, failing fast if the process dies first."""
        init = asyncio.ensure_future(session.initialize())
        if not endpoint.transport.features.exit_status:
            return await init

        exited = asyncio.ensure_future(endpoint.transport.wait())
        try:
            await asyncio.wait({init, exited}, return_when=asyncio.FIRST_COMPLETED)
            if init.done() and init.exception() is not None and not exited.done():
                # a closed stdout usually means the process is on its way out
                await asyncio.wait({exited}, timeout=EXIT_SETTLE_TIMEOUT)
        finally:
            exited.cancel()
            if not init.done():
                init.cancel()

        if init.done() and not init.cancelled() and init.exception() is None:
            return init.result()
        if not exited.done() or exited.cancelled():
            return init.result()

        tail = "; ".join(endpoint.stderr_tail)
        raise ChildSpawnFailure(
            f"Child MCP server exited with code {endpoint.transport.returncode} during handshake"
            + (f": {tail}" if tail else "")
        )

    async def _wait_until_closed(self, endpoint: ChildEndpoint) -> None:
        waiters = {asyncio.ensure_future(endpoint.stop_requested.wait())}
        if endpoint.transport.features.exit_status:
            waiters.add(asyncio.ensure_future(endpoint.transport.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _teardown(self, endpoint: ChildEndpoint, grace: float | None = None) -> None:
        """Stop one endpoint; failures are logged, never raised."""
        endpoint.stop_grace = grace
        endpoint.stop_requested.set()
        runner = endpoint.runner
        if runner is None or runner.done():
            return
        if endpoint.status is not ConnectionStatus.CONNECTED:
            runner.cancel()
        results = await asyncio.gather(runner, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Error stopping child (generation {endpoint.generation}): {result}")

    def _on_endpoint_exit(self, endpoint: ChildEndpoint) -> None:
        if self._endpoint is not endpoint:
            return

        self._endpoint = None
        self._status = ConnectionStatus.DISCONNECTED
        self.mirror.clear()
        if endpoint.stop_requested.is_set():
            return

        returncode = endpoint.transport.returncode
        logger.error(
            f"Child MCP server (generation {endpoint.generation}) exited unexpectedly "
            f"with code {returncode}"
        )
        if self.hooks.on_exit is not None:
            self.hooks.on_exit(ChildExit(
                generation=endpoint.generation,
                returncode=returncode,
                stderr_tail=list(endpoint.stderr_tail),
            ))
