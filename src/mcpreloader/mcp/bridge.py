"""
Protocol bridge between the upstream MCP client and the child server.

Registers request and notification handlers on the SDK's low-level
Server. Requests are forwarded with their params unchanged to whichever
child endpoint is current at the moment they arrive; tool listings and
the synthetic restart tool are answered locally. Notifications and
child-initiated requests (sampling, roots) are relayed in both directions.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from anyio.streams.memory import MemoryObjectSendStream
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.session import ServerSession
from mcp.shared.context import RequestContext
from mcp.shared.exceptions import McpError
from mcp.shared.message import SessionMessage

from ..errors import ChildUnavailable
from .mirror import CapabilityMirror
from .supervisor import ChildEndpoint, ChildSupervisor

if TYPE_CHECKING:
    from .restart import RestartController

logger = logging.getLogger(__name__)

RESTART_TOOL_NAME = "restart_server"

RequestHandler = Callable[[Any], Awaitable[types.ServerResult]]


def restart_tool() -> types.Tool:
    """Descriptor of the proxy-owned restart tool."""
    return types.Tool(
        name=RESTART_TOOL_NAME,
        description=(
            "Restart the MCP server process behind this development proxy. "
            "Use after changing the server's code to load the new version; "
            "the client session stays connected and tools are re-read."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "force": {
                    "type": "boolean",
                    "description": "Kill the running server immediately instead of waiting for it to exit",
                    "default": False,
                },
            },
            "additionalProperties": False,
        },
    )


def outbound_request(request: Any) -> types.ClientRequest:
    """
    Rebuild an upstream request for sending to the child.

    Requests parsed from the wire still carry the envelope's `jsonrpc`
    and `id` as extra fields; the child session assigns its own.
    """
    payload = request.model_dump(by_alias=True, mode="json", exclude_none=True)
    payload.pop("jsonrpc", None)
    payload.pop("id", None)
    return types.ClientRequest.model_validate(payload)


def _notification_message(notification: types.ServerNotification) -> SessionMessage:
    return SessionMessage(message=types.JSONRPCMessage(types.JSONRPCNotification(
        jsonrpc="2.0",
        **notification.model_dump(by_alias=True, mode="json", exclude_none=True),
    )))


# ── Upstream link ───────────────────────────────────────────

class UpstreamLink:
    """
    Handle on the upstream client's ServerSession.

    The low-level Server creates the session internally, so it is
    captured from the request context of the first handled request.
    Until then notifications go straight to the upstream write stream.
    Outbound notifications are serialised to keep their order.
    """

    def __init__(self):
        self.session: ServerSession | None = None
        self.stream: MemoryObjectSendStream | None = None
        self._lock = asyncio.Lock()

    def attach(self, session: ServerSession) -> None:
        if self.session is not session:
            logger.debug("Upstream client session attached")
            self.session = session

    def attach_stream(self, stream: MemoryObjectSendStream) -> None:
        """Use a new upstream connection; any captured session belongs to the old one."""
        self.stream = stream
        self.session = None

    @property
    def connected(self) -> bool:
        return self.session is not None or self.stream is not None

    async def notify(self, notification: types.ServerNotification) -> bool:
        """Send a notification upstream. Returns False if it was dropped."""
        session = self.session
        if session is None and self.stream is None:
            logger.debug(f"No upstream connection yet, dropping {notification.root.method}")
            return False
        async with self._lock:
            if session is not None:
                await session.send_notification(notification)
            else:
                await self.stream.send(_notification_message(notification))
        return True

    async def notify_list_changed(self) -> None:
        """Tell the client to re-query tools, prompts and resources."""
        for notification in (
            types.ToolListChangedNotification(method="notifications/tools/list_changed"),
            types.PromptListChangedNotification(method="notifications/prompts/list_changed"),
            types.ResourceListChangedNotification(method="notifications/resources/list_changed"),
        ):
            try:
                await self.notify(types.ServerNotification(notification))
            except Exception as e:
                logger.debug(f"Error sending {notification.method}: {e}")
        logger.debug("Sent capability change notifications")

    async def request(self, request: types.ServerRequest, result_type: type) -> Any:
        session = self.session
        if session is None:
            raise McpError(types.ErrorData(
                code=types.INVALID_REQUEST,
                message="No upstream client is connected",
            ))
        return await session.send_request(request, result_type)


# ── Protocol bridge ─────────────────────────────────────────

class ProtocolBridge:
    """
    Routes every protocol message between upstream and child.

    Handlers read the current endpoint from the supervisor on each
    call; nothing holds on to a child session across restarts.
    """

    def __init__(
        self,
        supervisor: ChildSupervisor,
        mirror: CapabilityMirror,
        controller: RestartController,
        upstream: UpstreamLink,
    ):
        self.supervisor = supervisor
        self.mirror = mirror
        self.controller = controller
        self.upstream = upstream
        self._server: Server | None = None
        self._child_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    def register(self, server: Server) -> None:
        """Install request and notification handlers on the upstream server."""
        self._server = server

        forwarded: dict[type, type] = {
            types.GetPromptRequest: types.GetPromptResult,
            types.ReadResourceRequest: types.ReadResourceResult,
            types.SubscribeRequest: types.EmptyResult,
            types.UnsubscribeRequest: types.EmptyResult,
            types.CompleteRequest: types.CompleteResult,
            types.SetLevelRequest: types.EmptyResult,
        }
        listed: dict[type, tuple[type, Callable[[], Any]]] = {
            types.ListPromptsRequest: (types.ListPromptsResult, lambda: types.ListPromptsResult(prompts=[])),
            types.ListResourcesRequest: (types.ListResourcesResult, lambda: types.ListResourcesResult(resources=[])),
            types.ListResourceTemplatesRequest: (
                types.ListResourceTemplatesResult,
                lambda: types.ListResourceTemplatesResult(resourceTemplates=[]),
            ),
        }

        handlers: dict[type, RequestHandler] = {
            types.ListToolsRequest: self.list_tools,
            types.CallToolRequest: self.call_tool,
            types.PingRequest: self.ping,
        }
        for request_type, result_type in forwarded.items():
            handlers[request_type] = self._forwarder(result_type)
        for request_type, (result_type, empty) in listed.items():
            handlers[request_type] = self._list_forwarder(result_type, empty)

        for request_type, handler in handlers.items():
            server.request_handlers[request_type] = self._capturing(handler)

        server.notification_handlers[types.ProgressNotification] = self.relay_upstream_notification
        server.notification_handlers[types.RootsListChangedNotification] = self.relay_upstream_notification

    # ── Upstream -> child ──────────────────────────────────

    async def handle_request(self, request: Any, result_type: type) -> types.ServerResult:
        """Forward a request to the current child with its method and params unchanged."""
        endpoint = self.supervisor.current()
        result = await endpoint.request(outbound_request(request), result_type)
        return types.ServerResult(result)

    async def list_tools(self, request: types.ListToolsRequest) -> types.ServerResult:
        return types.ServerResult(types.ListToolsResult(tools=self.mirror.list_tools()))

    async def call_tool(self, request: types.CallToolRequest) -> types.ServerResult:
        if request.params.name == RESTART_TOOL_NAME:
            result = await self.controller.handle_tool_call(request.params.arguments or {})
            return types.ServerResult(result)
        return await self.handle_request(request, types.CallToolResult)

    async def ping(self, request: types.PingRequest) -> types.ServerResult:
        return types.ServerResult(types.EmptyResult())

    async def relay_upstream_notification(self, notification: Any) -> None:
        endpoint = self.supervisor.endpoint
        if endpoint is None or not endpoint.is_connected:
            logger.debug(f"Child not connected, dropping {notification.method}")
            return
        async with self._child_lock:
            try:
                await endpoint.notify(types.ClientNotification(notification))
            except ChildUnavailable:
                logger.debug(f"Child went away, dropping {notification.method}")

    # ── Child -> upstream ──────────────────────────────────

    async def relay_child_message(self, endpoint: ChildEndpoint, message: Any) -> None:
        """message_handler for each child ClientSession."""
        if isinstance(message, Exception):
            logger.warning(f"Child (generation {endpoint.generation}) sent an invalid message: {message}")
            return
        if not isinstance(message, types.ServerNotification):
            # requests are answered by the sampling / roots callbacks
            return

        if isinstance(message.root, types.ToolListChangedNotification):
            # runs outside the child's receive loop, which must stay free to read the reply
            self._spawn(self._refresh_and_relay(endpoint, message))
            return
        try:
            await self.upstream.notify(message)
        except Exception as e:
            logger.warning(f"Failed to relay {message.root.method} upstream: {e}")

    async def relay_sampling(
        self,
        context: RequestContext,
        params: types.CreateMessageRequestParams,
    ) -> types.CreateMessageResult | types.ErrorData:
        request = types.ServerRequest(
            types.CreateMessageRequest(method="sampling/createMessage", params=params)
        )
        try:
            return await self.upstream.request(request, types.CreateMessageResult)
        except McpError as e:
            return e.error

    async def relay_list_roots(self, context: RequestContext) -> types.ListRootsResult | types.ErrorData:
        request = types.ServerRequest(types.ListRootsRequest(method="roots/list"))
        try:
            return await self.upstream.request(request, types.ListRootsResult)
        except McpError as e:
            return e.error

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    # ── Internals ──────────────────────────────────────────

    def _capturing(self, handler: RequestHandler) -> RequestHandler:
        async def wrapper(request: Any) -> types.ServerResult:
            self._capture_session()
            return await handler(request)
        return wrapper

    def _capture_session(self) -> None:
        if self._server is None:
            return
        try:
            context = self._server.request_context
        except LookupError:
            return
        self.upstream.attach(context.session)

    def _forwarder(self, result_type: type) -> RequestHandler:
        async def forward(request: Any) -> types.ServerResult:
            return await self.handle_request(request, result_type)
        return forward

    def _list_forwarder(self, result_type: type, empty: Callable[[], Any]) -> RequestHandler:
        async def forward_list(request: Any) -> types.ServerResult:
            try:
                return await self.handle_request(request, result_type)
            except ChildUnavailable:
                raise
            except McpError as e:
                if e.error.code != types.METHOD_NOT_FOUND:
                    raise
                logger.debug(f"Child does not support {request.method}, answering with an empty list")
                return types.ServerResult(empty())
        return forward_list

    async def _refresh_and_relay(self, endpoint: ChildEndpoint, message: types.ServerNotification) -> None:
        await self.mirror.refresh_tools(endpoint)
        try:
            await self.upstream.notify(message)
        except Exception as e:
            logger.warning(f"Failed to relay {message.root.method} upstream: {e}")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
