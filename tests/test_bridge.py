"""
Tests for ProtocolBridge and UpstreamLink with fake collaborators.
"""

import asyncio

import anyio
import pytest
from mcp import types
from mcp.shared.exceptions import McpError

from mcpreloader.errors import ChildUnavailable
from mcpreloader.mcp.bridge import RESTART_TOOL_NAME, ProtocolBridge, UpstreamLink, restart_tool
from mcpreloader.mcp.mirror import CapabilityMirror
from mcpreloader.models import CapabilitySnapshot


def _tool(name: str) -> types.Tool:
    return types.Tool(name=name, inputSchema={"type": "object"})


def _call_request(name: str, arguments=None) -> types.CallToolRequest:
    return types.CallToolRequest(
        method="tools/call",
        params=types.CallToolRequestParams(name=name, arguments=arguments),
    )


# ── Fakes ───────────────────────────────────────────────────

class FakeEndpoint:
    def __init__(self, generation=1, result=None, error=None):
        self.generation = generation
        self.is_connected = True
        self.result = result
        self.error = error
        self.requests = []
        self.notifications = []

    async def request(self, request, result_type):
        self.requests.append(request.root)
        if self.error is not None:
            raise self.error
        return self.result

    async def notify(self, notification):
        self.notifications.append(notification.root)


class FakeSupervisor:
    def __init__(self, endpoint=None):
        self.endpoint = endpoint

    def current(self):
        if self.endpoint is None or not self.endpoint.is_connected:
            raise ChildUnavailable()
        return self.endpoint


class FakeController:
    def __init__(self):
        self.calls = []

    async def handle_tool_call(self, arguments):
        self.calls.append(arguments)
        return types.CallToolResult(content=[types.TextContent(type="text", text="restarted")])


class FakeServerSession:
    def __init__(self):
        self.notifications = []
        self.requests = []
        self.reply = None

    async def send_notification(self, notification):
        self.notifications.append(notification.root.method)

    async def send_request(self, request, result_type):
        self.requests.append(request.root.method)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def _bridge(endpoint=None):
    mirror = CapabilityMirror(synthetic_tools=[restart_tool()])
    upstream = UpstreamLink()
    controller = FakeController()
    bridge = ProtocolBridge(FakeSupervisor(endpoint), mirror, controller, upstream)
    return bridge, mirror, controller, upstream


# ── Restart tool descriptor ─────────────────────────────────

class TestRestartTool:
    def test_schema(self):
        tool = restart_tool()
        assert tool.name == RESTART_TOOL_NAME == "restart_server"
        assert tool.inputSchema["properties"]["force"]["type"] == "boolean"
        assert "required" not in tool.inputSchema


# ── Upstream -> child ───────────────────────────────────────

class TestRequests:
    @pytest.mark.asyncio
    async def test_list_tools_is_local(self):
        endpoint = FakeEndpoint()
        bridge, mirror, _, _ = _bridge(endpoint)
        mirror.replace(CapabilitySnapshot(generation=1, tools=(_tool("a"),)))

        result = await bridge.list_tools(types.ListToolsRequest(method="tools/list"))
        assert [t.name for t in result.root.tools] == ["a", "restart_server"]
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_list_tools_without_child(self):
        bridge, _, _, _ = _bridge(None)
        result = await bridge.list_tools(types.ListToolsRequest(method="tools/list"))
        assert [t.name for t in result.root.tools] == ["restart_server"]

    @pytest.mark.asyncio
    async def test_call_tool_is_forwarded_unchanged(self):
        reply = types.CallToolResult(content=[types.TextContent(type="text", text="3")])
        endpoint = FakeEndpoint(result=reply)
        bridge, _, controller, _ = _bridge(endpoint)

        request = _call_request("add", {"a": 1, "b": 2})
        result = await bridge.call_tool(request)
        assert result.root is reply
        assert [r.model_dump() for r in endpoint.requests] == [request.model_dump()]
        assert controller.calls == []

    @pytest.mark.asyncio
    async def test_wire_envelope_is_not_forwarded(self):
        endpoint = FakeEndpoint(result=types.CallToolResult(content=[]))
        bridge, _, _, _ = _bridge(endpoint)
        request = types.CallToolRequest.model_validate({
            "jsonrpc": "2.0",
            "id": 7,
            "method": "tools/call",
            "params": {"name": "add", "arguments": {"a": 1}, "_meta": {"progressToken": "tok-1"}},
        })

        await bridge.call_tool(request)
        forwarded = endpoint.requests[0].model_dump(by_alias=True, mode="json", exclude_none=True)
        assert "jsonrpc" not in forwarded
        assert "id" not in forwarded
        assert forwarded["method"] == "tools/call"
        assert forwarded["params"]["name"] == "add"
        assert forwarded["params"]["arguments"] == {"a": 1}
        assert forwarded["params"]["_meta"]["progressToken"] == "tok-1"
        # what ClientSession.send_request builds from it
        types.JSONRPCRequest(jsonrpc="2.0", id=1, **forwarded)

    @pytest.mark.asyncio
    async def test_forwarded_prompt_request_keeps_arguments(self):
        reply = types.GetPromptResult(messages=[])
        endpoint = FakeEndpoint(result=reply)
        bridge, _, _, _ = _bridge(endpoint)
        request = types.GetPromptRequest.model_validate({
            "jsonrpc": "2.0",
            "id": "abc",
            "method": "prompts/get",
            "params": {"name": "echo", "arguments": {"text": "hi"}},
        })

        result = await bridge.handle_request(request, types.GetPromptResult)
        assert result.root is reply
        forwarded = endpoint.requests[0]
        assert isinstance(forwarded, types.GetPromptRequest)
        assert forwarded.params.arguments == {"text": "hi"}

    @pytest.mark.asyncio
    async def test_restart_tool_is_handled_by_controller(self):
        endpoint = FakeEndpoint()
        bridge, _, controller, _ = _bridge(endpoint)

        result = await bridge.call_tool(_call_request("restart_server", {"force": True}))
        assert result.root.content[0].text == "restarted"
        assert controller.calls == [{"force": True}]
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_restart_tool_without_arguments(self):
        bridge, _, controller, _ = _bridge(None)
        await bridge.call_tool(_call_request("restart_server"))
        assert controller.calls == [{}]

    @pytest.mark.asyncio
    async def test_child_errors_pass_through(self):
        error = McpError(types.ErrorData(code=-32602, message="bad params"))
        bridge, _, _, _ = _bridge(FakeEndpoint(error=error))
        with pytest.raises(McpError) as exc_info:
            await bridge.call_tool(_call_request("add"))
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_no_child_fails_with_child_unavailable(self):
        bridge, _, _, _ = _bridge(None)
        with pytest.raises(ChildUnavailable) as exc_info:
            await bridge.call_tool(_call_request("add"))
        assert exc_info.value.error.code == types.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_ping_is_local(self):
        bridge, _, _, _ = _bridge(None)
        result = await bridge.ping(types.PingRequest(method="ping"))
        assert isinstance(result.root, types.EmptyResult)

    @pytest.mark.asyncio
    async def test_list_forwarder_degrades_on_method_not_found(self):
        error = McpError(types.ErrorData(code=types.METHOD_NOT_FOUND, message="Method not found"))
        bridge, _, _, _ = _bridge(FakeEndpoint(error=error))
        handler = bridge._list_forwarder(types.ListPromptsResult, lambda: types.ListPromptsResult(prompts=[]))

        result = await handler(types.ListPromptsRequest(method="prompts/list"))
        assert result.root.prompts == []

    @pytest.mark.asyncio
    async def test_list_forwarder_keeps_child_unavailable(self):
        bridge, _, _, _ = _bridge(None)
        handler = bridge._list_forwarder(types.ListPromptsResult, lambda: types.ListPromptsResult(prompts=[]))
        with pytest.raises(ChildUnavailable):
            await handler(types.ListPromptsRequest(method="prompts/list"))

    @pytest.mark.asyncio
    async def test_upstream_notifications_reach_child(self):
        endpoint = FakeEndpoint()
        bridge, _, _, _ = _bridge(endpoint)
        notification = types.RootsListChangedNotification(method="notifications/roots/list_changed")

        await bridge.relay_upstream_notification(notification)
        assert endpoint.notifications == [notification]

    @pytest.mark.asyncio
    async def test_upstream_notifications_dropped_without_child(self):
        bridge, _, _, _ = _bridge(None)
        notification = types.RootsListChangedNotification(method="notifications/roots/list_changed")
        await bridge.relay_upstream_notification(notification)


# ── Child -> upstream ───────────────────────────────────────

class TestChildMessages:
    @pytest.mark.asyncio
    async def test_notifications_are_relayed(self):
        endpoint = FakeEndpoint()
        bridge, _, _, upstream = _bridge(endpoint)
        session = FakeServerSession()
        upstream.attach(session)

        message = types.ServerNotification(types.LoggingMessageNotification(
            method="notifications/message",
            params=types.LoggingMessageNotificationParams(level="info", data="hello"),
        ))
        await bridge.relay_child_message(endpoint, message)
        assert session.notifications == ["notifications/message"]

    @pytest.mark.asyncio
    async def test_tool_list_changed_refreshes_mirror_first(self, wait_until):
        endpoint = FakeEndpoint(result=types.ListToolsResult(tools=[_tool("fresh")]))
        bridge, mirror, _, upstream = _bridge(endpoint)
        mirror.replace(CapabilitySnapshot(generation=1, tools=(_tool("stale"),)))
        session = FakeServerSession()
        upstream.attach(session)

        message = types.ServerNotification(
            types.ToolListChangedNotification(method="notifications/tools/list_changed")
        )
        await bridge.relay_child_message(endpoint, message)
        await wait_until(lambda: session.notifications)

        assert mirror.snapshot.tool_names == ["fresh"]
        assert session.notifications == ["notifications/tools/list_changed"]
        await bridge.close()

    @pytest.mark.asyncio
    async def test_invalid_messages_are_logged(self, caplog):
        bridge, _, _, upstream = _bridge(FakeEndpoint())
        session = FakeServerSession()
        upstream.attach(session)

        await bridge.relay_child_message(FakeEndpoint(), ValueError("garbage"))
        assert session.notifications == []
        assert "invalid message" in caplog.text

    @pytest.mark.asyncio
    async def test_notifications_dropped_without_upstream(self):
        endpoint = FakeEndpoint()
        bridge, _, _, upstream = _bridge(endpoint)
        message = types.ServerNotification(types.ResourceListChangedNotification(
            method="notifications/resources/list_changed",
        ))
        await bridge.relay_child_message(endpoint, message)
        assert not upstream.connected

    @pytest.mark.asyncio
    async def test_sampling_is_relayed_upstream(self):
        bridge, _, _, upstream = _bridge(FakeEndpoint())
        session = FakeServerSession()
        session.reply = types.CreateMessageResult(
            role="assistant",
            content=types.TextContent(type="text", text="hi"),
            model="test-model",
        )
        upstream.attach(session)

        params = types.CreateMessageRequestParams(messages=[], maxTokens=10)
        result = await bridge.relay_sampling(None, params)
        assert result is session.reply
        assert session.requests == ["sampling/createMessage"]

    @pytest.mark.asyncio
    async def test_sampling_without_upstream_returns_error(self):
        bridge, _, _, _ = _bridge(FakeEndpoint())
        params = types.CreateMessageRequestParams(messages=[], maxTokens=10)
        result = await bridge.relay_sampling(None, params)
        assert isinstance(result, types.ErrorData)

    @pytest.mark.asyncio
    async def test_list_roots_error_is_returned(self):
        bridge, _, _, upstream = _bridge(FakeEndpoint())
        session = FakeServerSession()
        session.reply = McpError(types.ErrorData(code=types.METHOD_NOT_FOUND, message="no roots"))
        upstream.attach(session)

        result = await bridge.relay_list_roots(None)
        assert isinstance(result, types.ErrorData)
        assert result.message == "no roots"


class TestUpstreamLink:
    @pytest.mark.asyncio
    async def test_list_changed_sends_each_notification_once(self):
        upstream = UpstreamLink()
        session = FakeServerSession()
        upstream.attach(session)

        await upstream.notify_list_changed()
        assert session.notifications == [
            "notifications/tools/list_changed",
            "notifications/prompts/list_changed",
            "notifications/resources/list_changed",
        ]

    @pytest.mark.asyncio
    async def test_notify_without_session(self):
        upstream = UpstreamLink()
        message = types.ServerNotification(
            types.ToolListChangedNotification(method="notifications/tools/list_changed")
        )
        assert await upstream.notify(message) is False

    @pytest.mark.asyncio
    async def test_concurrent_notifications_keep_order(self):
        upstream = UpstreamLink()
        session = FakeServerSession()
        upstream.attach(session)

        await asyncio.gather(*(upstream.notify_list_changed() for _ in range(3)))
        assert len(session.notifications) == 9

    @pytest.mark.asyncio
    async def test_notify_before_session_uses_stream(self):
        upstream = UpstreamLink()
        send, receive = anyio.create_memory_object_stream(10)
        upstream.attach_stream(send)

        assert upstream.connected
        await upstream.notify_list_changed()
        methods = [receive.receive_nowait().message.root.method for _ in range(3)]
        assert methods == [
            "notifications/tools/list_changed",
            "notifications/prompts/list_changed",
            "notifications/resources/list_changed",
        ]

    @pytest.mark.asyncio
    async def test_captured_session_takes_over_from_stream(self):
        upstream = UpstreamLink()
        send, receive = anyio.create_memory_object_stream(10)
        upstream.attach_stream(send)
        session = FakeServerSession()
        upstream.attach(session)

        await upstream.notify(types.ServerNotification(
            types.ToolListChangedNotification(method="notifications/tools/list_changed")
        ))
        assert session.notifications == ["notifications/tools/list_changed"]
        assert receive.statistics().current_buffer_used == 0

    def test_new_stream_drops_old_session(self):
        upstream = UpstreamLink()
        upstream.attach(FakeServerSession())
        send, _ = anyio.create_memory_object_stream(1)
        upstream.attach_stream(send)
        assert upstream.session is None
        assert upstream.stream is send
