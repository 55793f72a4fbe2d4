"""
Shared fixtures.

Child servers live in tests/fixtures/ and are launched with the current
interpreter, so the tests need nothing beyond the installed package.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import pytest
from mcp import ClientSession, types
from mcp.shared.memory import create_client_server_memory_streams

from mcpreloader import ProxyConfig, ReloadingProxy

FIXTURES = Path(__file__).parent / "fixtures"
ECHO_SERVER = FIXTURES / "echo_server.py"
TOOL_SERVER = FIXTURES / "tool_server.py"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Tests that use a real child server are integration tests."""
    for item in items:
        if {"echo_config", "tool_config"} & set(getattr(item, "fixturenames", ())):
            item.add_marker(pytest.mark.integration)


def _config(script: Path, env: dict[str, str] | None = None, **kwargs: Any) -> ProxyConfig:
    values: dict[str, Any] = {
        "command": sys.executable,
        "args": (str(script),),
        "env": env or {},
        "restart_delay_ms": 50,
        "restart_timeout_ms": 20000,
    }
    values.update(kwargs)
    return ProxyConfig(**values)


@pytest.fixture
def echo_config() -> Callable[..., ProxyConfig]:
    """Factory for configs that run the low-level echo server."""
    def factory(env: dict[str, str] | None = None, **kwargs: Any) -> ProxyConfig:
        return _config(ECHO_SERVER, env, **kwargs)
    return factory


@pytest.fixture
def tool_config() -> Callable[..., ProxyConfig]:
    """Factory for configs that run the FastMCP tool server."""
    def factory(env: dict[str, str] | None = None, **kwargs: Any) -> ProxyConfig:
        return _config(TOOL_SERVER, env, **kwargs)
    return factory


async def _wait_until(predicate: Callable[[], bool], timeout: float = 15.0, interval: float = 0.05) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return _wait_until


class NotificationLog:
    """Collects notifications the upstream client receives."""

    def __init__(self):
        self.methods: list[str] = []

    async def __call__(self, message: Any) -> None:
        if isinstance(message, types.ServerNotification):
            self.methods.append(message.root.method)

    def count(self, method: str) -> int:
        return self.methods.count(method)


@contextlib.asynccontextmanager
async def _proxy_client(proxy: ReloadingProxy, start: bool = True) -> AsyncIterator[tuple[ClientSession, NotificationLog]]:
    if start:
        await proxy.start()
    log = NotificationLog()
    try:
        async with create_client_server_memory_streams() as (client_streams, server_streams):
            serve = asyncio.create_task(proxy.serve(*server_streams))
            try:
                async with ClientSession(*client_streams, message_handler=log) as session:
                    await session.initialize()
                    yield session, log
            finally:
                serve.cancel()
                await asyncio.gather(serve, return_exceptions=True)
    finally:
        await proxy.shutdown()


@pytest.fixture
def proxy_client() -> Callable[..., Any]:
    """
    Connect an in-memory MCP client to a ReloadingProxy.

        async with proxy_client(ReloadingProxy(config)) as (session, notifications):
            ...
    """
    return _proxy_client
