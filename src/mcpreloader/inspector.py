"""
One-shot inspection of an MCP server.

Launches the server, performs a single client operation and returns the
result as a JSON-ready dict. Backs the `mcpreloader inspect` commands.

Usage:
    result = await inspect_server(
        "call-tool", ["python", "server.py"], name="add", arguments={"a": 1, "b": 2},
    )
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any, Awaitable, Callable

from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from pydantic import AnyUrl

from . import __version__

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

Operation = Callable[[ClientSession, types.InitializeResult, dict[str, Any]], Awaitable[Any]]


def _dump(result: Any) -> dict[str, Any]:
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Operations ──────────────────────────────────────────────

async def _server_info(session: ClientSession, init: types.InitializeResult, options: dict) -> Any:
    return _dump(init)


async def _list_tools(session: ClientSession, init: types.InitializeResult, options: dict) -> Any:
    return _dump(await session.list_tools())


async def _call_tool(session: ClientSession, init: types.InitializeResult, options: dict) -> Any:
    return _dump(await session.call_tool(options["name"], options.get("arguments") or {}))


async def _list_resources(session: ClientSession, init: types.InitializeResult, options: dict) -> Any:
    return _dump(await session.list_resources())


async def _read_resource(session: ClientSession, init: types.InitializeResult, options: dict) -> Any:
    return _dump(await session.read_resource(AnyUrl(options["uri"])))


async def _list_prompts(session: ClientSession, init: types.InitializeResult, options: dict) -> Any:
    return _dump(await session.list_prompts())


async def _get_prompt(session: ClientSession, init: types.InitializeResult, options: dict) -> Any:
    arguments = {k: str(v) for k, v in (options.get("arguments") or {}).items()}
    return _dump(await session.get_prompt(options["name"], arguments))


async def _ping(session: ClientSession, init: types.InitializeResult, options: dict) -> Any:
    await session.send_ping()
    return {"ok": True, "server": init.serverInfo.name}


OPERATIONS: dict[str, Operation] = {
    "server-info": _server_info,
    "list-tools": _list_tools,
    "call-tool": _call_tool,
    "list-resources": _list_resources,
    "read-resource": _read_resource,
    "list-prompts": _list_prompts,
    "get-prompt": _get_prompt,
    "ping": _ping,
}


# ── Entry point ─────────────────────────────────────────────

async def inspect_server(
    operation: str,
    child_argv: list[str],
    *,
    working_dir: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    quiet: bool = False,
    **options: Any,
) -> Any:
    """
    Run one inspection operation against a freshly started server.

    Raises ValueError for an unknown operation or an empty command, and
    TimeoutError when the whole exchange exceeds `timeout` seconds.
    Server errors propagate as McpError.
    """
    if operation not in OPERATIONS:
        raise ValueError(f"Unknown inspect operation '{operation}'. Available: {sorted(OPERATIONS)}")
    if not child_argv:
        raise ValueError("Child command is required. Example: mcpreloader inspect list-tools -- python server.py")

    params = StdioServerParameters(
        command=child_argv[0],
        args=list(child_argv[1:]),
        env=dict(os.environ),
        cwd=working_dir,
    )
    logger.debug(f"Inspecting '{' '.join(child_argv)}': {operation}")

    try:
        return await asyncio.wait_for(_run(OPERATIONS[operation], params, quiet, options), timeout)
    except asyncio.TimeoutError:
        raise TimeoutError(f"Operation timed out after {timeout:g}s") from None


async def _run(operation: Operation, params: StdioServerParameters, quiet: bool, options: dict) -> Any:
    with contextlib.ExitStack() as stack:
        errlog = stack.enter_context(open(os.devnull, "w")) if quiet else None
        client_kwargs = {"errlog": errlog} if errlog is not None else {}
        async with stdio_client(params, **client_kwargs) as (read_stream, write_stream):
            async with ClientSession(
                read_stream,
                write_stream,
                client_info=types.Implementation(name="mcpreloader-inspector", version=__version__),
            ) as session:
                init = await session.initialize()
                return await operation(session, init, options)
