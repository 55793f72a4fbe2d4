"""
Restart controller.

State machine around ChildSupervisor.start():

    idle -> in_progress -> idle | failed

Entered from the restart_server tool (manual) or from a crash of the
child (automatic). Only one restart runs at a time; a second request
while one is in progress is rejected with RestartConflict.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from mcp import types

from ..config import MAX_RESTARTS_LIMIT, ProxyConfig
from ..errors import RestartConflict
from ..models import CapabilitySnapshot, ChildExit, RestartState, RestartStatus
from .supervisor import ChildSupervisor

if TYPE_CHECKING:
    from .bridge import UpstreamLink

logger = logging.getLogger(__name__)

# Automatic restarts older than this no longer count against max_restarts
RESTART_WINDOW = 300.0


class RestartController:
    """
    Serialises restarts of the child server.

    Manual restarts clear the attempt history on success. Automatic
    restarts count against config.max_restarts within a rolling window;
    once the limit is reached the controller stays failed until a
    manual restart works.
    """

    def __init__(
        self,
        config: ProxyConfig,
        supervisor: ChildSupervisor,
        upstream: UpstreamLink,
        clock: Callable[[], float] = time.time,
        window: float = RESTART_WINDOW,
    ):
        self.config = config
        self.supervisor = supervisor
        self.upstream = upstream
        self._clock = clock
        self._window = window
        self._state = RestartState.IDLE
        self._history: collections.deque[float] = collections.deque(maxlen=MAX_RESTARTS_LIMIT)
        self._last_error: str | None = None
        self._scheduled: asyncio.Task | None = None
        self._closed = False

    @property
    def state(self) -> RestartState:
        return self._state

    @property
    def attempts(self) -> int:
        """Automatic restart attempts inside the current window."""
        cutoff = self._clock() - self._window
        return sum(1 for started in self._history if started > cutoff)

    def status(self) -> RestartStatus:
        return RestartStatus(
            state=self._state,
            attempts=self.attempts,
            history=tuple(self._history),
            last_error=self._last_error,
            generation=self.supervisor.generation,
        )

    async def restart(self, *, force: bool = False, manual: bool = True) -> CapabilitySnapshot:
        """
        Restart the child and notify the client that capabilities changed.

        Raises RestartConflict if a restart is already running; start
        failures (spawn, timeout, capability query) propagate.
        """
        if self._state is RestartState.IN_PROGRESS:
            raise RestartConflict("A restart is already in progress")

        if manual:
            self._cancel_scheduled()
        else:
            self._history.append(self._clock())

        self._state = RestartState.IN_PROGRESS
        kind = "Manual" if manual else "Automatic"
        logger.info(
            f"{kind} restart of child MCP server"
            + ("" if manual else f" (attempt {self.attempts}/{self.config.max_restarts})")
        )

        try:
            await self.supervisor.start(timeout=self.config.restart_timeout, force=force)
        except Exception as e:
            self._last_error = str(e)
            retries_left = not manual and self._can_retry()
            self._state = RestartState.IDLE if retries_left else RestartState.FAILED
            raise

        if manual:
            self._history.clear()
        self._last_error = None
        self._state = RestartState.IDLE

        await self.upstream.notify_list_changed()
        snapshot = self.supervisor.mirror.snapshot
        logger.info(f"{kind} restart complete: {snapshot.summary()}")
        return snapshot

    async def handle_tool_call(self, arguments: dict[str, Any]) -> types.CallToolResult:
        """Run the restart_server tool. Never raises."""
        force = arguments.get("force", False)
        if not isinstance(force, bool):
            return _text_result(f"Invalid 'force' argument: expected a boolean, got {force!r}", is_error=True)

        logger.info(f"Executing restart_server tool (force={force})")
        try:
            snapshot = await self.restart(force=force)
        except RestartConflict as e:
            logger.warning(f"restart_server rejected: {e}")
            return _text_result(f"Restart rejected: {e}", is_error=True)
        except Exception as e:
            logger.error(f"Failed to restart child server: {e}")
            return _text_result(f"Failed to restart child server: {e}", is_error=True)

        return _text_result(
            "Child MCP server restarted successfully. New capabilities have been loaded "
            f"({snapshot.summary()})."
        )

    def on_child_exit(self, exit_info: ChildExit) -> None:
        """Crash path from the supervisor."""
        if self._closed:
            return
        self._last_error = f"child exited with code {exit_info.returncode}"
        if exit_info.stderr_tail:
            logger.error("Last child stderr lines:\n" + "\n".join(exit_info.stderr_tail))

        if not self.config.auto_restart:
            self._state = RestartState.FAILED
            logger.error("Auto-restart is disabled; requests will fail until restart_server is called")
            return
        self._schedule()

    async def close(self) -> None:
        """Cancel any pending automatic restart."""
        self._closed = True
        task = self._cancel_scheduled()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ── Internals ──────────────────────────────────────────

    def _can_retry(self) -> bool:
        return self.config.auto_restart and self.attempts < self.config.max_restarts

    def _schedule(self) -> None:
        if not self._can_retry():
            self._state = RestartState.FAILED
            logger.error(
                f"Giving up on the child MCP server after {self.attempts} automatic restart attempts "
                f"within {self._window:g}s; "
                "call restart_server to try again"
            )
            return

        delay = self.config.restart_delay
        logger.warning(
            f"Scheduling automatic restart in {delay:g}s "
            f"(attempt {self.attempts + 1}/{self.config.max_restarts})"
        )
        self._scheduled = asyncio.get_running_loop().create_task(
            self._auto_restart(delay), name="auto-restart"
        )

    async def _auto_restart(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._scheduled = None
        if self._closed:
            return
        try:
            await self.restart(manual=False)
        except RestartConflict:
            logger.info("Automatic restart skipped: a restart is already in progress")
        except Exception as e:
            logger.error(f"Automatic restart failed: {e}")
            self._schedule()

    def _cancel_scheduled(self) -> asyncio.Task | None:
        task = self._scheduled
        self._scheduled = None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Cancelled pending automatic restart")
            return task
        return None


def _text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )
