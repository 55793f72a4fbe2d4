"""
Data models for mcpreloader.

Enums and dataclasses shared by the supervisor, mirror and restart controller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from mcp import types


# ── Enums ────────────────────────────────────────────────────

class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RestartState(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


# ── Capability snapshot ──────────────────────────────────────

@dataclass(frozen=True)
class CapabilitySnapshot:
    """
    Capabilities advertised by one child generation.

    Taken once per connect cycle and replaced wholesale; generation 0
    is the empty snapshot used while no child is connected.
    """
    generation: int = 0
    tools: tuple[types.Tool, ...] = ()
    prompts: tuple[types.Prompt, ...] = ()
    resources: tuple[types.Resource, ...] = ()
    resource_templates: tuple[types.ResourceTemplate, ...] = ()

    @property
    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]

    def summary(self) -> str:
        return (
            f"{len(self.tools)} tools, {len(self.prompts)} prompts, "
            f"{len(self.resources)} resources"
        )


EMPTY_SNAPSHOT = CapabilitySnapshot()


# ── Child command ────────────────────────────────────────

@dataclass(frozen=True)
class ChildCommand:
    """How to launch the child server."""
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def describe(self) -> str:
        return " ".join(self.argv)


# ── Restart bookkeeping ──────────────────────────────────────

@dataclass(frozen=True)
class RestartStatus:
    """Point-in-time view of the restart controller."""
    state: RestartState
    attempts: int = 0
    history: tuple[float, ...] = ()
    last_error: str | None = None
    generation: int = 0

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "history": list(self.history),
            "last_error": self.last_error,
            "generation": self.generation,
        }


@dataclass
class ChildExit:
    """Details of an unexpected child exit, handed to the restart controller."""
    generation: int
    returncode: int | None = None
    stderr_tail: list[str] = field(default_factory=list)
