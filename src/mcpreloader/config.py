"""
Proxy configuration.

A ProxyConfig is built once at startup and never changes afterwards.
Sources are layered, lowest precedence first:

    defaults -> YAML file -> MCPDEV_PROXY_* environment -> CLI flags

Example config file (reloader.yaml):
    command: python
    args: [server.py, --port, "8080"]
    working_dir: ./my-server
    env:
      DEBUG: "1"
    auto_restart: true
    max_restarts: 3
    restart_delay_ms: 1000
    restart_timeout_ms: 30000
    log_level: info
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from .models import ChildCommand

logger = logging.getLogger(__name__)

ENV_PREFIX = "MCPDEV_PROXY_"
LOG_LEVELS = ("debug", "info", "notice", "warning", "error", "critical")
MAX_RESTARTS_LIMIT = 10

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


# ── ProxyConfig ─────────────────────────────────────────────

@dataclass(frozen=True)
class ProxyConfig:
    """
    Immutable, process-wide proxy settings.

    Fields:
        command: Executable of the child MCP server
        args: Arguments passed to the child
        env: Extra environment for the child (overlaid on the proxy's own)
        working_dir: Working directory for the child (None = inherit)
        auto_restart: Restart the child automatically when it crashes
        max_restarts: Automatic restart attempts before giving up (0-10)
        restart_delay_ms: Delay before an automatic restart
        restart_timeout_ms: Deadline for one (re)start, handshake included
        log_level: Operator log level
        log_file: Optional log file (stderr is always used)
        quiet: Hide child stderr and lower proxy verbosity
        debug: Force debug logging
    """
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    working_dir: str | None = None
    auto_restart: bool = True
    max_restarts: int = 3
    restart_delay_ms: int = 1000
    restart_timeout_ms: int = 30000
    log_level: str = "info"
    log_file: str | None = None
    quiet: bool = False
    debug: bool = False

    def __post_init__(self):
        if not self.command:
            raise ValueError("Proxy config requires a child 'command'")
        if not 0 <= self.max_restarts <= MAX_RESTARTS_LIMIT:
            raise ValueError(
                f"'max_restarts' must be between 0 and {MAX_RESTARTS_LIMIT}, got {self.max_restarts}"
            )
        if self.restart_delay_ms < 0:
            raise ValueError(f"'restart_delay_ms' must be >= 0, got {self.restart_delay_ms}")
        if self.restart_timeout_ms <= 0:
            raise ValueError(f"'restart_timeout_ms' must be > 0, got {self.restart_timeout_ms}")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"'log_level' must be one of {LOG_LEVELS}, got {self.log_level!r}")
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        object.__setattr__(self, "env", {str(k): str(v) for k, v in self.env.items()})

    @property
    def restart_delay(self) -> float:
        return self.restart_delay_ms / 1000

    @property
    def restart_timeout(self) -> float:
        return self.restart_timeout_ms / 1000

    def child_command(self) -> ChildCommand:
        return ChildCommand(
            command=self.command,
            args=self.args,
            env=dict(self.env),
            cwd=self.working_dir,
        )

    def server_name(self) -> str:
        """Fallback server name derived from the child command."""
        filename = re.split(r"[\\/]", self.command)[-1]
        name = re.sub(r"\.(js|ts|py|rb|go)$", "", filename)
        return name or "mcp-server"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProxyConfig:
        """Create a ProxyConfig from a plain dict, ignoring unknown keys with a warning."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {unknown}")

        if "command" not in data or not data["command"]:
            raise ValueError("Proxy config requires a 'command' field")

        values = {k: v for k, v in data.items() if k in known}
        if "args" in values:
            values["args"] = tuple(values["args"] or ())
        if "env" in values:
            values["env"] = dict(values["env"] or {})
        for key in ("auto_restart", "quiet", "debug"):
            if key in values:
                values[key] = _as_bool(key, values[key])
        for key in ("max_restarts", "restart_delay_ms", "restart_timeout_ms"):
            if key in values:
                values[key] = _as_int(key, values[key])
        if "log_level" in values:
            values["log_level"] = str(values["log_level"]).lower()
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides: Any) -> ProxyConfig:
        """Load a config file; keyword overrides win over file values."""
        return cls.from_dict({**read_config_file(path), **overrides})


# ── Loading helpers ─────────────────────────────────────────

def read_config_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML config file into a dict."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must be a YAML mapping, got {type(data).__name__}")
    return data


def environment_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """
    Collect MCPDEV_PROXY_* settings from the environment.

    Returns only the keys that are set, already converted to
    ProxyConfig field names and types.
    """
    environ = os.environ if environ is None else environ
    result: dict[str, Any] = {}

    def get(name: str) -> str | None:
        value = environ.get(ENV_PREFIX + name)
        return value if value not in (None, "") else None

    if (value := get("LOG_LEVEL")) is not None:
        result["log_level"] = value.lower()
    if (value := get("LOG_FILE")) is not None:
        result["log_file"] = value
    if (value := get("RESTART_LIMIT")) is not None:
        result["max_restarts"] = _as_int("MCPDEV_PROXY_RESTART_LIMIT", value)
    if (value := get("AUTO_RESTART")) is not None:
        result["auto_restart"] = _as_bool("MCPDEV_PROXY_AUTO_RESTART", value)
    if (value := get("RESTART_DELAY")) is not None:
        result["restart_delay_ms"] = _as_int("MCPDEV_PROXY_RESTART_DELAY", value)
    if (value := get("TIMEOUT")) is not None:
        result["restart_timeout_ms"] = _as_int("MCPDEV_PROXY_TIMEOUT", value)
    if (value := get("CWD")) is not None:
        result["working_dir"] = value
    if (value := get("DEBUG_MODE")) is not None:
        result["debug"] = _as_bool("MCPDEV_PROXY_DEBUG_MODE", value)
    return result


def load_config(
    child_argv: list[str] | None = None,
    *,
    config_file: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProxyConfig:
    """
    Build the effective ProxyConfig.

    Args:
        child_argv: Child command and arguments from the command line; when
            given it replaces command/args from the config file.
        config_file: Optional YAML file.
        overrides: CLI flag values (None values are ignored).
        environ: Environment to read MCPDEV_PROXY_* from (default os.environ).
    """
    data: dict[str, Any] = {}
    if config_file:
        data.update(read_config_file(config_file))
    data.update(environment_overrides(environ))
    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})
    if child_argv:
        data["command"] = child_argv[0]
        data["args"] = list(child_argv[1:])

    if not data.get("command"):
        raise ValueError("Child MCP server command is required. Usage: mcpreloader -- <command> [args...]")
    return ProxyConfig.from_dict(data)


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"'{name}' must be a boolean, got {value!r}")


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'{name}' must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{name}' must be an integer, got {value!r}") from None
