"""
mcpreloader command line.

Usage:
    # Run the proxy (what an MCP client launches)
    mcpreloader -- python my_server.py
    mcpreloader proxy --max-restarts 5 --log-level debug -- node build/index.js

    # With a config file
    mcpreloader proxy --config reloader.yaml

    # One-shot inspection, prints JSON
    mcpreloader inspect list-tools -- python my_server.py
    mcpreloader inspect call-tool add --params '{"a": 1, "b": 2}' -- python my_server.py

    # Version and environment
    mcpreloader info --verbose

Environment variables (MCPDEV_PROXY_ prefix):
    LOG_LEVEL, LOG_FILE, RESTART_LIMIT, AUTO_RESTART, RESTART_DELAY,
    TIMEOUT, CWD, DEBUG_MODE
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import platform
import sys

from . import __version__
from .config import ENV_PREFIX, LOG_LEVELS, MAX_RESTARTS_LIMIT, environment_overrides, load_config
from .errors import ProxyError
from .inspector import DEFAULT_TIMEOUT, OPERATIONS, inspect_server
from .proxy import ReloadingProxy

logger = logging.getLogger(__name__)

SUBCOMMANDS = ("proxy", "inspect", "info")
LOG_FORMAT = "%(levelname)s: %(name)s: %(message)s"

NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")


# ── Logging ─────────────────────────────────────────────────

def configure_logging(
    level: str = "info",
    log_file: str | None = None,
    quiet: bool = False,
    debug: bool = False,
) -> None:
    """
    Send proxy logs to stderr (and optionally a file).

    stdout carries the MCP protocol and must never receive log output.
    """
    if debug:
        numeric = logging.DEBUG
    elif level == "notice":
        numeric = NOTICE
    else:
        numeric = getattr(logging, level.upper(), logging.INFO)
    if quiet and numeric < logging.WARNING:
        numeric = logging.WARNING

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=numeric, format=LOG_FORMAT, handlers=handlers, force=True)

    logging.getLogger("mcpreloader.child").disabled = quiet


# ── Argument parsing ────────────────────────────────────────

def split_child_command(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split argv at the first '--' into (own arguments, child command)."""
    if "--" not in argv:
        return list(argv), []
    index = argv.index("--")
    return list(argv[:index]), list(argv[index + 1:])


def normalize_argv(argv: list[str]) -> list[str]:
    """
    Make the proxy subcommand implicit.

    `mcpreloader -- cmd` and `mcpreloader --max-restarts 2 -- cmd` both
    mean `mcpreloader proxy ...`. Help and version flags are left alone.
    """
    own, child = split_child_command(argv)
    if own and own[0] in SUBCOMMANDS:
        return list(argv)
    if any(flag in own for flag in ("-h", "--help", "-V", "--version")):
        return list(argv)
    if child or not own or own[0].startswith("-"):
        return ["proxy", *argv]
    return list(argv)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcpreloader",
        description="Hot-reload proxy for MCP server development",
        epilog="Child command goes after '--', e.g. mcpreloader -- python server.py",
    )
    parser.add_argument("-V", "--version", action="version", version=f"mcpreloader {__version__}")
    commands = parser.add_subparsers(dest="command")

    proxy = commands.add_parser("proxy", help="Run the hot-reload proxy (default)")
    proxy.add_argument("-c", "--config", help="YAML config file")
    proxy.add_argument("-w", "--working-dir", help="Working directory for the child process")
    proxy.add_argument("-l", "--log-level", choices=LOG_LEVELS, help="Log level (default: info)")
    proxy.add_argument("--log-file", help="Also write logs to this file")
    proxy.add_argument(
        "-m", "--max-restarts", type=int,
        help=f"Automatic restart attempts before giving up (0-{MAX_RESTARTS_LIMIT}, default: 3)",
    )
    proxy.add_argument("-d", "--restart-delay", type=int, help="Delay before an automatic restart in ms (default: 1000)")
    proxy.add_argument("-t", "--restart-timeout", type=int, help="Timeout for one (re)start in ms (default: 30000)")
    proxy.add_argument(
        "--no-auto-restart", dest="auto_restart", action="store_false", default=None,
        help="Do not restart the child after a crash",
    )
    proxy.add_argument("-q", "--quiet", action="store_true", default=None, help="Only log warnings and errors")
    proxy.add_argument("--debug", action="store_true", default=None, help="Debug logging")

    inspect = commands.add_parser("inspect", help="Inspect an MCP server and print JSON")
    operations = inspect.add_subparsers(dest="operation", required=True)
    for name in OPERATIONS:
        op = operations.add_parser(name)
        if name in ("call-tool", "get-prompt"):
            op.add_argument("name", help="Tool or prompt name")
        if name == "read-resource":
            op.add_argument("uri", help="Resource URI")
        if name == "call-tool":
            op.add_argument("-p", "--params", help="Tool arguments as a JSON object")
        if name == "get-prompt":
            op.add_argument("-a", "--args", dest="params", help="Prompt arguments as a JSON object")
        op.add_argument("-w", "--working-dir", help="Working directory for the child process")
        op.add_argument(
            "-t", "--timeout", type=int, default=int(DEFAULT_TIMEOUT * 1000),
            help="Operation timeout in ms (default: 30000)",
        )
        op.add_argument("-q", "--quiet", action="store_true", help="Hide the child's stderr")

    info = commands.add_parser("info", help="Show version and configuration")
    info.add_argument("-v", "--verbose", action="store_true", help="Also list MCP-related environment variables")

    return parser


# ── Commands ────────────────────────────────────────────────

def run_proxy(args: argparse.Namespace, child_argv: list[str]) -> int:
    overrides = {
        "working_dir": args.working_dir,
        "log_level": args.log_level,
        "log_file": args.log_file,
        "max_restarts": args.max_restarts,
        "restart_delay_ms": args.restart_delay,
        "restart_timeout_ms": args.restart_timeout,
        "auto_restart": args.auto_restart,
        "quiet": args.quiet,
        "debug": args.debug,
    }
    try:
        config = load_config(child_argv, config_file=args.config, overrides=overrides)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    configure_logging(config.log_level, config.log_file, quiet=config.quiet, debug=config.debug)
    try:
        asyncio.run(ReloadingProxy(config).run())
    except KeyboardInterrupt:
        return 130
    except (ProxyError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def run_inspect(args: argparse.Namespace, child_argv: list[str]) -> int:
    configure_logging("warning", quiet=args.quiet)
    try:
        options = {}
        if getattr(args, "name", None) is not None:
            options["name"] = args.name
        if getattr(args, "uri", None) is not None:
            options["uri"] = args.uri
        if getattr(args, "params", None):
            options["arguments"] = _parse_json_object(args.params)

        result = asyncio.run(inspect_server(
            args.operation,
            child_argv,
            working_dir=args.working_dir,
            timeout=args.timeout / 1000,
            quiet=args.quiet,
            **options,
        ))
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(json.dumps({"error": str(e) or type(e).__name__}, indent=2), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


def run_info(args: argparse.Namespace) -> int:
    print(f"mcpreloader v{__version__}")
    print()
    print("System Information:")
    print(f"  Python Version: {platform.python_version()}")
    print(f"  Platform: {sys.platform}")
    print(f"  Architecture: {platform.machine()}")
    print(f"  Working Directory: {os.getcwd()}")
    print()

    try:
        env_config = environment_overrides()
    except ValueError as e:
        env_config = {}
        print(f"Invalid environment configuration: {e}")
    if env_config:
        print("Environment Configuration:")
        for key, value in env_config.items():
            print(f"  {key}: {json.dumps(value)}")
        print()

    if args.verbose:
        print("MCP-related Environment Variables:")
        for key, value in sorted(os.environ.items()):
            if key.startswith("MCP") or key.startswith(ENV_PREFIX):
                print(f"  {key}={value}")
    return 0


def _parse_json_object(text: str) -> dict:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON arguments: {e}") from None
    if not isinstance(value, dict):
        raise ValueError("Arguments must be a JSON object")
    return value


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    own, child_argv = split_child_command(normalize_argv(argv))
    parser = build_parser()
    args = parser.parse_args(own)

    if args.command is None:
        parser.print_help(sys.stderr)
        return 1

    if args.command == "inspect":
        return run_inspect(args, child_argv)
    if args.command == "info":
        return run_info(args)
    return run_proxy(args, child_argv)


if __name__ == "__main__":
    sys.exit(main())
