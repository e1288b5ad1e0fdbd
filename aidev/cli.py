# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""``ai-dev`` command-line entry point.

Usage::

    ai-dev [OPTIONS] [DIRECTORY]

Each unique workspace path gets its own container and shell history.
Config/auth volumes are shared across all containers.  Running the
command again for the same directory attaches to the existing container.

Exit codes: 0 on success (the process is replaced by the interactive
session), 1 on a fatal error, 2 on invalid usage.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from aidev import management
from aidev.config import SHELLS, ConfigError, LauncherConfig
from aidev.identity import (
    WorkspaceError,
    derive_container_name,
    resolve_workspace,
)
from aidev.image import ImageBuildError, ImageVersions, ToolSelection
from aidev.lifecycle import (
    ContainerLifecycleManager,
    LaunchRequest,
    LaunchTool,
    UsageError,
    check_launch_tool,
)
from aidev.logging import configure_logging
from aidev.runtime import (
    ContainerCommandError,
    ContainerRuntime,
    RuntimeUnavailableError,
)


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2

_EPILOG = """\
examples:
  ai-dev                                # both tools, current directory
  ai-dev ~/work/api                     # container ai-dev-...-work-api
  ai-dev --claude-only .                # Claude Code only
  ai-dev --copilot-only ~/src/project   # Copilot CLI only
  ai-dev --launch copilot .             # both tools, auto-launch copilot
  ai-dev --list                         # show all ai-dev containers
  ai-dev --rm-all                       # stop and remove everything
"""


# ── Terminal colors ─────────────────────────────────────────────────


def _use_color(stream: object = None) -> bool:
    """Return True when *stream* is a TTY and color is not disabled.

    ``NO_COLOR`` (any value) and ``TERM=dumb`` disable color.
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("TERM") == "dumb":
        return False
    stream = stream or sys.stdout
    return bool(getattr(stream, "isatty", lambda: False)())


class _Style:
    """ANSI escape helpers.  All methods return plain text when color is off."""

    def __init__(self, color: bool) -> None:
        self._on = color

    def _wrap(self, code: str, text: str) -> str:
        if not self._on:
            return text
        return f"\033[{code}m{text}\033[0m"

    def bold(self, text: str) -> str:
        return self._wrap("1", text)

    def red(self, text: str) -> str:
        return self._wrap("31", text)

    def dim(self, text: str) -> str:
        return self._wrap("2", text)


def _error(message: str) -> None:
    style = _Style(_use_color(sys.stderr))
    print(f"{style.red('ERROR:')} {message}", file=sys.stderr)


# ── Argument parsing ────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="ai-dev",
        description=(
            "Build and run a development container with Claude Code "
            "and/or GitHub Copilot CLI, with an optional egress firewall."
        ),
        epilog=_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "directory",
        nargs="?",
        default=None,
        metavar="DIRECTORY",
        help="Path to mount as /workspace (default: current directory)",
    )

    tools = parser.add_argument_group(
        "tool selection (both installed by default)"
    ).add_mutually_exclusive_group()
    tools.add_argument(
        "--claude-only", action="store_true", help="Install only Claude Code"
    )
    tools.add_argument(
        "--copilot-only",
        action="store_true",
        help="Install only GitHub Copilot CLI",
    )

    options = parser.add_argument_group("options")
    options.add_argument(
        "--name",
        default=None,
        help="Container name (default: ai-dev-<path-slug>)",
    )
    options.add_argument(
        "--no-firewall", action="store_true", help="Skip firewall setup"
    )
    options.add_argument(
        "--rebuild", action="store_true", help="Force rebuild of the image"
    )
    options.add_argument(
        "--claude-version", metavar="V", help="Claude Code npm version"
    )
    options.add_argument(
        "--copilot-version", metavar="V", help="Copilot CLI npm version"
    )
    options.add_argument(
        "--delta-version", metavar="V", help="git-delta version"
    )
    options.add_argument(
        "--zsh-version", metavar="V", help="zsh-in-docker version"
    )
    options.add_argument(
        "--shell", choices=SHELLS, default=None, help="Shell to launch"
    )
    options.add_argument(
        "-dsp",
        "--dangerously-skip-permissions",
        dest="skip_permissions",
        action="store_true",
        help=(
            "Auto-launch with reduced confirmation (claude: "
            "--dangerously-skip-permissions, copilot: --allow-all-tools "
            "--allow-all-paths)"
        ),
    )
    options.add_argument(
        "-l",
        "--launch",
        choices=[t.value for t in LaunchTool],
        default=None,
        help="Auto-launch a tool on attach",
    )
    options.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Config file (default: ~/.config/ai-dev/ai-dev.yaml)",
    )
    options.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )

    manage = parser.add_argument_group(
        "management"
    ).add_mutually_exclusive_group()
    manage.add_argument(
        "--list",
        action="store_true",
        help="List all ai-dev containers and their status",
    )
    manage.add_argument(
        "--stop-all",
        action="store_true",
        help="Stop all running ai-dev containers",
    )
    manage.add_argument(
        "--rm-all",
        action="store_true",
        help="Stop and remove all ai-dev containers",
    )
    return parser


def _apply_overrides(
    config: LauncherConfig, args: argparse.Namespace
) -> LauncherConfig:
    """Layer command-line flags over the loaded config."""
    base = config.versions
    versions = ImageVersions(
        claude_code=args.claude_version or base.claude_code,
        copilot=args.copilot_version or base.copilot,
        git_delta=args.delta_version or base.git_delta,
        zsh_in_docker=args.zsh_version or base.zsh_in_docker,
    )
    return config.with_overrides(shell=args.shell, versions=versions)


# ── Output ──────────────────────────────────────────────────────────


def _print_banner(
    request: LaunchRequest, config: LauncherConfig, style: _Style
) -> None:
    rule = "═" * 62
    print(style.bold(rule))
    print(style.bold("  AI Dev Container"))
    print(style.bold(rule))
    print()
    print(f"  Tools:        {request.selection.label}")
    print(f"  Workspace:    {request.workspace}")
    print(f"  Container:    {request.container_name}")
    print(f"  Firewall:     {'enabled' if request.firewall else 'disabled'}")
    print(f"  Timezone:     {config.timezone}")
    print(f"  Runtime:      {config.container_command}")
    print()


def _print_attach_message(
    request: LaunchRequest, runtime: ContainerRuntime, style: _Style
) -> None:
    selection = request.selection
    name = request.container_name
    print()
    print(style.dim("═" * 62))
    print(f"  Container ready. Dropping into {request.shell}...")
    print("  Workspace mounted at /workspace")
    print()
    if selection.claude:
        print("  Run 'claude'  to start Claude Code.")
    if selection.copilot:
        print("  Run 'copilot' to start GitHub Copilot CLI.")
    if request.launch is not None:
        command = request.launch.command(request.skip_permissions)
        print(f"  (auto-launching: {command})")
    print()
    print("  Type 'exit' to detach (container keeps running).")
    print(f"  '{runtime.command} stop {name}' to stop.")
    print(f"  '{runtime.command} rm {name}' to remove.")
    print(style.dim("═" * 62))
    print()


# ── Entry points ────────────────────────────────────────────────────


def _run_management(
    args: argparse.Namespace, runtime: ContainerRuntime
) -> int:
    runtime.check_available()
    if args.list:
        return management.list_containers(runtime)
    if args.stop_all:
        return management.stop_all(runtime)
    return management.remove_all(runtime)


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments. If None, uses sys.argv[1:].

    Returns:
        Exit code. On success the process is replaced by the interactive
        session and this function does not return.
    """
    args = build_parser().parse_args(argv)
    configure_logging(debug=args.debug)

    try:
        config = _apply_overrides(LauncherConfig.from_yaml(args.config), args)
    except ConfigError as e:
        _error(f"Configuration error: {e}")
        return EXIT_ERROR

    runtime = ContainerRuntime(config.container_command)

    if args.list or args.stop_all or args.rm_all:
        try:
            return _run_management(args, runtime)
        except (RuntimeUnavailableError, ContainerCommandError) as e:
            _error(str(e))
            return EXIT_ERROR

    selection = ToolSelection(
        claude=not args.copilot_only, copilot=not args.claude_only
    )
    launch = LaunchTool(args.launch) if args.launch else None
    try:
        check_launch_tool(launch, selection)
    except UsageError as e:
        _error(str(e))
        return EXIT_USAGE

    try:
        runtime.check_available()
        workspace = resolve_workspace(args.directory)
    except (RuntimeUnavailableError, WorkspaceError) as e:
        _error(str(e))
        return EXIT_ERROR

    request = LaunchRequest(
        workspace=workspace,
        container_name=args.name or derive_container_name(workspace),
        selection=selection,
        firewall=config.firewall_enabled and not args.no_firewall,
        rebuild=args.rebuild,
        launch=launch,
        skip_permissions=args.skip_permissions,
        shell=config.shell,
    )

    style = _Style(_use_color())
    _print_banner(request, config, style)

    manager = ContainerLifecycleManager(runtime, config)
    try:
        manager.prepare(request)
    except (ImageBuildError, ContainerCommandError) as e:
        _error(str(e))
        return EXIT_ERROR

    _print_attach_message(request, runtime, style)
    command = manager.attach_command(request)
    logger.debug("Attaching: %s", " ".join(command))
    os.execvp(command[0], command)
    return EXIT_OK  # Unreachable - os.execvp replaces process


def cli() -> None:
    """Console script entry point for ``ai-dev``."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
