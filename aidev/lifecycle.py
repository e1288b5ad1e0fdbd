# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Create-or-attach lifecycle for workspace containers.

Every invocation observes the named container fresh and acts on its
state:

- **RUNNING**: attach.  ``--rebuild`` refreshes the image only; the
  running container is not replaced.
- **STOPPED**: remove it, then continue as ABSENT.
- **ABSENT**: ensure image, ensure volumes, start a detached container,
  install the firewall (if enabled), attach.

The decision is read-then-act against the runtime's registry without
locking.  Two invocations racing on the same name can both see ABSENT;
the loser's ``run`` fails on the name conflict.

Firewall failures do not stop the launch: the container keeps running
without network restrictions and a warning is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from aidev.config import LauncherConfig
from aidev.identity import history_volume_name
from aidev.image import FIREWALL_SCRIPT_PATH, ToolSelection, ensure_image
from aidev.logging import SecretFilter
from aidev.runtime import ContainerRuntime, ContainerSpec, ContainerState


logger = logging.getLogger(__name__)

CONTAINER_USER = "node"
WORKSPACE_DIR = "/workspace"
HISTORY_DIR = "/commandhistory"
CLAUDE_CONFIG_DIR = "/home/node/.claude"
COPILOT_CONFIG_DIR = "/home/node/.copilot"

#: Shared across every workspace so credentials persist between projects.
CLAUDE_CONFIG_VOLUME = "ai-dev-shared-claude-config"
COPILOT_CONFIG_VOLUME = "ai-dev-shared-copilot-config"

#: Needed by iptables/ipset inside the container.
FIREWALL_CAPABILITIES = ("NET_ADMIN", "NET_RAW")


class UsageError(Exception):
    """Raised for an invalid combination of launch options."""


class LaunchTool(Enum):
    """Assistant started automatically on attach."""

    CLAUDE = "claude"
    COPILOT = "copilot"

    def command(self, skip_permissions: bool) -> str:
        """Return the shell command that starts the tool."""
        if not skip_permissions:
            return self.value
        if self is LaunchTool.CLAUDE:
            return "claude --dangerously-skip-permissions"
        return "copilot --allow-all-tools --allow-all-paths"


class FirewallStatus(Enum):
    """What happened to the egress firewall during a launch."""

    DISABLED = "disabled"
    INSTALLED = "installed"
    FAILED = "failed"
    # Attached to an already running container; left as it was.
    UNCHANGED = "unchanged"


def check_launch_tool(
    tool: LaunchTool | None, selection: ToolSelection
) -> None:
    """Reject auto-launching a tool the image will not contain.

    Raises:
        UsageError: If *tool* is not part of *selection*.
    """
    if tool is LaunchTool.CLAUDE and not selection.claude:
        raise UsageError(
            "--launch claude requires Claude Code (don't use --copilot-only)"
        )
    if tool is LaunchTool.COPILOT and not selection.copilot:
        raise UsageError(
            "--launch copilot requires Copilot CLI (don't use --claude-only)"
        )


@dataclass(frozen=True)
class LaunchRequest:
    """One invocation's resolved options.

    Attributes:
        workspace: Resolved workspace directory.
        container_name: Derived or explicit container name.
        selection: Tools to install.
        firewall: Install the egress firewall on a new container.
        rebuild: Force an image rebuild.
        launch: Tool to start on attach, or None for a shell.
        skip_permissions: Start the tool with reduced confirmation.
        shell: Shell used on attach.
    """

    workspace: Path
    container_name: str
    selection: ToolSelection = field(default_factory=ToolSelection)
    firewall: bool = True
    rebuild: bool = False
    launch: LaunchTool | None = None
    skip_permissions: bool = False
    shell: str = "zsh"

    def __post_init__(self) -> None:
        check_launch_tool(self.launch, self.selection)


@dataclass(frozen=True)
class LaunchResult:
    """Outcome of ``ContainerLifecycleManager.prepare()``."""

    container_name: str
    initial_state: ContainerState
    image: str | None
    firewall: FirewallStatus
    created_volumes: tuple[str, ...] = ()


class ContainerLifecycleManager:
    """Brings a workspace container to RUNNING.

    Args:
        runtime: Container runtime client.
        config: Launcher defaults (version pins, timezone, pass-through
            variables, extra firewall domains).
    """

    def __init__(self, runtime: ContainerRuntime, config: LauncherConfig):
        self._runtime = runtime
        self._config = config

    def prepare(self, request: LaunchRequest) -> LaunchResult:
        """Reconcile the container for *request* into the RUNNING state.

        Raises:
            ImageBuildError: If the image cannot be built.
            ContainerCommandError: If a runtime command fails.
        """
        name = request.container_name
        state = self._runtime.container_state(name)

        if state is ContainerState.RUNNING:
            logger.info("Container '%s' is already running. Attaching...", name)
            image = None
            if request.rebuild:
                image = self._ensure_image(request)
            return LaunchResult(
                container_name=name,
                initial_state=state,
                image=image,
                firewall=FirewallStatus.UNCHANGED,
            )

        if state is ContainerState.STOPPED:
            logger.info("Removing stopped container '%s'...", name)
            self._runtime.remove_container(name)

        image = self._ensure_image(request)
        created = self.ensure_volumes(name)

        logger.info("Starting container '%s'...", name)
        self._runtime.run_detached(self.container_spec(request, image))

        if request.firewall:
            firewall = self.init_firewall(name)
        else:
            logger.info("Firewall disabled, skipping.")
            firewall = FirewallStatus.DISABLED

        return LaunchResult(
            container_name=name,
            initial_state=state,
            image=image,
            firewall=firewall,
            created_volumes=created,
        )

    def _ensure_image(self, request: LaunchRequest) -> str:
        return ensure_image(
            self._runtime,
            request.selection,
            self._config.versions,
            self._config.timezone,
            force=request.rebuild,
        )

    def ensure_volumes(self, container_name: str) -> tuple[str, ...]:
        """Create any missing volume for *container_name*.

        Returns:
            Names of the volumes that were created.
        """
        created: list[str] = []
        for volume in (
            history_volume_name(container_name),
            CLAUDE_CONFIG_VOLUME,
            COPILOT_CONFIG_VOLUME,
        ):
            if not self._runtime.volume_exists(volume):
                self._runtime.create_volume(volume)
                logger.info("Created volume: %s", volume)
                created.append(volume)
        return tuple(created)

    def container_env(self) -> dict[str, str]:
        """Environment for a new container.

        Pass-through credentials are registered with ``SecretFilter``.
        """
        env = {
            "NODE_OPTIONS": "--max-old-space-size=4096",
            "CLAUDE_CONFIG_DIR": CLAUDE_CONFIG_DIR,
            "POWERLEVEL9K_DISABLE_GITSTATUS": "true",
            "TZ": self._config.timezone,
        }
        for key, value in self._config.passthrough_values().items():
            SecretFilter.register_secret(value)
            env[key] = value
        return env

    def container_spec(
        self, request: LaunchRequest, image: str
    ) -> ContainerSpec:
        """Describe the container to create for *request*."""
        name = request.container_name
        return ContainerSpec(
            name=name,
            image=image,
            user=CONTAINER_USER,
            workdir=WORKSPACE_DIR,
            binds=(
                (str(request.workspace), WORKSPACE_DIR, "delegated"),
                (history_volume_name(name), HISTORY_DIR, ""),
                (CLAUDE_CONFIG_VOLUME, CLAUDE_CONFIG_DIR, ""),
                (COPILOT_CONFIG_VOLUME, COPILOT_CONFIG_DIR, ""),
            ),
            env=self.container_env(),
            cap_add=FIREWALL_CAPABILITIES if request.firewall else (),
        )

    def init_firewall(self, container_name: str) -> FirewallStatus:
        """Run the firewall script as root inside the container."""
        logger.info("Initializing firewall...")
        status = self._runtime.exec_streaming(
            container_name,
            [FIREWALL_SCRIPT_PATH, *self._config.extra_domains],
            user="root",
        )
        if status != 0:
            logger.warning(
                "Firewall setup failed (exit status %d). "
                "Container running without network restrictions.",
                status,
            )
            return FirewallStatus.FAILED
        logger.info("Firewall initialized successfully.")
        return FirewallStatus.INSTALLED

    def attach_command(self, request: LaunchRequest) -> list[str]:
        """Command line that opens the interactive session."""
        command = [request.shell]
        if request.launch is not None:
            launch = request.launch.command(request.skip_permissions)
            command.extend(["-c", launch])
        return self._runtime.exec_args(
            request.container_name,
            command,
            user=CONTAINER_USER,
            workdir=WORKSPACE_DIR,
            interactive=True,
        )
