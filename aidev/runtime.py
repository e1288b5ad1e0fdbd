# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Narrow wrapper around the container runtime command line.

Everything the launcher needs from docker (or podman) goes through
``ContainerRuntime``: image and container inspection, image builds,
detached runs, exec, stop/remove and volume management.  Nothing is
cached; every query hits the runtime so the launcher always acts on the
current state.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from aidev.logging import redact_command


logger = logging.getLogger(__name__)


class RuntimeUnavailableError(Exception):
    """Raised when the runtime binary is missing or its daemon is down."""


class ContainerCommandError(Exception):
    """Raised when a runtime command exits non-zero."""


class ContainerState(Enum):
    """Observed state of a named container."""

    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"


# Statuses ps lists as up; such containers are attached, not removed.
_LIVE_STATUSES = frozenset({"running", "paused", "restarting"})


@dataclass(frozen=True)
class ContainerInfo:
    """A row of ``ps`` output for management commands."""

    name: str
    status: str


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to create and start a long-running container.

    Attributes:
        name: Container name.
        image: Image tag to run.
        user: User the container runs as.
        workdir: Working directory inside the container.
        binds: ``(source, target, options)`` bind/volume mounts. Source is
            a host path or a named volume.
        env: Environment variables. Values are redacted in logs.
        cap_add: Extra Linux capabilities.
        command: Placeholder command keeping the container alive.
    """

    name: str
    image: str
    user: str = "node"
    workdir: str = "/workspace"
    binds: tuple[tuple[str, str, str], ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    cap_add: tuple[str, ...] = ()
    command: tuple[str, ...] = ("sleep", "infinity")


class ContainerRuntime:
    """Synchronous command-line client for docker or podman.

    Args:
        command: Runtime executable (``docker`` or ``podman``).
    """

    def __init__(self, command: str = "docker") -> None:
        self._cmd = command

    @property
    def command(self) -> str:
        """Runtime executable name."""
        return self._cmd

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run(
        self, args: Sequence[str], *, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self._cmd, *args]
        logger.debug("Running: %s", redact_command(cmd))
        try:
            return subprocess.run(
                cmd, check=check, capture_output=True, text=True
            )
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr.strip() if e.stderr else str(e)
            raise ContainerCommandError(
                f"{self._cmd} {args[0]} failed: {error_msg}"
            ) from e

    def _succeeds(self, args: Sequence[str]) -> bool:
        return self._run(args, check=False).returncode == 0

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def check_available(self) -> None:
        """Verify the runtime binary exists and its daemon responds.

        Raises:
            RuntimeUnavailableError: If either check fails.
        """
        if shutil.which(self._cmd) is None:
            raise RuntimeUnavailableError(
                f"{self._cmd} is not installed or not in PATH."
            )
        if not self._succeeds(["info"]):
            raise RuntimeUnavailableError(
                f"{self._cmd} daemon is not running."
            )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def image_exists(self, tag: str) -> bool:
        """Check if an image with *tag* exists locally."""
        return self._succeeds(["image", "inspect", tag])

    def build_image(
        self,
        context_dir: Path,
        tag: str,
        build_args: Mapping[str, str],
    ) -> None:
        """Build *tag* from *context_dir*.

        Build output streams to the terminal; builds take minutes and the
        user should see progress.

        Raises:
            ContainerCommandError: If the build exits non-zero.
        """
        cmd = [self._cmd, "build"]
        for key, value in build_args.items():
            cmd.extend(["--build-arg", f"{key}={value}"])
        cmd.extend(["-t", tag, str(context_dir)])
        logger.debug("Running: %s", " ".join(cmd))
        result = subprocess.run(cmd, check=False)
        if result.returncode != 0:
            raise ContainerCommandError(
                f"{self._cmd} build exited with status {result.returncode}"
            )

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def container_state(self, name: str) -> ContainerState:
        """Query the current state of container *name*."""
        result = self._run(
            ["container", "inspect", "--format", "{{.State.Status}}", name],
            check=False,
        )
        if result.returncode != 0:
            return ContainerState.ABSENT
        if result.stdout.strip() in _LIVE_STATUSES:
            return ContainerState.RUNNING
        return ContainerState.STOPPED

    def run_detached(self, spec: ContainerSpec) -> None:
        """Create and start a detached container from *spec*.

        Raises:
            ContainerCommandError: If the runtime rejects the container.
        """
        self._run(self.run_args(spec))

    @staticmethod
    def run_args(spec: ContainerSpec) -> list[str]:
        """Build the ``run`` argument list for *spec* (without the binary)."""
        args = [
            "run",
            "--detach",
            "--interactive",
            "--tty",
            "--name",
            spec.name,
            "--user",
            spec.user,
            "--workdir",
            spec.workdir,
        ]
        for source, target, options in spec.binds:
            volume = f"{source}:{target}"
            if options:
                volume = f"{volume}:{options}"
            args.extend(["--volume", volume])
        for key, value in spec.env.items():
            args.extend(["--env", f"{key}={value}"])
        for cap in spec.cap_add:
            args.append(f"--cap-add={cap}")
        args.append(spec.image)
        args.extend(spec.command)
        return args

    def exec_args(
        self,
        name: str,
        command: Sequence[str],
        *,
        user: str | None = None,
        workdir: str | None = None,
        interactive: bool = False,
    ) -> list[str]:
        """Build a full ``exec`` command line including the binary."""
        cmd = [self._cmd, "exec"]
        if interactive:
            cmd.append("-it")
        if user is not None:
            cmd.extend(["-u", user])
        if workdir is not None:
            cmd.extend(["-w", workdir])
        cmd.append(name)
        cmd.extend(command)
        return cmd

    def exec_streaming(
        self, name: str, command: Sequence[str], *, user: str | None = None
    ) -> int:
        """Run a one-shot command in *name*, streaming its output.

        Returns:
            The command's exit status.
        """
        cmd = self.exec_args(name, command, user=user)
        logger.debug("Running: %s", " ".join(cmd))
        return subprocess.run(cmd, check=False).returncode

    def stop_container(self, name: str) -> None:
        """Stop a running container.

        Raises:
            ContainerCommandError: If the runtime fails to stop it.
        """
        self._run(["stop", name])

    def remove_container(self, name: str, *, force: bool = False) -> None:
        """Remove a container.

        Raises:
            ContainerCommandError: If the runtime fails to remove it.
        """
        args = ["rm"]
        if force:
            args.append("-f")
        args.append(name)
        self._run(args)

    def list_containers(
        self, prefix: str, *, include_stopped: bool = False
    ) -> list[ContainerInfo]:
        """List containers whose name starts with *prefix*.

        The runtime's name filter is a substring/regex match, so the
        result is filtered again on the exact prefix.
        """
        args = ["ps"]
        if include_stopped:
            args.append("-a")
        args.extend(
            [
                "--filter",
                f"name=^{prefix}",
                "--format",
                "{{.Names}}\t{{.Status}}",
            ]
        )
        result = self._run(args)
        containers: list[ContainerInfo] = []
        for line in result.stdout.splitlines():
            name, _, status = line.strip().partition("\t")
            if name.startswith(prefix):
                containers.append(ContainerInfo(name=name, status=status))
        return containers

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def volume_exists(self, name: str) -> bool:
        """Check if a named volume exists."""
        return self._succeeds(["volume", "inspect", name])

    def create_volume(self, name: str) -> None:
        """Create a named volume.

        Raises:
            ContainerCommandError: If creation fails.
        """
        self._run(["volume", "create", name])
