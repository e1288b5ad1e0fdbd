# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for aidev/lifecycle.py -- the create-or-attach state machine."""

import logging
from pathlib import Path
from unittest.mock import MagicMock, call

import pytest

from aidev.config import LauncherConfig
from aidev.image import FIREWALL_SCRIPT_PATH, ToolSelection
from aidev.lifecycle import (
    CLAUDE_CONFIG_VOLUME,
    COPILOT_CONFIG_VOLUME,
    FIREWALL_CAPABILITIES,
    ContainerLifecycleManager,
    FirewallStatus,
    LaunchRequest,
    LaunchTool,
    UsageError,
    check_launch_tool,
)
from aidev.logging import SecretFilter
from aidev.runtime import ContainerCommandError, ContainerState


NAME = "ai-dev-home-u-proj"


def _request(**overrides: object) -> LaunchRequest:
    fields: dict[str, object] = {
        "workspace": Path("/home/u/proj"),
        "container_name": NAME,
    }
    fields.update(overrides)
    return LaunchRequest(**fields)  # type: ignore[arg-type]


def _manager(
    runtime: MagicMock, config: LauncherConfig | None = None
) -> ContainerLifecycleManager:
    return ContainerLifecycleManager(runtime, config or LauncherConfig())


class TestLaunchTool:
    """Tests for LaunchTool and check_launch_tool."""

    def test_commands(self) -> None:
        """Each tool has a plain and a reduced-confirmation command."""
        assert LaunchTool.CLAUDE.command(False) == "claude"
        assert LaunchTool.CLAUDE.command(True) == (
            "claude --dangerously-skip-permissions"
        )
        assert LaunchTool.COPILOT.command(False) == "copilot"
        assert LaunchTool.COPILOT.command(True) == (
            "copilot --allow-all-tools --allow-all-paths"
        )

    def test_launch_copilot_without_copilot(self) -> None:
        """Auto-launching a tool that is not installed is rejected."""
        with pytest.raises(UsageError, match="don't use --claude-only"):
            check_launch_tool(LaunchTool.COPILOT, ToolSelection(copilot=False))

    def test_launch_claude_without_claude(self) -> None:
        with pytest.raises(UsageError, match="don't use --copilot-only"):
            check_launch_tool(LaunchTool.CLAUDE, ToolSelection(claude=False))

    def test_valid_combinations(self) -> None:
        """Installed tools and no launch are accepted."""
        check_launch_tool(None, ToolSelection(claude=False))
        check_launch_tool(LaunchTool.CLAUDE, ToolSelection(copilot=False))
        check_launch_tool(LaunchTool.COPILOT, ToolSelection())

    def test_request_validates(self) -> None:
        """LaunchRequest refuses an impossible launch."""
        with pytest.raises(UsageError):
            _request(
                selection=ToolSelection(copilot=False),
                launch=LaunchTool.COPILOT,
            )


class TestPrepareAbsent:
    """A fresh workspace: build, volumes, run, firewall."""

    def test_creates_container(self, fake_runtime: MagicMock) -> None:
        """All creation steps run in order."""
        result = _manager(fake_runtime).prepare(_request())

        assert result.initial_state is ContainerState.ABSENT
        assert result.image == "ai-code-dev-both"
        assert result.firewall is FirewallStatus.INSTALLED
        fake_runtime.build_image.assert_called_once()
        fake_runtime.run_detached.assert_called_once()
        fake_runtime.remove_container.assert_not_called()

        method_names = [c[0] for c in fake_runtime.method_calls]
        assert method_names.index("build_image") < method_names.index(
            "run_detached"
        )
        assert method_names.index("run_detached") < method_names.index(
            "exec_streaming"
        )

    def test_creates_missing_volumes(self, fake_runtime: MagicMock) -> None:
        """History and shared config volumes are created when missing."""
        result = _manager(fake_runtime).prepare(_request())
        assert result.created_volumes == (
            f"{NAME}-bashhistory",
            CLAUDE_CONFIG_VOLUME,
            COPILOT_CONFIG_VOLUME,
        )
        fake_runtime.create_volume.assert_has_calls(
            [
                call(f"{NAME}-bashhistory"),
                call(CLAUDE_CONFIG_VOLUME),
                call(COPILOT_CONFIG_VOLUME),
            ]
        )

    def test_existing_volumes_reused(self, fake_runtime: MagicMock) -> None:
        """Volumes that already exist are not recreated."""
        fake_runtime.volume_exists.return_value = True
        result = _manager(fake_runtime).prepare(_request())
        assert result.created_volumes == ()
        fake_runtime.create_volume.assert_not_called()

    def test_existing_image_reused(self, fake_runtime: MagicMock) -> None:
        """An existing variant image is not rebuilt."""
        fake_runtime.image_exists.return_value = True
        _manager(fake_runtime).prepare(_request())
        fake_runtime.build_image.assert_not_called()

    def test_firewall_runs_as_root(self, fake_runtime: MagicMock) -> None:
        """The firewall script runs as root with configured extra domains."""
        config = LauncherConfig(extra_domains=("pypi.org",))
        _manager(fake_runtime, config).prepare(_request())
        fake_runtime.exec_streaming.assert_called_once_with(
            NAME, [FIREWALL_SCRIPT_PATH, "pypi.org"], user="root"
        )

    def test_firewall_failure_is_not_fatal(
        self, fake_runtime: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A failing firewall leaves the container running with a warning."""
        fake_runtime.exec_streaming.return_value = 1
        with caplog.at_level(logging.WARNING, logger="aidev.lifecycle"):
            result = _manager(fake_runtime).prepare(_request())
        assert result.firewall is FirewallStatus.FAILED
        assert "without network restrictions" in caplog.text
        fake_runtime.stop_container.assert_not_called()
        fake_runtime.remove_container.assert_not_called()

    def test_firewall_disabled(self, fake_runtime: MagicMock) -> None:
        """No firewall exec and no capabilities when disabled."""
        result = _manager(fake_runtime).prepare(_request(firewall=False))
        assert result.firewall is FirewallStatus.DISABLED
        fake_runtime.exec_streaming.assert_not_called()
        spec = fake_runtime.run_detached.call_args[0][0]
        assert spec.cap_add == ()

    def test_capabilities_with_firewall(self, fake_runtime: MagicMock) -> None:
        """Network admin capabilities are granted only for the firewall."""
        _manager(fake_runtime).prepare(_request())
        spec = fake_runtime.run_detached.call_args[0][0]
        assert spec.cap_add == FIREWALL_CAPABILITIES

    def test_run_failure_propagates(self, fake_runtime: MagicMock) -> None:
        """A name conflict from a concurrent launch surfaces as an error."""
        fake_runtime.run_detached.side_effect = ContainerCommandError(
            "docker run failed: Conflict"
        )
        with pytest.raises(ContainerCommandError, match="Conflict"):
            _manager(fake_runtime).prepare(_request())
        fake_runtime.exec_streaming.assert_not_called()


class TestPrepareStopped:
    """A stopped container is replaced."""

    def test_removes_then_creates(self, fake_runtime: MagicMock) -> None:
        """The stopped container is removed before the new run."""
        fake_runtime.container_state.return_value = ContainerState.STOPPED
        result = _manager(fake_runtime).prepare(_request())

        assert result.initial_state is ContainerState.STOPPED
        fake_runtime.remove_container.assert_called_once_with(NAME)
        method_names = [c[0] for c in fake_runtime.method_calls]
        assert method_names.index("remove_container") < method_names.index(
            "run_detached"
        )

    def test_history_volume_survives(self, fake_runtime: MagicMock) -> None:
        """Shell history volume is kept across container replacement."""
        fake_runtime.container_state.return_value = ContainerState.STOPPED
        fake_runtime.volume_exists.return_value = True
        _manager(fake_runtime).prepare(_request())
        fake_runtime.create_volume.assert_not_called()


class TestPrepareRunning:
    """A running container is attached to, never replaced."""

    def test_attach_only(self, fake_runtime: MagicMock) -> None:
        """No build, run, firewall or volume work for a running container."""
        fake_runtime.container_state.return_value = ContainerState.RUNNING
        result = _manager(fake_runtime).prepare(_request())

        assert result.initial_state is ContainerState.RUNNING
        assert result.image is None
        assert result.firewall is FirewallStatus.UNCHANGED
        fake_runtime.image_exists.assert_not_called()
        fake_runtime.build_image.assert_not_called()
        fake_runtime.run_detached.assert_not_called()
        fake_runtime.exec_streaming.assert_not_called()
        fake_runtime.create_volume.assert_not_called()

    def test_repeated_invocations_idempotent(
        self, fake_runtime: MagicMock
    ) -> None:
        """A second launch of the same workspace creates nothing new."""
        manager = _manager(fake_runtime)
        manager.prepare(_request())
        fake_runtime.container_state.return_value = ContainerState.RUNNING
        fake_runtime.image_exists.return_value = True
        fake_runtime.volume_exists.return_value = True

        manager.prepare(_request())
        manager.prepare(_request())

        assert fake_runtime.run_detached.call_count == 1
        assert fake_runtime.build_image.call_count == 1
        assert fake_runtime.exec_streaming.call_count == 1

    def test_rebuild_while_running(self, fake_runtime: MagicMock) -> None:
        """--rebuild refreshes the image but keeps the running container."""
        fake_runtime.container_state.return_value = ContainerState.RUNNING
        fake_runtime.image_exists.return_value = True
        result = _manager(fake_runtime).prepare(_request(rebuild=True))

        assert result.image == "ai-code-dev-both"
        fake_runtime.build_image.assert_called_once()
        fake_runtime.remove_container.assert_not_called()
        fake_runtime.stop_container.assert_not_called()
        fake_runtime.run_detached.assert_not_called()


class TestContainerSpec:
    """Tests for container_spec and container_env."""

    def test_mounts(self, fake_runtime: MagicMock) -> None:
        """Workspace, history and shared config volumes are mounted."""
        spec = _manager(fake_runtime).container_spec(
            _request(), "ai-code-dev-both"
        )
        assert spec.name == NAME
        assert spec.image == "ai-code-dev-both"
        assert spec.user == "node"
        assert spec.workdir == "/workspace"
        assert spec.binds == (
            ("/home/u/proj", "/workspace", "delegated"),
            (f"{NAME}-bashhistory", "/commandhistory", ""),
            (CLAUDE_CONFIG_VOLUME, "/home/node/.claude", ""),
            (COPILOT_CONFIG_VOLUME, "/home/node/.copilot", ""),
        )

    def test_env(self, fake_runtime: MagicMock) -> None:
        """Fixed environment carries the configured timezone."""
        config = LauncherConfig(timezone="Europe/Helsinki")
        env = _manager(fake_runtime, config).container_env()
        assert env["TZ"] == "Europe/Helsinki"
        assert env["CLAUDE_CONFIG_DIR"] == "/home/node/.claude"
        assert env["NODE_OPTIONS"] == "--max-old-space-size=4096"
        assert env["POWERLEVEL9K_DISABLE_GITSTATUS"] == "true"

    def test_passthrough_registered_as_secret(
        self, fake_runtime: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Forwarded credentials are passed and redacted from logs."""
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-secret")
        env = _manager(fake_runtime).container_env()
        assert env["ANTHROPIC_API_KEY"] == "sk-ant-secret"
        assert "GH_TOKEN" not in env

        record = logging.LogRecord(
            "t", logging.INFO, __file__, 1, "key %s", ("sk-ant-secret",), None
        )
        SecretFilter().filter(record)
        assert record.getMessage() == "key [REDACTED]"


class TestAttachCommand:
    """Tests for attach_command."""

    def test_shell(self, fake_runtime: MagicMock) -> None:
        """Default attach opens the configured shell as node."""
        command = _manager(fake_runtime).attach_command(_request(shell="bash"))
        assert command == [
            "docker",
            "exec",
            "-it",
            "-u",
            "node",
            "-w",
            "/workspace",
            NAME,
            "bash",
        ]

    def test_launch_tool(self, fake_runtime: MagicMock) -> None:
        """--launch runs the tool through the shell."""
        command = _manager(fake_runtime).attach_command(
            _request(launch=LaunchTool.CLAUDE)
        )
        assert command[-3:] == ["zsh", "-c", "claude"]

    def test_launch_tool_skip_permissions(
        self, fake_runtime: MagicMock
    ) -> None:
        """Reduced-confirmation flags are appended to the tool command."""
        command = _manager(fake_runtime).attach_command(
            _request(launch=LaunchTool.COPILOT, skip_permissions=True)
        )
        assert command[-1] == "copilot --allow-all-tools --allow-all-paths"
