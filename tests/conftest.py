# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

from collections.abc import Iterator
from unittest.mock import MagicMock

import pytest

from aidev import config
from aidev.logging import SecretFilter
from aidev.runtime import ContainerRuntime, ContainerState


@pytest.fixture(autouse=True)
def clean_secrets() -> Iterator[None]:
    """Start and end every test with no registered secrets."""
    SecretFilter.clear_secrets()
    yield
    SecretFilter.clear_secrets()


@pytest.fixture(autouse=True)
def isolated_config(
    tmp_path_factory: pytest.TempPathFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[None]:
    """Keep tests away from the user's config directory and ``.env``."""
    config_home = tmp_path_factory.mktemp("xdg-config")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.chdir(tmp_path_factory.mktemp("cwd"))
    for name in config.DEFAULT_PASSTHROUGH_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("TZ", raising=False)
    config.reset_dotenv_state()
    yield
    config.reset_dotenv_state()


@pytest.fixture
def fake_runtime() -> MagicMock:
    """A ``ContainerRuntime`` mock with an empty registry.

    Container is ABSENT, no images or volumes exist and every exec
    succeeds.
    """
    runtime = MagicMock(spec=ContainerRuntime)
    runtime.command = "docker"
    runtime.container_state.return_value = ContainerState.ABSENT
    runtime.image_exists.return_value = False
    runtime.volume_exists.return_value = False
    runtime.exec_streaming.return_value = 0
    runtime.list_containers.return_value = []
    runtime.exec_args.side_effect = (
        lambda name, command, **kwargs: ContainerRuntime("docker").exec_args(
            name, command, **kwargs
        )
    )
    return runtime
