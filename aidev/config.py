# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Launcher configuration.

Defaults can be overridden in an optional YAML file.  The default
location follows the XDG Base Directory Specification:

    ``$XDG_CONFIG_HOME/ai-dev/ai-dev.yaml``
    (typically ``~/.config/ai-dev/ai-dev.yaml``)

``!env`` tags resolve values from environment variables.  ``.env`` files
(``~/.config/ai-dev/.env``, then ``./.env``) are loaded once before the
config is read, so credentials kept there are visible to the
pass-through list.

Command-line flags take precedence over every value here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from platformdirs import user_config_path

from aidev.image import ImageVersions


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "ai-dev"

#: Shells the image provides.
SHELLS = ("zsh", "bash")

#: Supported container runtimes.
CONTAINER_COMMANDS = ("docker", "podman")

#: Host variables forwarded into the container when set.
DEFAULT_PASSTHROUGH_ENV = ("ANTHROPIC_API_KEY", "GH_TOKEN", "GITHUB_TOKEN")

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})

_dotenv_loaded = False


class ConfigError(Exception):
    """Raised for unreadable or invalid configuration."""


def get_config_path() -> Path:
    """Return the default config file path."""
    return user_config_path(_APP_NAME) / "ai-dev.yaml"


def get_dotenv_path() -> Path:
    """Return the ``.env`` path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


def load_dotenv_once() -> None:
    """Load ``.env`` files once per process.

    The XDG file is loaded first; ``python-dotenv`` does not overwrite
    variables that are already set, so it wins over ``./.env`` and both
    lose to the real environment.
    """
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    from dotenv import load_dotenv

    for env_file in (get_dotenv_path(), Path.cwd() / ".env"):
        if env_file.exists():
            load_dotenv(env_file)
            logger.debug("Loaded .env from %s", env_file)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    return _EnvVar(str(loader.construct_scalar(node)))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


def _raw_resolve(value: object) -> str | None:
    """Resolve ``_EnvVar`` placeholders; stringify literals."""
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name)
    if value is None:
        return None
    return str(value)


def _resolve_str(value: object, default: str) -> str:
    resolved = _raw_resolve(value)
    if resolved is None or not resolved.strip():
        return default
    return resolved.strip()


def _resolve_bool(value: object, name: str, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    resolved = _raw_resolve(value)
    if resolved is None:
        return default
    lowered = resolved.lower().strip()
    if lowered in _BOOL_TRUTHY:
        return True
    if lowered in _BOOL_FALSY:
        return False
    raise ConfigError(f"Config '{name}': cannot convert {resolved!r} to bool")


def _resolve_list(value: object, name: str) -> tuple[str, ...] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ConfigError(
            f"Config '{name}' must be a list, got {type(value).__name__}"
        )
    items: list[str] = []
    for item in value:
        resolved = _raw_resolve(item)
        if resolved:
            items.append(resolved.strip())
    return tuple(items)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config '{name}' must be a mapping")
    return value


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LauncherConfig:
    """Defaults for a launcher invocation.

    Attributes:
        container_command: Container runtime (``docker`` or ``podman``).
        shell: Shell started on attach.
        timezone: ``TZ`` for the image build and the container.
        firewall_enabled: Install the egress firewall on container start.
        extra_domains: Hostnames allowed in addition to the built-in list.
        versions: Version pins for the image build.
        passthrough_env: Host variables forwarded when set.
    """

    container_command: str = "docker"
    shell: str = "zsh"
    timezone: str = "UTC"
    firewall_enabled: bool = True
    extra_domains: tuple[str, ...] = ()
    versions: ImageVersions = field(default_factory=ImageVersions)
    passthrough_env: tuple[str, ...] = DEFAULT_PASSTHROUGH_ENV

    def __post_init__(self) -> None:
        """Validate configuration.

        Raises:
            ConfigError: If a value is out of range.
        """
        if self.container_command not in CONTAINER_COMMANDS:
            raise ConfigError(
                f"container_command must be one of "
                f"{', '.join(CONTAINER_COMMANDS)}: {self.container_command}"
            )
        if self.shell not in SHELLS:
            raise ConfigError(
                f"shell must be one of {', '.join(SHELLS)}: {self.shell}"
            )

    def with_overrides(self, **changes: Any) -> LauncherConfig:
        """Return a copy with non-None *changes* applied."""
        return replace(
            self, **{k: v for k, v in changes.items() if v is not None}
        )

    def passthrough_values(self) -> dict[str, str]:
        """Return the pass-through variables that are set on the host."""
        load_dotenv_once()
        values: dict[str, str] = {}
        for name in self.passthrough_env:
            value = os.environ.get(name)
            if value:
                values[name] = value
        return values

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> LauncherConfig:
        """Load configuration, falling back to defaults.

        A missing file at the default location is not an error; a missing
        file given explicitly is.

        Args:
            config_path: Explicit config path, or None for the default.

        Raises:
            ConfigError: If the file is unreadable or invalid.
        """
        load_dotenv_once()
        env_tz = os.environ.get("TZ") or "UTC"

        path = config_path or get_config_path()
        if not path.exists():
            if config_path is not None:
                raise ConfigError(f"Config file not found: {path}")
            logger.debug("No config file at %s, using defaults", path)
            return cls(timezone=env_tz)

        try:
            with path.open() as f:
                raw = yaml.load(f, Loader=_make_loader())
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config {path}: {e}") from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Config {path} must be a mapping")
        logger.debug("Loaded config from %s", path)
        return cls._from_dict(raw, env_tz)

    @classmethod
    def _from_dict(cls, raw: dict[str, Any], env_tz: str) -> LauncherConfig:
        defaults = cls()
        firewall = _section(raw, "firewall")
        versions_raw = _section(raw, "versions")
        base_versions = ImageVersions()

        versions = ImageVersions(
            claude_code=_resolve_str(
                versions_raw.get("claude_code"),
                base_versions.claude_code,
            ),
            copilot=_resolve_str(
                versions_raw.get("copilot"),
                base_versions.copilot,
            ),
            git_delta=_resolve_str(
                versions_raw.get("git_delta"),
                base_versions.git_delta,
            ),
            zsh_in_docker=_resolve_str(
                versions_raw.get("zsh_in_docker"),
                base_versions.zsh_in_docker,
            ),
        )

        passthrough = _resolve_list(
            raw.get("passthrough_env"), "passthrough_env"
        )

        return cls(
            container_command=_resolve_str(
                raw.get("container_command"),
                defaults.container_command,
            ),
            shell=_resolve_str(raw.get("shell"), defaults.shell),
            timezone=_resolve_str(raw.get("timezone"), env_tz),
            firewall_enabled=_resolve_bool(
                firewall.get("enabled"),
                "firewall.enabled",
                defaults.firewall_enabled,
            ),
            extra_domains=_resolve_list(
                firewall.get("extra_domains"), "firewall.extra_domains"
            )
            or (),
            versions=versions,
            passthrough_env=(
                DEFAULT_PASSTHROUGH_ENV if passthrough is None else passthrough
            ),
        )
