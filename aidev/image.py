# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tool selection and development image building.

The image is a ``node:20`` base with shell tooling, iptables/ipset, the
selected assistants and the bundled firewall script.  Images are cached
by variant tag, one per tool combination, so switching between
``--claude-only`` and the default never reuses the wrong image::

    claude + copilot  ->  ai-code-dev-both
    claude only       ->  ai-code-dev-claude
    copilot only      ->  ai-code-dev-copilot

An existing variant image is reused until ``--rebuild`` is given.
"""

from __future__ import annotations

import logging
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from importlib.resources import files
from pathlib import Path

from aidev.runtime import ContainerCommandError, ContainerRuntime


logger = logging.getLogger(__name__)

#: Name of the firewall script inside the build context and the image.
FIREWALL_SCRIPT_NAME = "init-firewall"
FIREWALL_SCRIPT_PATH = f"/usr/local/bin/{FIREWALL_SCRIPT_NAME}"


class ImageBuildError(Exception):
    """Raised when the development image build fails."""


class ImageVariant(Enum):
    """Image cache key, one per tool combination."""

    BOTH = "ai-code-dev-both"
    CLAUDE = "ai-code-dev-claude"
    COPILOT = "ai-code-dev-copilot"

    @property
    def tag(self) -> str:
        return self.value


@dataclass(frozen=True)
class ToolSelection:
    """Which assistants to install. At least one must be selected.

    Raises:
        ValueError: If neither tool is selected.
    """

    claude: bool = True
    copilot: bool = True

    def __post_init__(self) -> None:
        if not (self.claude or self.copilot):
            raise ValueError(
                "At least one of Claude Code or Copilot CLI must be selected"
            )

    @property
    def variant(self) -> ImageVariant:
        if self.claude and self.copilot:
            return ImageVariant.BOTH
        if self.claude:
            return ImageVariant.CLAUDE
        return ImageVariant.COPILOT

    @property
    def label(self) -> str:
        """Human-readable tool list, e.g. ``Claude Code + Copilot CLI``."""
        names = []
        if self.claude:
            names.append("Claude Code")
        if self.copilot:
            names.append("Copilot CLI")
        return " + ".join(names)


@dataclass(frozen=True)
class ImageVersions:
    """Pinned versions passed to the image build as build args."""

    claude_code: str = "latest"
    copilot: str = "latest"
    git_delta: str = "0.18.2"
    zsh_in_docker: str = "1.2.0"


_BASE_DOCKERFILE = """\
FROM node:20

ARG TZ=UTC
ENV TZ="$TZ"

# Development tools, packet filtering and python3 for the firewall script
RUN apt-get update && apt-get install -y --no-install-recommends \\
  less \\
  git \\
  procps \\
  sudo \\
  fzf \\
  zsh \\
  man-db \\
  unzip \\
  gnupg2 \\
  gh \\
  iptables \\
  ipset \\
  iproute2 \\
  dnsutils \\
  jq \\
  nano \\
  vim \\
  curl \\
  wget \\
  python3 \\
  && apt-get clean && rm -rf /var/lib/apt/lists/*

RUN mkdir -p /usr/local/share/npm-global && \\
  chown -R node:node /usr/local/share

ARG USERNAME=node

# Persistent shell history
RUN mkdir /commandhistory \\
  && touch /commandhistory/.bash_history \\
  && chown -R $USERNAME /commandhistory

ENV DEVCONTAINER=true

RUN mkdir -p /workspace /home/node/.claude /home/node/.copilot && \\
  chown -R node:node /workspace /home/node/.claude /home/node/.copilot

WORKDIR /workspace

ARG GIT_DELTA_VERSION=0.18.2
RUN ARCH=$(dpkg --print-architecture) && \\
  wget "https://github.com/dandavison/delta/releases/download/${GIT_DELTA_VERSION}/git-delta_${GIT_DELTA_VERSION}_${ARCH}.deb" && \\
  dpkg -i "git-delta_${GIT_DELTA_VERSION}_${ARCH}.deb" && \\
  rm "git-delta_${GIT_DELTA_VERSION}_${ARCH}.deb"

USER node

ENV NPM_CONFIG_PREFIX=/usr/local/share/npm-global
ENV PATH=$PATH:/usr/local/share/npm-global/bin

ENV SHELL=/bin/zsh
ENV EDITOR=vim
ENV VISUAL=vim

ARG ZSH_IN_DOCKER_VERSION=1.2.0
RUN sh -c "$(wget -O- https://github.com/deluan/zsh-in-docker/releases/download/v${ZSH_IN_DOCKER_VERSION}/zsh-in-docker.sh)" -- \\
  -p git \\
  -p fzf \\
  -a "source /usr/share/doc/fzf/examples/key-bindings.zsh" \\
  -a "source /usr/share/doc/fzf/examples/completion.zsh" \\
  -a "export PROMPT_COMMAND='history -a' && export HISTFILE=/commandhistory/.bash_history" \\
  -x
"""

_CLAUDE_STEP = """
# Claude Code
ARG CLAUDE_CODE_VERSION=latest
RUN npm install -g @anthropic-ai/claude-code@${CLAUDE_CODE_VERSION}
"""

_COPILOT_STEP = """
# GitHub Copilot CLI
ARG COPILOT_VERSION=latest
RUN npm install -g @github/copilot@${COPILOT_VERSION}
"""

# Always installed; it only runs when the firewall is enabled.
_FIREWALL_STEP = f"""
COPY {FIREWALL_SCRIPT_NAME} {FIREWALL_SCRIPT_PATH}
USER root
RUN chmod 0755 {FIREWALL_SCRIPT_PATH} && \\
  echo "node ALL=(root) NOPASSWD: {FIREWALL_SCRIPT_PATH}" > /etc/sudoers.d/node-firewall && \\
  chmod 0440 /etc/sudoers.d/node-firewall

USER node
"""


def render_dockerfile(selection: ToolSelection) -> str:
    """Assemble the Dockerfile for *selection*."""
    parts = [_BASE_DOCKERFILE]
    if selection.claude:
        parts.append(_CLAUDE_STEP)
    if selection.copilot:
        parts.append(_COPILOT_STEP)
    parts.append(_FIREWALL_STEP)
    return "".join(parts)


def build_args(
    selection: ToolSelection, versions: ImageVersions, timezone: str
) -> dict[str, str]:
    """Return build args; tool version args only for selected tools."""
    args = {
        "TZ": timezone,
        "GIT_DELTA_VERSION": versions.git_delta,
        "ZSH_IN_DOCKER_VERSION": versions.zsh_in_docker,
    }
    if selection.claude:
        args["CLAUDE_CODE_VERSION"] = versions.claude_code
    if selection.copilot:
        args["COPILOT_VERSION"] = versions.copilot
    return args


def firewall_script() -> bytes:
    """Return the bundled firewall script source."""
    resource = files("aidev._bundled.firewall") / "init_firewall.py"
    return resource.read_bytes()


def write_build_context(context_dir: Path, selection: ToolSelection) -> None:
    """Write the Dockerfile and firewall script into *context_dir*."""
    (context_dir / "Dockerfile").write_text(render_dockerfile(selection))
    (context_dir / FIREWALL_SCRIPT_NAME).write_bytes(firewall_script())


def ensure_image(
    runtime: ContainerRuntime,
    selection: ToolSelection,
    versions: ImageVersions,
    timezone: str,
    *,
    force: bool = False,
) -> str:
    """Return the variant image tag, building it if needed.

    Args:
        runtime: Container runtime client.
        selection: Tools to install.
        versions: Version pins for the build.
        timezone: Value for the ``TZ`` build arg.
        force: Rebuild even if the tag already exists.

    Returns:
        Image tag.

    Raises:
        ImageBuildError: If the build fails.
    """
    tag = selection.variant.tag
    if not force and runtime.image_exists(tag):
        logger.info("Using existing image '%s' (use --rebuild to force).", tag)
        return tag

    logger.info("Building image '%s' (%s)...", tag, selection.label)
    start_time = time.time()

    with tempfile.TemporaryDirectory(prefix="ai-dev-build-") as tmpdir:
        context_dir = Path(tmpdir)
        write_build_context(context_dir, selection)
        try:
            runtime.build_image(
                context_dir, tag, build_args(selection, versions, timezone)
            )
        except ContainerCommandError as e:
            raise ImageBuildError(f"Image build failed: {e}") from e

    elapsed = time.time() - start_time
    logger.info("Image '%s' built in %.0fs.", tag, elapsed)
    return tag
