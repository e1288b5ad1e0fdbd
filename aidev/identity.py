# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Workspace path resolution and container name derivation.

Each workspace directory maps to exactly one container name, derived from
the full absolute path so that ``~/work/api`` and ``~/personal/api`` get
separate containers::

    /home/alice/projects/My App  ->  ai-dev-home-alice-projects-my-app

Names longer than the runtime's limit are truncated and suffixed with a
digest of the full path, keeping distinct long paths distinct.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path


#: Prefix shared by every managed container. Management commands match on it.
NAME_PREFIX = "ai-dev-"

#: Maximum container name length accepted by the runtime.
MAX_NAME_LENGTH = 128

#: Hex characters of the path digest appended to truncated names.
DIGEST_LENGTH = 8

# Room left for the name body once "-<digest>" is appended.
_TRUNCATED_LENGTH = MAX_NAME_LENGTH - DIGEST_LENGTH - 1

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_HYPHEN_RUN = re.compile(r"-+")


class WorkspaceError(Exception):
    """Raised when the workspace path is missing or not a directory."""


def resolve_workspace(path: str | Path | None = None) -> Path:
    """Resolve the workspace argument to an absolute directory path.

    Args:
        path: User-supplied path; ``None`` means the current directory.

    Returns:
        Absolute, symlink-resolved directory path.

    Raises:
        WorkspaceError: If the path does not exist or is not a directory.
    """
    raw = Path(path).expanduser() if path is not None else Path.cwd()
    try:
        resolved = raw.resolve(strict=True)
    except (FileNotFoundError, RuntimeError) as e:
        raise WorkspaceError(f"Directory does not exist: {raw}") from e
    if not resolved.is_dir():
        raise WorkspaceError(f"Not a directory: {resolved}")
    return resolved


def path_slug(path: Path | str) -> str:
    """Normalize a path into a lowercase ``[a-z0-9-]`` slug."""
    text = str(path).lower().lstrip("/")
    text = _NON_ALNUM.sub("-", text)
    text = _HYPHEN_RUN.sub("-", text)
    return text.strip("-")


def path_digest(path: Path | str) -> str:
    """Return the short fixed-width digest of the full path."""
    return hashlib.sha256(str(path).encode()).hexdigest()[:DIGEST_LENGTH]


def derive_container_name(path: Path | str) -> str:
    """Derive the deterministic container name for a workspace path.

    Args:
        path: Absolute workspace path (already resolved).

    Returns:
        Container name of at most ``MAX_NAME_LENGTH`` characters.
    """
    name = f"{NAME_PREFIX}{path_slug(path)}"
    if len(name) > MAX_NAME_LENGTH:
        # Digest the original path, not the truncated name.
        body = name[:_TRUNCATED_LENGTH].rstrip("-")
        name = f"{body}-{path_digest(path)}"
    return name


def history_volume_name(container_name: str) -> str:
    """Return the per-container shell history volume name."""
    return f"{container_name}-bashhistory"
