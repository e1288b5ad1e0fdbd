# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Commands acting on every managed container (``--list``, ``--stop-all``,
``--rm-all``).

Managed containers are those whose name starts with ``ai-dev-``; an
explicit ``--name`` outside that prefix is not managed here.  Volumes are
never touched.
"""

from __future__ import annotations

from aidev.identity import NAME_PREFIX
from aidev.runtime import ContainerInfo, ContainerRuntime


def _format_table(containers: list[ContainerInfo]) -> str:
    width = max([len("NAMES"), *(len(c.name) for c in containers)])
    lines = [f"{'NAMES':<{width}}  STATUS"]
    lines.extend(f"{c.name:<{width}}  {c.status}" for c in containers)
    return "\n".join(lines)


def list_containers(runtime: ContainerRuntime) -> int:
    """Print running and all managed containers."""
    running = runtime.list_containers(NAME_PREFIX)
    everything = runtime.list_containers(NAME_PREFIX, include_stopped=True)

    print("Running ai-dev containers:")
    print(_format_table(running))
    print()
    print("All ai-dev containers (including stopped):")
    print(_format_table(everything))
    return 0


def stop_all(runtime: ContainerRuntime) -> int:
    """Stop every running managed container."""
    print("Stopping all ai-dev containers...")
    running = runtime.list_containers(NAME_PREFIX)
    if not running:
        print("  No running ai-dev containers found.")
        return 0
    for container in running:
        print(f"  Stopping {container.name}...")
        runtime.stop_container(container.name)
    print("  Done.")
    return 0


def remove_all(runtime: ContainerRuntime) -> int:
    """Force-remove every managed container, running or not."""
    print("Stopping and removing all ai-dev containers...")
    containers = runtime.list_containers(NAME_PREFIX, include_stopped=True)
    if not containers:
        print("  No ai-dev containers found.")
        return 0
    for container in containers:
        print(f"  Removing {container.name}...")
        runtime.remove_container(container.name, force=True)
    print("  Done.")
    return 0
