#!/usr/bin/env python3
# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Default-deny egress firewall for the development container.

Copied into the image as ``/usr/local/bin/init-firewall`` and run once as
root after the container starts.  Uses only the standard library: it runs
on the image's system ``python3``, not in the launcher's environment.

The allow-list is built before any rule is touched:

- GitHub's published ``web``, ``api`` and ``git`` ranges from
  ``https://api.github.com/meta`` (a fetch failure, missing field or
  malformed range aborts);
- the current A records of the hosts the assistants need (a host that
  does not resolve is skipped with a warning).

Rules are then installed in a fixed order.  The narrow always-allow rules
exist before the default policies switch to DROP, otherwise the script
would cut its own connectivity.  Finally two probes check the result:
``example.com`` must be unreachable and ``api.github.com`` reachable.

Progress goes to stdout prefixed ``[firewall]``.  Exit status is 0 only
when the policy is installed and verified.

Usage::

    init-firewall [EXTRA_DOMAIN ...]
"""

from __future__ import annotations

import argparse
import http.client
import ipaddress
import json
import re
import shlex
import socket
import struct
import subprocess
import sys
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable, Iterator, Sequence
from pathlib import Path


IPSET_NAME = "allowed-domains"

GITHUB_META_URL = "https://api.github.com/meta"
REQUIRED_META_FIELDS = ("web", "api", "git")
META_FETCH_TIMEOUT = 10

# Hosts needed by Claude Code and GitHub Copilot CLI.
REQUIRED_HOSTNAMES = (
    "registry.npmjs.org",
    "api.anthropic.com",
    "sentry.io",
    "statsig.anthropic.com",
    "statsig.com",
    "marketplace.visualstudio.com",
    "vscode.blob.core.windows.net",
    "update.code.visualstudio.com",
    "api.githubcopilot.com",
    "copilot-proxy.githubusercontent.com",
    "ghcr.io",
    "objects.githubusercontent.com",
)

BLOCKED_PROBE_URL = "https://example.com"
ALLOWED_PROBE_URL = "https://api.github.com/zen"
PROBE_TIMEOUT = 5

# Docker's embedded resolver; its nat redirects must survive the flush.
INTERNAL_DNS_ADDR = "127.0.0.11"

DNS_PORT = 53
SSH_PORT = 22

ROUTE_TABLE = Path("/proc/net/route")

_ESTABLISHED_MATCH = "-m state --state ESTABLISHED,RELATED"

# Always-allow rules, installed before any default policy changes.
_BASE_RULES = (
    f"-A OUTPUT -p udp --dport {DNS_PORT} -j ACCEPT",
    f"-A INPUT -p udp --sport {DNS_PORT} -j ACCEPT",
    f"-A OUTPUT -p tcp --dport {SSH_PORT} -j ACCEPT",
    f"-A INPUT -p tcp --sport {SSH_PORT} -m state --state ESTABLISHED"
    " -j ACCEPT",
    "-A INPUT -i lo -j ACCEPT",
    "-A OUTPUT -o lo -j ACCEPT",
)

_BUILTIN_CHAINS = frozenset(
    {"PREROUTING", "INPUT", "FORWARD", "OUTPUT", "POSTROUTING"}
)

_IPV4_RE = re.compile(r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}")
_CIDR_RE = re.compile(
    r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}/[0-9]{1,2}"
)


class FirewallError(Exception):
    """Base exception for firewall setup failures."""


class ResolutionError(FirewallError):
    """Raised when the allow-list cannot be built."""


class InvalidAddressError(ResolutionError):
    """Raised for an entry that is not a dotted-quad address or CIDR."""


class PolicyStepError(FirewallError):
    """Raised when an installation step fails.

    Attributes:
        index: 1-based position of the failing step.
        description: Human-readable step name.
    """

    def __init__(self, index: int, description: str, detail: str) -> None:
        super().__init__(f"step {index} ({description}) failed: {detail}")
        self.index = index
        self.description = description


class VerificationError(FirewallError):
    """Raised when the installed policy fails a probe."""


def _log(message: str) -> None:
    print(f"[firewall] {message}", flush=True)


# -- Address validation -------------------------------------------------------


def validate_entry(entry: str) -> str:
    """Check that *entry* is an IPv4 address or IPv4 CIDR block.

    The syntax check is strict dotted-quad with an optional ``/prefix``;
    octets and prefix length must also be in range.

    Returns:
        The entry, unchanged.

    Raises:
        InvalidAddressError: If the entry is malformed.
    """
    if not (_IPV4_RE.fullmatch(entry) or _CIDR_RE.fullmatch(entry)):
        raise InvalidAddressError(f"Invalid address or CIDR range: {entry!r}")
    try:
        ipaddress.IPv4Network(entry, strict=False)
    except ValueError as e:
        raise InvalidAddressError(
            f"Invalid address or CIDR range: {entry!r} ({e})"
        ) from e
    return entry


class AddressSet:
    """Ordered, de-duplicated set of validated allow-list entries."""

    def __init__(self, entries: Iterable[str] = ()) -> None:
        self._entries: list[str] = []
        self._seen: set[str] = set()
        for entry in entries:
            self.add(entry)

    def add(self, entry: str) -> bool:
        """Validate and add *entry*.

        Returns:
            True if the entry was new.

        Raises:
            InvalidAddressError: If the entry is malformed.
        """
        validate_entry(entry)
        if entry in self._seen:
            return False
        self._seen.add(entry)
        self._entries.append(entry)
        return True

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry: object) -> bool:
        return entry in self._seen


# -- Address set resolution ---------------------------------------------------


def fetch_json(url: str, timeout: float = META_FETCH_TIMEOUT) -> object:
    """GET *url* and decode the JSON body.

    Raises:
        ResolutionError: On any network, HTTP or decoding failure.
    """
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            return json.load(response)
    except (
        urllib.error.URLError,
        http.client.HTTPException,
        OSError,
        ValueError,
    ) as e:
        raise ResolutionError(f"Failed to fetch {url}: {e}") from e


def provider_ranges(meta: object) -> list[str]:
    """Extract and aggregate the IPv4 ranges from a GitHub meta document.

    IPv6 ranges are skipped; the ipset is IPv4-only.

    Raises:
        ResolutionError: If the document lacks a required field.
        InvalidAddressError: On the first malformed IPv4 range.
    """
    if not isinstance(meta, dict):
        raise ResolutionError("GitHub meta response is not a JSON object")
    missing = [f for f in REQUIRED_META_FIELDS if meta.get(f) is None]
    if missing:
        raise ResolutionError(
            f"GitHub meta response missing required fields: "
            f"{', '.join(missing)}"
        )

    networks: list[ipaddress.IPv4Network] = []
    for field_name in REQUIRED_META_FIELDS:
        values = meta[field_name]
        if not isinstance(values, list):
            raise ResolutionError(
                f"GitHub meta field '{field_name}' is not a list"
            )
        for cidr in values:
            if not isinstance(cidr, str):
                raise InvalidAddressError(
                    f"Invalid CIDR range from GitHub meta: {cidr!r}"
                )
            if ":" in cidr:
                continue
            validate_entry(cidr)
            networks.append(ipaddress.IPv4Network(cidr, strict=False))

    return [str(net) for net in ipaddress.collapse_addresses(networks)]


def lookup_ipv4(hostname: str) -> list[str]:
    """Return the IPv4 addresses *hostname* currently resolves to.

    Raises:
        OSError: If the lookup fails.
        UnicodeError: If *hostname* has an empty or over-long label.
    """
    infos = socket.getaddrinfo(
        hostname, None, socket.AF_INET, socket.SOCK_STREAM
    )
    addresses: list[str] = []
    for info in infos:
        address = str(info[4][0])
        if address not in addresses:
            addresses.append(address)
    return addresses


def resolve_hostnames(
    hostnames: Iterable[str],
    address_set: AddressSet,
    lookup: Callable[[str], list[str]] = lookup_ipv4,
) -> list[str]:
    """Add the addresses of each hostname to *address_set*.

    A hostname that fails to resolve is skipped with a warning.

    Returns:
        Hostnames that could not be resolved.

    Raises:
        InvalidAddressError: If a lookup returns a malformed address.
    """
    unresolved: list[str] = []
    for hostname in hostnames:
        _log(f"Resolving {hostname}...")
        try:
            addresses = lookup(hostname)
        except (OSError, UnicodeError) as e:
            _log(f"WARNING: Failed to resolve {hostname}: {e} (skipping)")
            unresolved.append(hostname)
            continue
        if not addresses:
            _log(f"WARNING: No A records for {hostname} (skipping)")
            unresolved.append(hostname)
            continue
        for address in addresses:
            if address_set.add(address):
                _log(f"Adding {address} for {hostname}")
    return unresolved


def resolve_address_set(
    hostnames: Sequence[str] = REQUIRED_HOSTNAMES,
    *,
    meta_url: str = GITHUB_META_URL,
    fetch: Callable[[str], object] = fetch_json,
    lookup: Callable[[str], list[str]] = lookup_ipv4,
) -> AddressSet:
    """Build the full allow-list from the provider feed and DNS.

    Raises:
        ResolutionError: If the provider feed is unavailable or malformed.
    """
    address_set = AddressSet()

    _log("Fetching GitHub IP ranges...")
    for cidr in provider_ranges(fetch(meta_url)):
        address_set.add(cidr)
    _log(f"Added {len(address_set)} GitHub ranges")

    resolve_hostnames(hostnames, address_set, lookup)
    return address_set


def detect_host_network(route_table: Path = ROUTE_TABLE) -> str:
    """Return the /24 containing the default gateway.

    Reads the kernel routing table, where addresses are little-endian hex.

    Raises:
        FirewallError: If no default route is found.
    """
    try:
        lines = route_table.read_text().splitlines()
    except OSError as e:
        raise FirewallError(f"Failed to read {route_table}: {e}") from e

    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 3 or fields[1] != "00000000":
            continue
        gateway = socket.inet_ntoa(struct.pack("<L", int(fields[2], 16)))
        if gateway == "0.0.0.0":
            continue
        network = ipaddress.IPv4Network(f"{gateway}/24", strict=False)
        return str(network)

    raise FirewallError("Failed to detect host IP from default route")


# -- Policy installation ------------------------------------------------------


class CommandRunner:
    """Runs iptables/ipset commands."""

    def run(self, cmd: Sequence[str]) -> str:
        """Run *cmd*, returning stdout.

        Raises:
            subprocess.CalledProcessError: If the command fails.
        """
        result = subprocess.run(
            list(cmd), check=True, capture_output=True, text=True
        )
        return result.stdout

    def succeeds(self, cmd: Sequence[str]) -> bool:
        """Run *cmd* and report whether it exited zero."""
        result = subprocess.run(list(cmd), capture_output=True, text=True)
        return result.returncode == 0


class EgressPolicyInstaller:
    """Replaces the container's packet filter with the allow-list policy.

    ``steps()`` lists the installation in order; ``install()`` runs them
    and stops at the first failure without rolling back.

    Args:
        address_set: Entries for the allow-list ipset. Each is validated
            again before insertion.
        host_network: CIDR of the host subnet to allow.
        runner: Command runner (replaced in tests).
    """

    def __init__(
        self,
        address_set: Iterable[str],
        host_network: str,
        runner: CommandRunner | None = None,
    ) -> None:
        self._entries = list(address_set)
        self._host_network = host_network
        self._runner = runner or CommandRunner()
        self.dns_rules: list[str] = []
        self.dns_chains: list[str] = []

    def steps(self) -> list[tuple[str, Callable[[], None]]]:
        return [
            ("snapshot internal DNS rules", self.snapshot_dns_rules),
            ("flush existing rules", self.flush_rules),
            ("restore internal DNS rules", self.restore_dns_rules),
            ("allow DNS, SSH and loopback", self.allow_base_traffic),
            (f"populate ipset {IPSET_NAME}", self.populate_ipset),
            ("allow host network", self.allow_host_network),
            ("set default-deny policies", self.set_default_deny),
            ("allow established connections", self.allow_established),
            ("allow allow-listed destinations", self.allow_ipset),
            ("reject remaining egress", self.reject_remaining),
        ]

    def install(self) -> None:
        """Run every step in order.

        Raises:
            PolicyStepError: Naming the first step that failed.
        """
        steps = self.steps()
        for index, (description, action) in enumerate(steps, start=1):
            _log(f"[{index}/{len(steps)}] {description}")
            try:
                action()
            except subprocess.CalledProcessError as e:
                detail = (e.stderr or "").strip() or str(e)
                raise PolicyStepError(index, description, detail) from e
            except (FirewallError, OSError) as e:
                raise PolicyStepError(index, description, str(e)) from e

    def _iptables(self, *args: str) -> None:
        self._runner.run(["iptables", *args])

    # Steps, in installation order.

    def snapshot_dns_rules(self) -> None:
        output = self._runner.run(["iptables-save", "-t", "nat"])
        declared = {
            line[1:].split()[0]
            for line in output.splitlines()
            if line.startswith(":")
        }
        self.dns_rules = [
            line.strip()
            for line in output.splitlines()
            if line.startswith("-A") and INTERNAL_DNS_ADDR in line
        ]
        # Custom chains the kept rules append to or jump to.
        self.dns_chains = []
        for rule in self.dns_rules:
            args = shlex.split(rule)
            names = [args[1]]
            if "-j" in args[:-1]:
                names.append(args[args.index("-j") + 1])
            for chain in names:
                if (
                    chain in declared
                    and chain not in _BUILTIN_CHAINS
                    and chain not in self.dns_chains
                ):
                    self.dns_chains.append(chain)

    def flush_rules(self) -> None:
        for table in ("filter", "nat", "mangle"):
            self._iptables("-t", table, "-F")
            self._iptables("-t", table, "-X")
        self.destroy_ipset_if_exists()

    def destroy_ipset_if_exists(self) -> None:
        """Delete the allow-list ipset if present; succeed either way."""
        if self._runner.succeeds(["ipset", "list", "-n", IPSET_NAME]):
            self._runner.run(["ipset", "destroy", IPSET_NAME])

    def restore_dns_rules(self) -> None:
        if not self.dns_rules:
            _log("No internal DNS rules to restore")
            return
        _log("Restoring internal DNS rules...")
        for chain in self.dns_chains:
            self._iptables("-t", "nat", "-N", chain)
        for rule in self.dns_rules:
            self._iptables("-t", "nat", *shlex.split(rule))

    def allow_base_traffic(self) -> None:
        for rule in _BASE_RULES:
            self._iptables(*rule.split())

    def populate_ipset(self) -> None:
        # Validate everything before the set exists.
        for entry in self._entries:
            validate_entry(entry)
        self._runner.run(["ipset", "create", IPSET_NAME, "hash:net"])
        for entry in self._entries:
            self._runner.run(["ipset", "add", "-exist", IPSET_NAME, entry])
        _log(f"Added {len(self._entries)} entries to {IPSET_NAME}")

    def allow_host_network(self) -> None:
        _log(f"Host network detected as: {self._host_network}")
        net = self._host_network
        self._iptables(*f"-A INPUT -s {net} -j ACCEPT".split())
        self._iptables(*f"-A OUTPUT -d {net} -j ACCEPT".split())

    def set_default_deny(self) -> None:
        for chain in ("INPUT", "FORWARD", "OUTPUT"):
            self._iptables("-P", chain, "DROP")

    def allow_established(self) -> None:
        for chain in ("INPUT", "OUTPUT"):
            rule = f"-A {chain} {_ESTABLISHED_MATCH} -j ACCEPT"
            self._iptables(*rule.split())

    def allow_ipset(self) -> None:
        self._iptables(
            *f"-A OUTPUT -m set --match-set {IPSET_NAME} dst -j ACCEPT".split()
        )

    def reject_remaining(self) -> None:
        self._iptables(
            *"-A OUTPUT -j REJECT --reject-with icmp-admin-prohibited".split()
        )


# -- Verification -------------------------------------------------------------


def probe_url(url: str, timeout: float = PROBE_TIMEOUT) -> bool:
    """Return True if *url* answered with any HTTP response."""
    try:
        with urllib.request.urlopen(url, timeout=timeout):
            return True
    except urllib.error.HTTPError:
        return True
    except (urllib.error.URLError, OSError):
        return False


def verify_policy(
    probe: Callable[[str], bool] = probe_url,
    *,
    blocked_url: str = BLOCKED_PROBE_URL,
    allowed_url: str = ALLOWED_PROBE_URL,
) -> None:
    """Check the policy blocks *blocked_url* and allows *allowed_url*.

    Raises:
        VerificationError: If either probe has the wrong outcome.
    """
    _log("Verifying firewall rules...")
    if probe(blocked_url):
        raise VerificationError(
            f"Firewall verification failed - was able to reach {blocked_url}"
        )
    _log(f"Verification passed - unable to reach {blocked_url} as expected")

    if not probe(allowed_url):
        raise VerificationError(
            f"Firewall verification failed - unable to reach {allowed_url}"
        )
    _log(f"Verification passed - able to reach {allowed_url} as expected")


def main(argv: Sequence[str] | None = None) -> int:
    """Resolve, install and verify. Returns the process exit status."""
    parser = argparse.ArgumentParser(
        prog="init-firewall",
        description="Install the default-deny egress firewall.",
    )
    parser.add_argument(
        "extra_domains",
        nargs="*",
        metavar="DOMAIN",
        help="Additional hostnames to allow",
    )
    args = parser.parse_args(argv)

    hostnames = list(REQUIRED_HOSTNAMES)
    hostnames.extend(d for d in args.extra_domains if d not in hostnames)

    try:
        address_set = resolve_address_set(hostnames)
        host_network = detect_host_network()
    except FirewallError as e:
        _log(f"ERROR: {e}")
        return 1

    try:
        EgressPolicyInstaller(address_set, host_network).install()
        _log("Firewall configuration complete")
        verify_policy()
    except FirewallError as e:
        _log(f"ERROR: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
