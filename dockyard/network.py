#!/usr/bin/env python3
"""
Container networking for Dockyard.

Implements bridge networking with:
- Linux bridge: one host-side switch shared by all containers
- veth pairs: one per container, peer moved into the container's netns
- IP assignment: leases from IPAllocator
- NAT: MASQUERADE for outbound traffic
- Port forwarding: DNAT on PREROUTING (external) and OUTPUT (host-local)

Network Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │                        HOST                                  │
    │                                                              │
    │  ┌──────────────┐      ┌──────────────┐                     │
    │  │ Container 1  │      │ Container 2  │                     │
    │  │ eth0         │      │ eth0         │                     │
    │  │ 172.30.0.3   │      │ 172.30.0.4   │                     │
    │  └──────┬───────┘      └──────┬───────┘                     │
    │         │                      │                             │
    │    veth<id1[:8]>          veth<id2[:8]>                      │
    │         │                      │                             │
    │  ┌──────┴──────────────────────┴──────┐                     │
    │  │          dockyard0 (bridge)         │                     │
    │  │              172.30.0.1             │                     │
    │  └─────────────────┬──────────────────┘                     │
    │                    │                                         │
    │               NAT / DNAT                                     │
    │                    │                                         │
    │  ┌─────────────────┴──────────────────┐                     │
    │  │           eth0 (host)               │                     │
    │  └────────────────────────────────────┘                     │
    │                                                              │
    └─────────────────────────────────────────────────────────────┘
"""

import os
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from dockyard.config import ServiceConfig
from dockyard.errors import DockyardError, NotFound
from dockyard.ipam import IPAllocator
from dockyard.logger import get_logger
from dockyard.metadata import Container, RecordStore
from dockyard.runner import CommandResult, CommandRunner, ToolTable

logger = get_logger(__name__)

IP_FORWARD_PATH = "/proc/sys/net/ipv4/ip_forward"
NETNS_DIR = "/run/netns"
CONTAINER_IFACE = "eth0"


def veth_names(container_id: str):
    """Host and peer interface names for a container (within IFNAMSIZ)."""
    short_id = container_id[:8]
    return f"veth{short_id}", f"vp{short_id}"


def netns_path(container_id: str) -> str:
    return os.path.join(NETNS_DIR, container_id)


@dataclass
class PortMapping:
    """A "host:container[/proto]" port forward."""

    host_port: str
    container_port: str
    protocol: str = "tcp"

    @classmethod
    def parse(cls, spec: str) -> "PortMapping":
        """
        Parse a port mapping string.

        Examples:
            "8080:80"      -> 8080 -> 80/tcp
            "5353:53/udp"  -> 5353 -> 53/udp

        Raises:
            ValueError: If the string is malformed
        """
        parts = spec.split(":")
        if len(parts) != 2:
            raise ValueError(f"Invalid port mapping: {spec}")

        host_port, container_port = parts
        protocol = "tcp"
        if "/" in container_port:
            container_port, protocol = container_port.split("/", 1)

        if not host_port.isdigit() or not container_port.isdigit():
            raise ValueError(f"Invalid port mapping: {spec}")
        if protocol not in ("tcp", "udp", "sctp"):
            raise ValueError(f"Invalid protocol in port mapping: {spec}")

        return cls(host_port, container_port, protocol)

    def dnat_rule(self, chain: str, container_ip: str) -> List[str]:
        """iptables rule body (without the -C/-A/-D verb) for this mapping."""
        return [
            chain,
            "-p",
            self.protocol,
            "--dport",
            self.host_port,
            "-j",
            "DNAT",
            "--to-destination",
            f"{container_ip}:{self.container_port}",
        ]


def parse_ports(specs: List[str]) -> List[PortMapping]:
    """Parse port mappings, skipping (and logging) malformed entries."""
    mappings = []
    for spec in specs:
        try:
            mappings.append(PortMapping.parse(spec))
        except ValueError as e:
            logger.warning("%s", e)
    return mappings


def render_resolv_conf(servers: List[str]) -> str:
    lines = ["# Generated by dockyard"]
    lines += [f"nameserver {server}" for server in servers]
    lines.append("options ndots:1")
    return "\n".join(lines) + "\n"


class NetworkManager:
    """
    Bridge, veth, NAT and port-forward management.

    Example:
        net = NetworkManager(config, store, CommandRunner(), tools)
        net.setup_bridge()
        ip = net.connect_container(container_id)
        ...
        net.disconnect_container(container_id)
    """

    def __init__(
        self,
        config: ServiceConfig,
        store: RecordStore,
        runner: CommandRunner,
        tools: ToolTable,
        ipam: Optional[IPAllocator] = None,
        ip_forward_path: str = IP_FORWARD_PATH,
    ):
        self.config = config
        self.store = store
        self.runner = runner
        self.bridge = config.bridge_name
        self.ipam = ipam or IPAllocator(config.subnet)
        self.subnet = str(self.ipam.network)
        self.gateway = str(self.ipam.gateway)
        self.ip_forward_path = ip_forward_path
        self.timeout = config.command_timeout

        self.ip_path = tools.require("ip")
        self.iptables_path = tools.require("iptables")

        # Guards the bridge, iptables rules and lease table. Per-container
        # interface wiring runs under that container's own lock only.
        self._lock = threading.Lock()
        self._container_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self.restore_leases(store.list(Container))

    # Command helpers

    def _ip(self, *args: str, check: bool = True) -> CommandResult:
        result = self.runner.run([self.ip_path, *args], timeout=self.timeout)
        if check:
            result.check()
        return result

    def _iptables(self, *args: str, check: bool = True) -> CommandResult:
        result = self.runner.run([self.iptables_path, *args], timeout=self.timeout)
        if check:
            result.check()
        return result

    def _ensure_rule(self, table: Optional[str], rule: List[str]) -> None:
        """Add an iptables rule unless it is already present."""
        prefix = ["-t", table] if table else []
        if self._iptables(*prefix, "-C", *rule, check=False).ok:
            return
        self._iptables(*prefix, "-A", *rule)

    def _delete_rule(self, table: Optional[str], rule: List[str]) -> None:
        prefix = ["-t", table] if table else []
        result = self._iptables(*prefix, "-D", *rule, check=False)
        if not result.ok:
            logger.debug("Rule not removed (%s): %s", " ".join(rule), result.output)

    def _masquerade_rule(self) -> List[str]:
        return ["POSTROUTING", "-s", self.subnet, "!", "-o", self.bridge, "-j", "MASQUERADE"]

    def _forward_rule(self) -> List[str]:
        return ["FORWARD", "-i", self.bridge, "-j", "ACCEPT"]

    # Bridge

    def bridge_exists(self) -> bool:
        return self._ip("link", "show", self.bridge, check=False).ok

    def setup_bridge(self) -> None:
        """
        Create the bridge, enable forwarding and install NAT rules.

        No-op if the bridge already exists.

        Raises:
            SubprocessFailure: If an ip/iptables command fails
        """
        with self._lock:
            if self.bridge_exists():
                logger.debug("Bridge %s already exists", self.bridge)
                return

            logger.info("Creating bridge %s (%s)", self.bridge, self.subnet)
            self._ip("link", "add", "name", self.bridge, "type", "bridge")
            self._ip(
                "addr",
                "add",
                f"{self.gateway}/{self.ipam.prefixlen}",
                "dev",
                self.bridge,
            )
            self._ip("link", "set", self.bridge, "up")

            self._enable_ip_forward()

            self._ensure_rule("nat", self._masquerade_rule())
            self._ensure_rule(None, self._forward_rule())

    def _enable_ip_forward(self) -> None:
        try:
            with open(self.ip_forward_path, "w") as f:
                f.write("1")
        except OSError as e:
            logger.warning("Could not enable IP forwarding: %s", e)

    def cleanup_bridge(self) -> None:
        """Remove NAT rules and the bridge. Missing pieces are ignored."""
        with self._lock:
            self._delete_rule("nat", self._masquerade_rule())
            self._delete_rule(None, self._forward_rule())

            if not self.bridge_exists():
                return

            self._ip("link", "set", self.bridge, "down", check=False)
            result = self._ip("link", "delete", self.bridge, "type", "bridge", check=False)
            if not result.ok:
                logger.warning("Failed to delete bridge %s: %s", self.bridge, result.output)
            else:
                logger.info("Removed bridge %s", self.bridge)

    # Containers

    def _load_container(self, container_id: str) -> Container:
        container = self.store.load(Container, container_id)
        if container is None:
            raise NotFound("container", container_id)
        return container

    def _container_lock(self, container_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._container_locks.get(container_id)
            if lock is None:
                lock = self._container_locks[container_id] = threading.Lock()
            return lock

    def _set_ip(self, container_id: str, ip: str) -> None:
        def assign(record: Container) -> None:
            record.ip_address = ip

        self.store.update(Container, container_id, assign)

    def connect_container(self, container_id: str) -> str:
        """
        Wire a container into the bridge network.

        Creates the container's network namespace and veth pair, assigns
        the leased address, writes resolv.conf and installs port forwards.
        Anything created is torn down again if a later step fails.

        Leases are first reloaded from the container records, so addresses
        handed out by other service instances are never reused.

        Returns:
            The container's IP address

        Raises:
            NotFound: If the container does not exist
            AddressesExhausted: If the subnet is full
            SubprocessFailure: If an ip/iptables command fails
        """
        container = self._load_container(container_id)
        veth_host, veth_peer = veth_names(container_id)
        ports = parse_ports(container.network.ports)

        with self._container_lock(container_id):
            with self._lock:
                self.restore_leases(self.store.list(Container))
                ip = self.ipam.allocate_ip(container_id)
            try:
                self._ip("netns", "add", container_id)
                self._ip(
                    "link", "add", veth_host, "type", "veth", "peer", "name", veth_peer
                )
                self._ip("link", "set", veth_host, "master", self.bridge)
                self._ip("link", "set", veth_host, "up")

                self._ip("link", "set", veth_peer, "netns", container_id)
                self._ip(
                    "-n", container_id, "link", "set", "dev", veth_peer, "name", CONTAINER_IFACE
                )
                self._ip(
                    "-n",
                    container_id,
                    "addr",
                    "add",
                    f"{ip}/{self.ipam.prefixlen}",
                    "dev",
                    CONTAINER_IFACE,
                )
                self._ip("-n", container_id, "link", "set", "lo", "up")
                self._ip("-n", container_id, "link", "set", CONTAINER_IFACE, "up")
                self._ip(
                    "-n", container_id, "route", "add", "default", "via", self.gateway
                )

                try:
                    self.configure_dns(container_id, container.network.dns_servers)
                except OSError as e:
                    logger.warning("Failed to write resolv.conf for %s: %s", container_id, e)

                with self._lock:
                    for mapping in ports:
                        self._ensure_rule("nat", mapping.dnat_rule("PREROUTING", ip))
                        self._ensure_rule("nat", mapping.dnat_rule("OUTPUT", ip))

                self._set_ip(container_id, ip)
            except DockyardError:
                logger.error("Failed to connect %s, rolling back", container_id)
                self._teardown(container_id, ip, ports)
                raise

        logger.info("Connected %s to %s with IP %s", container_id, self.bridge, ip)
        return ip

    def _teardown(self, container_id: str, ip: str, ports: List[PortMapping]) -> None:
        """Remove rules, interfaces, namespace and lease. Best effort."""
        with self._lock:
            for mapping in ports:
                self._delete_rule("nat", mapping.dnat_rule("PREROUTING", ip))
                self._delete_rule("nat", mapping.dnat_rule("OUTPUT", ip))

        veth_host, _ = veth_names(container_id)
        self._ip("link", "delete", veth_host, check=False)
        self._ip("netns", "delete", container_id, check=False)
        with self._lock:
            self.ipam.release_ip(container_id)

    def disconnect_container(self, container_id: str) -> None:
        """
        Undo connect_container. Every step is best effort.

        Raises:
            NotFound: If the container record does not exist
        """
        container = self._load_container(container_id)
        ip = container.ip_address or self.ipam.lookup(container_id)

        with self._container_lock(container_id):
            # The record is cleared before the lease is released
            if container.ip_address:
                try:
                    self._set_ip(container_id, "")
                except DockyardError as e:
                    logger.warning("Failed to clear IP for %s: %s", container_id, e)

            ports = parse_ports(container.network.ports) if ip else []
            self._teardown(container_id, ip or "", ports)

        with self._locks_guard:
            self._container_locks.pop(container_id, None)
        logger.info("Disconnected %s from %s", container_id, self.bridge)

    def configure_dns(self, container_id: str, servers: Optional[List[str]] = None) -> str:
        """
        Write etc/resolv.conf into the container's rootfs.

        Returns:
            Path of the written file
        """
        servers = servers or self.config.dns_servers
        rootfs = os.path.join(self.config.containers_path, container_id, "rootfs")
        resolv_path = os.path.join(rootfs, "etc", "resolv.conf")

        os.makedirs(os.path.dirname(resolv_path), exist_ok=True)
        with open(resolv_path, "w") as f:
            f.write(render_resolv_conf(servers))
        return resolv_path

    def restore_leases(self, containers: List[Container]) -> int:
        """Re-seed the allocator from container records. Returns leases restored."""
        restored = 0
        for container in containers:
            if container.ip_address and self.ipam.reserve(container.id, container.ip_address):
                restored += 1
        return restored

    def get_info(self) -> dict:
        """Bridge and lease overview."""
        return {
            "bridge": self.bridge,
            "subnet": self.subnet,
            "gateway": self.gateway,
            "leases": self.ipam.leases(),
        }
