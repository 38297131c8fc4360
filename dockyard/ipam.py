#!/usr/bin/env python3
"""
IP address management for container networking.

Leases map container IDs to addresses in the bridge subnet:

    172.30.0.0     network      (never leased)
    172.30.0.1     gateway      (bridge address)
    172.30.0.2     reserved
    172.30.0.3     first container
    ...
    172.30.255.255 broadcast    (never leased)
"""

import ipaddress
import threading
from typing import Dict, Optional

from dockyard.errors import AddressesExhausted
from dockyard.logger import get_logger

logger = get_logger(__name__)

# Offset of the first leasable address from the network address
FIRST_HOST_OFFSET = 3


class IPAllocator:
    """
    Subnet-scoped IP lease table.

    Example:
        ipam = IPAllocator("172.30.0.0/16")
        ip = ipam.allocate_ip(container_id)   # "172.30.0.3"
        ipam.release_ip(container_id)
    """

    def __init__(self, subnet: str, gateway: Optional[str] = None):
        self.network = ipaddress.ip_network(subnet, strict=False)
        if gateway:
            self.gateway = ipaddress.ip_address(gateway)
        else:
            self.gateway = self.network.network_address + 1

        self._leases: Dict[str, ipaddress.IPv4Address] = {}
        self._lock = threading.Lock()

    @property
    def prefixlen(self) -> int:
        return self.network.prefixlen

    def _reserved(self, ip) -> bool:
        return ip in (
            self.network.network_address,
            self.network.broadcast_address,
            self.gateway,
            self.network.network_address + 2,
        )

    def allocate_ip(self, container_id: str) -> str:
        """
        Lease an address to a container.

        Returns the existing lease if the container already holds one.

        Raises:
            AddressesExhausted: If every address in the subnet is taken
        """
        with self._lock:
            if container_id in self._leases:
                return str(self._leases[container_id])

            in_use = set(self._leases.values())
            start = int(self.network.network_address) + FIRST_HOST_OFFSET
            end = int(self.network.broadcast_address)

            for value in range(start, end):
                ip = ipaddress.ip_address(value)
                if ip in in_use or self._reserved(ip):
                    continue
                self._leases[container_id] = ip
                logger.debug("Leased %s to %s", ip, container_id)
                return str(ip)

        raise AddressesExhausted(f"No free addresses left in {self.network}")

    def release_ip(self, container_id: str) -> None:
        """Drop a container's lease. Safe for containers without one."""
        with self._lock:
            ip = self._leases.pop(container_id, None)
        if ip is not None:
            logger.debug("Released %s from %s", ip, container_id)

    def reserve(self, container_id: str, ip: str) -> bool:
        """
        Restore a known lease, e.g. from a container record after restart.

        Returns False if the address is outside the subnet, reserved, or
        already held by another container.
        """
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False

        with self._lock:
            if addr not in self.network or self._reserved(addr):
                return False
            for holder, leased in self._leases.items():
                if leased == addr and holder != container_id:
                    return False
            self._leases[container_id] = addr
        return True

    def lookup(self, container_id: str) -> Optional[str]:
        with self._lock:
            ip = self._leases.get(container_id)
        return str(ip) if ip is not None else None

    def leases(self) -> Dict[str, str]:
        """Snapshot of container_id -> IP."""
        with self._lock:
            return {cid: str(ip) for cid, ip in self._leases.items()}
