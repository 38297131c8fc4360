#!/usr/bin/env python3
"""
Service configuration for Dockyard.

Values come from the environment with sensible defaults:

    DOCKYARD_ROOT               storage root
    DOCKYARD_BRIDGE             bridge device name
    DOCKYARD_SUBNET             container subnet (CIDR)
    DOCKYARD_DNS                comma-separated nameservers
    DOCKYARD_ENABLE_NETWORKING  "0"/"false" disables bridge networking
    DOCKYARD_HEALTH_INTERVAL    health poll interval in seconds
    DOCKYARD_BUILD_TIMEOUT      build/pull deadline in seconds
    DOCKYARD_STOP_GRACE         per-container stop grace window in seconds
    DOCKYARD_AUTOSTART          start is_autostart containers on initialize
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

DEFAULT_BRIDGE = "dockyard0"
DEFAULT_SUBNET = "172.30.0.0/16"
DEFAULT_DNS = ["8.8.8.8", "1.1.1.1"]


def default_root() -> str:
    """Storage root: /var/lib/dockyard as root, XDG data home otherwise."""
    if os.geteuid() == 0:
        return "/var/lib/dockyard"
    xdg_data = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return os.path.join(xdg_data, "dockyard")


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class ServiceConfig:
    """Configuration shared by every Dockyard manager."""

    storage_path: str = field(default_factory=default_root)
    bridge_name: str = DEFAULT_BRIDGE
    subnet: str = DEFAULT_SUBNET
    dns_servers: List[str] = field(default_factory=lambda: list(DEFAULT_DNS))
    enable_networking: bool = True
    enable_autostart: bool = True
    health_interval: float = 30.0
    build_timeout: float = 600.0
    stop_grace_seconds: float = 10.0
    command_timeout: float = 30.0
    default_memory_mb: int = 512
    disable_privileged: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServiceConfig":
        """Build a config from environment variables."""
        env = os.environ if environ is None else environ
        config = cls(storage_path=env.get("DOCKYARD_ROOT") or default_root())

        config.bridge_name = env.get("DOCKYARD_BRIDGE", config.bridge_name)
        config.subnet = env.get("DOCKYARD_SUBNET", config.subnet)
        if env.get("DOCKYARD_DNS"):
            config.dns_servers = [
                s.strip() for s in env["DOCKYARD_DNS"].split(",") if s.strip()
            ]
        config.enable_networking = _as_bool(
            env.get("DOCKYARD_ENABLE_NETWORKING"), config.enable_networking
        )
        config.enable_autostart = _as_bool(
            env.get("DOCKYARD_AUTOSTART"), config.enable_autostart
        )
        if env.get("DOCKYARD_HEALTH_INTERVAL"):
            config.health_interval = float(env["DOCKYARD_HEALTH_INTERVAL"])
        if env.get("DOCKYARD_BUILD_TIMEOUT"):
            config.build_timeout = float(env["DOCKYARD_BUILD_TIMEOUT"])
        if env.get("DOCKYARD_STOP_GRACE"):
            config.stop_grace_seconds = float(env["DOCKYARD_STOP_GRACE"])
        return config

    # Storage layout

    @property
    def volumes_path(self) -> str:
        return os.path.join(self.storage_path, "volumes")

    @property
    def images_path(self) -> str:
        return os.path.join(self.storage_path, "images")

    @property
    def containers_path(self) -> str:
        return os.path.join(self.storage_path, "containers")

    @property
    def checkpoints_path(self) -> str:
        return os.path.join(self.storage_path, "checkpoints")

    @property
    def runtime_root(self) -> str:
        return os.path.join(self.storage_path, "runc")

    @property
    def records_path(self) -> str:
        return os.path.join(self.storage_path, "records")

    def all_paths(self) -> List[str]:
        return [
            self.storage_path,
            self.volumes_path,
            self.images_path,
            self.containers_path,
            self.checkpoints_path,
            self.runtime_root,
            self.records_path,
        ]
