#!/usr/bin/env python3
"""
OCI runtime bundle generation.

Each container directory is an OCI bundle handed to runc:
    <root>/containers/<id>/
    ├── config.json    # OCI runtime configuration
    └── rootfs/        # Copy of the image root filesystem

The config.json follows the OCI runtime-spec format:
{
    "ociVersion": "1.0.2",
    "process": { ... },
    "root": { ... },
    "mounts": [ ... ],
    "linux": { ... }
}
"""

import os
from typing import Dict, List, Optional

from dockyard.metadata import Container
from dockyard.utils import write_json_atomic

OCI_VERSION = "1.0.2"
DEFAULT_PATH_ENV = "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DEFAULT_CAPABILITIES = ["CAP_AUDIT_WRITE", "CAP_KILL", "CAP_NET_BIND_SERVICE"]

MASKED_PATHS = [
    "/proc/acpi",
    "/proc/asound",
    "/proc/kcore",
    "/proc/keys",
    "/proc/latency_stats",
    "/proc/timer_list",
    "/proc/timer_stats",
    "/proc/sched_debug",
    "/sys/firmware",
    "/proc/scsi",
]

READONLY_PATHS = [
    "/proc/bus",
    "/proc/fs",
    "/proc/irq",
    "/proc/sys",
    "/proc/sysrq-trigger",
]


def default_mounts() -> List[Dict]:
    return [
        {
            "destination": "/proc",
            "type": "proc",
            "source": "proc",
        },
        {
            "destination": "/dev",
            "type": "tmpfs",
            "source": "tmpfs",
            "options": ["nosuid", "strictatime", "mode=755", "size=65536k"],
        },
        {
            "destination": "/dev/pts",
            "type": "devpts",
            "source": "devpts",
            "options": ["nosuid", "noexec", "newinstance", "ptmxmode=0666", "mode=0620"],
        },
        {
            "destination": "/dev/shm",
            "type": "tmpfs",
            "source": "shm",
            "options": ["nosuid", "noexec", "nodev", "mode=1777", "size=65536k"],
        },
        {
            "destination": "/sys",
            "type": "none",
            "source": "/sys",
            "options": ["rbind", "nosuid", "noexec", "nodev", "ro"],
        },
    ]


def volume_mounts(container: Container, volume_paths: Dict[str, str]) -> List[Dict]:
    """Bind mounts for the container's volumes; unknown volumes are skipped."""
    mounts = []
    for mount in container.volumes:
        source = volume_paths.get(mount.volume_id)
        if not source:
            continue
        options = ["rbind"]
        if mount.readonly:
            options.append("ro")
        mounts.append(
            {
                "destination": mount.destination,
                "type": "bind",
                "source": source,
                "options": options,
            }
        )
    return mounts


def generate_oci_config(
    container: Container,
    volume_paths: Optional[Dict[str, str]] = None,
    netns_path: Optional[str] = None,
    memory_mb: int = 0,
    no_new_privileges: bool = True,
) -> Dict:
    """
    Generate config.json for a container.

    Args:
        container: Container record
        volume_paths: volume_id -> host directory for bind mounts
        netns_path: Existing network namespace to join (e.g. /run/netns/<id>);
            None gives the container a private, unconnected namespace
        memory_mb: Memory limit, 0 for none
        no_new_privileges: Set process.noNewPrivileges

    Returns:
        Dictionary suitable for config.json
    """
    env = list(container.env)
    if not any(e.startswith("PATH=") for e in env):
        env.insert(0, DEFAULT_PATH_ENV)

    network_ns = {"type": "network"}
    if netns_path:
        network_ns["path"] = netns_path

    resources = {}
    if memory_mb:
        resources["memory"] = {"limit": memory_mb * 1024 * 1024}

    return {
        "ociVersion": OCI_VERSION,
        "process": {
            "terminal": False,
            "user": {"uid": 0, "gid": 0},
            "args": list(container.command) or ["/bin/sh"],
            "env": env,
            "cwd": container.working_dir or "/",
            "capabilities": {
                "bounding": list(DEFAULT_CAPABILITIES),
                "effective": list(DEFAULT_CAPABILITIES),
                "permitted": list(DEFAULT_CAPABILITIES),
            },
            "rlimits": [{"type": "RLIMIT_NOFILE", "hard": 1024, "soft": 1024}],
            "noNewPrivileges": no_new_privileges,
        },
        "root": {
            "path": "rootfs",
            "readonly": False,
        },
        "hostname": container.name or container.id,
        "mounts": default_mounts() + volume_mounts(container, volume_paths or {}),
        "linux": {
            "namespaces": [
                {"type": "pid"},
                {"type": "ipc"},
                {"type": "uts"},
                {"type": "mount"},
                network_ns,
            ],
            "resources": resources,
            "maskedPaths": list(MASKED_PATHS),
            "readonlyPaths": list(READONLY_PATHS),
        },
    }


def write_bundle_config(bundle_path: str, config: Dict) -> str:
    """Write config.json into a bundle directory. Returns its path."""
    config_path = os.path.join(bundle_path, "config.json")
    write_json_atomic(config_path, config)
    return config_path
