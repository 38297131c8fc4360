"""
Dockyard: local single-node container orchestration on top of runc.

This package implements:
- Volume management with mount reference tracking
- IP address allocation on a bridge subnet
- Bridge networking with veth pairs, NAT and port forwarding
- Image builds (buildah/podman) and registry pulls (skopeo/podman)
- OCI bundle generation for runc
- Health monitoring with restart policies
- Container lifecycle and deadline-bounded shutdown
"""

__version__ = "1.0.0"

from dockyard.config import ServiceConfig
from dockyard.container import ContainerService
from dockyard.health import HealthMonitor
from dockyard.image_builder import ImageBuilder
from dockyard.ipam import IPAllocator
from dockyard.metadata import RecordStore
from dockyard.network import NetworkManager
from dockyard.volumes import VolumeManager

__all__ = [
    "ContainerService",
    "ServiceConfig",
    "VolumeManager",
    "NetworkManager",
    "IPAllocator",
    "ImageBuilder",
    "HealthMonitor",
    "RecordStore",
]
