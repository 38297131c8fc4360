#!/usr/bin/env python3
"""
Record storage for Dockyard.

Container, volume and image records are stored as JSON documents:
    <root>/records/containers/<id>.json
    <root>/records/volumes/<id>.json
    <root>/records/images/<id>.json

Records are the only state shared between managers; each manager keeps
whatever in-memory cache it needs and writes through the store.
"""

import json
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Type, TypeVar

from dockyard.errors import NotFound, RecordStoreError
from dockyard.utils import generate_id, write_json_atomic

# Container statuses
STATUS_CREATED = "created"
STATUS_RUNNING = "running"
STATUS_PAUSED = "paused"
STATUS_STOPPING = "stopping"
STATUS_STOPPED = "stopped"
STATUS_EXITED = "exited"

# Restart policies
RESTART_NO = "no"
RESTART_ALWAYS = "always"
RESTART_ON_FAILURE = "on-failure"


@dataclass
class VolumeMount:
    """A volume mounted into a container."""

    volume_id: str = ""
    destination: str = ""
    readonly: bool = False


@dataclass
class NetworkConfig:
    """Network configuration for a container."""

    enable: bool = True
    bridge: str = ""
    # "host_port:container_port[/proto]"
    ports: List[str] = field(default_factory=list)
    dns_servers: List[str] = field(default_factory=list)


@dataclass
class HealthCheckConfig:
    """Health probe run inside the container."""

    test: List[str] = field(default_factory=list)
    timeout: float = 5.0


@dataclass
class Container:
    """Container record."""

    collection: ClassVar[str] = "containers"

    id: str = ""
    owner: str = ""
    name: str = ""
    image_id: str = ""
    status: str = STATUS_CREATED

    command: List[str] = field(default_factory=list)
    env: List[str] = field(default_factory=list)
    working_dir: str = "/"

    network: NetworkConfig = field(default_factory=NetworkConfig)
    volumes: List[VolumeMount] = field(default_factory=list)
    ip_address: str = ""

    restart_policy: str = RESTART_NO
    max_retries: int = 0
    healthcheck: Optional[HealthCheckConfig] = None

    is_autostart: bool = False
    is_public: bool = False
    checkpoint_path: str = ""
    exit_code: Optional[int] = None

    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    last_paused_at: Optional[float] = None
    last_resumed_at: Optional[float] = None
    stopped_at: Optional[float] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_id()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Container":
        data = dict(data)
        if isinstance(data.get("network"), dict):
            data["network"] = NetworkConfig(**data["network"])
        data["volumes"] = [
            VolumeMount(**v) if isinstance(v, dict) else v
            for v in data.get("volumes") or []
        ]
        if isinstance(data.get("healthcheck"), dict):
            data["healthcheck"] = HealthCheckConfig(**data["healthcheck"])
        return cls(**data)


@dataclass
class Volume:
    """
    Volume record.

    mounts is the single source of truth for who uses the volume;
    ref_count is derived from it and only persisted for readers.
    """

    collection: ClassVar[str] = "volumes"

    id: str = ""
    owner: str = ""
    name: str = ""
    driver: str = "local"
    path: str = ""
    description: str = ""
    is_public: bool = False
    labels: Dict[str, str] = field(default_factory=dict)
    driver_opts: Dict[str, str] = field(default_factory=dict)
    # container_id -> {"destination": str, "readonly": bool}
    mounts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.id:
            self.id = generate_id()

    @property
    def ref_count(self) -> int:
        return len(self.mounts)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ref_count"] = self.ref_count
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Volume":
        data = dict(data)
        data.pop("ref_count", None)
        data["mounts"] = {k: dict(v) for k, v in (data.get("mounts") or {}).items()}
        return cls(**data)


@dataclass
class Image:
    """Image record."""

    collection: ClassVar[str] = "images"

    id: str = ""
    owner: str = ""
    name: str = ""
    tag: str = "latest"
    registry: str = ""
    source: str = "registry"  # dockerfile, registry
    dockerfile: str = ""
    build_path: str = ""
    description: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    is_public: bool = False
    # Defaults taken from the Dockerfile's CMD/ENTRYPOINT, ENV and WORKDIR
    cmd: List[str] = field(default_factory=list)
    env: List[str] = field(default_factory=list)
    workdir: str = ""
    is_built: bool = False
    image_size: int = 0
    pull_count: int = 0
    last_pulled: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.id:
            self.id = generate_id()

    @property
    def reference(self) -> str:
        """Registry reference: [registry/]name:tag"""
        ref = f"{self.name}:{self.tag or 'latest'}"
        if self.registry:
            ref = f"{self.registry.rstrip('/')}/{ref}"
        return ref

    @property
    def local_tag(self) -> str:
        """Tag used for locally built images."""
        return f"localhost/{self.name}:{self.tag or 'latest'}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Image":
        return cls(**data)


R = TypeVar("R", Container, Volume, Image)


def record_to_dict(record: Any) -> Dict[str, Any]:
    if hasattr(record, "to_dict"):
        return record.to_dict()
    return asdict(record)


class RecordStore:
    """
    JSON-file record store.

    Example:
        store = RecordStore("/var/lib/dockyard/records")
        store.save(volume)
        volume = store.load(Volume, volume_id)
        containers = store.find(Container, owner="alice")

    Read-modify-write of a shared record goes through update(), which
    holds that record's lock from load to save.
    """

    def __init__(self, root: str):
        self.root = root
        self._lock = threading.Lock()
        self._record_locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._record_locks_guard = threading.Lock()

    def _path(self, cls: Type[R], record_id: str) -> str:
        return os.path.join(self.root, cls.collection, f"{record_id}.json")

    def save(self, record: R) -> None:
        """Persist a record, replacing any previous version."""
        path = self._path(type(record), record.id)
        try:
            with self._lock:
                write_json_atomic(path, record_to_dict(record))
        except (OSError, TypeError, ValueError) as e:
            raise RecordStoreError(
                f"Failed to save {type(record).collection} record {record.id}: {e}"
            ) from e

    def load(self, cls: Type[R], record_id: str) -> Optional[R]:
        """Load a record by ID, or None if it does not exist."""
        if not record_id or os.sep in record_id:
            return None
        path = self._path(cls, record_id)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise RecordStoreError(f"Failed to read {path}: {e}") from e
        return cls.from_dict(data)

    def record_lock(self, cls: Type[R], record_id: str) -> threading.RLock:
        """Lock serializing every load-modify-save of one record."""
        key = (cls.collection, record_id)
        with self._record_locks_guard:
            lock = self._record_locks.get(key)
            if lock is None:
                lock = self._record_locks[key] = threading.RLock()
            return lock

    def update(self, cls: Type[R], record_id: str, mutate: Callable[[R], None]) -> R:
        """
        Load a record, apply mutate to it and save it, under the record lock.

        Concurrent updates of different fields therefore never overwrite
        each other with stale copies.

        Raises:
            NotFound: If the record does not exist
        """
        with self.record_lock(cls, record_id):
            record = self.load(cls, record_id)
            if record is None:
                raise NotFound(cls.__name__.lower(), record_id)
            mutate(record)
            self.save(record)
        return record

    def delete(self, cls: Type[R], record_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        try:
            with self._lock:
                os.remove(self._path(cls, record_id))
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise RecordStoreError(f"Failed to delete record {record_id}: {e}") from e

    def list(self, cls: Type[R]) -> List[R]:
        """All records of a type, oldest first."""
        directory = os.path.join(self.root, cls.collection)
        if not os.path.isdir(directory):
            return []

        records = []
        for filename in os.listdir(directory):
            if not filename.endswith(".json"):
                continue
            record = self.load(cls, filename[: -len(".json")])
            if record is not None:
                records.append(record)

        records.sort(key=lambda r: r.created_at)
        return records

    def find(self, cls: Type[R], **filters: Any) -> List[R]:
        """Records whose attributes equal every given filter."""
        return [
            r
            for r in self.list(cls)
            if all(getattr(r, key, None) == value for key, value in filters.items())
        ]

    def find_one(self, cls: Type[R], **filters: Any) -> Optional[R]:
        matches = self.find(cls, **filters)
        return matches[0] if matches else None
