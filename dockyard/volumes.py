#!/usr/bin/env python3
"""
Named, ref-counted storage volumes.

Each volume owns a directory and a metadata file:

    <root>/volumes/<volume_id>/
    ├── metadata.json     mirror of the volume record
    └── ...               volume contents, bind-mounted into containers

A volume's mounts map (container_id -> {destination, readonly}) is the
only record of who uses it; ref_count is len(mounts). A volume with any
live mount cannot be removed.
"""

import copy
import os
import shutil
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dockyard.config import ServiceConfig
from dockyard.errors import (
    DockyardError,
    DuplicateName,
    NotFound,
    NotMounted,
    VolumeInUse,
)
from dockyard.logger import get_logger
from dockyard.metadata import Container, RecordStore, Volume, VolumeMount
from dockyard.utils import ensure_directories, read_json, write_json_atomic

logger = get_logger(__name__)

METADATA_FILE = "metadata.json"


@dataclass
class VolumeCreateOptions:
    """Caller-supplied options for create_volume."""

    name: str = ""
    driver: str = ""
    driver_opts: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    is_public: bool = False
    description: str = ""


class VolumeManager:
    """
    Manage volumes and their mounts.

    Every mutation writes metadata.json first, then the volume record,
    then (for mounts) the container record. The cache only changes once
    all writes succeed; on failure the previous metadata and record are
    put back.

    Example:
        volumes = VolumeManager(config, store)
        volumes.initialize()
        vol = volumes.create_volume("alice", VolumeCreateOptions(name="data"))
        volumes.mount_volume(vol.id, container_id, "/data")
    """

    def __init__(self, config: ServiceConfig, store: RecordStore):
        self.config = config
        self.store = store
        self.base_path = config.volumes_path
        self._volumes: Dict[str, Volume] = {}
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """Load volume records and recreate any missing directories."""
        ensure_directories(self.base_path)
        with self._lock:
            self._volumes.clear()
            for volume in self.store.list(Volume):
                if not volume.path:
                    volume.path = self._volume_dir(volume.id)
                if not os.path.isdir(volume.path):
                    logger.warning(
                        "Volume directory missing for %s, recreating: %s",
                        volume.id,
                        volume.path,
                    )
                    try:
                        os.makedirs(volume.path, exist_ok=True)
                    except OSError as e:
                        logger.warning("Could not recreate %s: %s", volume.path, e)
                self._volumes[volume.id] = volume
        logger.info("Loaded %d volume(s)", len(self._volumes))

    def _volume_dir(self, volume_id: str) -> str:
        return os.path.join(self.base_path, volume_id)

    def _metadata_path(self, volume: Volume) -> str:
        return os.path.join(volume.path, METADATA_FILE)

    def _write_metadata(self, volume: Volume) -> None:
        write_json_atomic(self._metadata_path(volume), volume.to_dict())

    def _restore_metadata(self, path: str, previous) -> None:
        try:
            if previous is None:
                if os.path.exists(path):
                    os.remove(path)
            else:
                write_json_atomic(path, previous)
        except OSError as e:
            logger.warning("Could not restore %s: %s", path, e)

    def _persist(
        self,
        old: Volume,
        new: Volume,
        container: Optional[Container] = None,
    ) -> None:
        """Write metadata, volume record and container record, or none of them."""
        path = self._metadata_path(new)
        previous_metadata = read_json(path)

        self._write_metadata(new)
        try:
            self.store.save(new)
        except Exception:
            self._restore_metadata(path, previous_metadata)
            raise

        if container is None:
            return

        try:
            self.store.save(container)
        except Exception:
            self._restore_metadata(path, previous_metadata)
            try:
                self.store.save(old)
            except DockyardError as e:
                logger.error("Could not roll back volume record %s: %s", old.id, e)
            raise

    def create_volume(self, owner: str, options: VolumeCreateOptions) -> Volume:
        """
        Create a volume with a fresh directory and metadata file.

        Raises:
            ValueError: If the name is empty
            DuplicateName: If the owner already has a volume with that name
        """
        if not options.name:
            raise ValueError("Volume name is required")

        with self._lock:
            for existing in self._volumes.values():
                if existing.owner == owner and existing.name == options.name:
                    raise DuplicateName(
                        f"Volume '{options.name}' already exists for {owner}"
                    )

            volume = Volume(
                owner=owner,
                name=options.name,
                driver=options.driver or "local",
                driver_opts=dict(options.driver_opts),
                labels=dict(options.labels),
                is_public=options.is_public,
                description=options.description,
            )
            volume.path = self._volume_dir(volume.id)

            os.makedirs(volume.path, exist_ok=True)
            try:
                self._write_metadata(volume)
                self.store.save(volume)
            except Exception:
                shutil.rmtree(volume.path, ignore_errors=True)
                raise

            self._volumes[volume.id] = volume

        logger.info("Created volume %s (%s) for %s", volume.name, volume.id, owner)
        return copy.deepcopy(volume)

    def remove_volume(self, volume_id: str) -> None:
        """
        Delete a volume's directory and record.

        Raises:
            NotFound: If the volume does not exist
            VolumeInUse: If the volume is still mounted
        """
        with self._lock:
            volume = self._volumes.get(volume_id)
            if volume is None:
                raise NotFound("volume", volume_id)
            if volume.ref_count > 0:
                raise VolumeInUse(volume_id, volume.ref_count)

            self.store.delete(Volume, volume_id)
            del self._volumes[volume_id]

        try:
            shutil.rmtree(volume.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove volume directory %s: %s", volume.path, e)

        logger.info("Removed volume %s (%s)", volume.name, volume_id)

    def mount_volume(
        self,
        volume_id: str,
        container_id: str,
        destination: str,
        readonly: bool = False,
    ) -> Volume:
        """
        Record a mount of a volume into a container.

        Mounting the same volume into the same container again replaces the
        previous entry, so ref_count counts containers, not mount calls.

        Raises:
            NotFound: If the volume or container does not exist
        """
        with self._lock, self.store.record_lock(Container, container_id):
            volume = self._volumes.get(volume_id)
            if volume is None:
                raise NotFound("volume", volume_id)
            container = self.store.load(Container, container_id)
            if container is None:
                raise NotFound("container", container_id)

            updated = copy.deepcopy(volume)
            updated.mounts[container_id] = {
                "destination": destination,
                "readonly": readonly,
            }

            container.volumes = [
                m for m in container.volumes if m.volume_id != volume_id
            ]
            container.volumes.append(
                VolumeMount(volume_id=volume_id, destination=destination, readonly=readonly)
            )

            self._persist(volume, updated, container)
            self._volumes[volume_id] = updated

        logger.info(
            "Mounted volume %s into %s at %s%s",
            volume_id,
            container_id,
            destination,
            " (ro)" if readonly else "",
        )
        return copy.deepcopy(updated)

    def unmount_volume(self, volume_id: str, container_id: str) -> Volume:
        """
        Remove a container's mount of a volume.

        Raises:
            NotFound: If the volume does not exist
            NotMounted: If the volume is not mounted to that container
        """
        with self._lock, self.store.record_lock(Container, container_id):
            volume = self._volumes.get(volume_id)
            if volume is None:
                raise NotFound("volume", volume_id)
            if container_id not in volume.mounts:
                raise NotMounted(volume_id, container_id)

            updated = copy.deepcopy(volume)
            del updated.mounts[container_id]

            # The container may already be gone
            container = self.store.load(Container, container_id)
            if container is not None:
                container.volumes = [
                    m for m in container.volumes if m.volume_id != volume_id
                ]

            self._persist(volume, updated, container)
            self._volumes[volume_id] = updated

        logger.info("Unmounted volume %s from %s", volume_id, container_id)
        return copy.deepcopy(updated)

    def release_container(self, container_id: str) -> List[str]:
        """
        Unmount every volume a container holds.

        Failures are logged and skipped. Returns the released volume IDs.
        """
        with self._lock:
            held = [v.id for v in self._volumes.values() if container_id in v.mounts]

        released = []
        for volume_id in held:
            try:
                self.unmount_volume(volume_id, container_id)
                released.append(volume_id)
            except DockyardError as e:
                logger.warning(
                    "Failed to unmount %s from %s: %s", volume_id, container_id, e
                )
        return released

    def get_volume(self, volume_id: str) -> Volume:
        """Raises NotFound if the volume does not exist."""
        with self._lock:
            volume = self._volumes.get(volume_id)
            if volume is None:
                raise NotFound("volume", volume_id)
            return copy.deepcopy(volume)

    def find_volume(self, owner: str, name_or_id: str) -> Volume:
        """Look up a volume by ID, or by name among the owner's volumes."""
        with self._lock:
            if name_or_id in self._volumes:
                return copy.deepcopy(self._volumes[name_or_id])
            for volume in self._volumes.values():
                if volume.owner == owner and volume.name == name_or_id:
                    return copy.deepcopy(volume)
        raise NotFound("volume", name_or_id)

    def list_volumes(self, owner: str, include_public: bool = False) -> List[Volume]:
        """The owner's volumes, plus other owners' public ones if requested."""
        with self._lock:
            result = [
                copy.deepcopy(v)
                for v in self._volumes.values()
                if v.owner == owner or (include_public and v.is_public)
            ]
        result.sort(key=lambda v: v.created_at)
        return result
