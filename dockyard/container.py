#!/usr/bin/env python3
"""
Container service for Dockyard.

This is the coordinator that brings the managers together:
- ImageBuilder (root filesystems)
- VolumeManager (bind-mounted volumes)
- NetworkManager (bridge, veth, NAT, port forwards)
- Runtime (runc process execution)
- HealthMonitor (restart policies)

Container Lifecycle:
    created → running → {paused, stopping} → {stopped, exited} → removed

Every status change goes through _update_status, which enforces the
transition table and stamps the matching timestamp.
"""

import json
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dockyard.config import ServiceConfig
from dockyard.errors import (
    CommandTimeout,
    DockyardError,
    DuplicateName,
    ImageInUse,
    ImageNotBuilt,
    InvalidState,
    NotFound,
    ShutdownPartialFailure,
    SubprocessFailure,
    ToolUnavailable,
)
from dockyard.health import (
    HEALTH_HEALTHY,
    HEALTH_UNHEALTHY,
    ContainerHealth,
    HealthMonitor,
)
from dockyard.image_builder import ImageBuilder
from dockyard.logger import ContainerLogger, get_logger, read_events
from dockyard.metadata import (
    RESTART_ALWAYS,
    RESTART_NO,
    RESTART_ON_FAILURE,
    STATUS_CREATED,
    STATUS_EXITED,
    STATUS_PAUSED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_STOPPING,
    Container,
    HealthCheckConfig,
    Image,
    NetworkConfig,
    RecordStore,
    VolumeMount,
)
from dockyard.network import NetworkManager, netns_path
from dockyard.oci import generate_oci_config, write_bundle_config
from dockyard.runner import CommandRunner, ToolTable
from dockyard.runtime import Runtime
from dockyard.utils import ensure_directories
from dockyard.volumes import VolumeManager

logger = get_logger(__name__)

KNOWN_TOOLS = ["runc", "ip", "iptables", "buildah", "podman", "skopeo", "umoci", "tar"]

RESTART_POLICIES = (RESTART_NO, RESTART_ALWAYS, RESTART_ON_FAILURE)

TRANSITIONS = {
    STATUS_CREATED: {STATUS_RUNNING},
    STATUS_RUNNING: {STATUS_PAUSED, STATUS_STOPPING, STATUS_STOPPED, STATUS_EXITED},
    STATUS_PAUSED: {STATUS_RUNNING, STATUS_STOPPING, STATUS_STOPPED},
    STATUS_STOPPING: {STATUS_STOPPED, STATUS_EXITED},
    STATUS_STOPPED: {STATUS_RUNNING},
    STATUS_EXITED: {STATUS_RUNNING},
}

# How often a stopping container's state is polled
POLL_INTERVAL = 0.1

# Reported when a container exited on its own and runc kept no status
EXIT_CODE_UNKNOWN = -1


@dataclass
class ContainerCreateRequest:
    """Parameters for create_container."""

    name: str = ""
    image_id: str = ""
    command: List[str] = field(default_factory=list)
    env: List[str] = field(default_factory=list)
    working_dir: str = ""
    volumes: List[VolumeMount] = field(default_factory=list)
    enable_network: bool = True
    ports: List[str] = field(default_factory=list)
    dns_servers: List[str] = field(default_factory=list)
    restart_policy: str = RESTART_NO
    max_retries: int = 0
    healthcheck: Optional[HealthCheckConfig] = None
    is_autostart: bool = False
    is_public: bool = False


@dataclass
class ImageCreateRequest:
    """Parameters for create_image."""

    name: str = ""
    tag: str = "latest"
    registry: str = ""
    source: str = "registry"  # dockerfile, registry
    dockerfile: str = ""
    description: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    is_public: bool = False


class ContainerService:
    """
    Container lifecycle coordinator.

    Collaborators can be injected for testing; anything not passed in is
    built from the config. initialize() performs the host-side work
    (directories, runtime check, bridge, health thread, autostart).

    Example:
        service = ContainerService(ServiceConfig.from_env())
        service.initialize()
        image = service.create_image("alice", ImageCreateRequest(name="alpine"))
        service.pull_image(image.id)
        container = service.create_container(
            "alice", ContainerCreateRequest(name="web", image_id=image.id)
        )
        service.start_container(container.id)
        ...
        service.shutdown(timeout=30)
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store: Optional[RecordStore] = None,
        runner: Optional[CommandRunner] = None,
        tools: Optional[ToolTable] = None,
        runtime: Optional[Runtime] = None,
        volumes: Optional[VolumeManager] = None,
        network: Optional[NetworkManager] = None,
        builder: Optional[ImageBuilder] = None,
        health: Optional[HealthMonitor] = None,
    ):
        self.config = config or ServiceConfig.from_env()
        self.runner = runner or CommandRunner()
        self.tools = tools if tools is not None else ToolTable.discover(KNOWN_TOOLS)
        self.store = store or RecordStore(self.config.records_path)

        self.runtime = runtime or Runtime(
            self.runner, self.tools, self.config.runtime_root, self.config.command_timeout
        )
        self.volumes = volumes or VolumeManager(self.config, self.store)
        self.builder = builder or self._make_builder()
        self.network = network or self._make_network()
        self.health = health or HealthMonitor(self, self.config.health_interval)

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._event_logs: Dict[str, ContainerLogger] = {}

    def _make_builder(self) -> Optional[ImageBuilder]:
        try:
            return ImageBuilder(self.config, self.store, self.runner, self.tools)
        except ToolUnavailable as e:
            logger.warning("Image builds disabled: %s", e)
            return None

    def _make_network(self) -> Optional[NetworkManager]:
        if not self.config.enable_networking:
            return None
        try:
            return NetworkManager(self.config, self.store, self.runner, self.tools)
        except ToolUnavailable as e:
            logger.warning("Networking disabled: %s", e)
            return None

    def _container_lock(self, container_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(container_id)
            if lock is None:
                lock = self._locks[container_id] = threading.Lock()
            return lock

    # Paths

    def container_dir(self, container_id: str) -> str:
        return os.path.join(self.config.containers_path, container_id)

    def checkpoint_dir(self, container_id: str) -> str:
        return os.path.join(self.config.checkpoints_path, container_id)

    # Startup

    def initialize(self) -> None:
        """
        Prepare the host and resume supervision of existing containers.

        Raises:
            SubprocessFailure: If runc is not working
        """
        ensure_directories(*self.config.all_paths())
        logger.info("runc verified: %s", self.runtime.version())

        self.volumes.initialize()

        if self.network is not None:
            try:
                self.network.setup_bridge()
            except DockyardError as e:
                logger.error("Bridge setup failed, networking disabled: %s", e)
                self.network = None

        for container in self.store.list(Container):
            if container.status != STATUS_RUNNING:
                continue
            try:
                if self.runtime.is_running(container.id):
                    self.health.register_container(
                        container.id, container.restart_policy, container.max_retries
                    )
                else:
                    self._update_status(container.id, STATUS_EXITED)
            except DockyardError as e:
                logger.warning("Could not reconcile container %s: %s", container.id, e)

        self.health.start()

        if self.config.enable_autostart:
            self._start_autostart_containers()

    def _start_autostart_containers(self) -> None:
        for container in self.store.find(Container, is_autostart=True):
            if container.status == STATUS_RUNNING:
                continue
            logger.info("Autostarting container: %s (%s)", container.name, container.id)
            try:
                self.start_container(container.id)
            except DockyardError as e:
                logger.error("Failed to autostart container %s: %s", container.id, e)

    # Status

    def _update_status(
        self, container_id: str, status: str, exit_code: Optional[int] = None
    ) -> Container:
        """
        Move a container to a new status and stamp the matching timestamp.

        Raises:
            NotFound: If the container does not exist
            InvalidState: If the transition is not allowed
        """
        with self.store.record_lock(Container, container_id):
            container = self.get_container(container_id)
            previous = container.status
            if status not in TRANSITIONS.get(previous, set()):
                raise InvalidState(
                    f"Container {container_id} cannot go from {previous} to {status}"
                )

            now = time.time()
            container.status = status
            if status == STATUS_RUNNING:
                if previous == STATUS_PAUSED:
                    container.last_resumed_at = now
                else:
                    container.started_at = now
                container.exit_code = None
            elif status == STATUS_PAUSED:
                container.last_paused_at = now
            elif status in (STATUS_STOPPED, STATUS_EXITED):
                container.stopped_at = now
                if exit_code is not None:
                    container.exit_code = exit_code

            self.store.save(container)

        logger.debug("Container %s: %s -> %s", container_id, previous, status)
        return container

    # Events

    def log_event(self, container_id: str, message: str, level: str = "info") -> None:
        """Append a line to the container's event log."""
        with self._locks_guard:
            events = self._event_logs.get(container_id)
            if events is None:
                events = ContainerLogger(self.container_dir(container_id))
                self._event_logs[container_id] = events
        try:
            events.write(message, level)
        except OSError as e:
            logger.warning("Could not write event for %s: %s", container_id, e)

    def get_events(self, container_id: str, tail: Optional[int] = None) -> List[str]:
        self.get_container(container_id)
        return list(read_events(self.container_dir(container_id), tail))

    # Images

    def create_image(self, owner: str, request: ImageCreateRequest) -> Image:
        """
        Register an image to be built or pulled.

        Raises:
            ValueError: If the name is missing or a dockerfile image has no Dockerfile
            DuplicateName: If the owner already has this name:tag
        """
        if not request.name:
            raise ValueError("Image name is required")
        if request.source not in ("dockerfile", "registry"):
            raise ValueError(f"Unknown image source: {request.source}")
        if request.source == "dockerfile" and not request.dockerfile:
            raise ValueError("A Dockerfile is required for dockerfile images")

        tag = request.tag or "latest"
        if self.store.find_one(Image, owner=owner, name=request.name, tag=tag):
            raise DuplicateName(f"Image '{request.name}:{tag}' already exists for {owner}")

        image = Image(
            owner=owner,
            name=request.name,
            tag=tag,
            registry=request.registry,
            source=request.source,
            dockerfile=request.dockerfile,
            description=request.description,
            labels=dict(request.labels),
            is_public=request.is_public,
        )
        self.store.save(image)
        logger.info("Created image %s:%s (%s)", image.name, image.tag, image.id)
        return image

    def get_image(self, image_id: str) -> Image:
        image = self.store.load(Image, image_id)
        if image is None:
            raise NotFound("image", image_id)
        return image

    def list_images(self, owner: str, include_public: bool = False) -> List[Image]:
        return [
            i
            for i in self.store.list(Image)
            if i.owner == owner or (include_public and i.is_public)
        ]

    def _require_builder(self) -> ImageBuilder:
        if self.builder is None:
            raise ToolUnavailable("Image builder is not available")
        return self.builder

    def build_image(self, image_id: str) -> Image:
        """Build a dockerfile image. See ImageBuilder.build_image."""
        image = self.get_image(image_id)
        return self._require_builder().build_image(image)

    def pull_image(
        self, image_id: str, pull_options: Optional[Dict[str, str]] = None
    ) -> Image:
        """Pull a registry image. See ImageBuilder.import_image."""
        image = self.get_image(image_id)
        return self._require_builder().import_image(image, pull_options)

    def delete_image(self, image_id: str) -> None:
        """
        Delete an image record and its files.

        Raises:
            NotFound: If the image does not exist
            ImageInUse: If containers were created from it
        """
        image = self.get_image(image_id)
        users = self.store.find(Container, image_id=image_id)
        if users:
            raise ImageInUse(
                f"Image {image_id} is used by {len(users)} container(s): "
                + ", ".join(c.id for c in users)
            )

        if self.builder is not None:
            self.builder.remove_image_files(image_id)
        else:
            shutil.rmtree(os.path.join(self.config.images_path, image_id), ignore_errors=True)
        self.store.delete(Image, image_id)
        logger.info("Deleted image %s:%s (%s)", image.name, image.tag, image_id)

    # Containers

    def get_container(self, container_id: str) -> Container:
        container = self.store.load(Container, container_id)
        if container is None:
            raise NotFound("container", container_id)
        return container

    def list_containers(
        self,
        owner: Optional[str] = None,
        include_public: bool = False,
        status: Optional[str] = None,
    ) -> List[Container]:
        containers = self.store.list(Container)
        if owner is not None:
            containers = [
                c for c in containers if c.owner == owner or (include_public and c.is_public)
            ]
        if status is not None:
            containers = [c for c in containers if c.status == status]
        return containers

    def create_container(self, owner: str, request: ContainerCreateRequest) -> Container:
        """
        Create a container from a built image.

        Copies the image rootfs, mounts volumes, connects the network and
        writes the OCI bundle. Completed steps are undone on failure.

        Raises:
            ValueError: If the name or restart policy is invalid
            DuplicateName: If the owner already has a container with that name
            NotFound: If the image or a volume does not exist
            ImageNotBuilt: If the image has not been built or pulled
        """
        if not request.name:
            raise ValueError("Container name is required")
        if request.restart_policy not in RESTART_POLICIES:
            raise ValueError(f"Unknown restart policy: {request.restart_policy}")
        if request.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.store.find_one(Container, owner=owner, name=request.name):
            raise DuplicateName(f"Container '{request.name}' already exists for {owner}")

        image = self.get_image(request.image_id)
        image_rootfs = os.path.join(self.config.images_path, image.id, "rootfs")
        if not image.is_built or not os.path.isdir(image_rootfs):
            raise ImageNotBuilt(f"Image {image.name}:{image.tag} has not been built")

        enable_network = request.enable_network
        if enable_network and self.network is None:
            logger.warning("Networking unavailable, %s will have no network", request.name)
            enable_network = False

        container = Container(
            owner=owner,
            name=request.name,
            image_id=image.id,
            command=list(request.command) or list(image.cmd),
            env=list(image.env) + list(request.env),
            working_dir=request.working_dir or image.workdir or "/",
            network=NetworkConfig(
                enable=enable_network,
                bridge=self.config.bridge_name if enable_network else "",
                ports=list(request.ports),
                dns_servers=list(request.dns_servers),
            ),
            restart_policy=request.restart_policy,
            max_retries=request.max_retries,
            healthcheck=request.healthcheck,
            is_autostart=request.is_autostart,
            is_public=request.is_public,
        )
        bundle = self.container_dir(container.id)

        saved = connected = False
        try:
            shutil.copytree(image_rootfs, os.path.join(bundle, "rootfs"), symlinks=True)
            self.store.save(container)
            saved = True

            volume_paths = {}
            for mount in request.volumes:
                volume = self.volumes.mount_volume(
                    mount.volume_id, container.id, mount.destination, mount.readonly
                )
                volume_paths[volume.id] = volume.path

            if enable_network:
                self.network.connect_container(container.id)
                connected = True

            container = self.get_container(container.id)
            oci_config = generate_oci_config(
                container,
                volume_paths,
                netns_path(container.id) if connected else None,
                self.config.default_memory_mb,
                self.config.disable_privileged,
            )
            write_bundle_config(bundle, oci_config)
        except (DockyardError, OSError):
            logger.error("Failed to create container %s, rolling back", request.name)
            if connected:
                self._best_effort("disconnect network", self.network.disconnect_container, container.id)
            if saved:
                self.volumes.release_container(container.id)
                self._best_effort("delete record", self.store.delete, Container, container.id)
            shutil.rmtree(bundle, ignore_errors=True)
            raise

        self.log_event(container.id, "Container created")
        logger.info("Created container %s (%s) for %s", container.name, container.id, owner)
        return container

    def _best_effort(self, what: str, func, *args) -> None:
        try:
            func(*args)
        except (DockyardError, OSError) as e:
            logger.warning("Failed to %s: %s", what, e)

    def start_container(self, container_id: str) -> Container:
        """
        Start a container, or resume it if paused.

        A record still marked running whose process is gone is first
        marked exited and its runtime state deleted.

        Raises:
            NotFound: If the container does not exist
            InvalidState: If the container is already running
            SubprocessFailure: If runc fails to start it
        """
        with self._container_lock(container_id):
            container = self.get_container(container_id)

            if container.status == STATUS_PAUSED:
                return self._resume(container)

            state = self.runtime.state(container_id)
            if state is not None and state.get("status") == "running":
                raise InvalidState(f"Container {container_id} is already running")

            if container.status in (STATUS_RUNNING, STATUS_STOPPING):
                logger.info("Container %s is no longer running, marking exited", container_id)
                self._update_status(container_id, STATUS_EXITED)

            if state is not None:
                self.runtime.delete(container_id, force=True)

            bundle = self.container_dir(container_id)
            if not os.path.isdir(bundle):
                raise InvalidState(f"Container directory does not exist: {bundle}")

            try:
                self.runtime.run(container_id, bundle)
            except DockyardError as e:
                self.log_event(container_id, f"Failed to start container: {e}", "error")
                raise

            container = self._update_status(container_id, STATUS_RUNNING)

        if not self.health.is_registered(container_id):
            self.health.register_container(
                container_id, container.restart_policy, container.max_retries
            )
        self.log_event(container_id, "Container started")
        logger.info("Started container %s", container_id)
        return container

    def _terminate(self, container_id: str, wait: float) -> Optional[str]:
        """
        SIGTERM, wait up to `wait` seconds, SIGKILL if still alive, delete.

        Returns an error message if the container could not be killed.
        """
        result = self.runtime.kill(container_id, "SIGTERM")
        if not result.ok:
            logger.warning(
                "Failed to gracefully stop container %s: %s", container_id, result.output
            )

        deadline = time.monotonic() + max(wait, 0)
        alive = self.runtime.is_running(container_id)
        while alive and time.monotonic() < deadline:
            time.sleep(POLL_INTERVAL)
            alive = self.runtime.is_running(container_id)

        error = None
        if alive:
            logger.warning("Container %s ignored SIGTERM, sending SIGKILL", container_id)
            result = self.runtime.kill(container_id, "SIGKILL")
            if not result.ok:
                error = f"failed to force kill container {container_id}: {result.output}"

        result = self.runtime.delete(container_id, force=error is not None)
        if not result.ok:
            logger.warning("Failed to clean up container %s state: %s", container_id, result.output)
        return error

    def stop_container(self, container_id: str, timeout: Optional[float] = None) -> Container:
        """
        Stop a running or paused container.

        Raises:
            NotFound: If the container does not exist
            InvalidState: If the container is not running or paused
            SubprocessFailure: If the process could not be killed
        """
        if timeout is None:
            timeout = self.config.stop_grace_seconds

        with self._container_lock(container_id):
            container = self.get_container(container_id)
            if container.status not in (STATUS_RUNNING, STATUS_PAUSED):
                raise InvalidState(f"Container {container_id} is not running")

            self.health.unregister_container(container_id)
            self._update_status(container_id, STATUS_STOPPING)

            if container.status == STATUS_PAUSED:
                # Checkpointed: the process is already gone
                self.runtime.delete(container_id, force=True)
            else:
                error = self._terminate(container_id, timeout)
                if error:
                    self.log_event(container_id, error, "error")
                    raise SubprocessFailure(["runc", "kill", container_id, "SIGKILL"], 1, message=error)

            container = self._update_status(container_id, STATUS_STOPPED)

        self.log_event(container_id, "Container stopped")
        logger.info("Stopped container %s", container_id)
        return container

    def pause_container(self, container_id: str) -> Container:
        """
        Checkpoint a running container to checkpoints/<id>.

        Raises:
            InvalidState: If the container is not running
            SubprocessFailure: If runc checkpoint fails
        """
        with self._container_lock(container_id):
            container = self.get_container(container_id)
            if container.status != STATUS_RUNNING:
                raise InvalidState(f"Container {container_id} is not running")

            checkpoint = self.checkpoint_dir(container_id)
            os.makedirs(checkpoint, exist_ok=True)
            try:
                self.runtime.checkpoint(container_id, checkpoint)
            except DockyardError as e:
                self.log_event(container_id, f"Failed to checkpoint container: {e}", "error")
                raise

            self.health.unregister_container(container_id)

            def set_checkpoint(record: Container) -> None:
                record.checkpoint_path = checkpoint

            self.store.update(Container, container_id, set_checkpoint)
            container = self._update_status(container_id, STATUS_PAUSED)

        self.log_event(container_id, "Container paused with checkpoint")
        return container

    def resume_container(self, container_id: str) -> Container:
        """
        Restore a paused container from its checkpoint.

        Raises:
            InvalidState: If the container is not paused or has no checkpoint
            SubprocessFailure: If runc restore fails
        """
        with self._container_lock(container_id):
            container = self.get_container(container_id)
            return self._resume(container)

    def _resume(self, container: Container) -> Container:
        if container.status != STATUS_PAUSED:
            raise InvalidState(f"Container {container.id} is not paused")
        if not container.checkpoint_path:
            raise InvalidState(f"Container {container.id} has no checkpoint")

        try:
            self.runtime.restore(
                container.id, container.checkpoint_path, self.container_dir(container.id)
            )
        except DockyardError as e:
            self.log_event(container.id, f"Failed to restore container: {e}", "error")
            raise

        container = self._update_status(container.id, STATUS_RUNNING)
        self.health.register_container(
            container.id, container.restart_policy, container.max_retries
        )
        self.log_event(container.id, "Container resumed from checkpoint")
        return container

    def remove_container(self, container_id: str) -> None:
        """
        Remove a stopped container and everything attached to it.

        Cleanup is best effort; failures are logged and the record is
        deleted regardless.

        Raises:
            NotFound: If the container does not exist
            InvalidState: If the container is running or paused
        """
        with self._container_lock(container_id):
            container = self.get_container(container_id)
            if container.status in (STATUS_RUNNING, STATUS_PAUSED, STATUS_STOPPING):
                raise InvalidState(
                    f"Container {container_id} is {container.status}, stop it first"
                )

            self.health.unregister_container(container_id)

            if self.network is not None and (container.network.enable or container.ip_address):
                self._best_effort(
                    "disconnect network", self.network.disconnect_container, container_id
                )

            self.volumes.release_container(container_id)

            result = self.runtime.delete(container_id, force=True)
            if not result.ok:
                logger.debug("No runtime state for %s: %s", container_id, result.output)

            for path in (self.container_dir(container_id), container.checkpoint_path):
                if path and os.path.exists(path):
                    try:
                        shutil.rmtree(path)
                    except OSError as e:
                        logger.error("Failed to remove %s: %s", path, e)

            with self._locks_guard:
                self._event_logs.pop(container_id, None)
            self.store.delete(Container, container_id)

        with self._locks_guard:
            self._locks.pop(container_id, None)
        logger.info("Container %s deleted", container_id)

    # Health

    def get_health(self, container_id: str) -> ContainerHealth:
        """
        Query runc state and, for running containers, the declared probe.

        A failing `runc state` means the container is gone; its exit code
        is taken from the failed state command.

        `runc state` carries no exit status for a stopped container. The
        exit code then comes from the record, which only holds one when
        the service stopped the container itself. A container that the
        record still shows as running exited on its own, and is
        reported with EXIT_CODE_UNKNOWN so an on-failure policy restarts
        it. A process that really exited 0 is restarted too.
        """
        result = self.runtime.state_result(container_id)
        health = ContainerHealth()
        if not result.ok:
            health.exit_code = result.returncode
            health.error = result.output
            return health

        try:
            state = json.loads(result.stdout)
        except ValueError as e:
            raise SubprocessFailure(
                result.argv, result.returncode, result.output, "failed to parse container state"
            ) from e

        health.status = state.get("status", "")
        health.is_running = health.status == "running"
        health.started_at = state.get("created")
        container = self.store.load(Container, container_id)
        if not health.is_running:
            if container is not None and container.exit_code is not None:
                health.exit_code = container.exit_code
            elif container is not None and container.status == STATUS_RUNNING:
                health.exit_code = EXIT_CODE_UNKNOWN
                health.error = "container exited without a recorded exit status"
            return health

        probe = container.healthcheck if container is not None else None
        if probe is None or not probe.test:
            health.health_status = HEALTH_HEALTHY
            return health

        try:
            probe_result = self.runtime.exec(container_id, probe.test, timeout=probe.timeout)
            health.health_status = HEALTH_HEALTHY if probe_result.ok else HEALTH_UNHEALTHY
            if not probe_result.ok:
                health.error = probe_result.output
        except CommandTimeout:
            health.health_status = HEALTH_UNHEALTHY
            health.error = f"health probe timed out after {probe.timeout:g}s"
        return health

    # Shutdown

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop the health monitor and every running container concurrently.

        Each container gets SIGTERM, then SIGKILL once the earlier of the
        remaining deadline and the stop grace window has passed.

        Raises:
            ShutdownPartialFailure: Listing every per-container error
        """
        logger.info("Shutting down container service...")
        self.health.stop()

        if timeout is None:
            timeout = self.config.stop_grace_seconds
        deadline = time.monotonic() + timeout

        errors: List[str] = []
        errors_lock = threading.Lock()

        def stop_one(container_id: str) -> None:
            try:
                self._update_status(container_id, STATUS_STOPPING)
                wait = min(deadline - time.monotonic(), self.config.stop_grace_seconds)
                error = self._terminate(container_id, wait)
                if error:
                    with errors_lock:
                        errors.append(error)
                self._update_status(container_id, STATUS_STOPPED)
                self.log_event(container_id, "Container stopped during shutdown")
            except DockyardError as e:
                with errors_lock:
                    errors.append(f"container {container_id}: {e}")

        threads = []
        for container in self.store.find(Container, status=STATUS_RUNNING):
            thread = threading.Thread(
                target=stop_one, args=(container.id,), name=f"shutdown-{container.id}"
            )
            thread.start()
            threads.append(thread)

        for thread in threads:
            thread.join()

        if errors:
            raise ShutdownPartialFailure(errors)
        logger.info("Container service shutdown completed successfully")
