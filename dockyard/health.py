#!/usr/bin/env python3
"""
Health monitoring and restart-policy enforcement.

Every registered container is polled at a fixed interval:

    not running           -> stopped; restart per policy within max_retries
    running, unhealthy    -> unhealthy; warning event, no action
    running, healthy      -> healthy; failure count reset

Per-container states: starting -> {healthy, unhealthy, stopped}, with
stopped reachable from any state.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dockyard.errors import DockyardError
from dockyard.logger import get_logger
from dockyard.metadata import RESTART_ALWAYS, RESTART_ON_FAILURE

logger = get_logger(__name__)

HEALTH_STARTING = "starting"
HEALTH_HEALTHY = "healthy"
HEALTH_UNHEALTHY = "unhealthy"
HEALTH_STOPPED = "stopped"
HEALTH_UNKNOWN = "unknown"


@dataclass
class ContainerHealth:
    """Result of one health query for a container."""

    status: str = ""
    is_running: bool = False
    exit_code: int = 0
    error: str = ""
    # Probe result: healthy, unhealthy, starting or unknown
    health_status: str = HEALTH_UNKNOWN
    started_at: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "is_running": self.is_running,
            "exit_code": self.exit_code,
            "error": self.error,
            "health_check": {"status": self.health_status},
            "started_at": self.started_at,
        }


@dataclass
class HealthCheck:
    """Per-container monitoring state."""

    container_id: str
    restart_policy: str = "no"
    max_retries: int = 0
    health_status: str = HEALTH_STARTING
    failure_count: int = 0
    last_check: float = field(default_factory=time.time)
    restarts: int = 0


class HealthMonitor:
    """
    Poll container health on a background thread.

    The service passed in must provide:
        get_health(container_id) -> ContainerHealth
        start_container(container_id)
        log_event(container_id, message, level)

    Example:
        monitor = HealthMonitor(service, interval=30)
        monitor.register_container(cid, "always", 3)
        monitor.start()
        ...
        monitor.stop()
    """

    def __init__(self, service, interval: float = 30.0):
        self.service = service
        self.interval = interval
        self._checks: Dict[str, HealthCheck] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register_container(
        self, container_id: str, restart_policy: str = "no", max_retries: int = 0
    ) -> None:
        """Start (or restart) monitoring a container in the starting state."""
        with self._lock:
            self._checks[container_id] = HealthCheck(
                container_id=container_id,
                restart_policy=restart_policy or "no",
                max_retries=max_retries,
            )
        logger.debug("Registered %s for health checks", container_id)

    def unregister_container(self, container_id: str) -> None:
        with self._lock:
            self._checks.pop(container_id, None)

    def is_registered(self, container_id: str) -> bool:
        with self._lock:
            return container_id in self._checks

    def get_status(self, container_id: str) -> Optional[HealthCheck]:
        """Snapshot of a container's monitoring state, or None."""
        with self._lock:
            check = self._checks.get(container_id)
            if check is None:
                return None
            return HealthCheck(**vars(check))

    def registered(self) -> List[str]:
        with self._lock:
            return list(self._checks)

    # Polling

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="dockyard-health", daemon=True
        )
        self._thread.start()
        logger.info("Health monitor started (interval %gs)", self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Health monitor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.check_all()
            except Exception:
                logger.exception("Health check cycle failed")

    def check_all(self) -> None:
        """Run one health check cycle over every registered container."""
        for container_id in self.registered():
            self.check_container(container_id)

    def check_container(self, container_id: str) -> None:
        try:
            health = self.service.get_health(container_id)
        except DockyardError as e:
            logger.error("Health check failed for container %s: %s", container_id, e)
            return

        restart = False
        event = None

        with self._lock:
            check = self._checks.get(container_id)
            if check is None:
                return
            check.last_check = time.time()

            if not health.is_running:
                check.health_status = HEALTH_STOPPED
                if check.max_retries > 0 and check.failure_count >= check.max_retries:
                    logger.warning(
                        "Container %s has exceeded max retry count (%d)",
                        container_id,
                        check.max_retries,
                    )
                else:
                    check.failure_count += 1
                    logger.warning(
                        "Container %s is not running (failure count: %d)",
                        container_id,
                        check.failure_count,
                    )
                    restart = check.restart_policy == RESTART_ALWAYS or (
                        check.restart_policy == RESTART_ON_FAILURE
                        and health.exit_code != 0
                    )
                    if restart:
                        check.restarts += 1

            elif health.health_status == HEALTH_UNHEALTHY:
                check.health_status = HEALTH_UNHEALTHY
                event = ("Container health check failed, status: unhealthy", "warning")

            else:
                previous = check.health_status
                check.health_status = HEALTH_HEALTHY
                check.failure_count = 0
                if previous != HEALTH_HEALTHY:
                    event = (
                        f"Container health status changed: {previous} -> {HEALTH_HEALTHY}",
                        "info",
                    )

        if event is not None:
            self.service.log_event(container_id, event[0], event[1])

        if restart:
            logger.info("Attempting to restart container %s", container_id)
            try:
                self.service.start_container(container_id)
                logger.info("Successfully restarted container %s", container_id)
            except DockyardError as e:
                logger.error("Failed to restart container %s: %s", container_id, e)
