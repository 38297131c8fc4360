#!/usr/bin/env python3
"""
Low-level runtime wrapper.

Process execution is delegated to runc. Every call uses a fixed state
directory (--root) under the storage root:

    runc --root <root>/runc run -d --bundle <dir> <id>
    runc --root <root>/runc state <id>
    runc --root <root>/runc kill <id> <signal>
    runc --root <root>/runc delete [--force] <id>
    runc --root <root>/runc exec <id> <args...>
    runc --root <root>/runc checkpoint --image-path <dir> <id>
    runc --root <root>/runc restore -d --image-path <dir> --bundle <dir> <id>
"""

import json
from typing import Any, Dict, List, Optional

from dockyard.logger import get_logger
from dockyard.runner import CommandResult, CommandRunner, ToolTable

logger = get_logger(__name__)


class Runtime:
    """
    runc invocations with fixed argument shapes.

    Example:
        runtime = Runtime(runner, tools, "/var/lib/dockyard/runc")
        runtime.run(container_id, bundle_dir)
        if runtime.is_running(container_id):
            runtime.kill(container_id, "SIGTERM")
    """

    def __init__(
        self,
        runner: CommandRunner,
        tools: ToolTable,
        root: str,
        timeout: float = 30.0,
    ):
        self.runner = runner
        self.runc_path = tools.require("runc")
        self.root = root
        self.timeout = timeout

    def _runc(self, *args: str, timeout: Optional[float] = None) -> CommandResult:
        argv = [self.runc_path, "--root", self.root, *args]
        return self.runner.run(argv, timeout=timeout or self.timeout)

    def version(self) -> str:
        """Verify runc works; returns its version banner."""
        result = self.runner.run([self.runc_path, "--version"], timeout=self.timeout)
        result.check("runc verification failed")
        return result.stdout.strip()

    def run(self, container_id: str, bundle: str) -> None:
        """Start a container detached from its bundle directory."""
        self._runc("run", "-d", "--bundle", bundle, container_id).check(
            f"Failed to start container {container_id}"
        )

    def state(self, container_id: str) -> Optional[Dict[str, Any]]:
        """
        Parsed `runc state` output.

        Returns None if runc does not know the container.
        """
        result = self._runc("state", container_id)
        if not result.ok:
            return None
        try:
            return json.loads(result.stdout)
        except ValueError:
            logger.warning("Unparseable runc state for %s: %s", container_id, result.stdout)
            return None

    def state_result(self, container_id: str) -> CommandResult:
        """Raw `runc state` result, for callers that need the exit status."""
        return self._runc("state", container_id)

    def is_running(self, container_id: str) -> bool:
        state = self.state(container_id)
        return bool(state) and state.get("status") == "running"

    def kill(self, container_id: str, signal: str = "SIGTERM") -> CommandResult:
        """Send a signal. Returns the result; a dead process is not an error."""
        return self._runc("kill", container_id, signal)

    def delete(self, container_id: str, force: bool = False) -> CommandResult:
        args = ["delete"]
        if force:
            args.append("--force")
        return self._runc(*args, container_id)

    def exec(
        self, container_id: str, args: List[str], timeout: Optional[float] = None
    ) -> CommandResult:
        """Run a command inside a running container."""
        return self._runc("exec", container_id, *args, timeout=timeout)

    def checkpoint(self, container_id: str, image_path: str) -> None:
        self._runc("checkpoint", "--image-path", image_path, container_id).check(
            f"Failed to checkpoint container {container_id}"
        )

    def restore(self, container_id: str, image_path: str, bundle: str) -> None:
        self._runc(
            "restore", "-d", "--image-path", image_path, "--bundle", bundle, container_id
        ).check(f"Failed to restore container {container_id}")
