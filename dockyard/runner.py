#!/usr/bin/env python3
"""
External command execution for Dockyard.

Every bridge, veth, iptables, runtime and build call goes through a
CommandRunner so tests can swap in a fake and assert exact argument
vectors without touching the host.

Provides:
- CommandResult: argv, exit code, captured stdout/stderr
- CommandRunner: subprocess-backed runner with per-call timeouts
- ToolTable: explicit name -> binary path table, resolved once at startup
"""

import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from dockyard.errors import CommandTimeout, SubprocessFailure, ToolUnavailable
from dockyard.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CommandResult:
    """Outcome of a single external command."""

    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, used in error messages."""
        parts = [p.strip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)

    def check(self, message: Optional[str] = None) -> "CommandResult":
        """Raise SubprocessFailure if the command exited non-zero."""
        if self.returncode != 0:
            raise SubprocessFailure(self.argv, self.returncode, self.output, message)
        return self


class CommandRunner:
    """
    Run external commands with captured output.

    Example:
        runner = CommandRunner()
        result = runner.run(["ip", "link", "show", "dockyard0"], timeout=30)
        if result.ok:
            ...
    """

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        check: bool = False,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a command and wait for it to finish.

        Args:
            argv: Command and arguments
            timeout: Seconds before the command is killed
            check: Raise SubprocessFailure on non-zero exit
            cwd: Working directory

        Returns:
            CommandResult instance

        Raises:
            CommandTimeout: If the command exceeds the timeout
            SubprocessFailure: If check is set and the command fails,
                or the binary cannot be executed
        """
        argv = [str(a) for a in argv]
        logger.debug("exec: %s", " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired as e:
            output = _decode(e.stdout) + _decode(e.stderr)
            raise CommandTimeout(argv, timeout or 0, output) from e
        except OSError as e:
            raise SubprocessFailure(argv, 127, str(e)) from e

        result = CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")
        if check:
            result.check()
        return result


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class ToolTable:
    """
    Table of external tools available to the managers.

    Passed explicitly at construction so tests can provide fakes; there
    is no process-wide registry.

    Example:
        tools = ToolTable.discover(["ip", "iptables", "runc"])
        ip = tools.require("ip")
        if tools.has("umoci"):
            ...
    """

    def __init__(self, paths: Optional[Dict[str, Optional[str]]] = None):
        self._paths: Dict[str, str] = {
            name: path for name, path in (paths or {}).items() if path
        }

    @classmethod
    def discover(
        cls,
        names: Iterable[str],
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> "ToolTable":
        """Resolve each tool name on PATH; missing tools are left out."""
        paths = {}
        for name in names:
            path = which(name)
            if path:
                paths[name] = path
            else:
                logger.debug("Tool not found on PATH: %s", name)
        return cls(paths)

    def has(self, name: str) -> bool:
        return name in self._paths

    def get(self, name: str) -> Optional[str]:
        return self._paths.get(name)

    def require(self, name: str) -> str:
        """Return the path for a tool or raise ToolUnavailable."""
        path = self._paths.get(name)
        if not path:
            raise ToolUnavailable(f"{name} not found")
        return path

    def first(self, names: Sequence[str]) -> Optional[str]:
        """Return the first available tool name in priority order."""
        for name in names:
            if name in self._paths:
                return name
        return None

    def __contains__(self, name: str) -> bool:
        return self.has(name)
