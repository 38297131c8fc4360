#!/usr/bin/env python3
"""
Logging for Dockyard.

Provides:
- get_logger: process logger with console (and optional file) output
- ContainerLogger: per-container event log at <root>/containers/<id>/events.log
- read_events: read back a container's event log
"""

import logging
import os
import sys
import threading
from datetime import datetime
from typing import Generator, List, Optional

LOG_FORMAT = "[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s"
ROOT_LOGGER = "dockyard"

_configured = False
_configure_lock = threading.Lock()


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure the "dockyard" logger hierarchy once.

    Args:
        level: Log level name (defaults to $DOCKYARD_LOG_LEVEL or INFO)
        log_file: Optional file to append to (defaults to $LOG_FILE)
    """
    global _configured

    with _configure_lock:
        root = logging.getLogger(ROOT_LOGGER)
        level = level or os.environ.get("DOCKYARD_LOG_LEVEL", "INFO")
        root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

        if _configured:
            return
        _configured = True

        formatter = logging.Formatter(LOG_FORMAT)

        log_file = log_file or os.environ.get("LOG_FILE")
        if log_file:
            try:
                os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
                file_handler = logging.FileHandler(log_file)
                file_handler.setFormatter(formatter)
                root.addHandler(file_handler)
            except OSError as e:
                print(f"Warning: Could not set up file logging: {e}", file=sys.stderr)

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger under the "dockyard" hierarchy.

    Args:
        name: Module name; "dockyard.x" names are used as-is

    Returns:
        Configured logger instance
    """
    configure_logging()
    if not name or name == ROOT_LOGGER:
        return logging.getLogger(ROOT_LOGGER)
    if not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


class ContainerLogger:
    """
    Append-only event log for one container.

    Each line is "<timestamp> <LEVEL> <message>".

    Example:
        events = ContainerLogger(container_dir)
        events.write("Container started")
        events.write("Health check failed", level="warning")
    """

    FILENAME = "events.log"

    def __init__(self, container_dir: str, max_size_mb: int = 10):
        self.log_path = os.path.join(container_dir, self.FILENAME)
        self.max_size = max_size_mb * 1024 * 1024
        self._lock = threading.Lock()

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        try:
            if os.path.getsize(self.log_path) > self.max_size:
                rotated = f"{self.log_path}.1"
                if os.path.exists(rotated):
                    os.remove(rotated)
                os.rename(self.log_path, rotated)
        except OSError:
            pass

    def write(self, message: str, level: str = "info") -> None:
        """
        Append an event line.

        Args:
            message: Event text; multi-line text is written line by line
            level: info, warning or error
        """
        ts = datetime.now().strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
        with self._lock:
            os.makedirs(os.path.dirname(self.log_path), exist_ok=True)
            self._rotate_if_needed()
            with open(self.log_path, "a") as f:
                for line in message.split("\n"):
                    if line:
                        f.write(f"{ts} {level.upper()} {line}\n")


def read_events(
    container_dir: str, tail: Optional[int] = None
) -> Generator[str, None, None]:
    """
    Read a container's event log.

    Args:
        container_dir: Container directory
        tail: Number of lines to return from the end

    Yields:
        Event lines without trailing newlines
    """
    log_path = os.path.join(container_dir, ContainerLogger.FILENAME)
    if not os.path.exists(log_path):
        return

    with open(log_path, "r") as f:
        lines: List[str] = f.readlines()

    if tail is not None and tail > 0:
        lines = lines[-tail:]

    for line in lines:
        yield line.rstrip("\n")
