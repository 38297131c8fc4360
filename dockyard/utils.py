#!/usr/bin/env python3
"""
Utility functions for Dockyard.

Provides:
- Random ID generation (12-char hex, as used for container IDs)
- Storage layout helpers
- Directory size accounting
- Atomic JSON file writes
"""

import json
import os
import random
import string
from typing import Any


def generate_id() -> str:
    """
    Generate a 12-character hexadecimal ID.

    Used for containers, volumes and images alike.

    Returns:
        str: 12-char hex string (e.g., "a1b2c3d4e5f6")
    """
    return "".join(random.choices(string.hexdigits.lower()[:16], k=12))


def ensure_directories(*paths: str) -> None:
    """Create every given directory (and parents) if missing."""
    for directory in paths:
        os.makedirs(directory, exist_ok=True)


def get_dir_size(path: str) -> int:
    """
    Total size in bytes of regular files under path.

    Symlinks are not followed; unreadable entries are skipped.
    """
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            fp = os.path.join(dirpath, name)
            try:
                if not os.path.islink(fp):
                    total += os.path.getsize(fp)
            except OSError:
                pass
    return total


def write_json_atomic(path: str, data: Any) -> None:
    """
    Write JSON to path via a temp file and rename.

    Readers never see a half-written file.
    """
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


def read_json(path: str) -> Any:
    """Read a JSON file; returns None if it is missing."""
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
