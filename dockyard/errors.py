#!/usr/bin/env python3
"""
Error taxonomy for Dockyard.

Every manager raises subclasses of DockyardError so callers can catch
the whole family at once, or a single condition:

    NotFound              container / volume / image missing
    DuplicateName         name already used by the same owner
    VolumeInUse           removal blocked by a non-zero ref count
    NotMounted            unmount of a mapping that does not exist
    AddressesExhausted    subnet fully leased
    ToolUnavailable       required binary not found at startup
    SubprocessFailure     external tool exited non-zero
    BuildTimeout          build exceeded its deadline
    PullTimeout           pull exceeded its deadline
    ShutdownPartialFailure  aggregated per-container shutdown errors
"""

from typing import List, Optional, Sequence


class DockyardError(Exception):
    """Base exception for all Dockyard errors."""

    pass


class NotFound(DockyardError):
    """Raised when a container, volume or image does not exist."""

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class DuplicateName(DockyardError):
    """Raised when an owner already has a resource with the same name."""

    pass


class VolumeInUse(DockyardError):
    """Raised when removing a volume that is still mounted."""

    def __init__(self, volume_id: str, ref_count: int):
        self.volume_id = volume_id
        self.ref_count = ref_count
        super().__init__(f"Volume {volume_id} is in use ({ref_count} mount(s))")


class NotMounted(DockyardError):
    """Raised when unmounting a volume that is not mounted to the container."""

    def __init__(self, volume_id: str, container_id: str):
        self.volume_id = volume_id
        self.container_id = container_id
        super().__init__(
            f"Volume {volume_id} is not mounted to container {container_id}"
        )


class AddressesExhausted(DockyardError):
    """Raised when no free address is left in the subnet."""

    pass


class ToolUnavailable(DockyardError):
    """Raised when a required external binary cannot be found."""

    pass


class SubprocessFailure(DockyardError):
    """
    Raised when an external tool exits with a non-zero status.

    The message always carries the tool's combined output so the
    diagnostic text reaches the caller.
    """

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        output: str = "",
        message: Optional[str] = None,
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        head = message or f"Command failed: {' '.join(self.argv)}"
        text = f"{head} (exit {returncode})"
        if output:
            text += f"\nOutput: {output.strip()}"
        super().__init__(text)


class CommandTimeout(DockyardError):
    """Raised by the command runner when a subprocess exceeds its timeout."""

    def __init__(self, argv: Sequence[str], timeout: float, output: str = ""):
        self.argv = list(argv)
        self.timeout = timeout
        self.output = output
        super().__init__(
            f"Command timed out after {timeout}s: {' '.join(self.argv)}"
        )


class BuildTimeout(DockyardError):
    """Raised when an image build exceeds the build timeout."""

    pass


class PullTimeout(DockyardError):
    """Raised when an image pull exceeds the build timeout."""

    pass


class ArchiveError(DockyardError):
    """Raised when an image archive is unreadable or has members that escape
    the extraction directory."""

    pass


class InvalidState(DockyardError):
    """Raised for an operation or status transition the container cannot make."""

    pass


class ImageInUse(DockyardError):
    """Raised when deleting an image that containers still reference."""

    pass


class ImageNotBuilt(DockyardError):
    """Raised when creating a container from an image that is not built yet."""

    pass


class RecordStoreError(DockyardError):
    """Raised when a record cannot be persisted or read back."""

    pass


class ShutdownPartialFailure(DockyardError):
    """Aggregates every per-container error collected during shutdown."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Errors during shutdown: " + "; ".join(self.errors))
