#!/usr/bin/env python3
"""
Image builder for Dockyard.

Builds images from Dockerfiles or imports them from registries using
external tools, then extracts a root filesystem for containers:

    <root>/images/<image_id>/
    ├── build/Dockerfile     build context (dockerfile images)
    ├── oci/image.tar        OCI archive produced by the build or pull
    └── rootfs/              extracted root filesystem

Tool priorities:
    build   buildah, podman
    pull    skopeo, podman
    unpack  umoci, else podman create + export + tar
"""

import json
import os
import shutil
import tarfile
import time
from typing import Dict, List, Optional, Tuple

from dockyard.config import ServiceConfig
from dockyard.errors import (
    ArchiveError,
    BuildTimeout,
    CommandTimeout,
    DockyardError,
    PullTimeout,
    ToolUnavailable,
)
from dockyard.logger import get_logger
from dockyard.metadata import Image, RecordStore
from dockyard.runner import CommandResult, CommandRunner, ToolTable
from dockyard.utils import get_dir_size

logger = get_logger(__name__)

BUILD_TOOLS = ["buildah", "podman"]
PULL_TOOLS = ["skopeo", "podman"]
ARCHIVE_NAME = "image.tar"
REF_ANNOTATION = "org.opencontainers.image.ref.name"


def parse_dockerfile(content: str) -> List[Tuple[str, str]]:
    """
    Parse a Dockerfile into (INSTRUCTION, arguments) pairs.

    Comments and blank lines are skipped, backslash continuations joined.
    """
    instructions = []
    current_line = ""

    for line in content.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        if stripped.endswith("\\"):
            current_line += stripped[:-1] + " "
            continue

        current_line += stripped

        parts = current_line.split(None, 1)
        if parts:
            instruction = parts[0].upper()
            args = parts[1] if len(parts) > 1 else ""
            instructions.append((instruction, args))

        current_line = ""

    return instructions


def _parse_command(args: str) -> List[str]:
    """CMD/ENTRYPOINT in exec (JSON array) or shell form."""
    args = args.strip()
    if args.startswith("["):
        try:
            return [str(a) for a in json.loads(args)]
        except json.JSONDecodeError:
            pass
    return ["/bin/sh", "-c", args]


def image_defaults(instructions: List[Tuple[str, str]]) -> Dict:
    """Default command, environment and working directory of a Dockerfile."""
    entrypoint: List[str] = []
    cmd: List[str] = []
    env: Dict[str, str] = {}
    workdir = ""

    for instruction, args in instructions:
        if instruction == "ENTRYPOINT":
            entrypoint = _parse_command(args)
        elif instruction == "CMD":
            cmd = _parse_command(args)
        elif instruction == "ENV":
            if "=" in args:
                key, value = args.split("=", 1)
                env[key.strip()] = value.strip().strip('"')
            else:
                parts = args.split(None, 1)
                if len(parts) == 2:
                    env[parts[0]] = parts[1]
        elif instruction == "WORKDIR":
            workdir = args.strip()

    return {
        "cmd": entrypoint + cmd if entrypoint else cmd,
        "env": [f"{k}={v}" for k, v in env.items()],
        "workdir": workdir,
    }


class _Deadline:
    """Remaining-time budget shared by the steps of one build or pull."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(self.expires - time.monotonic(), 0.001)


class ImageBuilder:
    """
    Build or import images and extract their root filesystems.

    Example:
        builder = ImageBuilder(config, store, CommandRunner(), tools)
        builder.build_image(image)          # image.dockerfile set
        builder.import_image(image, {"tls_verify": "false"})
    """

    def __init__(
        self,
        config: ServiceConfig,
        store: RecordStore,
        runner: CommandRunner,
        tools: ToolTable,
    ):
        self.config = config
        self.store = store
        self.runner = runner
        self.tools = tools
        self.images_path = config.images_path
        self.timeout = config.build_timeout

        self.build_tool = tools.first(BUILD_TOOLS)
        if self.build_tool is None:
            raise ToolUnavailable("No container build tools found (buildah or podman required)")
        self.pull_tool = tools.first(PULL_TOOLS)

        if not tools.has("umoci"):
            logger.warning("umoci not found, rootfs extraction will use podman export")
        logger.info("Image builder using %s for builds", self.build_tool)

    # Paths

    def image_dir(self, image_id: str) -> str:
        return os.path.join(self.images_path, image_id)

    def rootfs_path(self, image_id: str) -> str:
        return os.path.join(self.image_dir(image_id), "rootfs")

    def oci_dir(self, image_id: str) -> str:
        return os.path.join(self.image_dir(image_id), "oci")

    def archive_path(self, image_id: str) -> str:
        return os.path.join(self.oci_dir(image_id), ARCHIVE_NAME)

    # Helpers

    def _run(
        self,
        argv: List[str],
        deadline: _Deadline,
        message: str,
        timeout_error=BuildTimeout,
    ) -> CommandResult:
        try:
            result = self.runner.run(argv, timeout=deadline.remaining())
        except CommandTimeout as e:
            raise timeout_error(
                f"{message}: timed out after {deadline.seconds:g}s"
                + (f"\nOutput: {e.output.strip()}" if e.output else "")
            ) from e
        return result.check(message)

    def _mark_unbuilt(self, image: Image) -> None:
        image.is_built = False
        try:
            self.store.save(image)
        except DockyardError as e:
            logger.error("Failed to update image status for %s: %s", image.id, e)

    # Build

    def build_image(self, image: Image) -> Image:
        """
        Build an image from its Dockerfile and extract the rootfs.

        Raises:
            ValueError: If the Dockerfile is empty or has no FROM
            BuildTimeout: If the build exceeds the build timeout
            SubprocessFailure: If a build tool fails (output included)
        """
        instructions = parse_dockerfile(image.dockerfile or "")
        if not any(instruction == "FROM" for instruction, _ in instructions):
            raise ValueError(f"Dockerfile for {image.name} has no FROM instruction")

        self._mark_unbuilt(image)
        deadline = _Deadline(self.timeout)

        build_dir = os.path.join(self.image_dir(image.id), "build")
        os.makedirs(build_dir, exist_ok=True)
        os.makedirs(self.oci_dir(image.id), exist_ok=True)

        dockerfile_path = os.path.join(build_dir, "Dockerfile")
        with open(dockerfile_path, "w") as f:
            f.write(image.dockerfile)

        tag = image.local_tag
        archive = self.archive_path(image.id)
        logger.info("Building image %s with %s", tag, self.build_tool)

        try:
            if self.build_tool == "buildah":
                buildah = self.tools.require("buildah")
                self._run(
                    [buildah, "bud", "--tag", tag, "-f", dockerfile_path, build_dir],
                    deadline,
                    "buildah build failed",
                )
                self._run(
                    [buildah, "push", tag, f"oci-archive:{archive}"],
                    deadline,
                    "failed to save image",
                )
            else:
                podman = self.tools.require("podman")
                self._run(
                    [podman, "build", "-t", tag, "-f", dockerfile_path, build_dir],
                    deadline,
                    "podman build failed",
                )
                self._run(
                    [podman, "save", "--format", "oci-archive", "-o", archive, tag],
                    deadline,
                    "failed to save image",
                )

            self.extract_rootfs(image, deadline)
        except DockyardError:
            self._mark_unbuilt(image)
            raise

        defaults = image_defaults(instructions)
        image.cmd = defaults["cmd"]
        image.env = defaults["env"]
        image.workdir = defaults["workdir"]
        image.build_path = build_dir
        image.image_size = get_dir_size(self.rootfs_path(image.id))
        image.is_built = True
        self.store.save(image)

        logger.info("Build completed: %s (%d bytes)", image.id, image.image_size)
        return image

    # Import

    def import_image(self, image: Image, pull_options: Optional[Dict[str, str]] = None) -> Image:
        """
        Pull an image from a registry and extract the rootfs.

        Args:
            image: Image record with name, tag and optional registry
            pull_options: {"tls_verify": "false"} disables TLS verification

        Raises:
            ToolUnavailable: If neither skopeo nor podman is available
            PullTimeout: If the pull exceeds the build timeout
            SubprocessFailure: If a pull tool fails (output included)
        """
        if self.pull_tool is None:
            raise ToolUnavailable("No tools available to pull images (skopeo or podman required)")

        pull_options = pull_options or {}
        tls_verify = str(pull_options.get("tls_verify", "true")).lower() != "false"

        self._mark_unbuilt(image)
        deadline = _Deadline(self.timeout)

        reference = image.reference
        archive = self.archive_path(image.id)
        os.makedirs(self.oci_dir(image.id), exist_ok=True)
        logger.info("Pulling image %s with %s", reference, self.pull_tool)

        try:
            if self.pull_tool == "skopeo":
                argv = [self.tools.require("skopeo"), "copy"]
                if not tls_verify:
                    argv.append("--src-tls-verify=false")
                argv += [f"docker://{reference}", f"oci-archive:{archive}"]
                self._run(argv, deadline, "skopeo pull failed", PullTimeout)
            else:
                podman = self.tools.require("podman")
                argv = [podman, "pull"]
                if not tls_verify:
                    argv.append("--tls-verify=false")
                argv.append(reference)
                self._run(argv, deadline, "podman pull failed", PullTimeout)
                self._run(
                    [podman, "save", "--format", "oci-archive", "-o", archive, reference],
                    deadline,
                    "failed to save pulled image",
                    PullTimeout,
                )

            self.extract_rootfs(image, deadline, PullTimeout)
        except DockyardError:
            self._mark_unbuilt(image)
            raise

        image.image_size = get_dir_size(self.rootfs_path(image.id))
        image.pull_count += 1
        image.last_pulled = time.time()
        image.is_built = True
        self.store.save(image)

        logger.info("Import completed: %s (%s)", image.id, reference)
        return image

    # Extraction

    def extract_rootfs(
        self, image: Image, deadline: _Deadline, timeout_error=BuildTimeout
    ) -> str:
        """Extract images/<id>/rootfs from the image's OCI archive."""
        rootfs = self.rootfs_path(image.id)
        if os.path.isdir(rootfs):
            shutil.rmtree(rootfs)

        if self.tools.has("umoci"):
            self._extract_with_umoci(image, deadline, timeout_error)
        else:
            self._extract_manually(image, deadline, timeout_error)
        return rootfs

    def _extract_with_umoci(self, image: Image, deadline: _Deadline, timeout_error) -> None:
        oci_dir = self.oci_dir(image.id)
        layout = os.path.join(oci_dir, "layout")
        bundle = os.path.join(oci_dir, "bundle")
        for path in (layout, bundle):
            if os.path.isdir(path):
                shutil.rmtree(path)

        os.makedirs(layout)
        extract_archive(self.archive_path(image.id), layout)

        image_ref = layout
        ref_name = _layout_ref_name(layout)
        if ref_name:
            image_ref = f"{layout}:{ref_name}"

        self._run(
            [self.tools.require("umoci"), "unpack", "--image", image_ref, bundle],
            deadline,
            "failed to unpack OCI image",
            timeout_error,
        )

        shutil.move(os.path.join(bundle, "rootfs"), self.rootfs_path(image.id))
        shutil.rmtree(bundle, ignore_errors=True)
        shutil.rmtree(layout, ignore_errors=True)

    def _extract_manually(self, image: Image, deadline: _Deadline, timeout_error) -> None:
        """Create a throwaway container from the archive and export its filesystem."""
        if not self.tools.has("podman"):
            raise ToolUnavailable("rootfs extraction requires umoci or podman")
        podman = self.tools.require("podman")
        oci_dir = self.oci_dir(image.id)
        fs_tar = os.path.join(oci_dir, "fs.tar")
        rootfs = self.rootfs_path(image.id)

        result = self._run(
            [podman, "create", f"oci-archive:{self.archive_path(image.id)}"],
            deadline,
            "failed to create temporary container",
            timeout_error,
        )
        temp_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""

        try:
            self._run(
                [podman, "export", "-o", fs_tar, temp_id],
                deadline,
                "failed to export container",
                timeout_error,
            )
        finally:
            removed = self.runner.run([podman, "rm", temp_id], timeout=deadline.remaining())
            if not removed.ok:
                logger.warning("Failed to remove temporary container %s", temp_id)

        os.makedirs(rootfs, exist_ok=True)
        tar = self.tools.get("tar") or "tar"
        self._run(
            [tar, "-xf", fs_tar, "-C", rootfs],
            deadline,
            "failed to extract rootfs",
            timeout_error,
        )
        os.remove(fs_tar)

    def remove_image_files(self, image_id: str) -> None:
        """Delete images/<id>. Best effort."""
        path = self.image_dir(image_id)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove image directory %s: %s", path, e)


def _layout_ref_name(layout: str) -> Optional[str]:
    """First ref name annotated in an OCI layout's index.json."""
    try:
        with open(os.path.join(layout, "index.json")) as f:
            index = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None

    for manifest in index.get("manifests", []):
        name = (manifest.get("annotations") or {}).get(REF_ANNOTATION)
        if name:
            return name
    return None


def extract_archive(archive_path: str, dest: str) -> None:
    """
    Extract a tar archive into dest.

    Every member must resolve inside dest; links and device nodes are
    refused.

    Raises:
        ArchiveError: If the archive is unreadable or a member is refused
    """
    root = os.path.realpath(dest)
    try:
        with tarfile.open(archive_path) as archive:
            members = archive.getmembers()
            for member in members:
                target = os.path.realpath(os.path.join(root, member.name))
                if os.path.commonpath([root, target]) != root:
                    raise ArchiveError(
                        f"{archive_path}: member {member.name} escapes {dest}"
                    )
                if member.issym() or member.islnk() or member.isdev():
                    raise ArchiveError(
                        f"{archive_path}: refusing link or device member {member.name}"
                    )
            if hasattr(tarfile, "data_filter"):
                archive.extractall(root, members=members, filter="data")
            else:
                archive.extractall(root, members=members)
    except tarfile.TarError as e:
        raise ArchiveError(f"Cannot read {archive_path}: {e}") from e
