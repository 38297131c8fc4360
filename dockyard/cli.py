#!/usr/bin/env python3
"""
Command Line Interface for Dockyard.

Provides Docker-like CLI commands:
    dockyard volume create|rm|ls|mount|unmount   - Volume management
    dockyard image create|build|pull|ls|rm       - Image management
    dockyard create <name> <image> [cmd...]      - Create a container
    dockyard start <container>                   - Start a container
    dockyard stop <container>                    - Stop a container
    dockyard rm <container>                      - Remove a container
    dockyard ps                                  - List containers
    dockyard inspect <container>                 - Inspect a container
    dockyard events <container>                  - Show container events
    dockyard health <container>                  - Query container health
    dockyard network setup|cleanup|info          - Bridge management
    dockyard serve                               - Supervise containers until signalled
    dockyard shutdown                            - Stop every running container
"""

import argparse
import getpass
import json
import signal
import sys
import threading
from dataclasses import asdict
from datetime import datetime
from typing import Dict, List, Optional

import yaml

from dockyard import __version__
from dockyard.config import ServiceConfig
from dockyard.container import (
    ContainerCreateRequest,
    ContainerService,
    ImageCreateRequest,
)
from dockyard.errors import DockyardError, NotFound, ShutdownPartialFailure
from dockyard.logger import configure_logging
from dockyard.metadata import Container, HealthCheckConfig, Image, VolumeMount
from dockyard.utils import ensure_directories
from dockyard.volumes import VolumeCreateOptions


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with all commands and options."""
    parser = argparse.ArgumentParser(
        prog="dockyard",
        description="Dockyard: local container orchestration on top of runc",
    )

    # Global options
    parser.add_argument(
        "--version", "-v", action="version", version=f"Dockyard {__version__}"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument(
        "--owner", default=None, help="Owner of created resources (default: current user)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # =========================================================================
    # volume commands
    # =========================================================================
    volume_parser = subparsers.add_parser("volume", help="Volume management")
    volume_sub = volume_parser.add_subparsers(dest="volume_command")

    vol_create = volume_sub.add_parser("create", help="Create a volume")
    vol_create.add_argument("name", help="Volume name")
    vol_create.add_argument("--driver", default="local", help="Volume driver")
    vol_create.add_argument(
        "--opt", "-o", action="append", default=[], help="Driver option (KEY=VALUE)"
    )
    vol_create.add_argument(
        "--label", "-l", action="append", default=[], help="Label (KEY=VALUE)"
    )
    vol_create.add_argument("--description", default="", help="Description")
    vol_create.add_argument("--public", action="store_true", help="Share with other owners")

    vol_rm = volume_sub.add_parser("rm", help="Remove volumes")
    vol_rm.add_argument("volume", nargs="+", help="Volume name or ID")

    vol_ls = volume_sub.add_parser("ls", help="List volumes")
    vol_ls.add_argument(
        "--all", "-a", action="store_true", help="Include other owners' public volumes"
    )
    vol_ls.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    vol_mount = volume_sub.add_parser("mount", help="Mount a volume into a container")
    vol_mount.add_argument("volume", help="Volume name or ID")
    vol_mount.add_argument("container", help="Container name or ID")
    vol_mount.add_argument("destination", help="Mount point inside the container")
    vol_mount.add_argument("--read-only", action="store_true", help="Mount read-only")

    vol_unmount = volume_sub.add_parser("unmount", help="Unmount a volume")
    vol_unmount.add_argument("volume", help="Volume name or ID")
    vol_unmount.add_argument("container", help="Container name or ID")

    # =========================================================================
    # image commands
    # =========================================================================
    image_parser = subparsers.add_parser("image", help="Image management")
    image_sub = image_parser.add_subparsers(dest="image_command")

    img_create = image_sub.add_parser("create", help="Register an image")
    img_create.add_argument("name", help="Image name (name or name:tag)")
    img_create.add_argument("--registry", default="", help="Registry host")
    img_create.add_argument(
        "--dockerfile", "-f", help="Build from this Dockerfile instead of pulling"
    )
    img_create.add_argument("--description", default="", help="Description")
    img_create.add_argument(
        "--label", "-l", action="append", default=[], help="Label (KEY=VALUE)"
    )
    img_create.add_argument("--public", action="store_true", help="Share with other owners")

    img_build = image_sub.add_parser("build", help="Build a Dockerfile image")
    img_build.add_argument("image", help="Image name or ID")

    img_pull = image_sub.add_parser("pull", help="Pull a registry image")
    img_pull.add_argument("image", help="Image name or ID")
    img_pull.add_argument(
        "--tls-verify",
        choices=["true", "false"],
        default="true",
        help="Verify registry TLS certificates",
    )

    img_ls = image_sub.add_parser("ls", help="List images")
    img_ls.add_argument(
        "--all", "-a", action="store_true", help="Include other owners' public images"
    )
    img_ls.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    img_rm = image_sub.add_parser("rm", help="Remove images")
    img_rm.add_argument("image", nargs="+", help="Image name or ID")

    # =========================================================================
    # container commands
    # =========================================================================
    create_parser_ = subparsers.add_parser("create", help="Create a container")
    create_parser_.add_argument("name", help="Container name")
    create_parser_.add_argument("image", help="Image name or ID")
    create_parser_.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run")
    create_parser_.add_argument(
        "--env", "-e", action="append", default=[], help="Environment variable (KEY=VALUE)"
    )
    create_parser_.add_argument(
        "--volume",
        "-V",
        action="append",
        default=[],
        help="Mount a volume (volume:destination[:ro])",
    )
    create_parser_.add_argument(
        "--publish",
        "-p",
        action="append",
        default=[],
        help="Publish a port (host:container[/proto])",
    )
    create_parser_.add_argument(
        "--dns", action="append", default=[], help="DNS server for the container"
    )
    create_parser_.add_argument("--workdir", "-w", default="", help="Working directory")
    create_parser_.add_argument("--no-net", action="store_true", help="Disable networking")
    create_parser_.add_argument(
        "--restart",
        choices=["no", "always", "on-failure"],
        default="no",
        help="Restart policy",
    )
    create_parser_.add_argument(
        "--max-retries", type=int, default=0, help="Restart budget (0 = unlimited)"
    )
    create_parser_.add_argument("--health-cmd", help="Health probe command (run with sh -c)")
    create_parser_.add_argument(
        "--health-timeout", type=float, default=5.0, help="Health probe timeout in seconds"
    )
    create_parser_.add_argument(
        "--autostart", action="store_true", help="Start when the service starts"
    )
    create_parser_.add_argument("--public", action="store_true", help="Share with other owners")

    start_parser = subparsers.add_parser("start", help="Start containers")
    start_parser.add_argument("container", nargs="+", help="Container name or ID")

    stop_parser = subparsers.add_parser("stop", help="Stop containers")
    stop_parser.add_argument("container", nargs="+", help="Container name or ID")
    stop_parser.add_argument(
        "--time", "-t", type=float, default=None, help="Seconds to wait before SIGKILL"
    )

    rm_parser = subparsers.add_parser("rm", help="Remove containers")
    rm_parser.add_argument("container", nargs="+", help="Container name or ID")

    ps_parser = subparsers.add_parser("ps", help="List containers")
    ps_parser.add_argument(
        "--all", "-a", action="store_true", help="Show all containers (default: running)"
    )
    ps_parser.add_argument("--quiet", "-q", action="store_true", help="Only display IDs")
    ps_parser.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    inspect_parser = subparsers.add_parser("inspect", help="Inspect containers")
    inspect_parser.add_argument("container", nargs="+", help="Container name or ID")
    inspect_parser.add_argument(
        "--format", "-f", choices=["json", "yaml"], default="json", help="Output format"
    )

    events_parser = subparsers.add_parser("events", help="Show container events")
    events_parser.add_argument("container", help="Container name or ID")
    events_parser.add_argument("--tail", "-n", type=int, help="Number of lines to show")

    health_parser = subparsers.add_parser("health", help="Query container health")
    health_parser.add_argument("container", help="Container name or ID")

    # =========================================================================
    # network commands
    # =========================================================================
    network_parser = subparsers.add_parser("network", help="Bridge network management")
    network_parser.add_argument("network_command", choices=["setup", "cleanup", "info"])

    # =========================================================================
    # service commands
    # =========================================================================
    subparsers.add_parser("serve", help="Supervise containers until interrupted")

    shutdown_parser = subparsers.add_parser("shutdown", help="Stop all running containers")
    shutdown_parser.add_argument(
        "--time", "-t", type=float, default=None, help="Shutdown deadline in seconds"
    )

    return parser


def get_service() -> ContainerService:
    """Build a service for a single CLI invocation."""
    config = ServiceConfig.from_env()
    ensure_directories(*config.all_paths())
    service = ContainerService(config)
    service.volumes.initialize()
    return service


def get_owner(args: argparse.Namespace) -> str:
    return args.owner or getpass.getuser()


def parse_key_values(items: List[str]) -> Dict[str, str]:
    """Parse KEY=VALUE arguments."""
    result = {}
    for item in items:
        if "=" not in item:
            raise ValueError(f"Expected KEY=VALUE, got: {item}")
        key, value = item.split("=", 1)
        result[key] = value
    return result


def parse_name_tag(ref: str):
    """Split "name[:tag]"; a colon before the last slash belongs to a registry port."""
    if ":" in ref.rsplit("/", 1)[-1]:
        name, tag = ref.rsplit(":", 1)
        return name, tag
    return ref, "latest"


def parse_volume_arg(spec: str):
    """Parse "volume:destination[:ro]"."""
    parts = spec.split(":")
    if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid volume format: {spec}")
    readonly = len(parts) == 3 and parts[2] == "ro"
    if len(parts) == 3 and parts[2] not in ("ro", "rw"):
        raise ValueError(f"Invalid volume mode: {parts[2]}")
    return parts[0], parts[1], readonly


def resolve_container(service: ContainerService, owner: str, ref: str) -> Container:
    """Find a container by ID, then by name among the owner's containers."""
    try:
        return service.get_container(ref)
    except NotFound:
        pass
    for container in service.list_containers(owner):
        if container.name == ref:
            return container
    raise NotFound("container", ref)


def resolve_image(service: ContainerService, owner: str, ref: str) -> Image:
    """Find an image by ID, then by name[:tag] among the owner's images."""
    try:
        return service.get_image(ref)
    except NotFound:
        pass
    name, tag = parse_name_tag(ref)
    for image in service.list_images(owner, include_public=True):
        if image.name == name and image.tag == tag:
            return image
    raise NotFound("image", ref)


def format_time(ts: Optional[float]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def cmd_volume(args: argparse.Namespace) -> int:
    """Handle volume commands."""
    service = get_service()
    owner = get_owner(args)
    volumes = service.volumes

    if args.volume_command == "create":
        volume = volumes.create_volume(
            owner,
            VolumeCreateOptions(
                name=args.name,
                driver=args.driver,
                driver_opts=parse_key_values(args.opt),
                labels=parse_key_values(args.label),
                is_public=args.public,
                description=args.description,
            ),
        )
        print(volume.id)
        return 0

    if args.volume_command == "rm":
        exit_code = 0
        for ref in args.volume:
            try:
                volume = volumes.find_volume(owner, ref)
                volumes.remove_volume(volume.id)
                print(f"Removed: {ref}")
            except DockyardError as e:
                print(f"Error removing {ref}: {e}", file=sys.stderr)
                exit_code = 1
        return exit_code

    if args.volume_command == "ls":
        items = volumes.list_volumes(owner, include_public=args.all)
        if args.format == "json":
            print(json.dumps([v.to_dict() for v in items], indent=2, default=str))
            return 0
        print(f"{'VOLUME ID':<14} {'NAME':<20} {'DRIVER':<8} {'REFS':<6} {'CREATED'}")
        for v in items:
            print(
                f"{v.id:<14} {v.name[:20]:<20} {v.driver:<8} {v.ref_count:<6} "
                f"{format_time(v.created_at)}"
            )
        return 0

    if args.volume_command == "mount":
        volume = volumes.find_volume(owner, args.volume)
        container = resolve_container(service, owner, args.container)
        volume = volumes.mount_volume(
            volume.id, container.id, args.destination, args.read_only
        )
        print(f"Mounted {volume.name} into {container.name} at {args.destination}")
        return 0

    if args.volume_command == "unmount":
        volume = volumes.find_volume(owner, args.volume)
        container = resolve_container(service, owner, args.container)
        volumes.unmount_volume(volume.id, container.id)
        print(f"Unmounted {volume.name} from {container.name}")
        return 0

    print("Usage: dockyard volume {create,rm,ls,mount,unmount}", file=sys.stderr)
    return 1


def cmd_image(args: argparse.Namespace) -> int:
    """Handle image commands."""
    service = get_service()
    owner = get_owner(args)

    if args.image_command == "create":
        name, tag = parse_name_tag(args.name)
        dockerfile = ""
        if args.dockerfile:
            with open(args.dockerfile, "r") as f:
                dockerfile = f.read()
        image = service.create_image(
            owner,
            ImageCreateRequest(
                name=name,
                tag=tag,
                registry=args.registry,
                source="dockerfile" if dockerfile else "registry",
                dockerfile=dockerfile,
                description=args.description,
                labels=parse_key_values(args.label),
                is_public=args.public,
            ),
        )
        print(image.id)
        return 0

    if args.image_command == "build":
        image = resolve_image(service, owner, args.image)
        image = service.build_image(image.id)
        print(f"Built {image.name}:{image.tag} ({image.image_size} bytes)")
        return 0

    if args.image_command == "pull":
        image = resolve_image(service, owner, args.image)
        image = service.pull_image(image.id, {"tls_verify": args.tls_verify})
        print(f"Pulled {image.reference} ({image.image_size} bytes)")
        return 0

    if args.image_command == "ls":
        items = service.list_images(owner, include_public=args.all)
        if args.format == "json":
            print(json.dumps([asdict(i) for i in items], indent=2, default=str))
            return 0
        print(f"{'IMAGE ID':<14} {'NAME':<24} {'TAG':<12} {'BUILT':<6} {'SIZE':<12}")
        for i in items:
            print(
                f"{i.id:<14} {i.name[:24]:<24} {i.tag[:12]:<12} "
                f"{'yes' if i.is_built else 'no':<6} {i.image_size:<12}"
            )
        return 0

    if args.image_command == "rm":
        exit_code = 0
        for ref in args.image:
            try:
                image = resolve_image(service, owner, ref)
                service.delete_image(image.id)
                print(f"Removed: {ref}")
            except DockyardError as e:
                print(f"Error removing {ref}: {e}", file=sys.stderr)
                exit_code = 1
        return exit_code

    print("Usage: dockyard image {create,build,pull,ls,rm}", file=sys.stderr)
    return 1


def cmd_create(args: argparse.Namespace) -> int:
    """Handle create command."""
    service = get_service()
    owner = get_owner(args)
    image = resolve_image(service, owner, args.image)

    mounts = []
    for spec in args.volume:
        ref, destination, readonly = parse_volume_arg(spec)
        volume = service.volumes.find_volume(owner, ref)
        mounts.append(
            VolumeMount(volume_id=volume.id, destination=destination, readonly=readonly)
        )

    healthcheck = None
    if args.health_cmd:
        healthcheck = HealthCheckConfig(
            test=["/bin/sh", "-c", args.health_cmd], timeout=args.health_timeout
        )

    command = list(args.cmd)
    if command and command[0] == "--":
        command = command[1:]

    container = service.create_container(
        owner,
        ContainerCreateRequest(
            name=args.name,
            image_id=image.id,
            command=command,
            env=list(args.env),
            working_dir=args.workdir,
            volumes=mounts,
            enable_network=not args.no_net,
            ports=list(args.publish),
            dns_servers=list(args.dns),
            restart_policy=args.restart,
            max_retries=args.max_retries,
            healthcheck=healthcheck,
            is_autostart=args.autostart,
            is_public=args.public,
        ),
    )
    print(container.id)
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    """Handle start command."""
    service = get_service()
    owner = get_owner(args)
    exit_code = 0

    for ref in args.container:
        try:
            container = resolve_container(service, owner, ref)
            service.start_container(container.id)
            print(f"Started: {ref}")
        except DockyardError as e:
            print(f"Error starting {ref}: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def cmd_stop(args: argparse.Namespace) -> int:
    """Handle stop command."""
    service = get_service()
    owner = get_owner(args)
    exit_code = 0

    for ref in args.container:
        try:
            container = resolve_container(service, owner, ref)
            service.stop_container(container.id, timeout=args.time)
            print(f"Stopped: {ref}")
        except DockyardError as e:
            print(f"Error stopping {ref}: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def cmd_rm(args: argparse.Namespace) -> int:
    """Handle rm command."""
    service = get_service()
    owner = get_owner(args)
    exit_code = 0

    for ref in args.container:
        try:
            container = resolve_container(service, owner, ref)
            service.remove_container(container.id)
            print(f"Removed: {ref}")
        except DockyardError as e:
            print(f"Error removing {ref}: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def cmd_ps(args: argparse.Namespace) -> int:
    """Handle ps command."""
    service = get_service()
    containers = service.list_containers(
        get_owner(args), status=None if args.all else "running"
    )

    if args.quiet:
        for c in containers:
            print(c.id)
    elif args.format == "json":
        print(json.dumps([asdict(c) for c in containers], indent=2, default=str))
    else:
        print(
            f"{'CONTAINER ID':<14} {'NAME':<20} {'STATUS':<10} {'IP':<16} {'CREATED'}"
        )
        for c in containers:
            print(
                f"{c.id:<14} {c.name[:20]:<20} {c.status:<10} "
                f"{c.ip_address or '-':<16} {format_time(c.created_at)}"
            )

    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    """Handle inspect command."""
    service = get_service()
    owner = get_owner(args)
    results = []

    for ref in args.container:
        try:
            results.append(asdict(resolve_container(service, owner, ref)))
        except NotFound as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.format == "yaml":
        print(yaml.safe_dump(results, default_flow_style=False))
    else:
        print(json.dumps(results, indent=2, default=str))

    return 0


def cmd_events(args: argparse.Namespace) -> int:
    """Handle events command."""
    service = get_service()
    container = resolve_container(service, get_owner(args), args.container)
    for line in service.get_events(container.id, tail=args.tail):
        print(line)
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    """Handle health command."""
    service = get_service()
    container = resolve_container(service, get_owner(args), args.container)
    health = service.get_health(container.id)
    print(json.dumps(health.to_dict(), indent=2, default=str))
    return 0 if health.is_running else 1


def cmd_network(args: argparse.Namespace) -> int:
    """Handle network commands."""
    service = get_service()
    if service.network is None:
        print("Error: networking is disabled or ip/iptables are missing", file=sys.stderr)
        return 1

    if args.network_command == "setup":
        service.network.setup_bridge()
        print(f"Bridge {service.network.bridge} ready ({service.network.subnet})")
    elif args.network_command == "info":
        print(json.dumps(service.network.get_info(), indent=2, default=str))
    else:
        service.network.cleanup_bridge()
        print(f"Bridge {service.network.bridge} removed")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle serve command: supervise until SIGINT/SIGTERM, then shut down."""
    service = get_service()
    service.initialize()

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    print(f"Dockyard {__version__} serving from {service.config.storage_path}")

    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass

    return _shutdown(service, None)


def cmd_shutdown(args: argparse.Namespace) -> int:
    """Handle shutdown command."""
    return _shutdown(get_service(), args.time)


def _shutdown(service: ContainerService, timeout: Optional[float]) -> int:
    try:
        service.shutdown(timeout)
    except ShutdownPartialFailure as e:
        for error in e.errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1
    print("Shutdown complete")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging("DEBUG" if args.debug else None)

    if not args.command:
        parser.print_help()
        return 0

    # Dispatch to command handler
    handlers = {
        "volume": cmd_volume,
        "image": cmd_image,
        "create": cmd_create,
        "start": cmd_start,
        "stop": cmd_stop,
        "rm": cmd_rm,
        "ps": cmd_ps,
        "inspect": cmd_inspect,
        "events": cmd_events,
        "health": cmd_health,
        "network": cmd_network,
        "serve": cmd_serve,
        "shutdown": cmd_shutdown,
    }

    handler = handlers.get(args.command)
    if handler:
        try:
            return handler(args)
        except KeyboardInterrupt:
            print("\nInterrupted")
            return 130
        except (DockyardError, ValueError, OSError) as e:
            if args.debug:
                raise
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
