"""Shared fixtures: a scripted command runner and a fake runc."""

import json
import os
import threading

import pytest

from dockyard.config import ServiceConfig
from dockyard.container import ContainerService
from dockyard.errors import CommandTimeout
from dockyard.metadata import Container, Image, RecordStore
from dockyard.runner import CommandResult, ToolTable
from dockyard.utils import ensure_directories


class FakeRunner:
    """
    Records every argv and answers from scripted rules.

    A rule matches when argv[0] equals the pattern's first element and the
    rest of the pattern appears as a contiguous run in argv[1:]. Rules
    added later win. Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls = []
        self.timeouts = []
        self._rules = []
        self._lock = threading.Lock()

    def on(self, *pattern, returncode=0, stdout="", stderr="", raises=None, handler=None):
        self._rules.insert(0, (list(pattern), returncode, stdout, stderr, raises, handler))

    @staticmethod
    def _matches(pattern, argv):
        if not argv or argv[0] != pattern[0]:
            return False
        rest = pattern[1:]
        if not rest:
            return True
        tail = argv[1:]
        return any(tail[i : i + len(rest)] == rest for i in range(len(tail) - len(rest) + 1))

    def run(self, argv, timeout=None, check=False, cwd=None):
        argv = [str(a) for a in argv]
        with self._lock:
            self.calls.append(argv)
            self.timeouts.append(timeout)
            rules = list(self._rules)

        result = CommandResult(argv, 0)
        for pattern, returncode, stdout, stderr, raises, handler in rules:
            if not self._matches(pattern, argv):
                continue
            if raises is not None:
                raise raises
            if handler is not None:
                result = handler(argv)
            else:
                result = CommandResult(argv, returncode, stdout, stderr)
            break

        if check:
            result.check()
        return result

    def commands(self, tool):
        with self._lock:
            return [argv[1:] for argv in self.calls if argv[0] == tool]


class FakeRunc:
    """
    In-memory runc: tracks container processes by ID.

    ignore_sigterm: IDs whose process survives SIGTERM
    unkillable:     IDs for which every kill fails
    exit_codes:     exit status of `state` once a container is gone
    probes:         exec return code per ID, or "timeout"
    """

    def __init__(self):
        self.states = {}
        self.ignore_sigterm = set()
        self.unkillable = set()
        self.exit_codes = {}
        self.probes = {}
        self._lock = threading.Lock()

    def __call__(self, argv):
        if argv[1] == "--version":
            return CommandResult(argv, 0, "runc version 1.1.12\n")

        verb, args = argv[3], argv[4:]
        with self._lock:
            if verb == "run":
                self.states[args[-1]] = "running"
                return CommandResult(argv, 0)

            if verb == "state":
                cid = args[0]
                if cid not in self.states:
                    return CommandResult(
                        argv,
                        self.exit_codes.get(cid, 1),
                        stderr=f"container {cid} does not exist",
                    )
                state = {
                    "id": cid,
                    "status": self.states[cid],
                    "created": "2024-01-01T00:00:00Z",
                }
                return CommandResult(argv, 0, json.dumps(state))

            if verb == "kill":
                cid, signal = args
                if cid in self.unkillable:
                    return CommandResult(argv, 1, stderr="operation not permitted")
                if cid in self.states and (
                    signal == "SIGKILL" or cid not in self.ignore_sigterm
                ):
                    self.states[cid] = "stopped"
                return CommandResult(argv, 0)

            if verb == "delete":
                self.states.pop(args[-1], None)
                return CommandResult(argv, 0)

            if verb == "exec":
                probe = self.probes.get(args[0], 0)
                if probe == "timeout":
                    raise CommandTimeout(argv, 5.0)
                return CommandResult(argv, probe, stderr="probe failed" if probe else "")

            if verb == "checkpoint":
                self.states.pop(args[-1], None)
                return CommandResult(argv, 0)

            if verb == "restore":
                self.states[args[-1]] = "running"
                return CommandResult(argv, 0)

        return CommandResult(argv, 1, stderr=f"unknown command {verb}")

    def exit(self, container_id, code=1):
        """Simulate the process exiting on its own."""
        with self._lock:
            self.states.pop(container_id, None)
            self.exit_codes[container_id] = code


ALL_TOOLS = ["runc", "ip", "iptables", "buildah", "podman", "skopeo", "umoci", "tar"]


def make_tools(*names):
    return ToolTable({name: name for name in names})


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def runc(runner):
    fake = FakeRunc()
    runner.on("runc", handler=fake)
    return fake


@pytest.fixture
def tools():
    return make_tools(*ALL_TOOLS)


@pytest.fixture
def config(tmp_path):
    config = ServiceConfig(
        storage_path=str(tmp_path / "dockyard"),
        subnet="172.30.0.0/16",
        dns_servers=["10.0.0.53"],
        enable_networking=False,
        enable_autostart=False,
        health_interval=60.0,
        build_timeout=5.0,
        stop_grace_seconds=1.0,
        command_timeout=5.0,
    )
    ensure_directories(*config.all_paths())
    return config


@pytest.fixture
def store(config):
    return RecordStore(config.records_path)


@pytest.fixture
def service(config, store, runner, runc, tools):
    service = ContainerService(config, store=store, runner=runner, tools=tools)
    service.volumes.initialize()
    yield service
    service.health.stop(timeout=1)


@pytest.fixture
def built_image(config, store):
    """An image record with an extracted rootfs, ready for containers."""
    image = Image(owner="alice", name="alpine", tag="3.19", is_built=True)
    image.cmd = ["/bin/sh", "-c", "sleep infinity"]
    image.env = ["LANG=C.UTF-8"]
    rootfs = os.path.join(config.images_path, image.id, "rootfs")
    os.makedirs(os.path.join(rootfs, "bin"))
    with open(os.path.join(rootfs, "bin", "sh"), "w") as f:
        f.write("#!fake\n")
    store.save(image)
    return image


@pytest.fixture
def make_container(store):
    """Save a bare container record (no bundle) for manager-level tests."""

    def factory(owner="alice", name="c1", **kwargs):
        container = Container(owner=owner, name=name, **kwargs)
        store.save(container)
        return container

    return factory
