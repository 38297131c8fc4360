"""Tests for the container service, driven through a fake runc."""

import json
import os
import threading
import time

import pytest

from dockyard.container import (
    EXIT_CODE_UNKNOWN,
    ContainerCreateRequest,
    ContainerService,
    ImageCreateRequest,
)
from dockyard.errors import (
    DuplicateName,
    ImageInUse,
    ImageNotBuilt,
    InvalidState,
    NotFound,
    ShutdownPartialFailure,
    ToolUnavailable,
)
from dockyard.health import HEALTH_HEALTHY, HEALTH_UNHEALTHY
from dockyard.metadata import (
    STATUS_CREATED,
    STATUS_EXITED,
    STATUS_PAUSED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_STOPPING,
    Container,
    HealthCheckConfig,
    Image,
    RecordStore,
    VolumeMount,
)
from dockyard.runner import ToolTable
from dockyard.volumes import VolumeCreateOptions

ALL_STATUSES = [
    STATUS_CREATED,
    STATUS_RUNNING,
    STATUS_PAUSED,
    STATUS_STOPPING,
    STATUS_STOPPED,
    STATUS_EXITED,
]

ALLOWED = {
    (STATUS_CREATED, STATUS_RUNNING),
    (STATUS_RUNNING, STATUS_PAUSED),
    (STATUS_RUNNING, STATUS_STOPPING),
    (STATUS_RUNNING, STATUS_STOPPED),
    (STATUS_RUNNING, STATUS_EXITED),
    (STATUS_PAUSED, STATUS_RUNNING),
    (STATUS_PAUSED, STATUS_STOPPING),
    (STATUS_PAUSED, STATUS_STOPPED),
    (STATUS_STOPPING, STATUS_STOPPED),
    (STATUS_STOPPING, STATUS_EXITED),
    (STATUS_STOPPED, STATUS_RUNNING),
    (STATUS_EXITED, STATUS_RUNNING),
}


def create(service, image, name="web", **kwargs):
    return service.create_container(
        "alice", ContainerCreateRequest(name=name, image_id=image.id, **kwargs)
    )


def runc_call(config, *args):
    return ["runc", "--root", config.runtime_root, *args]


class TestStatusTransitions:
    """Test the single status-update path."""

    @pytest.mark.parametrize("source", ALL_STATUSES)
    @pytest.mark.parametrize("target", ALL_STATUSES)
    def test_transition_table(self, service, make_container, source, target):
        """Test only listed transitions are accepted."""
        container = make_container(status=source)

        if (source, target) in ALLOWED:
            updated = service._update_status(container.id, target)
            assert updated.status == target
        else:
            with pytest.raises(InvalidState):
                service._update_status(container.id, target)
            assert service.get_container(container.id).status == source

    def test_timestamps(self, service, make_container):
        """Test each status stamps its timestamp."""
        container = make_container()

        running = service._update_status(container.id, STATUS_RUNNING)
        paused = service._update_status(container.id, STATUS_PAUSED)
        resumed = service._update_status(container.id, STATUS_RUNNING)
        stopped = service._update_status(container.id, STATUS_STOPPED, exit_code=0)

        assert running.started_at is not None
        assert paused.last_paused_at is not None
        assert resumed.last_resumed_at is not None
        assert resumed.started_at == running.started_at
        assert stopped.stopped_at is not None
        assert stopped.exit_code == 0

    def test_unknown_container(self, service):
        """Test updating an unknown container."""
        with pytest.raises(NotFound):
            service._update_status("ghost", STATUS_RUNNING)


class TestImages:
    """Test image records."""

    def test_create_image(self, service):
        """Test registering a registry image."""
        image = service.create_image("alice", ImageCreateRequest(name="alpine", tag="3.19"))

        assert image.is_built is False
        assert service.get_image(image.id).reference == "alpine:3.19"

    def test_duplicate_image(self, service):
        """Test name and tag are unique per owner."""
        service.create_image("alice", ImageCreateRequest(name="alpine"))

        with pytest.raises(DuplicateName):
            service.create_image("alice", ImageCreateRequest(name="alpine"))
        service.create_image("alice", ImageCreateRequest(name="alpine", tag="edge"))

    def test_dockerfile_required(self, service):
        """Test dockerfile images need a Dockerfile."""
        with pytest.raises(ValueError):
            service.create_image("alice", ImageCreateRequest(name="web", source="dockerfile"))

    def test_delete_image_in_use(self, service, built_image):
        """Test an image with containers cannot be deleted."""
        create(service, built_image)

        with pytest.raises(ImageInUse):
            service.delete_image(built_image.id)

    def test_delete_image(self, service, built_image, config):
        """Test deleting an unused image removes its files."""
        service.delete_image(built_image.id)

        assert not os.path.exists(os.path.join(config.images_path, built_image.id))
        with pytest.raises(NotFound):
            service.get_image(built_image.id)

    def test_list_images(self, service, built_image, store):
        """Test listing by owner."""
        store.save(Image(owner="bob", name="busybox", is_public=True))

        assert [i.name for i in service.list_images("alice")] == ["alpine"]
        assert len(service.list_images("alice", include_public=True)) == 2


class TestCreateContainer:
    """Test container creation."""

    def test_create(self, service, built_image, config):
        """Test the bundle, record and event log."""
        container = create(service, built_image, env=["DEBUG=1"])

        bundle = os.path.join(config.containers_path, container.id)
        assert container.status == STATUS_CREATED
        assert os.path.isfile(os.path.join(bundle, "rootfs", "bin", "sh"))

        with open(os.path.join(bundle, "config.json")) as f:
            oci = json.load(f)
        assert oci["process"]["args"] == ["/bin/sh", "-c", "sleep infinity"]
        assert "LANG=C.UTF-8" in oci["process"]["env"]
        assert "DEBUG=1" in oci["process"]["env"]
        assert oci["linux"]["resources"]["memory"]["limit"] == 512 * 1024 * 1024

        assert service.get_container(container.id).name == "web"
        assert any("Container created" in line for line in service.get_events(container.id))

    def test_command_override(self, service, built_image):
        """Test an explicit command replaces the image default."""
        container = create(service, built_image, command=["echo", "hi"], working_dir="/tmp")

        assert container.command == ["echo", "hi"]
        assert container.working_dir == "/tmp"

    def test_duplicate_name(self, service, built_image):
        """Test names are unique per owner."""
        create(service, built_image)

        with pytest.raises(DuplicateName):
            create(service, built_image)

    def test_unbuilt_image(self, service, store):
        """Test an image must be built first."""
        image = Image(owner="alice", name="pending")
        store.save(image)

        with pytest.raises(ImageNotBuilt):
            create(service, image)

    def test_invalid_restart_policy(self, service, built_image):
        """Test unknown restart policies are rejected."""
        with pytest.raises(ValueError):
            create(service, built_image, restart_policy="sometimes")

    def test_with_volume(self, service, built_image, config):
        """Test volumes are mounted and bound into the bundle."""
        volume = service.volumes.create_volume("alice", VolumeCreateOptions(name="data"))

        container = create(
            service,
            built_image,
            volumes=[VolumeMount(volume_id=volume.id, destination="/data", readonly=True)],
        )

        assert service.volumes.get_volume(volume.id).ref_count == 1
        assert [m.destination for m in container.volumes] == ["/data"]
        with open(os.path.join(config.containers_path, container.id, "config.json")) as f:
            binds = [m for m in json.load(f)["mounts"] if m["type"] == "bind"]
        assert binds == [
            {"destination": "/data", "type": "bind", "source": volume.path, "options": ["rbind", "ro"]}
        ]

    def test_rollback_on_missing_volume(self, service, built_image, config, store):
        """Test a failed step removes the record, mounts and bundle."""
        volume = service.volumes.create_volume("alice", VolumeCreateOptions(name="data"))

        with pytest.raises(NotFound):
            create(
                service,
                built_image,
                volumes=[
                    VolumeMount(volume_id=volume.id, destination="/data"),
                    VolumeMount(volume_id="missing", destination="/other"),
                ],
            )

        assert store.find(Container, name="web") == []
        assert service.volumes.get_volume(volume.id).ref_count == 0
        assert os.listdir(config.containers_path) == []

    def test_networked_container(self, config, store, runner, runc, tools, built_image):
        """Test the bridge connection and network namespace path."""
        config.enable_networking = True
        service = ContainerService(config, store=store, runner=runner, tools=tools)
        service.volumes.initialize()

        container = create(service, built_image, ports=["8080:80"])

        assert container.ip_address == "172.30.0.3"
        assert ["ip", "netns", "add", container.id] in runner.calls
        with open(os.path.join(config.containers_path, container.id, "config.json")) as f:
            namespaces = json.load(f)["linux"]["namespaces"]
        assert {"type": "network", "path": f"/run/netns/{container.id}"} in namespaces
        resolv = os.path.join(config.containers_path, container.id, "rootfs", "etc", "resolv.conf")
        assert os.path.isfile(resolv)


class TestLifecycle:
    """Test start, stop, pause and removal."""

    def test_start(self, service, built_image, config, runc, runner):
        """Test runc run and health registration."""
        container = create(service, built_image, restart_policy="always", max_retries=3)

        started = service.start_container(container.id)

        bundle = os.path.join(config.containers_path, container.id)
        assert runc_call(config, "run", "-d", "--bundle", bundle, container.id) in runner.calls
        assert started.status == STATUS_RUNNING
        assert started.started_at is not None
        assert runc.states[container.id] == "running"
        assert service.health.get_status(container.id).max_retries == 3

    def test_start_running(self, service, built_image):
        """Test starting a running container fails."""
        container = create(service, built_image)
        service.start_container(container.id)

        with pytest.raises(InvalidState):
            service.start_container(container.id)

    def test_start_stale_record(self, service, built_image, store, runc):
        """Test a running record without a process is marked exited, then started."""
        container = create(service, built_image)
        service.start_container(container.id)
        runc.exit(container.id, 1)

        restarted = service.start_container(container.id)

        assert restarted.status == STATUS_RUNNING
        assert runc.states[container.id] == "running"

    def test_stop(self, service, built_image, config, runner, runc):
        """Test a graceful stop."""
        container = create(service, built_image)
        service.start_container(container.id)

        stopped = service.stop_container(container.id)

        assert stopped.status == STATUS_STOPPED
        assert stopped.stopped_at is not None
        assert runc_call(config, "kill", container.id, "SIGTERM") in runner.calls
        assert runc_call(config, "kill", container.id, "SIGKILL") not in runner.calls
        assert runc_call(config, "delete", container.id) in runner.calls
        assert not service.health.is_registered(container.id)

    def test_stop_escalates_to_sigkill(self, service, built_image, config, runner, runc):
        """Test a container ignoring SIGTERM is killed after the timeout."""
        container = create(service, built_image)
        service.start_container(container.id)
        runc.ignore_sigterm.add(container.id)

        begin = time.monotonic()
        stopped = service.stop_container(container.id, timeout=0.3)

        assert time.monotonic() - begin >= 0.3
        assert stopped.status == STATUS_STOPPED
        assert runc_call(config, "kill", container.id, "SIGKILL") in runner.calls

    def test_stop_not_running(self, service, built_image):
        """Test stopping a created container fails."""
        container = create(service, built_image)

        with pytest.raises(InvalidState):
            service.stop_container(container.id)

    def test_restart_after_stop(self, service, built_image):
        """Test a stopped container can start again."""
        container = create(service, built_image)
        service.start_container(container.id)
        service.stop_container(container.id)

        assert service.start_container(container.id).status == STATUS_RUNNING

    def test_pause_and_resume(self, service, built_image, config, runner, runc):
        """Test checkpoint on pause and restore on start."""
        container = create(service, built_image)
        service.start_container(container.id)

        paused = service.pause_container(container.id)

        checkpoint = os.path.join(config.checkpoints_path, container.id)
        assert paused.status == STATUS_PAUSED
        assert paused.checkpoint_path == checkpoint
        assert runc_call(config, "checkpoint", "--image-path", checkpoint, container.id) in runner.calls
        assert not service.health.is_registered(container.id)

        resumed = service.start_container(container.id)

        bundle = os.path.join(config.containers_path, container.id)
        assert resumed.status == STATUS_RUNNING
        assert resumed.last_resumed_at is not None
        assert runc_call(config, "restore", "-d", "--image-path", checkpoint, "--bundle", bundle, container.id) in runner.calls
        assert service.health.is_registered(container.id)

    def test_resume_container(self, service, built_image, runc):
        """Test resuming a paused container directly."""
        container = create(service, built_image)
        service.start_container(container.id)
        service.pause_container(container.id)

        resumed = service.resume_container(container.id)

        assert resumed.status == STATUS_RUNNING
        assert runc.states[container.id] == "running"
        assert any("resumed from checkpoint" in line for line in service.get_events(container.id))

    def test_resume_not_paused(self, service, built_image):
        """Test only paused containers can be resumed."""
        container = create(service, built_image)
        service.start_container(container.id)

        with pytest.raises(InvalidState):
            service.resume_container(container.id)

    def test_stop_paused(self, service, built_image):
        """Test a paused container can be stopped."""
        container = create(service, built_image)
        service.start_container(container.id)
        service.pause_container(container.id)

        assert service.stop_container(container.id).status == STATUS_STOPPED

    def test_remove_running(self, service, built_image):
        """Test running containers cannot be removed."""
        container = create(service, built_image)
        service.start_container(container.id)

        with pytest.raises(InvalidState):
            service.remove_container(container.id)

    def test_remove(self, service, built_image, config):
        """Test removal releases volumes and deletes files and record."""
        volume = service.volumes.create_volume("alice", VolumeCreateOptions(name="data"))
        container = create(
            service, built_image, volumes=[VolumeMount(volume_id=volume.id, destination="/data")]
        )
        service.start_container(container.id)
        service.stop_container(container.id)

        service.remove_container(container.id)

        assert not os.path.exists(os.path.join(config.containers_path, container.id))
        assert service.volumes.get_volume(volume.id).ref_count == 0
        with pytest.raises(NotFound):
            service.get_container(container.id)

    def test_list_containers(self, service, built_image):
        """Test filtering by status."""
        a = create(service, built_image, name="a")
        create(service, built_image, name="b")
        service.start_container(a.id)

        assert [c.name for c in service.list_containers("alice", status="running")] == ["a"]
        assert len(service.list_containers("alice")) == 2
        assert service.list_containers("bob") == []


class TestHealth:
    """Test health queries and restart integration."""

    def test_running_without_probe(self, service, built_image):
        """Test a running container without a probe is healthy."""
        container = create(service, built_image)
        service.start_container(container.id)

        health = service.get_health(container.id)

        assert health.is_running is True
        assert health.health_status == HEALTH_HEALTHY

    def test_probe_failure(self, service, built_image, runc, runner, config):
        """Test a failing probe reports unhealthy."""
        container = create(
            service,
            built_image,
            healthcheck=HealthCheckConfig(test=["/bin/check"], timeout=2.0),
        )
        service.start_container(container.id)
        runc.probes[container.id] = 1

        health = service.get_health(container.id)

        assert health.is_running is True
        assert health.health_status == HEALTH_UNHEALTHY
        index = runner.calls.index(runc_call(config, "exec", container.id, "/bin/check"))
        assert runner.timeouts[index] == 2.0

    def test_probe_timeout(self, service, built_image, runc):
        """Test a probe timing out reports unhealthy."""
        container = create(
            service, built_image, healthcheck=HealthCheckConfig(test=["/bin/check"])
        )
        service.start_container(container.id)
        runc.probes[container.id] = "timeout"

        assert service.get_health(container.id).health_status == HEALTH_UNHEALTHY

    def test_exit_code_of_gone_container(self, service, built_image, runc):
        """Test the exit code comes from the failed state query."""
        container = create(service, built_image)
        service.start_container(container.id)
        runc.exit(container.id, 137)

        health = service.get_health(container.id)

        assert health.is_running is False
        assert health.exit_code == 137
        assert "does not exist" in health.error

    def test_monitor_restarts_exited_container(self, service, built_image, runc):
        """Test an always-policy container is restarted by a health cycle."""
        container = create(service, built_image, restart_policy="always", max_retries=3)
        service.start_container(container.id)
        runc.exit(container.id, 1)

        service.health.check_all()

        assert runc.states[container.id] == "running"
        assert service.get_container(container.id).status == STATUS_RUNNING
        assert service.health.get_status(container.id).failure_count == 1

    def test_monitor_leaves_clean_exit(self, service, built_image, runc):
        """Test on-failure leaves a clean exit alone."""
        container = create(service, built_image, restart_policy="on-failure")
        service.start_container(container.id)
        runc.exit(container.id, 0)

        service.health.check_all()

        assert container.id not in runc.states

    def test_crash_leaves_stopped_state(self, service, built_image, runc):
        """Test a process that died on its own with runc still listing it."""
        container = create(service, built_image)
        service.start_container(container.id)
        runc.states[container.id] = "stopped"

        health = service.get_health(container.id)

        assert health.is_running is False
        assert health.exit_code == EXIT_CODE_UNKNOWN
        assert "without a recorded exit status" in health.error

    def test_stopped_state_uses_recorded_exit_code(self, service, built_image, runc, store):
        """Test a recorded exit code wins over the unknown marker."""
        container = create(service, built_image)
        service.start_container(container.id)
        runc.states[container.id] = "stopped"

        def record_exit(record):
            record.exit_code = 3

        store.update(Container, container.id, record_exit)

        assert service.get_health(container.id).exit_code == 3

    def test_on_failure_restarts_crash_with_stopped_state(self, service, built_image, runc):
        """Test on-failure restarts a container runc reports as stopped."""
        container = create(service, built_image, restart_policy="on-failure")
        service.start_container(container.id)
        runc.states[container.id] = "stopped"

        service.health.check_all()

        assert runc.states[container.id] == "running"
        assert service.health.get_status(container.id).restarts == 1


class TestInitialize:
    """Test service startup."""

    def test_reconcile_records(self, service, built_image, store, runc, runner, config):
        """Test running records are re-registered or marked exited."""
        alive = create(service, built_image, name="alive")
        gone = create(service, built_image, name="gone")
        for container in (alive, gone):
            container = store.load(Container, container.id)
            container.status = STATUS_RUNNING
            store.save(container)
        runc.states[alive.id] = "running"

        service.initialize()

        assert ["runc", "--version"] in runner.calls
        assert service.health.is_registered(alive.id)
        assert service.get_container(gone.id).status == STATUS_EXITED
        assert service.health.running

    def test_autostart(self, config, store, runner, runc, tools, built_image):
        """Test autostart containers start with the service."""
        config.enable_autostart = True
        service = ContainerService(config, store=store, runner=runner, tools=tools)
        service.volumes.initialize()
        container = create(service, built_image, is_autostart=True)
        create(service, built_image, name="manual")

        try:
            service.initialize()
            assert service.get_container(container.id).status == STATUS_RUNNING
            assert len(service.list_containers("alice", status=STATUS_RUNNING)) == 1
        finally:
            service.health.stop(timeout=1)

    def test_builder_optional(self, config, store, runner, runc):
        """Test a host without build tools still runs containers."""
        service = ContainerService(config, store=store, runner=runner, tools=ToolTable({"runc": "runc"}))

        assert service.builder is None
        assert service.network is None
        image = service.create_image("alice", ImageCreateRequest(name="alpine"))
        with pytest.raises(ToolUnavailable):
            service.pull_image(image.id)


class TestShutdown:
    """Test deadline-bounded shutdown."""

    def test_graceful(self, service, built_image, runner, config):
        """Test running containers are stopped; others are untouched."""
        a = create(service, built_image, name="a")
        b = create(service, built_image, name="b")
        idle = create(service, built_image, name="idle")
        service.start_container(a.id)
        service.start_container(b.id)
        service.health.start()

        service.shutdown(timeout=5)

        assert service.get_container(a.id).status == STATUS_STOPPED
        assert service.get_container(b.id).status == STATUS_STOPPED
        assert service.get_container(idle.id).status == STATUS_CREATED
        assert not service.health.running
        assert not any("SIGKILL" in call for call in runner.calls)

    def test_stuck_and_failing_containers(self, service, built_image, runc, runner, config):
        """Test a stuck container is killed while another fails independently."""
        stuck = create(service, built_image, name="stuck")
        broken = create(service, built_image, name="broken")
        service.start_container(stuck.id)
        service.start_container(broken.id)
        runc.ignore_sigterm.add(stuck.id)
        runc.unkillable.add(broken.id)

        deadline = 1.0
        begin = time.monotonic()
        with pytest.raises(ShutdownPartialFailure) as exc:
            service.shutdown(timeout=deadline)
        elapsed = time.monotonic() - begin

        assert elapsed < deadline * 1.9
        assert service.get_container(stuck.id).status == STATUS_STOPPED
        assert runc_call(config, "kill", stuck.id, "SIGKILL") in runner.calls
        assert len(exc.value.errors) == 1
        assert broken.id in exc.value.errors[0]

    def test_grace_window_caps_deadline(self, service, built_image, runc, config):
        """Test the stop grace window bounds the wait under a long deadline."""
        stuck = create(service, built_image, name="stuck")
        service.start_container(stuck.id)
        runc.ignore_sigterm.add(stuck.id)
        config.stop_grace_seconds = 0.2

        begin = time.monotonic()
        service.shutdown(timeout=30)

        assert time.monotonic() - begin < 5
        assert service.get_container(stuck.id).status == STATUS_STOPPED

    def test_nothing_running(self, service):
        """Test shutdown with no containers."""
        service.shutdown(timeout=1)


class InterleavingStore(RecordStore):
    """
    Runs a hook on another thread the first time a container record is
    loaded after arm(), while the loading call is still in progress.
    """

    def __init__(self, root):
        super().__init__(root)
        self.hook = None
        self.worker = None

    def arm(self, hook):
        self.hook = hook

    def load(self, cls, record_id):
        record = super().load(cls, record_id)
        if cls is Container and self.hook is not None:
            hook, self.hook = self.hook, None
            self.worker = threading.Thread(target=hook)
            self.worker.start()
            # Give the hook the chance to write in between
            self.worker.join(0.3)
        return record


class TestRecordConsistency:
    """Test concurrent writers of one container record keep each other's changes."""

    @pytest.fixture
    def interleaving(self, config, runner, runc, tools):
        store = InterleavingStore(config.records_path)
        service = ContainerService(config, store=store, runner=runner, tools=tools)
        service.volumes.initialize()
        yield service
        service.health.stop(timeout=1)

    def test_status_change_during_mount(self, interleaving, built_image):
        """Test a status write racing a volume mount."""
        container = create(interleaving, built_image)
        volume = interleaving.volumes.create_volume("alice", VolumeCreateOptions(name="data"))

        interleaving.store.arm(lambda: interleaving._update_status(container.id, STATUS_RUNNING))
        interleaving.volumes.mount_volume(volume.id, container.id, "/data")
        interleaving.store.worker.join(5)

        record = interleaving.get_container(container.id)
        assert record.status == STATUS_RUNNING
        assert [m.volume_id for m in record.volumes] == [volume.id]

    def test_mount_during_status_change(self, interleaving, built_image):
        """Test a volume mount racing a status write."""
        container = create(interleaving, built_image)
        volume = interleaving.volumes.create_volume("alice", VolumeCreateOptions(name="data"))

        interleaving.store.arm(
            lambda: interleaving.volumes.mount_volume(volume.id, container.id, "/data")
        )
        interleaving._update_status(container.id, STATUS_RUNNING)
        interleaving.store.worker.join(5)

        record = interleaving.get_container(container.id)
        assert record.status == STATUS_RUNNING
        assert [m.volume_id for m in record.volumes] == [volume.id]
