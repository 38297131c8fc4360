"""Tests for bridge networking, driven through a fake command runner."""

import os
import threading
import time

import pytest

from dockyard.errors import AddressesExhausted, NotFound, SubprocessFailure
from dockyard.metadata import Container, NetworkConfig
from dockyard.network import NetworkManager, PortMapping, parse_ports, render_resolv_conf
from dockyard.runner import CommandResult, ToolTable


@pytest.fixture
def ip_forward(tmp_path):
    path = tmp_path / "ip_forward"
    path.write_text("0")
    return path


@pytest.fixture
def network(config, store, runner, tools, ip_forward):
    return NetworkManager(config, store, runner, tools, ip_forward_path=str(ip_forward))


class TestPortMapping:
    """Test port mapping parsing."""

    def test_parse_tcp(self):
        """Test the default protocol is tcp."""
        mapping = PortMapping.parse("8080:80")

        assert (mapping.host_port, mapping.container_port, mapping.protocol) == (
            "8080",
            "80",
            "tcp",
        )

    def test_parse_udp(self):
        """Test an explicit protocol."""
        assert PortMapping.parse("5353:53/udp").protocol == "udp"

    @pytest.mark.parametrize("spec", ["8080", "a:80", "80:b", "1:2:3", "80:80/icmp"])
    def test_parse_invalid(self, spec):
        """Test malformed mappings are rejected."""
        with pytest.raises(ValueError):
            PortMapping.parse(spec)

    def test_parse_ports_skips_invalid(self):
        """Test bad entries are dropped from a list."""
        assert [m.host_port for m in parse_ports(["8080:80", "junk", "9090:90"])] == [
            "8080",
            "9090",
        ]

    def test_dnat_rule(self):
        """Test the DNAT rule body."""
        rule = PortMapping.parse("8080:80").dnat_rule("PREROUTING", "172.30.0.3")

        assert rule == [
            "PREROUTING",
            "-p",
            "tcp",
            "--dport",
            "8080",
            "-j",
            "DNAT",
            "--to-destination",
            "172.30.0.3:80",
        ]


class TestBridge:
    """Test bridge setup and teardown."""

    def test_requires_tools(self, config, store, runner):
        """Test ip and iptables must be available."""
        from dockyard.errors import ToolUnavailable

        with pytest.raises(ToolUnavailable):
            NetworkManager(config, store, runner, ToolTable({"ip": "ip"}))

    def test_setup_creates_bridge(self, network, runner, ip_forward):
        """Test the full command sequence for a fresh host."""
        runner.on("ip", "link", "show", returncode=1, stderr="Device does not exist")
        runner.on("iptables", "-C", returncode=1)

        network.setup_bridge()

        assert runner.commands("ip") == [
            ["link", "show", "dockyard0"],
            ["link", "add", "name", "dockyard0", "type", "bridge"],
            ["addr", "add", "172.30.0.1/16", "dev", "dockyard0"],
            ["link", "set", "dockyard0", "up"],
        ]
        assert runner.commands("iptables") == [
            ["-t", "nat", "-C", "POSTROUTING", "-s", "172.30.0.0/16", "!", "-o", "dockyard0", "-j", "MASQUERADE"],
            ["-t", "nat", "-A", "POSTROUTING", "-s", "172.30.0.0/16", "!", "-o", "dockyard0", "-j", "MASQUERADE"],
            ["-C", "FORWARD", "-i", "dockyard0", "-j", "ACCEPT"],
            ["-A", "FORWARD", "-i", "dockyard0", "-j", "ACCEPT"],
        ]
        assert ip_forward.read_text() == "1"

    def test_setup_is_idempotent(self, network, runner):
        """Test a second call adds no interfaces or rules."""
        state = {"exists": False}

        def link_show(argv):
            return CommandResult(argv, 0 if state["exists"] else 1)

        def link_add(argv):
            state["exists"] = True
            return CommandResult(argv, 0)

        runner.on("ip", "link", "show", handler=link_show)
        runner.on("ip", "link", "add", handler=link_add)
        runner.on("iptables", "-C", returncode=1)

        network.setup_bridge()
        first = len(runner.calls)
        network.setup_bridge()

        assert runner.calls[first:] == [["ip", "link", "show", "dockyard0"]]
        adds = [c for c in runner.calls if "-A" in c or c[1:3] == ["link", "add"]]
        assert len(adds) == 3

    def test_setup_skips_existing_rules(self, network, runner):
        """Test rules already present are not appended again."""
        runner.on("ip", "link", "show", returncode=1)

        network.setup_bridge()

        assert not any("-A" in c for c in runner.commands("iptables"))

    def test_setup_failure_carries_output(self, network, runner):
        """Test tool output reaches the caller."""
        runner.on("ip", "link", "show", returncode=1)
        runner.on("ip", "link", "add", returncode=2, stderr="RTNETLINK answers: Operation not permitted")

        with pytest.raises(SubprocessFailure) as exc:
            network.setup_bridge()

        assert "Operation not permitted" in str(exc.value)

    def test_cleanup(self, network, runner):
        """Test cleanup removes rules and the bridge."""
        network.cleanup_bridge()

        assert ["-t", "nat", "-D", "POSTROUTING", "-s", "172.30.0.0/16", "!", "-o", "dockyard0", "-j", "MASQUERADE"] in runner.commands("iptables")
        assert ["link", "delete", "dockyard0", "type", "bridge"] in runner.commands("ip")

    def test_cleanup_tolerates_missing_bridge(self, network, runner):
        """Test cleanup without a bridge raises nothing."""
        runner.on("iptables", "-D", returncode=1, stderr="Bad rule")
        runner.on("ip", "link", "show", returncode=1)

        network.cleanup_bridge()

        assert ["link", "delete", "dockyard0", "type", "bridge"] not in runner.commands("ip")


class TestConnect:
    """Test wiring containers into the bridge."""

    @pytest.fixture
    def container(self, store):
        container = Container(
            owner="alice",
            name="web",
            network=NetworkConfig(bridge="dockyard0", ports=["8080:80"], dns_servers=["9.9.9.9"]),
        )
        container.id = "0123456789ab"
        store.save(container)
        return container

    def test_connect_sequence(self, network, runner, container, store, config):
        """Test the exact ip and iptables commands for one container."""
        runner.on("iptables", "-C", returncode=1)

        ip = network.connect_container(container.id)

        assert ip == "172.30.0.3"
        assert runner.commands("ip") == [
            ["netns", "add", "0123456789ab"],
            ["link", "add", "veth01234567", "type", "veth", "peer", "name", "vp01234567"],
            ["link", "set", "veth01234567", "master", "dockyard0"],
            ["link", "set", "veth01234567", "up"],
            ["link", "set", "vp01234567", "netns", "0123456789ab"],
            ["-n", "0123456789ab", "link", "set", "dev", "vp01234567", "name", "eth0"],
            ["-n", "0123456789ab", "addr", "add", "172.30.0.3/16", "dev", "eth0"],
            ["-n", "0123456789ab", "link", "set", "lo", "up"],
            ["-n", "0123456789ab", "link", "set", "eth0", "up"],
            ["-n", "0123456789ab", "route", "add", "default", "via", "172.30.0.1"],
        ]
        dnat = ["-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "172.30.0.3:80"]
        assert runner.commands("iptables") == [
            ["-t", "nat", "-C", "PREROUTING", *dnat],
            ["-t", "nat", "-A", "PREROUTING", *dnat],
            ["-t", "nat", "-C", "OUTPUT", *dnat],
            ["-t", "nat", "-A", "OUTPUT", *dnat],
        ]
        assert store.load(Container, container.id).ip_address == "172.30.0.3"

        resolv = os.path.join(config.containers_path, container.id, "rootfs", "etc", "resolv.conf")
        with open(resolv) as f:
            assert f.read() == "# Generated by dockyard\nnameserver 9.9.9.9\noptions ndots:1\n"

    def test_commands_use_timeout(self, network, runner, container):
        """Test every command carries the configured timeout."""
        network.connect_container(container.id)

        assert set(runner.timeouts) == {5.0}

    def test_allocation_scenario(self, network, store):
        """Test .3/.4/.5, then .4 is reused after a disconnect."""
        ids = []
        for name in ("a", "b", "c", "d"):
            container = Container(owner="alice", name=name)
            store.save(container)
            ids.append(container.id)

        assert [network.connect_container(cid) for cid in ids[:3]] == [
            "172.30.0.3",
            "172.30.0.4",
            "172.30.0.5",
        ]

        network.disconnect_container(ids[1])

        assert store.load(Container, ids[1]).ip_address == ""
        assert network.connect_container(ids[3]) == "172.30.0.4"

    def test_failure_rolls_back(self, network, runner, container):
        """Test a failing step removes what was created and frees the lease."""
        runner.on("ip", "route", "add", "default", returncode=2, stderr="Nexthop has invalid gateway")

        with pytest.raises(SubprocessFailure) as exc:
            network.connect_container(container.id)

        assert "invalid gateway" in str(exc.value)
        assert ["link", "delete", "veth01234567"] in runner.commands("ip")
        assert ["netns", "delete", "0123456789ab"] in runner.commands("ip")
        assert network.ipam.lookup(container.id) is None

    def test_unknown_container(self, network):
        """Test connecting an unknown container raises NotFound."""
        with pytest.raises(NotFound):
            network.connect_container("ghost")

    def test_exhausted_subnet(self, config, store, runner, tools, ip_forward):
        """Test allocation failure creates nothing."""
        config.subnet = "10.9.0.0/30"
        network = NetworkManager(config, store, runner, tools, ip_forward_path=str(ip_forward))
        container = Container(owner="alice", name="x")
        store.save(container)

        with pytest.raises(AddressesExhausted):
            network.connect_container(container.id)
        assert runner.commands("ip") == []

    def test_disconnect(self, network, runner, container):
        """Test disconnect removes forwards, veth, namespace and lease."""
        network.connect_container(container.id)
        before = len(runner.calls)

        network.disconnect_container(container.id)

        issued = runner.calls[before:]
        dnat = ["-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "172.30.0.3:80"]
        assert ["iptables", "-t", "nat", "-D", "PREROUTING", *dnat] in issued
        assert ["iptables", "-t", "nat", "-D", "OUTPUT", *dnat] in issued
        assert ["ip", "link", "delete", "veth01234567"] in issued
        assert ["ip", "netns", "delete", "0123456789ab"] in issued
        assert network.ipam.lookup(container.id) is None

    def test_restore_leases(self, network):
        """Test leases are re-seeded from records."""
        records = [
            Container(owner="alice", name="a", ip_address="172.30.0.3"),
            Container(owner="alice", name="b", ip_address=""),
        ]

        assert network.restore_leases(records) == 1
        assert network.ipam.allocate_ip("new") == "172.30.0.4"


class TestDNS:
    """Test resolv.conf generation."""

    def test_render(self):
        """Test file contents."""
        assert render_resolv_conf(["1.1.1.1", "8.8.8.8"]) == (
            "# Generated by dockyard\nnameserver 1.1.1.1\nnameserver 8.8.8.8\noptions ndots:1\n"
        )

    def test_default_servers(self, network, config):
        """Test the configured servers are used when none are given."""
        path = network.configure_dns("abc123")

        with open(path) as f:
            assert "nameserver 10.0.0.53" in f.read()


class TestInfo:
    """Test the bridge overview."""

    def test_get_info(self, network, store):
        """Test bridge addressing and live leases."""
        container = Container(owner="alice", name="web")
        store.save(container)
        network.connect_container(container.id)

        assert network.get_info() == {
            "bridge": "dockyard0",
            "subnet": "172.30.0.0/16",
            "gateway": "172.30.0.1",
            "leases": {container.id: "172.30.0.3"},
        }


class TestConcurrency:
    """Test containers are wired independently of each other."""

    def test_slow_connect_does_not_block_other_containers(self, network, runner, store):
        """Test disconnecting one container while another is mid-connect."""
        slow = Container(owner="alice", name="slow")
        other = Container(owner="alice", name="other")
        store.save(slow)
        store.save(other)
        network.connect_container(other.id)

        entered = threading.Event()

        def slow_ip(argv):
            entered.set()
            time.sleep(0.5)
            return CommandResult(argv, 0)

        runner.on("ip", "-n", slow.id, handler=slow_ip)
        worker = threading.Thread(target=network.connect_container, args=(slow.id,))
        worker.start()
        assert entered.wait(2)

        start = time.monotonic()
        network.disconnect_container(other.id)
        elapsed = time.monotonic() - start
        worker.join(5)

        assert elapsed < 0.4
        assert store.load(Container, other.id).ip_address == ""
        assert store.load(Container, slow.id).ip_address == "172.30.0.4"

    def test_second_manager_sees_existing_leases(self, config, store, runner, tools, ip_forward):
        """Test a manager built later does not hand out a recorded address."""
        first = NetworkManager(config, store, runner, tools, ip_forward_path=str(ip_forward))
        second = NetworkManager(config, store, runner, tools, ip_forward_path=str(ip_forward))
        a = Container(owner="alice", name="a")
        b = Container(owner="alice", name="b")
        store.save(a)
        store.save(b)

        assert first.connect_container(a.id) == "172.30.0.3"
        assert second.connect_container(b.id) == "172.30.0.4"
