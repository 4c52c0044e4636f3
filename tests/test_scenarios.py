"""
End-to-end scenarios: operator and node agents driven in rounds over one
in-memory store until the system settles.
"""

import pytest

from bpfd_operator.apis.constants import BPF_PROGRAM_KIND
from bpfd_operator.apis.models import latest_condition
from bpfd_operator.controllers.agent import RecordReconciler
from bpfd_operator.controllers.operator import IntentReconciler
from bpfd_operator.daemon.models import AttachInfo, KprobeAttachInfo, LoadRequest, LoadRequestCommon, Location
from bpfd_operator.store.client import NotFoundError

from conftest import NODE_NAME
from fakes import FakeDaemonClient, make_kprobe, make_node, make_xdp, record_name


class Cluster:
    """One operator reconciler per kind and one agent (with its own daemon) per node."""

    def __init__(self, store, registry, daemons):
        self.store = store
        self.daemons = daemons
        self.operators = [IntentReconciler(store, kind, retry_after=1.0) for kind in registry]
        self.agents = {
            node: RecordReconciler(store, daemon, registry, node, retry_after=1.0)
            for node, daemon in daemons.items()
        }

    def settle(self, rounds=6):
        for _ in range(rounds):
            for op in self.operators:
                for program in self.store.list(op.kind.kind):
                    op.reconcile(program.name)
            for record in self.store.list(BPF_PROGRAM_KIND):
                self.agents[record.spec.node].reconcile(record.name)

    def status(self, kind, name):
        return latest_condition(self.store.get(kind, name).status.conditions)


@pytest.fixture
def cluster(store, registry, daemon):
    return Cluster(store, registry, {NODE_NAME: daemon})


class TestScenarios:
    def test_single_kprobe(self, store, daemon, cluster):
        """A kprobe on one node is loaded with exactly the expected request."""
        store.add(make_kprobe("probe-a", ["try_to_wake_up"]))
        cluster.settle()

        (record,) = store.list(BPF_PROGRAM_KIND)
        assert record.name == record_name("KprobeProgram", "probe-a", NODE_NAME, "try_to_wake_up")
        assert record.loaded
        assert cluster.status("KprobeProgram", "probe-a").type == "ReconcileSuccess"

        expected = LoadRequest(
            common=LoadRequestCommon(
                location=Location(file="/tmp/hello.o"),
                section_name="test",
                program_type=2,
                id=record.metadata.uid,
                map_owner_id="",
            ),
            attach_info=AttachInfo(kprobe=KprobeAttachInfo(fn_name="try_to_wake_up", offset=0, retprobe=False, namespace="")),
        )
        assert daemon.load_requests == {record.status.load_id: expected}

    def test_partial_failure_then_recovery(self, store, daemon, cluster):
        """One bad interface fails the program until the daemon can attach it."""
        daemon.fail_targets = {"eth1"}
        store.add(make_xdp("xdp", ["eth0", "eth1"]))
        cluster.settle()

        cond = cluster.status("XdpProgram", "xdp")
        assert cond.type == "ReconcileError"
        assert cond.message == f"bpfPrograms failed to load: {record_name('XdpProgram', 'xdp', NODE_NAME, 'eth1')}"
        assert store.get(BPF_PROGRAM_KIND, record_name("XdpProgram", "xdp", NODE_NAME, "eth0")).loaded

        daemon.fail_targets = set()
        cluster.settle()
        assert cluster.status("XdpProgram", "xdp").type == "ReconcileSuccess"
        assert len(daemon.active) == 2

    def test_delete_unloads_everything(self, store, daemon, cluster):
        """Deleting a program unloads it everywhere before the object goes away."""
        store.add(make_xdp("xdp", ["eth0", "eth1"]))
        cluster.settle()
        loaded = set(daemon.active)
        assert len(loaded) == 2

        store.delete("XdpProgram", "xdp")
        cluster.settle()
        assert daemon.active == set()
        assert set(daemon.unloaded) == loaded
        assert store.list(BPF_PROGRAM_KIND) == []
        with pytest.raises(NotFoundError):
            store.get("XdpProgram", "xdp")

    def test_daemon_restart_is_healed(self, store, daemon, cluster):
        store.add(make_xdp("xdp", ["eth0"]))
        cluster.settle()
        daemon.restart()
        cluster.settle()
        record = store.get(BPF_PROGRAM_KIND, record_name("XdpProgram", "xdp", NODE_NAME, "eth0"))
        assert record.loaded
        assert record.status.load_id in daemon.active
        assert cluster.status("XdpProgram", "xdp").type == "ReconcileSuccess"

    def test_nodes_load_independently(self, store, registry, daemon):
        """Each agent only loads records scheduled to its own node."""
        store.add(make_node("node2"))
        other = FakeDaemonClient()
        cluster = Cluster(store, registry, {NODE_NAME: daemon, "node2": other})
        store.add(make_kprobe("probe-a", ["try_to_wake_up", "do_sys_open"]))
        cluster.settle()

        assert len(daemon.active) == 2
        assert len(other.active) == 2
        assert not daemon.active & other.active
        assert cluster.status("KprobeProgram", "probe-a").type == "ReconcileSuccess"

    def test_adding_a_node_extends_the_program(self, store, registry, daemon):
        cluster = Cluster(store, registry, {NODE_NAME: daemon, "node2": FakeDaemonClient()})
        store.add(make_xdp("xdp", ["eth0"]))
        cluster.settle()
        assert len(store.list(BPF_PROGRAM_KIND)) == 1

        store.add(make_node("node2"))
        cluster.settle()
        assert sorted(r.spec.node for r in store.list(BPF_PROGRAM_KIND)) == [NODE_NAME, "node2"]
        assert cluster.status("XdpProgram", "xdp").type == "ReconcileSuccess"
