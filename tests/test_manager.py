"""
Tests for controller wiring and the CLI entrypoint.
"""

from unittest.mock import MagicMock, patch

import pytest

from bpfd_operator.apis.constants import BPF_PROGRAM_KIND, HOST_LABEL, OWNER_LABEL
from bpfd_operator.apis.models import BpfProgram, BpfProgramSpec, ObjectMeta, OwnerReference
from bpfd_operator.config import Settings
from bpfd_operator.controllers.manager import build_agent, build_operator
from bpfd_operator.main import main

from conftest import NODE_NAME
from fakes import make_xdp


def _record(owner_kind="XdpProgram", record_type="xdp", owner_refs=True):
    refs = [OwnerReference(kind=owner_kind, name="prog", controller=True)] if owner_refs else []
    return BpfProgram(
        metadata=ObjectMeta(name="prog-n1-eth0", labels={OWNER_LABEL: "prog"}, owner_references=refs),
        spec=BpfProgramSpec(type=record_type, node="n1", target="eth0"),
    )


class TestBuildOperator:
    def test_one_controller_per_kind(self, store, registry):
        controllers, watchers = build_operator(store, registry, Settings(workers=3))
        assert len(controllers) == len(registry)
        assert all(c.workers == 3 for c in controllers)
        assert sorted(w.kind for w in watchers).count(BPF_PROGRAM_KIND) == len(registry)

    def test_record_events_map_to_owner(self, store, registry):
        controllers, watchers = build_operator(store, registry, Settings())
        xdp_ctrl = next(c for c in controllers if c.name == "xdpprogram-operator")
        tc_ctrl = next(c for c in controllers if c.name == "tcprogram-operator")
        for w in watchers:
            if w.kind == BPF_PROGRAM_KIND:
                w.handle(_record())
        assert xdp_ctrl.queue.get(timeout=0) == "prog"
        assert len(tc_ctrl.queue) == 0

    def test_record_without_owner_ref_uses_label(self, store, registry):
        controllers, watchers = build_operator(store, registry, Settings())
        xdp_ctrl = next(c for c in controllers if c.name == "xdpprogram-operator")
        record_watcher = next(w for w in watchers if w.kind == BPF_PROGRAM_KIND and w.controller is xdp_ctrl)
        record_watcher.handle(_record(owner_refs=False))
        assert xdp_ctrl.queue.get(timeout=0) == "prog"

    def test_intent_events_use_name(self, store, registry):
        controllers, watchers = build_operator(store, registry, Settings())
        xdp_ctrl = next(c for c in controllers if c.name == "xdpprogram-operator")
        intent_watcher = next(w for w in watchers if w.kind == "XdpProgram")
        intent_watcher.handle(make_xdp("xdp", ["eth0"]))
        assert xdp_ctrl.queue.get(timeout=0) == "xdp"


class TestBuildAgent:
    def test_requires_node_name(self, store, daemon, registry):
        with pytest.raises(ValueError):
            build_agent(store, daemon, registry, Settings(node_name=None))

    def test_watches_only_this_node(self, store, daemon, registry):
        (ctrl,), (watcher,) = build_agent(store, daemon, registry, Settings(node_name=NODE_NAME))
        assert watcher.kind == BPF_PROGRAM_KIND
        assert watcher.labels == {HOST_LABEL: NODE_NAME}
        assert watcher.controller is ctrl


class TestMain:
    def test_operator_with_overrides(self):
        with patch("bpfd_operator.main.run_operator") as run:
            assert main(["operator", "--workers", "4", "--context", "kind-bpfd"]) == 0
        settings = run.call_args.args[0]
        assert settings.workers == 4
        assert settings.context == "kind-bpfd"

    def test_agent_node_name(self):
        with patch("bpfd_operator.main.run_agent") as run:
            assert main(["agent", "--node-name", "n1"]) == 0
        assert run.call_args.args[0].node_name == "n1"

    def test_failure_exit_code(self):
        with patch("bpfd_operator.main.run_agent", MagicMock(side_effect=ValueError("node_name must be set"))):
            assert main(["agent"]) == 2

    def test_interrupt_is_clean_exit(self):
        with patch("bpfd_operator.main.run_operator", MagicMock(side_effect=KeyboardInterrupt)):
            assert main(["operator"]) == 0

    def test_unknown_component(self):
        with pytest.raises(SystemExit):
            main(["scheduler"])
