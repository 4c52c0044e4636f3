import pytest

from bpfd_operator.controllers.agent import RecordReconciler
from bpfd_operator.controllers.operator import IntentReconciler
from bpfd_operator.translation.registry import build_registry

from fakes import FakeDaemonClient, InMemoryStore, make_node

NODE_NAME = "fake-control-plane"


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def node():
    return make_node(NODE_NAME)


@pytest.fixture
def store(node):
    return InMemoryStore([node])


@pytest.fixture
def daemon():
    return FakeDaemonClient()


@pytest.fixture
def operator_for(store, registry):
    """Build the operator reconciler for a program kind name, e.g. 'XdpProgram'."""

    def build(kind: str) -> IntentReconciler:
        return IntentReconciler(store, registry.get(kind), retry_after=1.0)

    return build


@pytest.fixture
def agent(store, daemon, registry):
    return RecordReconciler(store, daemon, registry, NODE_NAME, retry_after=1.0)
