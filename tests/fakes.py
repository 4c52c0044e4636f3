"""In-memory stand-ins for the cluster store and the bpfd daemon, plus object builders."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Iterable, Iterator

import grpc

from bpfd_operator.apis.models import (
    BytecodeSelector,
    InterfaceSelector,
    KprobeProgram,
    KprobeProgramSpec,
    LabelSelector,
    Node,
    ObjectMeta,
    Resource,
    TcProgram,
    TcProgramSpec,
    TracepointProgram,
    TracepointProgramSpec,
    UprobeProgram,
    UprobeProgramSpec,
    XdpProgram,
    XdpProgramSpec,
)
from bpfd_operator.daemon.client import DaemonError
from bpfd_operator.daemon.models import LoadRequest
from bpfd_operator.store.client import (
    AlreadyExistsError,
    ClusterStore,
    ConflictError,
    NotFoundError,
)
from bpfd_operator.translation.registry import build_registry

BYTECODE_PATH = "/tmp/hello.o"
SECTION_NAME = "test"


class InMemoryStore(ClusterStore):
    """
    Behaves like the API server for the calls the controllers make.

    Deleting an object with finalizers only sets its deletionTimestamp; it is
    removed once a finalizer patch leaves it with no finalizers. Writes carrying a stale
    resourceVersion fail with ConflictError. Every write is logged in ``writes``.
    """

    def __init__(self, objects: Iterable[Resource] = ()) -> None:
        self._objects: dict[tuple[str, str], Resource] = {}
        self._version = 0
        self.writes: list[tuple[str, str, str]] = []
        for obj in objects:
            self.add(obj)

    def add(self, obj: Resource) -> Resource:
        """Seed an object without recording a write."""
        return self._put(obj.model_copy(deep=True))

    def _put(self, obj: Resource) -> Resource:
        self._version += 1
        obj.metadata.resource_version = str(self._version)
        if not obj.metadata.uid:
            obj.metadata.uid = str(uuid.uuid4())
        self._objects[(obj.kind, obj.name)] = obj
        return obj.model_copy(deep=True)

    def _existing(self, kind: str, name: str) -> Resource:
        try:
            return self._objects[(kind, name)]
        except KeyError:
            raise NotFoundError(f"{kind}/{name} not found", kind, name) from None

    def _check_version(self, existing: Resource, obj: Resource) -> None:
        if obj.metadata.resource_version and obj.metadata.resource_version != existing.metadata.resource_version:
            raise ConflictError(f"{obj.kind}/{obj.name} was modified", obj.kind, obj.name)

    def get(self, kind: str, name: str) -> Resource:
        return self._existing(kind, name).model_copy(deep=True)

    def list(self, kind: str, labels: dict[str, str] | None = None) -> list[Resource]:
        out = []
        for (k, _), obj in sorted(self._objects.items()):
            if k != kind:
                continue
            if all(obj.metadata.labels.get(lk) == lv for lk, lv in (labels or {}).items()):
                out.append(obj.model_copy(deep=True))
        return out

    def create(self, obj: Resource) -> Resource:
        if (obj.kind, obj.name) in self._objects:
            raise AlreadyExistsError(f"{obj.kind}/{obj.name} exists", obj.kind, obj.name)
        new = obj.model_copy(deep=True)
        new.metadata.creation_timestamp = datetime.now(timezone.utc)
        self.writes.append(("create", obj.kind, obj.name))
        return self._put(new)

    def patch_finalizers(self, obj: Resource) -> Resource:
        existing = self._existing(obj.kind, obj.name)
        self._check_version(existing, obj)
        new = existing.model_copy(deep=True)
        new.metadata.finalizers = list(obj.metadata.finalizers)
        self.writes.append(("patch", obj.kind, obj.name))
        if new.deleting and not new.metadata.finalizers:
            del self._objects[(obj.kind, obj.name)]
            return new
        return self._put(new)

    def replace(self, obj: Resource) -> Resource:
        """Full metadata and spec write, as a user editing the object would do."""
        existing = self._existing(obj.kind, obj.name)
        self._check_version(existing, obj)
        new = obj.model_copy(deep=True)
        new.metadata.deletion_timestamp = existing.metadata.deletion_timestamp
        new.metadata.uid = existing.metadata.uid
        if hasattr(existing, "status"):
            new.status = existing.status.model_copy(deep=True)
        self.writes.append(("replace", obj.kind, obj.name))
        if new.deleting and not new.metadata.finalizers:
            del self._objects[(obj.kind, obj.name)]
            return new
        return self._put(new)

    def update_status(self, obj: Resource) -> Resource:
        existing = self._existing(obj.kind, obj.name)
        self._check_version(existing, obj)
        new = existing.model_copy(deep=True)
        new.status = obj.status.model_copy(deep=True)
        self.writes.append(("update_status", obj.kind, obj.name))
        return self._put(new)

    def delete(self, kind: str, name: str) -> None:
        existing = self._existing(kind, name)
        self.writes.append(("delete", kind, name))
        if not existing.metadata.finalizers:
            del self._objects[(kind, name)]
            return
        if existing.metadata.deletion_timestamp is None:
            new = existing.model_copy(deep=True)
            new.metadata.deletion_timestamp = datetime.now(timezone.utc)
            self._put(new)

    def list_nodes(self, selector: LabelSelector | None = None) -> list[Node]:
        nodes = self.list("Node")
        if selector is None:
            return nodes
        return [n for n in nodes if selector.matches(n.labels)]

    def watch(
        self,
        kind: str,
        labels: dict[str, str] | None = None,
        stop: threading.Event | None = None,
    ) -> Iterator[tuple[str, Resource]]:
        for obj in self.list(kind, labels):
            yield "ADDED", obj


def _request_target(request: LoadRequest) -> str:
    info = request.attach_info
    if info.xdp is not None:
        return info.xdp.iface
    if info.tc is not None:
        return info.tc.iface
    if info.kprobe is not None:
        return info.kprobe.fn_name
    if info.uprobe is not None:
        return info.uprobe.target
    return info.tracepoint.tracepoint


class FakeDaemonClient:
    """Records load requests and keeps an in-memory set of loaded programs."""

    def __init__(self, fail_targets: Iterable[str] = ()) -> None:
        self.load_requests: dict[str, LoadRequest] = {}
        self.active: set[str] = set()
        self.unloaded: list[str] = []
        self.fail_targets = set(fail_targets)
        self.fail_unload = False
        self.load_calls = 0

    def load(self, request: LoadRequest) -> str:
        self.load_calls += 1
        target = _request_target(request)
        if target in self.fail_targets:
            raise DaemonError(f"bpfd Load failed: cannot attach to {target}", grpc.StatusCode.INTERNAL)
        load_id = request.common.id or str(uuid.uuid4())
        self.load_requests[load_id] = request.model_copy(deep=True)
        self.active.add(load_id)
        return load_id

    def unload(self, program_id: str) -> None:
        if self.fail_unload:
            raise DaemonError("bpfd Unload failed: busy", grpc.StatusCode.UNAVAILABLE)
        if program_id not in self.active:
            raise DaemonError(f"bpfd Unload failed: {program_id} not found", grpc.StatusCode.NOT_FOUND)
        self.active.discard(program_id)
        self.unloaded.append(program_id)

    def list_active(self) -> set[str]:
        return set(self.active)

    def restart(self) -> None:
        """Simulate a daemon restart that drops every loaded program."""
        self.active.clear()

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def record_name(kind: str, program: str, node: str, target: str) -> str:
    """Name the operator gives the BpfProgram record of one (program, node, target)."""
    return build_registry().get(kind).record_name(program, node, target)


def make_node(
    name: str,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> Node:
    return Node(
        metadata=ObjectMeta(
            name=name,
            labels={"kubernetes.io/hostname": name, **(labels or {})},
            annotations=dict(annotations or {}),
        )
    )


def _common(**kwargs) -> dict:
    common = {
        "section_name": SECTION_NAME,
        "bytecode": BytecodeSelector(path=BYTECODE_PATH),
        "node_selector": LabelSelector(),
    }
    common.update(kwargs)
    return common


def _selector(interfaces: list[str] | None, primary_node_interface: bool | None) -> InterfaceSelector:
    return InterfaceSelector(interfaces=interfaces, primary_node_interface=primary_node_interface)


def make_xdp(
    name: str,
    interfaces: list[str] | None = None,
    primary_node_interface: bool | None = None,
    **kwargs,
) -> XdpProgram:
    spec_fields = {k: kwargs.pop(k) for k in ("priority", "proceed_on") if k in kwargs}
    return XdpProgram(
        metadata=ObjectMeta(name=name),
        spec=XdpProgramSpec(
            interface_selector=_selector(interfaces, primary_node_interface),
            **spec_fields,
            **_common(**kwargs),
        ),
    )


def make_tc(
    name: str,
    interfaces: list[str] | None = None,
    direction: str | None = "ingress",
    primary_node_interface: bool | None = None,
    **kwargs,
) -> TcProgram:
    spec_fields = {k: kwargs.pop(k) for k in ("priority", "proceed_on") if k in kwargs}
    return TcProgram(
        metadata=ObjectMeta(name=name),
        spec=TcProgramSpec(
            interface_selector=_selector(interfaces, primary_node_interface),
            direction=direction,
            **spec_fields,
            **_common(**kwargs),
        ),
    )


def make_kprobe(name: str, function_names: list[str], **kwargs) -> KprobeProgram:
    spec_fields = {k: kwargs.pop(k) for k in ("offset", "retprobe", "namespace") if k in kwargs}
    return KprobeProgram(
        metadata=ObjectMeta(name=name),
        spec=KprobeProgramSpec(function_names=function_names, **spec_fields, **_common(**kwargs)),
    )


def make_uprobe(name: str, targets: list[str], **kwargs) -> UprobeProgram:
    spec_fields = {
        k: kwargs.pop(k)
        for k in ("function_name", "offset", "retprobe", "pid", "namespace")
        if k in kwargs
    }
    return UprobeProgram(
        metadata=ObjectMeta(name=name),
        spec=UprobeProgramSpec(targets=targets, **spec_fields, **_common(**kwargs)),
    )


def make_tracepoint(name: str, names: list[str], **kwargs) -> TracepointProgram:
    return TracepointProgram(
        metadata=ObjectMeta(name=name),
        spec=TracepointProgramSpec(names=names, **_common(**kwargs)),
    )
