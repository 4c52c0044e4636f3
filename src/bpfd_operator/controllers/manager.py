"""Wire stores, reconcilers, queues and watches into running controllers."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from bpfd_operator.apis.constants import BPF_PROGRAM_KIND, HOST_LABEL, OWNER_LABEL
from bpfd_operator.apis.models import BpfProgram, Resource, controller_owner
from bpfd_operator.config import Settings, get_settings
from bpfd_operator.controllers.agent import RecordReconciler
from bpfd_operator.controllers.operator import IntentReconciler
from bpfd_operator.controllers.runtime import Controller, Watcher
from bpfd_operator.daemon.client import DaemonClient
from bpfd_operator.store.client import ClusterStore, KubernetesStore
from bpfd_operator.translation.registry import KindRegistry, ProgramKind, build_registry

logger = logging.getLogger(__name__)


def _record_owner_keys(kind: ProgramKind) -> Callable[[Resource], list[str]]:
    """Map a BpfProgram event to the name of the owning program of ``kind``."""

    def mapper(obj: Resource) -> list[str]:
        owner = controller_owner(obj.metadata)
        if owner is not None and owner.kind == kind.kind:
            return [owner.name]
        # No usable owner reference: let the reconciler resolve (or drop) the record key
        return [obj.metadata.labels.get(OWNER_LABEL) or obj.name]

    return mapper


def _record_type_predicate(kind: ProgramKind) -> Callable[[Resource], bool]:
    """Accept only BpfProgram events whose record type belongs to ``kind``."""

    def predicate(obj: Resource) -> bool:
        return isinstance(obj, BpfProgram) and obj.spec.type == kind.record_type

    return predicate


def _build_store(settings: Settings, registry: KindRegistry) -> KubernetesStore:
    return KubernetesStore(
        models={k.kind: k.model for k in registry},
        kubeconfig=str(settings.kubeconfig) if settings.kubeconfig else None,
        context=settings.context,
        watch_timeout_seconds=settings.watch_timeout_seconds,
    )


def build_operator(
    store: ClusterStore,
    registry: KindRegistry,
    settings: Settings,
) -> tuple[list[Controller], list[Watcher]]:
    """One controller per program kind, fed by program and record watches."""
    controllers: list[Controller] = []
    watchers: list[Watcher] = []
    for kind in registry:
        reconciler = IntentReconciler(store, kind, retry_after=settings.retry_duration_operator_seconds)
        ctrl = Controller(
            name=f"{kind.kind.lower()}-operator",
            reconcile=reconciler.reconcile,
            workers=settings.workers,
        )
        controllers.append(ctrl)
        watchers.append(Watcher(store, kind.kind, ctrl))
        watchers.append(
            Watcher(
                store,
                BPF_PROGRAM_KIND,
                ctrl,
                mapper=_record_owner_keys(kind),
                predicate=_record_type_predicate(kind),
            )
        )
    return controllers, watchers


def build_agent(
    store: ClusterStore,
    daemon: DaemonClient,
    registry: KindRegistry,
    settings: Settings,
) -> tuple[list[Controller], list[Watcher]]:
    """A single record controller watching only records labelled for this node."""
    if not settings.node_name:
        raise ValueError("node_name must be set to run the agent")
    reconciler = RecordReconciler(
        store,
        daemon,
        registry,
        settings.node_name,
        retry_after=settings.retry_duration_agent_seconds,
    )
    ctrl = Controller(name="bpfprogram-agent", reconcile=reconciler.reconcile, workers=settings.workers)
    watcher = Watcher(store, BPF_PROGRAM_KIND, ctrl, labels={HOST_LABEL: settings.node_name})
    return [ctrl], [watcher]


def _run(controllers: list[Controller], watchers: list[Watcher], stop: threading.Event) -> None:
    for c in controllers:
        c.start(stop)
    for w in watchers:
        w.start(stop)
    try:
        while not stop.wait(1.0):
            pass
    finally:
        stop.set()
        for c in controllers:
            c.shutdown(timeout=5.0)


def run_operator(settings: Settings | None = None, stop: threading.Event | None = None) -> None:
    """Run the cluster operator until ``stop`` is set (or the process is interrupted)."""
    opts = settings or get_settings()
    registry = build_registry()
    store = _build_store(opts, registry)
    controllers, watchers = build_operator(store, registry, opts)
    logger.info("Starting operator for kinds: %s", ", ".join(k.kind for k in registry))
    _run(controllers, watchers, stop or threading.Event())


def run_agent(settings: Settings | None = None, stop: threading.Event | None = None) -> None:
    """Run the node agent until ``stop`` is set (or the process is interrupted)."""
    opts = settings or get_settings()
    registry = build_registry()
    store = _build_store(opts, registry)
    daemon = DaemonClient(opts.daemon_address, timeout_seconds=opts.daemon_timeout_seconds)
    controllers, watchers = build_agent(store, daemon, registry, opts)
    logger.info("Starting agent on node %s (bpfd at %s)", opts.node_name, opts.daemon_address)
    try:
        _run(controllers, watchers, stop or threading.Event())
    finally:
        daemon.close()
