"""Node-local reconciler: drive bpfd for the BpfProgram records scheduled to this node."""

from __future__ import annotations

import logging
import threading

from bpfd_operator.apis.constants import BPF_PROGRAM_KIND, HOST_LABEL, OWNER_LABEL
from bpfd_operator.apis.models import (
    BpfProgram,
    BpfProgramConditionType,
    ProgramResource,
    Resource,
    controller_owner,
)
from bpfd_operator.controllers.runtime import Result
from bpfd_operator.controllers.status import remove_finalizer, update_condition
from bpfd_operator.daemon.client import DaemonClient, DaemonError
from bpfd_operator.store.client import ClusterStore, ConflictError, InvalidObjectError, NotFoundError
from bpfd_operator.translation.registry import KindRegistry, ProgramKind

logger = logging.getLogger(__name__)


class MapOwnerError(Exception):
    """The program's shared-map owner cannot be used (yet)."""


class RecordReconciler:
    """
    Reconciles BpfProgram records labelled for one node.

    Keeps an expectation table of record name -> last-known load id. It is a
    cache only: after a restart it is rebuilt from the daemon's active list as
    records are reconciled.
    """

    def __init__(
        self,
        store: ClusterStore,
        daemon: DaemonClient,
        registry: KindRegistry,
        node_name: str,
        retry_after: float = 5.0,
    ) -> None:
        self.store = store
        self.daemon = daemon
        self.registry = registry
        self.node_name = node_name
        self.retry_after = retry_after
        self._expected: dict[str, str] = {}
        self._lock = threading.Lock()

    # -- expectation table ---------------------------------------------------

    def expected_id(self, name: str) -> str | None:
        with self._lock:
            return self._expected.get(name)

    def _remember(self, name: str, load_id: str) -> None:
        with self._lock:
            self._expected[name] = load_id

    def _forget(self, name: str) -> None:
        with self._lock:
            self._expected.pop(name, None)

    # -- reconcile -------------------------------------------------------------

    def reconcile(self, name: str) -> Result:
        try:
            record = self.store.get(BPF_PROGRAM_KIND, name)
        except NotFoundError:
            logger.debug("bpfProgram %s not found, stale reconcile", name)
            self._forget(name)
            return Result()
        except InvalidObjectError as e:
            logger.error("bpfProgram %s cannot be reconciled: %s", name, e)
            return Result()

        if record.metadata.labels.get(HOST_LABEL) != self.node_name:
            return Result()
        try:
            kind = self.registry.for_record_type(record.spec.type)
        except KeyError:
            logger.error("bpfProgram %s has unknown type %r; ignoring", name, record.spec.type)
            return Result()

        try:
            if record.deleting:
                return self._teardown(record, kind)
            if record.status.load_id is None:
                return self._load(record, kind)
            return self._verify(record, kind)
        except NotFoundError as e:
            logger.debug("Object vanished while reconciling bpfProgram %s: %s", name, e)
            return Result()
        except ConflictError as e:
            logger.debug("Conflict reconciling bpfProgram %s...requeuing: %s", name, e)
            return Result(requeue_after=self.retry_after)

    def _teardown(self, record: BpfProgram, kind: ProgramKind) -> Result:
        if kind.finalizer not in record.metadata.finalizers:
            return Result()
        load_id = record.status.load_id
        if load_id:
            try:
                self.daemon.unload(load_id)
            except DaemonError as e:
                if not e.not_found:
                    logger.warning("Failed to unload bpfProgram %s (id %s): %s", record.name, load_id, e)
                    self._set_condition(record, BpfProgramConditionType.LOAD_ERROR, str(e))
                    return Result(requeue_after=self.retry_after)
                logger.debug("bpfd no longer knows id %s; treating as unloaded", load_id)
            logger.info("Unloaded bpfProgram %s (id %s)", record.name, load_id)
        self._forget(record.name)
        return remove_finalizer(self.store, BPF_PROGRAM_KIND, record.name, kind.finalizer, self.retry_after)

    def _load(self, record: BpfProgram, kind: ProgramKind) -> Result:
        program = self._owner(record, kind)
        if program is None or program.deleting:
            return Result()
        problems = program.spec.problems()
        if problems:
            logger.warning("%s %s is invalid; not loading bpfProgram %s", kind.kind, program.name, record.name)
            self._set_condition(record, BpfProgramConditionType.LOAD_ERROR, "; ".join(problems))
            return Result()

        adopted = self._adopt(record)
        if adopted is not None:
            logger.info("Adopting already loaded id %s for bpfProgram %s", adopted, record.name)
            return self._mark_loaded(record, adopted, None)

        request = kind.translate(program, record.spec.target)
        request.common.id = record.metadata.uid or None
        map_owner_id = None
        if program.spec.map_owner:
            try:
                map_owner_id = self._resolve_map_owner(program, kind)
            except MapOwnerError as e:
                logger.info("bpfProgram %s cannot load yet: %s", record.name, e)
                self._set_condition(record, BpfProgramConditionType.LOAD_ERROR, str(e))
                return Result(requeue_after=self.retry_after)
            request.common.map_owner_id = map_owner_id

        try:
            load_id = self.daemon.load(request)
        except DaemonError as e:
            logger.warning("Failed to load bpfProgram %s: %s", record.name, e)
            self._set_condition(record, BpfProgramConditionType.LOAD_ERROR, str(e))
            return Result(requeue_after=self.retry_after)

        self._remember(record.name, load_id)
        logger.info("Loaded bpfProgram %s (id %s)", record.name, load_id)
        return self._mark_loaded(record, load_id, map_owner_id)

    def _verify(self, record: BpfProgram, kind: ProgramKind) -> Result:
        try:
            active = self.daemon.list_active()
        except DaemonError as e:
            logger.warning("Failed to list programs from bpfd: %s", e)
            return Result(requeue_after=self.retry_after)

        load_id = record.status.load_id
        if load_id not in active:
            logger.info("bpfd no longer reports bpfProgram %s (id %s); reloading", record.name, load_id)
            return self._clear(record, "program is no longer loaded in bpfd")

        if record.status.map_owner_id and self._map_owner_moved(record, kind):
            logger.info("Map owner of bpfProgram %s was reloaded; reloading", record.name)
            try:
                self.daemon.unload(load_id)
            except DaemonError as e:
                if not e.not_found:
                    logger.warning("Failed to unload bpfProgram %s (id %s): %s", record.name, load_id, e)
                    return Result(requeue_after=self.retry_after)
            return self._clear(record, "map owner was reloaded")

        self._remember(record.name, load_id)
        return Result()

    # -- helpers ---------------------------------------------------------------

    def _owner(self, record: BpfProgram, kind: ProgramKind) -> ProgramResource | None:
        """The program that controls ``record``, or None if it is gone or unusable."""
        ref = controller_owner(record.metadata)
        if ref is None or ref.kind != kind.kind:
            logger.error("bpfProgram %s has no %s owner reference; ignoring", record.name, kind.kind)
            return None
        try:
            return self.store.get(kind.kind, ref.name)
        except NotFoundError:
            logger.info("%s %s owning bpfProgram %s not found", kind.kind, ref.name, record.name)
            return None
        except InvalidObjectError as e:
            logger.error("%s %s owning bpfProgram %s cannot be used: %s", kind.kind, ref.name, record.name, e)
            return None

    def _adopt(self, record: BpfProgram) -> str | None:
        """Return a load id this agent already obtained for the record, if still active."""
        load_id = self.expected_id(record.name)
        if load_id is None:
            return None
        try:
            active = self.daemon.list_active()
        except DaemonError:
            return None
        if load_id in active:
            return load_id
        self._forget(record.name)
        return None

    def _map_owner_record(self, program: ProgramResource, kind: ProgramKind) -> BpfProgram:
        owner_name = program.spec.map_owner
        if owner_name == program.name:
            raise MapOwnerError(f"{kind.kind} {program.name} names itself as map owner")
        candidates = [
            r
            for r in self.store.list(BPF_PROGRAM_KIND, {OWNER_LABEL: owner_name, HOST_LABEL: self.node_name})
            if r.spec.type == kind.record_type and not r.deleting
        ]
        if not candidates:
            raise MapOwnerError(f"map owner {owner_name} has no bpfProgram on node {self.node_name}")
        if len(candidates) > 1:
            raise MapOwnerError(
                f"conflicting map ownership: {owner_name} has {len(candidates)} bpfPrograms "
                f"on node {self.node_name}"
            )
        return candidates[0]

    def _resolve_map_owner(self, program: ProgramResource, kind: ProgramKind) -> str:
        """Return the load id of the program whose maps ``program`` shares."""
        owner_record = self._map_owner_record(program, kind)
        owner_name = program.spec.map_owner
        try:
            owner_program = self.store.get(kind.kind, owner_name)
        except NotFoundError:
            raise MapOwnerError(f"map owner {owner_name} not found") from None
        except InvalidObjectError:
            raise MapOwnerError(f"map owner {owner_name} is invalid") from None
        if owner_program.spec.map_owner:
            raise MapOwnerError(
                f"conflicting map ownership: {owner_name} itself shares maps of "
                f"{owner_program.spec.map_owner}"
            )
        owner_id = owner_record.status.load_id
        if not owner_record.loaded or not owner_id:
            raise MapOwnerError(f"map owner {owner_name} is not loaded")
        expected = self.expected_id(owner_record.name)
        if expected is not None and expected != owner_id:
            raise MapOwnerError(
                f"conflicting map ownership: {owner_record.name} reports id {owner_id}, expected {expected}"
            )
        return owner_id

    def _map_owner_moved(self, record: BpfProgram, kind: ProgramKind) -> bool:
        program = self._owner(record, kind)
        if program is None or not program.spec.map_owner:
            return False
        try:
            owner_record = self._map_owner_record(program, kind)
        except MapOwnerError:
            return True
        return owner_record.status.load_id != record.status.map_owner_id

    def _mark_loaded(self, record: BpfProgram, load_id: str, map_owner_id: str | None) -> Result:
        def mutate(obj: Resource) -> bool:
            if obj.status.load_id == load_id and obj.status.map_owner_id == map_owner_id:
                return False
            obj.status.load_id = load_id
            obj.status.map_owner_id = map_owner_id
            return True

        return update_condition(
            self.store,
            BPF_PROGRAM_KIND,
            record.name,
            BpfProgramConditionType.LOADED.condition(),
            self.retry_after,
            mutate=mutate,
        )

    def _clear(self, record: BpfProgram, message: str) -> Result:
        """Drop the load id so the next pass loads the record afresh."""
        self._forget(record.name)

        def mutate(obj: Resource) -> bool:
            if obj.status.load_id is None and obj.status.map_owner_id is None:
                return False
            obj.status.load_id = None
            obj.status.map_owner_id = None
            return True

        res = update_condition(
            self.store,
            BPF_PROGRAM_KIND,
            record.name,
            BpfProgramConditionType.UNLOADED.condition(message),
            self.retry_after,
            mutate=mutate,
        )
        if res.requeue_after:
            return res
        return Result(requeue=True)

    def _set_condition(self, record: BpfProgram, cond: BpfProgramConditionType, message: str) -> Result:
        """Record ``cond`` on the record without touching its load id."""
        return update_condition(
            self.store,
            BPF_PROGRAM_KIND,
            record.name,
            cond.condition(message),
            self.retry_after,
        )
