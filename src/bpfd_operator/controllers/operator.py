"""Cluster-scoped reconciler: fan program intents out into per-node BpfProgram records."""

from __future__ import annotations

import logging

from bpfd_operator.apis.constants import (
    BPF_PROGRAM_KIND,
    HOST_LABEL,
    OPERATOR_FINALIZER,
    OWNER_LABEL,
)
from bpfd_operator.apis.models import (
    BpfProgram,
    BpfProgramConditionType,
    BpfProgramSpec,
    ObjectMeta,
    OwnerReference,
    ProgramConditionType,
    ProgramResource,
    controller_owner,
    latest_condition,
)
from bpfd_operator.controllers.runtime import Result
from bpfd_operator.controllers.status import add_finalizer, remove_finalizer, update_condition
from bpfd_operator.store.client import (
    AlreadyExistsError,
    ClusterStore,
    ConflictError,
    InvalidObjectError,
    NotFoundError,
)
from bpfd_operator.translation.registry import ProgramKind

logger = logging.getLogger(__name__)


class IntentReconciler:
    """Reconciles one program kind: finalizer, fan-out, status aggregation, teardown."""

    def __init__(self, store: ClusterStore, kind: ProgramKind, retry_after: float = 5.0) -> None:
        self.store = store
        self.kind = kind
        self.retry_after = retry_after

    def reconcile(self, name: str) -> Result:
        try:
            program = self.store.get(self.kind.kind, name)
        except NotFoundError:
            program = self._owner_of_record(name)
            if program is None:
                return Result()
        except InvalidObjectError as e:
            logger.error("%s %s cannot be reconciled: %s", self.kind.kind, name, e)
            return Result()

        try:
            return self._reconcile(program)
        except NotFoundError as e:
            logger.debug("%s vanished during reconcile: %s", self.kind.kind, e)
            return Result()
        except ConflictError as e:
            logger.debug("Conflict reconciling %s %s...requeuing: %s", self.kind.kind, program.name, e)
            return Result(requeue_after=self.retry_after)

    def _owner_of_record(self, name: str) -> ProgramResource | None:
        """Resolve a key that names a BpfProgram record to its owning program."""
        try:
            record = self.store.get(BPF_PROGRAM_KIND, name)
        except NotFoundError:
            logger.debug("bpfProgram %s not found, stale reconcile", name)
            return None

        owner = controller_owner(record.metadata)
        if owner is None:
            logger.error("bpfProgram %s has no owner reference; ignoring", name)
            return None
        if owner.kind != self.kind.kind:
            return None
        try:
            return self.store.get(self.kind.kind, owner.name)
        except NotFoundError:
            logger.info("%s %s from ownerRef not found, stale reconcile", self.kind.kind, owner.name)
            return None
        except InvalidObjectError as e:
            logger.error("%s %s cannot be reconciled: %s", self.kind.kind, owner.name, e)
            return None

    def _reconcile(self, program: ProgramResource) -> Result:
        if program.deleting:
            return self._finalize(program)

        if OPERATOR_FINALIZER not in program.metadata.finalizers:
            return add_finalizer(
                self.store, self.kind.kind, program.name, OPERATOR_FINALIZER, self.retry_after
            )

        problems = program.spec.problems()
        if problems:
            logger.warning("%s %s is invalid: %s", self.kind.kind, program.name, problems)
            return self._set_status(program, ProgramConditionType.RECONCILE_ERROR, "; ".join(problems))

        desired, unresolved = self._desired_records(program)
        existing = {r.name: r for r in self.owned_records(program)}

        changed = False
        conflicts = []
        for record_name, (node, target) in desired.items():
            if record_name not in existing:
                if self._create_record(program, record_name, node, target):
                    changed = True
                else:
                    conflicts.append(record_name)
        for record_name, record in existing.items():
            if record_name not in desired and not record.deleting:
                self._delete_record(record_name)
                changed = True

        if conflicts:
            self._set_status(
                program,
                ProgramConditionType.RECONCILE_ERROR,
                f"bpfProgram name conflicts: {', '.join(sorted(conflicts))}",
            )
            return Result(requeue_after=self.retry_after)
        if changed:
            return Result()
        if unresolved:
            self._set_status(
                program,
                ProgramConditionType.RECONCILE_ERROR,
                f"primary node interface unknown on nodes: {', '.join(sorted(unresolved))}",
            )
            return Result(requeue_after=self.retry_after)

        return self._aggregate(program, [r for n, r in existing.items() if n in desired])

    def _desired_records(self, program: ProgramResource) -> tuple[dict[str, tuple[str, str]], list[str]]:
        """
        Map record name -> (node, target) for every matching node and target.

        Also returns the selected nodes whose targets could not be resolved
        (no primary interface known for them); those get no records.
        """
        desired: dict[str, tuple[str, str]] = {}
        unresolved = []
        for node in self.store.list_nodes(program.spec.node_selector):
            targets = self.kind.desired_targets(program, node)
            if targets is None:
                unresolved.append(node.name)
                continue
            for target in targets:
                desired[self.kind.record_name(program.name, node.name, target)] = (node.name, target)
        return desired, unresolved

    def _is_owner(self, program: ProgramResource, owner: OwnerReference | None) -> bool:
        if owner is None or owner.kind != self.kind.kind or owner.name != program.name:
            return False
        # a record left over from an earlier object of the same name is not ours
        return not owner.uid or not program.metadata.uid or owner.uid == program.metadata.uid

    def owned_records(self, program: ProgramResource) -> list[BpfProgram]:
        """Records controlled by this very program object."""
        records = self.store.list(BPF_PROGRAM_KIND, {OWNER_LABEL: program.name})
        return [
            r
            for r in records
            if self._is_owner(program, controller_owner(r.metadata)) and r.spec.type == self.kind.record_type
        ]

    def _create_record(self, program: ProgramResource, name: str, node: str, target: str) -> bool:
        """Create one record. False if the name is already held by another owner."""
        record = BpfProgram(
            metadata=ObjectMeta(
                name=name,
                labels={OWNER_LABEL: program.name, HOST_LABEL: node},
                annotations={self.kind.target_annotation: target},
                finalizers=[self.kind.finalizer],
                owner_references=[
                    OwnerReference(
                        kind=program.kind,
                        name=program.name,
                        uid=program.metadata.uid,
                        controller=True,
                        block_owner_deletion=True,
                    )
                ],
            ),
            spec=BpfProgramSpec(type=self.kind.record_type, node=node, target=target),
        )
        try:
            self.store.create(record)
        except AlreadyExistsError:
            try:
                existing = self.store.get(BPF_PROGRAM_KIND, name)
            except NotFoundError:
                return True
            if self._is_owner(program, controller_owner(existing.metadata)):
                logger.debug("bpfProgram %s already exists", name)
                return True
            logger.error("bpfProgram %s already exists with a different owner", name)
            return False
        logger.info("Created bpfProgram %s (node=%s, target=%s)", name, node, target)
        return True

    def _delete_record(self, name: str) -> None:
        try:
            self.store.delete(BPF_PROGRAM_KIND, name)
        except NotFoundError:
            return
        logger.info("Deleted bpfProgram %s", name)

    def _aggregate(self, program: ProgramResource, records: list[BpfProgram]) -> Result:
        """Fold the records' latest conditions into the program's condition."""
        if not records:
            logger.info("%s %s selects no nodes; nothing to load", self.kind.kind, program.name)
            return Result()

        failed = []
        for r in records:
            cond = latest_condition(r.status.conditions)
            if cond is not None and cond.type == BpfProgramConditionType.LOAD_ERROR.value:
                failed.append(r.name)
        if failed:
            return self._set_status(
                program,
                ProgramConditionType.RECONCILE_ERROR,
                f"bpfPrograms failed to load: {', '.join(sorted(failed))}",
            )
        if all(r.loaded for r in records):
            return self._set_status(program, ProgramConditionType.RECONCILE_SUCCESS)

        logger.debug("%s %s waiting on bpfPrograms to load", self.kind.kind, program.name)
        return Result()

    def _finalize(self, program: ProgramResource) -> Result:
        """Delete every owned record, then release the program once all are gone."""
        records = self.owned_records(program)
        for r in records:
            if not r.deleting:
                self._delete_record(r.name)
        if records:
            logger.debug(
                "%s %s waiting on %d bpfPrograms to be removed",
                self.kind.kind,
                program.name,
                len(records),
            )
            return Result(requeue_after=self.retry_after)
        return remove_finalizer(
            self.store, self.kind.kind, program.name, OPERATOR_FINALIZER, self.retry_after
        )

    def _set_status(self, program: ProgramResource, cond: ProgramConditionType, message: str = "") -> Result:
        return update_condition(
            self.store,
            self.kind.kind,
            program.name,
            cond.condition(message),
            self.retry_after,
        )
