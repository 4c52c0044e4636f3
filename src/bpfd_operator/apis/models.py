"""Resource models for program intents, BpfProgram records and their conditions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bpfd_operator.apis.constants import (
    API_VERSION,
    BPF_PROGRAM_KIND,
    MAX_PRIORITY,
    MIN_PRIORITY,
    NODE_KIND,
    PRIMARY_INTERFACE_ANNOTATION,
)


class KubeModel(BaseModel):
    """Base for models that round-trip through the camelCase Kubernetes JSON form."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OwnerReference(KubeModel):
    """Foreign key from a child object to the object that owns it."""

    api_version: str = API_VERSION
    kind: str
    name: str
    uid: str = ""
    controller: bool = False
    block_owner_deletion: bool = False


class ObjectMeta(KubeModel):
    """Subset of Kubernetes object metadata used by the controllers."""

    name: str
    namespace: str | None = None
    uid: str = ""
    resource_version: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None


def controller_owner(meta: ObjectMeta) -> OwnerReference | None:
    """Return the owner reference flagged as controller, if any."""
    for ref in meta.owner_references:
        if ref.controller:
            return ref
    return None


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class Condition(KubeModel):
    """Typed, timestamped status entry. Latest wins per type."""

    type: str
    status: Literal["True", "False", "Unknown"] = "True"
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProgramConditionType(str, Enum):
    """Conditions the operator writes on intent objects."""

    RECONCILE_SUCCESS = "ReconcileSuccess"
    RECONCILE_ERROR = "ReconcileError"

    def condition(self, message: str = "") -> Condition:
        if self is ProgramConditionType.RECONCILE_SUCCESS:
            return Condition(
                type=self.value,
                status="True",
                reason="ReconcileSuccess",
                message=message or "bpfProgram reconciled successfully",
            )
        return Condition(
            type=self.value,
            status="False",
            reason="ReconcileError",
            message=message or "bpfProgram reconcile failed",
        )


class BpfProgramConditionType(str, Enum):
    """Conditions the agent writes on BpfProgram records."""

    LOADED = "Loaded"
    LOAD_ERROR = "LoadError"
    UNLOADED = "Unloaded"

    def condition(self, message: str = "") -> Condition:
        if self is BpfProgramConditionType.LOADED:
            return Condition(
                type=self.value,
                status="True",
                reason="bpfdLoaded",
                message=message or "Successfully loaded bpfProgram",
            )
        if self is BpfProgramConditionType.LOAD_ERROR:
            return Condition(
                type=self.value,
                status="False",
                reason="bpfdLoadError",
                message=message or "Failed to load bpfProgram",
            )
        return Condition(
            type=self.value,
            status="True",
            reason="bpfdUnloaded",
            message=message or "bpfProgram is not loaded",
        )


def set_condition(conditions: list[Condition], new: Condition) -> bool:
    """
    Record ``new`` in ``conditions`` in place.

    Skips the write when the most recent condition already has the same type.
    Otherwise drops any older entry of that type and appends ``new``.
    Returns True if the list changed.
    """
    if conditions and conditions[-1].type == new.type:
        return False
    conditions[:] = [c for c in conditions if c.type != new.type]
    conditions.append(new)
    return True


def latest_condition(conditions: list[Condition]) -> Condition | None:
    return conditions[-1] if conditions else None


# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------


class LabelSelectorRequirement(KubeModel):
    key: str
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: list[str] = Field(default_factory=list)

    def matches(self, labels: dict[str, str]) -> bool:
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        # NotIn also matches objects lacking the key
        return self.key not in labels or labels[self.key] not in self.values


class LabelSelector(KubeModel):
    """Label predicate. An empty selector matches everything."""

    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = Field(default_factory=list)

    def matches(self, labels: dict[str, str]) -> bool:
        for k, v in self.match_labels.items():
            if labels.get(k) != v:
                return False
        return all(req.matches(labels) for req in self.match_expressions)

    def to_query(self) -> str:
        """Render as a label-selector string for list/watch calls."""
        parts = [f"{k}={v}" for k, v in sorted(self.match_labels.items())]
        for req in self.match_expressions:
            if req.operator == "Exists":
                parts.append(req.key)
            elif req.operator == "DoesNotExist":
                parts.append(f"!{req.key}")
            else:
                op = "in" if req.operator == "In" else "notin"
                parts.append(f"{req.key} {op} ({','.join(req.values)})")
        return ",".join(parts)


# ---------------------------------------------------------------------------
# Intent objects
# ---------------------------------------------------------------------------


class XdpProceedOnValue(str, Enum):
    ABORTED = "aborted"
    DROP = "drop"
    PASS = "pass"
    TX = "tx"
    REDIRECT = "redirect"
    DISPATCHER_RETURN = "dispatcher_return"


class TcProceedOnValue(str, Enum):
    UNSPEC = "unspec"
    OK = "ok"
    RECLASSIFY = "reclassify"
    SHOT = "shot"
    PIPE = "pipe"
    STOLEN = "stolen"
    QUEUED = "queued"
    REPEAT = "repeat"
    REDIRECT = "redirect"
    TRAP = "trap"
    DISPATCHER_RETURN = "dispatcher_return"


class BytecodeImage(KubeModel):
    """Container image carrying the program bytecode."""

    url: str
    image_pull_policy: Literal["Always", "IfNotPresent", "Never"] = "IfNotPresent"


class BytecodeSelector(KubeModel):
    """Where to find the bytecode. Exactly one of path or image must be set."""

    path: str | None = None
    image: BytecodeImage | None = None


class ProgramCommon(KubeModel):
    """Fields shared by every program intent."""

    section_name: str
    bytecode: BytecodeSelector = Field(alias="byteCode")
    node_selector: LabelSelector = Field(default_factory=LabelSelector)
    global_data: dict[str, str] = Field(
        default_factory=dict,
        description="global variable name -> base64 encoded initial value",
    )
    map_owner: str | None = Field(
        default=None,
        description="Name of another program of the same kind whose maps this program shares",
    )

    def problems(self) -> list[str]:
        """Return structural problems with the spec (empty if valid)."""
        errs = []
        if not self.section_name:
            errs.append("sectionName must be set")
        if (self.bytecode.path is None) == (self.bytecode.image is None):
            errs.append("exactly one of byteCode.path or byteCode.image must be set")
        return errs


class InterfaceSelector(KubeModel):
    """
    Interfaces an XDP or TC program attaches to on each selected node.

    Either an explicit list of interface names, or the node's primary interface,
    which is read from the node's ``bpfd.dev/primary-interface`` annotation.
    """

    interfaces: list[str] | None = None
    primary_node_interface: bool | None = None

    def problems(self) -> list[str]:
        if self.interfaces and self.primary_node_interface:
            return ["interfaceSelector must set only one of interfaces or primaryNodeInterface"]
        if not self.interfaces and not self.primary_node_interface:
            return ["at least one interface must be selected"]
        return []

    def resolve(self, node: Node) -> list[str] | None:
        """Interface names on ``node``, or None if its primary interface is unknown."""
        if self.primary_node_interface:
            iface = node.metadata.annotations.get(PRIMARY_INTERFACE_ANNOTATION)
            return [iface] if iface else None
        return list(self.interfaces or [])


def _priority_problems(priority: int) -> list[str]:
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        return [f"priority {priority} must be between {MIN_PRIORITY} and {MAX_PRIORITY}"]
    return []


class XdpProgramSpec(ProgramCommon):
    interface_selector: InterfaceSelector = Field(default_factory=InterfaceSelector)
    priority: int = 0
    proceed_on: list[XdpProceedOnValue] = Field(
        default_factory=lambda: [XdpProceedOnValue.PASS, XdpProceedOnValue.DISPATCHER_RETURN]
    )

    def problems(self) -> list[str]:
        return super().problems() + self.interface_selector.problems() + _priority_problems(self.priority)


class TcProgramSpec(ProgramCommon):
    interface_selector: InterfaceSelector = Field(default_factory=InterfaceSelector)
    priority: int = 0
    # checked in problems() so a bad value is reported on the object instead of failing to parse
    direction: str | None = None
    proceed_on: list[TcProceedOnValue] = Field(
        default_factory=lambda: [TcProceedOnValue.PIPE, TcProceedOnValue.DISPATCHER_RETURN]
    )

    def problems(self) -> list[str]:
        errs = super().problems() + self.interface_selector.problems() + _priority_problems(self.priority)
        if self.direction not in ("ingress", "egress"):
            errs.append(f"direction must be ingress or egress, got {self.direction!r}")
        return errs


class KprobeProgramSpec(ProgramCommon):
    function_names: list[str] = Field(default_factory=list)
    offset: int = 0
    retprobe: bool = False
    namespace: str | None = None

    def problems(self) -> list[str]:
        errs = super().problems()
        if not self.function_names:
            errs.append("at least one function name must be set")
        if self.offset < 0:
            errs.append("offset must not be negative")
        if self.retprobe and self.offset:
            errs.append("offset is not supported for return probes")
        return errs


class UprobeProgramSpec(ProgramCommon):
    function_name: str | None = None
    offset: int = 0
    targets: list[str] = Field(default_factory=list)
    retprobe: bool = False
    pid: int | None = None
    namespace: str | None = None

    def problems(self) -> list[str]:
        errs = super().problems()
        if not self.targets:
            errs.append("at least one target must be set")
        if self.offset < 0:
            errs.append("offset must not be negative")
        if self.retprobe and not self.function_name:
            errs.append("return probes require functionName")
        return errs


class TracepointProgramSpec(ProgramCommon):
    names: list[str] = Field(default_factory=list)

    def problems(self) -> list[str]:
        errs = super().problems()
        if not self.names:
            errs.append("at least one tracepoint name must be set")
        for name in self.names:
            if "/" not in name:
                errs.append(f"tracepoint {name!r} must be of the form <group>/<event>")
        return errs


class ProgramStatus(KubeModel):
    conditions: list[Condition] = Field(default_factory=list)


class Resource(KubeModel):
    """Common envelope of every stored object."""

    api_version: str = API_VERSION
    kind: str
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None


class ProgramResource(Resource):
    """A user-facing intent object; subclasses pin down the spec type."""

    spec: ProgramCommon
    status: ProgramStatus = Field(default_factory=ProgramStatus)


class XdpProgram(ProgramResource):
    kind: str = "XdpProgram"
    spec: XdpProgramSpec


class TcProgram(ProgramResource):
    kind: str = "TcProgram"
    spec: TcProgramSpec


class KprobeProgram(ProgramResource):
    kind: str = "KprobeProgram"
    spec: KprobeProgramSpec


class UprobeProgram(ProgramResource):
    kind: str = "UprobeProgram"
    spec: UprobeProgramSpec


class TracepointProgram(ProgramResource):
    kind: str = "TracepointProgram"
    spec: TracepointProgramSpec


# ---------------------------------------------------------------------------
# Execution records and nodes
# ---------------------------------------------------------------------------


class BpfProgramSpec(KubeModel):
    type: str  # xdp | tc | kprobe | uprobe | tracepoint
    node: str
    target: str


class BpfProgramStatus(KubeModel):
    conditions: list[Condition] = Field(default_factory=list)
    load_id: str | None = None
    map_owner_id: str | None = None


class BpfProgram(Resource):
    """Per-node, per-target unit of load work, owned by one intent object."""

    kind: str = BPF_PROGRAM_KIND
    spec: BpfProgramSpec
    status: BpfProgramStatus = Field(default_factory=BpfProgramStatus)

    @property
    def loaded(self) -> bool:
        cond = latest_condition(self.status.conditions)
        return cond is not None and cond.type == BpfProgramConditionType.LOADED.value


class Node(Resource):
    kind: str = NODE_KIND

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels
