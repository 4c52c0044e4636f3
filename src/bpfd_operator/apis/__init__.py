"""API layer: program intents, BpfProgram records, conditions and shared keys."""

from bpfd_operator.apis.models import (
    BpfProgram,
    BpfProgramConditionType,
    BpfProgramSpec,
    BpfProgramStatus,
    BytecodeImage,
    BytecodeSelector,
    Condition,
    InterfaceSelector,
    KprobeProgram,
    KprobeProgramSpec,
    LabelSelector,
    LabelSelectorRequirement,
    Node,
    ObjectMeta,
    OwnerReference,
    ProgramConditionType,
    ProgramResource,
    Resource,
    TcProceedOnValue,
    TcProgram,
    TcProgramSpec,
    TracepointProgram,
    TracepointProgramSpec,
    UprobeProgram,
    UprobeProgramSpec,
    XdpProceedOnValue,
    XdpProgram,
    XdpProgramSpec,
    controller_owner,
    latest_condition,
    set_condition,
)

__all__ = [
    "BpfProgram",
    "BpfProgramConditionType",
    "BpfProgramSpec",
    "BpfProgramStatus",
    "BytecodeImage",
    "BytecodeSelector",
    "Condition",
    "InterfaceSelector",
    "KprobeProgram",
    "KprobeProgramSpec",
    "LabelSelector",
    "LabelSelectorRequirement",
    "Node",
    "ObjectMeta",
    "OwnerReference",
    "ProgramConditionType",
    "ProgramResource",
    "Resource",
    "TcProceedOnValue",
    "TcProgram",
    "TcProgramSpec",
    "TracepointProgram",
    "TracepointProgramSpec",
    "UprobeProgram",
    "UprobeProgramSpec",
    "XdpProceedOnValue",
    "XdpProgram",
    "XdpProgramSpec",
    "controller_owner",
    "latest_condition",
    "set_condition",
]
