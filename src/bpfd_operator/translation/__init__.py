"""Translation layer: intent + target -> bpfd load request, and the kind registry."""

from bpfd_operator.translation.registry import (
    KindRegistry,
    ProgramKind,
    build_registry,
    sanitize_name,
)
from bpfd_operator.translation.translator import (
    translate_kprobe,
    translate_tc,
    translate_tracepoint,
    translate_uprobe,
    translate_xdp,
)

__all__ = [
    "KindRegistry",
    "ProgramKind",
    "build_registry",
    "sanitize_name",
    "translate_kprobe",
    "translate_tc",
    "translate_tracepoint",
    "translate_uprobe",
    "translate_xdp",
]
