"""Explicit mapping from program kind to its model, targets and translation."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

from bpfd_operator.apis import constants
from bpfd_operator.apis.models import (
    KprobeProgram,
    Node,
    ProgramResource,
    TcProgram,
    TracepointProgram,
    UprobeProgram,
    XdpProgram,
)
from bpfd_operator.daemon.models import LoadRequest, ProgramType
from bpfd_operator.translation.translator import (
    translate_kprobe,
    translate_tc,
    translate_tracepoint,
    translate_uprobe,
    translate_xdp,
)

# Kubernetes object names are DNS subdomains
MAX_NAME_LENGTH = 253
DIGEST_LENGTH = 8

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9]+")


def sanitize_name(value: str) -> str:
    """Lowercase and replace runs of characters other than [a-z0-9] with '-'."""
    return _INVALID_NAME_CHARS.sub("-", value.lower()).strip("-")


def _interface_targets(spec: Any, node: Node) -> list[str] | None:
    return spec.interface_selector.resolve(node)


@dataclass(frozen=True)
class ProgramKind:
    """Everything the controllers need to know about one intent kind."""

    kind: str
    record_type: str
    model: type[ProgramResource]
    program_type: ProgramType
    finalizer: str
    target_annotation: str
    # (spec, node) -> targets on that node, or None if they cannot be resolved there
    targets: Callable[[Any, Node], list[str] | None]
    translate: Callable[[Any, str], LoadRequest]

    def record_name(self, program_name: str, node_name: str, target: str) -> str:
        """
        Name of the BpfProgram record for one (program, node, target) of this kind.

        The readable prefix ``<program>-<node>-<target>`` is ambiguous on its own
        (names contain '-', targets are sanitized, kinds share the namespace), so
        it is followed by a digest of the exact kind, program, node and target.
        """
        key = "\0".join((self.kind, program_name, node_name, target))
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]
        prefix = f"{program_name}-{node_name}-{sanitize_name(target)}"
        prefix = prefix[: MAX_NAME_LENGTH - DIGEST_LENGTH - 1].rstrip("-.")
        return f"{prefix}-{digest}"

    def desired_targets(self, program: ProgramResource, node: Node) -> list[str] | None:
        """Targets of ``program`` on ``node`` in spec order, without duplicates."""
        targets = self.targets(program.spec, node)
        if targets is None:
            return None
        return list(dict.fromkeys(targets))


class KindRegistry:
    """Lookup of ProgramKind by intent kind or by record type."""

    def __init__(self, kinds: Iterable[ProgramKind]) -> None:
        self._by_kind: dict[str, ProgramKind] = {}
        self._by_record_type: dict[str, ProgramKind] = {}
        for k in kinds:
            self._by_kind[k.kind] = k
            self._by_record_type[k.record_type] = k

    def get(self, kind: str) -> ProgramKind:
        """Look up by intent kind, e.g. ``XdpProgram``. Raises KeyError if unknown."""
        return self._by_kind[kind]

    def for_record_type(self, record_type: str) -> ProgramKind:
        """Look up by ``BpfProgram.spec.type``, e.g. ``xdp``. Raises KeyError if unknown."""
        return self._by_record_type[record_type]

    def __iter__(self) -> Iterator[ProgramKind]:
        return iter(self._by_kind.values())

    def __len__(self) -> int:
        return len(self._by_kind)


def build_registry() -> KindRegistry:
    """Build the registry of every supported program kind."""
    return KindRegistry(
        [
            ProgramKind(
                kind="XdpProgram",
                record_type="xdp",
                model=XdpProgram,
                program_type=ProgramType.XDP,
                finalizer=constants.XDP_FINALIZER,
                target_annotation=constants.XDP_INTERFACE_ANNOTATION,
                targets=_interface_targets,
                translate=translate_xdp,
            ),
            ProgramKind(
                kind="TcProgram",
                record_type="tc",
                model=TcProgram,
                program_type=ProgramType.TC,
                finalizer=constants.TC_FINALIZER,
                target_annotation=constants.TC_INTERFACE_ANNOTATION,
                targets=_interface_targets,
                translate=translate_tc,
            ),
            ProgramKind(
                kind="KprobeProgram",
                record_type="kprobe",
                model=KprobeProgram,
                program_type=ProgramType.PROBE,
                finalizer=constants.KPROBE_FINALIZER,
                target_annotation=constants.KPROBE_FUNCTION_ANNOTATION,
                targets=lambda spec, node: spec.function_names,
                translate=translate_kprobe,
            ),
            ProgramKind(
                kind="UprobeProgram",
                record_type="uprobe",
                model=UprobeProgram,
                program_type=ProgramType.PROBE,
                finalizer=constants.UPROBE_FINALIZER,
                target_annotation=constants.UPROBE_TARGET_ANNOTATION,
                targets=lambda spec, node: spec.targets,
                translate=translate_uprobe,
            ),
            ProgramKind(
                kind="TracepointProgram",
                record_type="tracepoint",
                model=TracepointProgram,
                program_type=ProgramType.TRACEPOINT,
                finalizer=constants.TRACEPOINT_FINALIZER,
                target_annotation=constants.TRACEPOINT_ANNOTATION,
                targets=lambda spec, node: spec.names,
                translate=translate_tracepoint,
            ),
        ]
    )
