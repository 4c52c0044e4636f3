"""Translate a program intent plus one concrete target into a bpfd load request."""

from __future__ import annotations

from bpfd_operator.apis.models import (
    KprobeProgram,
    ProgramCommon,
    TcProgram,
    TracepointProgram,
    UprobeProgram,
    XdpProgram,
)
from bpfd_operator.daemon.models import (
    TC_PROCEED_ON_CODES,
    XDP_PROCEED_ON_CODES,
    AttachInfo,
    ImageLocation,
    KprobeAttachInfo,
    LoadRequest,
    LoadRequestCommon,
    Location,
    ProgramType,
    TcAttachInfo,
    TracepointAttachInfo,
    UprobeAttachInfo,
    XdpAttachInfo,
)


def _location(spec: ProgramCommon) -> Location:
    if spec.bytecode.path is not None:
        return Location(file=spec.bytecode.path)
    image = spec.bytecode.image
    return Location(image=ImageLocation(url=image.url, image_pull_policy=image.image_pull_policy))


def _common(spec: ProgramCommon, program_type: ProgramType) -> LoadRequestCommon:
    # map sharing is resolved by the agent on the node, never here
    return LoadRequestCommon(
        location=_location(spec),
        section_name=spec.section_name,
        program_type=int(program_type),
        map_owner_id="",
        global_data=dict(spec.global_data),
    )


def translate_xdp(program: XdpProgram, iface: str) -> LoadRequest:
    """XDP attach on ``iface`` with the dispatcher priority and proceed-on codes."""
    spec = program.spec
    return LoadRequest(
        common=_common(spec, ProgramType.XDP),
        attach_info=AttachInfo(
            xdp=XdpAttachInfo(
                iface=iface,
                priority=spec.priority,
                proceed_on=[XDP_PROCEED_ON_CODES[v] for v in spec.proceed_on],
            )
        ),
    )


def translate_tc(program: TcProgram, iface: str) -> LoadRequest:
    """TC attach on ``iface`` in the spec's direction. ``direction`` must already be validated."""
    spec = program.spec
    return LoadRequest(
        common=_common(spec, ProgramType.TC),
        attach_info=AttachInfo(
            tc=TcAttachInfo(
                iface=iface,
                priority=spec.priority,
                direction=spec.direction,
                proceed_on=[TC_PROCEED_ON_CODES[v] for v in spec.proceed_on],
            )
        ),
    )


def translate_kprobe(program: KprobeProgram, fn_name: str) -> LoadRequest:
    """Kernel probe on ``fn_name``; ``retprobe`` selects a kretprobe."""
    spec = program.spec
    return LoadRequest(
        common=_common(spec, ProgramType.PROBE),
        attach_info=AttachInfo(
            kprobe=KprobeAttachInfo(
                fn_name=fn_name,
                offset=spec.offset,
                retprobe=spec.retprobe,
                namespace=spec.namespace or "",
            )
        ),
    )


def translate_uprobe(program: UprobeProgram, target: str) -> LoadRequest:
    """User probe in the binary or library at ``target``."""
    spec = program.spec
    return LoadRequest(
        common=_common(spec, ProgramType.PROBE),
        attach_info=AttachInfo(
            uprobe=UprobeAttachInfo(
                fn_name=spec.function_name or "",
                offset=spec.offset,
                target=target,
                retprobe=spec.retprobe,
                pid=spec.pid,
                namespace=spec.namespace or "",
            )
        ),
    )


def translate_tracepoint(program: TracepointProgram, name: str) -> LoadRequest:
    """Tracepoint ``name`` in ``<group>/<event>`` form."""
    return LoadRequest(
        common=_common(program.spec, ProgramType.TRACEPOINT),
        attach_info=AttachInfo(tracepoint=TracepointAttachInfo(tracepoint=name)),
    )
