"""Daemon layer: RPC client and messages for the node-local bpfd daemon."""

from bpfd_operator.daemon.client import DaemonClient, DaemonError
from bpfd_operator.daemon.models import (
    TC_PROCEED_ON_CODES,
    XDP_PROCEED_ON_CODES,
    AttachInfo,
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

__all__ = [
    "TC_PROCEED_ON_CODES",
    "XDP_PROCEED_ON_CODES",
    "AttachInfo",
    "DaemonClient",
    "DaemonError",
    "KprobeAttachInfo",
    "LoadRequest",
    "LoadRequestCommon",
    "Location",
    "ProgramType",
    "TcAttachInfo",
    "TracepointAttachInfo",
    "UprobeAttachInfo",
    "XdpAttachInfo",
]
