"""Request and response messages exchanged with the node-local bpfd daemon."""

from __future__ import annotations

from enum import IntEnum

from pydantic import BaseModel, Field

from bpfd_operator.apis.models import TcProceedOnValue, XdpProceedOnValue


class ProgramType(IntEnum):
    """Kernel program type numbers understood by the daemon."""

    PROBE = 2
    TC = 3
    TRACEPOINT = 5
    XDP = 6


# Action name -> numeric code. Must match the daemon's enumeration exactly.
XDP_PROCEED_ON_CODES: dict[XdpProceedOnValue, int] = {
    XdpProceedOnValue.ABORTED: 0,
    XdpProceedOnValue.DROP: 1,
    XdpProceedOnValue.PASS: 2,
    XdpProceedOnValue.TX: 3,
    XdpProceedOnValue.REDIRECT: 4,
    XdpProceedOnValue.DISPATCHER_RETURN: 31,
}

TC_PROCEED_ON_CODES: dict[TcProceedOnValue, int] = {
    TcProceedOnValue.UNSPEC: -1,
    TcProceedOnValue.OK: 0,
    TcProceedOnValue.RECLASSIFY: 1,
    TcProceedOnValue.SHOT: 2,
    TcProceedOnValue.PIPE: 3,
    TcProceedOnValue.STOLEN: 4,
    TcProceedOnValue.QUEUED: 5,
    TcProceedOnValue.REPEAT: 6,
    TcProceedOnValue.REDIRECT: 7,
    TcProceedOnValue.TRAP: 8,
    TcProceedOnValue.DISPATCHER_RETURN: 30,
}


class ImageLocation(BaseModel):
    url: str
    image_pull_policy: str = "IfNotPresent"


class Location(BaseModel):
    """Bytecode locator. Exactly one field is set."""

    file: str | None = None
    image: ImageLocation | None = None


class LoadRequestCommon(BaseModel):
    location: Location
    section_name: str
    program_type: int
    id: str | None = None
    map_owner_id: str = ""  # empty string means no map sharing
    global_data: dict[str, str] = Field(default_factory=dict)


class XdpAttachInfo(BaseModel):
    iface: str
    priority: int
    proceed_on: list[int]


class TcAttachInfo(BaseModel):
    iface: str
    priority: int
    direction: str
    proceed_on: list[int]


class KprobeAttachInfo(BaseModel):
    fn_name: str
    offset: int = 0
    retprobe: bool = False
    namespace: str = ""


class UprobeAttachInfo(BaseModel):
    fn_name: str = ""
    offset: int = 0
    target: str
    retprobe: bool = False
    pid: int | None = None
    namespace: str = ""


class TracepointAttachInfo(BaseModel):
    tracepoint: str


class AttachInfo(BaseModel):
    """Kind-specific attach payload. Exactly one field is set."""

    xdp: XdpAttachInfo | None = None
    tc: TcAttachInfo | None = None
    kprobe: KprobeAttachInfo | None = None
    uprobe: UprobeAttachInfo | None = None
    tracepoint: TracepointAttachInfo | None = None


class LoadRequest(BaseModel):
    common: LoadRequestCommon
    attach_info: AttachInfo


class LoadResponse(BaseModel):
    id: str


class UnloadRequest(BaseModel):
    id: str


class UnloadResponse(BaseModel):
    pass


class ListRequest(BaseModel):
    pass


class ListResponse(BaseModel):
    ids: list[str] = Field(default_factory=list)
