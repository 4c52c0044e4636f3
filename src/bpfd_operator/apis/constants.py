"""Stable label, annotation and finalizer keys shared by the operator and the agent."""

API_GROUP = "bpfd.dev"
API_VERSION_NAME = "v1alpha1"
API_VERSION = f"{API_GROUP}/{API_VERSION_NAME}"

# Labels on BpfProgram records
OWNER_LABEL = "bpfd.dev/ownedByProgram"
HOST_LABEL = "kubernetes.io/hostname"

# Finalizer the operator holds on every intent object
OPERATOR_FINALIZER = "bpfd.dev.operator/finalizer"

# Per-kind finalizers the agent holds on records while daemon-side state exists
XDP_FINALIZER = "bpfd.dev.xdpprogramcontroller/finalizer"
TC_FINALIZER = "bpfd.dev.tcprogramcontroller/finalizer"
KPROBE_FINALIZER = "bpfd.dev.kprobeprogramcontroller/finalizer"
UPROBE_FINALIZER = "bpfd.dev.uprobeprogramcontroller/finalizer"
TRACEPOINT_FINALIZER = "bpfd.dev.tracepointprogramcontroller/finalizer"

# Target discriminator annotations on records
XDP_INTERFACE_ANNOTATION = "bpfd.dev.xdpprogramcontroller/interface"
TC_INTERFACE_ANNOTATION = "bpfd.dev.tcprogramcontroller/interface"
KPROBE_FUNCTION_ANNOTATION = "bpfd.dev.kprobeprogramcontroller/function"
UPROBE_TARGET_ANNOTATION = "bpfd.dev.uprobeprogramcontroller/target"
TRACEPOINT_ANNOTATION = "bpfd.dev.tracepointprogramcontroller/tracepoint"

BPF_PROGRAM_KIND = "BpfProgram"
NODE_KIND = "Node"

# kind -> plural resource name under API_GROUP
PLURALS = {
    "XdpProgram": "xdpprograms",
    "TcProgram": "tcprograms",
    "KprobeProgram": "kprobeprograms",
    "UprobeProgram": "uprobeprograms",
    "TracepointProgram": "tracepointprograms",
    BPF_PROGRAM_KIND: "bpfprograms",
}

# Node annotation naming the interface an interfaceSelector.primaryNodeInterface resolves to
PRIMARY_INTERFACE_ANNOTATION = "bpfd.dev/primary-interface"

# Dispatcher priority range for XDP and TC programs
MIN_PRIORITY = 0
MAX_PRIORITY = 1000
