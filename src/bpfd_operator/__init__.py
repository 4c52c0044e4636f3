"""bpfd-operator: reconcile eBPF program intents across a Kubernetes cluster."""

__version__ = "0.1.0"
