"""Store layer: cluster store interface, Kubernetes implementation and errors."""

from bpfd_operator.store.client import (
    AlreadyExistsError,
    ClusterStore,
    ConflictError,
    InvalidObjectError,
    KubernetesStore,
    NotFoundError,
    StoreError,
)

__all__ = [
    "AlreadyExistsError",
    "ClusterStore",
    "ConflictError",
    "InvalidObjectError",
    "KubernetesStore",
    "NotFoundError",
    "StoreError",
]
