"""Cluster store access: get/list/watch/create/update/delete of program resources."""

from __future__ import annotations

import abc
import logging
import threading
from typing import Any, Iterator

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from bpfd_operator.apis.constants import (
    API_GROUP,
    API_VERSION_NAME,
    BPF_PROGRAM_KIND,
    PLURALS,
)
from bpfd_operator.apis.models import BpfProgram, LabelSelector, Node, ObjectMeta, Resource

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A cluster store call failed."""

    def __init__(self, message: str, kind: str = "", name: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.name = name


class NotFoundError(StoreError):
    """The object does not exist (or vanished between watch event and fetch)."""


class ConflictError(StoreError):
    """The write was based on a stale resourceVersion."""


class AlreadyExistsError(ConflictError):
    """An object with that name already exists."""


class InvalidObjectError(StoreError):
    """A stored object does not validate against its model."""


def _label_query(labels: dict[str, str] | None) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted((labels or {}).items()))


class ClusterStore(abc.ABC):
    """Interface the controllers use to read and write cluster objects."""

    @abc.abstractmethod
    def get(self, kind: str, name: str) -> Resource: ...

    @abc.abstractmethod
    def list(self, kind: str, labels: dict[str, str] | None = None) -> list[Resource]: ...

    @abc.abstractmethod
    def create(self, obj: Resource) -> Resource: ...

    @abc.abstractmethod
    def patch_finalizers(self, obj: Resource) -> Resource:
        """Write metadata.finalizers only, guarded by the object's resourceVersion.

        Spec and status are left as stored so edits made since the read survive.
        """

    @abc.abstractmethod
    def update_status(self, obj: Resource) -> Resource:
        """Write the status subresource only."""

    @abc.abstractmethod
    def delete(self, kind: str, name: str) -> None:
        """Request deletion. Objects with finalizers linger until those are removed."""

    @abc.abstractmethod
    def list_nodes(self, selector: LabelSelector | None = None) -> list[Node]: ...

    @abc.abstractmethod
    def watch(
        self,
        kind: str,
        labels: dict[str, str] | None = None,
        stop: threading.Event | None = None,
    ) -> Iterator[tuple[str, Resource]]:
        """Yield (event type, object) pairs. Events may be coalesced or missed."""


def _load_kube_config(kubeconfig_path: str | None, context: str | None) -> client.Configuration:
    """Load in-cluster or kubeconfig-based configuration."""
    try:
        config.load_incluster_config()
        return client.Configuration.get_default_copy()
    except config.ConfigException:
        pass
    kwargs: dict[str, Any] = {}
    if kubeconfig_path:
        kwargs["config_file"] = str(kubeconfig_path)
    if context:
        kwargs["context"] = context
    config.load_kube_config(**kwargs)
    return client.Configuration.get_default_copy()


def _api_error(e: ApiException, kind: str, name: str, creating: bool = False) -> StoreError:
    msg = f"{kind}/{name}: {e.status} {e.reason}"
    if e.status == 404:
        return NotFoundError(msg, kind, name)
    if e.status == 409:
        if creating:
            return AlreadyExistsError(msg, kind, name)
        return ConflictError(msg, kind, name)
    return StoreError(msg, kind, name)


def _node_from_v1(node: Any) -> Node:
    return Node(
        metadata=ObjectMeta(
            name=node.metadata.name,
            uid=node.metadata.uid or "",
            labels=dict(node.metadata.labels or {}),
            annotations=dict(getattr(node.metadata, "annotations", None) or {}),
        )
    )


class KubernetesStore(ClusterStore):
    """ClusterStore backed by the Kubernetes API (bpfd.dev custom resources)."""

    def __init__(
        self,
        models: dict[str, type[Resource]],
        kubeconfig: str | None = None,
        context: str | None = None,
        api_client: client.ApiClient | None = None,
        watch_timeout_seconds: int = 300,
    ) -> None:
        self._models = {BPF_PROGRAM_KIND: BpfProgram, **models}
        if api_client is None:
            api_client = client.ApiClient(_load_kube_config(kubeconfig, context))
        self._custom = client.CustomObjectsApi(api_client)
        self._core = client.CoreV1Api(api_client)
        self.watch_timeout_seconds = watch_timeout_seconds

    def _args(self, kind: str) -> tuple[str, str, str]:
        return API_GROUP, API_VERSION_NAME, PLURALS[kind]

    def _parse(self, kind: str, raw: dict[str, Any]) -> Resource:
        try:
            return self._models[kind].model_validate(raw)
        except ValidationError as e:
            name = (raw.get("metadata") or {}).get("name", "")
            raise InvalidObjectError(f"{kind}/{name}: {e}", kind, name) from e

    def _envelope(self, kind: str, raw: dict[str, Any]) -> Resource | None:
        """Metadata-only stand-in for an object whose spec does not validate."""
        try:
            return Resource(kind=kind, metadata=ObjectMeta.model_validate(raw.get("metadata") or {}))
        except ValidationError:
            return None

    def get(self, kind: str, name: str) -> Resource:
        try:
            raw = self._custom.get_cluster_custom_object(*self._args(kind), name)
        except ApiException as e:
            raise _api_error(e, kind, name) from e
        return self._parse(kind, raw)

    def list(self, kind: str, labels: dict[str, str] | None = None) -> list[Resource]:
        try:
            raw = self._custom.list_cluster_custom_object(
                *self._args(kind),
                label_selector=_label_query(labels),
            )
        except ApiException as e:
            logger.warning("Failed to list %s: %s", kind, e.reason)
            raise _api_error(e, kind, "") from e
        out = []
        for item in raw.get("items", []):
            try:
                out.append(self._parse(kind, item))
            except InvalidObjectError as e:
                logger.warning("Skipping invalid object: %s", e)
        return out

    def create(self, obj: Resource) -> Resource:
        try:
            raw = self._custom.create_cluster_custom_object(*self._args(obj.kind), obj.to_dict())
        except ApiException as e:
            raise _api_error(e, obj.kind, obj.name, creating=True) from e
        return self._parse(obj.kind, raw)

    def patch_finalizers(self, obj: Resource) -> Resource:
        body = {
            "metadata": {
                "finalizers": list(obj.metadata.finalizers),
                "resourceVersion": obj.metadata.resource_version,
            }
        }
        try:
            raw = self._custom.patch_cluster_custom_object(
                *self._args(obj.kind),
                obj.name,
                body,
                _content_type="application/merge-patch+json",
            )
        except ApiException as e:
            raise _api_error(e, obj.kind, obj.name) from e
        return self._parse(obj.kind, raw)

    def update_status(self, obj: Resource) -> Resource:
        try:
            raw = self._custom.replace_cluster_custom_object_status(
                *self._args(obj.kind), obj.name, obj.to_dict()
            )
        except ApiException as e:
            raise _api_error(e, obj.kind, obj.name) from e
        return self._parse(obj.kind, raw)

    def delete(self, kind: str, name: str) -> None:
        try:
            self._custom.delete_cluster_custom_object(*self._args(kind), name)
        except ApiException as e:
            raise _api_error(e, kind, name) from e

    def list_nodes(self, selector: LabelSelector | None = None) -> list[Node]:
        try:
            nodes = self._core.list_node(label_selector=selector.to_query() if selector else "")
        except ApiException as e:
            logger.warning("Failed to list nodes: %s", e.reason)
            raise _api_error(e, "Node", "") from e
        out = [_node_from_v1(n) for n in nodes.items]
        # The API filters by labels; re-check in case the query could not express the selector
        if selector is not None:
            out = [n for n in out if selector.matches(n.labels)]
        return out

    def watch(
        self,
        kind: str,
        labels: dict[str, str] | None = None,
        stop: threading.Event | None = None,
    ) -> Iterator[tuple[str, Resource]]:
        w = watch.Watch()
        try:
            for event in w.stream(
                self._custom.list_cluster_custom_object,
                *self._args(kind),
                label_selector=_label_query(labels),
                timeout_seconds=self.watch_timeout_seconds,
            ):
                if stop is not None and stop.is_set():
                    break
                if event.get("type") == "ERROR":
                    logger.warning("Watch on %s returned error: %s", kind, event.get("object"))
                    break
                try:
                    obj = self._parse(kind, event["object"])
                except InvalidObjectError as e:
                    # still deliver the key so the reconciler can report it
                    logger.warning("Invalid object in watch on %s: %s", kind, e)
                    obj = self._envelope(kind, event["object"])
                    if obj is None:
                        continue
                yield event["type"], obj
        except ApiException as e:
            raise _api_error(e, kind, "") from e
        finally:
            w.stop()
