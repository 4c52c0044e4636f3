"""
Status and finalizer writes shared by the operator and the agent.

Every write re-fetches the object first so it never clobbers a concurrent
update with a stale copy from the watch stream, and is skipped entirely when
it would not change anything. Repeated reconciles of a converged object
therefore produce no store writes.
"""

from __future__ import annotations

import logging
from typing import Callable

from bpfd_operator.apis.models import Condition, Resource, set_condition
from bpfd_operator.controllers.runtime import Result
from bpfd_operator.store.client import ClusterStore, ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def update_condition(
    store: ClusterStore,
    kind: str,
    name: str,
    condition: Condition,
    retry_after: float,
    mutate: Callable[[Resource], bool] | None = None,
) -> Result:
    """
    Record ``condition`` on the object's status, plus an optional status mutation.

    ``mutate`` receives the freshly fetched object and returns True if it
    changed the status.
    """
    try:
        obj = store.get(kind, name)
    except NotFoundError:
        logger.debug("%s/%s vanished before status update", kind, name)
        return Result()

    changed = mutate(obj) if mutate is not None else False
    changed = set_condition(obj.status.conditions, condition) or changed
    if not changed:
        return Result()

    try:
        store.update_status(obj)
    except NotFoundError:
        logger.debug("%s/%s vanished during status update", kind, name)
        return Result()
    except ConflictError:
        logger.debug("Conflict setting %s/%s status...requeuing", kind, name)
        return Result(requeue_after=retry_after)
    logger.info("%s/%s condition -> %s", kind, name, condition.type)
    return Result()


def add_finalizer(
    store: ClusterStore,
    kind: str,
    name: str,
    finalizer: str,
    retry_after: float,
) -> Result:
    try:
        obj = store.get(kind, name)
    except NotFoundError:
        return Result()
    if finalizer in obj.metadata.finalizers:
        return Result()
    obj.metadata.finalizers.append(finalizer)
    try:
        store.patch_finalizers(obj)
    except NotFoundError:
        return Result()
    except ConflictError:
        logger.debug("Conflict adding finalizer to %s/%s...requeuing", kind, name)
        return Result(requeue_after=retry_after)
    logger.debug("Added finalizer %s to %s/%s", finalizer, kind, name)
    return Result()


def remove_finalizer(
    store: ClusterStore,
    kind: str,
    name: str,
    finalizer: str,
    retry_after: float,
) -> Result:
    """Drop ``finalizer``. Only the component owning the teardown step may call this."""
    try:
        obj = store.get(kind, name)
    except NotFoundError:
        return Result()
    if finalizer not in obj.metadata.finalizers:
        return Result()
    obj.metadata.finalizers = [f for f in obj.metadata.finalizers if f != finalizer]
    try:
        store.patch_finalizers(obj)
    except NotFoundError:
        return Result()
    except ConflictError:
        logger.debug("Conflict removing finalizer from %s/%s...requeuing", kind, name)
        return Result(requeue_after=retry_after)
    logger.debug("Removed finalizer %s from %s/%s", finalizer, kind, name)
    return Result()
