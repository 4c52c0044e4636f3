"""
Controller runtime: a de-duplicating work queue, worker threads and watch loops.

A key is never handed to two workers at once. Keys re-added while being
processed are delivered again once the current reconcile finishes.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable

from bpfd_operator.apis.models import Resource
from bpfd_operator.store.client import ClusterStore

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0


@dataclass(frozen=True)
class Result:
    """Outcome of one reconcile: whether and when to look at the key again."""

    requeue: bool = False
    requeue_after: float | None = None


class WorkQueue:
    """Work queue of object keys with per-key serialization and backoff."""

    def __init__(
        self,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available. Returns None on timeout or shutdown."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                if not self._cond.wait(timeout):
                    return None
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            timer = threading.Timer(delay, self._fire, args=(key,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _fire(self, key: str) -> None:
        # runs on the Timer's own thread
        with self._cond:
            self._timers.discard(threading.current_thread())
        self.add(key)

    def add_rate_limited(self, key: str) -> None:
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        self.add_after(key, min(self.base_delay * (2**failures), self.max_delay))

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            for t in self._timers:
                t.cancel()
            self._timers.clear()
            self._cond.notify_all()


class Controller:
    """Drains a WorkQueue with a bounded pool of worker threads."""

    def __init__(
        self,
        name: str,
        reconcile: Callable[[str], Result],
        workers: int = 1,
        queue: WorkQueue | None = None,
    ) -> None:
        self.name = name
        self.reconcile = reconcile
        self.workers = workers
        self.queue = queue or WorkQueue()
        self._threads: list[threading.Thread] = []

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one key. Returns False if no key was available."""
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            result = self.reconcile(key)
        except Exception:
            logger.exception("Reconciler error (controller=%s, key=%s)", self.name, key)
            self.queue.add_rate_limited(key)
        else:
            if result.requeue_after:
                self.queue.forget(key)
                self.queue.add_after(key, result.requeue_after)
            elif result.requeue:
                self.queue.add_rate_limited(key)
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _worker(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self.process_next(timeout=0.5)

    def start(self, stop: threading.Event) -> None:
        logger.info("Starting %d workers (controller=%s)", self.workers, self.name)
        for i in range(self.workers):
            t = threading.Thread(
                target=self._worker,
                args=(stop,),
                name=f"{self.name}-worker-{i}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)

    def shutdown(self, timeout: float | None = None) -> None:
        self.queue.shutdown()
        for t in self._threads:
            t.join(timeout)


class Watcher:
    """Streams a store watch and maps every event to keys on a controller's queue."""

    def __init__(
        self,
        store: ClusterStore,
        kind: str,
        controller: Controller,
        mapper: Callable[[Resource], Iterable[str]] | None = None,
        labels: dict[str, str] | None = None,
        predicate: Callable[[Resource], bool] | None = None,
        retry_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.kind = kind
        self.controller = controller
        self.mapper = mapper or (lambda obj: [obj.name])
        self.labels = labels
        self.predicate = predicate
        self.retry_seconds = retry_seconds

    def handle(self, obj: Resource) -> None:
        if self.predicate is not None and not self.predicate(obj):
            return
        for key in self.mapper(obj):
            self.controller.enqueue(key)

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                for _event_type, obj in self.store.watch(self.kind, self.labels, stop):
                    self.handle(obj)
            except Exception:
                logger.exception("Watch on %s failed; reconnecting", self.kind)
                stop.wait(self.retry_seconds)

    def start(self, stop: threading.Event) -> threading.Thread:
        t = threading.Thread(target=self.run, args=(stop,), name=f"watch-{self.kind}", daemon=True)
        t.start()
        return t
