from __future__ import annotations

import heapq
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from community_operator.src.cache import ObjectCache, object_key
from community_operator.src.metrics import METRICS
from community_operator.src.scheme import ResourceType

_MAX_REQUEUE_BACKOFF_SECONDS = 30.0


@dataclass(frozen=True, order=True)
class Request:
    """Identifies one object to reconcile."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class Result:
    requeue_after: float | None = None


class Reconciler(Protocol):
    def reconcile(self, request: Request) -> Result: ...


class WorkQueue:
    """Deduplicating queue of reconcile requests with delayed re-adds.

    A request that is already queued is not queued twice. A request that is
    being processed is marked dirty instead and re-queued once the worker
    calls :meth:`done`, so one object is never reconciled concurrently.
    """

    def __init__(self, name: str, now_fn: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self.now_fn = now_fn
        self._queue: list[Request] = []
        self._queued: set[Request] = set()
        self._processing: set[Request] = set()
        self._dirty: set[Request] = set()
        self._delayed: list[tuple[float, Request]] = []
        self._shutdown = False
        self._condition = threading.Condition()

    def __len__(self) -> int:
        with self._condition:
            return len(self._queue)

    def _update_depth(self) -> None:
        METRICS.work_queue_depth.labels(controller=self.name).set(len(self._queue))

    def _add_locked(self, request: Request) -> None:
        if request in self._processing:
            self._dirty.add(request)
            return
        if request in self._queued:
            return
        self._queued.add(request)
        self._queue.append(request)
        self._update_depth()
        self._condition.notify()

    def add(self, request: Request) -> None:
        with self._condition:
            if self._shutdown:
                return
            self._add_locked(request)

    def add_after(self, request: Request, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(request)
            return
        with self._condition:
            if self._shutdown:
                return
            heapq.heappush(self._delayed, (self.now_fn() + delay_seconds, request))
            self._condition.notify()

    def _promote_due_locked(self) -> float | None:
        """Move due delayed requests to the queue; return seconds until the next one."""
        now = self.now_fn()
        while self._delayed and self._delayed[0][0] <= now:
            _, request = heapq.heappop(self._delayed)
            self._add_locked(request)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> Request | None:
        """Return the next request, or ``None`` on shutdown or *timeout*."""
        deadline = None if timeout is None else self.now_fn() + timeout
        with self._condition:
            while True:
                if self._shutdown:
                    return None
                next_due = self._promote_due_locked()
                if self._queue:
                    request = self._queue.pop(0)
                    self._queued.discard(request)
                    self._processing.add(request)
                    self._update_depth()
                    return request

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self.now_fn()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._condition.wait(timeout=wait_for)

    def done(self, request: Request) -> None:
        with self._condition:
            self._processing.discard(request)
            if request in self._dirty:
                self._dirty.discard(request)
                self._add_locked(request)

    def shutdown(self) -> None:
        with self._condition:
            self._shutdown = True
            self._condition.notify_all()


class Controller:
    """Runnable that feeds cache events for one resource type to a reconciler.

    Every ``ADDED``/``MODIFIED``/``DELETED`` event enqueues the object's
    :class:`Request`. Worker threads call ``reconciler.reconcile``; a
    ``Result.requeue_after`` schedules another pass, and an exception is
    logged and retried with exponential backoff (1 s to 30 s cap).
    """

    def __init__(
        self,
        name: str,
        reconciler: Reconciler,
        cache: ObjectCache,
        resource_type: ResourceType,
        max_concurrent_reconciles: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be >= 1")
        self.name = name
        self.reconciler = reconciler
        self.cache = cache
        self.resource_type = resource_type
        self.max_concurrent_reconciles = max_concurrent_reconciles
        self.logger = logger or logging.getLogger(__name__)
        self.queue = WorkQueue(name)
        self._failures: dict[Request, int] = {}
        self._failures_lock = threading.Lock()

        cache.add_event_handler(resource_type, self._enqueue)

    def _enqueue(self, event_type: str, obj: dict[str, Any]) -> None:
        namespace, name = object_key(obj)
        if not name:
            return
        self.logger.debug("Enqueueing %s/%s after %s event", namespace, name, event_type)
        self.queue.add(Request(namespace=namespace, name=name))

    def _backoff_for(self, request: Request) -> float:
        with self._failures_lock:
            attempts = self._failures.get(request, 0) + 1
            self._failures[request] = attempts
        return min(float(2 ** (attempts - 1)), _MAX_REQUEUE_BACKOFF_SECONDS)

    def _forget(self, request: Request) -> None:
        with self._failures_lock:
            self._failures.pop(request, None)

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued request. Returns False when the queue shut down or timed out."""
        request = self.queue.get(timeout=timeout)
        if request is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(request)
        except Exception:
            delay = self._backoff_for(request)
            self.logger.exception(
                "Reconciler %s failed for %s, retrying in %.0fs", self.name, request, delay
            )
            METRICS.reconcile_total.labels(controller=self.name, result="error").inc()
            self.queue.done(request)
            self.queue.add_after(request, delay)
            return True
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )

        self._forget(request)
        self.queue.done(request)
        if result.requeue_after is not None:
            METRICS.reconcile_total.labels(controller=self.name, result="requeue").inc()
            self.queue.add_after(request, result.requeue_after)
        else:
            METRICS.reconcile_total.labels(controller=self.name, result="success").inc()
        return True

    def _worker(self) -> None:
        while self.process_next():
            pass

    def start(self, stop_event: threading.Event) -> None:
        """Run the worker threads until *stop_event* fires."""
        workers = [
            threading.Thread(target=self._worker, name=f"{self.name}-worker-{index}", daemon=True)
            for index in range(self.max_concurrent_reconciles)
        ]
        for worker in workers:
            worker.start()
        self.logger.info(
            "Started controller %s with %d worker(s)", self.name, self.max_concurrent_reconciles
        )

        stop_event.wait()
        self.queue.shutdown()
        for worker in workers:
            worker.join(timeout=5)
        self.logger.info("Stopped controller %s", self.name)
