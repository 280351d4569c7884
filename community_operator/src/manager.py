from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from kubernetes.client import Configuration

from community_operator.src.cache import CacheOptions, ObjectCache, new_cache
from community_operator.src.errors import ConstructionError, ManagerRuntimeError
from community_operator.src.metrics import METRICS
from community_operator.src.scheme import Scheme

NewCacheFunc = Callable[[Configuration, CacheOptions], ObjectCache]


class ManagerState(StrEnum):
    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    STOPPED = "Stopped"
    CRASHED = "Crashed"


class Runnable(Protocol):
    def start(self, stop_event: threading.Event) -> None: ...


@dataclass(frozen=True)
class ManagerOptions:
    """Construction parameters for :class:`Manager`.

    Attributes:
        scheme:    Registry of the types the manager can watch.
        namespace: Namespace to watch; ``""`` watches every namespace.
        new_cache: Cache constructor; ``None`` uses the unfiltered default.
    """

    scheme: Scheme
    namespace: str = ""
    new_cache: NewCacheFunc | None = None
    cache_sync_timeout_seconds: float = 120
    graceful_shutdown_timeout_seconds: float = 30


class Manager:
    """Owns the cache and the registered runnables, and runs them.

    The manager is started at most once. ``start`` blocks until the stop
    event fires (state ``Stopped``) or a runnable fails (state ``Crashed``,
    :class:`ManagerRuntimeError` raised). In both cases every runnable is
    asked to stop through a shared internal event and joined within the
    graceful shutdown timeout.
    """

    def __init__(
        self,
        connection: Configuration,
        options: ManagerOptions,
        cache: ObjectCache,
        logger: logging.Logger | None = None,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.connection = connection
        self.options = options
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)
        self.poll_interval_seconds = poll_interval_seconds
        self.ready = threading.Event()

        self._runnables: list[tuple[str, Runnable]] = []
        self._state = ManagerState.NOT_STARTED
        self._state_lock = threading.Lock()

    @property
    def scheme(self) -> Scheme:
        return self.options.scheme

    @property
    def namespace(self) -> str:
        return self.options.namespace

    @property
    def state(self) -> ManagerState:
        with self._state_lock:
            return self._state

    def cache_synced(self) -> bool:
        return self.cache.has_synced()

    def _set_state(self, state: ManagerState) -> None:
        with self._state_lock:
            self._state = state
        METRICS.manager_running.set(1 if state is ManagerState.RUNNING else 0)

    def add(self, runnable: Runnable, name: str | None = None) -> None:
        """Register *runnable* to be started with the manager."""
        with self._state_lock:
            if self._state is not ManagerState.NOT_STARTED:
                raise ConstructionError("runnables must be added before the manager starts")
            self._runnables.append((name or type(runnable).__name__, runnable))

    def _wait_for_cache_sync(
        self, stop_event: threading.Event, failed: threading.Event
    ) -> bool:
        deadline = time.monotonic() + self.options.cache_sync_timeout_seconds
        while True:
            attempt_started = time.monotonic()
            if self.cache.wait_for_sync(timeout=self.poll_interval_seconds):
                return True
            if stop_event.is_set() or failed.is_set():
                return False
            if time.monotonic() >= deadline:
                return False
            # A failed cache reports "not synced" at once; pace the retries.
            remaining = self.poll_interval_seconds - (time.monotonic() - attempt_started)
            if remaining > 0:
                failed.wait(timeout=remaining)

    def start(self, stop_event: threading.Event) -> None:
        with self._state_lock:
            if self._state is not ManagerState.NOT_STARTED:
                raise ManagerRuntimeError(f"manager cannot be started from state {self._state}")
            self._state = ManagerState.RUNNING
        METRICS.manager_running.set(1)

        internal_stop = threading.Event()
        failed = threading.Event()
        errors: list[Exception] = []
        threads: list[threading.Thread] = []

        def _run(name: str, runnable: Callable[[threading.Event], None]) -> None:
            try:
                runnable(internal_stop)
                if not internal_stop.is_set():
                    errors.append(ManagerRuntimeError(f"{name} exited without a stop signal"))
                    failed.set()
            except Exception as exc:
                self.logger.exception("Runnable %s failed", name)
                errors.append(exc)
                failed.set()

        def _spawn(name: str, runnable: Callable[[threading.Event], None]) -> None:
            thread = threading.Thread(target=_run, args=(name, runnable), name=name, daemon=True)
            threads.append(thread)
            thread.start()

        _spawn("cache", self.cache.run)
        if self._wait_for_cache_sync(stop_event, failed):
            self.ready.set()
            self.logger.info("Cache synced, starting %d runnable(s)", len(self._runnables))
            for name, runnable in self._runnables:
                _spawn(name, runnable.start)

            while not stop_event.wait(timeout=self.poll_interval_seconds):
                if failed.is_set():
                    break
        elif not stop_event.is_set() and not failed.is_set():
            errors.append(
                ManagerRuntimeError(
                    "timed out waiting for cache to sync after "
                    f"{self.options.cache_sync_timeout_seconds}s"
                )
            )

        if stop_event.is_set() and not failed.is_set():
            self.logger.info("Stop requested, shutting down runnables")
        self.ready.clear()
        internal_stop.set()

        deadline = time.monotonic() + self.options.graceful_shutdown_timeout_seconds
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                self.logger.warning(
                    "Runnable %s did not stop within %ss",
                    thread.name,
                    self.options.graceful_shutdown_timeout_seconds,
                )

        if errors:
            self._set_state(ManagerState.CRASHED)
            first = errors[0]
            if isinstance(first, ManagerRuntimeError):
                raise first
            raise ManagerRuntimeError(f"manager run loop failed: {first}") from first

        self._set_state(ManagerState.STOPPED)


def new_manager(connection: Configuration, options: ManagerOptions) -> Manager:
    """Construct a manager and its cache.

    ``options.new_cache`` builds the cache when given; otherwise an
    unfiltered cache scoped to ``options.namespace`` is used.
    """
    cache_options = CacheOptions(scheme=options.scheme, namespace=options.namespace)
    cache_factory = options.new_cache or new_cache
    cache = cache_factory(connection, cache_options)
    return Manager(connection=connection, options=options, cache=cache)
