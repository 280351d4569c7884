from __future__ import annotations

import copy
import logging
import random
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiClient, ApiException, Configuration
from kubernetes.dynamic import DynamicClient

from community_operator.src.errors import CacheError, SchemeError
from community_operator.src.metrics import METRICS
from community_operator.src.scheme import MONGODB_COMMUNITY, ResourceType, Scheme
from community_operator.src.selector import LabelSelector

EventHandler = Callable[[str, dict[str, Any]], None]
ObjectKey = tuple[str, str]

_WATCH_TIMEOUT_SECONDS = 300
_MAX_BACKOFF_SECONDS = 30


@dataclass(frozen=True)
class ObjectSelector:
    """Server-side filters applied when listing and watching one resource type."""

    label: LabelSelector | None = None
    field: str | None = None

    @property
    def label_selector(self) -> str | None:
        if self.label is None or self.label.empty:
            return None
        return str(self.label)


@dataclass(frozen=True)
class CacheOptions:
    """Options the runtime passes to a cache constructor.

    ``namespace`` is ``""`` for a cluster-wide cache. ``selectors_by_object``
    restricts individual resource types; types without an entry are cached
    unfiltered.
    """

    scheme: Scheme
    namespace: str = ""
    selectors_by_object: Mapping[ResourceType, ObjectSelector] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def selector_for(self, resource_type: ResourceType) -> ObjectSelector:
        return self.selectors_by_object.get(resource_type, ObjectSelector())

    def with_selectors(self, selectors: Mapping[ResourceType, ObjectSelector]) -> CacheOptions:
        """Return a copy with *selectors* set, keeping the entries of other types."""
        merged = dict(self.selectors_by_object)
        merged.update(selectors)
        return replace(self, selectors_by_object=MappingProxyType(merged))


class ResourceApi(Protocol):
    def list(
        self,
        resource_type: ResourceType,
        namespace: str,
        label_selector: str | None,
        field_selector: str | None,
    ) -> tuple[list[dict[str, Any]], str | None]: ...

    def watch(
        self,
        resource_type: ResourceType,
        watcher: watch.Watch,
        namespace: str,
        label_selector: str | None,
        field_selector: str | None,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[tuple[str, dict[str, Any]]]: ...


class DynamicResourceApi:
    """List and watch arbitrary resource types through the dynamic client."""

    def __init__(self, dynamic_client: DynamicClient) -> None:
        self.dynamic_client = dynamic_client

    @classmethod
    def from_connection(cls, connection: Configuration) -> DynamicResourceApi:
        return cls(DynamicClient(ApiClient(configuration=connection)))

    def _resource(self, resource_type: ResourceType) -> Any:
        return self.dynamic_client.resources.get(
            api_version=resource_type.api_version, kind=resource_type.kind
        )

    def list(
        self,
        resource_type: ResourceType,
        namespace: str,
        label_selector: str | None,
        field_selector: str | None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        result = self._resource(resource_type).get(
            namespace=namespace or None,
            label_selector=label_selector,
            field_selector=field_selector,
        )
        body = result.to_dict()
        items = body.get("items") or []
        resource_version = (body.get("metadata") or {}).get("resourceVersion")
        return items, resource_version

    def watch(
        self,
        resource_type: ResourceType,
        watcher: watch.Watch,
        namespace: str,
        label_selector: str | None,
        field_selector: str | None,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        stream = self.dynamic_client.watch(
            self._resource(resource_type),
            namespace=namespace or None,
            label_selector=label_selector,
            field_selector=field_selector,
            resource_version=resource_version,
            timeout=timeout_seconds,
            watcher=watcher,
        )
        for event in stream:
            yield str(event.get("type", "")), event.get("raw_object") or {}


def object_key(obj: Mapping[str, Any]) -> ObjectKey:
    metadata = obj.get("metadata") or {}
    return (metadata.get("namespace") or "", metadata.get("name") or "")


def _labels(obj: Mapping[str, Any]) -> dict[str, str]:
    return dict((obj.get("metadata") or {}).get("labels") or {})


def _resource_version(obj: Mapping[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")


class Informer:
    """List-then-watch loop keeping an in-memory copy of one resource type.

    1. Lists the type (with the configured namespace and selectors) and
       replaces the store, retrying with exponential backoff.
    2. Watches from the list's ``resourceVersion`` and applies each event.
    3. On ``410 Gone`` re-lists and resumes watching.
    4. On transient errors backs off with jitter, capped at 30 s.

    ``401`` / ``403`` responses are configuration errors (RBAC/auth): the
    informer stops and reports a :class:`CacheError` through ``on_failure``.
    Labels are re-checked client side so an object that stops matching the
    label selector is dropped from the store.
    """

    def __init__(
        self,
        resource_type: ResourceType,
        api: ResourceApi,
        namespace: str,
        selector: ObjectSelector,
        on_failure: Callable[[CacheError], None] | None = None,
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
        watch_timeout_seconds: int = _WATCH_TIMEOUT_SECONDS,
    ) -> None:
        self.resource_type = resource_type
        self.api = api
        self.namespace = namespace
        self.selector = selector
        self.on_failure = on_failure
        self.logger = logger or logging.getLogger(__name__)
        self.watch_factory = watch_factory
        self.watch_timeout_seconds = watch_timeout_seconds

        self.synced = threading.Event()
        self._store: dict[ObjectKey, dict[str, Any]] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[EventHandler] = []
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def kind(self) -> str:
        return self.resource_type.kind

    def add_event_handler(self, handler: EventHandler) -> None:
        """Register *handler*; objects already in the store are replayed as ``ADDED``."""
        with self._store_lock:
            self._handlers.append(handler)
            existing = [copy.deepcopy(obj) for obj in self._store.values()]
        for obj in existing:
            self._call_handler(handler, "ADDED", obj)

    def get(self, namespace: str, name: str) -> dict[str, Any] | None:
        with self._store_lock:
            obj = self._store.get((namespace, name))
            return copy.deepcopy(obj) if obj is not None else None

    def list(
        self, namespace: str | None = None, label_selector: LabelSelector | None = None
    ) -> list[dict[str, Any]]:
        with self._store_lock:
            objects = [
                copy.deepcopy(obj)
                for key, obj in sorted(self._store.items())
                if namespace is None or key[0] == namespace
            ]
        if label_selector is None:
            return objects
        return [obj for obj in objects if label_selector.matches(_labels(obj))]

    def _matches(self, obj: Mapping[str, Any]) -> bool:
        return self.selector.label is None or self.selector.label.matches(_labels(obj))

    def _call_handler(self, handler: EventHandler, event_type: str, obj: dict[str, Any]) -> None:
        try:
            handler(event_type, obj)
        except Exception:
            self.logger.exception("Event handler for %s failed on %s event", self.kind, event_type)

    def _dispatch(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        with self._store_lock:
            handlers = list(self._handlers)
        for event_type, obj in events:
            for handler in handlers:
                self._call_handler(handler, event_type, copy.deepcopy(obj))

    def _replace(self, items: list[dict[str, Any]]) -> None:
        fresh = {object_key(obj): obj for obj in items if self._matches(obj)}
        events: list[tuple[str, dict[str, Any]]] = []
        with self._store_lock:
            previous = self._store
            self._store = fresh
            METRICS.cached_objects.labels(kind=self.kind).set(len(fresh))
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                events.append(("ADDED", obj))
            elif _resource_version(old) != _resource_version(obj):
                events.append(("MODIFIED", obj))
        for key, obj in previous.items():
            if key not in fresh:
                events.append(("DELETED", obj))
        self._dispatch(events)

    def apply_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """Apply a single watch event to the store and notify handlers."""
        if event_type in {"BOOKMARK", "ERROR"}:
            return

        key = object_key(obj)
        with self._store_lock:
            if event_type == "DELETED" or not self._matches(obj):
                removed = self._store.pop(key, None)
                if removed is None:
                    return
                dispatched = ("DELETED", obj)
            else:
                dispatched = ("MODIFIED" if key in self._store else "ADDED", obj)
                self._store[key] = obj
            METRICS.cached_objects.labels(kind=self.kind).set(len(self._store))
        self._dispatch([dispatched])

    def _list(self) -> str | None:
        items, resource_version = self.api.list(
            self.resource_type,
            namespace=self.namespace,
            label_selector=self.selector.label_selector,
            field_selector=self.selector.field,
        )
        self._replace(items)
        return resource_version

    def request_stop(self) -> None:
        """Interrupt the open watch stream, if any."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _fail(self, message: str) -> None:
        self.logger.error(message)
        if self.on_failure is not None:
            self.on_failure(CacheError(message))

    def run(self, stop_event: threading.Event) -> None:
        resource_version: str | None = None
        listed = False
        backoff_seconds = 1
        watch_stream_count = 0

        while not stop_event.is_set():
            watcher: watch.Watch | None = None
            try:
                if not listed:
                    resource_version = self._list()
                    listed = True
                    self.synced.set()
                    self.logger.info(
                        "Informer for %s synced at resourceVersion %s",
                        self.kind,
                        resource_version,
                    )
                    if stop_event.is_set():
                        break

                watcher = self.watch_factory()
                with self._watcher_lock:
                    self._active_watcher = watcher
                if stop_event.is_set():
                    break
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1

                stream = self.api.watch(
                    self.resource_type,
                    watcher=watcher,
                    namespace=self.namespace,
                    label_selector=self.selector.label_selector,
                    field_selector=self.selector.field,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event_type, obj in stream:
                    if stop_event.is_set():
                        break
                    version = _resource_version(obj)
                    if version:
                        resource_version = version
                    self.apply_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", self.kind)
                    listed = False
                    continue

                if exc.status in {401, 403}:
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self._fail(
                        f"Kubernetes API access denied for {self.kind} (status={exc.status}). "
                        "Check operator RBAC and service account permissions."
                    )
                    return

                self.logger.exception("Kubernetes API list/watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected list/watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)
            finally:
                if watcher is not None:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None


class ObjectCache:
    """Informer-backed read cache for every resource type the operator watches.

    Informers are created on first use through :meth:`informer_for` and
    started by :meth:`run`. A type the scheme does not recognize cannot be
    watched.
    """

    def __init__(
        self,
        api: ResourceApi,
        options: CacheOptions,
        logger: logging.Logger | None = None,
        poll_interval_seconds: float = 0.5,
        shutdown_timeout_seconds: float = 30,
    ) -> None:
        self.api = api
        self.options = options
        self.logger = logger or logging.getLogger(__name__)
        self.poll_interval_seconds = poll_interval_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds

        self._informers: dict[ResourceType, Informer] = {}
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._stop: threading.Event | None = None
        self._failure: CacheError | None = None
        self._failed = threading.Event()

    @property
    def namespace(self) -> str:
        return self.options.namespace

    def _record_failure(self, error: CacheError) -> None:
        with self._lock:
            if self._failure is None:
                self._failure = error
        self._failed.set()

    def _start_informer(self, informer: Informer, stop: threading.Event) -> None:
        thread = threading.Thread(
            target=informer.run,
            args=(stop,),
            name=f"informer-{informer.kind}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    def informer_for(self, resource_type: ResourceType) -> Informer:
        if not self.options.scheme.recognizes(resource_type):
            raise SchemeError(f"{resource_type} is not registered in the scheme")

        with self._lock:
            informer = self._informers.get(resource_type)
            if informer is not None:
                return informer

            informer = Informer(
                resource_type=resource_type,
                api=self.api,
                namespace=self.namespace,
                selector=self.options.selector_for(resource_type),
                on_failure=self._record_failure,
                logger=self.logger,
            )
            self._informers[resource_type] = informer
            if self._stop is not None:
                self._start_informer(informer, self._stop)
            return informer

    def add_event_handler(self, resource_type: ResourceType, handler: EventHandler) -> None:
        self.informer_for(resource_type).add_event_handler(handler)

    def get(self, resource_type: ResourceType, namespace: str, name: str) -> dict[str, Any] | None:
        return self.informer_for(resource_type).get(namespace, name)

    def list(
        self,
        resource_type: ResourceType,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
    ) -> list[dict[str, Any]]:
        return self.informer_for(resource_type).list(namespace, label_selector)

    def has_synced(self) -> bool:
        with self._lock:
            informers = list(self._informers.values())
        return all(informer.synced.is_set() for informer in informers)

    def wait_for_sync(self, timeout: float) -> bool:
        """Block until every informer has listed once, a failure, or *timeout*."""
        deadline = time.monotonic() + timeout
        while not self.has_synced():
            if self._failed.is_set():
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._failed.wait(timeout=min(self.poll_interval_seconds, remaining))
        return True

    def _join_informers(self) -> None:
        with self._lock:
            threads = list(self._threads)
        deadline = time.monotonic() + self.shutdown_timeout_seconds
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                self.logger.warning(
                    "Informer thread %s did not stop within %ss",
                    thread.name,
                    self.shutdown_timeout_seconds,
                )

    def run(self, stop_event: threading.Event) -> None:
        """Run every informer until *stop_event* fires or one of them fails.

        Informer threads are joined before returning, within
        ``shutdown_timeout_seconds`` overall. Raises :class:`CacheError`
        when an informer failed.
        """
        with self._lock:
            if self._stop is not None:
                raise CacheError("cache has already been started")
            self._stop = threading.Event()
            for informer in self._informers.values():
                self._start_informer(informer, self._stop)

        while not stop_event.wait(timeout=self.poll_interval_seconds):
            if self._failed.is_set():
                break

        self._stop.set()
        with self._lock:
            informers = list(self._informers.values())
        for informer in informers:
            informer.request_stop()
        self._join_informers()

        if self._failure is not None:
            raise self._failure


def new_cache(
    connection: Configuration,
    options: CacheOptions,
    api_factory: Callable[[Configuration], ResourceApi] = DynamicResourceApi.from_connection,
) -> ObjectCache:
    """Build an :class:`ObjectCache` talking to the cluster behind *connection*."""
    return ObjectCache(api=api_factory(connection), options=options)


@dataclass(frozen=True)
class CacheBuilder:
    """Cache constructor restricting one resource type to a label selector.

    Only ``resource_type`` is filtered; selectors already present in the
    options for other types pass through unchanged.
    """

    selector: LabelSelector
    resource_type: ResourceType = MONGODB_COMMUNITY

    def __call__(self, connection: Configuration, options: CacheOptions) -> ObjectCache:
        logging.getLogger(__name__).info(
            "Creating cache with label selector: %s", self.selector
        )
        filtered = options.with_selectors({self.resource_type: ObjectSelector(label=self.selector)})
        return new_cache(connection, filtered)


def new_filtered_cache_builder(
    selector: LabelSelector, resource_type: ResourceType = MONGODB_COMMUNITY
) -> CacheBuilder:
    return CacheBuilder(selector=selector, resource_type=resource_type)
