from __future__ import annotations

import copy
import logging
import random
import threading
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from secretsync.src.metrics import ControllerMetrics

ObjectKey = tuple[str, str]
EventHandler = Callable[[str, dict[str, Any], dict[str, Any] | None], None]


def object_key(obj: dict[str, Any]) -> ObjectKey:
    meta = obj.get("metadata") or {}
    return meta.get("namespace") or "", meta.get("name") or ""


class ObjectCache:
    """Thread-safe store of the latest observed copy of each object.

    Readers always receive deep copies so callers can mutate what they get
    without corrupting the cache.
    """

    def __init__(self) -> None:
        self._items: dict[ObjectKey, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, name: str) -> dict[str, Any] | None:
        with self._lock:
            obj = self._items.get((namespace or "", name))
            return copy.deepcopy(obj) if obj is not None else None

    def list(
        self,
        namespace: str | None = None,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            items = [
                copy.deepcopy(obj)
                for (obj_namespace, _), obj in self._items.items()
                if namespace is None or obj_namespace == namespace
            ]
        if predicate is None:
            return items
        return [obj for obj in items if predicate(obj)]

    def upsert(self, obj: dict[str, Any]) -> dict[str, Any] | None:
        """Store *obj* and return the copy it replaced, if any."""
        with self._lock:
            previous = self._items.get(object_key(obj))
            self._items[object_key(obj)] = copy.deepcopy(obj)
            return previous

    def remove(self, obj: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            return self._items.pop(object_key(obj), None)

    def replace(
        self, items: Iterable[dict[str, Any]]
    ) -> list[tuple[str, dict[str, Any], dict[str, Any] | None]]:
        """Swap in a fresh listing and return synthetic events for what changed."""
        fresh = {object_key(obj): copy.deepcopy(obj) for obj in items}
        with self._lock:
            previous = self._items
            self._items = fresh

        events: list[tuple[str, dict[str, Any], dict[str, Any] | None]] = []
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                events.append(("ADDED", obj, None))
            elif _resource_version(old) != _resource_version(obj):
                events.append(("MODIFIED", obj, old))
        for key, old in previous.items():
            if key not in fresh:
                events.append(("DELETED", old, old))
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _resource_version(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")


class ListWatchClient(Protocol):
    def list_with_version(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]: ...

    def watch(
        self,
        api_version: str,
        kind: str,
        watcher: watch.Watch,
        namespace: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout_seconds: int = 30,
    ) -> Iterable[tuple[str, dict[str, Any]]]: ...


class Reflector:
    """Keeps an :class:`ObjectCache` in sync with one kind using list-then-watch.

    1. Retries the initial list with exponential backoff so transient API
       startup failures do not crash-loop the controller.
    2. Opens a streaming watch from the list's ``resourceVersion``.
    3. On ``410 Gone`` (etcd compaction), re-lists, emits synthetic events
       for whatever changed while disconnected, and resumes.
    4. On transient errors, applies exponential backoff with jitter
       (capped at 30 s) to avoid thundering-herd reconnects.

    ``401`` / ``403`` responses are treated as configuration errors (RBAC) and
    terminate the loop with :attr:`failed` set, rather than retrying forever.
    """

    def __init__(
        self,
        kube: ListWatchClient,
        api_version: str,
        kind: str,
        metrics: ControllerMetrics,
        cache: ObjectCache | None = None,
        handler: EventHandler | None = None,
        namespace: str | None = None,
        label_selector: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kube = kube
        self.api_version = api_version
        self.kind = kind
        self.metrics = metrics
        self.cache = cache if cache is not None else ObjectCache()
        self.handler = handler
        self.namespace = namespace
        self.label_selector = label_selector
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self.failed = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def description(self) -> str:
        return f"{self.api_version}/{self.kind}"

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, event_type: str, obj: dict[str, Any], old: dict[str, Any] | None) -> None:
        if self.handler is None:
            return
        try:
            self.handler(event_type, obj, old)
        except Exception:
            self.logger.exception(
                "Event handler failed for %s %s/%s",
                self.description,
                *object_key(obj),
            )

    def _relist(self) -> str | None:
        items, resource_version = self.kube.list_with_version(
            self.api_version,
            self.kind,
            namespace=self.namespace,
            label_selector=self.label_selector,
        )
        for event_type, obj, old in self.cache.replace(items):
            self._dispatch(event_type, obj, old)
        return resource_version

    def _apply_event(self, event_type: str, obj: dict[str, Any]) -> None:
        if event_type in {"ADDED", "MODIFIED"}:
            old = self.cache.upsert(obj)
            self._dispatch(event_type, obj, old)
        elif event_type == "DELETED":
            old = self.cache.remove(obj)
            self._dispatch(event_type, obj, old)

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._relist()
                self.ready.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.description, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.description,
                        exc.status,
                    )
                    self.failed.set()
                    self.ready.clear()
                    return
                self.logger.exception("Initial %s list failed", self.description)
                self.metrics.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.description)
                self.metrics.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    self.metrics.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = self.kube.watch(
                    self.api_version,
                    self.kind,
                    watcher,
                    namespace=self.namespace,
                    label_selector=self.label_selector,
                    resource_version=resource_version,
                )
                for event_type, obj in stream:
                    if self._should_stop(stop):
                        break
                    meta = obj.get("metadata") or {}
                    if meta.get("resourceVersion"):
                        resource_version = meta["resourceVersion"]
                    self._apply_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.description
                    )
                    try:
                        resource_version = self._relist()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during %s re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.description,
                                relist_exc.status,
                            )
                            self.failed.set()
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.description)
                        self.metrics.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API %s watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.description,
                        exc.status,
                    )
                    self.metrics.watch_errors_total.labels(kind=self.kind).inc()
                    self.failed.set()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API %s watch error", self.description)
                self.metrics.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.description)
                self.metrics.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
