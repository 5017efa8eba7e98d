from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from secretsync.src.cache import ObjectCache, Reflector, object_key
from secretsync.src.config import ControllerConfig, load_config
from secretsync.src.generators import Generator
from secretsync.src.informers import InformerManager
from secretsync.src.metrics import ControllerMetrics
from secretsync.src.providers import Provider
from secretsync.src.reconciler import Reconciler
from secretsync.src.resources import (
    API_VERSION,
    BINDING_KIND,
    CLUSTER_STORE_KIND,
    CONDITION_READY,
    LABEL_MANAGED,
    LABEL_MANAGED_VALUE,
    SECRET_API_VERSION,
    SECRET_KIND,
    STORE_KIND,
    get_condition,
)
from secretsync.src.statemanager import GeneratorStateCollector
from secretsync.src.workqueue import WorkQueue

BindingKey = tuple[str, str]

STOP_JOIN_TIMEOUT_SECONDS = 10.0
READY_POLL_SECONDS = 0.5


def binding_target(obj: dict[str, Any]) -> tuple[str, str, str]:
    """Return ``(api_version, kind, name)`` of a raw SecretBinding's target."""
    target = ((obj.get("spec") or {}).get("target")) or {}
    manifest = target.get("manifest") or {}
    name = target.get("name") or (obj.get("metadata") or {}).get("name") or ""
    return (
        manifest.get("apiVersion") or SECRET_API_VERSION,
        manifest.get("kind") or SECRET_KIND,
        name,
    )


def binding_store_refs(obj: dict[str, Any]) -> set[tuple[str, str]]:
    """Every ``(kind, name)`` store a raw SecretBinding references."""
    spec = obj.get("spec") or {}
    refs: set[tuple[str, str]] = set()

    def _add(raw: Mapping[str, Any] | None) -> None:
        if raw and raw.get("name"):
            refs.add((raw.get("kind") or STORE_KIND, raw["name"]))

    _add(spec.get("secretStoreRef"))
    for entry in list(spec.get("data") or ()) + list(spec.get("dataFrom") or ()):
        _add((entry.get("sourceRef") or {}).get("storeRef"))
    return refs


def _ready_status(obj: dict[str, Any] | None) -> str | None:
    if obj is None:
        return None
    condition = get_condition(obj.get("status") or {}, CONDITION_READY)
    return condition.get("status") if condition else None


def _controller_binding(obj: dict[str, Any]) -> str | None:
    for ref in (obj.get("metadata") or {}).get("ownerReferences") or ():
        if ref.get("controller") and ref.get("kind") == BINDING_KIND:
            return ref.get("name")
    return None


class SecretBindingController:
    """Runs the watches, the work queue and the worker pool.

    Triggers that enqueue a binding:

    - any event on the SecretBinding itself;
    - an event on a managed Secret that a binding targets or controls;
    - a change of a referenced store's ``Ready`` condition;
    - an event on a watched non-Secret target kind.

    ``ready`` is set once every watch has finished its initial list.
    """

    def __init__(
        self,
        kube: Any,
        metrics: ControllerMetrics,
        config: ControllerConfig,
        providers: dict[str, Provider] | None = None,
        generators: dict[str, Generator] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kube = kube
        self.metrics = metrics
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._external_stop = threading.Event()

        namespace = config.watch_namespace
        self.secret_cache = ObjectCache()
        self.queue = WorkQueue(metrics=metrics)
        self.informers = InformerManager(
            kube, metrics, on_change=self.handle_target_event, namespace=namespace, logger=self.logger
        )
        self.reconciler = Reconciler(
            kube,
            metrics,
            controller_class=config.controller_class,
            secret_cache=self.secret_cache,
            informers=self.informers,
            enable_floodgate=config.enable_floodgate,
            cluster_store_enabled=config.cluster_store_enabled,
            allow_generic_targets=config.allow_generic_targets,
            default_refresh_interval=float(config.requeue_interval),
            gc_grace_period_seconds=config.gc_grace_seconds,
            providers=providers,
            generators=generators,
            logger=self.logger,
        )
        self.collector = GeneratorStateCollector(
            kube,
            metrics,
            interval_seconds=config.gc_interval_seconds,
            namespace=namespace,
            generators=generators,
            logger=self.logger,
        )

        self.bindings = Reflector(
            kube,
            API_VERSION,
            BINDING_KIND,
            metrics,
            handler=self.handle_binding_event,
            namespace=namespace,
            logger=self.logger,
        )
        self.reflectors = [
            self.bindings,
            Reflector(
                kube,
                SECRET_API_VERSION,
                SECRET_KIND,
                metrics,
                cache=self.secret_cache,
                handler=self.handle_secret_event,
                namespace=namespace,
                label_selector=f"{LABEL_MANAGED}={LABEL_MANAGED_VALUE}",
                logger=self.logger,
            ),
            Reflector(
                kube,
                API_VERSION,
                STORE_KIND,
                metrics,
                handler=self.handle_store_event,
                namespace=namespace,
                logger=self.logger,
            ),
        ]
        if config.cluster_store_enabled:
            self.reflectors.append(
                Reflector(
                    kube,
                    API_VERSION,
                    CLUSTER_STORE_KIND,
                    metrics,
                    handler=self.handle_store_event,
                    logger=self.logger,
                )
            )

    # ------------------------------------------------------------------
    # Event mapping
    # ------------------------------------------------------------------

    def handle_binding_event(
        self, event_type: str, obj: dict[str, Any], old: dict[str, Any] | None
    ) -> None:
        self.queue.add(object_key(obj))

    def handle_secret_event(
        self, event_type: str, obj: dict[str, Any], old: dict[str, Any] | None
    ) -> None:
        for key in self._bindings_targeting(SECRET_API_VERSION, SECRET_KIND, obj):
            self.queue.add(key)

    def handle_target_event(self, api_version: str, kind: str, obj: dict[str, Any]) -> None:
        for key in self._bindings_targeting(api_version, kind, obj):
            self.queue.add(key)

    def handle_store_event(
        self, event_type: str, obj: dict[str, Any], old: dict[str, Any] | None
    ) -> None:
        """Enqueue the bindings of a store whose readiness changed (or that came and went)."""
        if event_type == "MODIFIED" and _ready_status(old) == _ready_status(obj):
            return
        store_namespace, store_name = object_key(obj)
        kind = STORE_KIND if store_namespace else CLUSTER_STORE_KIND
        for binding in self.bindings.cache.list(namespace=store_namespace or None):
            if (kind, store_name) in binding_store_refs(binding):
                self.queue.add(object_key(binding))

    def _bindings_targeting(
        self, api_version: str, kind: str, obj: dict[str, Any]
    ) -> list[BindingKey]:
        namespace, name = object_key(obj)
        keys: list[BindingKey] = []
        controller = _controller_binding(obj)
        if controller:
            keys.append((namespace, controller))
        for binding in self.bindings.cache.list(namespace=namespace):
            if binding_target(binding) == (api_version, kind, name):
                key = object_key(binding)
                if key not in keys:
                    keys.append(key)
        return keys

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued binding; ``False`` once the queue is shut down or idle."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        namespace, name = key
        try:
            result = self.reconciler.reconcile(namespace, name)
        except Exception:
            delay = self.queue.add_rate_limited(key)
            self.logger.exception(
                "Reconcile of SecretBinding %s/%s failed, retrying in %.1fs", namespace, name, delay
            )
        else:
            if result.requeue:
                self.queue.add_rate_limited(key)
            elif result.requeue_after > 0:
                self.queue.forget(key)
                self.queue.add_after(key, result.requeue_after)
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _worker(self) -> None:
        while self.process_next():
            pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        self._external_stop.set()
        for reflector in self.reflectors:
            reflector.request_stop()
        self.queue.shutdown()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _watches_ready(self) -> bool:
        return all(reflector.ready.is_set() for reflector in self.reflectors)

    def _failed_watch(self) -> Reflector | None:
        for reflector in self.reflectors:
            if reflector.failed.is_set():
                return reflector
        return None

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the watches and workers and block until shutdown.

        Workers start only after every watch has listed once, so the first
        reconciliations see a populated Secret cache. A watch that stops on
        ``401`` / ``403`` ends the loop, since retrying cannot fix RBAC.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        reflector_stop = threading.Event()
        threads: list[threading.Thread] = []

        for reflector in self.reflectors:
            thread = threading.Thread(
                target=reflector.run,
                args=(reflector_stop,),
                daemon=True,
                name=f"reflector-{reflector.kind.lower()}",
            )
            thread.start()
            threads.append(thread)

        workers_started = False
        while not self._should_stop(stop):
            failed = self._failed_watch()
            if failed is not None:
                self.logger.error(
                    "Watch for %s stopped permanently, shutting down", failed.description
                )
                break
            if self._watches_ready():
                if not self.ready.is_set():
                    self.ready.set()
                    self.logger.info("All watches synced")
                if not workers_started:
                    threads.extend(self._start_workers(reflector_stop))
                    workers_started = True
            else:
                self.ready.clear()
            stop.wait(timeout=READY_POLL_SECONDS)

        self.ready.clear()
        reflector_stop.set()
        for reflector in self.reflectors:
            reflector.request_stop()
        self.queue.shutdown()
        self.informers.stop_all()
        for thread in threads:
            thread.join(timeout=STOP_JOIN_TIMEOUT_SECONDS)
            if thread.is_alive():
                self.logger.warning(
                    "Thread %s did not stop within %.1fs", thread.name, STOP_JOIN_TIMEOUT_SECONDS
                )

    def _start_workers(self, stop: threading.Event) -> list[threading.Thread]:
        threads = []
        for index in range(self.config.workers):
            thread = threading.Thread(target=self._worker, daemon=True, name=f"worker-{index}")
            thread.start()
            threads.append(thread)
        collector = threading.Thread(
            target=self.collector.run, args=(stop,), daemon=True, name="generator-gc"
        )
        collector.start()
        threads.append(collector)
        self.logger.info("Started %d worker(s)", self.config.workers)
        return threads


def build_controller_from_env(
    kube: Any,
    metrics: ControllerMetrics,
    config: ControllerConfig | None = None,
    env: Mapping[str, str] | None = None,
) -> SecretBindingController:
    """Construct a :class:`SecretBindingController` from environment variables.

    See :func:`secretsync.src.config.load_config` for the variables read.
    An already loaded *config* takes precedence over *env*.
    """
    return SecretBindingController(kube, metrics, config if config is not None else load_config(env))
