from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from secretsync.src.cache import ObjectCache, Reflector
from secretsync.src.metrics import ControllerMetrics
from secretsync.src.resources import LABEL_MANAGED, LABEL_MANAGED_VALUE

OwnerKey = tuple[str, str]
KindKey = tuple[str, str]
ChangeHandler = Callable[[str, str, dict[str, Any]], None]

STOP_JOIN_TIMEOUT_SECONDS = 5.0


@dataclass
class _Informer:
    reflector: Reflector
    thread: threading.Thread
    stop: threading.Event
    owners: set[OwnerKey] = field(default_factory=set)


class InformerManager:
    """Reference-counted watches for non-Secret target kinds.

    Each binding registers itself against the kind it targets; the watch for
    a kind starts with the first registration and stops when the last owner
    releases it. Releases are idempotent per owner.
    """

    def __init__(
        self,
        kube: Any,
        metrics: ControllerMetrics,
        on_change: ChangeHandler | None = None,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kube = kube
        self.metrics = metrics
        self.on_change = on_change
        self.namespace = namespace
        self.logger = logger or logging.getLogger(__name__)
        self._informers: dict[KindKey, _Informer] = {}
        self._lock = threading.Lock()

    def ensure(self, api_version: str, kind: str, owner: OwnerKey) -> bool:
        """Register *owner* for *kind*, starting the watch if needed.

        Returns ``True`` when this call started a new watch. Discovery errors
        for kinds the cluster does not serve propagate to the caller.
        """
        key = (api_version, kind)
        with self._lock:
            informer = self._informers.get(key)
            if informer is not None:
                informer.owners.add(owner)
                return False

            self.kube.resource(api_version, kind)
            informer = self._start(api_version, kind)
            informer.owners.add(owner)
            self._informers[key] = informer
            self.metrics.active_informers.set(len(self._informers))

        self.logger.info("Started informer for %s/%s", api_version, kind)
        return True

    def release(self, api_version: str, kind: str, owner: OwnerKey) -> None:
        key = (api_version, kind)
        with self._lock:
            informer = self._informers.get(key)
            if informer is None:
                return
            informer.owners.discard(owner)
            if informer.owners:
                return
            del self._informers[key]
            self.metrics.active_informers.set(len(self._informers))
        self._stop(informer)
        self.logger.info("Stopped informer for %s/%s", api_version, kind)

    def is_managed(self, api_version: str, kind: str) -> bool:
        with self._lock:
            return (api_version, kind) in self._informers

    def owners(self, api_version: str, kind: str) -> set[OwnerKey]:
        with self._lock:
            informer = self._informers.get((api_version, kind))
            return set(informer.owners) if informer is not None else set()

    def cache_for(self, api_version: str, kind: str) -> ObjectCache | None:
        """Return the cache of a running and synced informer, if any."""
        with self._lock:
            informer = self._informers.get((api_version, kind))
        if informer is None or not informer.reflector.ready.is_set():
            return None
        return informer.reflector.cache

    def stop_all(self) -> None:
        with self._lock:
            informers = list(self._informers.values())
            self._informers.clear()
            self.metrics.active_informers.set(0)
        for informer in informers:
            self._stop(informer)

    def _start(self, api_version: str, kind: str) -> _Informer:
        def _handle(event_type: str, obj: dict[str, Any], old: dict[str, Any] | None) -> None:
            if self.on_change is not None:
                self.on_change(api_version, kind, obj)

        reflector = Reflector(
            self.kube,
            api_version,
            kind,
            self.metrics,
            handler=_handle,
            namespace=self.namespace,
            label_selector=f"{LABEL_MANAGED}={LABEL_MANAGED_VALUE}",
            logger=self.logger,
        )
        stop = threading.Event()
        thread = threading.Thread(
            target=reflector.run,
            args=(stop,),
            daemon=True,
            name=f"informer-{kind.lower()}",
        )
        thread.start()
        return _Informer(reflector=reflector, thread=thread, stop=stop)

    def _stop(self, informer: _Informer) -> None:
        informer.stop.set()
        informer.reflector.request_stop()
        informer.thread.join(timeout=STOP_JOIN_TIMEOUT_SECONDS)
        if informer.thread.is_alive():
            self.logger.warning(
                "Informer thread for %s did not stop within %.1fs",
                informer.reflector.description,
                STOP_JOIN_TIMEOUT_SECONDS,
            )
