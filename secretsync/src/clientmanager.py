from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from types import TracebackType
from typing import Any

from secretsync.src.errors import (
    ConfigError,
    SecretSyncError,
    StoreNotFoundError,
    StoreNotReadyError,
    UnmanagedStoreError,
)
from secretsync.src.metrics import ControllerMetrics
from secretsync.src.providers import PROVIDERS, Provider, SecretsClient, provider_name
from secretsync.src.resources import (
    API_VERSION,
    CLUSTER_STORE_KIND,
    CONDITION_READY,
    SourceRef,
    StoreRef,
    get_condition,
    labels_of,
)


def fetch_store(kube: Any, ref: StoreRef, namespace: str) -> dict[str, Any] | None:
    """Read the store *ref* points at; cluster stores ignore *namespace*."""
    if ref.kind == CLUSTER_STORE_KIND:
        return kube.get(API_VERSION, ref.kind, ref.name)
    return kube.get(API_VERSION, ref.kind, ref.name, namespace)


def store_class(store: dict[str, Any]) -> str:
    return (store.get("spec") or {}).get("controller") or ""


def is_store_managed(store: dict[str, Any], controller_class: str) -> bool:
    """An empty class on the store means any controller may use it."""
    value = store_class(store)
    return not value or value == controller_class


def is_store_ready(store: dict[str, Any]) -> bool:
    condition = get_condition(store.get("status") or {}, CONDITION_READY)
    return condition is not None and condition.get("status") == "True"


def namespace_allowed(kube: Any, store: dict[str, Any], namespace: str) -> bool:
    """Evaluate a ClusterSecretStore's ``spec.conditions`` for *namespace*.

    No conditions means every namespace may use the store. Otherwise the
    namespace must satisfy at least one condition block.
    """
    conditions = (store.get("spec") or {}).get("conditions") or []
    if not conditions:
        return True

    namespace_labels: dict[str, str] | None = None
    for condition in conditions:
        if namespace in (condition.get("namespaces") or ()):
            return True
        for pattern in condition.get("namespaceRegexes") or ():
            if re.search(pattern, namespace):
                return True
        selector = (condition.get("namespaceSelector") or {}).get("matchLabels")
        if selector:
            if namespace_labels is None:
                namespace_labels = labels_of(kube.get("v1", "Namespace", namespace))
            if all(namespace_labels.get(k) == v for k, v in selector.items()):
                return True
    return False


@dataclass
class _CachedClient:
    client: SecretsClient
    uid: str
    generation: int


class ClientManager:
    """Owns the provider clients created during one reconciliation pass.

    Use as a context manager so every client is closed when the pass ends,
    whether it succeeded or not::

        with ClientManager(kube, "default", metrics) as clients:
            client = clients.get(binding.store_ref, binding.namespace)
    """

    def __init__(
        self,
        kube: Any,
        controller_class: str,
        metrics: ControllerMetrics,
        enable_floodgate: bool = True,
        cluster_store_enabled: bool = True,
        providers: dict[str, Provider] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kube = kube
        self.controller_class = controller_class
        self.metrics = metrics
        self.enable_floodgate = enable_floodgate
        self.cluster_store_enabled = cluster_store_enabled
        self.providers = providers if providers is not None else PROVIDERS
        self.logger = logger or logging.getLogger(__name__)
        self._clients: dict[tuple[str, str, str, str], _CachedClient] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> ClientManager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self.close_all()
        except SecretSyncError:
            if exc is None:
                raise
            self.logger.exception("Failed to close provider clients after an aborted pass")

    def get(
        self,
        store_ref: StoreRef | None,
        namespace: str,
        source_ref: SourceRef | None = None,
    ) -> SecretsClient:
        """Return the client for the effective store, constructing it once per pass.

        ``source_ref.store_ref`` overrides the binding's default ``store_ref``.
        """
        ref = source_ref.store_ref if source_ref and source_ref.store_ref else store_ref
        if ref is None:
            raise ConfigError("no store reference given and the default store is not set")

        store = self.resolve(ref, namespace)
        name = provider_name(store)
        provider = self.providers.get(name)
        if provider is None:
            raise ConfigError(f"store {ref.name!r} uses unsupported provider {name!r}")

        meta = store.get("metadata") or {}
        store_namespace = "" if ref.kind == CLUSTER_STORE_KIND else namespace
        key = (name, ref.kind, store_namespace, ref.name)
        uid = meta.get("uid") or ""
        generation = int(meta.get("generation") or 0)

        with self._lock:
            cached = self._clients.get(key)
            if cached is not None and cached.uid == uid and cached.generation == generation:
                self.metrics.provider_client_cache_total.labels(result="hit").inc()
                return cached.client
            if cached is not None:
                self.logger.debug(
                    "Store %s/%s changed during the pass, closing stale client", ref.kind, ref.name
                )
                self._clients.pop(key)
                cached.client.close()
                self.metrics.provider_clients_closed_total.inc()

            self.metrics.provider_client_cache_total.labels(result="miss").inc()
            provider.validate_store(store)
            client = provider.new_client(store, self.kube, namespace)
            self._clients[key] = _CachedClient(client=client, uid=uid, generation=generation)
            return client

    def resolve(self, ref: StoreRef, namespace: str) -> dict[str, Any]:
        """Load and validate the store object behind *ref*."""
        if ref.kind == CLUSTER_STORE_KIND and not self.cluster_store_enabled:
            raise ConfigError(f"ClusterSecretStore {ref.name!r} referenced but cluster stores are disabled")

        store = fetch_store(self.kube, ref, namespace)
        if store is None:
            raise StoreNotFoundError(f"{ref.kind} {ref.name!r} not found")
        if not is_store_managed(store, self.controller_class):
            raise UnmanagedStoreError(f"can not reference unmanaged store {ref.kind}/{ref.name}")
        if ref.kind == CLUSTER_STORE_KIND and not namespace_allowed(self.kube, store, namespace):
            raise ConfigError(
                f"using cluster store {ref.name!r} is not allowed from namespace {namespace!r}"
            )
        if self.enable_floodgate and not is_store_ready(store):
            raise StoreNotReadyError(f"{ref.kind} {ref.name!r} is not ready")
        return store

    def close_all(self) -> None:
        """Close every client created during the pass and clear the cache."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()

        failures: list[str] = []
        for cached in clients:
            try:
                cached.client.close()
                self.metrics.provider_clients_closed_total.inc()
            except Exception as exc:  # noqa: BLE001
                failures.append(str(exc))
        if failures:
            raise SecretSyncError(f"failed to close provider clients: {'; '.join(failures)}")
