from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient

LOGGER = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_client() -> KubeClient:
    """Return a :class:`KubeClient` using the active kube configuration."""
    return KubeClient(DynamicClient(client.ApiClient()))


def partial_metadata(obj: dict[str, Any] | None) -> dict[str, Any] | None:
    """Strip an object down to its identity and metadata."""
    if obj is None:
        return None
    return {
        "apiVersion": obj.get("apiVersion"),
        "kind": obj.get("kind"),
        "metadata": copy.deepcopy(obj.get("metadata") or {}),
    }


class KubeClient:
    """Dict-in, dict-out access to the object store through the dynamic client.

    ``get`` returns ``None`` for absent objects and ``delete`` returns
    ``False``; every other API failure propagates as
    :class:`kubernetes.client.ApiException` so callers can branch on
    ``exc.status`` (``409`` conflict, ``410`` expired, ``401``/``403`` denied).
    """

    def __init__(self, dynamic: DynamicClient) -> None:
        self.dynamic = dynamic
        self._resources: dict[tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def resource(self, api_version: str, kind: str) -> Any:
        key = (api_version, kind)
        with self._lock:
            cached = self._resources.get(key)
        if cached is not None:
            return cached
        # Discovery raises ResourceNotFoundError for kinds the cluster does not serve.
        found = self.dynamic.resources.get(api_version=api_version, kind=kind)
        with self._lock:
            self._resources[key] = found
        return found

    def get(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None:
        resource = self.resource(api_version, kind)
        try:
            return resource.get(name=name, namespace=namespace).to_dict()
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def get_metadata(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None:
        """Direct read that returns only identity and metadata, bypassing any cache."""
        return partial_metadata(self.get(api_version, kind, name, namespace))

    def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        return self.list_with_version(api_version, kind, namespace, label_selector)[0]

    def list_with_version(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """List objects and return them with the list's ``resourceVersion``."""
        resource = self.resource(api_version, kind)
        result = resource.get(namespace=namespace, label_selector=label_selector).to_dict()
        items = result.get("items") or []
        for item in items:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return items, (result.get("metadata") or {}).get("resourceVersion")

    def create(self, obj: dict[str, Any], field_manager: str | None = None) -> dict[str, Any]:
        resource = self.resource(obj["apiVersion"], obj["kind"])
        namespace = (obj.get("metadata") or {}).get("namespace")
        return self.dynamic.create(
            resource, body=obj, namespace=namespace, field_manager=field_manager
        ).to_dict()

    def update(self, obj: dict[str, Any], field_manager: str | None = None) -> dict[str, Any]:
        """Replace *obj*; a stale ``metadata.resourceVersion`` yields a ``409``."""
        resource = self.resource(obj["apiVersion"], obj["kind"])
        namespace = (obj.get("metadata") or {}).get("namespace")
        return self.dynamic.replace(
            resource, body=obj, namespace=namespace, field_manager=field_manager
        ).to_dict()

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        resource = self.resource(obj["apiVersion"], obj["kind"])
        namespace = (obj.get("metadata") or {}).get("namespace")
        return self.dynamic.replace(
            resource.subresources["status"], body=obj, namespace=namespace
        ).to_dict()

    def patch(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str | None,
        body: dict[str, Any],
        field_manager: str | None = None,
    ) -> dict[str, Any]:
        """Apply a JSON merge patch."""
        resource = self.resource(api_version, kind)
        return self.dynamic.patch(
            resource,
            body=body,
            name=name,
            namespace=namespace,
            content_type=MERGE_PATCH,
            field_manager=field_manager,
        ).to_dict()

    def delete(self, api_version: str, kind: str, name: str, namespace: str | None = None) -> bool:
        resource = self.resource(api_version, kind)
        try:
            self.dynamic.delete(resource, name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        return True

    def watch(
        self,
        api_version: str,
        kind: str,
        watcher: watch.Watch,
        namespace: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout_seconds: int = 30,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """Yield ``(event_type, object)`` pairs from a watch stream."""
        resource = self.resource(api_version, kind)
        for event in self.dynamic.watch(
            resource,
            namespace=namespace,
            label_selector=label_selector,
            resource_version=resource_version,
            timeout=timeout_seconds,
            watcher=watcher,
        ):
            raw = event.get("raw_object")
            if raw is None:
                raw = event["object"].to_dict()
            event_type = str(event.get("type", ""))
            if event_type == "ERROR":
                status = raw.get("code")
                raise ApiException(status=status, reason=raw.get("reason"))
            yield event_type, raw
