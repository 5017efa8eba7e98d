from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from secretsync.src.kube import (
    MERGE_PATCH,
    KubeClient,
    build_client,
    load_kube_configuration,
    partial_metadata,
)


def _result(body: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(to_dict=lambda: body)


def _client() -> tuple[KubeClient, MagicMock, MagicMock]:
    dynamic = MagicMock()
    resource = MagicMock()
    dynamic.resources.get.return_value = resource
    return KubeClient(dynamic), dynamic, resource


SECRET = {
    "apiVersion": "v1",
    "kind": "Secret",
    "metadata": {"name": "app", "namespace": "default", "resourceVersion": "7"},
    "data": {"user": "YWRtaW4="},
}


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("secretsync.src.kube.config.load_incluster_config") as mock_incluster,
        patch("secretsync.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    with (
        patch(
            "secretsync.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("secretsync.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_client_wraps_dynamic_client() -> None:
    with (
        patch("secretsync.src.kube.client") as mock_client,
        patch("secretsync.src.kube.DynamicClient") as mock_dynamic,
    ):
        kube = build_client()

    mock_dynamic.assert_called_once_with(mock_client.ApiClient.return_value)
    assert kube.dynamic is mock_dynamic.return_value


def test_partial_metadata_keeps_identity_only() -> None:
    meta = partial_metadata(SECRET)

    assert meta == {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "app", "namespace": "default", "resourceVersion": "7"},
    }
    assert meta is not None
    meta["metadata"]["name"] = "changed"
    assert SECRET["metadata"]["name"] == "app"
    assert partial_metadata(None) is None


def test_resource_discovery_is_cached() -> None:
    kube, dynamic, resource = _client()

    assert kube.resource("v1", "Secret") is resource
    assert kube.resource("v1", "Secret") is resource

    dynamic.resources.get.assert_called_once_with(api_version="v1", kind="Secret")


def test_get_returns_none_for_missing_objects() -> None:
    kube, _, resource = _client()
    resource.get.side_effect = ApiException(status=404)

    assert kube.get("v1", "Secret", "app", "default") is None


def test_get_propagates_other_api_errors() -> None:
    kube, _, resource = _client()
    resource.get.side_effect = ApiException(status=403)

    with pytest.raises(ApiException) as excinfo:
        kube.get("v1", "Secret", "app", "default")

    assert excinfo.value.status == 403


def test_get_metadata_drops_payload() -> None:
    kube, _, resource = _client()
    resource.get.return_value = _result(dict(SECRET))

    meta = kube.get_metadata("v1", "Secret", "app", "default")

    assert meta is not None
    assert "data" not in meta
    assert meta["metadata"]["resourceVersion"] == "7"


def test_list_with_version_fills_in_item_kind() -> None:
    kube, _, resource = _client()
    resource.get.return_value = _result(
        {"metadata": {"resourceVersion": "42"}, "items": [{"metadata": {"name": "app"}}]}
    )

    items, version = kube.list_with_version(
        "v1", "Secret", namespace="default", label_selector="secretsync.io/managed=true"
    )

    resource.get.assert_called_once_with(
        namespace="default", label_selector="secretsync.io/managed=true"
    )
    assert version == "42"
    assert items == [{"apiVersion": "v1", "kind": "Secret", "metadata": {"name": "app"}}]


def test_writes_pass_the_field_manager() -> None:
    kube, dynamic, resource = _client()
    dynamic.create.return_value = _result(SECRET)
    dynamic.replace.return_value = _result(SECRET)

    kube.create(SECRET, field_manager="secretsync/app")
    kube.update(SECRET, field_manager="secretsync/app")

    dynamic.create.assert_called_once_with(
        resource, body=SECRET, namespace="default", field_manager="secretsync/app"
    )
    dynamic.replace.assert_called_once_with(
        resource, body=SECRET, namespace="default", field_manager="secretsync/app"
    )


def test_update_status_targets_the_status_subresource() -> None:
    kube, dynamic, resource = _client()
    dynamic.replace.return_value = _result(SECRET)

    kube.update_status(SECRET)

    assert dynamic.replace.call_args.args[0] is resource.subresources["status"]


def test_patch_sends_a_merge_patch() -> None:
    kube, dynamic, resource = _client()
    dynamic.patch.return_value = _result(SECRET)
    body = {"metadata": {"labels": {"secretsync.io/managed": "true"}}}

    kube.patch("v1", "Secret", "app", "default", body, field_manager="secretsync/app")

    dynamic.patch.assert_called_once_with(
        resource,
        body=body,
        name="app",
        namespace="default",
        content_type=MERGE_PATCH,
        field_manager="secretsync/app",
    )


def test_delete_reports_whether_anything_was_removed() -> None:
    kube, dynamic, _ = _client()

    assert kube.delete("v1", "Secret", "app", "default")

    dynamic.delete.side_effect = ApiException(status=404)
    assert not kube.delete("v1", "Secret", "app", "default")

    dynamic.delete.side_effect = ApiException(status=500)
    with pytest.raises(ApiException):
        kube.delete("v1", "Secret", "app", "default")


def test_watch_yields_raw_events_and_raises_on_error_events() -> None:
    kube, dynamic, _ = _client()
    dynamic.watch.return_value = iter(
        [
            {"type": "ADDED", "raw_object": {"metadata": {"name": "a"}}},
            {"type": "MODIFIED", "object": _result({"metadata": {"name": "b"}})},
            {"type": "ERROR", "raw_object": {"code": 410, "reason": "Expired"}},
        ]
    )
    stream = kube.watch("v1", "Secret", MagicMock(), resource_version="5")

    assert next(stream) == ("ADDED", {"metadata": {"name": "a"}})
    assert next(stream) == ("MODIFIED", {"metadata": {"name": "b"}})
    with pytest.raises(ApiException) as excinfo:
        next(stream)

    assert excinfo.value.status == 410
