from __future__ import annotations

import threading
from typing import Any

import pytest
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from prometheus_client import CollectorRegistry

from secretsync.src.informers import InformerManager
from secretsync.src.metrics import ControllerMetrics, build_metrics
from secretsync.tests.fakes import FakeKube

WIDGET = ("example.io/v1", "Widget")


def _active(metrics: ControllerMetrics) -> float | None:
    return metrics.registry.get_sample_value("secretsync_active_informers")


def test_watch_is_shared_between_owners_and_stopped_with_the_last() -> None:
    metrics = build_metrics(CollectorRegistry())
    informers = InformerManager(FakeKube(), metrics)

    assert informers.ensure(*WIDGET, owner=("default", "a"))
    assert not informers.ensure(*WIDGET, owner=("default", "b"))
    assert informers.owners(*WIDGET) == {("default", "a"), ("default", "b")}
    assert _active(metrics) == 1.0

    informers.release(*WIDGET, owner=("default", "a"))
    assert informers.is_managed(*WIDGET)

    informers.release(*WIDGET, owner=("default", "b"))
    informers.release(*WIDGET, owner=("default", "b"))
    assert not informers.is_managed(*WIDGET)
    assert _active(metrics) == 0.0


def test_unserved_kind_is_reported_to_the_caller() -> None:
    kube = FakeKube()
    kube.unserved.add(WIDGET)
    metrics = build_metrics(CollectorRegistry())
    informers = InformerManager(kube, metrics)

    with pytest.raises(ResourceNotFoundError):
        informers.ensure(*WIDGET, owner=("default", "a"))

    assert not informers.is_managed(*WIDGET)
    assert _active(metrics) == 0.0


def test_changes_to_managed_objects_reach_the_handler() -> None:
    kube = FakeKube(
        [
            {
                "apiVersion": "example.io/v1",
                "kind": "Widget",
                "metadata": {
                    "name": "w",
                    "namespace": "default",
                    "labels": {"secretsync.io/managed": "true"},
                },
            }
        ]
    )
    seen: list[tuple[str, str, str]] = []
    delivered = threading.Event()

    def on_change(api_version: str, kind: str, obj: dict[str, Any]) -> None:
        seen.append((api_version, kind, obj["metadata"]["name"]))
        delivered.set()

    informers = InformerManager(kube, build_metrics(CollectorRegistry()), on_change=on_change)
    try:
        informers.ensure(*WIDGET, owner=("default", "a"))
        assert delivered.wait(timeout=5)
    finally:
        informers.stop_all()

    assert seen == [("example.io/v1", "Widget", "w")]
    assert not informers.is_managed(*WIDGET)


def test_cache_for_unknown_kind_is_none() -> None:
    informers = InformerManager(FakeKube(), build_metrics(CollectorRegistry()))

    assert informers.cache_for(*WIDGET) is None
