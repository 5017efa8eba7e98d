from __future__ import annotations

from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from secretsync.src.errors import GeneratorError
from secretsync.src.metrics import build_metrics
from secretsync.src.resources import GENERATOR_API_VERSION, GENERATOR_STATE_KIND
from secretsync.src.statemanager import (
    GeneratorStateCollector,
    GeneratorStateManager,
    StateOwner,
    latest_state,
    owner_key,
)
from secretsync.tests.fakes import FakeClock, FakeKube

OWNER = StateOwner(
    api_version="secretsync.io/v1", kind="SecretBinding", name="app", namespace="default", uid="u1"
)
RESOURCE = {"apiVersion": GENERATOR_API_VERSION, "kind": "Fake", "spec": {"data": {}}}


class RecordingGenerator:
    def __init__(self, fail_cleanup: bool = False) -> None:
        self.fail_cleanup = fail_cleanup
        self.cleaned: list[dict[str, Any] | None] = []

    def generate(self, resource: dict, kube: Any, namespace: str) -> tuple[dict, dict | None]:
        return {}, None

    def cleanup(self, resource: dict, state: dict | None, kube: Any, namespace: str) -> None:
        if self.fail_cleanup:
            raise RuntimeError("backend unavailable")
        self.cleaned.append(state)


def _manager(kube: FakeKube, clock: FakeClock | None = None) -> GeneratorStateManager:
    return GeneratorStateManager(
        kube,
        OWNER,
        build_metrics(CollectorRegistry()),
        gc_grace_period_seconds=120,
        now_fn=clock or FakeClock(),
    )


def _states(kube: FakeKube) -> list[dict]:
    return kube.list(GENERATOR_API_VERSION, GENERATOR_STATE_KIND, namespace="default")


def test_enqueue_only_records_intent() -> None:
    kube = FakeKube()
    manager = _manager(kube)

    manager.enqueue_set_latest("spec.dataFrom[0]", RESOURCE, RecordingGenerator(), {"id": 1})

    assert manager.pending == 1
    assert _states(kube) == []


def test_commit_creates_labelled_state() -> None:
    kube = FakeKube()
    manager = _manager(kube)

    manager.enqueue_set_latest("spec.dataFrom[0]", RESOURCE, RecordingGenerator(), {"id": 1})
    manager.commit()

    states = _states(kube)
    assert len(states) == 1
    state = states[0]
    assert state["spec"]["state"] == {"id": 1}
    assert "garbageCollectionDeadline" not in state["spec"]
    assert state["metadata"]["labels"] == {
        "generators.secretsync.io/owner-key": owner_key(OWNER, "spec.dataFrom[0]")
    }
    assert state["metadata"]["ownerReferences"][0]["uid"] == "u1"
    assert manager.get_latest_state("spec.dataFrom[0]") == state
    assert manager.pending == 0


def test_empty_state_is_not_staged() -> None:
    manager = _manager(FakeKube())

    manager.enqueue_set_latest("spec.dataFrom[0]", RESOURCE, RecordingGenerator(), None)

    assert manager.pending == 0


def test_move_to_gc_flags_previous_state_and_keeps_new_one() -> None:
    kube = FakeKube()
    clock = FakeClock()
    key = "spec.dataFrom[0]"
    first = _manager(kube, clock)
    first.enqueue_set_latest(key, RESOURCE, RecordingGenerator(), {"id": 1})
    first.commit()

    second = _manager(kube, clock)
    second.enqueue_set_latest(key, RESOURCE, RecordingGenerator(), {"id": 2})
    second.enqueue_move_state_to_gc(key)
    second.commit()

    by_id = {s["spec"]["state"]["id"]: s for s in _states(kube)}
    assert by_id[1]["spec"]["garbageCollectionDeadline"] == "2026-01-01T00:02:00Z"
    assert "garbageCollectionDeadline" not in by_id[2]["spec"]
    assert second.get_latest_state(key)["spec"]["state"] == {"id": 2}


def test_flag_latest_state_flags_everything() -> None:
    kube = FakeKube()
    key = "spec.dataFrom[1]"
    manager = _manager(kube)
    manager.enqueue_set_latest(key, RESOURCE, RecordingGenerator(), {"id": 1})
    manager.commit()

    manager.enqueue_flag_latest_state_for_gc(key)
    manager.commit()

    assert all(s["spec"].get("garbageCollectionDeadline") for s in _states(kube))
    assert manager.get_latest_state(key) is None


def test_states_of_other_keys_are_untouched() -> None:
    kube = FakeKube()
    manager = _manager(kube)
    manager.enqueue_set_latest("spec.dataFrom[0]", RESOURCE, RecordingGenerator(), {"id": 0})
    manager.enqueue_set_latest("spec.dataFrom[1]", RESOURCE, RecordingGenerator(), {"id": 1})
    manager.commit()

    manager.enqueue_flag_latest_state_for_gc("spec.dataFrom[1]")
    manager.commit()

    assert manager.get_latest_state("spec.dataFrom[0]") is not None
    assert manager.get_latest_state("spec.dataFrom[1]") is None


def test_rollback_cleans_up_generated_state() -> None:
    kube = FakeKube()
    generator = RecordingGenerator()
    manager = _manager(kube)

    manager.enqueue_set_latest("spec.dataFrom[0]", RESOURCE, generator, {"id": 1})
    manager.enqueue_flag_latest_state_for_gc("spec.dataFrom[0]")
    manager.rollback()

    assert generator.cleaned == [{"id": 1}]
    assert _states(kube) == []
    assert manager.pending == 0


def test_rollback_with_failed_cleanup_defers_to_collector() -> None:
    kube = FakeKube()
    manager = _manager(kube)

    manager.enqueue_set_latest("spec.dataFrom[0]", RESOURCE, RecordingGenerator(fail_cleanup=True), {"id": 1})
    manager.rollback()

    states = _states(kube)
    assert len(states) == 1
    assert states[0]["spec"]["garbageCollectionDeadline"] == "2026-01-01T00:00:00Z"


def test_commit_failures_are_collected_into_one_error() -> None:
    kube = FakeKube()
    kube.fail_next("create", GENERATOR_STATE_KIND, 500)
    manager = _manager(kube)
    manager.enqueue_set_latest("spec.dataFrom[0]", RESOURCE, RecordingGenerator(), {"id": 1})
    manager.enqueue_set_latest("spec.dataFrom[1]", RESOURCE, RecordingGenerator(), {"id": 2})

    with pytest.raises(GeneratorError, match=r"commit failed: set latest spec.dataFrom\[0\]"):
        manager.commit()

    assert [s["spec"]["state"] for s in _states(kube)] == [{"id": 2}]


def test_latest_state_ignores_flagged_states() -> None:
    states = [
        {"metadata": {"name": "a", "creationTimestamp": "2026-01-01T00:00:01Z"}, "spec": {}},
        {"metadata": {"name": "b", "creationTimestamp": "2026-01-01T00:00:03Z"},
         "spec": {"garbageCollectionDeadline": "2026-01-01T00:02:00Z"}},
        {"metadata": {"name": "c", "creationTimestamp": "2026-01-01T00:00:02Z"}, "spec": {}},
    ]

    assert latest_state(states)["metadata"]["name"] == "c"
    assert latest_state(states[1:2]) is None


def _seed_state(kube: FakeKube, name: str, deadline: str | None, kind: str = "Fake") -> None:
    spec: dict[str, Any] = {"resource": {"kind": kind}, "state": {"name": name}}
    if deadline:
        spec["garbageCollectionDeadline"] = deadline
    kube.add(
        {
            "apiVersion": GENERATOR_API_VERSION,
            "kind": GENERATOR_STATE_KIND,
            "metadata": {"name": name, "namespace": "default"},
            "spec": spec,
        }
    )


def test_collector_deletes_expired_states_after_cleanup() -> None:
    kube = FakeKube()
    _seed_state(kube, "expired", "2025-12-31T23:59:00Z")
    _seed_state(kube, "pending", "2026-01-01T00:05:00Z")
    _seed_state(kube, "live", None)
    generator = RecordingGenerator()
    collector = GeneratorStateCollector(
        kube, build_metrics(CollectorRegistry()), generators={"Fake": generator}, now_fn=FakeClock()
    )

    assert collector.collect_once() == 1

    assert generator.cleaned == [{"name": "expired"}]
    assert sorted(s["metadata"]["name"] for s in _states(kube)) == ["live", "pending"]


def test_collector_keeps_state_when_cleanup_fails() -> None:
    kube = FakeKube()
    _seed_state(kube, "expired", "2025-12-31T23:59:00Z")
    collector = GeneratorStateCollector(
        kube,
        build_metrics(CollectorRegistry()),
        generators={"Fake": RecordingGenerator(fail_cleanup=True)},
        now_fn=FakeClock(),
    )

    assert collector.collect_once() == 0
    assert len(_states(kube)) == 1
