from __future__ import annotations

from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry

from secretsync.src.metrics import build_metrics
from secretsync.src.workqueue import WorkQueue


class TickClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_duplicate_adds_are_processed_once() -> None:
    queue = WorkQueue()

    queue.add("a")
    queue.add("a")
    queue.add("b")

    assert len(queue) == 2
    assert queue.get(timeout=0) == "a"
    assert queue.get(timeout=0) == "b"
    assert queue.get(timeout=0) is None


def test_key_added_while_processing_is_requeued_on_done() -> None:
    queue = WorkQueue()
    queue.add("a")
    assert queue.get(timeout=0) == "a"

    queue.add("a")
    assert len(queue) == 0

    queue.done("a")
    assert len(queue) == 1
    assert queue.get(timeout=0) == "a"


def test_add_after_waits_for_the_delay() -> None:
    clock = TickClock()
    queue = WorkQueue(clock=clock)

    queue.add_after("a", 5)
    assert queue.get(timeout=0) is None

    clock.now = 5.0
    assert queue.get(timeout=0) == "a"


def test_repeated_add_after_keeps_the_earliest_deadline() -> None:
    clock = TickClock()
    queue = WorkQueue(clock=clock)

    queue.add_after("a", 10)
    queue.add_after("a", 3)
    queue.add_after("a", 7)

    clock.now = 3.0
    assert queue.get(timeout=0) == "a"
    queue.done("a")

    clock.now = 10.0
    assert queue.get(timeout=0) is None

    queue.add_after("a", 2)
    clock.now = 12.0
    assert queue.get(timeout=0) == "a"


def test_add_after_without_delay_adds_immediately() -> None:
    queue = WorkQueue()

    queue.add_after("a", 0)

    assert len(queue) == 1


def test_rate_limited_delay_grows_until_forgotten() -> None:
    queue = WorkQueue(base_delay=1.0, max_delay=4.0, clock=TickClock())

    with patch("secretsync.src.workqueue.random.random", return_value=0.5):
        delays = [queue.add_rate_limited("a") for _ in range(4)]

    assert delays == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0), pytest.approx(4.0)]
    assert queue.num_requeues("a") == 4

    queue.forget("a")
    assert queue.num_requeues("a") == 0


def test_shutdown_unblocks_getters_and_drops_new_keys() -> None:
    queue = WorkQueue()

    queue.shutdown()
    queue.add("a")

    assert queue.shutting_down
    assert queue.get() is None
    assert len(queue) == 0


def test_queue_depth_is_exported() -> None:
    metrics = build_metrics(CollectorRegistry())
    queue = WorkQueue(metrics)

    queue.add("a")
    queue.add("b")
    assert metrics.registry.get_sample_value("secretsync_queue_depth") == 2.0

    queue.get(timeout=0)
    assert metrics.registry.get_sample_value("secretsync_queue_depth") == 1.0
