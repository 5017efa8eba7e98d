from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from kubernetes.client import ApiException

from secretsync.src.errors import GeneratorError, SecretSyncError
from secretsync.src.generators import GENERATORS, Generator, generator_for_kind
from secretsync.src.keys import object_hash
from secretsync.src.metrics import ControllerMetrics
from secretsync.src.resources import (
    GENERATOR_API_VERSION,
    GENERATOR_STATE_KIND,
    LABEL_GENERATOR_OWNER_KEY,
    format_time,
    parse_time,
)

DEFAULT_GC_GRACE_PERIOD_SECONDS = 120


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class StateOwner:
    """The resource generator states belong to (a SecretBinding)."""

    api_version: str
    kind: str
    name: str
    namespace: str
    uid: str

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
        }


@dataclass(frozen=True)
class _QueueItem:
    description: str
    commit: Callable[[], None] | None = None
    rollback: Callable[[], None] | None = None


def owner_key(owner: StateOwner, state_key: str) -> str:
    return object_hash(f"{owner.kind}-{owner.namespace}-{owner.name}-{state_key}")


def _has_gc_deadline(state: dict[str, Any]) -> bool:
    return bool((state.get("spec") or {}).get("garbageCollectionDeadline"))


def latest_state(states: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Return the newest state that is not already flagged for collection."""
    candidates = [state for state in states if not _has_gc_deadline(state)]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda s: (
            (s.get("metadata") or {}).get("creationTimestamp") or "",
            (s.get("metadata") or {}).get("name") or "",
        ),
    )


class GeneratorStateManager:
    """Staged, two-phase changes to the persisted state of stateful generators.

    ``enqueue_*`` calls only record intent. :meth:`commit` applies the staged
    transitions once the binding's target has been written; :meth:`rollback`
    undoes side effects of generators that ran during a pass that failed, so
    generated credentials are never silently abandoned.

    States live in ``GeneratorState`` objects in the owner's namespace,
    labelled with a hash of the owner and the state key (for example
    ``spec.dataFrom[2]``).
    """

    def __init__(
        self,
        kube: Any,
        owner: StateOwner,
        metrics: ControllerMetrics,
        gc_grace_period_seconds: int = DEFAULT_GC_GRACE_PERIOD_SECONDS,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kube = kube
        self.owner = owner
        self.metrics = metrics
        self.gc_grace_period = timedelta(seconds=gc_grace_period_seconds)
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)
        self._queue: list[_QueueItem] = []
        self._committed: dict[str, str] = {}

    @property
    def pending(self) -> int:
        return len(self._queue)

    def get_all_states(self, state_key: str) -> list[dict[str, Any]]:
        return self.kube.list(
            GENERATOR_API_VERSION,
            GENERATOR_STATE_KIND,
            namespace=self.owner.namespace,
            label_selector=f"{LABEL_GENERATOR_OWNER_KEY}={owner_key(self.owner, state_key)}",
        )

    def get_latest_state(self, state_key: str) -> dict[str, Any] | None:
        return latest_state(self.get_all_states(state_key))

    def enqueue_set_latest(
        self,
        state_key: str,
        resource: dict[str, Any],
        generator: Generator,
        state: dict[str, Any] | None,
    ) -> None:
        """Record *state* as the newest state on commit; clean it up on rollback.

        A rollback whose cleanup fails still records the state, with an
        immediate collection deadline, so the collector retries the cleanup.
        """
        if not state:
            return

        def _commit() -> None:
            created = self.kube.create(self._new_state_object(state_key, resource, state))
            self._committed[state_key] = (created.get("metadata") or {}).get("name") or ""
            self.metrics.generator_states_total.labels(operation="create").inc()

        def _rollback() -> None:
            try:
                generator.cleanup(resource, state, self.kube, self.owner.namespace)
                self.metrics.generator_states_total.labels(operation="cleanup").inc()
                return
            except Exception:
                self.logger.exception(
                    "Generator cleanup failed for %s/%s %s; deferring to collector",
                    self.owner.namespace,
                    self.owner.name,
                    state_key,
                )
            self.kube.create(
                self._new_state_object(state_key, resource, state, deadline=self.now_fn())
            )
            self.metrics.generator_states_total.labels(operation="defer").inc()

        self._queue.append(
            _QueueItem(description=f"set latest {state_key}", commit=_commit, rollback=_rollback)
        )

    def enqueue_move_state_to_gc(self, state_key: str) -> None:
        """On commit, flag every state except the newest for collection.

        Enqueue after :meth:`enqueue_set_latest`; the state created by that
        commit is the one kept.
        """

        def _commit() -> None:
            keep = self._committed.get(state_key)
            if keep is None:
                latest = self.get_latest_state(state_key)
                keep = latest["metadata"]["name"] if latest is not None else ""
            self._flag_states(state_key, keep=keep)

        self._queue.append(_QueueItem(description=f"move {state_key} to gc", commit=_commit))

    def enqueue_flag_latest_state_for_gc(self, state_key: str) -> None:
        """On commit, flag every state, including the newest, for collection."""
        self._queue.append(
            _QueueItem(
                description=f"flag {state_key} for gc",
                commit=lambda: self._flag_states(state_key),
            )
        )

    def commit(self) -> None:
        try:
            self._drain(lambda item: item.commit, "commit")
        finally:
            self._committed.clear()

    def rollback(self) -> None:
        self._drain(lambda item: item.rollback, "rollback")

    def _drain(
        self, select: Callable[[_QueueItem], Callable[[], None] | None], phase: str
    ) -> None:
        queue, self._queue = self._queue, []
        failures: list[str] = []
        for item in queue:
            action = select(item)
            if action is None:
                continue
            try:
                action()
            except (ApiException, SecretSyncError) as exc:
                failures.append(f"{item.description}: {exc}")
        if failures:
            raise GeneratorError(f"generator state {phase} failed: {'; '.join(failures)}")

    def _flag_states(self, state_key: str, keep: str = "") -> None:
        deadline = format_time(self.now_fn() + self.gc_grace_period)
        for state in self.get_all_states(state_key):
            if keep and state["metadata"]["name"] == keep:
                continue
            if _has_gc_deadline(state):
                continue
            state.setdefault("spec", {})["garbageCollectionDeadline"] = deadline
            self.kube.update(state)
            self.metrics.generator_states_total.labels(operation="flag").inc()

    def _new_state_object(
        self,
        state_key: str,
        resource: dict[str, Any],
        state: dict[str, Any],
        deadline: datetime | None = None,
    ) -> dict[str, Any]:
        spec: dict[str, Any] = {"resource": resource, "state": state}
        if deadline is not None:
            spec["garbageCollectionDeadline"] = format_time(deadline)
        return {
            "apiVersion": GENERATOR_API_VERSION,
            "kind": GENERATOR_STATE_KIND,
            "metadata": {
                "generateName": f"gen-{self.owner.kind.lower()}-{self.owner.name}-",
                "namespace": self.owner.namespace,
                "labels": {LABEL_GENERATOR_OWNER_KEY: owner_key(self.owner, state_key)},
                "ownerReferences": [self.owner.owner_reference()],
            },
            "spec": spec,
        }


class GeneratorStateCollector:
    """Deletes generator states whose collection deadline has passed.

    The generator's ``cleanup`` runs first; a failed cleanup keeps the state
    so the next round retries it.
    """

    def __init__(
        self,
        kube: Any,
        metrics: ControllerMetrics,
        interval_seconds: int = 60,
        namespace: str | None = None,
        generators: dict[str, Generator] | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kube = kube
        self.metrics = metrics
        self.interval_seconds = interval_seconds
        self.namespace = namespace
        self.generators = generators if generators is not None else GENERATORS
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)

    def collect_once(self) -> int:
        """Run one collection round and return how many states were deleted."""
        now = self.now_fn()
        deleted = 0
        for state in self.kube.list(
            GENERATOR_API_VERSION, GENERATOR_STATE_KIND, namespace=self.namespace
        ):
            spec = state.get("spec") or {}
            deadline = parse_time(spec.get("garbageCollectionDeadline"))
            if deadline is None or deadline > now:
                continue
            meta = state.get("metadata") or {}
            resource = spec.get("resource") or {}
            try:
                generator = generator_for_kind(resource.get("kind", ""), self.generators)
                generator.cleanup(resource, spec.get("state"), self.kube, meta.get("namespace", ""))
            except Exception:
                self.logger.exception(
                    "Cleanup failed for generator state %s/%s; retrying next round",
                    meta.get("namespace"),
                    meta.get("name"),
                )
                continue
            self.kube.delete(
                GENERATOR_API_VERSION, GENERATOR_STATE_KIND, meta["name"], meta.get("namespace")
            )
            self.metrics.generator_states_total.labels(operation="collect").inc()
            deleted += 1
        return deleted

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.interval_seconds):
            try:
                deleted = self.collect_once()
                if deleted:
                    self.logger.info("Collected %d expired generator state(s)", deleted)
            except ApiException:
                self.logger.exception("Generator state collection failed")
