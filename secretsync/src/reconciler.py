from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from kubernetes.client import ApiException

from secretsync.src.aggregation import DataPipeline, SourceFacts, resolve_sources
from secretsync.src.cache import ObjectCache
from secretsync.src.clientmanager import ClientManager
from secretsync.src.errors import (
    CachesNotSyncedError,
    ConfigError,
    NoSecretError,
    SecretImmutableError,
    SecretIsOwnedError,
    SecretSyncError,
    SetOwnerReferenceError,
)
from secretsync.src.generators import Generator
from secretsync.src.informers import InformerManager
from secretsync.src.keys import object_hash
from secretsync.src.metrics import ControllerMetrics
from secretsync.src.mutation import TargetWriter, is_target_valid
from secretsync.src.providers import Provider
from secretsync.src.resources import (
    API_VERSION,
    BINDING_KIND,
    CONDITION_READY,
    CREATION_POLICY_MERGE,
    CREATION_POLICY_NONE,
    CREATION_POLICY_ORPHAN,
    CREATION_POLICY_OWNER,
    DEFAULT_REFRESH_INTERVAL_SECONDS,
    DELETION_POLICY_DELETE,
    DELETION_POLICY_RETAIN,
    LABEL_MANAGED,
    LABEL_MANAGED_VALUE,
    REASON_DELETED,
    REASON_MISSING,
    REASON_SYNCED,
    REASON_SYNCED_ERROR,
    Binding,
    format_time,
    get_condition,
    is_managed,
    parse_time,
    set_condition,
)
from secretsync.src.statemanager import (
    DEFAULT_GC_GRACE_PERIOD_SECONDS,
    GeneratorStateManager,
    StateOwner,
    utc_now,
)

NOT_READY_REQUEUE_SECONDS = 30.0

MSG_SYNCED = "secret synced"
MSG_RETAINED = "secret retained due to DeletionPolicy=Retain"
MSG_DELETED = "secret deleted due to DeletionPolicy=Delete"
MSG_MISSING = "secret will not be created due to CreationPolicy=Merge"
MSG_PROVIDER_ERROR = "could not get secret data from provider"
MSG_IMMUTABLE = "could not update secret, target is immutable"
MSG_OWNERSHIP = "failed to take ownership of target secret"
MSG_IS_OWNED = "target is owned by another SecretBinding"
MSG_ORPHANS = "could not delete orphaned secrets"
MSG_UPDATE_FAILED = "could not update secret"
MSG_DELETE_FAILED = "could not delete secret"
MSG_DELETE_POLICY = "unable to delete secret: DeletionPolicy=Delete requires CreationPolicy=Owner"
MSG_NOT_READY = "some source stores are not ready"
MSG_NOT_EXISTS = "some source stores do not exist"
MSG_DEFAULT_STORE = "default store is not set"
MSG_INVALID_SPEC = "invalid SecretBinding spec"
MSG_GENERIC_DISABLED = "non-Secret targets are disabled"
MSG_INFORMER = "could not watch target kind"


@dataclass(frozen=True)
class ReconcileResult:
    """What the work queue should do with the identity after a pass.

    ``requeue`` asks for an immediate retry; ``requeue_after`` schedules the
    next pass that many seconds from now. Neither set means wait for the
    next watch event.
    """

    requeue: bool = False
    requeue_after: float = 0.0


def fingerprint(binding: Binding) -> str:
    """``<generation>-<hash of labels and annotations>`` for cheap change detection."""
    meta_hash = object_hash({"annotations": binding.annotations, "labels": binding.labels})
    return f"{binding.generation}-{meta_hash}"


def should_refresh(binding: Binding, now: datetime) -> bool:
    """Return whether *binding* is due for a sync regardless of its target.

    A changed fingerprint always refreshes. A zero interval refreshes on
    every trigger and never schedules a timer; a positive interval refreshes
    once it has elapsed since ``status.refreshTime`` (or when that time is
    unset or lies in the future).
    """
    if binding.status.get("syncedResourceVersion") != fingerprint(binding):
        return True
    interval = binding.refresh_interval
    if interval <= 0:
        return True
    refresh_time = parse_time(binding.status.get("refreshTime"))
    if refresh_time is None or refresh_time > now:
        return True
    return (now - refresh_time).total_seconds() >= interval


def requeue_result(interval: float, refresh_time: datetime | None, now: datetime) -> ReconcileResult:
    if interval <= 0:
        return ReconcileResult()
    if refresh_time is None:
        return ReconcileResult(requeue_after=interval)
    elapsed = (now - refresh_time).total_seconds()
    if elapsed < 0:
        return ReconcileResult(requeue=True)
    if elapsed < interval:
        return ReconcileResult(requeue_after=interval - elapsed)
    return ReconcileResult(requeue=True)


def check_caches_in_sync(
    partial: dict[str, Any] | None, full: dict[str, Any] | None, name: str
) -> None:
    """Raise :class:`CachesNotSyncedError` when two reads of the target disagree."""
    partial_meta = (partial or {}).get("metadata") or {}
    full_meta = (full or {}).get("metadata") or {}
    if partial_meta.get("uid") != full_meta.get("uid") or partial_meta.get(
        "resourceVersion"
    ) != full_meta.get("resourceVersion"):
        raise CachesNotSyncedError(f"metadata and object caches disagree about target {name!r}")


class Reconciler:
    """Brings one SecretBinding's target in line with its backends.

    :meth:`reconcile` is safe to call from several worker threads as long as
    a single binding is never reconciled concurrently (the work queue
    guarantees that). Client and generator-state bookkeeping is created per
    pass and never shared.
    """

    def __init__(
        self,
        kube: Any,
        metrics: ControllerMetrics,
        controller_class: str = "default",
        secret_cache: ObjectCache | None = None,
        informers: InformerManager | None = None,
        enable_floodgate: bool = True,
        cluster_store_enabled: bool = True,
        allow_generic_targets: bool = False,
        default_refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        gc_grace_period_seconds: int = DEFAULT_GC_GRACE_PERIOD_SECONDS,
        providers: dict[str, Provider] | None = None,
        generators: dict[str, Generator] | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kube = kube
        self.metrics = metrics
        self.controller_class = controller_class
        self.secret_cache = secret_cache
        self.informers = informers
        self.enable_floodgate = enable_floodgate
        self.cluster_store_enabled = cluster_store_enabled
        self.allow_generic_targets = allow_generic_targets
        self.default_refresh_interval = default_refresh_interval
        self.gc_grace_period_seconds = gc_grace_period_seconds
        self.providers = providers
        self.generators = generators
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)
        self.writer = TargetWriter(kube, logger=self.logger)

        self._tracked_kinds: dict[tuple[str, str], tuple[str, str]] = {}
        self._tracked_lock = threading.Lock()
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        started = time.monotonic()
        self.metrics.sync_calls_total.labels(name=name, namespace=namespace).inc()
        self._local.error_counted = False
        try:
            return self._reconcile(namespace, name)
        except Exception:
            if not self._local.error_counted:
                self.metrics.sync_calls_errors_total.labels(name=name, namespace=namespace).inc()
            raise
        finally:
            self.metrics.reconcile_duration_seconds.observe(time.monotonic() - started)

    def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        start = self.now_fn()
        obj = self.kube.get(API_VERSION, BINDING_KIND, name, namespace)
        if obj is None:
            self.logger.info("SecretBinding %s/%s deleted, forgetting it", namespace, name)
            self.metrics.forget_binding(namespace, name)
            self._track_target_kind((namespace, name), None)
            return ReconcileResult()

        try:
            binding = Binding.from_dict(obj, self.default_refresh_interval)
        except ConfigError as exc:
            self.logger.warning("SecretBinding %s/%s is invalid: %s", namespace, name, exc)
            self._write_invalid_status(obj, namespace, name)
            return ReconcileResult()

        if binding.deleting:
            self.logger.debug("Skipping SecretBinding %s/%s, it is being deleted", namespace, name)
            self._track_target_kind((namespace, name), None)
            return ReconcileResult()

        facts = resolve_sources(
            binding,
            self.kube,
            self.controller_class,
            enable_floodgate=self.enable_floodgate,
            cluster_store_enabled=self.cluster_store_enabled,
        )
        if facts.skip:
            self.logger.debug(
                "Skipping SecretBinding %s/%s, it references sources of another controller",
                namespace,
                name,
            )
            return ReconcileResult()

        status = copy.deepcopy(binding.status)
        before = copy.deepcopy(status)
        try:
            result = self._run(binding, facts, status, start)
        except Exception:
            self._flush_status(binding, status, before, failing=True)
            raise
        if self._flush_status(binding, status, before, failing=False):
            return ReconcileResult(requeue=True)
        return result

    # ------------------------------------------------------------------
    # Pass body
    # ------------------------------------------------------------------

    def _run(
        self, binding: Binding, facts: SourceFacts, status: dict[str, Any], start: datetime
    ) -> ReconcileResult:
        target = binding.target
        if not target.is_secret:
            if not self.allow_generic_targets:
                self._mark_failed(binding, status, MSG_GENERIC_DISABLED)
                return ReconcileResult()
            try:
                self._track_target_kind(
                    (binding.namespace, binding.name), (target.api_version, target.kind)
                )
            except Exception:
                self._mark_failed(binding, status, MSG_INFORMER)
                raise
        else:
            self._track_target_kind((binding.namespace, binding.name), None)

        partial = self.kube.get_metadata(
            target.api_version, target.kind, target.name, binding.namespace
        )
        if partial is not None and not is_managed(partial):
            self.kube.patch(
                target.api_version,
                target.kind,
                target.name,
                binding.namespace,
                {"metadata": {"labels": {LABEL_MANAGED: LABEL_MANAGED_VALUE}}},
                field_manager=binding.field_owner,
            )
            self.logger.info(
                "Labelled existing %s %s/%s as managed, requeueing",
                target.kind,
                binding.namespace,
                target.name,
            )
            return ReconcileResult(requeue=True)

        existing = self._full_target(binding)
        check_caches_in_sync(partial, existing, target.name)

        if not should_refresh(binding, start) and is_target_valid(existing, target):
            self.logger.debug("Skipping refresh of %s/%s", binding.namespace, binding.name)
            return requeue_result(
                binding.refresh_interval, parse_time(binding.status.get("refreshTime")), start
            )

        if facts.default_store_missing:
            self._mark_failed(binding, status, MSG_DEFAULT_STORE)
            return ReconcileResult()
        if facts.not_exists:
            status["sources"] = facts.status_sources()
            self._mark_failed(
                binding, status, MSG_NOT_EXISTS, detail=", ".join(facts.not_exists)
            )
            return self._interval_result(binding)
        if facts.not_ready:
            status["sources"] = facts.status_sources()
            self._mark_failed(binding, status, MSG_NOT_READY, detail=", ".join(facts.not_ready))
            return ReconcileResult(requeue_after=NOT_READY_REQUEUE_SECONDS)

        state = GeneratorStateManager(
            self.kube,
            StateOwner(
                api_version=API_VERSION,
                kind=BINDING_KIND,
                name=binding.name,
                namespace=binding.namespace,
                uid=binding.uid,
            ),
            self.metrics,
            gc_grace_period_seconds=self.gc_grace_period_seconds,
            now_fn=self.now_fn,
            logger=self.logger,
        )

        with ClientManager(
            self.kube,
            self.controller_class,
            self.metrics,
            enable_floodgate=self.enable_floodgate,
            cluster_store_enabled=self.cluster_store_enabled,
            providers=self.providers,
            logger=self.logger,
        ) as clients:
            pipeline = DataPipeline(
                self.kube, clients, state, generators=self.generators, logger=self.logger
            )
            try:
                data = pipeline.run(binding, facts)
            except NoSecretError:
                self._rollback(state, binding)
                status["sources"] = facts.status_sources()
                self._mark_done(binding, status, start, REASON_SYNCED, MSG_RETAINED)
                return self._requeue_from_status(binding, status, start)
            except Exception as exc:
                self._rollback(state, binding)
                status["sources"] = facts.status_sources()
                self._mark_failed(binding, status, MSG_PROVIDER_ERROR, detail=str(exc))
                raise

        status["sources"] = facts.status_sources()
        try:
            result = self._write_target(binding, existing, data, status, start)
        except Exception:
            self._rollback(state, binding)
            raise

        ready = get_condition(status, CONDITION_READY)
        if ready is not None and ready.get("status") == "True":
            self._commit(state, binding)
        else:
            self._rollback(state, binding)
        return result

    def _write_target(
        self,
        binding: Binding,
        existing: dict[str, Any] | None,
        data: dict[str, bytes],
        status: dict[str, Any],
        start: datetime,
    ) -> ReconcileResult:
        target = binding.target

        if not data:
            if target.deletion_policy == DELETION_POLICY_DELETE:
                if target.creation_policy != CREATION_POLICY_OWNER:
                    self._mark_failed(binding, status, MSG_DELETE_POLICY)
                    return ReconcileResult()
                if existing is not None:
                    try:
                        self.writer.delete_target(binding)
                    except ApiException as exc:
                        self._mark_failed(binding, status, MSG_DELETE_FAILED, detail=str(exc))
                        raise
                self._mark_done(binding, status, start, REASON_DELETED, MSG_DELETED)
                return self._requeue_from_status(binding, status, start)
            if target.deletion_policy == DELETION_POLICY_RETAIN:
                self._mark_done(binding, status, start, REASON_SYNCED, MSG_RETAINED)
                return self._requeue_from_status(binding, status, start)

        if target.creation_policy == CREATION_POLICY_OWNER:
            try:
                self.writer.delete_orphaned(binding)
            except ApiException as exc:
                self._mark_failed(binding, status, MSG_ORPHANS, detail=str(exc))
                raise

        try:
            if target.creation_policy == CREATION_POLICY_NONE:
                self.logger.debug(
                    "Not writing target of %s/%s due to CreationPolicy=None",
                    binding.namespace,
                    binding.name,
                )
            elif target.creation_policy == CREATION_POLICY_MERGE:
                if existing is None:
                    self._mark_failed(binding, status, MSG_MISSING, reason=REASON_MISSING)
                    return self._interval_result(binding)
                status["binding"] = {"name": target.name}
                self.writer.update(existing, binding, data, patch=True)
            elif target.creation_policy in {CREATION_POLICY_ORPHAN, CREATION_POLICY_OWNER}:
                self._create_or_update(binding, existing, data, status)
        except ApiException as exc:
            if exc.status == 409:
                self.logger.debug(
                    "Conflict writing target of %s/%s, requeueing", binding.namespace, binding.name
                )
                return ReconcileResult(requeue=True)
            self._mark_failed(binding, status, MSG_UPDATE_FAILED, detail=str(exc))
            raise
        except SetOwnerReferenceError as exc:
            self._mark_failed(binding, status, MSG_OWNERSHIP, detail=str(exc))
            return ReconcileResult()
        except SecretIsOwnedError as exc:
            self._mark_failed(binding, status, MSG_IS_OWNED, detail=str(exc))
            return ReconcileResult()
        except SecretImmutableError as exc:
            self._mark_failed(binding, status, MSG_IMMUTABLE, detail=str(exc))
            return ReconcileResult()
        except Exception as exc:
            self._mark_failed(binding, status, MSG_UPDATE_FAILED, detail=str(exc))
            raise

        self._mark_done(binding, status, start, REASON_SYNCED, MSG_SYNCED)
        return self._requeue_from_status(binding, status, start)

    def _create_or_update(
        self,
        binding: Binding,
        existing: dict[str, Any] | None,
        data: dict[str, bytes],
        status: dict[str, Any],
    ) -> None:
        if existing is None:
            self.writer.create(binding, data)
        else:
            self.writer.update(existing, binding, data)
        status["binding"] = {"name": binding.target.name}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _full_target(self, binding: Binding) -> dict[str, Any] | None:
        target = binding.target
        cache: ObjectCache | None = None
        if target.is_secret:
            cache = self.secret_cache
        elif self.informers is not None:
            cache = self.informers.cache_for(target.api_version, target.kind)
        if cache is not None:
            return cache.get(binding.namespace, target.name)
        return self.kube.get(target.api_version, target.kind, target.name, binding.namespace)

    def _track_target_kind(self, owner: tuple[str, str], kind: tuple[str, str] | None) -> None:
        """Keep the informer registration of *owner* in line with its target kind."""
        if self.informers is None:
            return
        with self._tracked_lock:
            previous = self._tracked_kinds.get(owner)
        if previous == kind:
            return
        if kind is not None:
            self.informers.ensure(kind[0], kind[1], owner)
        if previous is not None:
            self.informers.release(previous[0], previous[1], owner)
        with self._tracked_lock:
            if kind is None:
                self._tracked_kinds.pop(owner, None)
            else:
                self._tracked_kinds[owner] = kind

    def _interval_result(self, binding: Binding) -> ReconcileResult:
        if binding.refresh_interval <= 0:
            return ReconcileResult()
        return ReconcileResult(requeue_after=binding.refresh_interval)

    def _requeue_from_status(
        self, binding: Binding, status: dict[str, Any], now: datetime
    ) -> ReconcileResult:
        return requeue_result(binding.refresh_interval, parse_time(status.get("refreshTime")), now)

    def _mark_done(
        self,
        binding: Binding,
        status: dict[str, Any],
        start: datetime,
        reason: str,
        message: str,
    ) -> None:
        previous = get_condition(status, CONDITION_READY)
        set_condition(status, CONDITION_READY, "True", reason, message, self.now_fn())
        status["refreshTime"] = format_time(start)
        status["syncedResourceVersion"] = fingerprint(binding)
        self.metrics.set_condition(binding.namespace, binding.name, CONDITION_READY, "True")

        if previous is None or previous.get("status") != "True" or previous.get("reason") != reason:
            self.logger.info(
                "Reconciled SecretBinding %s/%s: %s", binding.namespace, binding.name, message
            )
        else:
            self.logger.debug(
                "Reconciled SecretBinding %s/%s: %s", binding.namespace, binding.name, message
            )

    def _mark_failed(
        self,
        binding: Binding,
        status: dict[str, Any],
        message: str,
        detail: str = "",
        reason: str = REASON_SYNCED_ERROR,
    ) -> None:
        set_condition(status, CONDITION_READY, "False", reason, message, self.now_fn())
        self.metrics.set_condition(binding.namespace, binding.name, CONDITION_READY, "False")
        self.metrics.sync_calls_errors_total.labels(
            name=binding.name, namespace=binding.namespace
        ).inc()
        self._local.error_counted = True
        if detail:
            self.logger.warning(
                "SecretBinding %s/%s: %s: %s", binding.namespace, binding.name, message, detail
            )
        else:
            self.logger.warning("SecretBinding %s/%s: %s", binding.namespace, binding.name, message)

    def _commit(self, state: GeneratorStateManager, binding: Binding) -> None:
        try:
            state.commit()
        except SecretSyncError:
            self.logger.exception(
                "Failed to commit generator state for %s/%s", binding.namespace, binding.name
            )

    def _rollback(self, state: GeneratorStateManager, binding: Binding) -> None:
        try:
            state.rollback()
        except SecretSyncError:
            self.logger.exception(
                "Failed to roll back generator state for %s/%s", binding.namespace, binding.name
            )

    def _flush_status(
        self,
        binding: Binding,
        status: dict[str, Any],
        before: dict[str, Any],
        failing: bool,
    ) -> bool:
        """Write *status* if it changed; return ``True`` on a write conflict."""
        if status == before:
            return False
        body = copy.deepcopy(binding.raw)
        body["status"] = status
        try:
            self.kube.update_status(body)
        except ApiException as exc:
            if exc.status == 409:
                self.logger.debug(
                    "Conflict updating status of %s/%s, requeueing", binding.namespace, binding.name
                )
                return True
            if failing:
                self.logger.exception(
                    "Failed to update status of %s/%s", binding.namespace, binding.name
                )
                return False
            raise
        return False

    def _write_invalid_status(self, obj: dict[str, Any], namespace: str, name: str) -> None:
        status = copy.deepcopy(obj.get("status") or {})
        before = copy.deepcopy(status)
        set_condition(
            status, CONDITION_READY, "False", REASON_SYNCED_ERROR, MSG_INVALID_SPEC, self.now_fn()
        )
        self.metrics.set_condition(namespace, name, CONDITION_READY, "False")
        self.metrics.sync_calls_errors_total.labels(name=name, namespace=namespace).inc()
        self._local.error_counted = True
        if status == before:
            return
        body = copy.deepcopy(obj)
        body["status"] = status
        try:
            self.kube.update_status(body)
        except ApiException as exc:
            if exc.status != 409:
                raise

