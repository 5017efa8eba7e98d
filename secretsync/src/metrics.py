from __future__ import annotations

import threading
from dataclasses import dataclass, field

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Built per registry by :func:`build_metrics` so each reconciler (and each
    test) can own an isolated set of collectors.
    """

    registry: CollectorRegistry
    sync_calls_total: Counter
    sync_calls_errors_total: Counter
    reconcile_duration_seconds: Histogram
    binding_condition: Gauge
    provider_client_cache_total: Counter
    provider_clients_closed_total: Counter
    generator_states_total: Counter
    active_informers: Gauge
    queue_depth: Gauge
    watch_errors_total: Counter
    watch_reconnects_total: Counter
    build_info: Info
    _condition_labels: dict[tuple[str, str], set[tuple[str, str]]] = field(
        default_factory=dict, compare=False
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, compare=False)

    def set_condition(
        self, namespace: str, name: str, condition: str, status: str
    ) -> None:
        """Export one condition state for a binding, zeroing its other statuses."""
        key = (namespace, name)
        with self._lock:
            known = self._condition_labels.setdefault(key, set())
            for known_condition, known_status in known:
                if known_condition == condition and known_status != status:
                    self.binding_condition.labels(
                        name=name,
                        namespace=namespace,
                        condition=known_condition,
                        status=known_status,
                    ).set(0)
            known.add((condition, status))
            self.binding_condition.labels(
                name=name, namespace=namespace, condition=condition, status=status
            ).set(1)

    def forget_binding(self, namespace: str, name: str) -> None:
        """Drop every condition series of a deleted binding."""
        with self._lock:
            known = self._condition_labels.pop((namespace, name), set())
            for condition, status in known:
                self.binding_condition.remove(name, namespace, condition, status)


def build_metrics(registry: CollectorRegistry | None = None) -> ControllerMetrics:
    """Register the controller collectors on *registry* (the default registry if omitted)."""
    target = registry if registry is not None else REGISTRY
    return ControllerMetrics(
        registry=target,
        sync_calls_total=Counter(
            "secretsync_sync_calls_total",
            "Total reconciliations of SecretBindings",
            ["name", "namespace"],
            registry=target,
        ),
        sync_calls_errors_total=Counter(
            "secretsync_sync_calls_errors_total",
            "Total reconciliations of SecretBindings that ended in an error condition",
            ["name", "namespace"],
            registry=target,
        ),
        reconcile_duration_seconds=Histogram(
            "secretsync_reconcile_duration_seconds",
            "Seconds spent in a single SecretBinding reconciliation",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
            registry=target,
        ),
        binding_condition=Gauge(
            "secretsync_binding_status_condition",
            "Current condition of each SecretBinding (1 for the active status)",
            ["name", "namespace", "condition", "status"],
            registry=target,
        ),
        provider_client_cache_total=Counter(
            "secretsync_provider_client_cache_total",
            "Provider client lookups within a reconciliation pass",
            ["result"],
            registry=target,
        ),
        provider_clients_closed_total=Counter(
            "secretsync_provider_clients_closed_total",
            "Provider clients closed at the end of a reconciliation pass",
            registry=target,
        ),
        generator_states_total=Counter(
            "secretsync_generator_states_total",
            "Generator state transitions applied by commit, rollback and collection",
            ["operation"],
            registry=target,
        ),
        active_informers=Gauge(
            "secretsync_active_informers",
            "Watches currently running for non-Secret target kinds",
            registry=target,
        ),
        queue_depth=Gauge(
            "secretsync_queue_depth",
            "SecretBindings waiting in the work queue",
            registry=target,
        ),
        watch_errors_total=Counter(
            "secretsync_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
            registry=target,
        ),
        watch_reconnects_total=Counter(
            "secretsync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
            registry=target,
        ),
        build_info=Info(
            "secretsync",
            "Build information for the controller",
            registry=target,
        ),
    )
