from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from secretsync.src.errors import ConfigError


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        controller_class:        Stores and generators with another ``spec.controller`` are ignored.
        watch_namespace:         Restrict every watch to this namespace; ``None`` watches all.
        workers:                 Number of concurrent reconciliations.
        requeue_interval:        Refresh interval (seconds) for bindings that omit one.
        cluster_store_enabled:   Whether ClusterSecretStore references are honoured.
        enable_floodgate:        Treat stores without ``Ready=True`` as not ready.
        allow_generic_targets:   Allow ``target.manifest`` to name non-Secret kinds.
        gc_grace_seconds:        Delay before flagged generator states are collected.
        gc_interval_seconds:     Period of the generator state collector.
        health_port:             Port of the health and metrics server.
        log_level:               Root log level name.
    """

    controller_class: str = "default"
    watch_namespace: str | None = None
    workers: int = 4
    requeue_interval: int = 3600
    cluster_store_enabled: bool = True
    enable_floodgate: bool = True
    allow_generic_targets: bool = False
    gc_grace_seconds: int = 120
    gc_interval_seconds: int = 60
    health_port: int = 8080
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Integer settings are range checked by :func:`env_int` (``ValueError``);
    an unknown ``LOG_LEVEL`` raises :class:`ConfigError`.
    """
    values = env if env is not None else os.environ

    controller_class = (values.get("CONTROLLER_CLASS") or "default").strip()
    if not controller_class:
        raise ConfigError("CONTROLLER_CLASS must be a non-empty string")

    log_level = (values.get("LOG_LEVEL") or "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"LOG_LEVEL must be a standard level name, got: {log_level!r}")

    return ControllerConfig(
        controller_class=controller_class,
        watch_namespace=(values.get("WATCH_NAMESPACE") or "").strip() or None,
        workers=env_int("WORKERS", 4, minimum=1, maximum=64, env=values),
        requeue_interval=env_int("REQUEUE_INTERVAL_SECONDS", 3600, minimum=0, env=values),
        cluster_store_enabled=parse_bool(values.get("ENABLE_CLUSTER_STORE"), default=True),
        enable_floodgate=parse_bool(values.get("ENABLE_FLOODGATE"), default=True),
        allow_generic_targets=parse_bool(values.get("ALLOW_GENERIC_TARGETS"), default=False),
        gc_grace_seconds=env_int("GENERATOR_GC_GRACE_SECONDS", 120, minimum=0, env=values),
        gc_interval_seconds=env_int("GENERATOR_GC_INTERVAL_SECONDS", 60, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=log_level,
    )
