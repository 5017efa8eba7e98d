from __future__ import annotations

import pytest

from secretsync.src.config import ControllerConfig, env_int, load_config, parse_bool
from secretsync.src.errors import ConfigError


def test_env_int_returns_default_when_not_set() -> None:
    assert env_int("WORKERS", 4, env={}) == 4


def test_env_int_parses_valid_integer() -> None:
    assert env_int("WORKERS", 4, env={"WORKERS": "8"}) == 8


def test_env_int_raises_on_non_numeric() -> None:
    with pytest.raises(ValueError, match="WORKERS must be an integer"):
        env_int("WORKERS", 4, env={"WORKERS": "many"})


def test_env_int_raises_on_empty_string() -> None:
    with pytest.raises(ValueError, match="WORKERS must be an integer"):
        env_int("WORKERS", 4, env={"WORKERS": ""})


def test_env_int_enforces_bounds() -> None:
    with pytest.raises(ValueError, match="WORKERS must be >= 1, got: 0"):
        env_int("WORKERS", 4, minimum=1, env={"WORKERS": "0"})
    with pytest.raises(ValueError, match="WORKERS must be <= 64, got: 65"):
        env_int("WORKERS", 4, maximum=64, env={"WORKERS": "65"})


def test_env_int_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HEALTH_PORT", "9090")
    assert env_int("HEALTH_PORT", 8080) == 9090


@pytest.mark.parametrize("value", ["true", "True", "TRUE", "1", "yes", "on", "  true  "])
def test_parse_bool_truthy_values(value: str) -> None:
    assert parse_bool(value) is True


@pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
def test_parse_bool_falsy_values(value: str) -> None:
    assert parse_bool(value, default=True) is False


def test_parse_bool_default_when_unset() -> None:
    assert parse_bool(None) is False
    assert parse_bool(None, default=True) is True


def test_load_config_defaults() -> None:
    assert load_config({}) == ControllerConfig()


def test_load_config_reads_every_setting() -> None:
    config = load_config(
        {
            "CONTROLLER_CLASS": "blue",
            "WATCH_NAMESPACE": "team-a",
            "WORKERS": "2",
            "REQUEUE_INTERVAL_SECONDS": "0",
            "ENABLE_CLUSTER_STORE": "false",
            "ENABLE_FLOODGATE": "false",
            "ALLOW_GENERIC_TARGETS": "true",
            "GENERATOR_GC_GRACE_SECONDS": "30",
            "GENERATOR_GC_INTERVAL_SECONDS": "5",
            "HEALTH_PORT": "9000",
            "LOG_LEVEL": "debug",
        }
    )

    assert config == ControllerConfig(
        controller_class="blue",
        watch_namespace="team-a",
        workers=2,
        requeue_interval=0,
        cluster_store_enabled=False,
        enable_floodgate=False,
        allow_generic_targets=True,
        gc_grace_seconds=30,
        gc_interval_seconds=5,
        health_port=9000,
        log_level="DEBUG",
    )


def test_load_config_blank_namespace_watches_all() -> None:
    assert load_config({"WATCH_NAMESPACE": "  "}).watch_namespace is None


def test_load_config_rejects_bad_values() -> None:
    with pytest.raises(ConfigError, match="LOG_LEVEL must be a standard level name"):
        load_config({"LOG_LEVEL": "chatty"})
    with pytest.raises(ConfigError, match="CONTROLLER_CLASS"):
        load_config({"CONTROLLER_CLASS": "   "})
    with pytest.raises(ValueError, match="HEALTH_PORT must be <= 65535, got: 70000"):
        load_config({"HEALTH_PORT": "70000"})
    with pytest.raises(ValueError, match="GENERATOR_GC_INTERVAL_SECONDS must be >= 1, got: 0"):
        load_config({"GENERATOR_GC_INTERVAL_SECONDS": "0"})
