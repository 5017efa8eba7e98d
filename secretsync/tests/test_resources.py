from __future__ import annotations

from datetime import UTC, datetime

import pytest

from secretsync.src.errors import ConfigError
from secretsync.src.resources import (
    CLUSTER_STORE_KIND,
    CREATION_POLICY_OWNER,
    DELETION_POLICY_RETAIN,
    Binding,
    StoreInfo,
    format_time,
    get_condition,
    parse_duration,
    parse_time,
    set_condition,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1h", 3600.0),
        ("15m", 900.0),
        ("1h30m", 5400.0),
        ("45s", 45.0),
        ("500ms", 0.5),
        ("0", 0.0),
        (30, 30.0),
    ],
)
def test_parse_duration(raw: str | int, expected: float) -> None:
    assert parse_duration(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_parse_duration_unset(raw: str | None) -> None:
    assert parse_duration(raw) is None


@pytest.mark.parametrize("raw", ["1d", "abc", "1h foo", "h1"])
def test_parse_duration_rejects_garbage(raw: str) -> None:
    with pytest.raises(ConfigError, match="invalid duration"):
        parse_duration(raw)


def test_format_and_parse_time_round_trip() -> None:
    moment = datetime(2026, 3, 4, 5, 6, 7, 890, tzinfo=UTC)

    text = format_time(moment)

    assert text == "2026-03-04T05:06:07Z"
    assert parse_time(text) == moment.replace(microsecond=0)
    assert parse_time(None) is None


def test_binding_defaults() -> None:
    binding = Binding.from_dict(
        {
            "metadata": {"name": "app", "namespace": "team-a", "uid": "u1", "generation": 3},
            "spec": {"secretStoreRef": {"name": "vault"}},
        },
        default_refresh_interval=120.0,
    )

    assert binding.target.name == "app"
    assert binding.target.creation_policy == CREATION_POLICY_OWNER
    assert binding.target.deletion_policy == DELETION_POLICY_RETAIN
    assert binding.target.is_secret
    assert binding.refresh_interval == 120.0
    assert binding.generation == 3
    assert binding.store_ref is not None and binding.store_ref.kind == "SecretStore"
    assert binding.field_owner == "secretsync/app"


def test_binding_parses_data_and_data_from() -> None:
    binding = Binding.from_dict(
        {
            "metadata": {"name": "app", "namespace": "default"},
            "spec": {
                "refreshInterval": "0",
                "target": {"name": "out", "manifest": {"apiVersion": "v1", "kind": "ConfigMap"}},
                "data": [
                    {
                        "secretKey": "targetProperty",
                        "remoteRef": {"key": "barz", "property": "bang"},
                        "sourceRef": {"storeRef": {"name": "global", "kind": CLUSTER_STORE_KIND}},
                    }
                ],
                "dataFrom": [
                    {"find": {"name": {"regexp": "^db-"}}, "rewrite": [{"regexp": {"source": "^db-", "target": ""}}]},
                    {"sourceRef": {"generatorRef": {"kind": "Password", "name": "pw"}}},
                ],
            },
        }
    )

    assert binding.refresh_interval == 0.0
    assert binding.target.kind == "ConfigMap"
    assert not binding.target.is_secret
    data_ref = binding.data[0]
    assert data_ref.remote_ref.property == "bang"
    assert data_ref.source_ref is not None
    assert data_ref.source_ref.store_ref is not None
    assert data_ref.source_ref.store_ref.kind == CLUSTER_STORE_KIND
    assert binding.data_from[0].find is not None
    assert binding.data_from[0].find.name_regexp == "^db-"
    assert binding.data_from[0].rewrite[0].regexp is not None
    assert binding.data_from[1].generator_ref is not None
    assert binding.data_from[1].generator_ref.kind == "Password"


@pytest.mark.parametrize(
    "spec",
    [
        {"target": {"creationPolicy": "Sometimes"}},
        {"target": {"deletionPolicy": "Never"}},
        {"target": {"manifest": {"kind": "ConfigMap"}}},
        {"data": [{"secretKey": "a"}]},
        {"dataFrom": [{"rewrite": []}]},
        {"secretStoreRef": {"name": "x", "kind": "Vault"}},
        {"refreshInterval": "soon"},
    ],
)
def test_binding_rejects_invalid_spec(spec: dict) -> None:
    with pytest.raises(ConfigError):
        Binding.from_dict({"metadata": {"name": "app", "namespace": "default"}, "spec": spec})


def test_set_condition_keeps_transition_time_when_status_unchanged() -> None:
    status: dict = {}
    first = datetime(2026, 1, 1, tzinfo=UTC)
    later = datetime(2026, 1, 2, tzinfo=UTC)

    set_condition(status, "Ready", "True", "SecretSynced", "secret synced", first)
    set_condition(status, "Ready", "True", "SecretSynced", "again", later)

    condition = get_condition(status, "Ready")
    assert condition is not None
    assert condition["lastTransitionTime"] == "2026-01-01T00:00:00Z"
    assert condition["message"] == "again"
    assert len(status["conditions"]) == 1

    set_condition(status, "Ready", "False", "SecretSyncedError", "boom", later)
    condition = get_condition(status, "Ready")
    assert condition is not None
    assert condition["lastTransitionTime"] == "2026-01-02T00:00:00Z"


def test_store_info_status_entry() -> None:
    info = StoreInfo(kind="SecretStore", name="vault")
    assert info.to_status() == {"kind": "SecretStore", "name": "vault"}

    info.listed_keys.update({"b": False, "a": True})
    info.found_keys.update({"z", "y"})

    assert info.to_status() == {
        "kind": "SecretStore",
        "name": "vault",
        "listedKeys": {"a": True, "b": False},
        "foundKeys": ["y", "z"],
    }
