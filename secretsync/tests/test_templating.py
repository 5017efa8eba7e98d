from __future__ import annotations

import base64

import pytest

from secretsync.src.errors import TemplateError
from secretsync.src.resources import Template, TemplateFrom, TemplateRef, TemplateRefItem
from secretsync.src.templating import (
    Draft,
    OwnedFields,
    TemplateRenderer,
    engine_for_version,
    render_text,
)
from secretsync.tests.fakes import FakeKube


def _renderer(*objects: dict) -> TemplateRenderer:
    return TemplateRenderer(FakeKube(list(objects)), "default")


def test_render_text_exposes_keys_and_filters() -> None:
    values = {"user": "admin", "tls.crt": "CERT"}

    assert render_text("{{ user }}-foo", values) == "admin-foo"
    assert render_text('{{ data["tls.crt"] }}', values) == "CERT"
    assert render_text("{{ user | b64enc }}", values) == base64.b64encode(b"admin").decode()
    assert render_text('{{ (doc | fromjson).port }}', {"doc": '{"port": 5432}'}) == "5432"


def test_render_text_undefined_variable_is_an_error() -> None:
    with pytest.raises(TemplateError, match="unable to render template"):
        render_text("{{ missing }}", {})


@pytest.mark.parametrize(
    ("template", "value"),
    [
        ("{{ value | b64dec }}", "abc"),
        ("{{ value | fromjson }}", "{not json"),
        ("{{ value | b64enc }}", 42),
    ],
)
def test_render_text_filter_failures_are_template_errors(template: str, value: object) -> None:
    with pytest.raises(TemplateError, match="unable to render template"):
        render_text(template, {"value": value})


def test_unknown_engine_version() -> None:
    with pytest.raises(TemplateError, match="unsupported template engine version"):
        engine_for_version("v0")


def test_no_template_copies_data_verbatim() -> None:
    draft = Draft(data={"stale": b"x"})

    _renderer().apply(None, draft, {"a": b"1", "b": b"\xff"}, OwnedFields(data=frozenset({"stale"})))

    assert draft.data == {"a": b"1", "b": b"\xff"}


def test_template_data_replaces_aggregated_data() -> None:
    template = Template(data={"key": "{{ targetProperty }}-foo"}, type="kubernetes.io/basic-auth")
    draft = Draft()

    _renderer().apply(template, draft, {"targetProperty": b"someValue"}, OwnedFields())

    assert draft.data == {"key": b"someValue-foo"}
    assert draft.type == "kubernetes.io/basic-auth"


def test_merge_policy_keeps_aggregated_data_alongside_template() -> None:
    template = Template(merge_policy="Merge", data={"url": "postgres://{{ user }}@db"})
    draft = Draft()

    _renderer().apply(template, draft, {"user": b"admin"}, OwnedFields())

    assert draft.data == {"user": b"admin", "url": b"postgres://admin@db"}


def test_owned_keys_are_removed_before_rendering() -> None:
    draft = Draft(
        labels={"mine": "1", "theirs": "2"},
        annotations={"note": "keep"},
        data={"key": b"old", "foreign": b"f"},
    )
    owned = OwnedFields(data=frozenset({"key"}), labels=frozenset({"mine"}))

    _renderer().apply(Template(data={"other": "{{ v }}"}), draft, {"v": b"1"}, owned)

    assert draft.data == {"foreign": b"f", "other": b"1"}
    assert draft.labels == {"theirs": "2"}
    assert draft.annotations == {"note": "keep"}


def test_template_metadata_is_rendered() -> None:
    template = Template(labels={"team": "{{ team }}"}, annotations={"owner": "x-{{ team }}"})
    draft = Draft()

    _renderer().apply(template, draft, {"team": b"payments"}, OwnedFields())

    assert draft.labels == {"team": "payments"}
    assert draft.annotations == {"owner": "x-payments"}
    assert draft.data == {"team": b"payments"}


def test_template_from_config_map_values_and_keys_and_values() -> None:
    config_map = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "tpl", "namespace": "default"},
        "data": {
            "config.yaml": "user: {{ user }}",
            "pairs": "first: {{ user }}\nsecond: 2",
        },
    }
    template = Template(
        template_from=(
            TemplateFrom(
                config_map=TemplateRef(
                    name="tpl",
                    items=(
                        TemplateRefItem(key="config.yaml"),
                        TemplateRefItem(key="pairs", template_as="KeysAndValues"),
                    ),
                )
            ),
        )
    )
    draft = Draft()

    _renderer(config_map).apply(template, draft, {"user": b"admin"}, OwnedFields())

    assert draft.data == {"config.yaml": b"user: admin", "first": b"admin", "second": b"2"}


def test_template_from_secret_into_labels() -> None:
    secret = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "tpl", "namespace": "default"},
        "data": {"tier": base64.b64encode(b"{{ tier }}").decode()},
    }
    template = Template(
        template_from=(
            TemplateFrom(
                secret=TemplateRef(name="tpl", items=(TemplateRefItem(key="tier"),)),
                target="Labels",
            ),
        )
    )
    draft = Draft()

    _renderer(secret).apply(template, draft, {"tier": b"gold"}, OwnedFields())

    assert draft.labels == {"tier": "gold"}
    assert draft.data == {}


def test_template_from_literal_must_render_a_mapping() -> None:
    template = Template(template_from=(TemplateFrom(literal="- {{ a }}"),))

    with pytest.raises(TemplateError, match="must be a mapping"):
        _renderer().apply(template, Draft(), {"a": b"1"}, OwnedFields())


def test_template_from_missing_config_map() -> None:
    template = Template(template_from=(TemplateFrom(config_map=TemplateRef(name="nope")),))

    with pytest.raises(TemplateError, match="not found"):
        _renderer().apply(template, Draft(), {}, OwnedFields())


def test_template_literal_data_wins_over_template_from() -> None:
    template = Template(
        data={"a": "literal"},
        template_from=(TemplateFrom(literal="a: from-template\nb: kept"),),
    )
    draft = Draft()

    _renderer().apply(template, draft, {}, OwnedFields())

    assert draft.data == {"a": b"literal", "b": b"kept"}
