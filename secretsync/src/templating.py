from __future__ import annotations

import base64
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import yaml
from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment

from secretsync.src.errors import TemplateError
from secretsync.src.resources import (
    MERGE_POLICY_MERGE,
    TEMPLATE_SCOPE_KEYS_AND_VALUES,
    TEMPLATE_TARGET_ANNOTATIONS,
    TEMPLATE_TARGET_DATA,
    TEMPLATE_TARGET_LABELS,
    Template,
    TemplateFrom,
    TemplateRef,
)

LOGGER = logging.getLogger(__name__)


def _b64enc(value: str | bytes) -> str:
    raw = value.encode("utf-8", "surrogateescape") if isinstance(value, str) else value
    return base64.b64encode(raw).decode("ascii")


def _b64dec(value: str) -> str:
    return base64.b64decode(value).decode("utf-8", "surrogateescape")


def _to_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def to_text(value: bytes) -> str:
    """Decode secret bytes for use in templates without losing non-UTF-8 bytes."""
    return value.decode("utf-8", "surrogateescape")


def to_bytes(value: str) -> bytes:
    return value.encode("utf-8", "surrogateescape")


class TemplateEngine(Protocol):
    def render(self, template: str, values: Mapping[str, Any]) -> str: ...


class JinjaEngine:
    """Sandboxed Jinja2 rendering with strict undefined handling.

    Every aggregated key is exposed as a top-level variable. Keys that are not
    valid identifiers can be read through the ``data`` mapping, for example
    ``{{ data["tls.crt"] }}``.
    """

    def __init__(self) -> None:
        self.environment = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.environment.filters["b64enc"] = _b64enc
        self.environment.filters["b64dec"] = _b64dec
        self.environment.filters["fromjson"] = json.loads
        self.environment.filters["tojson"] = _to_json

    def render(self, template: str, values: Mapping[str, Any]) -> str:
        context = {"data": dict(values), **values}
        try:
            return self.environment.from_string(template).render(context)
        except (JinjaTemplateError, ValueError, TypeError) as exc:
            raise TemplateError(f"unable to render template: {exc}") from exc


TEMPLATE_ENGINES: dict[str, type[JinjaEngine]] = {
    "v2": JinjaEngine,
}

_ENGINE_CACHE: dict[str, TemplateEngine] = {}


def engine_for_version(version: str) -> TemplateEngine:
    """Return the shared engine registered for *version*."""
    engine = _ENGINE_CACHE.get(version)
    if engine is None:
        engine_class = TEMPLATE_ENGINES.get(version)
        if engine_class is None:
            raise TemplateError(f"unsupported template engine version {version!r}")
        engine = engine_class()
        _ENGINE_CACHE[version] = engine
    return engine


def render_text(template: str, values: Mapping[str, Any], version: str = "v2") -> str:
    return engine_for_version(version).render(template, values)


@dataclass
class Draft:
    """The mutable payload and metadata of a target resource being rendered."""

    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    data: dict[str, bytes] = field(default_factory=dict)
    type: str = ""


@dataclass(frozen=True)
class OwnedFields:
    """Keys last written by one field manager, read from ``managedFields``."""

    data: frozenset[str] = frozenset()
    labels: frozenset[str] = frozenset()
    annotations: frozenset[str] = frozenset()


class ObjectReader(Protocol):
    def get(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None: ...


class TemplateRenderer:
    """Renders a binding's template into a :class:`Draft`.

    Precedence, lowest to highest: aggregated data (only when the template has
    no entries at all), ``templateFrom`` entries in declaration order, then the
    literal ``data`` entries. Labels and annotations from
    ``template.metadata`` are rendered last.
    """

    def __init__(self, kube: ObjectReader, namespace: str) -> None:
        self.kube = kube
        self.namespace = namespace

    def apply(
        self,
        template: Template | None,
        draft: Draft,
        data: Mapping[str, bytes],
        owned: OwnedFields,
    ) -> None:
        for key in owned.data:
            draft.data.pop(key, None)
        for key in owned.labels:
            draft.labels.pop(key, None)
        for key in owned.annotations:
            draft.annotations.pop(key, None)

        if template is None:
            draft.data.update(data)
            return

        if template.merge_policy == MERGE_POLICY_MERGE:
            draft.data.update(data)
        if template.type:
            draft.type = template.type

        engine = engine_for_version(template.engine_version)
        values = {key: to_text(value) for key, value in data.items()}

        for template_from in template.template_from:
            self._apply_template_from(engine, template_from, draft, values)

        for key, source in template.data.items():
            draft.data[key] = to_bytes(engine.render(source, values))
        for key, source in template.labels.items():
            draft.labels[key] = engine.render(source, values)
        for key, source in template.annotations.items():
            draft.annotations[key] = engine.render(source, values)

        if not template.data and not template.template_from:
            draft.data.update(data)

    def _apply_template_from(
        self,
        engine: TemplateEngine,
        template_from: TemplateFrom,
        draft: Draft,
        values: Mapping[str, str],
    ) -> None:
        rendered: dict[str, str] = {}
        if template_from.config_map is not None:
            sources = self._config_map_templates(template_from.config_map)
            rendered.update(self._render_items(engine, template_from.config_map, sources, values))
        if template_from.secret is not None:
            sources = self._secret_templates(template_from.secret)
            rendered.update(self._render_items(engine, template_from.secret, sources, values))
        if template_from.literal is not None:
            rendered.update(_parse_key_values(engine.render(template_from.literal, values)))

        if template_from.target == TEMPLATE_TARGET_DATA:
            draft.data.update({key: to_bytes(value) for key, value in rendered.items()})
        elif template_from.target == TEMPLATE_TARGET_LABELS:
            draft.labels.update(rendered)
        elif template_from.target == TEMPLATE_TARGET_ANNOTATIONS:
            draft.annotations.update(rendered)
        else:
            raise TemplateError(f"unsupported templateFrom target {template_from.target!r}")

    @staticmethod
    def _render_items(
        engine: TemplateEngine,
        ref: TemplateRef,
        sources: Mapping[str, str],
        values: Mapping[str, str],
    ) -> dict[str, str]:
        out: dict[str, str] = {}
        for item in ref.items:
            source = sources.get(item.key)
            if source is None:
                raise TemplateError(f"template key {item.key!r} not found in {ref.name!r}")
            output = engine.render(source, values)
            if item.template_as == TEMPLATE_SCOPE_KEYS_AND_VALUES:
                out.update(_parse_key_values(output))
            else:
                out[item.key] = output
        return out

    def _config_map_templates(self, ref: TemplateRef) -> dict[str, str]:
        obj = self.kube.get("v1", "ConfigMap", ref.name, self.namespace)
        if obj is None:
            raise TemplateError(f"template configmap {ref.name!r} not found")
        return dict(obj.get("data") or {})

    def _secret_templates(self, ref: TemplateRef) -> dict[str, str]:
        obj = self.kube.get("v1", "Secret", ref.name, self.namespace)
        if obj is None:
            raise TemplateError(f"template secret {ref.name!r} not found")
        return {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (obj.get("data") or {}).items()
        }


def _parse_key_values(output: str) -> dict[str, str]:
    """Parse template output that must be a YAML mapping of string keys."""
    try:
        parsed = yaml.safe_load(output)
    except yaml.YAMLError as exc:
        raise TemplateError(f"template output is not valid YAML: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise TemplateError("template output must be a mapping")
    out: dict[str, str] = {}
    for key, value in parsed.items():
        if isinstance(value, (dict, list)):
            out[str(key)] = json.dumps(value, sort_keys=True)
        elif isinstance(value, bool):
            out[str(key)] = "true" if value else "false"
        elif value is None:
            out[str(key)] = ""
        else:
            out[str(key)] = str(value)
    return out
