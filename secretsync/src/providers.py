from __future__ import annotations

import json
import re
from typing import Any, Protocol

from secretsync.src.errors import ConfigError, NoSecretError, ProviderError
from secretsync.src.keys import byte_value
from secretsync.src.resources import FindSpec, RemoteRef


class SecretsClient(Protocol):
    """Capability every backend client exposes to the aggregation pipeline."""

    def get_secret(self, ref: RemoteRef) -> bytes: ...

    def get_secret_map(self, ref: RemoteRef) -> dict[str, bytes]: ...

    def get_all_secrets(self, find: FindSpec) -> dict[str, bytes]: ...

    def close(self) -> None: ...


class Provider(Protocol):
    def validate_store(self, store: dict[str, Any]) -> None: ...

    def new_client(self, store: dict[str, Any], kube: Any, namespace: str) -> SecretsClient: ...


def provider_name(store: dict[str, Any]) -> str:
    """Return the single key under ``spec.provider`` that selects the backend."""
    provider = (store.get("spec") or {}).get("provider") or {}
    if len(provider) != 1:
        raise ConfigError(
            f"store {store.get('metadata', {}).get('name')!r} must configure exactly one provider"
        )
    return next(iter(provider))


def lookup_property(value: bytes, prop: str) -> bytes:
    """Read a dotted *prop* path out of a JSON document."""
    try:
        document = json.loads(value)
    except ValueError as exc:
        raise ProviderError(f"value is not JSON, cannot read property {prop!r}") from exc
    current: Any = document
    for part in prop.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise ProviderError(f"property {prop!r} does not exist")
    return byte_value(current)


class FakeClient:
    """Serves static entries declared on the store itself."""

    def __init__(self, entries: list[dict[str, Any]]) -> None:
        self.entries = entries
        self.closed = False

    def _find_entry(self, key: str, version: str) -> dict[str, Any]:
        match: dict[str, Any] | None = None
        for entry in self.entries:
            if entry.get("key") != key:
                continue
            if version and str(entry.get("version") or "") != version:
                continue
            match = entry
        if match is None:
            raise NoSecretError(f"secret {key!r} not found")
        return match

    @staticmethod
    def _entry_value(entry: dict[str, Any]) -> bytes:
        if "valueMap" in entry:
            return json.dumps(entry["valueMap"], sort_keys=True).encode("utf-8")
        return str(entry.get("value", "")).encode("utf-8")

    def get_secret(self, ref: RemoteRef) -> bytes:
        value = self._entry_value(self._find_entry(ref.key, ref.version))
        if ref.property:
            return lookup_property(value, ref.property)
        return value

    def get_secret_map(self, ref: RemoteRef) -> dict[str, bytes]:
        raw = self.get_secret(ref)
        try:
            document = json.loads(raw)
        except ValueError as exc:
            raise ProviderError(f"secret {ref.key!r} is not a JSON object") from exc
        if not isinstance(document, dict):
            raise ProviderError(f"secret {ref.key!r} is not a JSON object")
        return {key: byte_value(value) for key, value in document.items()}

    def get_all_secrets(self, find: FindSpec) -> dict[str, bytes]:
        if find.tags:
            raise ProviderError("find by tags is not supported by the fake provider")
        pattern = re.compile(find.name_regexp) if find.name_regexp else None
        out: dict[str, bytes] = {}
        for entry in self.entries:
            key = str(entry.get("key", ""))
            if find.path and not key.startswith(find.path):
                continue
            if pattern is not None and pattern.search(key) is None:
                continue
            out[key] = self._entry_value(entry)
        if not out:
            raise NoSecretError("no secrets found")
        return out

    def close(self) -> None:
        self.closed = True


class FakeProvider:
    def validate_store(self, store: dict[str, Any]) -> None:
        config = store["spec"]["provider"]["fake"] or {}
        for entry in config.get("data") or ():
            if not entry.get("key"):
                raise ConfigError("fake provider entries require a key")

    def new_client(self, store: dict[str, Any], kube: Any, namespace: str) -> SecretsClient:
        config = store["spec"]["provider"]["fake"] or {}
        return FakeClient(list(config.get("data") or ()))


PROVIDERS: dict[str, Provider] = {
    "fake": FakeProvider(),
}
