from __future__ import annotations

import secrets
import string
import uuid
from typing import Any, Protocol

from secretsync.src.errors import GeneratorError
from secretsync.src.keys import byte_value
from secretsync.src.resources import GeneratorRef

DEFAULT_SYMBOL_CHARACTERS = "~!@#$%^&*()_+`-={}|[]\\:\"<>?,./"


class Generator(Protocol):
    """Produces secret data from a generator resource.

    ``generate`` returns the data plus an opaque state, or ``None`` when the
    generator keeps no state worth persisting.
    """

    def generate(
        self, resource: dict[str, Any], kube: Any, namespace: str
    ) -> tuple[dict[str, bytes], dict[str, Any] | None]: ...

    def cleanup(
        self, resource: dict[str, Any], state: dict[str, Any] | None, kube: Any, namespace: str
    ) -> None: ...


class PasswordGenerator:
    def generate(
        self, resource: dict[str, Any], kube: Any, namespace: str
    ) -> tuple[dict[str, bytes], dict[str, Any] | None]:
        spec = resource.get("spec") or {}
        length = int(spec.get("length", 24))
        digits = int(spec.get("digits", 5))
        symbols = int(spec.get("symbols", 5))
        symbol_characters = spec.get("symbolCharacters") or DEFAULT_SYMBOL_CHARACTERS
        letters = string.ascii_lowercase if spec.get("noUpper") else string.ascii_letters
        allow_repeat = bool(spec.get("allowRepeat", False))

        if digits + symbols > length:
            raise GeneratorError("digits and symbols must not exceed the password length")

        pools = (
            [string.digits] * digits
            + [symbol_characters] * symbols
            + [letters] * (length - digits - symbols)
        )
        if not allow_repeat and len(set(letters + string.digits + symbol_characters)) < length:
            raise GeneratorError("not enough distinct characters for a password without repeats")

        chosen: list[str] = []
        for pool in pools:
            candidates = pool if allow_repeat else "".join(c for c in pool if c not in chosen)
            if not candidates:
                raise GeneratorError("not enough distinct characters for a password without repeats")
            chosen.append(secrets.choice(candidates))
        # Shuffle so digits and symbols are not always leading.
        for index in range(len(chosen) - 1, 0, -1):
            swap = secrets.randbelow(index + 1)
            chosen[index], chosen[swap] = chosen[swap], chosen[index]
        return {"password": "".join(chosen).encode("utf-8")}, None

    def cleanup(
        self, resource: dict[str, Any], state: dict[str, Any] | None, kube: Any, namespace: str
    ) -> None:
        return None


class UUIDGenerator:
    def generate(
        self, resource: dict[str, Any], kube: Any, namespace: str
    ) -> tuple[dict[str, bytes], dict[str, Any] | None]:
        return {"uuid": str(uuid.uuid4()).encode("utf-8")}, None

    def cleanup(
        self, resource: dict[str, Any], state: dict[str, Any] | None, kube: Any, namespace: str
    ) -> None:
        return None


class FakeGenerator:
    """Returns ``spec.data`` verbatim; ``spec.state`` makes it stateful."""

    def generate(
        self, resource: dict[str, Any], kube: Any, namespace: str
    ) -> tuple[dict[str, bytes], dict[str, Any] | None]:
        spec = resource.get("spec") or {}
        data = {key: byte_value(value) for key, value in (spec.get("data") or {}).items()}
        state = spec.get("state")
        return data, dict(state) if state else None

    def cleanup(
        self, resource: dict[str, Any], state: dict[str, Any] | None, kube: Any, namespace: str
    ) -> None:
        return None


GENERATORS: dict[str, Generator] = {
    "Password": PasswordGenerator(),
    "UUID": UUIDGenerator(),
    "Fake": FakeGenerator(),
}


def generator_for_kind(kind: str, registry: dict[str, Generator] | None = None) -> Generator:
    table = registry if registry is not None else GENERATORS
    generator = table.get(kind)
    if generator is None:
        raise GeneratorError(f"unsupported generator kind {kind!r}")
    return generator


def fetch_generator(kube: Any, ref: GeneratorRef, namespace: str) -> dict[str, Any] | None:
    return kube.get(ref.api_version, ref.kind, ref.name, namespace)


def resolve_generator(
    kube: Any,
    ref: GeneratorRef,
    namespace: str,
    registry: dict[str, Generator] | None = None,
) -> tuple[Generator, dict[str, Any]]:
    """Return the implementation and the resource behind *ref*."""
    generator = generator_for_kind(ref.kind, registry)
    resource = fetch_generator(kube, ref, namespace)
    if resource is None:
        raise GeneratorError(f"{ref.kind} {ref.name!r} not found")
    return generator, resource


def generator_class(resource: dict[str, Any]) -> str:
    return (resource.get("spec") or {}).get("controller") or ""
