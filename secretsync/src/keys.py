from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from secretsync.src.errors import ConfigError, InvalidKeysError, TemplateError
from secretsync.src.resources import MergeRewrite, RegexpRewrite, Rewrite, TransformRewrite
from secretsync.src.templating import render_text

LOGGER = logging.getLogger(__name__)

MAX_KEY_LENGTH = 253

DECODING_NONE = "None"
DECODING_BASE64 = "Base64"
DECODING_BASE64URL = "Base64URL"
DECODING_AUTO = "Auto"

CONVERSION_DEFAULT = "Default"
CONVERSION_UNICODE = "Unicode"


def _jsonable(value: Any) -> Any:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_jsonable(v) for v in value]
        return sorted(items, key=str) if isinstance(value, (set, frozenset)) else items
    return value


def object_hash(value: Any) -> str:
    """Return a SHA3-224 hex digest of *value*'s stable JSON encoding.

    Bytes are base64 encoded and mapping keys sorted, so equal payloads always
    hash equally regardless of insertion order.
    """
    stable_payload = json.dumps(_jsonable(value), sort_keys=True, separators=(",", ":"))
    return hashlib.sha3_224(stable_payload.encode("utf-8")).hexdigest()


_VALID_KEY_CHAR = re.compile(r"[A-Za-z0-9._-]")


def _is_valid_key_char(char: str) -> bool:
    return _VALID_KEY_CHAR.fullmatch(char) is not None


def decode(strategy: str, value: bytes) -> bytes:
    if strategy in {DECODING_NONE, ""}:
        return value
    if strategy == DECODING_BASE64:
        return base64.b64decode(value, validate=True)
    if strategy == DECODING_BASE64URL:
        return base64.urlsafe_b64decode(_strict_urlsafe(value))
    if strategy == DECODING_AUTO:
        for candidate in (DECODING_BASE64, DECODING_BASE64URL):
            try:
                return decode(candidate, value)
            except (binascii.Error, ValueError):
                continue
        return value
    raise ConfigError(f"decoding strategy {strategy!r} is not supported")


def _strict_urlsafe(value: bytes) -> bytes:
    if re.fullmatch(rb"[A-Za-z0-9_\-]*={0,2}", value) is None or len(value) % 4:
        raise binascii.Error("invalid base64url input")
    return value


def decode_map(strategy: str, data: Mapping[str, bytes]) -> dict[str, bytes]:
    out: dict[str, bytes] = {}
    for key, value in data.items():
        try:
            out[key] = decode(strategy, value)
        except (binascii.Error, ValueError) as exc:
            raise ConfigError(f"failure decoding key {key}: {exc}") from exc
    return out


def convert_key(strategy: str, key: str) -> str:
    parts: list[str] = []
    for char in key:
        if _is_valid_key_char(char):
            parts.append(char)
        elif strategy == CONVERSION_DEFAULT:
            parts.append("_")
        elif strategy == CONVERSION_UNICODE:
            parts.append(f"_U{ord(char):04x}_")
        else:
            parts.append(char)
    return "".join(parts)


def convert_keys(strategy: str, data: Mapping[str, bytes]) -> dict[str, bytes]:
    """Replace invalid key characters according to *strategy*.

    Raises :class:`InvalidKeysError` when two source keys collapse onto the
    same converted key.
    """
    out: dict[str, bytes] = {}
    for key, value in data.items():
        converted = convert_key(strategy, key)
        if converted in out:
            raise InvalidKeysError(f"secret name collision during conversion: {converted}")
        out[converted] = value
    return out


def validate_keys(data: dict[str, bytes]) -> None:
    """Drop empty keys in place and fail on keys a Secret cannot hold."""
    for key in list(data):
        if not key:
            del data[key]
            LOGGER.debug("Dropped empty key from secret output")
            continue
        if len(key) > MAX_KEY_LENGTH:
            raise InvalidKeysError(
                f"key has length {len(key)} but max is {MAX_KEY_LENGTH}: "
                f"(following is truncated): {key[:MAX_KEY_LENGTH]}"
            )
        for char in key:
            if not _is_valid_key_char(char):
                raise InvalidKeysError(
                    f"key has invalid character {char!r}, only alphanumeric, "
                    f"'-', '.' and '_' are allowed: {key}"
                )


def byte_value(value: Any) -> bytes:
    """Convert a decoded JSON value into the bytes stored in a secret."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    if value is None:
        return b""
    if isinstance(value, bool):
        return b"true" if value else b"false"
    if isinstance(value, (int, float)):
        return json.dumps(value).encode("utf-8")
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":")).encode("utf-8")
    raise ConfigError(f"can not handle secret value with type {type(value).__name__}")


# ---------------------------------------------------------------------------
# Rewrite rules
# ---------------------------------------------------------------------------

_GROUP_REFERENCE = re.compile(r"\$(?:(\$)|\{(\w+)\}|(\w+))")


def expand_replacement(target: str, match: re.Match[str]) -> str:
    """Expand ``$1``, ``${name}`` and ``$$`` in *target* against *match*.

    A reference to a group the pattern does not have expands to ``""``, and
    ``$1x`` names the group ``1x`` rather than group ``1``.
    """

    def _reference(ref: re.Match[str]) -> str:
        if ref.group(1):
            return "$"
        name = ref.group(2) or ref.group(3)
        try:
            value = match.group(int(name) if name.isdigit() else name)
        except IndexError:
            return ""
        return value or ""

    return _GROUP_REFERENCE.sub(_reference, target)


def rewrite_regexp(rule: RegexpRewrite, data: Mapping[str, bytes]) -> dict[str, bytes]:
    try:
        pattern = re.compile(rule.source)
    except re.error as exc:
        raise ConfigError(f"regexp failed with failed to compile: {exc}") from exc
    return {
        pattern.sub(lambda match: expand_replacement(rule.target, match), key): value
        for key, value in data.items()
    }


def rewrite_transform(rule: TransformRewrite, data: Mapping[str, bytes]) -> dict[str, bytes]:
    return {render_text(rule.template, {"value": key}): value for key, value in data.items()}


def rewrite_merge(rule: MergeRewrite, data: Mapping[str, bytes]) -> dict[str, bytes]:
    """Merge JSON-object values into one map.

    Keys listed in ``priority`` are merged last, in their listed order, so
    their fields win. Overlapping fields are an error unless
    ``conflictPolicy`` is ``Ignore``.
    """
    ordered = sorted(key for key in data if key not in rule.priority)
    ordered.extend(rule.priority)

    merged: dict[str, Any] = {}
    conflicts: list[str] = []
    for key in ordered:
        if key not in data:
            if rule.priority_policy == "IgnoreNotFound":
                continue
            raise ConfigError(f"merge failed with key {key!r} not found in input map")
        try:
            parsed = json.loads(data[key])
        except ValueError as exc:
            raise ConfigError(f"merge failed with failed to unmarshal JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigError(f"merge failed with value of {key!r} not being a JSON object")
        for field_name, field_value in parsed.items():
            if field_name in merged:
                conflicts.append(field_name)
            merged[field_name] = field_value

    if conflicts and rule.conflict_policy != "Ignore":
        raise ConfigError(f"merge failed with conflicts: {', '.join(conflicts)}")

    if rule.strategy == "JSON":
        if not rule.into:
            raise ConfigError("merge failed with missing 'into' field")
        out = dict(data)
        out[rule.into] = json.dumps(merged, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return out
    return {key: byte_value(value) for key, value in merged.items()}


def rewrite_map(rules: Sequence[Rewrite], data: Mapping[str, bytes]) -> dict[str, bytes]:
    out = dict(data)
    for index, rule in enumerate(rules):
        try:
            if rule.merge is not None:
                out = rewrite_merge(rule.merge, out)
            elif rule.regexp is not None:
                out = rewrite_regexp(rule.regexp, out)
            elif rule.transform is not None:
                out = rewrite_transform(rule.transform, out)
        except (ConfigError, TemplateError) as exc:
            raise ConfigError(f"failed rewrite operation[{index}]: {exc}") from exc
    return out
