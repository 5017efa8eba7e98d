from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from secretsync.src.errors import ConfigError

GROUP = "secretsync.io"
API_VERSION = f"{GROUP}/v1"
BINDING_KIND = "SecretBinding"
STORE_KIND = "SecretStore"
CLUSTER_STORE_KIND = "ClusterSecretStore"

GENERATOR_GROUP = "generators.secretsync.io"
GENERATOR_API_VERSION = f"{GENERATOR_GROUP}/v1alpha1"
GENERATOR_STATE_KIND = "GeneratorState"

LABEL_MANAGED = f"{GROUP}/managed"
LABEL_MANAGED_VALUE = "true"
LABEL_OWNER = f"{GROUP}/owner"
ANNOTATION_DATA_HASH = f"{GROUP}/data-hash"
LABEL_GENERATOR_OWNER_KEY = f"{GENERATOR_GROUP}/owner-key"
FIELD_OWNER_PREFIX = "secretsync"

CONDITION_READY = "Ready"
REASON_SYNCED = "SecretSynced"
REASON_SYNCED_ERROR = "SecretSyncedError"
REASON_DELETED = "SecretDeleted"
REASON_MISSING = "SecretMissing"

CREATION_POLICY_OWNER = "Owner"
CREATION_POLICY_ORPHAN = "Orphan"
CREATION_POLICY_MERGE = "Merge"
CREATION_POLICY_NONE = "None"
CREATION_POLICIES = frozenset(
    {CREATION_POLICY_OWNER, CREATION_POLICY_ORPHAN, CREATION_POLICY_MERGE, CREATION_POLICY_NONE}
)

DELETION_POLICY_RETAIN = "Retain"
DELETION_POLICY_DELETE = "Delete"
DELETION_POLICY_MERGE = "Merge"
DELETION_POLICIES = frozenset(
    {DELETION_POLICY_RETAIN, DELETION_POLICY_DELETE, DELETION_POLICY_MERGE}
)

MERGE_POLICY_REPLACE = "Replace"
MERGE_POLICY_MERGE = "Merge"

TEMPLATE_TARGET_DATA = "Data"
TEMPLATE_TARGET_LABELS = "Labels"
TEMPLATE_TARGET_ANNOTATIONS = "Annotations"

TEMPLATE_SCOPE_VALUES = "Values"
TEMPLATE_SCOPE_KEYS_AND_VALUES = "KeysAndValues"

SECRET_API_VERSION = "v1"
SECRET_KIND = "Secret"

DEFAULT_REFRESH_INTERVAL_SECONDS = 3600.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str | int | float | None) -> float | None:
    """Parse a duration such as ``1h30m`` or ``45s`` into seconds.

    ``None`` and the empty string mean "unset". A bare ``0`` is accepted.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    if not text:
        return None
    if text == "0":
        return 0.0
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or position == 0:
        raise ConfigError(f"invalid duration {value!r}")
    return total


def format_time(moment: datetime) -> str:
    """Render *moment* as a compact RFC 3339 UTC string (``2024-01-15T08:30:00Z``)."""
    return moment.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def metadata(obj: dict[str, Any]) -> dict[str, Any]:
    """Return ``obj["metadata"]``, creating it when missing."""
    meta = obj.get("metadata")
    if not isinstance(meta, dict):
        meta = {}
        obj["metadata"] = meta
    return meta


def labels_of(obj: dict[str, Any] | None) -> dict[str, str]:
    if not obj:
        return {}
    return dict((obj.get("metadata") or {}).get("labels") or {})


def annotations_of(obj: dict[str, Any] | None) -> dict[str, str]:
    if not obj:
        return {}
    return dict((obj.get("metadata") or {}).get("annotations") or {})


def is_managed(obj: dict[str, Any] | None) -> bool:
    return labels_of(obj).get(LABEL_MANAGED) == LABEL_MANAGED_VALUE


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split ``group/version`` into its parts; the core group has an empty name."""
    group, _, version = api_version.rpartition("/")
    return group, version


# ---------------------------------------------------------------------------
# SecretBinding spec
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoreRef:
    name: str
    kind: str = STORE_KIND

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> StoreRef | None:
        if not raw or not raw.get("name"):
            return None
        kind = raw.get("kind") or STORE_KIND
        if kind not in {STORE_KIND, CLUSTER_STORE_KIND}:
            raise ConfigError(f"unsupported store kind {kind!r}")
        return cls(name=raw["name"], kind=kind)


@dataclass(frozen=True)
class GeneratorRef:
    kind: str
    name: str
    api_version: str = GENERATOR_API_VERSION

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> GeneratorRef | None:
        if not raw:
            return None
        if not raw.get("kind") or not raw.get("name"):
            raise ConfigError("generatorRef requires kind and name")
        return cls(
            kind=raw["kind"],
            name=raw["name"],
            api_version=raw.get("apiVersion") or GENERATOR_API_VERSION,
        )


@dataclass(frozen=True)
class SourceRef:
    store_ref: StoreRef | None = None
    generator_ref: GeneratorRef | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> SourceRef | None:
        if not raw:
            return None
        return cls(
            store_ref=StoreRef.from_dict(raw.get("storeRef")),
            generator_ref=GeneratorRef.from_dict(raw.get("generatorRef")),
        )


@dataclass(frozen=True)
class RemoteRef:
    """Reference to one logical key in a backend, used by ``data`` and ``extract``."""

    key: str
    property: str = ""
    version: str = ""
    decoding_strategy: str = "None"
    conversion_strategy: str = "Default"

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> RemoteRef | None:
        if not raw:
            return None
        if not raw.get("key"):
            raise ConfigError("remoteRef.key must not be empty")
        return cls(
            key=raw["key"],
            property=raw.get("property") or "",
            version=raw.get("version") or "",
            decoding_strategy=raw.get("decodingStrategy") or "None",
            conversion_strategy=raw.get("conversionStrategy") or "Default",
        )


@dataclass(frozen=True)
class FindSpec:
    path: str = ""
    name_regexp: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    decoding_strategy: str = "None"
    conversion_strategy: str = "Default"

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> FindSpec | None:
        if not raw:
            return None
        return cls(
            path=raw.get("path") or "",
            name_regexp=(raw.get("name") or {}).get("regexp") or "",
            tags=dict(raw.get("tags") or {}),
            decoding_strategy=raw.get("decodingStrategy") or "None",
            conversion_strategy=raw.get("conversionStrategy") or "Default",
        )


@dataclass(frozen=True)
class RegexpRewrite:
    source: str
    target: str


@dataclass(frozen=True)
class TransformRewrite:
    template: str


@dataclass(frozen=True)
class MergeRewrite:
    into: str = ""
    priority: tuple[str, ...] = ()
    priority_policy: str = "Strict"
    conflict_policy: str = "Error"
    strategy: str = "Extract"


@dataclass(frozen=True)
class Rewrite:
    regexp: RegexpRewrite | None = None
    transform: TransformRewrite | None = None
    merge: MergeRewrite | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Rewrite:
        regexp = raw.get("regexp")
        transform = raw.get("transform")
        merge = raw.get("merge")
        return cls(
            regexp=(
                RegexpRewrite(source=regexp.get("source", ""), target=regexp.get("target", ""))
                if regexp
                else None
            ),
            transform=TransformRewrite(template=transform.get("template", "")) if transform else None,
            merge=(
                MergeRewrite(
                    into=merge.get("into") or "",
                    priority=tuple(merge.get("priority") or ()),
                    priority_policy=merge.get("priorityPolicy") or "Strict",
                    conflict_policy=merge.get("conflictPolicy") or "Error",
                    strategy=merge.get("strategy") or "Extract",
                )
                if merge is not None
                else None
            ),
        )


@dataclass(frozen=True)
class DataRef:
    secret_key: str
    remote_ref: RemoteRef
    source_ref: SourceRef | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DataRef:
        remote_ref = RemoteRef.from_dict(raw.get("remoteRef"))
        if not raw.get("secretKey") or remote_ref is None:
            raise ConfigError("data entries require secretKey and remoteRef.key")
        return cls(
            secret_key=raw["secretKey"],
            remote_ref=remote_ref,
            source_ref=SourceRef.from_dict(raw.get("sourceRef")),
        )


@dataclass(frozen=True)
class DataFromRef:
    extract: RemoteRef | None = None
    find: FindSpec | None = None
    rewrite: tuple[Rewrite, ...] = ()
    source_ref: SourceRef | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DataFromRef:
        ref = cls(
            extract=RemoteRef.from_dict(raw.get("extract")),
            find=FindSpec.from_dict(raw.get("find")),
            rewrite=tuple(Rewrite.from_dict(item) for item in raw.get("rewrite") or ()),
            source_ref=SourceRef.from_dict(raw.get("sourceRef")),
        )
        if ref.generator_ref is None and ref.extract is None and ref.find is None:
            raise ConfigError("dataFrom entries require extract, find or a generatorRef")
        return ref

    @property
    def generator_ref(self) -> GeneratorRef | None:
        return self.source_ref.generator_ref if self.source_ref else None

    @property
    def store_ref(self) -> StoreRef | None:
        return self.source_ref.store_ref if self.source_ref else None


@dataclass(frozen=True)
class TemplateRefItem:
    key: str
    template_as: str = TEMPLATE_SCOPE_VALUES


@dataclass(frozen=True)
class TemplateRef:
    name: str
    items: tuple[TemplateRefItem, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> TemplateRef | None:
        if not raw:
            return None
        return cls(
            name=raw.get("name", ""),
            items=tuple(
                TemplateRefItem(
                    key=item["key"],
                    template_as=item.get("templateAs") or TEMPLATE_SCOPE_VALUES,
                )
                for item in raw.get("items") or ()
            ),
        )


@dataclass(frozen=True)
class TemplateFrom:
    config_map: TemplateRef | None = None
    secret: TemplateRef | None = None
    literal: str | None = None
    target: str = TEMPLATE_TARGET_DATA

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TemplateFrom:
        return cls(
            config_map=TemplateRef.from_dict(raw.get("configMap")),
            secret=TemplateRef.from_dict(raw.get("secret")),
            literal=raw.get("literal"),
            target=raw.get("target") or TEMPLATE_TARGET_DATA,
        )


@dataclass(frozen=True)
class Template:
    type: str = ""
    engine_version: str = "v2"
    merge_policy: str = MERGE_POLICY_REPLACE
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    data: dict[str, str] = field(default_factory=dict)
    template_from: tuple[TemplateFrom, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> Template | None:
        if raw is None:
            return None
        meta = raw.get("metadata") or {}
        return cls(
            type=raw.get("type") or "",
            engine_version=raw.get("engineVersion") or "v2",
            merge_policy=raw.get("mergePolicy") or MERGE_POLICY_REPLACE,
            labels=dict(meta.get("labels") or {}),
            annotations=dict(meta.get("annotations") or {}),
            data=dict(raw.get("data") or {}),
            template_from=tuple(TemplateFrom.from_dict(item) for item in raw.get("templateFrom") or ()),
        )


@dataclass(frozen=True)
class Manifest:
    api_version: str
    kind: str


@dataclass(frozen=True)
class Target:
    name: str
    creation_policy: str = CREATION_POLICY_OWNER
    deletion_policy: str = DELETION_POLICY_RETAIN
    immutable: bool = False
    template: Template | None = None
    manifest: Manifest | None = None

    @property
    def api_version(self) -> str:
        return self.manifest.api_version if self.manifest else SECRET_API_VERSION

    @property
    def kind(self) -> str:
        return self.manifest.kind if self.manifest else SECRET_KIND

    @property
    def is_secret(self) -> bool:
        return self.api_version == SECRET_API_VERSION and self.kind == SECRET_KIND


@dataclass(frozen=True)
class Binding:
    """Parsed view of a ``SecretBinding`` object.

    ``raw`` keeps the object exactly as read so status writes can carry the
    original ``resourceVersion``.
    """

    name: str
    namespace: str
    uid: str
    generation: int
    resource_version: str
    labels: dict[str, str]
    annotations: dict[str, str]
    deleting: bool
    refresh_interval: float
    store_ref: StoreRef | None
    data: tuple[DataRef, ...]
    data_from: tuple[DataFromRef, ...]
    target: Target
    raw: dict[str, Any]

    @classmethod
    def from_dict(
        cls,
        obj: dict[str, Any],
        default_refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
    ) -> Binding:
        meta = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        target_raw = spec.get("target") or {}

        creation_policy = target_raw.get("creationPolicy") or CREATION_POLICY_OWNER
        if creation_policy not in CREATION_POLICIES:
            raise ConfigError(f"unsupported creationPolicy {creation_policy!r}")
        deletion_policy = target_raw.get("deletionPolicy") or DELETION_POLICY_RETAIN
        if deletion_policy not in DELETION_POLICIES:
            raise ConfigError(f"unsupported deletionPolicy {deletion_policy!r}")

        manifest_raw = target_raw.get("manifest")
        manifest = None
        if manifest_raw:
            if not manifest_raw.get("apiVersion") or not manifest_raw.get("kind"):
                raise ConfigError("target.manifest requires apiVersion and kind")
            manifest = Manifest(api_version=manifest_raw["apiVersion"], kind=manifest_raw["kind"])

        interval = parse_duration(spec.get("refreshInterval"))
        if interval is None:
            interval = default_refresh_interval

        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace", ""),
            uid=meta.get("uid", ""),
            generation=int(meta.get("generation") or 0),
            resource_version=str(meta.get("resourceVersion") or ""),
            labels=dict(meta.get("labels") or {}),
            annotations=dict(meta.get("annotations") or {}),
            deleting=bool(meta.get("deletionTimestamp")),
            refresh_interval=interval,
            store_ref=StoreRef.from_dict(spec.get("secretStoreRef")),
            data=tuple(DataRef.from_dict(item) for item in spec.get("data") or ()),
            data_from=tuple(DataFromRef.from_dict(item) for item in spec.get("dataFrom") or ()),
            target=Target(
                name=target_raw.get("name") or meta.get("name", ""),
                creation_policy=creation_policy,
                deletion_policy=deletion_policy,
                immutable=bool(target_raw.get("immutable", False)),
                template=Template.from_dict(target_raw.get("template")),
                manifest=manifest,
            ),
            raw=obj,
        )

    @property
    def status(self) -> dict[str, Any]:
        return self.raw.get("status") or {}

    @property
    def field_owner(self) -> str:
        return f"{FIELD_OWNER_PREFIX}/{self.name}"

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": BINDING_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


# ---------------------------------------------------------------------------
# Status helpers
# ---------------------------------------------------------------------------


def get_condition(status: dict[str, Any], condition_type: str) -> dict[str, Any] | None:
    for condition in status.get("conditions") or ():
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(
    status: dict[str, Any],
    condition_type: str,
    condition_status: str,
    reason: str,
    message: str,
    now: datetime,
) -> None:
    """Insert or replace a condition, keeping ``lastTransitionTime`` when the status is unchanged."""
    conditions = [c for c in status.get("conditions") or () if c.get("type") != condition_type]
    previous = get_condition(status, condition_type)
    transition = format_time(now)
    if previous is not None and previous.get("status") == condition_status:
        transition = previous.get("lastTransitionTime") or transition
    conditions.append(
        {
            "type": condition_type,
            "status": condition_status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": transition,
        }
    )
    status["conditions"] = conditions


@dataclass
class StoreInfo:
    """Per-pass facts about one store, reported in ``status.sources``."""

    kind: str
    name: str
    not_ready: bool = False
    not_exists: bool = False
    listed_keys: dict[str, bool] = field(default_factory=dict)
    found_keys: set[str] = field(default_factory=set)

    def to_status(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"kind": self.kind, "name": self.name}
        if self.listed_keys:
            entry["listedKeys"] = dict(sorted(self.listed_keys.items()))
        if self.found_keys:
            entry["foundKeys"] = sorted(self.found_keys)
        return entry
