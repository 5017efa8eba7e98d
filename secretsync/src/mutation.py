from __future__ import annotations

import base64
import copy
import logging
from collections.abc import Mapping
from typing import Any

from secretsync.src.errors import (
    SecretImmutableError,
    SecretIsOwnedError,
    SetOwnerReferenceError,
)
from secretsync.src.keys import object_hash
from secretsync.src.resources import (
    ANNOTATION_DATA_HASH,
    BINDING_KIND,
    CREATION_POLICY_OWNER,
    GROUP,
    LABEL_MANAGED,
    LABEL_MANAGED_VALUE,
    LABEL_OWNER,
    Binding,
    Target,
    annotations_of,
    labels_of,
    metadata,
    split_api_version,
)
from secretsync.src.templating import Draft, OwnedFields, TemplateRenderer, to_bytes, to_text

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Target payload layout
# ---------------------------------------------------------------------------


def data_path(target: Target) -> tuple[str, ...]:
    """Where the payload lives: ``.data`` for Secrets and ConfigMaps, ``.spec.data`` otherwise."""
    if target.is_secret or (target.api_version == "v1" and target.kind == "ConfigMap"):
        return ("data",)
    return ("spec", "data")


def _supports_immutable(target: Target) -> bool:
    return target.api_version == "v1" and target.kind in {"Secret", "ConfigMap"}


def read_draft(obj: dict[str, Any] | None, target: Target) -> Draft:
    """Decode *obj* into a :class:`Draft` with raw byte values."""
    if not obj:
        return Draft()
    node: Any = obj
    for part in data_path(target):
        node = (node or {}).get(part)
    raw = node or {}
    if target.is_secret:
        data = {key: base64.b64decode(value) for key, value in raw.items()}
    else:
        data = {key: to_bytes(str(value)) for key, value in raw.items()}
    return Draft(
        labels=labels_of(obj),
        annotations=annotations_of(obj),
        data=data,
        type=str(obj.get("type") or "") if target.is_secret else "",
    )


def write_draft(obj: dict[str, Any], draft: Draft, target: Target) -> None:
    meta = metadata(obj)
    meta["labels"] = dict(draft.labels)
    meta["annotations"] = dict(draft.annotations)

    if target.is_secret:
        encoded: dict[str, str] = {
            key: base64.b64encode(value).decode("ascii") for key, value in draft.data.items()
        }
        if draft.type:
            obj["type"] = draft.type
    else:
        encoded = {key: to_text(value) for key, value in draft.data.items()}

    *parents, leaf = data_path(target)
    node = obj
    for part in parents:
        node = node.setdefault(part, {})
    node[leaf] = encoded


def data_hash(data: Mapping[str, bytes]) -> str:
    return object_hash(dict(data))


def owner_label_value(binding: Binding) -> str:
    return object_hash(f"{binding.namespace}/{binding.name}")


def is_target_valid(obj: dict[str, Any] | None, target: Target) -> bool:
    """A target is valid when it exists, carries the managed label and its hash matches its data."""
    if not obj or not (obj.get("metadata") or {}).get("uid"):
        return False
    if labels_of(obj).get(LABEL_MANAGED) != LABEL_MANAGED_VALUE:
        return False
    return annotations_of(obj).get(ANNOTATION_DATA_HASH) == data_hash(read_draft(obj, target).data)


# ---------------------------------------------------------------------------
# Managed fields
# ---------------------------------------------------------------------------


def _field_keys(fields: Mapping[str, Any], path: tuple[str, ...]) -> set[str]:
    node: Any = fields
    for part in path:
        if not isinstance(node, Mapping):
            return set()
        node = node.get(f"f:{part}")
    if not isinstance(node, Mapping):
        return set()
    return {key[2:] for key in node if key != "." and key.startswith("f:")}


def owned_fields(obj: dict[str, Any] | None, manager: str, payload_path: tuple[str, ...]) -> OwnedFields:
    """Collect the payload keys, labels and annotations *manager* last wrote."""
    if not obj:
        return OwnedFields()
    data: set[str] = set()
    labels: set[str] = set()
    annotations: set[str] = set()
    for entry in (obj.get("metadata") or {}).get("managedFields") or ():
        if entry.get("manager") != manager:
            continue
        fields = entry.get("fieldsV1") or {}
        data |= _field_keys(fields, payload_path)
        labels |= _field_keys(fields, ("metadata", "labels"))
        annotations |= _field_keys(fields, ("metadata", "annotations"))
    return OwnedFields(
        data=frozenset(data), labels=frozenset(labels), annotations=frozenset(annotations)
    )


# ---------------------------------------------------------------------------
# Owner references
# ---------------------------------------------------------------------------


def controller_of(obj: dict[str, Any]) -> dict[str, Any] | None:
    for ref in (obj.get("metadata") or {}).get("ownerReferences") or ():
        if ref.get("controller"):
            return ref
    return None


def _is_binding_ref(ref: Mapping[str, Any]) -> bool:
    group, _ = split_api_version(str(ref.get("apiVersion") or ""))
    return group == GROUP and ref.get("kind") == BINDING_KIND


def _without_ref(refs: list[dict[str, Any]], binding: Binding) -> list[dict[str, Any]]:
    return [ref for ref in refs if not (_is_binding_ref(ref) and ref.get("name") == binding.name)]


def reconcile_owner(obj: dict[str, Any], binding: Binding) -> None:
    """Claim or release controller ownership of *obj* for *binding*.

    Raises :class:`SecretIsOwnedError` when another SecretBinding controls the
    object and :class:`SetOwnerReferenceError` when a foreign controller
    prevents the ``Owner`` creation policy from claiming it.
    """
    current = controller_of(obj)
    owned_by_binding_kind = current is not None and _is_binding_ref(current)
    owned_by_us = owned_by_binding_kind and current.get("name") == binding.name

    if owned_by_binding_kind and not owned_by_us:
        raise SecretIsOwnedError(f"target is owned by another SecretBinding: {current.get('name')}")

    meta = metadata(obj)
    refs = list(meta.get("ownerReferences") or ())
    if binding.target.creation_policy == CREATION_POLICY_OWNER:
        if current is not None and not owned_by_us:
            raise SetOwnerReferenceError(
                f"object is already controlled by {current.get('kind')} {current.get('name')}"
            )
        refs = _without_ref(refs, binding)
        refs.append(binding.owner_reference())
        meta["ownerReferences"] = refs
    elif owned_by_us:
        refs = _without_ref(refs, binding)
        if refs:
            meta["ownerReferences"] = refs
        else:
            meta.pop("ownerReferences", None)


# ---------------------------------------------------------------------------
# Merge patches
# ---------------------------------------------------------------------------


def merge_patch(old: Mapping[str, Any], new: Mapping[str, Any]) -> dict[str, Any]:
    """Return the JSON merge patch (RFC 7386) that turns *old* into *new*."""
    patch: dict[str, Any] = {}
    for key, value in new.items():
        previous = old.get(key)
        if isinstance(value, Mapping) and isinstance(previous, Mapping):
            nested = merge_patch(previous, value)
            if nested:
                patch[key] = nested
        elif key not in old or previous != value:
            patch[key] = copy.deepcopy(value)
    for key in old:
        if key not in new:
            patch[key] = None
    return patch


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class TargetWriter:
    """Creates, updates and deletes a binding's target resource.

    Every write carries the binding's field manager (``secretsync/<name>``) so
    later passes can tell which keys this binding owns.
    """

    def __init__(self, kube: Any, logger: logging.Logger | None = None) -> None:
        self.kube = kube
        self.logger = logger or LOGGER

    def mutate(self, obj: dict[str, Any], binding: Binding, data: Mapping[str, bytes]) -> None:
        """Bring *obj* to the desired state for *binding* in place."""
        target = binding.target
        reconcile_owner(obj, binding)

        owned = owned_fields(obj, binding.field_owner, data_path(target))
        draft = read_draft(obj, target)
        TemplateRenderer(self.kube, binding.namespace).apply(target.template, draft, data, owned)

        if target.creation_policy == CREATION_POLICY_OWNER:
            draft.labels[LABEL_OWNER] = owner_label_value(binding)
        else:
            draft.labels.pop(LABEL_OWNER, None)
        draft.labels[LABEL_MANAGED] = LABEL_MANAGED_VALUE
        draft.annotations[ANNOTATION_DATA_HASH] = data_hash(draft.data)

        write_draft(obj, draft, target)
        if target.immutable and _supports_immutable(target):
            obj["immutable"] = True

    def new_object(self, binding: Binding) -> dict[str, Any]:
        target = binding.target
        return {
            "apiVersion": target.api_version,
            "kind": target.kind,
            "metadata": {"name": target.name, "namespace": binding.namespace},
        }

    def create(self, binding: Binding, data: Mapping[str, bytes]) -> dict[str, Any]:
        obj = self.new_object(binding)
        self.mutate(obj, binding, data)
        created = self.kube.create(obj, field_manager=binding.field_owner)
        self.logger.info(
            "Created %s %s/%s for SecretBinding %s",
            binding.target.kind,
            binding.namespace,
            binding.target.name,
            binding.name,
        )
        return created

    def update(
        self, existing: dict[str, Any], binding: Binding, data: Mapping[str, bytes], patch: bool = False
    ) -> dict[str, Any]:
        """Write the desired state over *existing*, returning the stored object.

        With ``patch`` the change is sent as a merge patch that only touches
        what differs, leaving fields owned by others alone. An immutable
        target may still receive metadata changes; any data or type change
        raises :class:`SecretImmutableError` after the metadata is written.
        """
        updated = copy.deepcopy(existing)
        self.mutate(updated, binding, data)
        if updated == existing:
            return existing

        if existing.get("immutable"):
            with_new_metadata = copy.deepcopy(existing)
            with_new_metadata["metadata"] = copy.deepcopy(updated["metadata"])
            metadata_changed = with_new_metadata != existing
            payload_changed = with_new_metadata != updated
            if metadata_changed:
                existing = self._write(existing, with_new_metadata, binding, patch)
            if payload_changed:
                raise SecretImmutableError(
                    f"could not update {binding.target.kind} {binding.target.name}: target is immutable"
                )
            return existing

        stored = self._write(existing, updated, binding, patch)
        self.logger.info(
            "Updated %s %s/%s for SecretBinding %s",
            binding.target.kind,
            binding.namespace,
            binding.target.name,
            binding.name,
        )
        return stored

    def _write(
        self, existing: dict[str, Any], desired: dict[str, Any], binding: Binding, patch: bool
    ) -> dict[str, Any]:
        if not patch:
            return self.kube.update(desired, field_manager=binding.field_owner)
        body = merge_patch(existing, desired)
        body.setdefault("metadata", {})["resourceVersion"] = (existing.get("metadata") or {}).get(
            "resourceVersion"
        )
        return self.kube.patch(
            binding.target.api_version,
            binding.target.kind,
            binding.target.name,
            binding.namespace,
            body,
            field_manager=binding.field_owner,
        )

    def delete_target(self, binding: Binding) -> bool:
        deleted = self.kube.delete(
            binding.target.api_version, binding.target.kind, binding.target.name, binding.namespace
        )
        if deleted:
            self.logger.info(
                "Deleted %s %s/%s for SecretBinding %s",
                binding.target.kind,
                binding.namespace,
                binding.target.name,
                binding.name,
            )
        return deleted

    def delete_orphaned(self, binding: Binding) -> list[str]:
        """Delete objects carrying this binding's owner label that are no longer its target."""
        target = binding.target
        removed: list[str] = []
        for obj in self.kube.list(
            target.api_version,
            target.kind,
            namespace=binding.namespace,
            label_selector=f"{LABEL_OWNER}={owner_label_value(binding)}",
        ):
            name = (obj.get("metadata") or {}).get("name")
            if not name or name == target.name:
                continue
            if self.kube.delete(target.api_version, target.kind, name, binding.namespace):
                removed.append(name)
                self.logger.info(
                    "Deleted orphaned %s %s/%s previously owned by SecretBinding %s",
                    target.kind,
                    binding.namespace,
                    name,
                    binding.name,
                )
        return removed
