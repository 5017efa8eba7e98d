from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from secretsync.src.clientmanager import (
    ClientManager,
    fetch_store,
    is_store_managed,
    is_store_ready,
)
from secretsync.src.errors import ConfigError, NoSecretError
from secretsync.src.generators import (
    GENERATORS,
    Generator,
    fetch_generator,
    generator_class,
    resolve_generator,
)
from secretsync.src.keys import convert_keys, decode_map, rewrite_map, validate_keys
from secretsync.src.resources import (
    CLUSTER_STORE_KIND,
    DELETION_POLICY_RETAIN,
    Binding,
    DataFromRef,
    GeneratorRef,
    Rewrite,
    SourceRef,
    StoreInfo,
    StoreRef,
)
from secretsync.src.statemanager import GeneratorStateManager

LOGGER = logging.getLogger(__name__)


@dataclass
class SourceFacts:
    """What a binding's referenced stores and generators look like right now.

    ``skip`` means a source belongs to another controller class (or uses a
    disabled store kind) and the binding must be left alone entirely.
    """

    skip: bool = False
    default_store_missing: bool = False
    not_exists: list[str] = field(default_factory=list)
    not_ready: list[str] = field(default_factory=list)
    stores: dict[tuple[str, str], StoreInfo] = field(default_factory=dict)

    def store_info(self, ref: StoreRef) -> StoreInfo:
        key = (ref.kind, ref.name)
        info = self.stores.get(key)
        if info is None:
            info = StoreInfo(kind=ref.kind, name=ref.name)
            self.stores[key] = info
        return info

    def status_sources(self) -> list[dict[str, Any]]:
        return [self.stores[key].to_status() for key in sorted(self.stores)]


def effective_store_ref(binding: Binding, source_ref: SourceRef | None) -> StoreRef | None:
    if source_ref is not None and source_ref.store_ref is not None:
        return source_ref.store_ref
    return binding.store_ref


def resolve_sources(
    binding: Binding,
    kube: Any,
    controller_class: str,
    enable_floodgate: bool = True,
    cluster_store_enabled: bool = True,
) -> SourceFacts:
    """Classify every store and generator *binding* references.

    Missing and not-ready sources are recorded rather than raised so the
    caller can pick the retry policy for each case.
    """
    facts = SourceFacts()
    store_refs: list[StoreRef] = []
    if binding.store_ref is not None:
        store_refs.append(binding.store_ref)

    for data_ref in binding.data:
        ref = effective_store_ref(binding, data_ref.source_ref)
        if ref is None:
            facts.default_store_missing = True
        else:
            store_refs.append(ref)

    generator_refs = []
    for data_from in binding.data_from:
        if data_from.generator_ref is not None:
            generator_refs.append(data_from.generator_ref)
            continue
        ref = effective_store_ref(binding, data_from.source_ref)
        if ref is None:
            facts.default_store_missing = True
        else:
            store_refs.append(ref)

    for ref in dict.fromkeys(store_refs):
        if ref.kind == CLUSTER_STORE_KIND and not cluster_store_enabled:
            facts.skip = True
            return facts
        info = facts.store_info(ref)
        store = fetch_store(kube, ref, binding.namespace)
        if store is None:
            info.not_exists = True
            facts.not_exists.append(f"{ref.kind}/{ref.name}")
            continue
        if not is_store_managed(store, controller_class):
            facts.skip = True
            return facts
        if enable_floodgate and not is_store_ready(store):
            info.not_ready = True
            facts.not_ready.append(f"{ref.kind}/{ref.name}")

    for generator_ref in dict.fromkeys(generator_refs):
        resource = fetch_generator(kube, generator_ref, binding.namespace)
        if resource is None:
            facts.not_exists.append(f"{generator_ref.kind}/{generator_ref.name}")
            continue
        generator_owner = generator_class(resource)
        if generator_owner and generator_owner != controller_class:
            facts.skip = True
            return facts

    return facts


def generator_state_key(index: int) -> str:
    return f"spec.dataFrom[{index}]"


class DataPipeline:
    """Fetches, transforms and merges a binding's data into one flat byte map.

    ``dataFrom`` entries are applied in order, each overwriting earlier keys;
    ``data`` entries are applied last and always win. A backend reporting an
    absent secret is skipped unless the deletion policy is ``Retain``, in which
    case the :class:`NoSecretError` propagates to the caller.
    """

    def __init__(
        self,
        kube: Any,
        clients: ClientManager,
        state: GeneratorStateManager,
        generators: dict[str, Generator] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kube = kube
        self.clients = clients
        self.state = state
        self.generators = generators if generators is not None else GENERATORS
        self.logger = logger or LOGGER

    def run(self, binding: Binding, facts: SourceFacts) -> dict[str, bytes]:
        provider_data: dict[str, bytes] = {}
        retain = binding.target.deletion_policy == DELETION_POLICY_RETAIN

        for index, data_from in enumerate(binding.data_from):
            try:
                data = self._handle_data_from(binding, index, data_from, facts)
            except NoSecretError:
                if retain:
                    raise
                self.logger.info(
                    "No secret found for %s/%s dataFrom[%d], skipping",
                    binding.namespace,
                    binding.name,
                    index,
                )
                continue
            provider_data.update(data)

        for data_ref in binding.data:
            ref = effective_store_ref(binding, data_ref.source_ref)
            client = self.clients.get(binding.store_ref, binding.namespace, data_ref.source_ref)
            info = facts.store_info(ref) if ref is not None else None
            try:
                value = client.get_secret(data_ref.remote_ref)
            except NoSecretError:
                if info is not None:
                    info.listed_keys[data_ref.remote_ref.key] = False
                if retain:
                    raise
                self.logger.info(
                    "No secret found for %s/%s key %s, skipping",
                    binding.namespace,
                    binding.name,
                    data_ref.remote_ref.key,
                )
                continue
            if info is not None:
                info.listed_keys[data_ref.remote_ref.key] = True
            provider_data[data_ref.secret_key] = decode_value(
                data_ref.remote_ref.decoding_strategy, data_ref.remote_ref.key, value
            )

        return provider_data

    def _handle_data_from(
        self, binding: Binding, index: int, data_from: DataFromRef, facts: SourceFacts
    ) -> dict[str, bytes]:
        if data_from.generator_ref is not None:
            return self._generate(binding, index, data_from.generator_ref, data_from.rewrite)

        ref = effective_store_ref(binding, data_from.source_ref)
        client = self.clients.get(binding.store_ref, binding.namespace, data_from.source_ref)

        if data_from.find is not None:
            find = data_from.find
            raw = client.get_all_secrets(find)
            if ref is not None:
                facts.store_info(ref).found_keys.update(raw)
            return transform_map(
                raw, data_from.rewrite, find.conversion_strategy, find.decoding_strategy
            )

        extract = data_from.extract
        if extract is None:
            raise ConfigError(
                f"dataFrom[{index}] of {binding.namespace}/{binding.name} "
                "has no extract, find or generatorRef"
            )
        raw = client.get_secret_map(extract)
        return transform_map(
            raw, data_from.rewrite, extract.conversion_strategy, extract.decoding_strategy
        )

    def _generate(
        self,
        binding: Binding,
        index: int,
        generator_ref: GeneratorRef,
        rewrite: Sequence[Rewrite],
    ) -> dict[str, bytes]:
        state_key = generator_state_key(index)
        generator, resource = resolve_generator(
            self.kube, generator_ref, binding.namespace, self.generators
        )
        previous = self.state.get_latest_state(state_key)

        try:
            data, new_state = generator.generate(resource, self.kube, binding.namespace)
        except NoSecretError:
            # No value is a valid outcome; nothing to stage and nothing to merge.
            self.logger.info(
                "Generator %s/%s produced no value for %s/%s",
                generator_ref.kind,
                generator_ref.name,
                binding.namespace,
                binding.name,
            )
            return {}

        if new_state:
            self.state.enqueue_set_latest(state_key, resource, generator, new_state)
            if previous is not None:
                self.state.enqueue_move_state_to_gc(state_key)
        elif previous is not None:
            self.state.enqueue_flag_latest_state_for_gc(state_key)

        data = rewrite_map(rewrite, data)
        validate_keys(data)
        return data


def decode_value(strategy: str, key: str, value: bytes) -> bytes:
    return decode_map(strategy, {key: value})[key]


def transform_map(
    raw: Mapping[str, bytes],
    rewrite: Sequence[Rewrite],
    conversion_strategy: str,
    decoding_strategy: str,
) -> dict[str, bytes]:
    """Rewrite (or, without rewrite rules, convert) keys, validate them, then decode values."""
    if rewrite:
        data = rewrite_map(rewrite, raw)
    else:
        data = convert_keys(conversion_strategy, raw)
    validate_keys(data)
    return decode_map(decoding_strategy, data)
