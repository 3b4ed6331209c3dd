from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, MutableMapping, Optional

from ..k8s.info import ObjectInfo
from ..k8s.resolver import AddressResolver, LookupResult, LookupStatus
from ..logging import get_logger
from ..rules import OP_ADD_KUBERNETES, OP_ADD_KUBERNETES_INFRA, Rule
from ..util.errors import LookupBackendError
from .layer import classify_layer
from .naming import KeySet
from .owner import resolve_owner

LOG = get_logger(__name__)

Record = MutableMapping[str, Any]


def _address_of(record: Record, field: str) -> Optional[str]:
    value = record.get(field)
    if value is None:
        return None
    address = str(value).strip()
    return address or None


def _resolved(result: LookupResult, address: str) -> Optional[ObjectInfo]:
    if result.status is LookupStatus.FOUND:
        return result.info
    if result.status is LookupStatus.NOT_FOUND:
        return None
    raise LookupBackendError(
        f"Lookup failed for {address}: {result.error or 'unknown error'}",
        address=address,
    )


class EnrichmentEngine:
    """
    Applies enrichment rules to flow records.

    The engine holds no per-record state; one instance can be shared by any
    number of worker threads as long as the injected resolver supports
    concurrent reads.
    """

    def __init__(self, resolver: AddressResolver) -> None:
        self._resolver = resolver
        self._handlers: Dict[str, Callable[[Record, Rule], None]] = {
            OP_ADD_KUBERNETES: self._add_kubernetes,
            OP_ADD_KUBERNETES_INFRA: self._add_kubernetes_infra,
        }

    @property
    def resolver(self) -> AddressResolver:
        return self._resolver

    def apply(self, record: Record, rule: Rule) -> None:
        self._handlers[rule.type](record, rule)

    def apply_all(self, record: Record, rules: Iterable[Rule]) -> None:
        for rule in rules:
            self.apply(record, rule)

    def lookup(self, address: str) -> Optional[ObjectInfo]:
        """Resolve an address; None when not found, LookupBackendError on failure."""
        return _resolved(self._resolver.lookup(address), address)

    def _add_kubernetes(self, record: Record, rule: Rule) -> None:
        address = _address_of(record, rule.input)
        if address is None:
            return
        info = self.lookup(address)
        if info is None:
            LOG.debug(
                "No kubernetes object for address",
                extra={"address": address, "rule_input": rule.input},
            )
            return
        keys = rule.keys
        if keys is None:
            return
        # A failing node lookup must leave the record untouched.
        staged = self._fields_for(info, rule, keys)
        if rule.labels_prefix:
            labels = self._labels_for(info, rule.labels_prefix, keys)
            # Labels never replace enrichment fields or keys already on the record.
            staged = {**{k: v for k, v in labels.items() if k not in record}, **staged}
        record.update(staged)

    def _fields_for(self, info: ObjectInfo, rule: Rule, keys: KeySet) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        # Empty namespaces are never emitted.
        if info.namespace:
            out[keys.namespace] = info.namespace
        out[keys.name] = info.name
        out[keys.type] = info.type
        owner_name, owner_type = resolve_owner(info)
        out[keys.owner_name] = owner_name
        out[keys.owner_type] = owner_type

        if info.is_pod:
            if info.host_ip:
                out[keys.host_ip] = info.host_ip
            if info.host_name:
                out[keys.host_name] = info.host_name
            if keys.pod_identity is not None:
                out[keys.pod_identity[0]] = info.name
                out[keys.pod_identity[1]] = info.uid
            if rule.add_zone:
                zone = self._zone_of(info)
                if zone:
                    out[keys.zone] = zone
        elif info.is_service:
            if keys.service_identity is not None:
                out[keys.service_identity[0]] = info.name
                out[keys.service_identity[1]] = info.uid
        return out

    def _labels_for(self, info: ObjectInfo, prefix: str, keys: KeySet) -> Dict[str, Any]:
        return {keys.label_key(prefix, label): value for label, value in info.labels.items()}

    def _zone_of(self, pod: ObjectInfo) -> str:
        if not pod.host_name:
            return ""
        node = _resolved(self._resolver.lookup_node(pod.host_name), pod.host_name)
        if node is None:
            LOG.debug("No node info for host", extra={"host_name": pod.host_name})
            return ""
        return node.zone()

    def _add_kubernetes_infra(self, record: Record, rule: Rule) -> None:
        infra = rule.kubernetes_infra
        if infra is None:
            return
        addresses = [_address_of(record, field) for field in infra.inputs]
        objects = [self.lookup(a) for a in addresses if a is not None]
        record[infra.output] = classify_layer(objects, infra.infra_prefixes)
