from __future__ import annotations

from typing import Any, Dict, List

import pytest

from flow_enrich.enrich.engine import EnrichmentEngine
from flow_enrich.k8s.info import NODE_ZONE_LABEL, ObjectInfo
from flow_enrich.k8s.resolver import LookupResult, StaticResolver
from flow_enrich.rules import K8sRule, Rule
from flow_enrich.util.errors import LookupBackendError

INFO = {
    "1.2.3.4": None,
    "10.0.0.1": ObjectInfo(type="Pod", name="pod-1", namespace="ns-1", host_name="host-1", host_ip="100.0.0.1"),
    "10.0.0.2": ObjectInfo(type="Pod", name="pod-2", namespace="ns-2", host_name="host-2", host_ip="100.0.0.2"),
    "20.0.0.1": ObjectInfo(type="Service", name="service-1", namespace="ns-1"),
}

NODES = {
    "host-1": ObjectInfo(type="Node", name="host-1", labels={NODE_ZONE_LABEL: "us-east-1a"}),
    "host-2": ObjectInfo(type="Node", name="host-2", labels={NODE_ZONE_LABEL: "us-east-1b"}),
}

RULES = [
    Rule(input="SrcAddr", output="SrcK8s", kubernetes=K8sRule(add_zone=True)),
    Rule(input="DstAddr", output="DstK8s", kubernetes=K8sRule(add_zone=True)),
]

OTEL_RULES = [
    Rule(input="source.ip", output="source.", assignee="otel", kubernetes=K8sRule(add_zone=True)),
    Rule(input="destination.ip", output="destination.", assignee="otel", kubernetes=K8sRule(add_zone=True)),
]


def _engine() -> EnrichmentEngine:
    return EnrichmentEngine(StaticResolver(INFO, NODES))


def _enrich(entry: Dict[str, Any], rules: List[Rule]) -> Dict[str, Any]:
    engine = _engine()
    for rule in rules:
        engine.apply(entry, rule)
    return entry


class _FailingResolver:
    def __init__(self, *, fail_objects: bool = False, fail_nodes: bool = False) -> None:
        self._static = StaticResolver(INFO, NODES)
        self._fail_objects = fail_objects
        self._fail_nodes = fail_nodes

    def lookup(self, address: str) -> LookupResult:
        if self._fail_objects:
            return LookupResult.failed("backend unavailable")
        return self._static.lookup(address)

    def lookup_node(self, name: str) -> LookupResult:
        if self._fail_nodes:
            return LookupResult.failed("backend unavailable")
        return self._static.lookup_node(name)


def test_enrich_pod_to_unknown() -> None:
    entry = _enrich({"SrcAddr": "10.0.0.1", "DstAddr": "42.42.42.42"}, RULES)
    assert entry == {
        "DstAddr": "42.42.42.42",
        "SrcAddr": "10.0.0.1",
        "SrcK8s_HostIP": "100.0.0.1",
        "SrcK8s_HostName": "host-1",
        "SrcK8s_Name": "pod-1",
        "SrcK8s_Namespace": "ns-1",
        "SrcK8s_OwnerName": "",
        "SrcK8s_OwnerType": "",
        "SrcK8s_Type": "Pod",
        "SrcK8s_Zone": "us-east-1a",
    }


def test_enrich_pod_to_pod() -> None:
    entry = _enrich({"SrcAddr": "10.0.0.1", "DstAddr": "10.0.0.2"}, RULES)
    assert entry == {
        "DstAddr": "10.0.0.2",
        "DstK8s_HostIP": "100.0.0.2",
        "DstK8s_HostName": "host-2",
        "DstK8s_Name": "pod-2",
        "DstK8s_Namespace": "ns-2",
        "DstK8s_OwnerName": "",
        "DstK8s_OwnerType": "",
        "DstK8s_Type": "Pod",
        "DstK8s_Zone": "us-east-1b",
        "SrcAddr": "10.0.0.1",
        "SrcK8s_HostIP": "100.0.0.1",
        "SrcK8s_HostName": "host-1",
        "SrcK8s_Name": "pod-1",
        "SrcK8s_Namespace": "ns-1",
        "SrcK8s_OwnerName": "",
        "SrcK8s_OwnerType": "",
        "SrcK8s_Type": "Pod",
        "SrcK8s_Zone": "us-east-1a",
    }


def test_enrich_pod_to_service() -> None:
    entry = _enrich({"SrcAddr": "10.0.0.2", "DstAddr": "20.0.0.1"}, RULES)
    assert entry == {
        "DstAddr": "20.0.0.1",
        "DstK8s_Name": "service-1",
        "DstK8s_Namespace": "ns-1",
        "DstK8s_OwnerName": "",
        "DstK8s_OwnerType": "",
        "DstK8s_Type": "Service",
        "SrcAddr": "10.0.0.2",
        "SrcK8s_HostIP": "100.0.0.2",
        "SrcK8s_HostName": "host-2",
        "SrcK8s_Name": "pod-2",
        "SrcK8s_Namespace": "ns-2",
        "SrcK8s_OwnerName": "",
        "SrcK8s_OwnerType": "",
        "SrcK8s_Type": "Pod",
        "SrcK8s_Zone": "us-east-1b",
    }


def test_enrich_otel_pod_to_unknown() -> None:
    entry = _enrich({"source.ip": "10.0.0.1", "destination.ip": "42.42.42.42"}, OTEL_RULES)
    assert entry == {
        "destination.ip": "42.42.42.42",
        "source.ip": "10.0.0.1",
        "source.k8s.host.ip": "100.0.0.1",
        "source.k8s.host.name": "host-1",
        "source.k8s.name": "pod-1",
        "source.k8s.namespace.name": "ns-1",
        "source.k8s.pod.name": "pod-1",
        "source.k8s.pod.uid": "",
        "source.k8s.owner.name": "",
        "source.k8s.owner.type": "",
        "source.k8s.type": "Pod",
        "source.k8s.zone": "us-east-1a",
    }


def test_enrich_otel_pod_to_service() -> None:
    entry = _enrich({"source.ip": "10.0.0.2", "destination.ip": "20.0.0.1"}, OTEL_RULES)
    assert entry == {
        "destination.ip": "20.0.0.1",
        "destination.k8s.name": "service-1",
        "destination.k8s.namespace.name": "ns-1",
        "destination.k8s.service.name": "service-1",
        "destination.k8s.service.uid": "",
        "destination.k8s.owner.name": "",
        "destination.k8s.owner.type": "",
        "destination.k8s.type": "Service",
        "source.ip": "10.0.0.2",
        "source.k8s.host.ip": "100.0.0.2",
        "source.k8s.host.name": "host-2",
        "source.k8s.name": "pod-2",
        "source.k8s.namespace.name": "ns-2",
        "source.k8s.pod.name": "pod-2",
        "source.k8s.pod.uid": "",
        "source.k8s.owner.name": "",
        "source.k8s.owner.type": "",
        "source.k8s.type": "Pod",
        "source.k8s.zone": "us-east-1b",
    }


def test_enrich_empty_namespace_is_never_emitted() -> None:
    # "1.2.3.4" is indexed with no object; "3.2.1.0" is not indexed at all.
    entry = _enrich({"SrcAddr": "1.2.3.4", "DstAddr": "3.2.1.0"}, RULES)
    assert "SrcK8s_Namespace" not in entry
    assert "DstK8s_Namespace" not in entry
    assert entry == {"SrcAddr": "1.2.3.4", "DstAddr": "3.2.1.0"}


def test_found_object_with_empty_namespace_skips_namespace_but_keeps_owner() -> None:
    resolver = StaticResolver({"10.1.1.1": ObjectInfo(type="Node", name="node-a")})
    entry: Dict[str, Any] = {"SrcAddr": "10.1.1.1"}
    EnrichmentEngine(resolver).apply(entry, RULES[0])
    assert entry == {
        "SrcAddr": "10.1.1.1",
        "SrcK8s_Name": "node-a",
        "SrcK8s_Type": "Node",
        "SrcK8s_OwnerName": "",
        "SrcK8s_OwnerType": "",
    }


def test_unmodeled_type_gets_common_fields_only() -> None:
    info = ObjectInfo(
        type="StatefulSet",
        name="db",
        namespace="data",
        host_name="host-1",
        host_ip="100.0.0.1",
        uid="abc",
        owner_name="db-operator",
        owner_type="Deployment",
    )
    resolver = StaticResolver({"10.9.9.9": info}, NODES)
    for rule in (RULES[0], OTEL_RULES[0]):
        entry: Dict[str, Any] = {"SrcAddr": "10.9.9.9", "source.ip": "10.9.9.9"}
        EnrichmentEngine(resolver).apply(entry, rule)
        added = set(entry) - {"SrcAddr", "source.ip"}
        keys = rule.keys
        assert keys is not None
        assert added == {keys.name, keys.type, keys.namespace, keys.owner_name, keys.owner_type}
        assert entry[keys.owner_name] == "db-operator"
        assert entry[keys.owner_type] == "Deployment"


def test_service_never_gets_host_or_zone_fields() -> None:
    info = ObjectInfo(type="Service", name="svc", namespace="ns", host_name="host-1", host_ip="100.0.0.1", uid="u-1")
    resolver = StaticResolver({"20.0.0.9": info}, NODES)
    for rule in (RULES[1], OTEL_RULES[1]):
        entry: Dict[str, Any] = {"DstAddr": "20.0.0.9", "destination.ip": "20.0.0.9"}
        EnrichmentEngine(resolver).apply(entry, rule)
        keys = rule.keys
        assert keys is not None
        assert keys.host_name not in entry
        assert keys.host_ip not in entry
        assert keys.zone not in entry
    assert entry["destination.k8s.service.uid"] == "u-1"


def test_scheme_equivalence() -> None:
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.1", "source.ip": "10.0.0.1"}
    engine = _engine()
    engine.apply(entry, RULES[0])
    engine.apply(entry, OTEL_RULES[0])
    legacy, otel = RULES[0].keys, OTEL_RULES[0].keys
    assert legacy is not None and otel is not None
    for attr in ("name", "type", "namespace", "owner_name", "owner_type", "host_name", "host_ip", "zone"):
        assert entry[getattr(legacy, attr)] == entry[getattr(otel, attr)]


def test_zone_not_added_without_add_zone() -> None:
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.1"}
    _engine().apply(entry, Rule(input="SrcAddr", output="SrcK8s"))
    assert "SrcK8s_Zone" not in entry
    assert entry["SrcK8s_HostName"] == "host-1"


def test_zone_missing_node_or_label_is_silent() -> None:
    infos = {
        "10.0.0.5": ObjectInfo(type="Pod", name="p5", namespace="ns", host_name="ghost", host_ip="100.0.0.5"),
        "10.0.0.6": ObjectInfo(type="Pod", name="p6", namespace="ns", host_name="bare", host_ip="100.0.0.6"),
    }
    nodes = {"bare": ObjectInfo(type="Node", name="bare", labels={"kubernetes.io/os": "linux"})}
    engine = EnrichmentEngine(StaticResolver(infos, nodes))
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.5", "DstAddr": "10.0.0.6"}
    for rule in RULES:
        engine.apply(entry, rule)
    assert "SrcK8s_Zone" not in entry
    assert "DstK8s_Zone" not in entry
    assert entry["SrcK8s_Name"] == "p5"
    assert entry["DstK8s_Name"] == "p6"


def test_pending_pod_without_host_has_no_host_fields() -> None:
    resolver = StaticResolver({"10.0.0.7": ObjectInfo(type="Pod", name="pending", namespace="ns")}, NODES)
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.7"}
    EnrichmentEngine(resolver).apply(entry, RULES[0])
    assert "SrcK8s_HostName" not in entry
    assert "SrcK8s_HostIP" not in entry
    assert "SrcK8s_Zone" not in entry


@pytest.mark.parametrize("entry", [{}, {"SrcAddr": None}, {"SrcAddr": ""}])
def test_missing_input_is_noop(entry: Dict[str, Any]) -> None:
    before = dict(entry)
    _engine().apply(entry, RULES[0])
    assert entry == before


def test_lookup_backend_error_propagates_without_partial_mutation() -> None:
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.1", "Proto": 6}
    engine = EnrichmentEngine(_FailingResolver(fail_objects=True))
    with pytest.raises(LookupBackendError) as exc:
        engine.apply(entry, RULES[0])
    assert exc.value.address == "10.0.0.1"
    assert entry == {"SrcAddr": "10.0.0.1", "Proto": 6}


def test_node_lookup_error_leaves_record_untouched() -> None:
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.1"}
    engine = EnrichmentEngine(_FailingResolver(fail_nodes=True))
    with pytest.raises(LookupBackendError):
        engine.apply(entry, RULES[0])
    assert entry == {"SrcAddr": "10.0.0.1"}


def test_unrelated_keys_are_preserved() -> None:
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.1", "Bytes": 1024, "SrcK8s_Custom": "keep"}
    _engine().apply(entry, RULES[0])
    assert entry["Bytes"] == 1024
    assert entry["SrcK8s_Custom"] == "keep"


def test_labels_are_copied_with_scheme_separator() -> None:
    info = ObjectInfo(type="Pod", name="web-0", namespace="shop", labels={"app": "web", "tier": "front"})
    engine = EnrichmentEngine(StaticResolver({"10.2.0.1": info}))
    entry: Dict[str, Any] = {"SrcAddr": "10.2.0.1", "source.ip": "10.2.0.1"}
    engine.apply(entry, Rule(input="SrcAddr", output="SrcK8s", kubernetes=K8sRule(labels_prefix="SrcK8s_Labels")))
    engine.apply(
        entry,
        Rule(input="source.ip", output="source.", assignee="otel", kubernetes=K8sRule(labels_prefix="source.labels")),
    )
    assert entry["SrcK8s_Labels_app"] == "web"
    assert entry["SrcK8s_Labels_tier"] == "front"
    assert entry["source.labels.app"] == "web"
    assert entry["source.labels.tier"] == "front"


def test_labels_never_replace_enrichment_or_existing_keys() -> None:
    info = ObjectInfo(type="Pod", name="web-0", namespace="shop", labels={"Name": "spoofed", "Bytes": "x", "app": "web"})
    engine = EnrichmentEngine(StaticResolver({"10.2.0.1": info}))
    entry: Dict[str, Any] = {"SrcAddr": "10.2.0.1", "SrcK8s_Bytes": 1}
    engine.apply(entry, Rule(input="SrcAddr", output="SrcK8s", kubernetes=K8sRule(labels_prefix="SrcK8s")))
    assert entry["SrcK8s_Name"] == "web-0"
    assert entry["SrcK8s_Bytes"] == 1
    assert entry["SrcK8s_app"] == "web"


def test_later_rule_can_read_earlier_output() -> None:
    # Resolve the owning host of a pod, then resolve that host IP as a second hop.
    infos = dict(INFO)
    infos["100.0.0.1"] = ObjectInfo(type="Node", name="host-1")
    engine = EnrichmentEngine(StaticResolver(infos, NODES))
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.1"}
    engine.apply_all(entry, [RULES[0], Rule(input="SrcK8s_HostIP", output="SrcHost")])
    assert entry["SrcHost_Name"] == "host-1"
    assert entry["SrcHost_Type"] == "Node"


def test_reapplying_a_rule_rewrites_identical_values() -> None:
    entry: Dict[str, Any] = {"SrcAddr": "10.0.0.1"}
    engine = _engine()
    engine.apply(entry, RULES[0])
    first = dict(entry)
    engine.apply(entry, RULES[0])
    assert entry == first
