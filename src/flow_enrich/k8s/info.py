from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Tuple

TYPE_POD = "Pod"
TYPE_SERVICE = "Service"
TYPE_NODE = "Node"

NODE_ZONE_LABEL = "topology.kubernetes.io/zone"


@dataclass(frozen=True)
class ObjectInfo:
    """
    Resolved identity of a workload, service or node.

    Instances belong to the resolver that produced them and must be treated as a
    read-only snapshot for the duration of a single record.
    """

    type: str
    name: str
    namespace: str = ""
    host_name: str = ""
    host_ip: str = ""
    uid: str = ""
    owner_name: str = ""
    owner_type: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)
    ips: Tuple[str, ...] = ()

    @property
    def is_pod(self) -> bool:
        return self.type == TYPE_POD

    @property
    def is_service(self) -> bool:
        return self.type == TYPE_SERVICE

    def zone(self) -> str:
        # Only meaningful on Node objects.
        return str(self.labels.get(NODE_ZONE_LABEL) or "")
