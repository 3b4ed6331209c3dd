from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

import yaml

from ..logging import get_logger
from ..util.errors import IndexLoadError
from .info import TYPE_NODE, ObjectInfo

LOG = get_logger(__name__)


class LookupStatus(str, Enum):
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


@dataclass(frozen=True)
class LookupResult:
    status: LookupStatus
    info: Optional[ObjectInfo] = None
    error: Optional[str] = None

    @classmethod
    def found(cls, info: ObjectInfo) -> "LookupResult":
        return cls(status=LookupStatus.FOUND, info=info)

    @classmethod
    def not_found(cls) -> "LookupResult":
        return cls(status=LookupStatus.NOT_FOUND)

    @classmethod
    def failed(cls, error: str) -> "LookupResult":
        return cls(status=LookupStatus.ERROR, error=error)


@runtime_checkable
class AddressResolver(Protocol):
    """
    Address-to-object lookup contract.

    Implementations must be safe for concurrent reads: the engine may be driven
    from a pool of record workers sharing a single resolver.
    """

    def lookup(self, address: str) -> LookupResult:
        ...

    def lookup_node(self, name: str) -> LookupResult:
        ...


class StaticResolver:
    """
    Read-only resolver over prebuilt maps.

    An address mapped to None is reported as NOT_FOUND, same as an absent one.
    """

    def __init__(
        self,
        objects_by_address: Mapping[str, Optional[ObjectInfo]],
        nodes_by_name: Optional[Mapping[str, Optional[ObjectInfo]]] = None,
    ) -> None:
        self._objects: Dict[str, Optional[ObjectInfo]] = dict(objects_by_address)
        self._nodes: Dict[str, Optional[ObjectInfo]] = dict(nodes_by_name or {})

    def lookup(self, address: str) -> LookupResult:
        info = self._objects.get(address)
        if info is None:
            return LookupResult.not_found()
        return LookupResult.found(info)

    def lookup_node(self, name: str) -> LookupResult:
        info = self._nodes.get(name)
        if info is None:
            return LookupResult.not_found()
        return LookupResult.found(info)

    def __len__(self) -> int:
        return len(self._objects)


def _load_data(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise IndexLoadError(f"Index snapshot not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            obj = json.loads(raw)
        else:
            obj = yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise IndexLoadError(f"Failed to parse index snapshot {path}: {e}") from e
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise IndexLoadError("Index snapshot must be a mapping/object")
    return obj


def _as_labels(where: str, value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise IndexLoadError(f"{where}: labels must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _as_ips(where: str, value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise IndexLoadError(f"{where}: ips must be a list of strings")
    return tuple(str(ip).strip() for ip in value if str(ip).strip())


def _parse_entry(where: str, entry: Any, default_type: Optional[str] = None) -> ObjectInfo:
    if not isinstance(entry, dict):
        raise IndexLoadError(f"{where}: entry must be a mapping")
    obj_type = str(entry.get("type") or default_type or "").strip()
    name = str(entry.get("name") or "").strip()
    if not obj_type:
        raise IndexLoadError(f"{where}: missing required field 'type'")
    if not name:
        raise IndexLoadError(f"{where}: missing required field 'name'")
    return ObjectInfo(
        type=obj_type,
        name=name,
        namespace=str(entry.get("namespace") or ""),
        host_name=str(entry.get("host_name") or ""),
        host_ip=str(entry.get("host_ip") or ""),
        uid=str(entry.get("uid") or ""),
        owner_name=str(entry.get("owner_name") or ""),
        owner_type=str(entry.get("owner_type") or ""),
        labels=_as_labels(where, entry.get("labels")),
        ips=_as_ips(where, entry.get("ips")),
    )


def _index_addresses(index: Dict[str, Optional[ObjectInfo]], info: ObjectInfo) -> None:
    for ip in info.ips:
        previous = index.get(ip)
        if previous is not None:
            LOG.warning(
                "Duplicate address in index snapshot; last entry wins",
                extra={"address": ip, "previous": previous.name, "current": info.name},
            )
        index[ip] = info


def build_resolver(data: Mapping[str, Any]) -> StaticResolver:
    """
    Build a StaticResolver from a decoded snapshot document.

    Schema:
      objects: list of {type, name, namespace?, ips, host_name?, host_ip?, uid?,
               owner_name?, owner_type?, labels?}
      nodes:   list of {name, ips?, labels?, uid?}
    """
    objects_raw = data.get("objects") or []
    nodes_raw = data.get("nodes") or []
    if not isinstance(objects_raw, list):
        raise IndexLoadError("Index field 'objects' must be a list")
    if not isinstance(nodes_raw, list):
        raise IndexLoadError("Index field 'nodes' must be a list")

    by_address: Dict[str, Optional[ObjectInfo]] = {}
    by_node: Dict[str, Optional[ObjectInfo]] = {}

    nodes: List[ObjectInfo] = [
        _parse_entry(f"nodes[{i}]", entry, default_type=TYPE_NODE) for i, entry in enumerate(nodes_raw)
    ]
    for node in nodes:
        by_node[node.name] = node
        _index_addresses(by_address, node)

    for i, entry in enumerate(objects_raw):
        _index_addresses(by_address, _parse_entry(f"objects[{i}]", entry))

    return StaticResolver(by_address, by_node)


def load_index(path: Path) -> StaticResolver:
    resolver = build_resolver(_load_data(path))
    LOG.info("Loaded address index", extra={"index_path": str(path), "addresses": len(resolver)})
    return resolver
