from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from ..util.errors import ConfigError

IdentityKeys = Tuple[str, str]


class Assignee(str, Enum):
    LEGACY = ""
    OTEL = "otel"


@dataclass(frozen=True)
class KeySet:
    """Concrete output field names for one rule."""

    name: str
    type: str
    namespace: str
    owner_name: str
    owner_type: str
    host_name: str
    host_ip: str
    zone: str
    pod_identity: Optional[IdentityKeys]
    service_identity: Optional[IdentityKeys]
    label_separator: str

    def label_key(self, prefix: str, label: str) -> str:
        return f"{prefix}{self.label_separator}{label}"


def _legacy_keys(output: str) -> KeySet:
    return KeySet(
        name=f"{output}_Name",
        type=f"{output}_Type",
        namespace=f"{output}_Namespace",
        owner_name=f"{output}_OwnerName",
        owner_type=f"{output}_OwnerType",
        host_name=f"{output}_HostName",
        host_ip=f"{output}_HostIP",
        zone=f"{output}_Zone",
        pod_identity=None,
        service_identity=None,
        label_separator="_",
    )


def _otel_keys(output: str) -> KeySet:
    # https://opentelemetry.io/docs/specs/semconv/resource/k8s/
    # owner/host/zone/type are not in the conventions and follow the same shape.
    base = f"{output}k8s."
    return KeySet(
        name=f"{base}name",
        type=f"{base}type",
        namespace=f"{base}namespace.name",
        owner_name=f"{base}owner.name",
        owner_type=f"{base}owner.type",
        host_name=f"{base}host.name",
        host_ip=f"{base}host.ip",
        zone=f"{base}zone",
        pod_identity=(f"{base}pod.name", f"{base}pod.uid"),
        service_identity=(f"{base}service.name", f"{base}service.uid"),
        label_separator=".",
    )


_SCHEMES: Dict[Assignee, Callable[[str], KeySet]] = {
    Assignee.LEGACY: _legacy_keys,
    Assignee.OTEL: _otel_keys,
}


def parse_assignee(value: Optional[str]) -> Assignee:
    raw = (value or "").strip().lower()
    try:
        return Assignee(raw)
    except ValueError:
        allowed = ", ".join(repr(a.value) for a in Assignee)
        raise ConfigError(f"Unknown assignee {value!r}; expected one of: {allowed}") from None


def keys_for(output: str, assignee: Optional[str] = None) -> KeySet:
    if not output:
        raise ConfigError("Rule output must be a non-empty prefix")
    return _SCHEMES[parse_assignee(assignee)](output)
