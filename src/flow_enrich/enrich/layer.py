from __future__ import annotations

from typing import Iterable, Optional, Sequence

from ..k8s.info import ObjectInfo

LAYER_APP = "app"
LAYER_INFRA = "infra"

DEFAULT_INFRA_PREFIXES = ("openshift", "kube-")


def is_app(info: Optional[ObjectInfo], extra_prefixes: Sequence[str] = ()) -> bool:
    # Unresolved addresses and cluster-scoped objects never count as application traffic.
    if info is None or not info.namespace:
        return False
    prefixes = DEFAULT_INFRA_PREFIXES + tuple(p for p in extra_prefixes if p)
    return not info.namespace.startswith(prefixes)


def classify_layer(objects: Iterable[Optional[ObjectInfo]], extra_prefixes: Sequence[str] = ()) -> str:
    """Return "app" if any endpoint lives outside infrastructure namespaces, else "infra"."""
    for info in objects:
        if is_app(info, extra_prefixes):
            return LAYER_APP
    return LAYER_INFRA
