from __future__ import annotations

from typing import Tuple

from ..k8s.info import ObjectInfo


def resolve_owner(info: ObjectInfo) -> Tuple[str, str]:
    """
    Return (owner_name, owner_type) for a resolved object.

    The resolver has already walked the owner chain (e.g. Pod -> ReplicaSet ->
    Deployment); an object without owner yields two empty strings, which are
    still emitted.
    """
    return info.owner_name or "", info.owner_type or ""
