from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .enrich.naming import KeySet, keys_for
from .util.errors import ConfigError

OP_ADD_KUBERNETES = "add_kubernetes"
OP_ADD_KUBERNETES_INFRA = "add_kubernetes_infra"
OPERATIONS = {OP_ADD_KUBERNETES, OP_ADD_KUBERNETES_INFRA}

RULE_KEYS = {"type", "input", "output", "assignee", "kubernetes", "kubernetes_infra"}
K8S_RULE_KEYS = {"add_zone", "labels_prefix"}
K8S_INFRA_RULE_KEYS = {"inputs", "output", "infra_prefixes"}


@dataclass(frozen=True)
class K8sRule:
    add_zone: bool = False
    labels_prefix: str = ""


@dataclass(frozen=True)
class K8sInfraRule:
    inputs: Tuple[str, ...]
    output: str
    infra_prefixes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Rule:
    """
    One enrichment rule.

    Output keys are resolved when the rule is built, so an unknown naming scheme
    fails here and never while records are being processed.
    """

    input: str = ""
    output: str = ""
    assignee: str = ""
    type: str = OP_ADD_KUBERNETES
    kubernetes: Optional[K8sRule] = None
    kubernetes_infra: Optional[K8sInfraRule] = None
    keys: Optional[KeySet] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.type not in OPERATIONS:
            raise ConfigError(f"Unknown rule type {self.type!r}; expected one of: {', '.join(sorted(OPERATIONS))}")
        if self.type == OP_ADD_KUBERNETES:
            if not self.input:
                raise ConfigError(f"Rule '{self.type}' requires 'input'")
            object.__setattr__(self, "keys", keys_for(self.output, self.assignee))
        else:
            infra = self.kubernetes_infra
            if infra is None:
                raise ConfigError(f"Rule '{self.type}' requires 'kubernetes_infra' options")
            if not infra.inputs:
                raise ConfigError("kubernetes_infra.inputs must list at least one field")
            if not infra.output:
                raise ConfigError("kubernetes_infra.output must be set")

    @property
    def add_zone(self) -> bool:
        return bool(self.kubernetes and self.kubernetes.add_zone)

    @property
    def labels_prefix(self) -> str:
        return self.kubernetes.labels_prefix if self.kubernetes else ""


def _coerce_bool(where: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"{where} must be a boolean")


def _coerce_str(where: str, value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{where} must be a string")
    return value


def _coerce_str_list(where: str, value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(v.strip() for v in value if v.strip())
    raise ConfigError(f"{where} must be a list of strings or comma-separated string")


def _check_keys(where: str, data: Dict[str, Any], allowed: set[str]) -> None:
    unknown = sorted(set(data.keys()) - allowed)
    if unknown:
        raise ConfigError(f"{where}: unknown field(s): {', '.join(unknown)}")


def _parse_k8s(where: str, value: Any) -> Optional[K8sRule]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    _check_keys(where, value, K8S_RULE_KEYS)
    return K8sRule(
        add_zone=_coerce_bool(f"{where}.add_zone", value.get("add_zone", False)),
        labels_prefix=_coerce_str(f"{where}.labels_prefix", value.get("labels_prefix")),
    )


def _parse_k8s_infra(where: str, value: Any) -> Optional[K8sInfraRule]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    _check_keys(where, value, K8S_INFRA_RULE_KEYS)
    return K8sInfraRule(
        inputs=_coerce_str_list(f"{where}.inputs", value.get("inputs")),
        output=_coerce_str(f"{where}.output", value.get("output")),
        infra_prefixes=_coerce_str_list(f"{where}.infra_prefixes", value.get("infra_prefixes")),
    )


def parse_rule(data: Any, index: int = 0) -> Rule:
    where = f"rules[{index}]"
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be a mapping")
    _check_keys(where, data, RULE_KEYS)
    try:
        return Rule(
            type=_coerce_str(f"{where}.type", data.get("type")) or OP_ADD_KUBERNETES,
            input=_coerce_str(f"{where}.input", data.get("input")),
            output=_coerce_str(f"{where}.output", data.get("output")),
            assignee=_coerce_str(f"{where}.assignee", data.get("assignee")),
            kubernetes=_parse_k8s(f"{where}.kubernetes", data.get("kubernetes")),
            kubernetes_infra=_parse_k8s_infra(f"{where}.kubernetes_infra", data.get("kubernetes_infra")),
        )
    except ConfigError as e:
        if str(e).startswith(where):
            raise
        raise ConfigError(f"{where}: {e}") from e


def parse_rules(data: Any) -> List[Rule]:
    """
    Validate a decoded rules document.

    Accepts either {"rules": [...]} or a bare list of rule mappings.
    """
    if isinstance(data, dict):
        items = data.get("rules")
        if items is None:
            raise ConfigError("Rules document is missing the 'rules' list")
    else:
        items = data
    if not isinstance(items, list):
        raise ConfigError("'rules' must be a list")
    return [parse_rule(item, i) for i, item in enumerate(items)]


def load_rules(path: Path) -> List[Rule]:
    if not path.exists():
        raise ConfigError(f"Rules file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse rules file {path}: {e}") from e
    if data is None:
        return []
    return parse_rules(data)
