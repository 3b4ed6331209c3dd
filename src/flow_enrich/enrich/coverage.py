from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from ..export.jsonl import iter_jsonl
from ..rules import OP_ADD_KUBERNETES, Rule
from .layer import LAYER_APP


def rule_label(rule: Rule) -> str:
    if rule.type == OP_ADD_KUBERNETES:
        return f"{rule.input} -> {rule.output}"
    infra = rule.kubernetes_infra
    inputs = ",".join(infra.inputs) if infra else ""
    output = infra.output if infra else ""
    return f"{rule.type}({inputs}) -> {output}"


def _input_fields(rule: Rule) -> Sequence[str]:
    if rule.type == OP_ADD_KUBERNETES:
        return (rule.input,)
    return rule.kubernetes_infra.inputs if rule.kubernetes_infra else ()


def _marker_field(rule: Rule) -> str:
    # Name and type are written together on every successful enrichment.
    if rule.type == OP_ADD_KUBERNETES and rule.keys is not None:
        return rule.keys.name
    return rule.kubernetes_infra.output if rule.kubernetes_infra else ""


@dataclass(frozen=True)
class RuleCoverage:
    rule: str
    with_input: int
    enriched: int
    by_type: Dict[str, int]

    @property
    def unresolved(self) -> int:
        return max(0, self.with_input - self.enriched)


@dataclass(frozen=True)
class EnrichCoverage:
    total_records: int
    rules: List[RuleCoverage]


class CoverageCounter:
    """Accumulates per-rule counts over enriched records."""

    def __init__(self, rules: Sequence[Rule]) -> None:
        self._rules = list(rules)
        self._total = 0
        self._with_input = [0] * len(self._rules)
        self._enriched = [0] * len(self._rules)
        self._by_type: List[Counter[str]] = [Counter() for _ in self._rules]

    def add(self, record: Mapping[str, Any]) -> None:
        self._total += 1
        for i, rule in enumerate(self._rules):
            if any(record.get(f) not in (None, "") for f in _input_fields(rule)):
                self._with_input[i] += 1
            marker = _marker_field(rule)
            if not marker or marker not in record:
                continue
            if rule.type == OP_ADD_KUBERNETES and rule.keys is not None:
                self._enriched[i] += 1
                self._by_type[i][str(record.get(rule.keys.type) or "")] += 1
                continue
            layer = str(record.get(marker) or "")
            self._by_type[i][layer] += 1
            # The layer field is always written; only an app endpoint counts as resolved.
            if layer == LAYER_APP:
                self._enriched[i] += 1

    def result(self) -> EnrichCoverage:
        return EnrichCoverage(
            total_records=self._total,
            rules=[
                RuleCoverage(
                    rule=rule_label(rule),
                    with_input=self._with_input[i],
                    enriched=self._enriched[i],
                    by_type=dict(sorted(self._by_type[i].items())),
                )
                for i, rule in enumerate(self._rules)
            ],
        )


def compute_enrichment_coverage(enriched_jsonl: Path, rules: Sequence[Rule]) -> EnrichCoverage:
    counter = CoverageCounter(rules)
    for rec in iter_jsonl(enriched_jsonl):
        counter.add(rec)
    return counter.result()
