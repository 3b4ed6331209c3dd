from __future__ import annotations

import logging
import sys
from dataclasses import asdict
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .config import RunConfig, dump_config, load_run_config
from .enrich.coverage import CoverageCounter, compute_enrichment_coverage, rule_label
from .enrich.engine import EnrichmentEngine
from .export.jsonl import STDIO_PATH, iter_jsonl, stable_json_dumps, write_jsonl
from .k8s.resolver import LookupStatus, load_index
from .logging import LogConfig, add_run_log_file, get_logger, setup_logging
from .rules import OP_ADD_KUBERNETES, Rule, load_rules
from .util.concurrency import map_ordered_batches
from .util.errors import ConfigError, LookupBackendError, as_exit_code
from .util.rich_progress import RunProgress, render_run_summary_table

LOG = get_logger(__name__)


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    **extra: Any,
) -> None:
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(step)
        elif phase in {"complete", "error"}:
            duration_ms = timers.finish(step)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


def _require(value: Optional[Path], flag: str, command: str) -> Path:
    if value is None:
        raise ConfigError(f"{command} requires {flag}")
    return value


def _same_file(a: Path, b: Path) -> bool:
    if str(a) == STDIO_PATH or str(b) == STDIO_PATH:
        return False
    return a.resolve() == b.resolve()


def _enrich_record(
    engine: EnrichmentEngine,
    rules: Sequence[Rule],
    record: Dict[str, Any],
    *,
    fail_fast: bool,
) -> Tuple[Dict[str, Any], int]:
    """
    Apply every rule to one record and return it with its count of failed rules.
    A lookup backend error skips only the failing rule unless fail_fast is set.
    """
    errors = 0
    for rule in rules:
        try:
            engine.apply(record, rule)
        except LookupBackendError as e:
            if fail_fast:
                raise
            errors += 1
            LOG.warning(
                "Enrichment rule failed; record left unenriched for this rule",
                extra={"rule": rule_label(rule), "address": e.address, "error": str(e)},
            )
    return record, errors


def cmd_run(cfg: RunConfig) -> int:
    rules_path = _require(cfg.rules, "--rules", "run")
    index_path = _require(cfg.index, "--index", "run")
    input_path = _require(cfg.input, "--input", "run")
    output_path = cfg.output or Path(STDIO_PATH)
    if _same_file(input_path, output_path):
        raise ConfigError(f"run --output must differ from --input: {output_path}")
    timers = _StepTimers()

    LOG.debug("Effective configuration", extra={"config": dump_config(cfg)})

    rules = load_rules(rules_path)
    _log_event(
        LOG, logging.INFO, "Loading address index", step="index", phase="start", timers=timers, index_path=str(index_path)
    )
    resolver = load_index(index_path)
    _log_event(LOG, logging.INFO, "Address index loaded", step="index", phase="complete", timers=timers)

    engine = EnrichmentEngine(resolver)
    counter = CoverageCounter(rules)
    error_count = 0

    def _worker(record: Dict[str, Any]) -> Tuple[Dict[str, Any], int]:
        return _enrich_record(engine, rules, record, fail_fast=cfg.fail_fast)

    _log_event(
        LOG,
        logging.INFO,
        "Enrichment started",
        step="enrich",
        phase="start",
        timers=timers,
        rules=len(rules),
        workers=cfg.workers,
    )
    status = "OK"
    with RunProgress(enabled=cfg.progress) as progress:

        def _collect(results: Iterable[Tuple[Dict[str, Any], int]]) -> Iterator[Dict[str, Any]]:
            nonlocal error_count
            for record, errors in results:
                error_count += errors
                counter.add(record)
                progress.advance(errors=errors)
                yield record

        try:
            written = write_jsonl(
                _collect(
                    map_ordered_batches(
                        _worker, iter_jsonl(input_path), max_workers=cfg.workers, batch_size=cfg.batch_size
                    )
                ),
                output_path,
            )
        except Exception:
            _log_event(LOG, logging.ERROR, "Enrichment failed", step="enrich", phase="error", timers=timers)
            raise
    if error_count:
        status = "PARTIAL"
    _log_event(
        LOG,
        logging.INFO,
        "Enrichment complete",
        step="enrich",
        phase="complete",
        timers=timers,
        records=written,
        errors=error_count,
        status=status,
    )
    render_run_summary_table(
        enabled=cfg.progress,
        status=status,
        coverage=counter.result(),
        errors=error_count,
        output=str(output_path),
    )
    return 0


def _describe_rule(rule: Rule) -> List[str]:
    lines = [f"- {rule_label(rule)} [{rule.type}]"]
    if rule.type == OP_ADD_KUBERNETES and rule.keys is not None:
        keys = rule.keys
        lines.append(f"    scheme: {rule.assignee or 'legacy'}")
        lines.append(f"    keys: {keys.name}, {keys.type}, {keys.namespace}, {keys.owner_name}, {keys.owner_type}")
        lines.append(f"    pod: {keys.host_name}, {keys.host_ip}" + (f", {keys.zone}" if rule.add_zone else ""))
        if keys.pod_identity:
            lines.append(f"    pod identity: {', '.join(keys.pod_identity)}")
        if keys.service_identity:
            lines.append(f"    service identity: {', '.join(keys.service_identity)}")
        if rule.labels_prefix:
            lines.append(f"    labels: {keys.label_key(rule.labels_prefix, '<label>')}")
    return lines


def cmd_validate_rules(cfg: RunConfig) -> int:
    rules = load_rules(_require(cfg.rules, "--rules", "validate-rules"))
    print(f"Rules: {len(rules)}")
    for rule in rules:
        for line in _describe_rule(rule):
            print(line)
    return 0


def cmd_lookup(cfg: RunConfig) -> int:
    resolver = load_index(_require(cfg.index, "--index", "lookup"))
    key = cfg.address or ""
    result = resolver.lookup_node(key) if cfg.node else resolver.lookup(key)
    if result.status is LookupStatus.ERROR:
        raise LookupBackendError(f"Lookup failed for {key}: {result.error}", address=key)
    if result.status is LookupStatus.NOT_FOUND or result.info is None:
        print(f"{key}: not found")
        return 1
    info = asdict(result.info)
    info["labels"] = dict(result.info.labels)
    info["ips"] = list(result.info.ips)
    print(stable_json_dumps(info))
    return 0


def cmd_coverage(cfg: RunConfig) -> int:
    rules = load_rules(_require(cfg.rules, "--rules", "coverage"))
    coverage = compute_enrichment_coverage(_require(cfg.input, "--input", "coverage"), rules)

    print(f"Total records: {coverage.total_records}")
    for rc in coverage.rules:
        print(f"- {rc.rule}: with_input={rc.with_input} enriched={rc.enriched} unresolved={rc.unresolved}")
        for value, count in rc.by_type.items():
            print(f"    {value or '(empty)'}: {count}")
    return 0


COMMAND_HANDLERS = {
    "run": cmd_run,
    "validate-rules": cmd_validate_rules,
    "lookup": cmd_lookup,
    "coverage": cmd_coverage,
}


def main(argv: Optional[List[str]] = None) -> None:
    try:
        command, cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))
        if cfg.log_file is not None:
            add_run_log_file(cfg.log_file)

        handler = COMMAND_HANDLERS.get(command)
        if handler is None:
            raise ConfigError(f"Unknown command: {command}")
        sys.exit(handler(cfg))
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except Exception as e:
        setup_logging(LogConfig())
        LOG.error("Execution failed", extra={"error": str(e)})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
