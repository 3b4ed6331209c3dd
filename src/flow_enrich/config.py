from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# --------
# Defaults
# --------
DEFAULT_WORKERS = 4
DEFAULT_BATCH_SIZE = 500
ALLOWED_CONFIG_KEYS = {
    "rules",
    "index",
    "input",
    "output",
    "workers",
    "batch_size",
    "fail_fast",
    "progress",
    "json_logs",
    "log_level",
    "log_file",
}
BOOL_CONFIG_KEYS = {"fail_fast", "progress", "json_logs"}
INT_CONFIG_KEYS = {"workers", "batch_size"}
PATH_CONFIG_KEYS = {"rules", "index", "input", "output", "log_file"}
STR_CONFIG_KEYS = {"log_level"}


@dataclass(frozen=True)
class RunConfig:
    # Inputs
    rules: Optional[Path] = None
    index: Optional[Path] = None
    input: Optional[Path] = None
    output: Optional[Path] = None

    # Processing
    workers: int = DEFAULT_WORKERS
    batch_size: int = DEFAULT_BATCH_SIZE
    fail_fast: bool = False

    # Output/UX
    progress: bool = False
    json_logs: bool = False
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # lookup command
    address: Optional[str] = None
    node: bool = False


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ValueError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except Exception as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ValueError(f"Config field '{key}' must be an integer")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS or value is None:
            continue
        if key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in PATH_CONFIG_KEYS:
            if not isinstance(value, (str, Path)):
                raise ValueError(f"Config field '{key}' must be a string path")
            normalized[key] = value
        elif key in STR_CONFIG_KEYS:
            if not isinstance(value, str):
                raise ValueError(f"Config field '{key}' must be a string")
            normalized[key] = value
    return normalized


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def _as_path(value: Any) -> Optional[Path]:
    if value is None or value == "":
        return None
    return Path(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flow-enrich",
        description="Enrich network flow records with Kubernetes metadata",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")

    def add_rules(p: argparse.ArgumentParser) -> None:
        p.add_argument("--rules", type=Path, default=None, help="Rules file (YAML/JSON)")

    def add_index(p: argparse.ArgumentParser) -> None:
        p.add_argument("--index", type=Path, default=None, help="Address index snapshot (YAML/JSON)")

    # run
    p_run = subparsers.add_parser("run", help="Enrich a JSONL file of flow records")
    add_common(p_run)
    add_rules(p_run)
    add_index(p_run)
    p_run.add_argument("--input", "-i", type=Path, default=None, help="Input JSONL ('-' for stdin)")
    p_run.add_argument("--output", "-o", type=Path, default=None, help="Output JSONL ('-' for stdout)")
    p_run.add_argument("--workers", type=int, default=None, help=f"Parallel record workers (default {DEFAULT_WORKERS})")
    p_run.add_argument(
        "--batch-size", type=int, default=None, help=f"Records per ordered batch (default {DEFAULT_BATCH_SIZE})"
    )
    p_run.add_argument(
        "--fail-fast",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Abort the run on the first lookup backend error",
    )
    p_run.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Show a progress bar and summary table",
    )

    # validate-rules
    p_val = subparsers.add_parser("validate-rules", help="Validate a rules file and print resolved keys")
    add_common(p_val)
    add_rules(p_val)

    # lookup
    p_lookup = subparsers.add_parser("lookup", help="Resolve one address against an index snapshot")
    add_common(p_lookup)
    add_index(p_lookup)
    p_lookup.add_argument("address", help="Address (or node name with --node) to resolve")
    p_lookup.add_argument("--node", action="store_true", help="Resolve a node by name instead of an address")

    # coverage
    p_cov = subparsers.add_parser("coverage", help="Per-rule enrichment counts over an enriched JSONL file")
    add_common(p_cov)
    add_rules(p_cov)
    p_cov.add_argument("--input", "-i", type=Path, default=None, help="Enriched JSONL")

    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, RunConfig) where command is one of: run|validate-rules|lookup|coverage
    """
    ns = args if args is not None else build_parser().parse_args(argv)
    command = ns.command

    base: Dict[str, Any] = {
        "rules": None,
        "index": None,
        "input": None,
        "output": None,
        "workers": DEFAULT_WORKERS,
        "batch_size": DEFAULT_BATCH_SIZE,
        "fail_fast": False,
        "progress": False,
        "json_logs": False,
        "log_level": "INFO",
        "log_file": None,
    }

    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "rules": _env_str("FLOW_ENRICH_RULES"),
            "index": _env_str("FLOW_ENRICH_INDEX"),
            "input": _env_str("FLOW_ENRICH_INPUT"),
            "output": _env_str("FLOW_ENRICH_OUTPUT"),
            "workers": _env_int("FLOW_ENRICH_WORKERS"),
            "batch_size": _env_int("FLOW_ENRICH_BATCH_SIZE"),
            "fail_fast": _env_bool("FLOW_ENRICH_FAIL_FAST"),
            "progress": _env_bool("FLOW_ENRICH_PROGRESS"),
            "json_logs": _env_bool("FLOW_ENRICH_JSON_LOGS"),
            "log_level": _env_str("FLOW_ENRICH_LOG_LEVEL"),
            "log_file": _env_str("FLOW_ENRICH_LOG_FILE"),
        }
    )

    cli_cfg: Dict[str, Any] = _compact_dict({key: getattr(ns, key, None) for key in base})

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))

    workers = int(DEFAULT_WORKERS if merged["workers"] is None else merged["workers"])
    batch_size = int(DEFAULT_BATCH_SIZE if merged["batch_size"] is None else merged["batch_size"])
    if workers <= 0:
        raise ValueError("workers must be a positive integer")
    if batch_size <= 0:
        raise ValueError("batch_size must be a positive integer")

    cfg = RunConfig(
        rules=_as_path(merged.get("rules")),
        index=_as_path(merged.get("index")),
        input=_as_path(merged.get("input")),
        output=_as_path(merged.get("output")),
        workers=workers,
        batch_size=batch_size,
        fail_fast=bool(merged["fail_fast"]),
        progress=bool(merged["progress"]),
        json_logs=bool(merged["json_logs"]),
        log_level=str(merged.get("log_level") or "INFO").upper(),
        log_file=_as_path(merged.get("log_file")),
        address=getattr(ns, "address", None),
        node=bool(getattr(ns, "node", False)),
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return {
        "rules": str(cfg.rules) if cfg.rules else None,
        "index": str(cfg.index) if cfg.index else None,
        "input": str(cfg.input) if cfg.input else None,
        "output": str(cfg.output) if cfg.output else None,
        "workers": cfg.workers,
        "batch_size": cfg.batch_size,
        "fail_fast": cfg.fail_fast,
        "progress": cfg.progress,
        "json_logs": cfg.json_logs,
        "log_level": cfg.log_level,
        "log_file": str(cfg.log_file) if cfg.log_file else None,
    }
