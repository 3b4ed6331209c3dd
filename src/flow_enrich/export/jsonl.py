from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, TextIO

from ..util.errors import ExportError

STDIO_PATH = "-"


def stable_json_dumps(obj: Any) -> str:
    """
    Dump JSON with sort_keys=True and separators to ensure stable output.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _is_stdio(path: Path) -> bool:
    return str(path) == STDIO_PATH


@contextmanager
def _open_read(path: Path) -> Iterator[TextIO]:
    if _is_stdio(path):
        yield sys.stdin
        return
    if not path.exists():
        raise ExportError(f"Input file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        yield f


@contextmanager
def _open_write(path: Path) -> Iterator[TextIO]:
    if _is_stdio(path):
        yield sys.stdout
        sys.stdout.flush()
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        yield f


def iter_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    """
    Yield flow records from a JSONL file, skipping blank lines.
    Every non-blank line must decode to a JSON object.
    """
    with _open_read(path) as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError as e:
                raise ExportError(f"{path}:{lineno}: invalid JSON: {e}") from e
            if not isinstance(obj, dict):
                raise ExportError(f"{path}:{lineno}: record must be a JSON object")
            yield obj


def write_jsonl(records: Iterable[Dict[str, Any]], path: Path) -> int:
    """
    Write records as JSONL with stable key ordering, preserving record order.
    Returns the number of records written.
    """
    count = 0
    with _open_write(path) as f:
        for rec in records:
            f.write(stable_json_dumps(rec))
            f.write("\n")
            count += 1
    return count
