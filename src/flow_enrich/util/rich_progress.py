from __future__ import annotations

from typing import Any, Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..enrich.coverage import EnrichCoverage


class RunProgress:
    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._enabled = bool(enabled)
        self._console = console or Console(stderr=True)
        self._progress: Optional[Progress] = None
        self._task: Optional[int] = None
        self._errors = 0
        if self._enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TextColumn("errors={task.fields[errors]}"),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> RunProgress:
        if self._progress is not None:
            self._progress.start()
            self._task = self._progress.add_task("Enrichment", total=None, errors=0)
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._progress is not None:
            self._progress.stop()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def advance(self, *, count: int = 1, errors: int = 0) -> None:
        if self._progress is None or self._task is None:
            return
        self._errors += errors
        self._progress.update(self._task, advance=count, errors=self._errors)


def render_run_summary_table(
    *,
    enabled: bool,
    status: str,
    coverage: EnrichCoverage,
    errors: int,
    output: str,
    console: Optional[Console] = None,
) -> None:
    if not enabled:
        return
    table = Table(title="Enrichment Summary", show_header=True, header_style="bold")
    table.add_column("Rule", style="cyan")
    table.add_column("With input", justify="right")
    table.add_column("Enriched", justify="right")
    table.add_column("Unresolved", justify="right")
    table.add_column("By type", style="white")
    for rc in coverage.rules:
        by_type = ", ".join(f"{k or '(empty)'}={v}" for k, v in rc.by_type.items())
        table.add_row(rc.rule, str(rc.with_input), str(rc.enriched), str(rc.unresolved), by_type)
    table.caption = f"status={status} records={coverage.total_records} errors={errors} output={output}"
    (console or Console(stderr=True)).print(table)
