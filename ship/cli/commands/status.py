"""`ship status` - show persisted run records."""

from __future__ import annotations

from pathlib import Path

import typer

from ship.cli.commands._helpers import exit_on_error
from ship.cli.commands.run_cmd import print_run_summary
from ship.cli.context import build_context
from ship.output.console import Style
from ship.pipeline.runs import RunStore


def status(
    run_id: str | None = typer.Argument(None, help="Run to show (default: list recent runs)"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of recent runs to list"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to ship.toml"),
) -> None:
    """Show a run record, or list the most recent runs."""
    ctx = build_context(config)
    store = RunStore(ctx.config.runs.directory, redactor=ctx.redactor)

    if run_id is not None:
        record = exit_on_error(store.load(run_id), ctx)
        ctx.console.header(f"{record.run_id} ({record.lane}, {record.trigger})")
        ctx.console.print(f"started:  {record.started_at.isoformat()}", Style.DIM)
        if record.finished_at is not None:
            ctx.console.print(f"finished: {record.finished_at.isoformat()}", Style.DIM)
        print_run_summary(record, ctx.console)
        for result in record.stages:
            if result.error is not None and result.error.hint:
                ctx.console.print(f"hint: {result.error.hint}", Style.DIM)
        return

    runs = store.recent(limit)
    if not runs:
        ctx.console.print(f"no runs recorded in {store.directory}", Style.DIM)
        return
    for record in runs:
        last = record.stages[-1].stage.value if record.stages else "-"
        kind = f" ({record.failure_kind})" if record.failure_kind else ""
        line = f"{record.run_id:<24} {record.lane:<11} {record.status.value:<10} {last}{kind}"
        ctx.console.print(line, Style.ERROR if record.failure_kind else Style.DEFAULT)
