"""`ship run` - execute one pipeline run for a lane."""

from __future__ import annotations

import signal
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType

import typer

from ship.cli.commands._helpers import exit_with_code
from ship.cli.context import build_context
from ship.core.cancel import CancelToken
from ship.core.errors import ErrorCode
from ship.output.console import ConsoleProtocol, Style
from ship.output.errors import stage_error_exit_code
from ship.pipeline.lanes import LANES, get_lane
from ship.pipeline.model import PipelineRun, RunStatus
from ship.pipeline.orchestrator import build_orchestrator
from ship.pipeline.runs import RunStore, valid_run_id

TRIGGERS = ("manual", "scheduled")


@contextmanager
def cancel_on_signals(cancel: CancelToken) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into run cancellation for the duration of the block."""

    def handler(signum: int, frame: FrameType | None) -> None:
        cancel.cancel(f"received {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def print_run_summary(run: PipelineRun, console: ConsoleProtocol) -> None:
    console.newline()
    for result in run.stages:
        line = f"{result.stage.value:<15} {result.status.value:<10} {result.duration_seconds:8.1f}s"
        if result.retry_count:
            line += f"  retries={result.retry_count}"
        if result.error is not None:
            line += f"  [{result.error.kind}]"
        console.print(line, Style.DEFAULT if result.succeeded else Style.ERROR)
    if run.artifact_path is not None:
        console.print(f"artifact: {run.artifact_path}", Style.DIM)
    if run.status == RunStatus.SUCCEEDED:
        console.success(f"run {run.run_id} {run.status.value}")
    elif run.failure_kind is not None:
        console.error(f"run {run.run_id} {run.status.value} ({run.failure_kind})")
    else:
        console.info(f"run {run.run_id} {run.status.value}")


def run(
    lane: str = typer.Argument(..., help=f"Lane to execute ({', '.join(LANES)})"),
    run_id: str = typer.Option(..., "--run-id", help="Unique identifier for this run"),
    trigger: str = typer.Option("manual", "--trigger", help="What started the run (manual, scheduled)"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to ship.toml"),
) -> None:
    """Run the release pipeline for a lane."""
    ctx = build_context(config)

    selected = get_lane(lane)
    if selected is None:
        ctx.console.error(f"unknown lane: {lane}")
        ctx.console.print(f"available: {', '.join(LANES)}", Style.DIM)
        exit_with_code(int(ErrorCode.USER_ERROR))
    if trigger not in TRIGGERS:
        ctx.console.error(f"invalid --trigger: {trigger} (expected manual or scheduled)")
        exit_with_code(int(ErrorCode.USER_ERROR))
    if not valid_run_id(run_id):
        ctx.console.error(f"invalid --run-id: {run_id!r}")
        ctx.console.print("use letters, digits, '.', '_' and '-' only", Style.DIM)
        exit_with_code(int(ErrorCode.USER_ERROR))
    if RunStore(ctx.config.runs.directory, redactor=ctx.redactor).exists(run_id):
        ctx.console.error(f"run {run_id} already exists; run ids cannot be reused")
        exit_with_code(int(ErrorCode.USER_ERROR))

    cancel = CancelToken()
    orchestrator = build_orchestrator(ctx.config, console=ctx.console, cancel=cancel, redactor=ctx.redactor)
    with cancel_on_signals(cancel):
        result = orchestrator.run(
            run_id=run_id,
            lane=selected,
            trigger="scheduled" if trigger == "scheduled" else "manual",
        )

    print_run_summary(result, ctx.console)
    exit_with_code(stage_error_exit_code(result.failure_kind))
