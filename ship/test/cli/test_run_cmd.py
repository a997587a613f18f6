from __future__ import annotations

import signal
from datetime import UTC, datetime
from pathlib import Path

import pytest
import typer

import ship.cli.commands.run_cmd as run_cmd
from ship.cli.context import CLIContext
from ship.core.cancel import CancelToken
from ship.core.config import PipelineConfig, RunsConfig
from ship.core.errors import ErrorCode
from ship.core.redact import Redactor
from ship.output.console import MockConsole
from ship.pipeline.errors import StageError
from ship.pipeline.lanes import Lane
from ship.pipeline.model import PipelineRun, RunStatus, Stage, StageResult, StageStatus
from ship.pipeline.runs import RunStore

NOW = datetime(2026, 6, 1, tzinfo=UTC)


def _ctx(tmp_path: Path) -> CLIContext:
    return CLIContext(
        config=PipelineConfig(runs=RunsConfig(directory=tmp_path / "runs")),
        config_path=tmp_path / "ship.toml",
        console=MockConsole(),
        redactor=Redactor(),
    )


def _finished(run_id: str, lane: str, failure_kind: str | None) -> PipelineRun:
    run = PipelineRun(run_id=run_id, lane=lane, trigger="manual", started_at=NOW).start()
    if failure_kind is None:
        run = run.with_stage(StageResult(stage=Stage.AUTHENTICATING, status=StageStatus.SUCCEEDED, duration_seconds=1))
        return run.finish(RunStatus.SUCCEEDED, at=NOW)
    run = run.with_stage(
        StageResult(
            stage=Stage.AUTHENTICATING,
            status=StageStatus.FAILED,
            duration_seconds=1,
            error=StageError(kind=failure_kind, message="boom"),  # type: ignore[arg-type]
        )
    )
    return run.finish(RunStatus.FAILED, at=NOW, failure_kind=failure_kind)


class FakeOrchestrator:
    def __init__(self, failure_kind: str | None) -> None:
        self.failure_kind = failure_kind
        self.calls: list[tuple[str, str, str]] = []

    def run(self, *, run_id: str, lane: Lane, trigger: str = "manual") -> PipelineRun:
        self.calls.append((run_id, lane.name, trigger))
        return _finished(run_id, lane.name, self.failure_kind)


def _patch(monkeypatch: pytest.MonkeyPatch, ctx: CLIContext, orchestrator: FakeOrchestrator) -> None:
    monkeypatch.setattr(run_cmd, "build_context", lambda config=None: ctx)
    monkeypatch.setattr(run_cmd, "build_orchestrator", lambda config, **_: orchestrator)


@pytest.mark.parametrize(
    ("failure_kind", "code"),
    [
        (None, ErrorCode.OK),
        ("auth", ErrorCode.STAGE_FAILED),
        ("build", ErrorCode.STAGE_FAILED),
        ("rate_limited", ErrorCode.RATE_LIMITED),
        ("cancelled", ErrorCode.CANCELLED),
        ("timeout", ErrorCode.TIMED_OUT),
    ],
)
def test_exit_code_follows_failure_kind(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, failure_kind: str | None, code: ErrorCode
) -> None:
    orchestrator = FakeOrchestrator(failure_kind)
    _patch(monkeypatch, _ctx(tmp_path), orchestrator)

    with pytest.raises(typer.Exit) as exc:
        run_cmd.run(lane="beta", run_id="r1", trigger="scheduled", config=None)

    assert exc.value.exit_code == int(code)
    assert orchestrator.calls == [("r1", "beta", "scheduled")]


def test_unknown_lane(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    orchestrator = FakeOrchestrator(None)
    _patch(monkeypatch, ctx, orchestrator)

    with pytest.raises(typer.Exit) as exc:
        run_cmd.run(lane="nightly", run_id="r1", trigger="manual", config=None)

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
    assert orchestrator.calls == []
    assert isinstance(ctx.console, MockConsole)
    assert "error: unknown lane: nightly" in ctx.console.messages


@pytest.mark.parametrize(("run_id", "trigger"), [("../escape", "manual"), ("r1", "cron")])
def test_invalid_arguments(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, run_id: str, trigger: str) -> None:
    orchestrator = FakeOrchestrator(None)
    _patch(monkeypatch, _ctx(tmp_path), orchestrator)

    with pytest.raises(typer.Exit) as exc:
        run_cmd.run(lane="release", run_id=run_id, trigger=trigger, config=None)

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
    assert orchestrator.calls == []


def test_run_id_cannot_be_reused(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    RunStore(tmp_path / "runs", redactor=ctx.redactor).save(_finished("r1", "beta", None))
    orchestrator = FakeOrchestrator(None)
    _patch(monkeypatch, ctx, orchestrator)

    with pytest.raises(typer.Exit) as exc:
        run_cmd.run(lane="beta", run_id="r1", trigger="manual", config=None)

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
    assert orchestrator.calls == []


def test_summary_lists_stages() -> None:
    console = MockConsole()
    run_cmd.print_run_summary(_finished("r1", "beta", "auth"), console)

    assert any(m.startswith("authenticating") and "[auth]" in m for m in console.messages)
    assert console.messages[-1] == "error: run r1 failed (auth)"


def test_signals_cancel_the_run() -> None:
    cancel = CancelToken()
    previous = signal.getsignal(signal.SIGTERM)

    with run_cmd.cancel_on_signals(cancel):
        handler = signal.getsignal(signal.SIGTERM)
        assert callable(handler)
        handler(signal.SIGTERM, None)

    assert cancel.cancelled
    assert cancel.reason == "received SIGTERM"
    assert signal.getsignal(signal.SIGTERM) == previous
