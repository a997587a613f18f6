from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from ship.pipeline.errors import StageError
from ship.pipeline.lanes import LANES, get_lane
from ship.pipeline.model import (
    STAGE_ORDER,
    AuthToken,
    Credential,
    PipelineRun,
    RunStatus,
    Stage,
    StageResult,
    StageStatus,
    TerminalRunError,
)

NOW = datetime(2026, 6, 1, tzinfo=UTC)


def _ok(stage: Stage) -> StageResult:
    return StageResult(stage=stage, status=StageStatus.SUCCEEDED, duration_seconds=1.0)


def _run() -> PipelineRun:
    return PipelineRun(run_id="r1", lane="release", trigger="manual", started_at=NOW).start()


class TestPipelineRun:
    def test_stages_in_order(self) -> None:
        run = _run()
        for stage in STAGE_ORDER:
            run = run.with_stage(_ok(stage))
        run = run.finish(RunStatus.SUCCEEDED, at=NOW)

        assert [r.stage for r in run.stages] == list(STAGE_ORDER)
        assert run.finished_at == NOW

    def test_out_of_order_stage_rejected(self) -> None:
        with pytest.raises(TerminalRunError, match="out of order"):
            _run().with_stage(_ok(Stage.SYNCING))

    def test_no_stage_after_failure(self) -> None:
        failed = StageResult(
            stage=Stage.AUTHENTICATING,
            status=StageStatus.FAILED,
            duration_seconds=0.5,
            error=StageError(kind="auth", message="denied"),
        )
        run = _run().with_stage(failed)
        with pytest.raises(TerminalRunError):
            run.with_stage(_ok(Stage.SYNCING))

    def test_finished_run_is_immutable(self) -> None:
        run = _run().finish(RunStatus.FAILED, at=NOW, failure_kind="auth")
        with pytest.raises(TerminalRunError):
            run.with_stage(_ok(Stage.AUTHENTICATING))
        with pytest.raises(TerminalRunError):
            run.with_artifact(Path("App.ipa"))
        with pytest.raises(TerminalRunError):
            run.finish(RunStatus.SUCCEEDED, at=NOW)

    def test_finish_requires_terminal_status(self) -> None:
        with pytest.raises(ValueError):
            _run().finish(RunStatus.RUNNING, at=NOW)

    def test_stage_result_lookup(self) -> None:
        run = _run().with_stage(_ok(Stage.AUTHENTICATING))
        assert run.stage_result(Stage.AUTHENTICATING) == _ok(Stage.AUTHENTICATING)
        assert run.stage_result(Stage.UPLOADING) is None


def test_credential_scope() -> None:
    credential = Credential(name="asc_private_key", scope=(Stage.AUTHENTICATING,), value="secret")
    assert credential.allows(Stage.AUTHENTICATING)
    assert not credential.allows(Stage.BUILDING)
    assert "secret" not in repr(credential)
    assert Credential(name="n", scope=(), value="v").allows(Stage.BUILDING)


def test_token_expiry_with_skew() -> None:
    token = AuthToken(value="jwt", expires_at=100.0)
    assert not token.expired(50.0)
    assert token.expired(50.0, skew=60.0)
    assert "jwt" not in repr(token)


def test_lanes() -> None:
    assert LANES["release"].destination == "review"
    assert LANES["beta"].destination == "beta"
    assert LANES["build-only"].stages == STAGE_ORDER[:3]
    assert not LANES["build-only"].uploads
    assert LANES["release"].uploads
    assert get_lane("nightly") is None
