"""Persisted run records: `<runs dir>/<run_id>.json`.

Records are written after every stage so an interrupted process still
leaves the last known state behind. The serialized text is passed through
the run's Redactor before it touches disk.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from pathlib import Path

from ship.core.redact import Redactor
from ship.core.result import Err, Ok, Result
from ship.core.structured import StrDict, as_obj_list, as_str_dict, get_float, get_int, get_list, get_str, get_table
from ship.pipeline.errors import STAGE_ERROR_KINDS, StageError
from ship.pipeline.model import PipelineRun, RunStatus, Stage, StageResult, StageStatus
from ship.platform.files import atomic_write_text

__all__ = ["RUN_SCHEMA", "RunStore", "run_from_dict", "run_to_dict", "valid_run_id"]

RUN_SCHEMA = 1

_RUN_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def valid_run_id(run_id: str) -> bool:
    return bool(_RUN_ID.match(run_id))


def _error_to_dict(error: StageError) -> dict[str, object]:
    return {
        "kind": error.kind,
        "message": error.message,
        "hint": error.hint,
        "retry_after": error.retry_after,
        "log_tail": error.log_tail,
    }


def _error_from_dict(data: StrDict) -> StageError | None:
    kind = get_str(data, "kind")
    message = get_str(data, "message")
    if kind not in STAGE_ERROR_KINDS or message is None:
        return None
    return StageError(
        kind=kind,  # type: ignore[arg-type]
        message=message,
        hint=get_str(data, "hint"),
        retry_after=get_float(data, "retry_after"),
        log_tail=get_str(data, "log_tail"),
    )


def run_to_dict(run: PipelineRun) -> dict[str, object]:
    return {
        "schema": RUN_SCHEMA,
        "run_id": run.run_id,
        "lane": run.lane,
        "trigger": run.trigger,
        "status": run.status.value,
        "started_at": run.started_at.isoformat(),
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "failure_kind": run.failure_kind,
        "artifact_path": str(run.artifact_path) if run.artifact_path else None,
        "stages": [
            {
                "stage": r.stage.value,
                "status": r.status.value,
                "duration_seconds": round(r.duration_seconds, 3),
                "retry_count": r.retry_count,
                "error": _error_to_dict(r.error) if r.error else None,
            }
            for r in run.stages
        ],
    }


def run_from_dict(data: StrDict) -> PipelineRun | None:
    run_id = get_str(data, "run_id")
    lane = get_str(data, "lane")
    trigger = get_str(data, "trigger")
    status = get_str(data, "status")
    started = get_str(data, "started_at")
    if run_id is None or lane is None or trigger not in ("manual", "scheduled") or status is None or started is None:
        return None

    try:
        started_at = datetime.fromisoformat(started)
        finished_raw = get_str(data, "finished_at")
        finished_at = datetime.fromisoformat(finished_raw) if finished_raw else None
        run_status = RunStatus(status)
        stages: list[StageResult] = []
        for item in as_obj_list(get_list(data, "stages")) or []:
            entry = as_str_dict(item)
            if entry is None:
                return None
            error_data = get_table(entry, "error")
            stages.append(
                StageResult(
                    stage=Stage(get_str(entry, "stage") or ""),
                    status=StageStatus(get_str(entry, "status") or ""),
                    duration_seconds=get_float(entry, "duration_seconds") or 0.0,
                    retry_count=get_int(entry, "retry_count") or 0,
                    error=_error_from_dict(error_data) if error_data is not None else None,
                )
            )
    except ValueError:
        return None

    artifact = get_str(data, "artifact_path")
    return PipelineRun(
        run_id=run_id,
        lane=lane,
        trigger=trigger,  # type: ignore[arg-type]
        started_at=started_at,
        status=run_status,
        stages=tuple(stages),
        finished_at=finished_at,
        failure_kind=get_str(data, "failure_kind"),
        artifact_path=Path(artifact) if artifact else None,
    )


class RunStore:
    def __init__(self, directory: Path, *, redactor: Redactor) -> None:
        self.directory = directory
        self._redactor = redactor

    def path_for(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.json"

    def exists(self, run_id: str) -> bool:
        return self.path_for(run_id).is_file()

    def save(self, run: PipelineRun) -> Result[Path, StageError]:
        path = self.path_for(run.run_id)
        text = json.dumps(run_to_dict(run), indent=2) + "\n"
        try:
            atomic_write_text(path, self._redactor.scrub(text))
        except OSError as e:
            return Err(StageError(kind="config", message=f"failed to write run record: {e}", hint=str(path)))
        return Ok(path)

    def load(self, run_id: str) -> Result[PipelineRun, StageError]:
        path = self.path_for(run_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Err(StageError(kind="not_found", message=f"no run record for {run_id}", hint=str(path)))
        except OSError as e:
            return Err(StageError(kind="config", message=f"failed to read run record: {e}", hint=str(path)))

        try:
            obj: object = json.loads(text)
        except json.JSONDecodeError as e:
            return Err(StageError(kind="config", message=f"invalid JSON in run record: {e}", hint=str(path)))
        data = as_str_dict(obj)
        run = run_from_dict(data) if data is not None else None
        if run is None:
            return Err(StageError(kind="config", message="run record is incomplete", hint=str(path)))
        return Ok(run)

    def recent(self, limit: int = 10) -> list[PipelineRun]:
        """Most recently written runs first; unreadable records are skipped."""
        if not self.directory.is_dir():
            return []
        paths = sorted(self.directory.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        runs: list[PipelineRun] = []
        for path in paths:
            loaded = self.load(path.stem)
            if isinstance(loaded, Ok):
                runs.append(loaded.value)
            if len(runs) >= limit:
                break
        return runs
