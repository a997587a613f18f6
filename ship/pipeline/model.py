from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Literal

from ship.pipeline.errors import StageError

DistributionType = Literal["appstore", "adhoc", "development", "enterprise"]
Destination = Literal["review", "beta"]
Trigger = Literal["manual", "scheduled"]


class Stage(StrEnum):
    AUTHENTICATING = "authenticating"
    SYNCING = "syncing"
    BUILDING = "building"
    UPLOADING = "uploading"


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.AUTHENTICATING,
    Stage.SYNCING,
    Stage.BUILDING,
    Stage.UPLOADING,
)


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED)


class StageStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class Credential:
    """A resolved secret. Only the secret store constructs these."""

    name: str
    # Stages allowed to use this credential; empty means any stage.
    scope: tuple[Stage, ...]
    value: str = field(repr=False)
    expires_at: datetime | None = None
    # False for identifiers (API key id, issuer id), which are not masked.
    sensitive: bool = True

    def allows(self, stage: Stage) -> bool:
        return not self.scope or stage in self.scope


@dataclass(frozen=True, slots=True)
class AuthToken:
    """Short-lived App Store Connect bearer token (memory only)."""

    value: str = field(repr=False)
    key_id: str = ""
    issued_at: float = 0.0
    expires_at: float = 0.0

    def expired(self, now: float, *, skew: float = 0.0) -> bool:
        return now >= self.expires_at - skew


@dataclass(frozen=True, slots=True)
class SigningIdentity:
    """Certificate + provisioning profile pair for one (app, distribution type)."""

    identifier: str
    app_identifier: str
    distribution_type: DistributionType
    team_id: str
    certificate_id: str
    profile_id: str
    profile_name: str
    profile_uuid: str
    expires_at: datetime
    # Record path inside the canonical signing store.
    location: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.app_identifier, self.distribution_type)


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    path: Path
    platform: str
    signing_identity: SigningIdentity
    built_at: datetime
    version: str | None = None
    build_number: str | None = None


@dataclass(frozen=True, slots=True)
class UploadReceipt:
    artifact_path: Path
    destination: Destination
    submitted_at: datetime
    build_id: str | None = None
    processing_state: str | None = None


@dataclass(frozen=True, slots=True)
class StageResult:
    stage: Stage
    status: StageStatus
    duration_seconds: float
    retry_count: int = 0
    error: StageError | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED


class TerminalRunError(Exception):
    """Raised on an attempt to modify a finished PipelineRun."""


@dataclass(frozen=True, slots=True)
class PipelineRun:
    run_id: str
    lane: str
    trigger: Trigger
    started_at: datetime
    status: RunStatus = RunStatus.PENDING
    stages: tuple[StageResult, ...] = ()
    finished_at: datetime | None = None
    failure_kind: str | None = None
    artifact_path: Path | None = None

    def start(self) -> PipelineRun:
        self._ensure_open()
        return replace(self, status=RunStatus.RUNNING)

    def with_stage(self, result: StageResult) -> PipelineRun:
        """Append a completed stage result, enforcing strict stage order."""
        self._ensure_open()
        if self.stages and not self.stages[-1].succeeded:
            raise TerminalRunError(f"{result.stage} recorded after failed {self.stages[-1].stage}")
        expected = STAGE_ORDER[len(self.stages)] if len(self.stages) < len(STAGE_ORDER) else None
        if result.stage != expected:
            raise TerminalRunError(f"out of order stage result: {result.stage} (expected {expected})")
        return replace(self, stages=(*self.stages, result))

    def with_artifact(self, path: Path | None) -> PipelineRun:
        self._ensure_open()
        return replace(self, artifact_path=path)

    def finish(self, status: RunStatus, *, at: datetime, failure_kind: str | None = None) -> PipelineRun:
        self._ensure_open()
        if not status.terminal:
            raise ValueError(f"not a terminal status: {status}")
        return replace(self, status=status, finished_at=at, failure_kind=failure_kind)

    def stage_result(self, stage: Stage) -> StageResult | None:
        for r in self.stages:
            if r.stage == stage:
                return r
        return None

    def _ensure_open(self) -> None:
        if self.status.terminal:
            raise TerminalRunError(f"run {self.run_id} is {self.status} and immutable")
