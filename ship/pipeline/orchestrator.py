"""Pipeline orchestrator: the per-run state machine.

A run walks the lane's stages strictly in order. Each stage gets a deadline
from `[timeouts]`, and its outcome is recorded as a StageResult only once
the stage has returned (after any internal retry). The first failure ends
the run: nothing after it executes and the run's failure kind is the
stage error's kind, unchanged.

Artifacts from a run that fails before Uploading are discarded; when
Uploading itself fails the artifact is kept so it can be resubmitted by
hand. Uploads are never retried here.
"""

from __future__ import annotations

import shutil
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from ship.core.cancel import CancelToken, Deadline
from ship.core.config import PipelineConfig
from ship.core.redact import Redactor
from ship.core.result import Err, Ok, Result
from ship.output.console import ConsoleProtocol, RedactingConsole, Style
from ship.pipeline.appstore import AppStoreConnect
from ship.pipeline.authority import AppStoreConnectAuthority
from ship.pipeline.broker import CredentialBroker, TokenSource
from ship.pipeline.build import BuildRunner
from ship.pipeline.errors import StageError, cancelled, timed_out
from ship.pipeline.lanes import Lane
from ship.pipeline.model import (
    AuthToken,
    BuildArtifact,
    Destination,
    DistributionType,
    PipelineRun,
    RunStatus,
    SigningIdentity,
    Stage,
    StageResult,
    StageStatus,
    Trigger,
    UploadReceipt,
)
from ship.pipeline.runs import RunStore
from ship.pipeline.secrets import SecretResolver, build_secret_store, default_identifiers, default_scopes
from ship.pipeline.store import GitSigningStore
from ship.pipeline.sync import SigningSynchronizer, SyncOutcome
from ship.pipeline.upload import AppStoreBuilds, Transporter, UploadRunner
from ship.platform.http import HttpClient, RealHttpClient

__all__ = [
    "Collaborators",
    "Orchestrator",
    "RunContext",
    "build_collaborators",
    "build_orchestrator",
    "passphrase_source",
]


class Authenticator(Protocol):
    def current_token(self) -> Result[AuthToken, StageError]: ...


class Synchronizer(Protocol):
    last_retries: int

    def sync_detailed(
        self,
        app_identifier: str,
        distribution_type: DistributionType,
        token: AuthToken,
    ) -> Result[SyncOutcome, StageError]: ...


class Builder(Protocol):
    def build(
        self,
        project_path: Path,
        signing_identity: SigningIdentity,
        scheme: str,
        *,
        output_dir: Path | None = None,
        build_number: str | None = None,
        deadline: Deadline | None = None,
    ) -> Result[BuildArtifact, StageError]: ...


class Uploader(Protocol):
    def upload(
        self,
        artifact: BuildArtifact,
        destination: Destination,
        *,
        deadline: Deadline | None = None,
    ) -> Result[UploadReceipt, StageError]: ...


BuildNumberSource = Callable[[], Result[str, StageError]]


@dataclass(frozen=True, slots=True)
class RunContext:
    """Values handed from one stage to the next within a run."""

    run_id: str
    lane: Lane
    output_dir: Path
    token: AuthToken | None = None
    identity: SigningIdentity | None = None
    artifact: BuildArtifact | None = None
    receipt: UploadReceipt | None = None


@dataclass(frozen=True, slots=True)
class StageDone:
    context: RunContext
    retries: int = 0


StageHandler = Callable[[RunContext, Deadline], Result[StageDone, StageError]]


def _status_for(error: StageError) -> StageStatus:
    match error.kind:
        case "cancelled":
            return StageStatus.CANCELLED
        case "timeout":
            return StageStatus.TIMED_OUT
        case _:
            return StageStatus.FAILED


class Orchestrator:
    def __init__(
        self,
        config: PipelineConfig,
        *,
        authenticator: Authenticator,
        synchronizer: Synchronizer,
        builder: Builder,
        uploader: Uploader,
        console: ConsoleProtocol,
        redactor: Redactor,
        cancel: CancelToken,
        runs: RunStore | None = None,
        build_numbers: BuildNumberSource | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config = config
        self._authenticator = authenticator
        self._synchronizer = synchronizer
        self._builder = builder
        self._uploader = uploader
        self._console = console
        self._redactor = redactor
        self._cancel = cancel
        self._runs = runs
        self._build_numbers = build_numbers
        self._clock = clock
        self._now = now
        self._handlers: Mapping[Stage, StageHandler] = {
            Stage.AUTHENTICATING: self._authenticate,
            Stage.SYNCING: self._sync,
            Stage.BUILDING: self._build,
            Stage.UPLOADING: self._upload,
        }

    def run(self, *, run_id: str, lane: Lane, trigger: Trigger = "manual") -> PipelineRun:
        """Execute `lane` to completion and return the terminal run record."""
        run = PipelineRun(run_id=run_id, lane=lane.name, trigger=trigger, started_at=self._now()).start()
        self._save(run)
        context = RunContext(
            run_id=run_id,
            lane=lane,
            output_dir=self._config.build.output_dir / run_id,
        )
        self._console.print(f"run {run_id}: lane {lane.name} ({trigger})", Style.DIM)

        for stage in lane.stages:
            result, context = self._run_stage(stage, context)
            run = run.with_stage(result)
            if context.artifact is not None and run.artifact_path != context.artifact.path:
                run = run.with_artifact(context.artifact.path)

            # Every non-succeeded result carries its error.
            error = result.error
            if error is not None:
                if stage != Stage.UPLOADING and self._discard_artifacts(context):
                    run = run.with_artifact(None)
                run = run.finish(RunStatus.FAILED, at=self._now(), failure_kind=error.kind)
                self._save(run)
                self._console.error(f"{stage} {result.status}: {error.pretty()}")
                if context.artifact is not None and stage == Stage.UPLOADING:
                    self._console.info(f"artifact kept for resubmission: {context.artifact.path}")
                return run

            self._save(run)
            self._console.success(f"{stage} done in {result.duration_seconds:.1f}s")

        run = run.finish(RunStatus.SUCCEEDED, at=self._now())
        self._save(run)
        return run

    def _run_stage(self, stage: Stage, context: RunContext) -> tuple[StageResult, RunContext]:
        if self._cancel.cancelled:
            error = cancelled(self._cancel.reason)
            return StageResult(stage=stage, status=StageStatus.CANCELLED, duration_seconds=0.0, error=error), context

        self._console.header(stage.value.capitalize())
        deadline = Deadline.after(self._config.timeouts.for_stage(stage.value))
        started = self._clock()
        outcome = self._handlers[stage](context, deadline)
        duration = self._clock() - started

        if isinstance(outcome, Ok):
            return (
                StageResult(
                    stage=stage,
                    status=StageStatus.SUCCEEDED,
                    duration_seconds=duration,
                    retry_count=outcome.value.retries,
                ),
                outcome.value.context,
            )

        error = outcome.error.scrubbed(self._redactor)
        if error.kind == "timeout" and deadline.expired:
            error = timed_out(stage.value, self._config.timeouts.for_stage(stage.value))
        retries = self._synchronizer.last_retries if stage == Stage.SYNCING else 0
        return (
            StageResult(
                stage=stage,
                status=_status_for(error),
                duration_seconds=duration,
                retry_count=retries,
                error=error,
            ),
            context,
        )

    # -- stages ------------------------------------------------------------

    def _authenticate(self, context: RunContext, deadline: Deadline) -> Result[StageDone, StageError]:
        token = self._authenticator.current_token()
        if isinstance(token, Err):
            return token
        return Ok(StageDone(context=replace(context, token=token.value)))

    def _sync(self, context: RunContext, deadline: Deadline) -> Result[StageDone, StageError]:
        if context.token is None:
            return Err(StageError(kind="auth", message="no authentication token for signing sync"))
        outcome = self._synchronizer.sync_detailed(
            self._config.app.bundle_id,
            self._config.signing.distribution_type,
            context.token,
        )
        if isinstance(outcome, Err):
            return outcome
        return Ok(StageDone(context=replace(context, identity=outcome.value.identity), retries=outcome.value.retries))

    def _build(self, context: RunContext, deadline: Deadline) -> Result[StageDone, StageError]:
        if context.identity is None:
            return Err(StageError(kind="sync", message="no signing identity for build"))

        build_number: str | None = None
        if self._build_numbers is not None:
            number = self._build_numbers()
            if isinstance(number, Err):
                return number
            build_number = number.value

        artifact = self._builder.build(
            self._config.build.project_path,
            context.identity,
            self._config.build.scheme,
            output_dir=context.output_dir,
            build_number=build_number,
            deadline=deadline,
        )
        if isinstance(artifact, Err):
            return artifact
        self._console.print(f"artifact: {artifact.value.path}", Style.DIM)
        return Ok(StageDone(context=replace(context, artifact=artifact.value)))

    def _upload(self, context: RunContext, deadline: Deadline) -> Result[StageDone, StageError]:
        if context.artifact is None:
            return Err(StageError(kind="not_found", message="no build artifact to upload"))
        destination = context.lane.destination or "beta"
        receipt = self._uploader.upload(context.artifact, destination, deadline=deadline)
        if isinstance(receipt, Err):
            return receipt
        return Ok(StageDone(context=replace(context, receipt=receipt.value)))

    # -- bookkeeping ---------------------------------------------------------

    def _discard_artifacts(self, context: RunContext) -> bool:
        if not context.output_dir.exists():
            return True
        try:
            shutil.rmtree(context.output_dir)
        except OSError as e:
            self._console.warning(f"could not discard build output {context.output_dir}: {e}")
            return False
        self._console.print(f"discarded build output {context.output_dir}", Style.DIM)
        return True

    def _save(self, run: PipelineRun) -> None:
        if self._runs is None:
            return
        saved = self._runs.save(run)
        if isinstance(saved, Err):
            self._console.warning(saved.error.pretty())


@dataclass(frozen=True, slots=True)
class Collaborators:
    """Production adapters shared by the run and the signing admin commands."""

    console: ConsoleProtocol
    redactor: Redactor
    secrets: SecretResolver
    tokens: TokenSource
    api: AppStoreConnect
    store: GitSigningStore
    synchronizer: SigningSynchronizer


def build_collaborators(
    config: PipelineConfig,
    *,
    console: ConsoleProtocol,
    cancel: CancelToken,
    redactor: Redactor | None = None,
    http: HttpClient | None = None,
) -> Collaborators:
    redactor = redactor or Redactor()
    console = RedactingConsole(console, redactor)
    secrets = SecretResolver(
        build_secret_store(config.secrets),
        redactor=redactor,
        scopes=default_scopes(config.secrets),
        identifiers=default_identifiers(config.secrets),
    )

    def verify(token: AuthToken) -> Result[None, StageError]:
        return api.verify_token(token)

    tokens = TokenSource(
        broker=CredentialBroker(verify=verify),
        secrets=secrets,
        key_id_name=config.secrets.key_id,
        issuer_id_name=config.secrets.issuer_id,
        private_key_name=config.secrets.private_key,
    )
    api = AppStoreConnect(http=http or RealHttpClient(), token=tokens.current_token, refresh=tokens.refresh)

    store = GitSigningStore(
        root=config.signing.store_path,
        remote=config.signing.store_remote,
        console=console,
    )
    synchronizer = SigningSynchronizer(
        store=store,
        authority=AppStoreConnectAuthority(api=api),
        team_id=config.app.team_id,
        passphrase=passphrase_source(secrets, config.secrets.store_passphrase, stage=Stage.SYNCING),
        console=console,
        lease_seconds=config.signing.lease_seconds,
        cancel=cancel,
    )
    return Collaborators(
        console=console,
        redactor=redactor,
        secrets=secrets,
        tokens=tokens,
        api=api,
        store=store,
        synchronizer=synchronizer,
    )


def passphrase_source(
    secrets: SecretResolver, name: str, *, stage: Stage
) -> Callable[[], Result[str, StageError]]:
    def resolve() -> Result[str, StageError]:
        return secrets.resolve(name, stage=stage).map(lambda c: c.value)

    return resolve


def build_orchestrator(
    config: PipelineConfig,
    *,
    console: ConsoleProtocol,
    cancel: CancelToken,
    redactor: Redactor | None = None,
    http: HttpClient | None = None,
) -> Orchestrator:
    """Wire the production collaborators for one run."""
    parts = build_collaborators(config, console=console, cancel=cancel, redactor=redactor, http=http)
    builder = BuildRunner(
        store=parts.store,
        passphrase=passphrase_source(parts.secrets, config.secrets.store_passphrase, stage=Stage.BUILDING),
        app=config.app,
        config=config.build,
        profiles_dir=config.signing.profiles_dir,
        redactor=parts.redactor,
        console=parts.console,
        cancel=cancel,
    )
    builds = AppStoreBuilds(api=parts.api, app=config.app)
    uploader = UploadRunner(
        transporter=Transporter(
            secrets=parts.secrets,
            names=config.secrets,
            platform=config.app.platform,
            console=parts.console,
            cancel=cancel,
        ),
        builds=builds,
        config=config.upload,
        console=parts.console,
        cancel=cancel,
    )
    return Orchestrator(
        config,
        authenticator=parts.tokens,
        synchronizer=parts.synchronizer,
        builder=builder,
        uploader=uploader,
        console=parts.console,
        redactor=parts.redactor,
        cancel=cancel,
        runs=RunStore(config.runs.directory, redactor=parts.redactor),
        build_numbers=builds.next_build_number if config.build.bump_build_number else None,
    )
