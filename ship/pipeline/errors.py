"""Error payload for the release pipeline.

Components return `Err(StageError)`; the orchestrator records the payload
verbatim and only ever branches on `kind`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal

from ship.core.redact import Redactor
from ship.platform.process import ProcessError, tail

StageErrorKind = Literal[
    "not_found",
    "auth",
    "sync",
    "build",
    "upload",
    "rate_limited",
    "cancelled",
    "timeout",
    "config",
]

STAGE_ERROR_KINDS: tuple[str, ...] = (
    "not_found",
    "auth",
    "sync",
    "build",
    "upload",
    "rate_limited",
    "cancelled",
    "timeout",
    "config",
)

# Used when a throttled response carries no Retry-After header.
DEFAULT_RATE_LIMIT_BACKOFF_SECONDS = 300.0


@dataclass(frozen=True, slots=True)
class StageError:
    """Canonical failure payload.

    Attributes:
        kind: Outcome kind; drives retry policy and exit code.
        message: One-line summary for operators.
        hint: Optional next step or raw detail from the collaborator.
        retry_after: Suggested backoff in seconds (rate_limited only).
        log_tail: Last lines of toolchain output (build failures).
    """

    kind: StageErrorKind
    message: str
    hint: str | None = None
    retry_after: float | None = None
    log_tail: str | None = None

    def pretty(self) -> str:
        if self.hint:
            return f"{self.message} (hint: {self.hint})"
        return self.message

    def scrubbed(self, redactor: Redactor) -> StageError:
        return replace(
            self,
            message=redactor.scrub(self.message),
            hint=redactor.scrub(self.hint) if self.hint else self.hint,
            log_tail=redactor.scrub(self.log_tail) if self.log_tail else self.log_tail,
        )


def cancelled(reason: str | None = None) -> StageError:
    return StageError(kind="cancelled", message=reason or "cancelled by operator")


def timed_out(stage: str, seconds: float) -> StageError:
    return StageError(
        kind="timeout",
        message=f"{stage} exceeded its timeout of {seconds:g}s",
        hint=f"Raise timeouts.{stage} in ship.toml if this stage is legitimately slow.",
    )


def from_process_error(error: ProcessError, *, kind: StageErrorKind, message: str) -> StageError:
    """Map a failed external command onto the pipeline taxonomy."""
    if error.cancelled:
        return cancelled()
    if error.timed_out:
        return StageError(kind="timeout", message=f"{message}: timed out", hint=str(error))
    output = "\n".join(part for part in (error.stdout, error.stderr) if part.strip())
    return StageError(
        kind=kind,
        message=f"{message} (exit {error.returncode})",
        hint=str(error),
        log_tail=tail(output) or None,
    )
