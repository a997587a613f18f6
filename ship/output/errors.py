"""Error presentation utilities.

Centralized stage error formatting and exit code mapping.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ship.core.errors import ErrorCode
from ship.output.console import Style
from ship.pipeline.errors import StageError

if TYPE_CHECKING:
    from ship.output.console import ConsoleProtocol

__all__ = ["print_stage_error", "stage_error_exit_code"]


def print_stage_error(error: StageError, console: ConsoleProtocol) -> None:
    """Print a stage error to console with appropriate formatting."""
    match error:
        case StageError(kind="rate_limited", retry_after=retry_after):
            console.error(error.message)
            if retry_after is not None:
                console.print(f"retry after: {retry_after:g}s", Style.DIM)
        case StageError(kind="cancelled"):
            console.warning(error.message)
        case StageError(kind="build", log_tail=log_tail) if log_tail:
            console.error(error.message)
            console.print(log_tail, Style.DIM)
        case _:
            console.error(error.message)
    if error.hint:
        console.print(f"hint: {error.hint}", Style.DIM)


def stage_error_exit_code(kind: str | None) -> int:
    """Get exit code for a failure kind (None means success)."""
    match kind:
        case None:
            return int(ErrorCode.OK)
        case "config":
            return int(ErrorCode.USER_ERROR)
        case "rate_limited":
            return int(ErrorCode.RATE_LIMITED)
        case "cancelled":
            return int(ErrorCode.CANCELLED)
        case "timeout":
            return int(ErrorCode.TIMED_OUT)
        case "not_found" | "auth" | "sync" | "build" | "upload":
            return int(ErrorCode.STAGE_FAILED)
    return int(ErrorCode.ENV_ERROR)
