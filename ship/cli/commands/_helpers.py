"""Shared helpers for CLI commands."""

from __future__ import annotations

from typing import TYPE_CHECKING, NoReturn, TypeVar

import typer

from ship.core.result import Err, Result
from ship.output.errors import print_stage_error, stage_error_exit_code
from ship.pipeline.errors import StageError

if TYPE_CHECKING:
    from ship.cli.context import CLIContext

T = TypeVar("T")


def exit_on_error(result: Result[T, StageError], ctx: CLIContext) -> T:
    """Return the value of an Ok result; print the error and exit otherwise.

    The exit code follows the error kind (see `stage_error_exit_code`).
    """
    if isinstance(result, Err):
        print_stage_error(result.error, ctx.console)
        raise typer.Exit(code=stage_error_exit_code(result.error.kind))
    return result.value


def exit_with_code(code: int) -> NoReturn:
    """Exit with given code. Explicit helper for clarity."""
    raise typer.Exit(code=code)
