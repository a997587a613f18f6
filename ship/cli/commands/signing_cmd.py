"""`ship signing` - admin operations on the canonical signing store.

These run outside the pipeline state machine and are never triggered by a
run.
"""

from __future__ import annotations

from pathlib import Path

import typer

from ship.cli.commands._helpers import exit_on_error, exit_with_code
from ship.cli.context import build_context
from ship.core.cancel import CancelToken
from ship.core.config import DISTRIBUTION_TYPES
from ship.core.errors import ErrorCode
from ship.output.console import Style
from ship.pipeline.orchestrator import build_collaborators

signing_app = typer.Typer(
    no_args_is_help=True,
    help="Bootstrap or reset the canonical signing store.",
    add_completion=False,
)


@signing_app.command("bootstrap")
def bootstrap(
    dry_run: bool = typer.Option(False, "--dry-run", help="Print what would happen"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to ship.toml"),
) -> None:
    """Initialize an empty signing store (clone the remote first when configured)."""
    ctx = build_context(config)
    parts = build_collaborators(ctx.config, console=ctx.console, cancel=CancelToken(), redactor=ctx.redactor)

    created = exit_on_error(parts.store.bootstrap(dry_run=dry_run), ctx)
    if not created:
        ctx.console.warning(f"signing store already initialized: {parts.store.root}")
        exit_with_code(int(ErrorCode.USER_ERROR))
    verb = "would initialize" if dry_run else "initialized"
    ctx.console.success(f"{verb} signing store at {parts.store.root}")


@signing_app.command("nuke")
def nuke(
    distribution_type: str = typer.Argument(..., help=f"One of: {', '.join(DISTRIBUTION_TYPES)}"),
    yes: bool = typer.Option(False, "-y", "--yes", help="Skip confirmation prompt"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to ship.toml"),
) -> None:
    """Revoke every certificate and profile of a distribution type.

    Destructive: every pipeline using these identities must re-sync.
    """
    ctx = build_context(config)
    if distribution_type not in DISTRIBUTION_TYPES:
        ctx.console.error(f"unknown distribution type: {distribution_type}")
        ctx.console.print(f"expected one of: {', '.join(DISTRIBUTION_TYPES)}", Style.DIM)
        exit_with_code(int(ErrorCode.USER_ERROR))

    ctx.console.warning(
        f"This revokes ALL {distribution_type} certificates and profiles of team {ctx.config.app.team_id}."
    )
    if not yes and not typer.confirm("Continue?", default=False):
        ctx.console.print("aborted", Style.DIM)
        exit_with_code(int(ErrorCode.USER_ERROR))

    parts = build_collaborators(ctx.config, console=ctx.console, cancel=CancelToken(), redactor=ctx.redactor)
    exit_on_error(parts.tokens.current_token(), ctx)
    revoked = exit_on_error(
        parts.synchronizer.nuke(distribution_type),  # type: ignore[arg-type]
        ctx,
    )
    ctx.console.success(f"revoked {revoked} {distribution_type} object(s)")
