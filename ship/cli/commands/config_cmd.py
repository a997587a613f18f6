"""`ship config` - inspect and validate ship.toml."""

from __future__ import annotations

import shutil
from pathlib import Path

import typer

from ship.cli.commands._helpers import exit_with_code
from ship.cli.context import build_context
from ship.core.errors import ErrorCode
from ship.output.console import Style
from ship.pipeline.secrets import build_secret_store

config_app = typer.Typer(
    no_args_is_help=True,
    help="Inspect and validate the pipeline configuration.",
    add_completion=False,
)

REQUIRED_TOOLS = ("git", "xcodebuild", "xcrun", "security")


@config_app.command("check")
def check(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to ship.toml"),
    tools: bool = typer.Option(True, "--tools/--no-tools", help="Also check toolchain binaries"),
) -> None:
    """Validate the config and report which referenced secrets are available.

    Secret values are never printed; only their presence is checked.
    """
    ctx = build_context(config)
    cfg = ctx.config
    console = ctx.console

    console.header(str(ctx.config_path))
    console.print(f"app:       {cfg.app.bundle_id} (team {cfg.app.team_id})", Style.DIM)
    console.print(f"project:   {cfg.build.project_path} [{cfg.build.scheme}]", Style.DIM)
    console.print(
        f"signing:   {cfg.signing.distribution_type} @ {cfg.signing.store_path}"
        + (f" <- {cfg.signing.store_remote}" if cfg.signing.store_remote else ""),
        Style.DIM,
    )
    console.print(f"secrets:   {cfg.secrets.backend} backend", Style.DIM)

    store = build_secret_store(cfg.secrets)
    missing: list[str] = []
    for name in (
        cfg.secrets.key_id,
        cfg.secrets.issuer_id,
        cfg.secrets.private_key,
        cfg.secrets.store_passphrase,
    ):
        if store.fetch(name) is None:
            missing.append(name)
            console.error(f"secret {name}: missing")
        else:
            console.success(f"secret {name}: present")

    absent_tools: list[str] = []
    if tools:
        for tool in REQUIRED_TOOLS:
            if shutil.which(tool) is None:
                absent_tools.append(tool)
                console.warning(f"{tool}: not found on PATH")

    if missing or absent_tools:
        exit_with_code(int(ErrorCode.ENV_ERROR))
    console.success("config ok")
