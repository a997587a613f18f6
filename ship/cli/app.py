from __future__ import annotations

import typer

from ship import __version__
from ship.cli.commands.config_cmd import config_app
from ship.cli.commands.run_cmd import run
from ship.cli.commands.signing_cmd import signing_app
from ship.cli.commands.status import status

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Release an iOS app to App Store Connect.",
)


# Commands
app.command()(run)
app.command()(status)

# Sub-apps
app.add_typer(config_app, name="config")
app.add_typer(signing_app, name="signing")


@app.callback()
def _main(  # pyright: ignore[reportUnusedFunction]
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
) -> None:
    if version:
        typer.echo(__version__)
        raise typer.Exit(code=0)


def main() -> None:
    app()
