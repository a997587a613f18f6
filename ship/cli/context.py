from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import typer

from ship.core.config import PipelineConfig, load_config
from ship.core.errors import ErrorCode
from ship.core.redact import Redactor
from ship.core.result import Err
from ship.output.console import ConsoleProtocol, RedactingConsole, RichConsole, Style

DEFAULT_CONFIG_NAME = "ship.toml"
CONFIG_ENV = "SHIP_CONFIG"


@dataclass(frozen=True, slots=True)
class CLIContext:
    config: PipelineConfig
    config_path: Path
    console: ConsoleProtocol
    redactor: Redactor


def resolve_config_path(config: Path | None) -> Path:
    if config is not None:
        return config.expanduser()
    env = os.environ.get(CONFIG_ENV)
    if env:
        return Path(env).expanduser()
    return Path.cwd() / DEFAULT_CONFIG_NAME


def build_context(config: Path | None = None, *, console: ConsoleProtocol | None = None) -> CLIContext:
    """Load and validate the config; exit with USER_ERROR when it is unusable."""
    redactor = Redactor()
    out = RedactingConsole(console or RichConsole(), redactor)
    path = resolve_config_path(config)

    result = load_config(path)
    if isinstance(result, Err):
        error = result.error
        out.error(error.message)
        for problem in error.problems:
            out.print(f"  - {problem}", Style.DIM)
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))

    return CLIContext(config=result.value, config_path=path, console=out, redactor=redactor)
