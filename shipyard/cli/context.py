from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import typer

from shipyard.core.config import DEFAULT_CONFIG_NAME, Config, load_config_or_default
from shipyard.core.errors import ErrorCode
from shipyard.core.result import Err
from shipyard.output.console import ConsoleProtocol, RichConsole

# Set by the `--config` global option.
CONFIG_ENV = "SHIPYARD_CONFIG"


@dataclass(frozen=True, slots=True)
class CLIContext:
    root: Path
    config_path: Path
    config: Config
    console: ConsoleProtocol


def config_path() -> Path:
    override = os.environ.get(CONFIG_ENV, "").strip()
    if override:
        return Path(override)
    return Path.cwd() / DEFAULT_CONFIG_NAME


def build_context() -> CLIContext:
    path = config_path()
    config_result = load_config_or_default(path)
    if isinstance(config_result, Err):
        typer.echo(f"error: {config_result.error.message}", err=True)
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))

    return CLIContext(
        root=path.parent,
        config_path=path,
        config=config_result.value,
        console=RichConsole(),
    )
