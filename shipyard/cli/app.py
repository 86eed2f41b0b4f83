from __future__ import annotations

import os
from pathlib import Path

import typer

from shipyard import __version__
from shipyard.cli.commands.cache_cmd import cache_key
from shipyard.cli.commands.info_cmd import info
from shipyard.cli.commands.plan_cmd import plan
from shipyard.cli.commands.run_cmd import run
from shipyard.cli.commands.verify_cmd import verify
from shipyard.cli.context import CONFIG_ENV
from shipyard.core.errors import ErrorCode


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# Commands
app.command()(run)
app.command()(plan)
app.command()(info)
app.command("cache-key")(cache_key)
app.command()(verify)


@app.callback(invoke_without_command=True)
def _main(  # pyright: ignore[reportUnusedFunction]
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    config: Path | None = typer.Option(
        None,
        "--config",
        help="Path to shipyard.toml (default: ./shipyard.toml)",
    ),
) -> None:
    if version:
        typer.echo(__version__)
        raise typer.Exit(code=0)

    if config is not None:
        try:
            path = config.expanduser().resolve()
        except OSError as e:
            typer.echo(f"error: invalid --config: {e}", err=True)
            raise typer.Exit(code=int(ErrorCode.USER_ERROR))

        if not path.is_file():
            typer.echo(f"error: --config '{path}' does not exist", err=True)
            raise typer.Exit(code=int(ErrorCode.USER_ERROR))

        os.environ[CONFIG_ENV] = str(path)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))


def main() -> None:
    app()
