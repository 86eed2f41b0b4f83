from __future__ import annotations

import typer

from shipyard.cli.context import build_context
from shipyard.services.cache.keys import derive_cache_keys


def cache_key(
    offline: bool = typer.Option(False, "--offline", help="Skip the dependency index lookup"),
) -> None:
    """Print the dependency cache keys for the current lockfile."""
    ctx = build_context()
    cfg = ctx.config
    keys = derive_cache_keys(
        lockfile=ctx.root / cfg.project.lockfile,
        own_packages=cfg.project.own_packages,
        index_url=cfg.cache.index_url,
        index_branch=cfg.cache.index_branch,
        cwd=ctx.root,
        console=ctx.console,
        offline=offline,
    )
    ctx.console.print(f"index={keys.index.name if keys.index else ''}")
    ctx.console.print(f"artifacts={keys.artifacts.name if keys.artifacts else ''}")
