from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

import typer

from shipyard.cli.commands._helpers import exit_on_error, exit_with_code
from shipyard.cli.context import CLIContext, build_context
from shipyard.core.config import Config
from shipyard.core.errors import ErrorCode
from shipyard.output.console import Style
from shipyard.platform.files import atomic_write_text
from shipyard.services.build import AbortSignal, CargoToolchain, RecordingToolchain, Toolchain
from shipyard.services.cache.store import CargoFetcher, DependencyFetcher, OfflineFetcher
from shipyard.services.pipeline import (
    PipelineController,
    exit_code_for,
    render_report,
    report_to_json,
)
from shipyard.services.release.gh import GhReleaseHost, ensure_gh_available
from shipyard.services.release.host import MemoryReleaseHost, ReleaseHost
from shipyard.services.release.model import TriggerContext


def _collaborators(
    ctx: CLIContext, *, dry_run: bool
) -> tuple[ReleaseHost, Toolchain, DependencyFetcher]:
    if dry_run:
        ctx.console.print("dry run: in-memory releases, no builds", Style.DIM)
        return MemoryReleaseHost(), RecordingToolchain(), OfflineFetcher()

    exit_on_error(ensure_gh_available(), ctx, ErrorCode.ENV_ERROR)
    hosting = ctx.config.hosting
    token = os.environ.get(hosting.token_env) or None
    if token is None:
        ctx.console.print(f"{hosting.token_env} not set; using gh's own credentials", Style.DIM)
    host = GhReleaseHost(repo=hosting.repo, cwd=ctx.root, token=token)
    return host, CargoToolchain(project_root=ctx.root), CargoFetcher(project_root=ctx.root)


def _apply_overrides(config: Config, *, fail_fast: bool | None, max_parallel: int | None) -> Config:
    pipeline = config.pipeline
    if fail_fast is not None:
        pipeline = replace(pipeline, fail_fast=fail_fast)
    if max_parallel is not None:
        pipeline = replace(pipeline, max_parallel=max(1, max_parallel))
    return replace(config, pipeline=pipeline)


def run(
    event: str = typer.Option(
        "workflow_dispatch",
        "--event",
        envvar="GITHUB_EVENT_NAME",
        help="Trigger event: workflow_dispatch|manual|push|schedule",
    ),
    ref: str | None = typer.Option(
        None, "--ref", envvar="GITHUB_REF", help="Pushed ref (refs/tags/v1.2.3)"
    ),
    release_version: str | None = typer.Option(
        None, "--release-version", help="Explicit version for manual runs"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Use in-memory releases and a recording toolchain"
    ),
    report: Path | None = typer.Option(None, "--report", help="Write the JSON report here"),
    fail_fast: bool | None = typer.Option(
        None, "--fail-fast/--no-fail-fast", help="Override [pipeline].fail_fast"
    ),
    max_parallel: int | None = typer.Option(
        None, "--max-parallel", help="Override [pipeline].max_parallel"
    ),
) -> None:
    """Build, package and publish a release."""
    ctx = build_context()
    config = _apply_overrides(ctx.config, fail_fast=fail_fast, max_parallel=max_parallel)
    host, toolchain, fetcher = _collaborators(ctx, dry_run=dry_run)

    controller = PipelineController(
        config=config,
        root=ctx.root,
        host=host,
        toolchain=toolchain,
        fetcher=fetcher,
        console=ctx.console,
        abort=AbortSignal(),
        offline=dry_run,
        target_sha=os.environ.get("GITHUB_SHA") or None,
    )
    trigger = TriggerContext(event=event, ref=ref, version=release_version)
    result = controller.run(trigger)

    render_report(result, ctx.console)
    if report is not None:
        out = report if report.is_absolute() else ctx.root / report
        atomic_write_text(out, report_to_json(result))
        ctx.console.print(f"report: {out}", Style.DIM)

    code = exit_code_for(result)
    if code != ErrorCode.OK:
        exit_with_code(int(code))
