from __future__ import annotations

import typer

from shipyard.cli.commands._helpers import exit_on_error
from shipyard.cli.context import build_context
from shipyard.core.errors import ErrorCode
from shipyard.core.result import Ok
from shipyard.services.release.info import read_manifest_version, resolve_release_info
from shipyard.services.release.model import TriggerContext


def info(
    event: str = typer.Option(
        "workflow_dispatch", "--event", envvar="GITHUB_EVENT_NAME", help="Trigger event"
    ),
    ref: str | None = typer.Option(None, "--ref", envvar="GITHUB_REF", help="Pushed ref"),
    release_version: str | None = typer.Option(
        None, "--release-version", help="Explicit version for manual runs"
    ),
) -> None:
    """Resolve version, tag and release kind for a trigger."""
    ctx = build_context()
    declared = read_manifest_version(ctx.root / ctx.config.project.manifest)
    manifest_version = declared.value if isinstance(declared, Ok) else None

    resolved = resolve_release_info(
        TriggerContext(event=event, ref=ref, version=release_version),
        manifest_version=manifest_version,
        nightly_tag=ctx.config.hosting.nightly_tag,
    )
    release = exit_on_error(resolved, ctx, ErrorCode.USER_ERROR)

    # key=value lines, consumable by CI steps.
    ctx.console.print(f"version={release.version}")
    ctx.console.print(f"tag={release.tag}")
    ctx.console.print(f"kind={release.kind}")
    ctx.console.print(f"date={release.date_stamp}")
