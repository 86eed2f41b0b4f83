from __future__ import annotations

import typer

from shipyard.cli.commands._helpers import exit_on_error
from shipyard.cli.context import build_context
from shipyard.core.errors import ErrorCode
from shipyard.output.console import Style
from shipyard.services.build import RecordingToolchain
from shipyard.services.cache.store import OfflineFetcher
from shipyard.services.matrix import plan_matrix, product_size
from shipyard.services.pipeline import PipelineController, flow_for
from shipyard.services.release.host import MemoryReleaseHost
from shipyard.services.release.model import TriggerContext


def plan(
    event: str = typer.Option(
        "workflow_dispatch",
        "--event",
        envvar="GITHUB_EVENT_NAME",
        help="Trigger event used to pick the flow",
    ),
) -> None:
    """Show the build matrix and the stage graph without running anything."""
    ctx = build_context()
    matrix = ctx.config.matrix
    targets = exit_on_error(plan_matrix(matrix), ctx, ErrorCode.USER_ERROR)

    ctx.console.header("Matrix")
    for target in targets:
        ctx.console.print(f"  {target.id}")
    excluded = product_size(matrix) - (len(targets) - len(matrix.include))
    ctx.console.print(
        f"{len(targets)} targets ({product_size(matrix)} product cells, "
        f"{excluded} excluded, {len(matrix.include)} included)",
        Style.DIM,
    )

    kind = flow_for(TriggerContext(event=event))
    controller = PipelineController(
        config=ctx.config,
        root=ctx.root,
        host=MemoryReleaseHost(),
        toolchain=RecordingToolchain(),
        fetcher=OfflineFetcher(),
        console=ctx.console,
        offline=True,
    )
    graph = controller.build_graph(kind, targets)

    ctx.console.header(f"Stages ({kind})")
    for name in graph.order:
        after = graph.prerequisites(name)
        suffix = f" <- {', '.join(after)}" if after else ""
        ctx.console.print(f"  {name}{suffix}")
