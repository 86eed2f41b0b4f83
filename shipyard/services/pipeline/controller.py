"""Pipeline controller: wires the components into a stage graph and runs it.

Versioned flow (manual dispatch, tag push):

    release_info ──► release_record ─────────────┐
    cache_keys ──► dependency_cache ──► build_matrix ──► publish
                   release_info ────────────────┘

Nightly flow (schedule): the same graph without `publish`; the rotated
record is already a published prerelease and cells append to it.

The matrix is validated before any stage runs, so an invalid matrix never
leaves a draft release behind.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from shipyard.core.config import Config
from shipyard.core.result import Err, Ok, Result
from shipyard.output.console import ConsoleProtocol, Style
from shipyard.services.build import AbortSignal, BuildJob, MatrixExecutor, Toolchain
from shipyard.services.cache.keys import CacheKeys, derive_cache_keys
from shipyard.services.cache.store import DependencyCache, DependencyFetcher, PopulateResult
from shipyard.services.errors import (
    DependencyFetchError,
    PublishBlocked,
    ReleaseConflictError,
    ResolutionError,
    RunError,
    StageBlocked,
)
from shipyard.services.matrix import BuildTarget, plan_matrix
from shipyard.services.pipeline.context import RunContext
from shipyard.services.pipeline.graph import INTERRUPTED, Stage, StageGraph, run_stages
from shipyard.services.pipeline.report import PipelineReport, TargetReport
from shipyard.services.release.errors import ReleaseError
from shipyard.services.release.host import ReleaseHost
from shipyard.services.release.info import (
    SCHEDULE_EVENTS,
    read_manifest_version,
    resolve_release_info,
)
from shipyard.services.release.model import ReleaseInfo, ReleaseKind, ReleaseRecord, TriggerContext
from shipyard.services.release.publisher import AssetPublisher
from shipyard.services.release.records import ReleaseRecordManager, final_title

__all__ = ["PipelineController", "flow_for"]


def flow_for(trigger: TriggerContext) -> ReleaseKind:
    return "nightly" if trigger.event.strip() in SCHEDULE_EVENTS else "versioned"


class PipelineController:
    def __init__(
        self,
        *,
        config: Config,
        root: Path,
        host: ReleaseHost,
        toolchain: Toolchain,
        fetcher: DependencyFetcher,
        console: ConsoleProtocol,
        abort: AbortSignal | None = None,
        offline: bool = False,
        target_sha: str | None = None,
        now: datetime | None = None,
    ) -> None:
        self._config = config
        self._root = root
        self._toolchain = toolchain
        self._fetcher = fetcher
        self._console = console
        self._abort = abort or AbortSignal()
        self._offline = offline
        self._target_sha = target_sha
        self._now = now
        self._records = ReleaseRecordManager(host=host, console=console)
        self._publisher = AssetPublisher(host=host, console=console)
        self._cache = DependencyCache(root / config.cache.root)
        self._warnings: list[str] = []

    @property
    def abort(self) -> AbortSignal:
        return self._abort

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _release_info(self, ctx: RunContext) -> Result[ReleaseInfo, ResolutionError]:
        manifest = self._root / self._config.project.manifest
        declared = read_manifest_version(manifest)
        manifest_version: str | None = None
        if isinstance(declared, Ok):
            manifest_version = declared.value
        else:
            self._console.print(f"declared version unavailable: {declared.error.message}", Style.DIM)

        resolved = resolve_release_info(
            ctx.trigger,
            manifest_version=manifest_version,
            nightly_tag=self._config.hosting.nightly_tag,
            now=self._now,
        )
        if isinstance(resolved, Ok):
            info = resolved.value
            self._console.info(f"{info.kind} release {info.version} -> {info.tag}")
        return resolved

    def _cache_keys(self, ctx: RunContext) -> Result[CacheKeys, RunError]:
        del ctx
        project = self._config.project
        keys = derive_cache_keys(
            lockfile=self._root / project.lockfile,
            own_packages=project.own_packages,
            index_url=self._config.cache.index_url,
            index_branch=self._config.cache.index_branch,
            cwd=self._root,
            console=self._console,
            offline=self._offline,
        )
        for key in (keys.index, keys.artifacts):
            if key is not None:
                self._console.print(f"cache key: {key.name}", Style.DIM)
        return Ok(keys)

    def _release_record(
        self, ctx: RunContext
    ) -> Result[ReleaseRecord, ReleaseConflictError | ReleaseError]:
        info = ctx.require_info()
        notes = f"Nightly build {info.date_stamp}" if info.is_nightly else ""
        prepared = self._records.prepare(info, notes=notes, target_sha=self._target_sha)
        if isinstance(prepared, Err):
            return prepared
        self._warnings.extend(w.message for w in prepared.value.warnings)
        return Ok(prepared.value.record)

    def _dependency_cache(self, ctx: RunContext) -> Result[PopulateResult, DependencyFetchError]:
        keys = ctx.cache_keys
        if keys is None or keys.artifacts is None:
            self._console.print("dependency cache bypassed (no key)", Style.DIM)
            return Ok(PopulateResult(hit=False))

        scratch = self._root / self._config.pipeline.work_dir / "populate"
        try:
            populated = self._cache.populate(
                keys, fetcher=self._fetcher, scratch=scratch, console=self._console
            )
        except OSError as e:
            return Err(DependencyFetchError(returncode=-1, stderr=str(e)))
        if isinstance(populated, Err):
            return Err(
                DependencyFetchError(
                    returncode=populated.error.returncode, stderr=populated.error.stderr
                )
            )
        return Ok(populated.value)

    def _build_matrix(self, targets: tuple[BuildTarget, ...]) -> Stage:
        def run(ctx: RunContext) -> Result[tuple[TargetReport, ...], RunError]:
            info = ctx.require_info()
            record = ctx.require_record()
            pipeline = self._config.pipeline
            keys = ctx.cache_keys or CacheKeys(index=None, artifacts=None)
            jobs = [
                BuildJob(
                    target=target,
                    binaries=self._config.project.binaries,
                    project=self._config.project.name,
                    release_info=info,
                    toolchain=self._toolchain,
                    cache=self._cache,
                    cache_keys=keys,
                    fetcher=self._fetcher,
                    work_dir=self._root / pipeline.work_dir / "cells",
                    out_dir=self._root / pipeline.out_dir,
                    console=self._console,
                    abort=self._abort,
                    publisher=self._publisher,
                    record=record,
                )
                for target in targets
            ]
            executor = MatrixExecutor(
                max_parallel=pipeline.max_parallel,
                fail_fast=pipeline.fail_fast,
                console=self._console,
                abort=self._abort,
            )
            return Ok(executor.run(jobs))

        return Stage(
            name="build_matrix",
            provides="matrix",
            run=run,
            after=("release_info", "release_record", "dependency_cache"),
        )

    def _publish(self, ctx: RunContext) -> Result[bool, PublishBlocked | ReleaseError]:
        """Join barrier: runs once, after every cell has finished."""
        info = ctx.require_info()
        record = ctx.require_record()
        reports = ctx.matrix or ()

        reasons: list[str] = []
        if self._abort.is_set:
            reasons.append(f"run aborted ({self._abort.reason})")
        for report in reports:
            if report.status != "success":
                reasons.append(f"{report.target.id} {report.status}")
            elif report.asset is None:
                reasons.append(f"{report.target.id} not uploaded")
        if not reports:
            reasons.append("no targets built")
        if reasons:
            return Err(PublishBlocked(tag=record.tag, reasons=tuple(reasons)))

        expected = {r.artifact.archive_name for r in reports if r.artifact is not None}
        if len(expected) != len(reports):
            return Err(
                PublishBlocked(
                    tag=record.tag,
                    reasons=(f"{len(reports)} targets produced {len(expected)} distinct assets",),
                )
            )
        published = self._records.publish(record, expected_assets=expected, title=final_title(info))
        if isinstance(published, Err):
            return published
        return Ok(True)

    # -------------------------------------------------------------------------
    # Graph
    # -------------------------------------------------------------------------

    def build_graph(self, kind: ReleaseKind, targets: tuple[BuildTarget, ...]) -> StageGraph:
        stages = [
            Stage(name="release_info", provides="release_info", run=self._release_info),
            Stage(name="cache_keys", provides="cache_keys", run=self._cache_keys),
            Stage(
                name="release_record",
                provides="release_record",
                run=self._release_record,
                after=("release_info",),
            ),
            Stage(
                name="dependency_cache",
                provides="dependency_cache",
                run=self._dependency_cache,
                after=("cache_keys",),
                continue_on_error=True,
            ),
            self._build_matrix(targets),
        ]
        if kind == "versioned":
            stages.append(
                Stage(
                    name="publish",
                    provides="published",
                    run=self._publish,
                    after=("release_record", "build_matrix"),
                )
            )
        return StageGraph(stages)

    def run(self, trigger: TriggerContext) -> PipelineReport:
        self._warnings.clear()
        planned = plan_matrix(self._config.matrix)
        if isinstance(planned, Err):
            return PipelineReport(
                release_info=None,
                stages=(),
                targets=(),
                published=False,
                errors=(planned.error,),
            )
        targets = planned.value
        self._console.print(f"matrix: {len(targets)} targets", Style.DIM)

        kind = flow_for(trigger)
        graph = self.build_graph(kind, targets)
        ctx, outcomes = run_stages(
            graph,
            RunContext(trigger=trigger, config=self._config),
            console=self._console,
            abort=self._abort,
            max_workers=len(graph.order),
        )

        errors: list[RunError] = []
        warnings = list(self._warnings)
        for outcome in outcomes:
            if outcome.error is None or isinstance(outcome.error, StageBlocked):
                continue
            if graph.stage(outcome.name).continue_on_error:
                warnings.append(outcome.error.message)
            else:
                errors.append(outcome.error)

        record = ctx.release_record
        if kind == "nightly":
            published = record is not None and record.state == "published"
        else:
            published = bool(ctx.published)

        return PipelineReport(
            release_info=ctx.release_info,
            stages=outcomes,
            targets=ctx.matrix or (),
            published=published,
            warnings=tuple(warnings),
            errors=tuple(errors),
            aborted=self._abort.reason == INTERRUPTED,
        )
