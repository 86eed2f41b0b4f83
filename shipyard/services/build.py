"""Build matrix executor.

One BuildJob per matrix cell runs, strictly in order:

    restore dependency cache -> build every binary -> package -> verify -> upload

Cells run concurrently on a thread pool (MatrixExecutor). A failing cell is
recorded in its own TargetReport and never stops its siblings, unless
`fail_fast` is set, in which case the first failure trips the AbortSignal.
The abort signal is checked before every step, so a tripped signal (fail-fast
or Ctrl-C) leaves the remaining cells `cancelled` rather than half-built.
"""

from __future__ import annotations

import shutil
import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Protocol

from shipyard.core.config import BinaryConfig
from shipyard.core.result import Err, Ok, Result
from shipyard.output.console import ConsoleProtocol, Style
from shipyard.platform.process import ProcessError
from shipyard.platform.process import run as run_process
from shipyard.services.cache.keys import CacheKeys
from shipyard.services.cache.store import DependencyCache, DependencyFetcher
from shipyard.services.dist import BuildArtifact, package_and_verify
from shipyard.services.errors import BuildError, Cancelled, PackagingError, TargetError
from shipyard.services.matrix import BuildTarget
from shipyard.services.release.model import AssetRef, ReleaseInfo, ReleaseRecord
from shipyard.services.release.publisher import AssetPublisher
from shipyard.services.release.timeouts import BUILD_TIMEOUT_SECONDS

__all__ = [
    "AbortSignal",
    "BuildJob",
    "BuildRequest",
    "CargoToolchain",
    "MatrixExecutor",
    "RecordingToolchain",
    "TargetReport",
    "TargetStatus",
    "Toolchain",
    "build_command",
    "rustflags",
]

TargetStatus = Literal["success", "failed", "cancelled"]

# Keep the tail of compiler output in reports; full logs belong to the CI run.
_STDERR_TAIL_LINES = 40


class AbortSignal:
    """Run-wide cancellation flag shared by every cell."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    def trip(self, reason: str) -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason


@dataclass(frozen=True, slots=True)
class BuildRequest:
    """Build binary `binary` for `target`."""

    binary: BinaryConfig
    target: BuildTarget
    date_stamp: str
    rustflags: str
    target_dir: Path
    cargo_home: Path


class Toolchain(Protocol):
    def build(self, request: BuildRequest) -> Result[Path, ProcessError]:
        """Compile one binary and return the path of the produced executable."""
        ...


def rustflags(cpu_variant: str, *, embed_bitcode: bool = False) -> str:
    flags = f"-C target-cpu={cpu_variant} -C lto"
    if embed_bitcode:
        flags += " -C embed-bitcode=yes"
    return flags


def build_command(request: BuildRequest) -> tuple[list[str], dict[str, str]]:
    """Command line and environment overlay for one binary."""
    target = request.target
    program = "cross" if target.cross_compile else "cargo"
    cmd = [
        program,
        f"+{target.toolchain}",
        "build",
        "--manifest-path",
        request.binary.manifest_path,
        "--bin",
        request.binary.name,
        "--locked",
        "--release",
        "--target",
        target.target_triple,
        "--target-dir",
        str(request.target_dir),
        *request.binary.args,
    ]
    env = {
        "RUSTFLAGS": request.rustflags,
        "DATE": request.date_stamp,
        "CARGO_HOME": str(request.cargo_home),
    }
    if target.cross_compile:
        # Forward the date stamp into the cross build container.
        env["CROSS_BUILD_ENV_PASSTHROUGH"] = "DATE"
    return cmd, env


def _output_path(request: BuildRequest) -> Path:
    target = request.target
    return (
        request.target_dir / target.target_triple / "release" / target.exe_name(request.binary.name)
    )


class CargoToolchain:
    """Toolchain backed by `cargo` / `cross`."""

    def __init__(self, *, project_root: Path) -> None:
        self._root = project_root

    def build(self, request: BuildRequest) -> Result[Path, ProcessError]:
        cmd, env = build_command(request)
        result = run_process(cmd, cwd=self._root, env=env, timeout=BUILD_TIMEOUT_SECONDS)
        if isinstance(result, Err):
            return result
        return Ok(_output_path(request))


def _no_commands() -> list[tuple[str, ...]]:
    return []


def _no_failures() -> set[str]:
    return set()


@dataclass
class RecordingToolchain:
    """Toolchain that records commands and writes placeholder executables.

    Used by `--dry-run` and by tests. A cell fails when its target id, os or
    triple is listed in `failing`.
    """

    failing: set[str] = field(default_factory=_no_failures)
    commands: list[tuple[str, ...]] = field(default_factory=_no_commands)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def build(self, request: BuildRequest) -> Result[Path, ProcessError]:
        cmd, _ = build_command(request)
        with self._lock:
            self.commands.append(tuple(cmd))

        target = request.target
        if {target.id, target.os, target.target_triple} & self.failing:
            return Err(
                ProcessError(
                    command=tuple(cmd),
                    returncode=101,
                    stdout="",
                    stderr=f"error: could not compile `{request.binary.name}`",
                )
            )

        out = _output_path(request)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(f"{request.binary.name} {target.id} {request.date_stamp}\n", encoding="utf-8")
        return Ok(out)


@dataclass(frozen=True, slots=True)
class TargetReport:
    target: BuildTarget
    status: TargetStatus
    error: TargetError | None = None
    artifact: BuildArtifact | None = None
    asset: AssetRef | None = None


def _tail(text: str) -> str:
    lines = text.strip().splitlines()
    return "\n".join(lines[-_STDERR_TAIL_LINES:])


class BuildJob:
    """Everything that happens to one matrix cell."""

    def __init__(
        self,
        *,
        target: BuildTarget,
        binaries: tuple[BinaryConfig, ...],
        project: str,
        release_info: ReleaseInfo,
        toolchain: Toolchain,
        cache: DependencyCache,
        cache_keys: CacheKeys,
        fetcher: DependencyFetcher,
        work_dir: Path,
        out_dir: Path,
        console: ConsoleProtocol,
        abort: AbortSignal,
        publisher: AssetPublisher | None = None,
        record: ReleaseRecord | None = None,
    ) -> None:
        self.target = target
        self._binaries = binaries
        self._project = project
        self._info = release_info
        self._toolchain = toolchain
        self._cache = cache
        self._keys = cache_keys
        self._fetcher = fetcher
        self._cell_dir = work_dir / target.id
        self._out_dir = out_dir
        self._console = console
        self._abort = abort
        self._publisher = publisher
        self._record = record

    def _cancelled(self) -> TargetReport:
        return TargetReport(
            target=self.target, status="cancelled", error=Cancelled(target_id=self.target.id)
        )

    def _failed(self, error: TargetError) -> TargetReport:
        return TargetReport(target=self.target, status="failed", error=error)

    def _prepare_dependencies(self, cargo_home: Path) -> Result[None, BuildError]:
        cargo_home.mkdir(parents=True, exist_ok=True)
        try:
            if self._cache.restore_all(self._keys, cargo_home):
                return Ok(None)
        except OSError as e:
            self._console.warning(f"{self.target.id}: dependency cache restore failed: {e}")

        self._console.print(f"{self.target.id}: dependency cache miss, fetching", Style.DIM)
        fetched = self._fetcher.fetch(cargo_home)
        if isinstance(fetched, Err):
            return Err(
                BuildError(
                    target_id=self.target.id,
                    binary=None,
                    returncode=fetched.error.returncode,
                    stderr=_tail(fetched.error.stderr),
                )
            )
        try:
            self._cache.store_all(self._keys, cargo_home)
        except OSError as e:
            self._console.warning(f"{self.target.id}: dependency cache store failed: {e}")
        return Ok(None)

    def _build_binaries(self, cargo_home: Path) -> Result[list[tuple[Path, str]], BuildError]:
        flags = rustflags(self.target.cpu_variant, embed_bitcode=not self._info.is_nightly)
        built: list[tuple[Path, str]] = []
        for binary in self._binaries:
            if self._abort.is_set:
                break
            self._console.print(f"{self.target.id}: building {binary.name}", Style.DIM)
            request = BuildRequest(
                binary=binary,
                target=self.target,
                date_stamp=self._info.date_stamp,
                rustflags=flags,
                target_dir=self._cell_dir / "target",
                cargo_home=cargo_home,
            )
            result = self._toolchain.build(request)
            if isinstance(result, Err):
                return Err(
                    BuildError(
                        target_id=self.target.id,
                        binary=binary.name,
                        returncode=result.error.returncode,
                        stderr=_tail(result.error.stderr),
                    )
                )
            built.append((result.value, self.target.exe_name(binary.name)))
        return Ok(built)

    def run(self) -> TargetReport:
        if self._abort.is_set:
            return self._cancelled()

        cargo_home = self._cell_dir / "cargo-home"
        deps = self._prepare_dependencies(cargo_home)
        if isinstance(deps, Err):
            return self._failed(deps.error)

        if self._abort.is_set:
            return self._cancelled()
        built = self._build_binaries(cargo_home)
        if isinstance(built, Err):
            return self._failed(built.error)
        if self._abort.is_set:
            return self._cancelled()

        packaged = package_and_verify(
            target=self.target,
            binaries=built.value,
            out_dir=self._out_dir,
            scratch=self._cell_dir / "verify",
            project=self._project,
            version=self._info.version,
            date_stamp=self._info.date_stamp if self._info.is_nightly else None,
        )
        if isinstance(packaged, Err):
            return self._failed(packaged.error)
        artifact = packaged.value
        shutil.rmtree(self._cell_dir / "verify", ignore_errors=True)

        if self._publisher is None or self._record is None:
            return TargetReport(target=self.target, status="success", artifact=artifact)

        if self._abort.is_set:
            return TargetReport(
                target=self.target,
                status="cancelled",
                error=Cancelled(target_id=self.target.id),
                artifact=artifact,
            )
        uploaded = self._publisher.upload(self._record, artifact)
        if isinstance(uploaded, Err):
            return TargetReport(
                target=self.target, status="failed", error=uploaded.error, artifact=artifact
            )
        return TargetReport(
            target=self.target, status="success", artifact=artifact, asset=uploaded.value
        )


class MatrixExecutor:
    """Run BuildJobs concurrently, one per target."""

    def __init__(
        self,
        *,
        max_parallel: int,
        fail_fast: bool,
        console: ConsoleProtocol,
        abort: AbortSignal,
    ) -> None:
        self._max_parallel = max(1, max_parallel)
        self._fail_fast = fail_fast
        self._console = console
        self._abort = abort

    def _run_job(self, job: BuildJob) -> TargetReport:
        try:
            report = job.run()
        except OSError as e:
            # I/O failures stay scoped to the cell.
            report = TargetReport(
                target=job.target,
                status="failed",
                error=PackagingError(target_id=job.target.id, reason=f"I/O error: {e}"),
            )
        # Trip on the worker thread, before the slot frees up for the next cell.
        if report.status == "failed" and self._fail_fast:
            self._abort.trip(f"fail-fast: {report.target.id} failed")
        return report

    def _finish(self, report: TargetReport) -> None:
        match report.status:
            case "success":
                self._console.success(f"{report.target.id}")
            case "failed":
                message = report.error.message if report.error is not None else "failed"
                self._console.error(message)
            case "cancelled":
                self._console.print(f"{report.target.id}: cancelled", Style.DIM)

    def run(self, jobs: Iterable[BuildJob]) -> tuple[TargetReport, ...]:
        """Run every job and return the reports in submission order."""
        job_list = list(jobs)
        reports: dict[int, TargetReport] = {}
        with ThreadPoolExecutor(max_workers=self._max_parallel) as pool:
            futures: dict[Future[TargetReport], int] = {
                pool.submit(self._run_job, job): i for i, job in enumerate(job_list)
            }
            for future in as_completed(futures):
                index = futures[future]
                report = future.result()
                reports[index] = report
                self._finish(report)
        return tuple(reports[i] for i in range(len(job_list)))
