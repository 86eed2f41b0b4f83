from __future__ import annotations

from pathlib import Path

from shipyard.core.config import BinaryConfig
from shipyard.core.result import Err, Ok, Result
from shipyard.output.console import MockConsole
from shipyard.platform.process import ProcessError
from shipyard.services.build import (
    AbortSignal,
    BuildJob,
    BuildRequest,
    MatrixExecutor,
    RecordingToolchain,
    build_command,
    rustflags,
)
from shipyard.services.cache.keys import CacheKeys
from shipyard.services.cache.store import DependencyCache, DependencyFetcher, OfflineFetcher
from shipyard.services.errors import BuildError, Cancelled, PackagingError
from shipyard.services.matrix import BuildTarget
from shipyard.services.release.model import ReleaseInfo

BINARIES = (
    BinaryConfig(
        name="jormungandr",
        manifest_path="jormungandr/Cargo.toml",
        args=("--no-default-features",),
    ),
    BinaryConfig(name="jcli", manifest_path="jcli/Cargo.toml"),
)
VERSIONED = ReleaseInfo(version="0.9.0", tag="v0.9.0", kind="versioned", date_stamp="20240309")
NIGHTLY = ReleaseInfo(
    version="0.9.0-nightly.20240309", tag="nightly", kind="nightly", date_stamp="20240309"
)


def _target(triple: str = "x86_64-unknown-linux-gnu", *, os: str = "linux", cross: bool = False) -> BuildTarget:
    return BuildTarget(
        os=os,
        target_triple=triple,
        cpu_variant="generic",
        toolchain="stable",
        cross_compile=cross,
    )


def _job(
    tmp_path: Path,
    target: BuildTarget,
    *,
    toolchain: RecordingToolchain,
    abort: AbortSignal,
    console: MockConsole,
    info: ReleaseInfo = VERSIONED,
    fetcher: DependencyFetcher | None = None,
) -> BuildJob:
    return BuildJob(
        target=target,
        binaries=BINARIES,
        project="jormungandr",
        release_info=info,
        toolchain=toolchain,
        cache=DependencyCache(tmp_path / "cache"),
        cache_keys=CacheKeys(index=None, artifacts=None),
        fetcher=fetcher or OfflineFetcher(),
        work_dir=tmp_path / "cells",
        out_dir=tmp_path / "dist",
        console=console,
        abort=abort,
    )


class DeniedFetcher:
    """Raises PermissionError for cells of the `denied` os."""

    def __init__(self, *, denied: str) -> None:
        self._denied = denied

    def fetch(self, cargo_home: Path) -> Result[None, ProcessError]:
        if cargo_home.parent.name.startswith(f"{self._denied}-"):
            raise PermissionError(13, "Permission denied", str(cargo_home))
        return OfflineFetcher().fetch(cargo_home)


class TestBuildCommand:
    def _request(self, target: BuildTarget, tmp_path: Path) -> BuildRequest:
        return BuildRequest(
            binary=BINARIES[0],
            target=target,
            date_stamp="20240309",
            rustflags=rustflags("broadwell", embed_bitcode=True),
            target_dir=tmp_path / "target",
            cargo_home=tmp_path / "cargo-home",
        )

    def test_native(self, tmp_path: Path) -> None:
        cmd, env = build_command(self._request(_target(), tmp_path))
        assert cmd[:3] == ["cargo", "+stable", "build"]
        assert cmd[cmd.index("--bin") + 1] == "jormungandr"
        assert cmd[cmd.index("--target") + 1] == "x86_64-unknown-linux-gnu"
        assert "--locked" in cmd and "--release" in cmd
        assert cmd[-1] == "--no-default-features"
        assert env["RUSTFLAGS"] == "-C target-cpu=broadwell -C lto -C embed-bitcode=yes"
        assert env["DATE"] == "20240309"
        assert "CROSS_BUILD_ENV_PASSTHROUGH" not in env

    def test_cross(self, tmp_path: Path) -> None:
        target = _target("aarch64-unknown-linux-gnu", cross=True)
        cmd, env = build_command(self._request(target, tmp_path))
        assert cmd[0] == "cross"
        assert env["CROSS_BUILD_ENV_PASSTHROUGH"] == "DATE"


def test_rustflags_nightly() -> None:
    assert rustflags("generic") == "-C target-cpu=generic -C lto"


class TestAbortSignal:
    def test_first_reason_wins(self) -> None:
        abort = AbortSignal()
        assert not abort.is_set
        abort.trip("first")
        abort.trip("second")
        assert abort.is_set
        assert abort.reason == "first"


class TestBuildJob:
    def test_success(self, tmp_path: Path) -> None:
        toolchain = RecordingToolchain()
        report = _job(
            tmp_path, _target(), toolchain=toolchain, abort=AbortSignal(), console=MockConsole()
        ).run()
        assert report.status == "success"
        assert report.artifact is not None
        assert report.artifact.archive_name == (
            "jormungandr-0.9.0-x86_64-unknown-linux-gnu-generic.tar.gz"
        )
        assert report.artifact.binaries == ("jormungandr", "jcli")
        assert [c[c.index("--bin") + 1] for c in toolchain.commands] == ["jormungandr", "jcli"]

    def test_nightly_archive_carries_date(self, tmp_path: Path) -> None:
        report = _job(
            tmp_path,
            _target(),
            toolchain=RecordingToolchain(),
            abort=AbortSignal(),
            console=MockConsole(),
            info=NIGHTLY,
        ).run()
        assert report.artifact is not None
        assert ".20240309-" in report.artifact.archive_name

    def test_windows_exe_names(self, tmp_path: Path) -> None:
        target = _target("x86_64-pc-windows-msvc", os="windows")
        report = _job(
            tmp_path, target, toolchain=RecordingToolchain(), abort=AbortSignal(), console=MockConsole()
        ).run()
        assert report.artifact is not None
        assert report.artifact.binaries == ("jormungandr.exe", "jcli.exe")
        assert report.artifact.archive_name.endswith(".zip")

    def test_build_failure_stops_the_cell(self, tmp_path: Path) -> None:
        toolchain = RecordingToolchain(failing={"linux"})
        report = _job(
            tmp_path, _target(), toolchain=toolchain, abort=AbortSignal(), console=MockConsole()
        ).run()
        assert report.status == "failed"
        assert isinstance(report.error, BuildError)
        assert report.error.binary == "jormungandr"
        assert report.error.returncode == 101
        assert len(toolchain.commands) == 1

    def test_io_error_fails_only_its_cell(self, tmp_path: Path) -> None:
        console = MockConsole()
        abort = AbortSignal()
        toolchain = RecordingToolchain()
        fetcher = DeniedFetcher(denied="macos")
        jobs = [
            _job(tmp_path, _target("x86_64-apple-darwin", os="macos"), toolchain=toolchain, abort=abort, console=console, fetcher=fetcher),
            _job(tmp_path, _target(), toolchain=toolchain, abort=abort, console=console, fetcher=fetcher),
        ]
        reports = MatrixExecutor(max_parallel=2, fail_fast=False, console=console, abort=abort).run(jobs)
        assert [r.status for r in reports] == ["failed", "success"]
        error = reports[0].error
        assert isinstance(error, PackagingError)
        assert "Permission denied" in error.reason
        assert reports[1].artifact is not None
        assert not abort.is_set

    def test_io_error_trips_fail_fast(self, tmp_path: Path) -> None:
        console = MockConsole()
        abort = AbortSignal()
        fetcher = DeniedFetcher(denied="macos")
        toolchain = RecordingToolchain()
        jobs = [
            _job(tmp_path, _target("x86_64-apple-darwin", os="macos"), toolchain=toolchain, abort=abort, console=console, fetcher=fetcher),
            _job(tmp_path, _target(), toolchain=toolchain, abort=abort, console=console, fetcher=fetcher),
        ]
        reports = MatrixExecutor(max_parallel=1, fail_fast=True, console=console, abort=abort).run(jobs)
        assert [r.status for r in reports] == ["failed", "cancelled"]
        assert toolchain.commands == []
        assert report.artifact is None

    def test_fetch_failure(self, tmp_path: Path) -> None:
        class BrokenFetcher:
            def fetch(self, cargo_home: Path) -> Result[None, ProcessError]:
                return Err(ProcessError(("cargo", "fetch"), 101, "", "network down"))

        toolchain = RecordingToolchain()
        report = _job(
            tmp_path,
            _target(),
            toolchain=toolchain,
            abort=AbortSignal(),
            console=MockConsole(),
            fetcher=BrokenFetcher(),
        ).run()
        assert isinstance(report.error, BuildError)
        assert report.error.binary is None
        assert report.error.stderr == "network down"
        assert toolchain.commands == []

    def test_aborted_before_start(self, tmp_path: Path) -> None:
        abort = AbortSignal()
        abort.trip("interrupted")
        toolchain = RecordingToolchain()
        report = _job(
            tmp_path, _target(), toolchain=toolchain, abort=abort, console=MockConsole()
        ).run()
        assert report.status == "cancelled"
        assert isinstance(report.error, Cancelled)
        assert toolchain.commands == []


class TestMatrixExecutor:
    def test_failures_do_not_stop_siblings(self, tmp_path: Path) -> None:
        console = MockConsole()
        abort = AbortSignal()
        toolchain = RecordingToolchain(failing={"macos"})
        jobs = [
            _job(tmp_path, _target("x86_64-apple-darwin", os="macos"), toolchain=toolchain, abort=abort, console=console),
            _job(tmp_path, _target(), toolchain=toolchain, abort=abort, console=console),
        ]
        reports = MatrixExecutor(max_parallel=2, fail_fast=False, console=console, abort=abort).run(jobs)
        assert [r.status for r in reports] == ["failed", "success"]
        assert [r.target for r in reports] == [j.target for j in jobs]
        assert not abort.is_set
        assert console.has_error()

    def test_fail_fast_cancels_pending_cells(self, tmp_path: Path) -> None:
        console = MockConsole()
        abort = AbortSignal()
        toolchain = RecordingToolchain(failing={"macos"})
        jobs = [
            _job(tmp_path, _target("x86_64-apple-darwin", os="macos"), toolchain=toolchain, abort=abort, console=console),
            _job(tmp_path, _target(), toolchain=toolchain, abort=abort, console=console),
            _job(tmp_path, _target("aarch64-unknown-linux-gnu", cross=True), toolchain=toolchain, abort=abort, console=console),
        ]
        reports = MatrixExecutor(max_parallel=1, fail_fast=True, console=console, abort=abort).run(jobs)
        assert [r.status for r in reports] == ["failed", "cancelled", "cancelled"]
        assert abort.reason is not None and abort.reason.startswith("fail-fast")
        assert len(toolchain.commands) == 1


def test_recording_toolchain_output(tmp_path: Path) -> None:
    request = BuildRequest(
        binary=BINARIES[1],
        target=_target(),
        date_stamp="20240309",
        rustflags=rustflags("generic"),
        target_dir=tmp_path / "target",
        cargo_home=tmp_path / "cargo-home",
    )
    result = RecordingToolchain().build(request)
    assert result == Ok(tmp_path / "target" / "x86_64-unknown-linux-gnu" / "release" / "jcli")
