from __future__ import annotations

import json
from dataclasses import dataclass

from shipyard.core.errors import ErrorCode
from shipyard.output.console import ConsoleProtocol, Style
from shipyard.services.build import TargetReport
from shipyard.services.errors import (
    MatrixError,
    ResolutionError,
    RunError,
    UploadError,
    error_kind,
)
from shipyard.services.pipeline.graph import StageOutcome
from shipyard.services.release.model import ReleaseInfo

__all__ = [
    "PipelineReport",
    "TargetReport",
    "exit_code_for",
    "render_report",
    "report_to_dict",
    "report_to_json",
]


@dataclass(frozen=True, slots=True)
class PipelineReport:
    release_info: ReleaseInfo | None
    stages: tuple[StageOutcome, ...]
    targets: tuple[TargetReport, ...]
    published: bool
    warnings: tuple[str, ...] = ()
    errors: tuple[RunError, ...] = ()
    aborted: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for t in self.targets if t.status == "success")

    @property
    def failed(self) -> int:
        return sum(1 for t in self.targets if t.status == "failed")

    @property
    def cancelled(self) -> int:
        return sum(1 for t in self.targets if t.status == "cancelled")

    @property
    def ok(self) -> bool:
        if self.errors or self.aborted or not self.targets:
            return False
        return self.succeeded == len(self.targets) and self.published


def exit_code_for(report: PipelineReport) -> ErrorCode:
    if report.aborted:
        return ErrorCode.ABORTED
    if report.ok:
        return ErrorCode.OK
    for error in report.errors:
        if isinstance(error, ResolutionError | MatrixError):
            return ErrorCode.USER_ERROR
    target_errors = [t.error for t in report.targets if t.status == "failed"]
    if target_errors and all(isinstance(e, UploadError) for e in target_errors):
        return ErrorCode.NETWORK_ERROR
    if target_errors:
        return ErrorCode.BUILD_ERROR
    return ErrorCode.RELEASE_ERROR


def _target_dict(report: TargetReport) -> dict[str, object]:
    return {
        "target": report.target.id,
        "os": report.target.os,
        "triple": report.target.target_triple,
        "cpu_variant": report.target.cpu_variant,
        "toolchain": report.target.toolchain,
        "cross": report.target.cross_compile,
        "status": report.status,
        "error": None
        if report.error is None
        else {"kind": error_kind(report.error), "message": report.error.message},
        "archive": None if report.artifact is None else report.artifact.archive_name,
        "sha256": None if report.artifact is None else report.artifact.archive_sha256,
        "uploaded": report.asset is not None,
    }


def report_to_dict(report: PipelineReport) -> dict[str, object]:
    info = report.release_info
    return {
        "ok": report.ok,
        "release": None
        if info is None
        else {
            "version": info.version,
            "tag": info.tag,
            "kind": info.kind,
            "date": info.date_stamp,
        },
        "published": report.published,
        "aborted": report.aborted,
        "stages": [
            {
                "name": s.name,
                "status": s.status,
                "error": None if s.error is None else s.error.message,
            }
            for s in report.stages
        ],
        "targets": [_target_dict(t) for t in report.targets],
        "summary": {
            "total": len(report.targets),
            "succeeded": report.succeeded,
            "failed": report.failed,
            "cancelled": report.cancelled,
        },
        "warnings": list(report.warnings),
        "errors": [{"kind": error_kind(e), "message": e.message} for e in report.errors],
    }


def report_to_json(report: PipelineReport) -> str:
    return json.dumps(report_to_dict(report), indent=2) + "\n"


def render_report(report: PipelineReport, console: ConsoleProtocol) -> None:
    info = report.release_info
    title = f"Release {info.tag} ({info.kind})" if info is not None else "Release"
    console.header(title)

    for t in report.targets:
        match t.status:
            case "success":
                name = t.artifact.archive_name if t.artifact is not None else ""
                console.print(f"  {t.target.id:<50} ok        {name}", Style.SUCCESS)
            case "failed":
                console.print(f"  {t.target.id:<50} failed", Style.ERROR)
                if t.error is not None:
                    console.print(f"      {t.error.message}", Style.DIM)
            case "cancelled":
                console.print(f"  {t.target.id:<50} cancelled", Style.DIM)

    if report.targets:
        console.print(
            f"{report.succeeded}/{len(report.targets)} targets succeeded"
            f", {report.failed} failed, {report.cancelled} cancelled",
            Style.BOLD,
        )

    for warning in report.warnings:
        console.warning(warning)
    for error in report.errors:
        console.error(error.message)
        hint = getattr(error, "hint", None)
        if hint:
            console.print(f"hint: {hint}", Style.DIM)

    if report.aborted:
        console.warning("run aborted")
    elif info is None:
        return
    elif report.ok:
        console.success(f"release {info.tag} complete")
    elif not report.published:
        console.print(f"release {info.tag} not published", Style.WARNING)
