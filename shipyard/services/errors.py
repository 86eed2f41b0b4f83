"""Pipeline error taxonomy.

Errors are values. Target-scoped errors are collected per BuildTarget and
never stop sibling targets; run-scoped errors abort the run before the
matrix is expanded or before the publish barrier fires.
"""

from __future__ import annotations

from dataclasses import dataclass

from shipyard.services.release.errors import ReleaseError


@dataclass(frozen=True, slots=True)
class ResolutionError:
    """Trigger context cannot be turned into a ReleaseInfo."""

    message: str
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class MatrixError:
    """Matrix configuration is invalid (duplicates, empty or dangling rules)."""

    message: str
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class BuildError:
    target_id: str
    # None when the dependency fetch failed before any binary was built.
    binary: str | None
    returncode: int
    stderr: str = ""

    @property
    def message(self) -> str:
        what = f"build of {self.binary}" if self.binary else "dependency fetch"
        return f"{self.target_id}: {what} failed (exit {self.returncode})"


@dataclass(frozen=True, slots=True)
class IntegrityError:
    target_id: str
    archive: str
    mismatches: tuple[str, ...]

    @property
    def message(self) -> str:
        return f"{self.target_id}: checksum mismatch in {self.archive}: {', '.join(self.mismatches)}"


@dataclass(frozen=True, slots=True)
class PackagingError:
    """Archive could not be produced (missing binary, I/O failure)."""

    target_id: str
    reason: str

    @property
    def message(self) -> str:
        return f"{self.target_id}: packaging failed: {self.reason}"


@dataclass(frozen=True, slots=True)
class UploadError:
    target_id: str
    tag: str
    asset_name: str
    reason: str

    @property
    def message(self) -> str:
        return f"{self.target_id}: upload of {self.asset_name} to {self.tag} failed: {self.reason}"


@dataclass(frozen=True, slots=True)
class Cancelled:
    target_id: str

    @property
    def message(self) -> str:
        return f"{self.target_id}: cancelled"


@dataclass(frozen=True, slots=True)
class DependencyFetchError:
    """Warming the dependency cache failed; cells fall back to their own fetch."""

    returncode: int
    stderr: str = ""

    @property
    def message(self) -> str:
        return f"dependency fetch failed (exit {self.returncode})"


@dataclass(frozen=True, slots=True)
class ReleaseConflictError:
    tag: str

    @property
    def message(self) -> str:
        return f"release {self.tag} already exists"

    @property
    def hint(self) -> str:
        return "Versioned releases are never overwritten; delete it or bump the version."


@dataclass(frozen=True, slots=True)
class RotationWarning:
    """Nightly delete step failed or found nothing; logged, never fatal."""

    tag: str
    reason: str

    @property
    def message(self) -> str:
        return f"could not delete previous {self.tag} release: {self.reason}"


@dataclass(frozen=True, slots=True)
class PublishBlocked:
    """The publish join barrier refused to fire."""

    tag: str
    reasons: tuple[str, ...]

    @property
    def message(self) -> str:
        return f"release {self.tag} left in draft: " + "; ".join(self.reasons)


@dataclass(frozen=True, slots=True)
class StageBlocked:
    stage: str
    blocked_by: tuple[str, ...]

    @property
    def message(self) -> str:
        return f"stage {self.stage} skipped: {', '.join(self.blocked_by)} did not succeed"


TargetError = BuildError | IntegrityError | PackagingError | UploadError | Cancelled

RunError = (
    ResolutionError
    | MatrixError
    | DependencyFetchError
    | ReleaseConflictError
    | ReleaseError
    | PublishBlocked
    | StageBlocked
)

PipelineError = TargetError | RunError


def error_kind(error: PipelineError | RotationWarning) -> str:
    """Stable name of an error, used in reports."""
    return type(error).__name__
