"""Release record lifecycle.

Versioned flow:  create (Draft) -> assets appended by cells -> publish.
Nightly flow:    rotate (delete the reserved tag, recreate it as a published
                 prerelease) -> assets appended by cells.

A versioned tag that already exists is a conflict and is never overwritten.
Failing to delete the previous nightly is only a warning: the rotation goes
on and the create step decides whether the run can continue.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from shipyard.core.result import Err, Ok, Result
from shipyard.output.console import ConsoleProtocol, Style
from shipyard.services.errors import PublishBlocked, ReleaseConflictError, RotationWarning
from shipyard.services.release.errors import ReleaseError
from shipyard.services.release.host import ReleaseHost
from shipyard.services.release.model import HostedRelease, ReleaseInfo, ReleaseRecord

__all__ = [
    "PreparedRecord",
    "ReleaseRecordManager",
    "draft_title",
    "final_title",
]


@dataclass(frozen=True, slots=True)
class PreparedRecord:
    record: ReleaseRecord
    warnings: tuple[RotationWarning, ...] = ()


def draft_title(info: ReleaseInfo) -> str:
    if info.is_nightly:
        return info.version
    return f"Release {info.version} (in progress)"


def final_title(info: ReleaseInfo) -> str:
    if info.is_nightly:
        return info.version
    return f"Release {info.version}"


def _record(release: HostedRelease) -> ReleaseRecord:
    return ReleaseRecord(
        tag=release.tag,
        upload_url=release.upload_url,
        state="draft" if release.draft else "published",
        prerelease=release.prerelease,
    )


class ReleaseRecordManager:
    def __init__(self, *, host: ReleaseHost, console: ConsoleProtocol) -> None:
        self._host = host
        self._console = console

    def create(
        self,
        tag: str,
        *,
        title: str,
        notes: str = "",
        target_sha: str | None = None,
        draft: bool = True,
        prerelease: bool = False,
    ) -> Result[ReleaseRecord, ReleaseConflictError | ReleaseError]:
        existing = self._host.get_release(tag)
        if isinstance(existing, Err):
            return existing
        if existing.value is not None:
            return Err(ReleaseConflictError(tag=tag))

        created = self._host.create_release(
            tag=tag,
            title=title,
            notes=notes,
            target=target_sha,
            draft=draft,
            prerelease=prerelease,
        )
        if isinstance(created, Err):
            # Lost a race with another run creating the same tag.
            if created.error.kind == "tag_exists":
                return Err(ReleaseConflictError(tag=tag))
            return created

        state = "draft" if draft else "published"
        self._console.print(f"created {state} release {tag}", Style.DIM)
        return Ok(_record(created.value))

    def publish(
        self,
        record: ReleaseRecord,
        *,
        expected_assets: Iterable[str],
        title: str,
    ) -> Result[ReleaseRecord, PublishBlocked | ReleaseError]:
        """Flip a Draft record to Published once every expected asset is attached."""
        if record.state != "draft":
            raise ValueError(f"release {record.tag} is not a draft")

        present = record.asset_names()
        missing = sorted(set(expected_assets) - present)
        if missing:
            return Err(
                PublishBlocked(
                    tag=record.tag,
                    reasons=tuple(f"missing asset {name}" for name in missing),
                )
            )

        published = self._host.publish_release(record.tag, title=title)
        if isinstance(published, Err):
            return published
        record.mark_published()
        self._console.success(f"published release {record.tag}")
        return Ok(record)

    def rotate(
        self,
        tag: str,
        *,
        title: str,
        notes: str = "",
        target_sha: str | None = None,
    ) -> Result[PreparedRecord, ReleaseError]:
        """Delete the previous record for `tag` (if any) and recreate it."""
        warnings: list[RotationWarning] = []
        deleted = self._host.delete_release(tag)
        if isinstance(deleted, Err):
            reason = (
                "no previous release"
                if deleted.error.kind == "not_found"
                else deleted.error.message
            )
            warning = RotationWarning(tag=tag, reason=reason)
            self._console.warning(warning.message)
            warnings.append(warning)
        else:
            self._console.print(f"deleted previous release {tag}", Style.DIM)

        created = self._host.create_release(
            tag=tag,
            title=title,
            notes=notes,
            target=target_sha,
            draft=False,
            prerelease=True,
        )
        if isinstance(created, Err):
            return created

        self._console.print(f"created prerelease {tag}", Style.DIM)
        return Ok(PreparedRecord(record=_record(created.value), warnings=tuple(warnings)))

    def prepare(
        self,
        info: ReleaseInfo,
        *,
        notes: str = "",
        target_sha: str | None = None,
    ) -> Result[PreparedRecord, ReleaseConflictError | ReleaseError]:
        """Create the record this run uploads into."""
        if info.is_nightly:
            return self.rotate(info.tag, title=draft_title(info), notes=notes, target_sha=target_sha)

        created = self.create(
            info.tag,
            title=draft_title(info),
            notes=notes,
            target_sha=target_sha,
            draft=True,
            prerelease="-" in info.version,
        )
        if isinstance(created, Err):
            return created
        return Ok(PreparedRecord(record=created.value))
