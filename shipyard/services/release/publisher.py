from __future__ import annotations

from shipyard.core.result import Err, Ok, Result
from shipyard.output.console import ConsoleProtocol, Style
from shipyard.services.dist import BuildArtifact
from shipyard.services.errors import UploadError
from shipyard.services.release.host import ReleaseHost
from shipyard.services.release.model import AssetRef, ReleaseRecord

__all__ = ["AssetPublisher"]


class AssetPublisher:
    """Uploads verified archives to a release record.

    Uploads replace an asset of the same name, on the host and in the
    record, so re-running a cell never duplicates assets. Transport failures
    fail the cell and are not retried.
    """

    def __init__(self, *, host: ReleaseHost, console: ConsoleProtocol) -> None:
        self._host = host
        self._console = console

    def upload(self, record: ReleaseRecord, artifact: BuildArtifact) -> Result[AssetRef, UploadError]:
        name = artifact.archive_name
        result = self._host.upload_asset(
            record.tag,
            path=artifact.archive_path,
            name=name,
            content_type=artifact.content_type,
        )
        if isinstance(result, Err):
            reason = result.error.message
            if result.error.hint:
                reason = f"{reason} ({result.error.hint})"
            return Err(
                UploadError(
                    target_id=artifact.target.id,
                    tag=record.tag,
                    asset_name=name,
                    reason=reason,
                )
            )

        ref = AssetRef(
            name=name,
            target_id=artifact.target.id,
            size=artifact.archive_path.stat().st_size,
            sha256=artifact.archive_sha256,
            content_type=artifact.content_type,
        )
        replaced = record.add_asset(ref)
        verb = "replaced" if replaced else "uploaded"
        self._console.print(f"{verb} {name} -> {record.tag}", Style.DIM)
        return Ok(ref)
