"""Release hosting abstraction.

The pipeline only needs five operations from the hosting service. They are
captured by ReleaseHost so that the record manager and asset publisher can
run against GitHub (GhReleaseHost, in gh.py) or against MemoryReleaseHost in
tests and dry runs.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol, runtime_checkable

from shipyard.core.result import Err, Ok, Result
from shipyard.services.release.errors import ReleaseError
from shipyard.services.release.model import HostedRelease

__all__ = ["MemoryReleaseHost", "ReleaseHost"]


@runtime_checkable
class ReleaseHost(Protocol):
    def get_release(self, tag: str) -> Result[HostedRelease | None, ReleaseError]:
        """Return the release for `tag`, or Ok(None) if there is none."""
        ...

    def create_release(
        self,
        *,
        tag: str,
        title: str,
        notes: str,
        target: str | None,
        draft: bool,
        prerelease: bool,
    ) -> Result[HostedRelease, ReleaseError]:
        """Create a release. Fails with kind="tag_exists" if one exists."""
        ...

    def delete_release(self, tag: str) -> Result[None, ReleaseError]:
        """Delete a release and its tag. Fails with kind="not_found" if absent."""
        ...

    def publish_release(self, tag: str, *, title: str) -> Result[HostedRelease, ReleaseError]:
        """Flip a draft release to published."""
        ...

    def upload_asset(
        self, tag: str, *, path: Path, name: str, content_type: str
    ) -> Result[None, ReleaseError]:
        """Upload `path` as asset `name`, replacing an asset of the same name."""
        ...


def _empty_releases() -> dict[str, HostedRelease]:
    return {}


def _empty_names() -> set[str]:
    return set()


@dataclass
class MemoryReleaseHost:
    """In-memory ReleaseHost.

    Used by `--dry-run` and by tests. `failing_uploads` holds asset names whose
    upload is rejected, to exercise transport failures.
    """

    releases: dict[str, HostedRelease] = field(default_factory=_empty_releases)
    failing_uploads: set[str] = field(default_factory=_empty_names)
    fail_deletes: bool = False
    deleted: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _counter: int = 0

    def get_release(self, tag: str) -> Result[HostedRelease | None, ReleaseError]:
        with self._lock:
            return Ok(self.releases.get(tag))

    def create_release(
        self,
        *,
        tag: str,
        title: str,
        notes: str,
        target: str | None,
        draft: bool,
        prerelease: bool,
    ) -> Result[HostedRelease, ReleaseError]:
        del title, notes, target
        with self._lock:
            if tag in self.releases:
                return Err(ReleaseError(kind="tag_exists", message=f"release exists: {tag}"))
            self._counter += 1
            release = HostedRelease(
                tag=tag,
                upload_url=f"memory://releases/{self._counter}/assets{{?name,label}}",
                draft=draft,
                prerelease=prerelease,
            )
            self.releases[tag] = release
            return Ok(release)

    def delete_release(self, tag: str) -> Result[None, ReleaseError]:
        with self._lock:
            if self.fail_deletes:
                return Err(ReleaseError(kind="request_failed", message="HTTP 502 Bad Gateway"))
            if tag not in self.releases:
                return Err(ReleaseError(kind="not_found", message=f"release not found: {tag}"))
            del self.releases[tag]
            self.deleted.append(tag)
            return Ok(None)

    def publish_release(self, tag: str, *, title: str) -> Result[HostedRelease, ReleaseError]:
        del title
        with self._lock:
            current = self.releases.get(tag)
            if current is None:
                return Err(ReleaseError(kind="not_found", message=f"release not found: {tag}"))
            published = replace(current, draft=False)
            self.releases[tag] = published
            return Ok(published)

    def upload_asset(
        self, tag: str, *, path: Path, name: str, content_type: str
    ) -> Result[None, ReleaseError]:
        del path, content_type
        with self._lock:
            if name in self.failing_uploads:
                return Err(ReleaseError(kind="upload_failed", message="connection reset by peer"))
            current = self.releases.get(tag)
            if current is None:
                return Err(ReleaseError(kind="not_found", message=f"release not found: {tag}"))
            names = tuple(n for n in current.assets if n != name) + (name,)
            self.releases[tag] = replace(current, assets=names)
            return Ok(None)
