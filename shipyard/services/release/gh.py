from __future__ import annotations

import json
import shutil
from pathlib import Path
from time import sleep

from shipyard.core.result import Err, Ok, Result
from shipyard.core.structured import as_str_dict, get_list, get_str
from shipyard.platform.process import ProcessError
from shipyard.platform.process import run as run_process
from shipyard.services.release.errors import ReleaseError, ReleaseErrorKind
from shipyard.services.release.model import HostedRelease
from shipyard.services.release.timeouts import (
    GH_READ_RETRY_ATTEMPTS,
    GH_READ_RETRY_DELAY_SECONDS,
    GH_TIMEOUT_SECONDS,
    GH_UPLOAD_TIMEOUT_SECONDS,
)

_VIEW_FIELDS = "tagName,isDraft,isPrerelease,uploadUrl,assets"


def _is_transient_gh_error(error: ProcessError) -> bool:
    text = f"{error.stderr}\n{error.stdout}".lower()
    markers = (
        "timed out",
        "timeout",
        "connection reset",
        "connection refused",
        "temporarily unavailable",
        "service unavailable",
        "bad gateway",
        "gateway timeout",
        "tls handshake timeout",
        "network is unreachable",
        "http 429",
        "http 500",
        "http 502",
        "http 503",
        "http 504",
    )
    return any(marker in text for marker in markers)


def _is_not_found(error: ProcessError) -> bool:
    text = f"{error.stderr}\n{error.stdout}".lower()
    return "release not found" in text or "http 404" in text


def _is_tag_exists(error: ProcessError) -> bool:
    text = f"{error.stderr}\n{error.stdout}".lower()
    return "already exists" in text


def ensure_gh_available() -> Result[None, ReleaseError]:
    if shutil.which("gh") is None:
        return Err(
            ReleaseError(
                kind="gh_missing",
                message="gh: missing",
                hint="Install GitHub CLI: https://cli.github.com/",
            )
        )
    return Ok(None)


def parse_release_view(payload: str) -> Result[HostedRelease, ReleaseError]:
    """Parse `gh release view --json tagName,isDraft,isPrerelease,uploadUrl,assets`."""
    try:
        obj: object = json.loads(payload)
    except json.JSONDecodeError as e:
        return Err(
            ReleaseError(kind="invalid_response", message=f"invalid JSON from gh release view: {e}")
        )

    data = as_str_dict(obj)
    if data is None:
        return Err(ReleaseError(kind="invalid_response", message="unexpected release payload"))

    tag = get_str(data, "tagName")
    upload_url = get_str(data, "uploadUrl")
    draft = data.get("isDraft")
    prerelease = data.get("isPrerelease")
    if tag is None or upload_url is None:
        return Err(ReleaseError(kind="invalid_response", message="release payload missing tag/url"))
    if not isinstance(draft, bool) or not isinstance(prerelease, bool):
        return Err(ReleaseError(kind="invalid_response", message="release payload missing flags"))

    names: list[str] = []
    for item in get_list(data, "assets") or []:
        d = as_str_dict(item)
        if d is None:
            continue
        name = get_str(d, "name")
        if name is not None:
            names.append(name)

    return Ok(
        HostedRelease(
            tag=tag,
            upload_url=upload_url,
            draft=draft,
            prerelease=prerelease,
            assets=tuple(names),
        )
    )


class GhReleaseHost:
    """ReleaseHost backed by the GitHub CLI.

    The token is handed to gh as GH_TOKEN; credential handling is gh's job.
    """

    def __init__(self, *, repo: str, cwd: Path, token: str | None = None) -> None:
        self._repo = repo
        self._cwd = cwd
        self._env = {"GH_TOKEN": token} if token else None

    def _run(self, cmd: list[str], *, timeout: float = GH_TIMEOUT_SECONDS) -> Result[str, ProcessError]:
        return run_process(cmd, cwd=self._cwd, env=self._env, timeout=timeout)

    def _read(self, cmd: list[str]) -> Result[str, ProcessError]:
        """Idempotent read with retry on transient failures."""
        attempts = max(1, GH_READ_RETRY_ATTEMPTS)
        result = self._run(cmd)
        for attempt in range(1, attempts):
            if isinstance(result, Ok) or not _is_transient_gh_error(result.error):
                break
            sleep(GH_READ_RETRY_DELAY_SECONDS * attempt)
            result = self._run(cmd)
        return result

    def _error(self, kind: ReleaseErrorKind, message: str, error: ProcessError) -> ReleaseError:
        return ReleaseError(kind=kind, message=message, hint=error.stderr.strip() or None)

    def get_release(self, tag: str) -> Result[HostedRelease | None, ReleaseError]:
        result = self._read(
            ["gh", "release", "view", tag, "--repo", self._repo, "--json", _VIEW_FIELDS]
        )
        if isinstance(result, Err):
            if _is_not_found(result.error):
                return Ok(None)
            return Err(self._error("request_failed", f"gh release view failed: {tag}", result.error))
        return parse_release_view(result.value)

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
        cmd = [
            "gh",
            "release",
            "create",
            tag,
            "--repo",
            self._repo,
            "--title",
            title,
            "--notes",
            notes,
        ]
        if draft:
            cmd.append("--draft")
        if prerelease:
            cmd.append("--prerelease")
        if target:
            cmd.extend(["--target", target])

        result = self._run(cmd)
        if isinstance(result, Err):
            kind: ReleaseErrorKind = "tag_exists" if _is_tag_exists(result.error) else "request_failed"
            return Err(self._error(kind, f"gh release create failed: {tag}", result.error))

        created = self.get_release(tag)
        if isinstance(created, Err):
            return created
        if created.value is None:
            return Err(
                ReleaseError(kind="invalid_response", message=f"release {tag} missing after create")
            )
        return Ok(created.value)

    def delete_release(self, tag: str) -> Result[None, ReleaseError]:
        result = self._run(
            ["gh", "release", "delete", tag, "--repo", self._repo, "--yes", "--cleanup-tag"]
        )
        if isinstance(result, Err):
            kind: ReleaseErrorKind = "not_found" if _is_not_found(result.error) else "request_failed"
            return Err(self._error(kind, f"gh release delete failed: {tag}", result.error))
        return Ok(None)

    def publish_release(self, tag: str, *, title: str) -> Result[HostedRelease, ReleaseError]:
        result = self._run(
            ["gh", "release", "edit", tag, "--repo", self._repo, "--draft=false", "--title", title]
        )
        if isinstance(result, Err):
            return Err(self._error("request_failed", f"gh release edit failed: {tag}", result.error))

        published = self.get_release(tag)
        if isinstance(published, Err):
            return published
        if published.value is None:
            return Err(ReleaseError(kind="not_found", message=f"release {tag} vanished on publish"))
        return Ok(published.value)

    def upload_asset(
        self, tag: str, *, path: Path, name: str, content_type: str
    ) -> Result[None, ReleaseError]:
        # gh derives the asset name from the file name and the content type
        # from the extension; both are fixed by the archive naming convention.
        del content_type
        if path.name != name:
            return Err(
                ReleaseError(
                    kind="upload_failed",
                    message=f"asset name {name} does not match file {path.name}",
                )
            )
        result = self._run(
            ["gh", "release", "upload", tag, str(path), "--repo", self._repo, "--clobber"],
            timeout=GH_UPLOAD_TIMEOUT_SECONDS,
        )
        if isinstance(result, Err):
            return Err(self._error("upload_failed", f"gh release upload failed: {name}", result.error))
        return Ok(None)
