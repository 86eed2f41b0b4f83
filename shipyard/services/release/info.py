"""Release info resolution: trigger context -> version, tag, kind, date stamp.

Resolved exactly once per run, before anything else touches the hosting
service.
"""

from __future__ import annotations

import re
import tomllib
from datetime import UTC, datetime
from pathlib import Path

from shipyard.core.result import Err, Ok, Result
from shipyard.core.structured import as_str_dict, get_str, get_table
from shipyard.services.errors import ResolutionError
from shipyard.services.release.model import ReleaseInfo, TriggerContext


SCHEDULE_EVENTS = frozenset({"schedule"})
PUSH_EVENTS = frozenset({"push"})
MANUAL_EVENTS = frozenset({"workflow_dispatch", "manual"})

_TAG_PREFIX = "refs/tags/"
_VERSION_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)(?:-[0-9A-Za-z][0-9A-Za-z.-]*)?$"
)


def date_stamp(now: datetime | None = None) -> str:
    """Current UTC date as YYYYMMDD."""
    current = now or datetime.now(UTC)
    return current.astimezone(UTC).strftime("%Y%m%d")


def read_manifest_version(path: Path) -> Result[str, ResolutionError]:
    """Read the declared project version from a Cargo manifest."""
    try:
        data_obj: object = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Err(ResolutionError(message=f"manifest not found: {path}"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        return Err(ResolutionError(message=f"cannot read manifest {path}: {e}"))

    data = as_str_dict(data_obj) or {}
    package = get_table(data, "package")
    if package is None:
        workspace = get_table(data, "workspace") or {}
        package = get_table(workspace, "package")
    version = get_str(package, "version") if package is not None else None
    if version is None:
        return Err(
            ResolutionError(
                message=f"no [package].version in {path}",
                hint="Declare the project version in the manifest.",
            )
        )
    return Ok(version)


def _version_from_tag(tag: str) -> str | None:
    if not tag.startswith("v"):
        return None
    version = tag[1:]
    return version if _VERSION_RE.match(version) else None


def _tag_from_ref(ref: str | None) -> str | None:
    if ref is None or not ref.startswith(_TAG_PREFIX):
        return None
    tag = ref[len(_TAG_PREFIX) :]
    return tag or None


def _versioned(
    *, version: str, manifest_version: str | None, stamp: str
) -> Result[ReleaseInfo, ResolutionError]:
    if not _VERSION_RE.match(version):
        return Err(
            ResolutionError(
                message=f"invalid release version: {version}",
                hint="Expected MAJOR.MINOR.PATCH[-PRERELEASE].",
            )
        )
    if manifest_version is not None and manifest_version != version:
        return Err(
            ResolutionError(
                message=(
                    f"tag does not match the declared version: v{version} != {manifest_version}"
                ),
                hint="Bump the manifest version before tagging.",
            )
        )
    return Ok(ReleaseInfo(version=version, tag=f"v{version}", kind="versioned", date_stamp=stamp))


def resolve_release_info(
    trigger: TriggerContext,
    *,
    manifest_version: str | None,
    nightly_tag: str,
    now: datetime | None = None,
) -> Result[ReleaseInfo, ResolutionError]:
    """Derive the ReleaseInfo for a run.

    Args:
        trigger: Event kind, optional pushed ref and explicit version input.
        manifest_version: Declared project version, or None if unavailable.
        nightly_tag: Reserved tag of the rotating nightly release.
        now: Clock override (tests).

    Returns:
        Ok(ReleaseInfo), or Err(ResolutionError) for an unrecognized event or
        a missing/inconsistent field.
    """
    stamp = date_stamp(now)
    event = trigger.event.strip()

    if event in SCHEDULE_EVENTS:
        if manifest_version is None:
            return Err(
                ResolutionError(
                    message="nightly run needs the declared project version",
                    hint="Check [project].manifest in shipyard.toml.",
                )
            )
        return Ok(
            ReleaseInfo(version=manifest_version, tag=nightly_tag, kind="nightly", date_stamp=stamp)
        )

    if event in PUSH_EVENTS:
        tag = _tag_from_ref(trigger.ref)
        if tag is None:
            return Err(
                ResolutionError(
                    message=f"push is not a tag push: {trigger.ref or '(no ref)'}",
                    hint="Releases are only cut from tags matching v*.",
                )
            )
        version = _version_from_tag(tag)
        if version is None:
            return Err(ResolutionError(message=f"tag is not a release tag: {tag}"))
        return _versioned(version=version, manifest_version=manifest_version, stamp=stamp)

    if event in MANUAL_EVENTS:
        explicit = (trigger.version or "").strip().removeprefix("v")
        if explicit:
            return _versioned(version=explicit, manifest_version=manifest_version, stamp=stamp)

        tag = _tag_from_ref(trigger.ref)
        if tag is not None:
            version = _version_from_tag(tag)
            if version is None:
                return Err(ResolutionError(message=f"tag is not a release tag: {tag}"))
            return _versioned(version=version, manifest_version=manifest_version, stamp=stamp)

        if manifest_version is None:
            return Err(
                ResolutionError(
                    message="manual run needs a version",
                    hint="Pass --release-version or run from a tag.",
                )
            )
        return _versioned(version=manifest_version, manifest_version=None, stamp=stamp)

    return Err(
        ResolutionError(
            message=f"unrecognized trigger event: {event or '(empty)'}",
            hint="Expected one of: schedule, push, workflow_dispatch, manual.",
        )
    )
