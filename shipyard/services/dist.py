"""Artifact packaging + round-trip verification.

For one build target:

1. checksum every binary (the pre-archival manifest),
2. pack them into `<project>-<version>[.<date>]-<triple>-<cpu>.<ext>`,
3. unpack the archive into a scratch directory and checksum again.

The two manifests must be identical; otherwise the target fails with an
IntegrityError and nothing is uploaded.

Design goals:

- Deterministic output file names (stable asset names per target)
- Platform-appropriate format: zip for Windows targets, tar.gz elsewhere
- Archives contain the binaries at the top level, nothing else
"""

from __future__ import annotations

import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from zipfile import ZIP_DEFLATED, BadZipFile, ZipFile

from shipyard.core.result import Err, Ok, Result
from shipyard.platform.files import atomic_write_text, sha256_file
from shipyard.services.errors import IntegrityError, PackagingError
from shipyard.services.matrix import BuildTarget

__all__ = [
    "BuildArtifact",
    "ChecksumManifest",
    "archive_name",
    "checksum_manifest",
    "pack_archive",
    "package_and_verify",
    "unpack_archive",
    "verify_archive",
]

CONTENT_TYPES = {
    "zip": "application/zip",
    "tar.gz": "application/gzip",
}


@dataclass(frozen=True, slots=True)
class ChecksumManifest:
    """sha256 per binary; renders as `<hexDigest>  <binaryName>` lines."""

    entries: tuple[tuple[str, str], ...]

    def render(self) -> str:
        return "".join(f"{digest}  {name}\n" for name, digest in self.entries)

    @classmethod
    def parse(cls, text: str) -> ChecksumManifest:
        entries: list[tuple[str, str]] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            digest, sep, name = line.partition("  ")
            if not sep or not name:
                raise ValueError(f"malformed checksum line: {line!r}")
            entries.append((name, digest))
        return cls(entries=tuple(entries))

    def mismatches(self, other: ChecksumManifest) -> tuple[str, ...]:
        """Names whose digest differs or that exist on one side only."""
        mine = dict(self.entries)
        theirs = dict(other.entries)
        names = sorted(set(mine) | set(theirs))
        return tuple(n for n in names if mine.get(n) != theirs.get(n))


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    target: BuildTarget
    binaries: tuple[str, ...]
    archive_path: Path
    manifest: ChecksumManifest
    archive_sha256: str
    content_type: str

    @property
    def archive_name(self) -> str:
        return self.archive_path.name

    @property
    def checksum(self) -> str:
        return self.manifest.render()


def archive_name(
    *, project: str, version: str, date_stamp: str | None, target: BuildTarget
) -> str:
    stamped = f"{version}.{date_stamp}" if date_stamp else version
    return f"{project}-{stamped}-{target.asset_suffix}"


def checksum_manifest(files: list[tuple[Path, str]]) -> ChecksumManifest:
    return ChecksumManifest(entries=tuple((arc, sha256_file(src)) for src, arc in files))


def pack_archive(archive_path: Path, *, files: list[tuple[Path, str]]) -> None:
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    if archive_path.name.endswith(".zip"):
        # Toolchain outputs restored from caches may carry mtime=0, which ZIP
        # cannot represent.
        with ZipFile(archive_path, "w", compression=ZIP_DEFLATED, strict_timestamps=False) as zf:
            for src, arc in files:
                zf.write(src, arcname=arc)
        return

    with tarfile.open(archive_path, "w:gz") as tf:
        for src, arc in files:
            tf.add(src, arcname=arc, recursive=False)


def _safe_member(name: str) -> bool:
    p = PurePosixPath(name)
    return not p.is_absolute() and ".." not in p.parts


def unpack_archive(archive_path: Path, dest: Path) -> None:
    """Extract an archive produced by pack_archive.

    Raises:
        ValueError: If the archive holds a member outside `dest`.
        OSError, tarfile.TarError, BadZipFile: On unreadable archives.
    """
    dest.mkdir(parents=True, exist_ok=True)
    if archive_path.name.endswith(".zip"):
        with ZipFile(archive_path) as zf:
            for name in zf.namelist():
                if not _safe_member(name):
                    raise ValueError(f"unsafe archive member: {name}")
            zf.extractall(dest)
        return

    with tarfile.open(archive_path, "r:gz") as tf:
        for member in tf.getmembers():
            if not _safe_member(member.name):
                raise ValueError(f"unsafe archive member: {member.name}")
        tf.extractall(dest, filter="data")


def verify_archive(
    archive_path: Path, expected: ChecksumManifest, *, scratch: Path
) -> Result[ChecksumManifest, tuple[str, ...]]:
    """Unpack into `scratch` and recompute the manifest.

    Returns the recomputed manifest, or the names that do not match.
    """
    try:
        if scratch.exists():
            shutil.rmtree(scratch)
        unpack_archive(archive_path, scratch)
    except (OSError, ValueError, tarfile.TarError, BadZipFile) as e:
        return Err((f"unreadable archive ({e})",))

    files: list[tuple[Path, str]] = []
    for name, _ in expected.entries:
        unpacked = scratch / name
        if not unpacked.is_file():
            return Err((f"{name} (missing)",))
        files.append((unpacked, name))

    actual = checksum_manifest(files)
    mismatches = expected.mismatches(actual)
    if mismatches:
        return Err(mismatches)
    return Ok(actual)


def package_and_verify(
    *,
    target: BuildTarget,
    binaries: list[tuple[Path, str]],
    out_dir: Path,
    scratch: Path,
    project: str,
    version: str,
    date_stamp: str | None,
) -> Result[BuildArtifact, IntegrityError | PackagingError]:
    """Package the binaries of one target and verify the archive round-trip.

    Args:
        binaries: (built file, name inside the archive) pairs.
        date_stamp: Included in the archive name when not None (nightly).
    """
    missing = [str(src) for src, _ in binaries if not src.is_file()]
    if missing:
        return Err(PackagingError(target_id=target.id, reason="missing " + ", ".join(missing)))

    name = archive_name(project=project, version=version, date_stamp=date_stamp, target=target)
    archive_path = out_dir / name

    try:
        manifest = checksum_manifest(binaries)
        pack_archive(archive_path, files=binaries)
        atomic_write_text(out_dir / f"{name}.sha256", manifest.render())
    except (OSError, tarfile.TarError) as e:
        return Err(PackagingError(target_id=target.id, reason=str(e)))

    verified = verify_archive(archive_path, manifest, scratch=scratch)
    if isinstance(verified, Err):
        return Err(IntegrityError(target_id=target.id, archive=name, mismatches=verified.error))

    return Ok(
        BuildArtifact(
            target=target,
            binaries=tuple(arc for _, arc in binaries),
            archive_path=archive_path,
            manifest=manifest,
            archive_sha256=sha256_file(archive_path),
            content_type=CONTENT_TYPES[target.archive_extension],
        )
    )
