from __future__ import annotations

import tempfile
from pathlib import Path

import typer

from shipyard.cli.commands._helpers import exit_with_code
from shipyard.cli.context import build_context
from shipyard.core.errors import ErrorCode
from shipyard.core.result import Err
from shipyard.services.dist import ChecksumManifest, verify_archive


def verify(
    archive: Path = typer.Argument(..., help="Archive produced by `shipyard run`"),
    checksums: Path | None = typer.Option(
        None, "--checksums", help="Checksum manifest (default: <archive>.sha256)"
    ),
) -> None:
    """Unpack an archive and check it against its checksum manifest."""
    ctx = build_context()
    manifest_path = checksums or archive.with_name(f"{archive.name}.sha256")

    try:
        manifest = ChecksumManifest.parse(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        ctx.console.error(f"cannot read checksum manifest {manifest_path}: {e}")
        exit_with_code(int(ErrorCode.IO_ERROR))

    with tempfile.TemporaryDirectory(prefix="shipyard-verify-") as tmp:
        result = verify_archive(archive, manifest, scratch=Path(tmp) / "unpacked")

    if isinstance(result, Err):
        ctx.console.error(f"{archive.name}: checksum mismatch: {', '.join(result.error)}")
        exit_with_code(int(ErrorCode.BUILD_ERROR))

    for name, digest in result.value.entries:
        ctx.console.print(f"{digest}  {name}")
    ctx.console.success(f"{archive.name} verified")
