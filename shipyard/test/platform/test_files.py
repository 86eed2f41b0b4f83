from __future__ import annotations

import hashlib
from pathlib import Path

from shipyard.platform.files import atomic_write_text, sha256_file


def test_sha256_file(tmp_path: Path) -> None:
    path = tmp_path / "jcli"
    path.write_bytes(b"\x7fELF binary")
    assert sha256_file(path) == hashlib.sha256(b"\x7fELF binary").hexdigest()


def test_atomic_write_text_creates_parents_and_leaves_no_temp(tmp_path: Path) -> None:
    path = tmp_path / "dist" / "archive.tar.gz.sha256"
    atomic_write_text(path, "abc  jcli\n")
    assert path.read_text(encoding="utf-8") == "abc  jcli\n"
    assert [p.name for p in path.parent.iterdir()] == ["archive.tar.gz.sha256"]


def test_atomic_write_text_replaces(tmp_path: Path) -> None:
    path = tmp_path / "report.json"
    atomic_write_text(path, "old")
    atomic_write_text(path, "new")
    assert path.read_text(encoding="utf-8") == "new"
