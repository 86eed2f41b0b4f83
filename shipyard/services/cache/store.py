"""Content-addressed dependency cache.

Each entry lives under `<root>/<key.name>/` with the fetched files in
`content/` and a `manifest.json`. Content is a pure function of the key, so
concurrent writers of the same key produce identical entries: `put` stages
into a private temporary directory and swaps it in with a rename. Last write
wins, no locks.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from shipyard.core.result import Err, Ok, Result
from shipyard.output.console import ConsoleProtocol, Style
from shipyard.platform.files import sha256_file
from shipyard.platform.process import ProcessError
from shipyard.platform.process import run as run_process
from shipyard.services.cache.keys import CacheKey, CacheKeys
from shipyard.services.release.timeouts import FETCH_TIMEOUT_SECONDS

__all__ = [
    "CargoFetcher",
    "DependencyCache",
    "DependencyFetcher",
    "OfflineFetcher",
    "PopulateResult",
]

# Sub-tree of CARGO_HOME stored under each key scope. Unpacked sources are
# pruned before storing (they are re-extracted from registry/cache on build).
_INDEX_DIRS = ("registry/index",)
_ARTIFACT_DIRS = ("registry/cache", "git/db")
_PRUNE_DIRS = ("registry/src", "git/checkouts")


class DependencyFetcher(Protocol):
    def fetch(self, cargo_home: Path) -> Result[None, ProcessError]:
        """Download every locked dependency into `cargo_home`."""
        ...


class CargoFetcher:
    """`cargo fetch --locked` against the project's workspace."""

    def __init__(self, *, project_root: Path) -> None:
        self._root = project_root

    def fetch(self, cargo_home: Path) -> Result[None, ProcessError]:
        result = run_process(
            ["cargo", "fetch", "--locked"],
            cwd=self._root,
            env={"CARGO_HOME": str(cargo_home)},
            timeout=FETCH_TIMEOUT_SECONDS,
        )
        if isinstance(result, Err):
            return result
        return Ok(None)


class OfflineFetcher:
    """Fetcher for dry runs: lays out an empty CARGO_HOME, runs nothing."""

    def fetch(self, cargo_home: Path) -> Result[None, ProcessError]:
        for sub in (*_INDEX_DIRS, *_ARTIFACT_DIRS):
            (cargo_home / sub).mkdir(parents=True, exist_ok=True)
        return Ok(None)


@dataclass(frozen=True, slots=True)
class PopulateResult:
    hit: bool
    stored: tuple[str, ...] = ()


def _file_manifest(content: Path) -> dict[str, str]:
    files: dict[str, str] = {}
    for p in sorted(content.rglob("*")):
        if p.is_file():
            files[p.relative_to(content).as_posix()] = sha256_file(p)
    return files


def _copy_subtrees(src_root: Path, dest_root: Path, subdirs: tuple[str, ...]) -> None:
    for sub in subdirs:
        src = src_root / sub
        if src.is_dir():
            shutil.copytree(src, dest_root / sub, dirs_exist_ok=True, symlinks=True)


class DependencyCache:
    def __init__(self, root: Path) -> None:
        self.root = root

    def _entry(self, key: CacheKey) -> Path:
        return self.root / key.name

    def get(self, key: CacheKey | None) -> Path | None:
        """Return the content directory for `key`, or None on a miss."""
        if key is None:
            return None
        entry = self._entry(key)
        content = entry / "content"
        if not content.is_dir() or not (entry / "manifest.json").is_file():
            return None
        return content

    def put(self, key: CacheKey | None, source: Path) -> Path | None:
        """Store a copy of `source` under `key` and return the content directory."""
        if key is None:
            return None
        self.root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{key.name}.", dir=self.root))
        try:
            content = staging / "content"
            shutil.copytree(source, content, symlinks=True)
            manifest = {"key": key.name, "scope": key.scope, "files": _file_manifest(content)}
            (staging / "manifest.json").write_text(
                json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8"
            )
            entry = self._entry(key)
            # Replace any previous entry; a concurrent writer of the same key
            # may win the rename, its content is identical.
            if entry.exists():
                retired = Path(tempfile.mkdtemp(prefix=f".{key.name}.old.", dir=self.root))
                try:
                    os.replace(entry, retired / "entry")
                except FileNotFoundError:
                    pass  # retired by a concurrent writer
                shutil.rmtree(retired, ignore_errors=True)
            try:
                os.replace(staging, entry)
            except OSError:
                if self.get(key) is None:
                    raise
            return entry / "content"
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def restore(self, key: CacheKey | None, dest: Path) -> bool:
        """Copy the entry for `key` into `dest`. Returns False on a miss."""
        content = self.get(key)
        if content is None:
            return False
        shutil.copytree(content, dest, dirs_exist_ok=True, symlinks=True)
        return True

    def restore_all(self, keys: CacheKeys, cargo_home: Path) -> bool:
        """Restore index then artifacts into `cargo_home`; True if artifacts hit."""
        self.restore(keys.index, cargo_home)
        return self.restore(keys.artifacts, cargo_home)

    def store_all(self, keys: CacheKeys, cargo_home: Path) -> tuple[str, ...]:
        """Split a populated CARGO_HOME into the index and artifacts entries."""
        for sub in _PRUNE_DIRS:
            shutil.rmtree(cargo_home / sub, ignore_errors=True)

        stored: list[str] = []
        for key, subdirs in ((keys.index, _INDEX_DIRS), (keys.artifacts, _ARTIFACT_DIRS)):
            if key is None:
                continue
            staging = Path(tempfile.mkdtemp(prefix=".split.", dir=cargo_home.parent))
            try:
                _copy_subtrees(cargo_home, staging, subdirs)
                self.put(key, staging)
                stored.append(key.name)
            finally:
                shutil.rmtree(staging, ignore_errors=True)
        return tuple(stored)

    def populate(
        self,
        keys: CacheKeys,
        *,
        fetcher: DependencyFetcher,
        scratch: Path,
        console: ConsoleProtocol,
    ) -> Result[PopulateResult, ProcessError]:
        """Warm the cache once per run so build cells start from a hit."""
        if keys.artifacts is not None and self.get(keys.artifacts) is not None:
            console.print(f"dependency cache hit: {keys.artifacts.name}", Style.DIM)
            return Ok(PopulateResult(hit=True))

        cargo_home = scratch / "cargo-home"
        cargo_home.mkdir(parents=True, exist_ok=True)
        # A stale index is still a valid starting point for the fetch.
        self.restore(keys.index, cargo_home)

        console.print("dependency cache miss: fetching dependencies", Style.DIM)
        fetched = fetcher.fetch(cargo_home)
        if isinstance(fetched, Err):
            return fetched

        stored = self.store_all(keys, cargo_home)
        for name in stored:
            console.print(f"dependency cache stored: {name}", Style.DIM)
        return Ok(PopulateResult(hit=False, stored=stored))
