"""Cache key derivation.

Two independent keys address the dependency cache:

- dependency-index: head commit of the upstream registry index. Only used
  as a key component; the index is never read through it.
- dependency-artifacts: sha256 of the lockfile with the project's own
  package versions stripped, so a version bump of the project itself does not
  invalidate the dependency cache.

Stripping works on the Cargo.lock grammar, block by block:

    [[package]]
    name = "jcli"
    version = "0.9.0"          <- dropped (own package)
    dependencies = [
     "jormungandr-lib 0.9.0",  <- becomes "jormungandr-lib" (own package)
     "serde",
    ]

A package is "own" when it is listed in `own_packages` or when its block has
no `source` line (a local workspace member). All other text is kept verbatim.
Cargo writes packages sorted by name, so the digest is stable for identical
dependency sets; a reordered lockfile changes the digest.

Derivation failures never abort the run: the key is None and the cache is
bypassed.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from shipyard.core.result import Err
from shipyard.output.console import ConsoleProtocol, Style
from shipyard.platform.process import run as run_process
from shipyard.services.release.timeouts import GIT_NETWORK_TIMEOUT_SECONDS

__all__ = [
    "CacheKey",
    "CacheKeys",
    "CacheScope",
    "dependency_artifacts_key",
    "dependency_index_key",
    "derive_cache_keys",
    "strip_own_versions",
]

CacheScope = Literal["dependency-index", "dependency-artifacts"]

# Store-key prefixes; bump the deps version when the stored layout changes.
_SCOPE_PREFIX: dict[CacheScope, str] = {
    "dependency-index": "cargo-index",
    "dependency-artifacts": "cargo-deps-v1",
}

_SHA_RE = re.compile(r"^[0-9a-f]{40}$")
_NAME_RE = re.compile(r'^name\s*=\s*"([^"]+)"\s*$')
_VERSION_LINE_RE = re.compile(r'^version\s*=\s*"[^"]*"\s*$')
_SOURCE_RE = re.compile(r"^source\s*=")
_DEP_ENTRY_RE = re.compile(r'^(\s*)"([^" ]+) [^"]*"(,?)\s*$')


@dataclass(frozen=True, slots=True)
class CacheKey:
    scope: CacheScope
    digest: str

    @property
    def name(self) -> str:
        """Store key, e.g. `cargo-deps-v1-<digest>`."""
        return f"{_SCOPE_PREFIX[self.scope]}-{self.digest}"


@dataclass(frozen=True, slots=True)
class CacheKeys:
    index: CacheKey | None
    artifacts: CacheKey | None


def _split_blocks(lines: list[str]) -> list[list[str]]:
    """Split lockfile lines into blocks starting at each `[` table header."""
    blocks: list[list[str]] = [[]]
    for line in lines:
        if line.startswith("["):
            blocks.append([])
        blocks[-1].append(line)
    return blocks


def _block_name(block: list[str]) -> str | None:
    for line in block:
        m = _NAME_RE.match(line)
        if m:
            return m.group(1)
    return None


def _own_names(blocks: list[list[str]], explicit: Iterable[str]) -> frozenset[str]:
    names = set(explicit)
    for block in blocks:
        if not block or block[0].strip() != "[[package]]":
            continue
        name = _block_name(block)
        if name is not None and not any(_SOURCE_RE.match(line) for line in block):
            names.add(name)
    return frozenset(names)


def strip_own_versions(lockfile_text: str, own_packages: Iterable[str] = ()) -> str:
    """Return the lockfile text with the project's own versions removed."""
    lines = lockfile_text.replace("\r\n", "\n").split("\n")
    blocks = _split_blocks(lines)
    own = _own_names(blocks, own_packages)

    out: list[str] = []
    for block in blocks:
        is_package = bool(block) and block[0].strip() == "[[package]]"
        is_own = is_package and _block_name(block) in own
        for line in block:
            if is_own and _VERSION_LINE_RE.match(line):
                continue
            if is_package:
                m = _DEP_ENTRY_RE.match(line)
                if m and m.group(2) in own:
                    line = f'{m.group(1)}"{m.group(2)}"{m.group(3)}'
            out.append(line)
    return "\n".join(out)


def dependency_artifacts_key(
    lockfile_text: str, own_packages: Iterable[str] = ()
) -> CacheKey:
    stripped = strip_own_versions(lockfile_text, own_packages)
    digest = hashlib.sha256(stripped.encode("utf-8")).hexdigest()
    return CacheKey(scope="dependency-artifacts", digest=digest)


def dependency_index_key(
    *, index_url: str, branch: str, cwd: Path, console: ConsoleProtocol
) -> CacheKey | None:
    """Head commit of the upstream index, or None (cache miss) on any failure."""
    result = run_process(
        ["git", "ls-remote", "--heads", index_url, branch],
        cwd=cwd,
        timeout=GIT_NETWORK_TIMEOUT_SECONDS,
    )
    if isinstance(result, Err):
        console.warning(f"dependency index head unavailable: {result.error}")
        return None

    for line in result.value.splitlines():
        fields = line.split()
        if len(fields) == 2 and fields[1] == f"refs/heads/{branch}" and _SHA_RE.match(fields[0]):
            return CacheKey(scope="dependency-index", digest=fields[0])

    console.warning(f"dependency index has no branch {branch}: {index_url}")
    return None


def derive_cache_keys(
    *,
    lockfile: Path,
    own_packages: Iterable[str],
    index_url: str,
    index_branch: str,
    cwd: Path,
    console: ConsoleProtocol,
    offline: bool = False,
) -> CacheKeys:
    artifacts: CacheKey | None = None
    try:
        artifacts = dependency_artifacts_key(lockfile.read_text(encoding="utf-8"), own_packages)
    except (OSError, UnicodeDecodeError) as e:
        console.warning(f"lockfile unreadable, dependency cache disabled: {e}")

    if offline:
        console.print("offline: dependency index head not queried", Style.DIM)
        return CacheKeys(index=None, artifacts=artifacts)

    index = dependency_index_key(
        index_url=index_url, branch=index_branch, cwd=cwd, console=console
    )
    return CacheKeys(index=index, artifacts=artifacts)
