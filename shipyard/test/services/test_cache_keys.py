from __future__ import annotations

from pathlib import Path

import pytest

from shipyard.core.result import Err, Ok
from shipyard.output.console import MockConsole
from shipyard.platform.process import ProcessError
from shipyard.services.cache import keys as keys_mod
from shipyard.services.cache.keys import (
    CacheKey,
    dependency_artifacts_key,
    derive_cache_keys,
    strip_own_versions,
)

HEAD = "0123456789abcdef0123456789abcdef01234567"


def _lockfile(own_version: str, serde_version: str = "1.0.100") -> str:
    return f"""# This file is automatically @generated by Cargo.
[[package]]
name = "jcli"
version = "{own_version}"
dependencies = [
 "jormungandr-lib {own_version}",
 "serde",
]

[[package]]
name = "jormungandr-lib"
version = "{own_version}"
dependencies = [
 "serde",
]

[[package]]
name = "serde"
version = "{serde_version}"
source = "registry+https://github.com/rust-lang/crates.io-index"
checksum = "abc"
"""


class TestStripOwnVersions:
    def test_drops_own_versions_only(self) -> None:
        stripped = strip_own_versions(_lockfile("0.9.0"))
        assert '"0.9.0"' not in stripped
        assert '"jormungandr-lib"' in stripped
        assert 'version = "1.0.100"' in stripped

    def test_explicit_own_package_with_source(self) -> None:
        text = '[[package]]\nname = "vendored"\nversion = "2.0.0"\nsource = "git+https://x"\n'
        assert 'version = "2.0.0"' in strip_own_versions(text)
        assert 'version = "2.0.0"' not in strip_own_versions(text, ["vendored"])

    def test_crlf_normalized(self) -> None:
        text = _lockfile("0.9.0")
        assert strip_own_versions(text.replace("\n", "\r\n")) == strip_own_versions(text)


class TestArtifactsKey:
    def test_own_version_bump_keeps_key(self) -> None:
        assert dependency_artifacts_key(_lockfile("0.9.0")) == dependency_artifacts_key(
            _lockfile("0.10.0")
        )

    def test_dependency_change_changes_key(self) -> None:
        assert dependency_artifacts_key(_lockfile("0.9.0")) != dependency_artifacts_key(
            _lockfile("0.9.0", serde_version="1.0.101")
        )

    def test_key_name(self) -> None:
        key = dependency_artifacts_key(_lockfile("0.9.0"))
        assert key.scope == "dependency-artifacts"
        assert key.name == f"cargo-deps-v1-{key.digest}"
        assert len(key.digest) == 64


def test_index_key_name() -> None:
    assert CacheKey(scope="dependency-index", digest=HEAD).name == f"cargo-index-{HEAD}"


class TestDeriveCacheKeys:
    def test_both_keys(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        (tmp_path / "Cargo.lock").write_text(_lockfile("0.9.0"), encoding="utf-8")
        calls: list[list[str]] = []

        def fake_run(cmd: list[str], *, cwd: Path, timeout: float | None = None):
            del cwd, timeout
            calls.append(cmd)
            return Ok(f"{HEAD}\trefs/heads/master\n")

        monkeypatch.setattr(keys_mod, "run_process", fake_run)
        keys = derive_cache_keys(
            lockfile=tmp_path / "Cargo.lock",
            own_packages=(),
            index_url="https://example.invalid/index.git",
            index_branch="master",
            cwd=tmp_path,
            console=MockConsole(),
        )
        assert keys.index == CacheKey(scope="dependency-index", digest=HEAD)
        assert keys.artifacts is not None
        assert calls == [
            ["git", "ls-remote", "--heads", "https://example.invalid/index.git", "master"]
        ]

    def test_index_failure_is_a_miss(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        (tmp_path / "Cargo.lock").write_text(_lockfile("0.9.0"), encoding="utf-8")

        def fake_run(cmd: list[str], *, cwd: Path, timeout: float | None = None):
            del cwd, timeout
            return Err(ProcessError(tuple(cmd), 128, "", "could not resolve host"))

        monkeypatch.setattr(keys_mod, "run_process", fake_run)
        console = MockConsole()
        keys = derive_cache_keys(
            lockfile=tmp_path / "Cargo.lock",
            own_packages=(),
            index_url="https://example.invalid/index.git",
            index_branch="master",
            cwd=tmp_path,
            console=console,
        )
        assert keys.index is None
        assert keys.artifacts is not None
        assert console.has_warning()

    def test_missing_lockfile_offline(self, tmp_path: Path) -> None:
        console = MockConsole()
        keys = derive_cache_keys(
            lockfile=tmp_path / "Cargo.lock",
            own_packages=(),
            index_url="https://example.invalid/index.git",
            index_branch="master",
            cwd=tmp_path,
            console=console,
            offline=True,
        )
        assert keys.index is None
        assert keys.artifacts is None
        assert console.find("lockfile unreadable")
