from __future__ import annotations

import json
from pathlib import Path

from shipyard.core.result import Err, Ok, Result
from shipyard.output.console import MockConsole
from shipyard.platform.process import ProcessError
from shipyard.services.cache.keys import CacheKey, CacheKeys
from shipyard.services.cache.store import DependencyCache

INDEX = CacheKey(scope="dependency-index", digest="a" * 40)
DEPS = CacheKey(scope="dependency-artifacts", digest="b" * 64)


def _tree(root: Path, files: dict[str, str]) -> Path:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


class FakeFetcher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    def fetch(self, cargo_home: Path) -> Result[None, ProcessError]:
        self.calls += 1
        if self.fail:
            return Err(ProcessError(("cargo", "fetch"), 101, "", "failed to download"))
        _tree(
            cargo_home,
            {
                "registry/index/config.json": "{}",
                "registry/cache/serde-1.0.100.crate": "crate",
                "registry/src/serde-1.0.100/lib.rs": "src",
                "git/db/dep/HEAD": "ref",
            },
        )
        return Ok(None)


class TestGetPut:
    def test_miss(self, tmp_path: Path) -> None:
        cache = DependencyCache(tmp_path / "cache")
        assert cache.get(DEPS) is None
        assert cache.get(None) is None

    def test_put_then_get(self, tmp_path: Path) -> None:
        cache = DependencyCache(tmp_path / "cache")
        source = _tree(tmp_path / "src", {"registry/cache/a.crate": "a"})
        content = cache.put(DEPS, source)
        assert content == cache.get(DEPS)
        assert (content / "registry/cache/a.crate").read_text(encoding="utf-8") == "a"
        manifest = json.loads((content.parent / "manifest.json").read_text(encoding="utf-8"))
        assert manifest["key"] == DEPS.name
        assert "registry/cache/a.crate" in manifest["files"]

    def test_put_none_is_noop(self, tmp_path: Path) -> None:
        cache = DependencyCache(tmp_path / "cache")
        assert cache.put(None, _tree(tmp_path / "src", {"x": "x"})) is None
        assert not (tmp_path / "cache").exists()

    def test_last_write_wins(self, tmp_path: Path) -> None:
        cache = DependencyCache(tmp_path / "cache")
        cache.put(DEPS, _tree(tmp_path / "one", {"f": "1"}))
        cache.put(DEPS, _tree(tmp_path / "two", {"f": "2"}))
        content = cache.get(DEPS)
        assert content is not None
        assert (content / "f").read_text(encoding="utf-8") == "2"
        assert sorted(p.name for p in (tmp_path / "cache").iterdir()) == [DEPS.name]

    def test_restore(self, tmp_path: Path) -> None:
        cache = DependencyCache(tmp_path / "cache")
        cache.put(DEPS, _tree(tmp_path / "src", {"registry/cache/a.crate": "a"}))
        dest = tmp_path / "cargo-home"
        assert cache.restore(DEPS, dest) is True
        assert (dest / "registry/cache/a.crate").exists()
        assert cache.restore(INDEX, dest) is False


class TestPopulate:
    def test_miss_fetches_and_splits(self, tmp_path: Path) -> None:
        cache = DependencyCache(tmp_path / "cache")
        fetcher = FakeFetcher()
        result = cache.populate(
            CacheKeys(index=INDEX, artifacts=DEPS),
            fetcher=fetcher,
            scratch=tmp_path / "scratch",
            console=MockConsole(),
        )
        assert isinstance(result, Ok)
        assert result.value.hit is False
        assert result.value.stored == (INDEX.name, DEPS.name)

        index = cache.get(INDEX)
        deps = cache.get(DEPS)
        assert index is not None and deps is not None
        assert (index / "registry/index/config.json").exists()
        assert not (index / "registry/cache").exists()
        assert (deps / "registry/cache/serde-1.0.100.crate").exists()
        assert (deps / "git/db/dep/HEAD").exists()
        assert not (deps / "registry/src").exists()

    def test_hit_skips_fetch(self, tmp_path: Path) -> None:
        cache = DependencyCache(tmp_path / "cache")
        cache.put(DEPS, _tree(tmp_path / "src", {"registry/cache/a.crate": "a"}))
        fetcher = FakeFetcher()
        result = cache.populate(
            CacheKeys(index=None, artifacts=DEPS),
            fetcher=fetcher,
            scratch=tmp_path / "scratch",
            console=MockConsole(),
        )
        assert result.value.hit is True
        assert fetcher.calls == 0

    def test_fetch_failure(self, tmp_path: Path) -> None:
        cache = DependencyCache(tmp_path / "cache")
        result = cache.populate(
            CacheKeys(index=INDEX, artifacts=DEPS),
            fetcher=FakeFetcher(fail=True),
            scratch=tmp_path / "scratch",
            console=MockConsole(),
        )
        assert isinstance(result, Err)
        assert result.error.returncode == 101
        assert cache.get(DEPS) is None
