from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

import pytest

from shipyard.core.result import Err, Ok, Result
from shipyard.platform.process import ProcessError
from shipyard.services.release import gh as gh_mod
from shipyard.services.release.gh import GhReleaseHost, parse_release_view

VIEW = json.dumps(
    {
        "tagName": "v0.9.0",
        "isDraft": True,
        "isPrerelease": False,
        "uploadUrl": "https://uploads.github.com/repos/o/r/releases/1/assets{?name,label}",
        "assets": [{"name": "a.tar.gz"}, {"name": "b.zip"}],
    }
)


def _fail(cmd: list[str], stderr: str, returncode: int = 1) -> Err[ProcessError]:
    return Err(ProcessError(tuple(cmd), returncode, "", stderr))


class FakeGh:
    def __init__(self, *responses: Result[str, ProcessError]) -> None:
        self.responses = list(responses)
        self.calls: list[list[str]] = []
        self.envs: list[Mapping[str, str] | None] = []

    def __call__(
        self,
        cmd: list[str],
        cwd: Path,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        del cwd, timeout
        self.calls.append(cmd)
        self.envs.append(env)
        return self.responses.pop(0)


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    delays: list[float] = []
    monkeypatch.setattr(gh_mod, "sleep", delays.append)
    return delays


def _host(monkeypatch: pytest.MonkeyPatch, fake: FakeGh, token: str | None = None) -> GhReleaseHost:
    monkeypatch.setattr(gh_mod, "run_process", fake)
    return GhReleaseHost(repo="o/r", cwd=Path("."), token=token)


class TestParseReleaseView:
    def test_ok(self) -> None:
        result = parse_release_view(VIEW)
        assert isinstance(result, Ok)
        assert result.value.tag == "v0.9.0"
        assert result.value.draft is True
        assert result.value.assets == ("a.tar.gz", "b.zip")

    def test_invalid_json(self) -> None:
        result = parse_release_view("{")
        assert isinstance(result, Err)
        assert result.error.kind == "invalid_response"

    def test_missing_flags(self) -> None:
        result = parse_release_view(json.dumps({"tagName": "v1", "uploadUrl": "u"}))
        assert isinstance(result, Err)
        assert result.error.message == "release payload missing flags"


class TestGetRelease:
    def test_not_found_is_none(self, monkeypatch: pytest.MonkeyPatch, no_sleep: list[float]) -> None:
        fake = FakeGh(_fail(["gh"], "release not found"))
        host = _host(monkeypatch, fake)
        assert host.get_release("v0.9.0") == Ok(None)
        assert no_sleep == []

    def test_transient_failure_is_retried(
        self, monkeypatch: pytest.MonkeyPatch, no_sleep: list[float]
    ) -> None:
        fake = FakeGh(_fail(["gh"], "HTTP 502: Bad Gateway"), Ok(VIEW))
        host = _host(monkeypatch, fake, token="secret")
        result = host.get_release("v0.9.0")
        assert isinstance(result, Ok)
        assert result.value is not None
        assert len(fake.calls) == 2
        assert no_sleep == [1.0]
        assert fake.envs[0] == {"GH_TOKEN": "secret"}

    def test_gives_up_after_retries(
        self, monkeypatch: pytest.MonkeyPatch, no_sleep: list[float]
    ) -> None:
        fake = FakeGh(*(_fail(["gh"], "connection reset") for _ in range(3)))
        host = _host(monkeypatch, fake)
        result = host.get_release("v0.9.0")
        assert isinstance(result, Err)
        assert result.error.kind == "request_failed"
        assert result.error.hint == "connection reset"
        assert no_sleep == [1.0, 2.0]


class TestMutations:
    def test_create_flags(self, monkeypatch: pytest.MonkeyPatch, no_sleep: list[float]) -> None:
        fake = FakeGh(Ok(""), Ok(VIEW))
        host = _host(monkeypatch, fake)
        result = host.create_release(
            tag="v0.9.0",
            title="Release 0.9.0 (in progress)",
            notes="",
            target="abc123",
            draft=True,
            prerelease=False,
        )
        assert isinstance(result, Ok)
        create = fake.calls[0]
        assert create[:4] == ["gh", "release", "create", "v0.9.0"]
        assert "--draft" in create
        assert "--prerelease" not in create
        assert create[-2:] == ["--target", "abc123"]

    def test_create_existing_tag(self, monkeypatch: pytest.MonkeyPatch, no_sleep: list[float]) -> None:
        fake = FakeGh(_fail(["gh"], "a release with the same tag name already exists"))
        host = _host(monkeypatch, fake)
        result = host.create_release(
            tag="v0.9.0", title="t", notes="", target=None, draft=True, prerelease=False
        )
        assert isinstance(result, Err)
        assert result.error.kind == "tag_exists"

    def test_delete_not_found(self, monkeypatch: pytest.MonkeyPatch, no_sleep: list[float]) -> None:
        fake = FakeGh(_fail(["gh"], "release not found"))
        host = _host(monkeypatch, fake)
        result = host.delete_release("nightly")
        assert isinstance(result, Err)
        assert result.error.kind == "not_found"
        assert fake.calls[0][-2:] == ["--yes", "--cleanup-tag"]

    def test_upload_is_not_retried(self, monkeypatch: pytest.MonkeyPatch, no_sleep: list[float]) -> None:
        fake = FakeGh(_fail(["gh"], "HTTP 502"))
        host = _host(monkeypatch, fake)
        path = Path("dist/a.tar.gz")
        result = host.upload_asset("v0.9.0", path=path, name="a.tar.gz", content_type="application/gzip")
        assert isinstance(result, Err)
        assert result.error.kind == "upload_failed"
        assert len(fake.calls) == 1
        assert "--clobber" in fake.calls[0]

    def test_upload_name_must_match_file(self, monkeypatch: pytest.MonkeyPatch, no_sleep: list[float]) -> None:
        fake = FakeGh()
        host = _host(monkeypatch, fake)
        result = host.upload_asset(
            "v0.9.0", path=Path("dist/a.tar.gz"), name="b.tar.gz", content_type="application/gzip"
        )
        assert isinstance(result, Err)
        assert fake.calls == []
