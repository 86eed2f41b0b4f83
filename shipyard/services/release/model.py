from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Literal


ReleaseKind = Literal["versioned", "nightly"]
RecordState = Literal["draft", "published"]


@dataclass(frozen=True, slots=True)
class TriggerContext:
    """What started the run (CI event name, pushed ref, explicit version input)."""

    event: str
    ref: str | None = None
    version: str | None = None


@dataclass(frozen=True, slots=True)
class ReleaseInfo:
    version: str
    tag: str
    kind: ReleaseKind
    date_stamp: str  # YYYYMMDD, UTC

    @property
    def is_nightly(self) -> bool:
        return self.kind == "nightly"


@dataclass(frozen=True, slots=True)
class HostedRelease:
    """Release as reported by the hosting service."""

    tag: str
    upload_url: str
    draft: bool
    prerelease: bool
    assets: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AssetRef:
    name: str
    target_id: str
    size: int
    sha256: str
    content_type: str


def _no_assets() -> list[AssetRef]:
    return []


@dataclass(eq=False)
class ReleaseRecord:
    """A release for the duration of one run.

    Asset publishers on different worker threads append to the same record;
    appends go through `add_asset`, which replaces by asset name under a lock
    so a re-upload never duplicates and no update is lost.
    """

    tag: str
    upload_url: str
    state: RecordState
    prerelease: bool = False
    _assets: list[AssetRef] = field(default_factory=_no_assets, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def assets(self) -> tuple[AssetRef, ...]:
        with self._lock:
            return tuple(self._assets)

    def asset_names(self) -> frozenset[str]:
        with self._lock:
            return frozenset(a.name for a in self._assets)

    def add_asset(self, ref: AssetRef) -> bool:
        """Append or replace `ref` by name. Returns True if it replaced one."""
        with self._lock:
            for i, existing in enumerate(self._assets):
                if existing.name == ref.name:
                    self._assets[i] = ref
                    return True
            self._assets.append(ref)
            return False

    def mark_published(self) -> None:
        with self._lock:
            self.state = "published"
