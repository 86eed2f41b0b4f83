from __future__ import annotations

from dataclasses import dataclass, fields, replace

from shipyard.core.config import Config
from shipyard.services.build import TargetReport
from shipyard.services.cache.keys import CacheKeys
from shipyard.services.cache.store import PopulateResult
from shipyard.services.release.model import ReleaseInfo, ReleaseRecord, TriggerContext

__all__ = ["RunContext", "STAGE_FIELDS"]


@dataclass(frozen=True, slots=True)
class RunContext:
    """State threaded through the stage graph.

    Each stage contributes exactly one field; the controller merges outputs
    with `with_output`, so a stage only ever sees the outputs of stages that
    completed before it was submitted.
    """

    trigger: TriggerContext
    config: Config
    release_info: ReleaseInfo | None = None
    cache_keys: CacheKeys | None = None
    dependency_cache: PopulateResult | None = None
    release_record: ReleaseRecord | None = None
    matrix: tuple[TargetReport, ...] | None = None
    published: bool | None = None

    def with_output(self, field_name: str, value: object) -> RunContext:
        if field_name not in STAGE_FIELDS:
            raise ValueError(f"not a stage output: {field_name}")
        if getattr(self, field_name) is not None:
            raise ValueError(f"stage output already set: {field_name}")
        return replace(self, **{field_name: value})

    def require_info(self) -> ReleaseInfo:
        assert self.release_info is not None, "release_info stage has not run"
        return self.release_info

    def require_record(self) -> ReleaseRecord:
        assert self.release_record is not None, "release_record stage has not run"
        return self.release_record


STAGE_FIELDS = frozenset(f.name for f in fields(RunContext)) - {"trigger", "config"}
