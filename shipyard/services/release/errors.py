from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


ReleaseErrorKind = Literal[
    "gh_missing",
    "gh_auth_required",
    "not_found",
    "tag_exists",
    "invalid_response",
    "request_failed",
    "upload_failed",
]


@dataclass(frozen=True, slots=True)
class ReleaseError:
    """Failure reported by the release hosting client."""

    kind: ReleaseErrorKind
    message: str
    hint: str | None = None
