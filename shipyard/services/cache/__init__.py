"""Dependency cache: key derivation and content-addressed store."""

from .keys import CacheKey, CacheKeys, derive_cache_keys, strip_own_versions
from .store import DependencyCache

__all__ = [
    "CacheKey",
    "CacheKeys",
    "DependencyCache",
    "derive_cache_keys",
    "strip_own_versions",
]
