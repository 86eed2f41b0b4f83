"""Typed configuration loading and access.

This module provides dataclasses for the shipyard.toml structure with
full type safety and validation. Defaults describe the project the pipeline
was first written for (two binaries, crates.io dependency index).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .result import Err, Ok, Result
from .structured import (
    StrDict,
    as_str_dict,
    get_bool,
    get_int,
    get_list,
    get_str,
    get_str_list,
    get_table,
)

__all__ = [
    "BinaryConfig",
    "CacheConfig",
    "Config",
    "ConfigError",
    "HostingConfig",
    "MatrixConfig",
    "MatrixRule",
    "PipelineConfig",
    "PlatformConfig",
    "ProjectConfig",
    "TargetConfig",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_TRIPLES",
    "load_config",
    "load_config_or_default",
]

DEFAULT_CONFIG_NAME = "shipyard.toml"

# Bare os names in [matrix].platforms resolve to these triples.
DEFAULT_TRIPLES: dict[str, str] = {
    "linux": "x86_64-unknown-linux-gnu",
    "macos": "x86_64-apple-darwin",
    "windows": "x86_64-pc-windows-msvc",
}

CRATES_IO_INDEX_URL = "https://github.com/rust-lang/crates.io-index.git"


@dataclass(frozen=True, slots=True)
class ConfigError:
    """Error when config cannot be loaded or parsed."""

    message: str
    path: Path | None = None


@dataclass(frozen=True, slots=True)
class BinaryConfig:
    """One executable produced by every build job."""

    name: str
    manifest_path: str
    args: tuple[str, ...] = ()


def _default_binaries() -> tuple[BinaryConfig, ...]:
    return (
        BinaryConfig(
            name="jormungandr",
            manifest_path="jormungandr/Cargo.toml",
            args=("--no-default-features",),
        ),
        BinaryConfig(name="jcli", manifest_path="jcli/Cargo.toml"),
    )


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    name: str = "jormungandr"
    # Manifest holding the declared project version.
    manifest: str = "jormungandr/Cargo.toml"
    lockfile: str = "Cargo.lock"
    # Extra package names whose versions are stripped from the lockfile
    # before hashing; local workspace members are detected automatically.
    own_packages: tuple[str, ...] = ()
    binaries: tuple[BinaryConfig, ...] = field(default_factory=_default_binaries)


@dataclass(frozen=True, slots=True)
class PlatformConfig:
    os: str
    target: str


@dataclass(frozen=True, slots=True)
class MatrixRule:
    """Partial match over matrix dimensions (None = any value)."""

    os: str | None = None
    target: str | None = None
    cpu_variant: str | None = None
    toolchain: str | None = None
    cross: bool | None = None


@dataclass(frozen=True, slots=True)
class TargetConfig:
    """A fully specified matrix cell added on top of the product."""

    os: str
    target: str
    cpu_variant: str
    toolchain: str
    cross: bool


def _default_platforms() -> tuple[PlatformConfig, ...]:
    return (
        PlatformConfig(os="linux", target=DEFAULT_TRIPLES["linux"]),
        PlatformConfig(os="macos", target=DEFAULT_TRIPLES["macos"]),
    )


@dataclass(frozen=True, slots=True)
class MatrixConfig:
    platforms: tuple[PlatformConfig, ...] = field(default_factory=_default_platforms)
    cpu_variants: tuple[str, ...] = ("generic",)
    toolchains: tuple[str, ...] = ("stable",)
    cross: tuple[bool, ...] = (False,)
    exclude: tuple[MatrixRule, ...] = ()
    include: tuple[TargetConfig, ...] = ()


@dataclass(frozen=True, slots=True)
class CacheConfig:
    root: str = ".shipyard/cache"
    index_url: str = CRATES_IO_INDEX_URL
    index_branch: str = "master"


@dataclass(frozen=True, slots=True)
class HostingConfig:
    repo: str = "input-output-hk/jormungandr"
    token_env: str = "GITHUB_TOKEN"
    nightly_tag: str = "nightly"


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    max_parallel: int = 4
    fail_fast: bool = False
    out_dir: str = "dist"
    work_dir: str = ".shipyard/work"


@dataclass(frozen=True, slots=True)
class Config:
    """Main configuration container."""

    project: ProjectConfig = field(default_factory=ProjectConfig)
    matrix: MatrixConfig = field(default_factory=MatrixConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    hosting: HostingConfig = field(default_factory=HostingConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Config:
        """Create Config from a mapping (parsed TOML).

        Raises:
            ValueError: When an entry is present but malformed.
        """
        project: StrDict = get_table(data, "project") or {}
        matrix: StrDict = get_table(data, "matrix") or {}
        cache: StrDict = get_table(data, "cache") or {}
        hosting: StrDict = get_table(data, "hosting") or {}
        pipeline: StrDict = get_table(data, "pipeline") or {}

        defaults = cls()
        max_parallel = get_int(pipeline, "max_parallel")
        binaries_raw = get_list(data, "binaries")
        binaries = (
            tuple(_parse_binary(item) for item in binaries_raw)
            if binaries_raw is not None
            else defaults.project.binaries
        )
        if len(binaries) < 2:
            raise ValueError("at least two [[binaries]] entries are required")

        return cls(
            project=ProjectConfig(
                name=get_str(project, "name") or defaults.project.name,
                manifest=get_str(project, "manifest") or defaults.project.manifest,
                lockfile=get_str(project, "lockfile") or defaults.project.lockfile,
                own_packages=tuple(get_str_list(project, "own_packages") or ()),
                binaries=binaries,
            ),
            matrix=_parse_matrix(matrix, defaults.matrix),
            cache=CacheConfig(
                root=get_str(cache, "root") or defaults.cache.root,
                index_url=get_str(cache, "index_url") or defaults.cache.index_url,
                index_branch=get_str(cache, "index_branch") or defaults.cache.index_branch,
            ),
            hosting=HostingConfig(
                repo=get_str(hosting, "repo") or defaults.hosting.repo,
                token_env=get_str(hosting, "token_env") or defaults.hosting.token_env,
                nightly_tag=get_str(hosting, "nightly_tag") or defaults.hosting.nightly_tag,
            ),
            pipeline=PipelineConfig(
                max_parallel=max(
                    1, defaults.pipeline.max_parallel if max_parallel is None else max_parallel
                ),
                fail_fast=bool(get_bool(pipeline, "fail_fast")),
                out_dir=get_str(pipeline, "out_dir") or defaults.pipeline.out_dir,
                work_dir=get_str(pipeline, "work_dir") or defaults.pipeline.work_dir,
            ),
        )


def _parse_binary(item: object) -> BinaryConfig:
    d = as_str_dict(item)
    if d is None:
        raise ValueError("[[binaries]] entries must be tables")
    name = get_str(d, "name")
    manifest_path = get_str(d, "manifest_path")
    if name is None or manifest_path is None:
        raise ValueError("[[binaries]] entries need 'name' and 'manifest_path'")
    args = get_str_list(d, "args")
    if args is None and "args" in d:
        raise ValueError(f"binary '{name}': 'args' must be a list of strings")
    return BinaryConfig(name=name, manifest_path=manifest_path, args=tuple(args or ()))


def _parse_platform(item: object) -> PlatformConfig:
    if isinstance(item, str):
        os_name = item.strip()
        triple = DEFAULT_TRIPLES.get(os_name)
        if triple is None:
            raise ValueError(f"no default target triple for os '{os_name}'")
        return PlatformConfig(os=os_name, target=triple)

    d = as_str_dict(item)
    if d is None:
        raise ValueError("matrix platforms must be os names or {os, target} tables")
    os_name = get_str(d, "os")
    if os_name is None:
        raise ValueError("matrix platform entry needs 'os'")
    target = get_str(d, "target") or DEFAULT_TRIPLES.get(os_name)
    if target is None:
        raise ValueError(f"matrix platform '{os_name}' needs 'target'")
    return PlatformConfig(os=os_name, target=target)


def _parse_rule(item: object) -> MatrixRule:
    d = as_str_dict(item)
    if d is None or not d:
        raise ValueError("[[matrix.exclude]] entries must be non-empty tables")
    unknown = set(d) - {"os", "target", "cpu_variant", "toolchain", "cross"}
    if unknown:
        raise ValueError(f"unknown exclude keys: {', '.join(sorted(unknown))}")
    return MatrixRule(
        os=get_str(d, "os"),
        target=get_str(d, "target"),
        cpu_variant=get_str(d, "cpu_variant"),
        toolchain=get_str(d, "toolchain"),
        cross=get_bool(d, "cross"),
    )


def _parse_include(item: object, matrix: MatrixConfig) -> TargetConfig:
    d = as_str_dict(item)
    if d is None:
        raise ValueError("[[matrix.include]] entries must be tables")
    platform = _parse_platform(d)
    return TargetConfig(
        os=platform.os,
        target=platform.target,
        cpu_variant=get_str(d, "cpu_variant") or _first(matrix.cpu_variants, "cpu_variant"),
        toolchain=get_str(d, "toolchain") or _first(matrix.toolchains, "toolchain"),
        cross=bool(get_bool(d, "cross")),
    )


def _first(values: tuple[str, ...], key: str) -> str:
    if not values:
        raise ValueError(f"[[matrix.include]] needs '{key}' when the matrix has none")
    return values[0]


def _str_dimension(table: StrDict, key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """An absent key falls back to `default`; an explicit empty list stays empty."""
    if key not in table:
        return default
    values = get_str_list(table, key)
    if values is None:
        raise ValueError(f"matrix '{key}' must be a list of non-empty strings")
    return tuple(values)


def _parse_matrix(table: StrDict, defaults: MatrixConfig) -> MatrixConfig:
    platforms_raw = get_list(table, "platforms")
    platforms = (
        tuple(_parse_platform(p) for p in platforms_raw)
        if platforms_raw is not None
        else defaults.platforms
    )

    cross_raw = get_list(table, "cross")
    if cross_raw is not None and not all(isinstance(c, bool) for c in cross_raw):
        raise ValueError("matrix 'cross' must be a list of booleans")

    matrix = MatrixConfig(
        platforms=platforms,
        cpu_variants=_str_dimension(table, "cpu_variants", defaults.cpu_variants),
        toolchains=_str_dimension(table, "toolchains", defaults.toolchains),
        cross=tuple(bool(c) for c in cross_raw) if cross_raw is not None else defaults.cross,
        exclude=tuple(_parse_rule(r) for r in get_list(table, "exclude") or ()),
    )
    include = tuple(_parse_include(i, matrix) for i in get_list(table, "include") or ())
    return MatrixConfig(
        platforms=matrix.platforms,
        cpu_variants=matrix.cpu_variants,
        toolchains=matrix.toolchains,
        cross=matrix.cross,
        exclude=matrix.exclude,
        include=include,
    )


def _parse_toml(path: Path) -> Result[StrDict, ConfigError]:
    """Parse a TOML file, handling import and parse errors."""
    import tomllib

    try:
        data_obj: object = tomllib.loads(path.read_bytes().decode("utf-8"))
        data = as_str_dict(data_obj)
        if data is None:
            return Err(ConfigError("Config root must be a TOML table", path=path))
        return Ok(data)
    except FileNotFoundError:
        return Err(ConfigError(f"Config file not found: {path}", path=path))
    except PermissionError:
        return Err(ConfigError(f"Permission denied reading: {path}", path=path))
    except tomllib.TOMLDecodeError as e:
        return Err(ConfigError(f"Invalid TOML syntax: {e}", path=path))
    except UnicodeDecodeError as e:
        return Err(ConfigError(f"Error reading config: {e}", path=path))


def load_config(path: Path) -> Result[Config, ConfigError]:
    """Load and parse configuration from a TOML file.

    Args:
        path: Path to shipyard.toml

    Returns:
        Ok(Config) on success, Err(ConfigError) on failure
    """
    result = _parse_toml(path)
    if isinstance(result, Err):
        return result

    try:
        return Ok(Config.from_dict(result.value))
    except (KeyError, TypeError, ValueError) as e:
        return Err(ConfigError(f"Invalid config structure: {e}", path=path))


def load_config_or_default(path: Path) -> Result[Config, ConfigError]:
    """Like load_config, but a missing file yields the default Config.

    A file that exists but is invalid is still an error.
    """
    if not path.exists():
        return Ok(Config())
    return load_config(path)
