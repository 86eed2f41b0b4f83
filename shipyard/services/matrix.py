"""Build matrix expansion.

The matrix is the Cartesian product platforms x cpu_variants x toolchains x
cross, minus cells matched by `exclude` rules, followed by explicit
`include` cells. Validation runs once, in `validate_matrix`; `iter_targets`
then yields BuildTarget values lazily.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from shipyard.core.config import MatrixConfig, MatrixRule, TargetConfig
from shipyard.core.result import Err, Ok, Result
from shipyard.services.errors import MatrixError

__all__ = [
    "BuildTarget",
    "iter_targets",
    "plan_matrix",
    "product_size",
    "validate_matrix",
]


@dataclass(frozen=True, slots=True, order=True)
class BuildTarget:
    os: str
    target_triple: str
    cpu_variant: str
    toolchain: str
    cross_compile: bool

    @property
    def id(self) -> str:
        base = f"{self.os}-{self.target_triple}-{self.cpu_variant}-{self.toolchain}"
        return f"{base}-cross" if self.cross_compile else base

    @property
    def is_windows(self) -> bool:
        return self.os == "windows" or "-windows-" in self.target_triple

    @property
    def archive_extension(self) -> str:
        return "zip" if self.is_windows else "tar.gz"

    @property
    def asset_suffix(self) -> str:
        """Part of the archive name that tells targets apart."""
        return f"{self.target_triple}-{self.cpu_variant}.{self.archive_extension}"

    def exe_name(self, name: str) -> str:
        return f"{name}.exe" if self.is_windows else name


def _matches(rule: MatrixRule, target: BuildTarget) -> bool:
    return (
        (rule.os is None or rule.os == target.os)
        and (rule.target is None or rule.target == target.target_triple)
        and (rule.cpu_variant is None or rule.cpu_variant == target.cpu_variant)
        and (rule.toolchain is None or rule.toolchain == target.toolchain)
        and (rule.cross is None or rule.cross == target.cross_compile)
    )


def _from_include(item: TargetConfig) -> BuildTarget:
    return BuildTarget(
        os=item.os,
        target_triple=item.target,
        cpu_variant=item.cpu_variant,
        toolchain=item.toolchain,
        cross_compile=item.cross,
    )


def _product(matrix: MatrixConfig) -> Iterator[BuildTarget]:
    for platform, cpu, toolchain, cross in itertools.product(
        matrix.platforms, matrix.cpu_variants, matrix.toolchains, matrix.cross
    ):
        yield BuildTarget(
            os=platform.os,
            target_triple=platform.target,
            cpu_variant=cpu,
            toolchain=toolchain,
            cross_compile=cross,
        )


def product_size(matrix: MatrixConfig) -> int:
    return (
        len(matrix.platforms) * len(matrix.cpu_variants) * len(matrix.toolchains) * len(matrix.cross)
    )


def _duplicates[T](values: tuple[T, ...]) -> list[T]:
    seen: set[T] = set()
    dups: list[T] = []
    for v in values:
        if v in seen and v not in dups:
            dups.append(v)
        seen.add(v)
    return dups


def validate_matrix(matrix: MatrixConfig) -> Result[MatrixConfig, MatrixError]:
    """Check the matrix once, before anything is scheduled."""
    dimensions: tuple[tuple[str, tuple[object, ...]], ...] = (
        ("platforms", tuple(matrix.platforms)),
        ("cpu_variants", tuple(matrix.cpu_variants)),
        ("toolchains", tuple(matrix.toolchains)),
        ("cross", tuple(matrix.cross)),
    )
    for name, values in dimensions:
        if not values:
            return Err(MatrixError(message=f"matrix dimension '{name}' is empty"))
        dups = _duplicates(values)
        if dups:
            return Err(
                MatrixError(
                    message=f"matrix dimension '{name}' has duplicate values",
                    hint=", ".join(str(d) for d in dups),
                )
            )

    product = list(_product(matrix))
    for rule in matrix.exclude:
        if not any(_matches(rule, t) for t in product):
            return Err(
                MatrixError(
                    message="exclude rule matches no matrix cell",
                    hint=repr(rule),
                )
            )

    scheduled = {t for t in product if not any(_matches(r, t) for r in matrix.exclude)}
    for item in matrix.include:
        target = _from_include(item)
        if target in scheduled:
            return Err(
                MatrixError(
                    message=f"include duplicates an existing matrix cell: {target.id}",
                )
            )
        scheduled.add(target)

    if not scheduled:
        return Err(MatrixError(message="matrix excludes every cell"))

    # Cells share the out dir and the release: both the cell id and the
    # archive name must be unique across the scheduled targets.
    for what, key in (("cell id", _cell_id), ("archive name", _asset_suffix)):
        clashes = _collisions(sorted(scheduled), key)
        if clashes:
            return Err(
                MatrixError(
                    message=f"matrix cells share the same {what}",
                    hint="; ".join(clashes),
                )
            )

    return Ok(matrix)


def _cell_id(target: BuildTarget) -> str:
    return target.id


def _asset_suffix(target: BuildTarget) -> str:
    return target.asset_suffix


def _collisions(targets: list[BuildTarget], key: Callable[[BuildTarget], str]) -> list[str]:
    groups: dict[str, list[BuildTarget]] = {}
    for target in targets:
        groups.setdefault(key(target), []).append(target)
    return [
        f"{name}: {', '.join(t.id for t in group)}"
        for name, group in groups.items()
        if len(group) > 1
    ]


def iter_targets(matrix: MatrixConfig) -> Iterator[BuildTarget]:
    """Lazily yield the scheduled targets of a validated matrix."""
    for target in _product(matrix):
        if any(_matches(rule, target) for rule in matrix.exclude):
            continue
        yield target
    for item in matrix.include:
        yield _from_include(item)


def plan_matrix(matrix: MatrixConfig) -> Result[tuple[BuildTarget, ...], MatrixError]:
    """Validate then materialize the target list."""
    validated = validate_matrix(matrix)
    if isinstance(validated, Err):
        return validated
    return Ok(tuple(iter_targets(validated.value)))
