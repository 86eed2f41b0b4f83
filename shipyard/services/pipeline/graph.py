"""Stage DAG and its concurrent runner.

The graph enforces:
- A stage is submitted only once every prerequisite has completed.
- A failed prerequisite blocks all transitive dependents, unless it is
  marked continue-on-error.
- Independent stages run concurrently on a thread pool; their outputs are
  merged into the RunContext on the calling thread.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Literal

from shipyard.core.result import Err, Result
from shipyard.output.console import ConsoleProtocol, Style
from shipyard.services.build import AbortSignal
from shipyard.services.errors import RunError, StageBlocked
from shipyard.services.pipeline.context import STAGE_FIELDS, RunContext

__all__ = [
    "CyclicStageError",
    "INTERRUPTED",
    "Stage",
    "StageGraph",
    "StageOutcome",
    "StageStatus",
    "run_stages",
]

StageStatus = Literal["succeeded", "failed", "blocked"]

INTERRUPTED = "interrupted"

type StageFn = Callable[[RunContext], Result[object, RunError]]


class CyclicStageError(ValueError):
    """Raised when the stage graph contains a cycle."""


@dataclass(frozen=True, slots=True)
class Stage:
    name: str
    provides: str
    run: StageFn
    after: tuple[str, ...] = ()
    continue_on_error: bool = False


@dataclass(frozen=True, slots=True)
class StageOutcome:
    name: str
    status: StageStatus
    error: RunError | None = None


class StageGraph:
    """Directed acyclic graph of stages, built once per run."""

    def __init__(self, stages: list[Stage]) -> None:
        self._stages: dict[str, Stage] = {}
        for stage in stages:
            if stage.name in self._stages:
                raise ValueError(f"duplicate stage: {stage.name}")
            if stage.provides not in STAGE_FIELDS:
                raise ValueError(f"stage {stage.name} provides unknown field {stage.provides}")
            self._stages[stage.name] = stage

        provided = [s.provides for s in stages]
        if len(set(provided)) != len(provided):
            raise ValueError("two stages provide the same context field")

        self._dependents: dict[str, list[str]] = {name: [] for name in self._stages}
        for stage in stages:
            for prereq in stage.after:
                if prereq not in self._stages:
                    raise ValueError(f"stage {stage.name} depends on unknown stage {prereq}")
                self._dependents[prereq].append(stage.name)

        self._order = self._topological_order()

    def _topological_order(self) -> tuple[str, ...]:
        in_degree = {name: len(s.after) for name, s in self._stages.items()}
        queue = deque(name for name, deg in in_degree.items() if deg == 0)
        order: list[str] = []
        while queue:
            node = queue.popleft()
            order.append(node)
            for dep in self._dependents[node]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(order) != len(self._stages):
            raise CyclicStageError(
                f"stage graph has a cycle. Visited {len(order)}/{len(self._stages)} stages."
            )
        return tuple(order)

    @property
    def order(self) -> tuple[str, ...]:
        return self._order

    def stage(self, name: str) -> Stage:
        return self._stages[name]

    def prerequisites(self, name: str) -> tuple[str, ...]:
        return self._stages[name].after

    def dependents(self, name: str) -> list[str]:
        """All transitive dependents of a stage (BFS)."""
        result: list[str] = []
        queue = deque(self._dependents[name])
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents[node])
        return result


def _satisfied(outcome: StageOutcome | None, graph: StageGraph) -> bool | None:
    """True if the prerequisite lets dependents run, False if it blocks, None if pending."""
    if outcome is None:
        return None
    if outcome.status == "succeeded":
        return True
    return outcome.status == "failed" and graph.stage(outcome.name).continue_on_error


def run_stages(
    graph: StageGraph,
    ctx: RunContext,
    *,
    console: ConsoleProtocol,
    abort: AbortSignal | None = None,
    max_workers: int = 4,
) -> tuple[RunContext, tuple[StageOutcome, ...]]:
    """Run every stage of `graph`, as concurrently as the edges allow.

    The first KeyboardInterrupt trips `abort` and waits for running stages
    to wind down; a second one propagates.
    """
    outcomes: dict[str, StageOutcome] = {}
    pending = list(graph.order)
    in_flight: dict[Future[Result[object, RunError]], str] = {}

    def schedule(pool: ThreadPoolExecutor) -> None:
        for name in list(pending):
            stage = graph.stage(name)
            states = [_satisfied(outcomes.get(p), graph) for p in stage.after]
            if any(s is False for s in states):
                blocked_by = tuple(
                    p for p, s in zip(stage.after, states, strict=True) if s is False
                )
                outcomes[name] = StageOutcome(
                    name=name,
                    status="blocked",
                    error=StageBlocked(stage=name, blocked_by=blocked_by),
                )
                console.print(f"stage {name}: blocked by {', '.join(blocked_by)}", Style.DIM)
                pending.remove(name)
            elif all(s is True for s in states):
                console.print(f"stage {name}: started", Style.DIM)
                in_flight[pool.submit(stage.run, ctx)] = name
                pending.remove(name)

    interrupted = False
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        # Blocking cascades without waiting, so loop until nothing changes.
        while True:
            before = len(pending)
            schedule(pool)
            if len(pending) == before:
                break

        while in_flight:
            try:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            except KeyboardInterrupt:
                if interrupted or abort is None:
                    raise
                interrupted = True
                abort.trip(INTERRUPTED)
                console.warning("interrupted, cancelling remaining work")
                continue

            for future in done:
                name = in_flight.pop(future)
                stage = graph.stage(name)
                result = future.result()
                if isinstance(result, Err):
                    outcomes[name] = StageOutcome(name=name, status="failed", error=result.error)
                    if stage.continue_on_error:
                        console.warning(f"stage {name}: {result.error.message} (continuing)")
                    else:
                        console.error(f"stage {name}: {result.error.message}")
                else:
                    ctx = ctx.with_output(stage.provides, result.value)
                    outcomes[name] = StageOutcome(name=name, status="succeeded")
                    console.print(f"stage {name}: done", Style.DIM)

            while True:
                before = len(pending)
                schedule(pool)
                if len(pending) == before:
                    break

    return ctx, tuple(outcomes[name] for name in graph.order if name in outcomes)
