"""Task dependency graph and wave assignment.

Edges come from two places: explicit ``depends`` declarations and implicit
scope overlap between two tasks' allowed patterns.  Implicit edges always
point from the later task to the earlier one in a stable topological order
of the explicit graph, so they never close a cycle.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Literal

from taskwave.errors import ConfigError, CycleError
from taskwave.patterns import scopes_overlap


@dataclass
class GraphNode:
    """A task as the scheduler sees it."""

    id: str
    allowed: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    wave: int | None = None
    completed: bool = False


@dataclass(frozen=True)
class TaskDependency:
    task: str
    depends_on: tuple[str, ...]
    reason: str
    kind: Literal["explicit", "implicit"]


@dataclass(frozen=True)
class Wave:
    number: int
    tasks: tuple[str, ...]


@dataclass
class DependencyGraph:
    order: list[str]
    deps: dict[str, set[str]]
    dependencies: list[TaskDependency]
    waves: list[Wave]
    skipped: list[str]

    def wave_of(self, task_id: str) -> int | None:
        for wave in self.waves:
            if task_id in wave.tasks:
                return wave.number
        return None

    def explicit_deps(self, task_id: str) -> list[str]:
        out: list[str] = []
        for d in self.dependencies:
            if d.kind == "explicit" and d.task == task_id:
                out.extend(d.depends_on)
        return out


def find_cycle(deps: dict[str, list[str]]) -> list[str] | None:
    """Return one dependency cycle as ``[a, b, ..., a]``, or ``None``."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in deps}
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        color[node] = GREY
        stack.append(node)
        for dep in deps.get(node, []):
            if dep not in color:
                continue
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in deps:
        if color[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


def topological_order(ids: list[str], deps: dict[str, set[str]]) -> list[str]:
    """Kahn's algorithm; ties resolve by position in *ids*.  Raises ``CycleError``."""
    index = {n: i for i, n in enumerate(ids)}
    in_degree = {n: sum(1 for d in deps.get(n, ()) if d in index) for n in ids}
    dependents: dict[str, list[str]] = {n: [] for n in ids}
    for n in ids:
        for d in deps.get(n, ()):
            if d in index:
                dependents[d].append(n)

    heap = [index[n] for n in ids if in_degree[n] == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        current = ids[heapq.heappop(heap)]
        order.append(current)
        for nxt in dependents[current]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                heapq.heappush(heap, index[nxt])

    if len(order) != len(ids):
        cycle = find_cycle({n: sorted(deps.get(n, ()), key=lambda d: index.get(d, -1)) for n in ids})
        raise CycleError(cycle or [n for n in ids if n not in order])
    return order


def build_dependency_graph(nodes: list[GraphNode]) -> DependencyGraph:
    """Compute dependencies and waves for *nodes* (input order is significant)."""
    ids = [n.id for n in nodes]
    by_id = {n.id: n for n in nodes}
    if len(by_id) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigError.invalid("plan", f"duplicate task(s): {', '.join(dupes)}")

    done = {n.id for n in nodes if n.completed}
    pending = [n.id for n in nodes if not n.completed]

    dependencies: list[TaskDependency] = []
    explicit: dict[str, set[str]] = {n: set() for n in pending}
    for node in nodes:
        for dep in node.depends_on:
            if dep not in by_id:
                raise ConfigError.invalid(
                    "dependency", f"task {node.id} depends on unknown task {dep}"
                )
            if dep == node.id:
                raise CycleError([node.id, node.id])
        if node.completed or not node.depends_on:
            continue
        explicit[node.id] = {d for d in node.depends_on if d not in done}
        dependencies.append(
            TaskDependency(
                task=node.id,
                depends_on=tuple(dict.fromkeys(node.depends_on)),
                reason="explicit dependency",
                kind="explicit",
            )
        )

    # Cycles among completed tasks still indicate a broken plan.
    cycle = find_cycle({n.id: list(n.depends_on) for n in nodes})
    if cycle:
        raise CycleError(cycle)

    order = topological_order(pending, explicit)
    position = {n: i for i, n in enumerate(order)}

    deps: dict[str, set[str]] = {n: set(explicit[n]) for n in pending}
    for i, earlier in enumerate(order):
        for later in order[i + 1:]:
            pairs = scopes_overlap(by_id[later].allowed, by_id[earlier].allowed)
            if not pairs:
                continue
            if earlier in deps[later]:
                continue
            deps[later].add(earlier)
            a, b = pairs[0]
            dependencies.append(
                TaskDependency(
                    task=later,
                    depends_on=(earlier,),
                    reason=f"scope overlap: {a} ~ {b}",
                    kind="implicit",
                )
            )

    wave_num: dict[str, int] = {}
    for task_id in order:
        floor = by_id[task_id].wave or 1
        dep_waves = [wave_num[d] for d in deps[task_id] if d in wave_num]
        wave_num[task_id] = max([floor, *(w + 1 for w in dep_waves)])

    waves: list[Wave] = []
    for number, raw in enumerate(sorted(set(wave_num.values())), start=1):
        members = sorted((t for t in pending if wave_num[t] == raw), key=lambda t: position[t])
        waves.append(Wave(number=number, tasks=tuple(members)))

    return DependencyGraph(
        order=order,
        deps=deps,
        dependencies=dependencies,
        waves=waves,
        skipped=[n.id for n in nodes if n.completed],
    )
