"""Dependency graph builder: requested tasks -> immutable execution plan."""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from buildtree import log
from buildtree.errors import CyclicDependencyError, UnknownTaskError
from buildtree.project import SEPARATOR
from buildtree.tasks.model import Task, TaskRef, TaskState
from buildtree.tasks.registry import TaskRegistry


@dataclass(frozen=True)
class ExecutionPlan:
    """The reachable, acyclic subgraph for one invocation.

    ``order`` is a topological order; tasks with no ordering constraint
    between them keep their registration order.
    """

    requested: tuple[str, ...]
    order: tuple[str, ...]
    tasks: Mapping[str, Task]
    dependencies: Mapping[str, tuple[str, ...]]
    dependents: Mapping[str, tuple[str, ...]]
    excluded: tuple[Task, ...] = ()

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, path: object) -> bool:
        return path in self.tasks

    def task(self, path: str) -> Task:
        return self.tasks[path]

    def downstream(self, path: str) -> list[str]:
        """Every task that transitively depends on *path*, in plan order."""
        seen: set[str] = set()
        stack = list(self.dependents.get(path, ()))
        while stack:
            cur = stack.pop()
            if cur in seen:
                continue
            seen.add(cur)
            stack.extend(self.dependents.get(cur, ()))
        return [p for p in self.order if p in seen]


_WHITE, _GRAY, _BLACK = 0, 1, 2


class GraphBuilder:
    """Collects predecessors of the requested tasks and orders them."""

    def __init__(self, registry: TaskRegistry) -> None:
        self.registry = registry

    def select(self, request: TaskRef) -> list[Task]:
        """Resolve one requested item.

        Absolute paths and task objects select one task. A bare name selects
        the task of that name in every project that declares it.
        """
        if isinstance(request, Task):
            return [request.realize()]
        if request.startswith(SEPARATOR):
            return [self.registry.find(request)]
        if SEPARATOR in request:
            return [self.registry.find(SEPARATOR + request)]
        selected = [
            self.registry.get(proj, request)
            for proj in self.registry.tree.projects()
            if self.registry.has(proj, request)
        ]
        if not selected:
            raise UnknownTaskError(request)
        return selected

    def build(self, requested: Iterable[TaskRef]) -> ExecutionPlan:
        roots: list[Task] = []
        for request in requested:
            for task in self.select(request):
                if task not in roots:
                    roots.append(task)

        nodes: dict[str, Task] = {}
        edges: dict[str, list[str]] = {}
        self._collect(roots, nodes, edges)
        order = _topo_order(nodes, edges)

        dependents: dict[str, list[str]] = {path: [] for path in order}
        for path in order:
            for dep in edges[path]:
                dependents[dep].append(path)

        excluded = tuple(
            t
            for t in self.registry.tasks()
            if t.path not in nodes and t.state == TaskState.CONFIGURED
        )

        plan = ExecutionPlan(
            requested=tuple(t.path for t in roots),
            order=tuple(order),
            tasks=MappingProxyType(dict(nodes)),
            dependencies=MappingProxyType({p: tuple(edges[p]) for p in order}),
            dependents=MappingProxyType({p: tuple(d) for p, d in dependents.items()}),
            excluded=excluded,
        )
        log.debug(f"Execution plan: {' -> '.join(plan.order)}")
        return plan

    def _predecessors(self, task: Task) -> list[Task]:
        preds: list[Task] = []
        for ref in task.dependencies:
            dep = self.registry.resolve(ref, task.project)
            if dep not in preds:
                preds.append(dep)
        return preds

    def _collect(
        self,
        roots: list[Task],
        nodes: dict[str, Task],
        edges: dict[str, list[str]],
    ) -> None:
        """Iterative DFS over predecessors; raises on the first back edge."""
        color: dict[str, int] = {}

        def _enter(task: Task) -> list[Task]:
            nodes[task.path] = task
            color[task.path] = _GRAY
            preds = self._predecessors(task)
            edges[task.path] = [p.path for p in preds]
            return preds

        for root in roots:
            if color.get(root.path, _WHITE) != _WHITE:
                continue
            path_stack = [root.path]
            stack = [(root, iter(_enter(root)))]
            while stack:
                node, it = stack[-1]
                nxt = next(it, None)
                if nxt is None:
                    color[node.path] = _BLACK
                    stack.pop()
                    path_stack.pop()
                    continue
                state = color.get(nxt.path, _WHITE)
                if state == _GRAY:
                    start = path_stack.index(nxt.path)
                    raise CyclicDependencyError(path_stack[start:] + [nxt.path])
                if state == _WHITE:
                    path_stack.append(nxt.path)
                    stack.append((nxt, iter(_enter(nxt))))


def _topo_order(nodes: dict[str, Task], edges: dict[str, list[str]]) -> list[str]:
    """Kahn's algorithm; among ready tasks the earliest registered goes first."""
    remaining = {path: len(set(deps)) for path, deps in edges.items()}
    dependents: dict[str, list[str]] = {path: [] for path in nodes}
    for path, deps in edges.items():
        for dep in set(deps):
            dependents[dep].append(path)

    heap = [(nodes[p].sequence, p) for p, count in remaining.items() if count == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        _, path = heapq.heappop(heap)
        order.append(path)
        for nxt in dependents[path]:
            remaining[nxt] -= 1
            if remaining[nxt] == 0:
                heapq.heappush(heap, (nodes[nxt].sequence, nxt))

    if len(order) != len(nodes):
        stuck = sorted(p for p, count in remaining.items() if count > 0)
        raise CyclicDependencyError(stuck)
    return order
