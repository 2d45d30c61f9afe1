from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from typing import Literal

from workgraph.models import BLOCKING_STATES, Batch, Task, TaskState

GraphErrorKind = Literal["cycle", "missing", "duplicate"]


class GraphError(ValueError):
    """Raised when a task set cannot form a valid dependency DAG."""

    def __init__(self, kind: GraphErrorKind, nodes: Iterable[str], message: str = "") -> None:
        self.kind = kind
        self.nodes = tuple(nodes)
        super().__init__(message or f"{kind} in dependency graph: {', '.join(self.nodes)}")


class DependencyGraph:
    """Immutable view over a task set and its ``depends_on`` edges.

    Order of ``tasks`` is the creation order and is used as the stable
    tie-break inside every batch.
    """

    def __init__(self, tasks: Sequence[Task]) -> None:
        self._order: dict[str, int] = {}
        self._tasks: dict[str, Task] = {}
        duplicates: list[str] = []
        for position, task in enumerate(tasks):
            if task.id in self._tasks:
                duplicates.append(task.id)
                continue
            self._order[task.id] = position
            self._tasks[task.id] = task
        if duplicates:
            raise GraphError(
                "duplicate", duplicates, f"Duplicate task ids: {', '.join(duplicates)}"
            )

        self._dependencies: dict[str, tuple[str, ...]] = {}
        self._dependents: dict[str, list[str]] = {task_id: [] for task_id in self._tasks}
        missing: list[str] = []
        for task_id, task in self._tasks.items():
            deps = tuple(dict.fromkeys(task.depends_on))
            if task_id in deps:
                raise GraphError("cycle", [task_id], f"Task {task_id} depends on itself.")
            for dep_id in deps:
                if dep_id not in self._tasks:
                    missing.append(f"{task_id}->{dep_id}")
                    continue
                self._dependents[dep_id].append(task_id)
            self._dependencies[task_id] = tuple(dep for dep in deps if dep in self._tasks)
        if missing:
            raise GraphError(
                "missing", missing, f"Unknown dependency ids: {', '.join(missing)}"
            )

        self._batches = self._layer(set(self._tasks), satisfied=set())

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._tasks, key=self._order.__getitem__))

    def task(self, task_id: str) -> Task:
        return self._tasks[task_id]

    def dependencies(self, task_id: str) -> tuple[str, ...]:
        return self._dependencies[task_id]

    def batches(self) -> list[Batch]:
        return list(self._batches)

    def batch_index(self, task_id: str) -> int:
        for batch in self._batches:
            if task_id in batch.task_ids:
                return batch.index
        raise KeyError(task_id)

    def dependents(self, task_id: str, *, transitive: bool = True) -> tuple[str, ...]:
        if not transitive:
            return tuple(sorted(self._dependents[task_id], key=self._order.__getitem__))
        seen: set[str] = set()
        queue = deque(self._dependents[task_id])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._dependents[current])
        return tuple(sorted(seen, key=self._order.__getitem__))

    def initial_states(self, done: Iterable[str] = ()) -> dict[str, TaskState]:
        satisfied = set(done)
        return {
            task_id: (
                TaskState.BLOCKED
                if any(dep not in satisfied for dep in self._dependencies[task_id])
                else TaskState.READY
            )
            for task_id in self.task_ids
        }

    def replan(self, states: Mapping[str, TaskState]) -> tuple[list[Batch], tuple[str, ...]]:
        """Rebuild batches over tasks that still need work.

        Returns the remaining batches and the ids that are permanently blocked
        because a transitive dependency failed or was escalated.
        """
        done = {task_id for task_id, state in states.items() if state == TaskState.DONE}
        sinks = [task_id for task_id, state in states.items() if state in BLOCKING_STATES]
        blocked: set[str] = set()
        for task_id in sinks:
            if task_id in self._tasks:
                blocked.update(self.dependents(task_id))
        blocked -= done

        finished = done | {task_id for task_id in sinks if task_id in self._tasks}
        remaining = set(self._tasks) - finished - blocked
        batches = self._layer(remaining, satisfied=done)
        ordered_blocked = tuple(sorted(blocked, key=self._order.__getitem__))
        return batches, ordered_blocked

    def _layer(self, nodes: set[str], *, satisfied: set[str]) -> list[Batch]:
        in_degree = {
            task_id: sum(
                1 for dep in self._dependencies[task_id] if dep in nodes and dep not in satisfied
            )
            for task_id in nodes
        }
        remaining = set(nodes)
        batches: list[Batch] = []
        while remaining:
            layer = sorted(
                (task_id for task_id in remaining if in_degree[task_id] == 0),
                key=self._order.__getitem__,
            )
            if not layer:
                cycle_nodes = sorted(remaining, key=self._order.__getitem__)
                raise GraphError(
                    "cycle",
                    cycle_nodes,
                    f"Dependency cycle among tasks: {', '.join(cycle_nodes)}",
                )
            for task_id in layer:
                remaining.discard(task_id)
                for child in self._dependents[task_id]:
                    if child in remaining:
                        in_degree[child] -= 1
            batches.append(Batch(index=len(batches), task_ids=tuple(layer)))
        return batches
