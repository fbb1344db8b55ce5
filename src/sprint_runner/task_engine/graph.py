"""Dependency graph over sprint tasks.

Provides cycle detection, deterministic topological ordering, parallel
execution batches, the effort-weighted critical path and the ready set used by
the scheduler.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

from rich.console import Console
from rich.tree import Tree

from ..constants import CRITICAL_PATH_TIE_BREAKS, DEFAULT_CRITICAL_PATH_TIE_BREAK
from ..errors import CycleError, SchemaError
from .model import Task, TaskStatus


@dataclass
class ExecutionPlan:
    """Execution plan with batches."""

    batches: list[list[str]]  # each batch can run in parallel
    total_tasks: int
    max_parallelism: int


class DependencyGraph:
    """Immutable DAG of task ids built from a sprint's task records.

    Use :meth:`build` rather than the constructor; it validates references and
    rejects cycles.
    """

    def __init__(self, tasks: list[Task]) -> None:
        self._tasks: dict[str, Task] = {t.id: t for t in tasks}
        self._order: dict[str, int] = {t.id: i for i, t in enumerate(tasks)}
        self._deps: dict[str, list[str]] = {t.id: list(dict.fromkeys(t.dependencies)) for t in tasks}
        self._dependents: dict[str, list[str]] = {t.id: [] for t in tasks}
        for t in tasks:
            for dep in self._deps[t.id]:
                if dep in self._dependents:
                    self._dependents[dep].append(t.id)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, tasks: Iterable[Task]) -> "DependencyGraph":
        """Build the graph, raising on unknown references or cycles.

        Raises:
            SchemaError: A dependency names a task that does not exist.
            CycleError: The dependencies contain a cycle.
        """
        task_list = list(tasks)
        known = {t.id for t in task_list}
        problems = [
            f"task {t.id!r}: unknown dependency {dep!r}"
            for t in task_list
            for dep in t.dependencies
            if dep not in known
        ]
        if problems:
            raise SchemaError(problems)
        graph = cls(task_list)
        cycle = graph.find_cycle()
        if cycle:
            raise CycleError(cycle)
        return graph

    def find_cycle(self) -> Optional[list[str]]:
        """Detect a dependency cycle.

        Returns:
            The cycle as a list of ids (first id repeated at the end), or None.
        """
        # 0 = unvisited, 1 = visiting, 2 = visited
        state: dict[str, int] = {tid: 0 for tid in self._order}

        def dfs(node: str, path: list[str]) -> Optional[list[str]]:
            if state[node] == 1:
                start = path.index(node)
                return path[start:] + [node]
            if state[node] == 2:
                return None
            state[node] = 1
            path.append(node)
            for neighbor in self._dependents.get(node, []):
                cycle = dfs(neighbor, path)
                if cycle:
                    return cycle
            path.pop()
            state[node] = 2
            return None

        for tid in self._order:
            if state[tid] == 0:
                cycle = dfs(tid, [])
                if cycle:
                    return cycle
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def task_ids(self) -> list[str]:
        return list(self._order)

    def dependencies(self, task_id: str) -> list[str]:
        return list(self._deps.get(task_id, []))

    def dependents(self, task_id: str) -> list[str]:
        """Direct dependents of *task_id*, in definition order."""
        return list(self._dependents.get(task_id, []))

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ties resolved by definition order."""
        in_degree = {tid: len(deps) for tid, deps in self._deps.items()}
        ready = sorted((tid for tid, n in in_degree.items() if n == 0), key=self._order.__getitem__)
        queue = deque(ready)
        out: list[str] = []
        while queue:
            tid = queue.popleft()
            out.append(tid)
            released = []
            for dependent in self._dependents[tid]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    released.append(dependent)
            queue.extend(released)
            # keep the queue ordered by definition index
            queue = deque(sorted(queue, key=self._order.__getitem__))
        return out

    def execution_batches(self) -> ExecutionPlan:
        """Group tasks into layers whose members can run concurrently."""
        in_degree = {tid: len(deps) for tid, deps in self._deps.items()}
        batch = [tid for tid in self._order if in_degree[tid] == 0]
        batches: list[list[str]] = []
        while batch:
            batches.append(batch)
            nxt: list[str] = []
            for tid in batch:
                for dependent in self._dependents[tid]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        nxt.append(dependent)
            batch = sorted(nxt, key=self._order.__getitem__)
        return ExecutionPlan(
            batches=batches,
            total_tasks=len(self._tasks),
            max_parallelism=max((len(b) for b in batches), default=0),
        )

    def critical_path(self, tie_break: str = DEFAULT_CRITICAL_PATH_TIE_BREAK) -> list[str]:
        """Return the dependency chain with the greatest total estimated effort.

        Missing effort counts as zero. When two chains weigh the same, the one
        through the first-defined task wins (``first_defined``) or the
        last-defined one (``last_defined``).
        """
        if tie_break not in CRITICAL_PATH_TIE_BREAKS:
            raise ValueError(f"Unknown tie-break policy: {tie_break}")
        if not self._tasks:
            return []
        prefer_later = tie_break == "last_defined"

        def better(candidate: str, current: Optional[str], weights: dict[str, float]) -> bool:
            if current is None:
                return True
            if weights[candidate] != weights[current]:
                return weights[candidate] > weights[current]
            if prefer_later:
                return self._order[candidate] > self._order[current]
            return self._order[candidate] < self._order[current]

        best: dict[str, float] = {}
        prev: dict[str, Optional[str]] = {}
        for tid in self.topological_order():
            pick: Optional[str] = None
            for dep in self._deps[tid]:
                if better(dep, pick, best):
                    pick = dep
            prev[tid] = pick
            best[tid] = self._tasks[tid].effort + (best[pick] if pick else 0.0)

        end: Optional[str] = None
        for tid in self._order:
            if better(tid, end, best):
                end = tid

        path: list[str] = []
        node = end
        while node is not None:
            path.append(node)
            node = prev[node]
        path.reverse()
        return path

    def ready_set(self, tasks: Iterable[Task]) -> list[Task]:
        """Pending tasks whose dependencies are all completed, in definition order."""
        by_id = {t.id: t for t in tasks}
        ready: list[Task] = []
        for tid in self._order:
            task = by_id.get(tid)
            if task is None or task.status != TaskStatus.PENDING:
                continue
            if all(
                by_id.get(dep) is not None and by_id[dep].status == TaskStatus.COMPLETED
                for dep in self._deps[tid]
            ):
                ready.append(task)
        return ready

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def visualize(self, tie_break: str = DEFAULT_CRITICAL_PATH_TIE_BREAK) -> str:
        """Render the batch plan and critical path as text."""
        plan = self.execution_batches()
        critical = set(self.critical_path(tie_break))
        console = Console(record=True, width=100)

        console.print("\n[bold]Sprint Execution Plan[/bold]")
        console.print(f"Total tasks: {plan.total_tasks}")
        console.print(f"Batches: {len(plan.batches)}")
        console.print(f"Max parallelism: {plan.max_parallelism}")
        console.print()

        for batch_idx, batch in enumerate(plan.batches, 1):
            console.print(f"[bold cyan]Batch {batch_idx}:[/bold cyan] ({len(batch)} task(s) in parallel)")
            for tid in batch:
                task = self._tasks[tid]
                marker = " [red]*[/red]" if tid in critical else ""
                deps = self._deps[tid]
                if deps:
                    console.print(f"  • {tid}{marker} [dim](depends on: {', '.join(deps)})[/dim]")
                else:
                    console.print(f"  • {tid}{marker}")
                if task.name:
                    console.print(f"    {task.name[:80]}")
            console.print()
        if critical:
            console.print(f"[red]*[/red] critical path: {' -> '.join(self.critical_path(tie_break))}")
        return console.export_text()

    def visualize_as_tree(self) -> str:
        """Render dependencies as a rich tree rooted at tasks with no dependencies."""
        console = Console(record=True, width=100)
        tree = Tree("[bold]Task Dependency Tree[/bold]")

        def add_dependents(parent_node: Tree, task_id: str, visited: set[str]) -> None:
            if task_id in visited:
                return
            visited.add(task_id)
            for dep_id in self._dependents[task_id]:
                branch = parent_node.add(f"[cyan]{dep_id}[/cyan]")
                add_dependents(branch, dep_id, visited)

        visited: set[str] = set()
        for tid in self._order:
            if not self._deps[tid]:
                branch = tree.add(f"[green]{tid}[/green]")
                add_dependents(branch, tid, visited)

        console.print(tree)
        return console.export_text()
