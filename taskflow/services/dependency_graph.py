"""
Task dependency graph.

Edges point from a dependent task to the task blocking it. The set of all
edges (every type) must stay acyclic; only ``blocks`` edges gate the
dependent task's start.

Nothing is cached: every check re-reads edges and task statuses from the
store, inside the caller's transaction, so a decision is never made on a
stale snapshot.

Usage:
    from taskflow.services.dependency_graph import DependencyGraphManager

    graph = DependencyGraphManager(store)
    graph.add_edge(dependent_id=7, blocking_id=3)
    graph.blocking_info(7)["is_blocked"]
"""

import logging

from taskflow.core.exceptions import (
    CycleDetectedError,
    DuplicateEdgeError,
    NotFoundError,
    SelfDependencyError,
    ValidationError,
)
from taskflow.models.task import (
    DEPENDENCY_TYPES,
    TERMINAL_COMPLETE_STATUS,
)

logger = logging.getLogger(__name__)


def _task_brief(task, edge=None):
    brief = {
        "task_id": task.id,
        "title": task.title,
        "status": task.status,
        "assignee_id": task.assignee_id,
    }
    if edge is not None:
        brief["dependency_id"] = edge.id
        brief["type"] = edge.type
    return brief


class DependencyGraphManager:
    """Edge insertion/removal with cycle prevention, plus blocking queries."""

    def __init__(self, store):
        self.store = store

    # ── Mutations ───────────────────────────────────────────────────────

    def add_edge(self, dependent_id: int, blocking_id: int, dep_type: str = "blocks", *, created_by_id=None):
        """Insert "dependent depends on blocking".

        Raises:
            ValidationError:     unknown dependency type.
            SelfDependencyError: dependent == blocking.
            NotFoundError:       either task missing.
            DuplicateEdgeError:  the ordered pair already has an edge.
            CycleDetectedError:  blocking already depends on dependent.
        """
        if dep_type not in DEPENDENCY_TYPES:
            raise ValidationError(
                f"Unknown dependency type: {dep_type}",
                {"type": dep_type, "allowed": sorted(DEPENDENCY_TYPES)},
            )
        if dependent_id == blocking_id:
            raise SelfDependencyError(dependent_id)

        # Lock in id order so two opposite insertions cannot deadlock.
        locked = {}
        for task_id in sorted((dependent_id, blocking_id)):
            task = self.store.find_task(task_id, for_update=True)
            if task is None:
                raise NotFoundError("Task", task_id)
            locked[task_id] = task

        if self.store.find_edge(dependent_id, blocking_id) is not None:
            raise DuplicateEdgeError(dependent_id, blocking_id)

        path = self.find_cycle_path(dependent_id, blocking_id)
        if path is not None:
            logger.info(
                "Rejected dependency %s -> %s: cycle %s",
                dependent_id, blocking_id, path,
                extra={"task_id": dependent_id},
            )
            raise CycleDetectedError(dependent_id, blocking_id, path=path)

        edge = self.store.create_edge(
            dependent_task_id=dependent_id,
            blocking_task_id=blocking_id,
            type=dep_type,
            created_by_id=created_by_id,
        )
        logger.info(
            "Dependency added id=%s %s -> %s (%s)",
            edge.id, dependent_id, blocking_id, dep_type,
            extra={"task_id": dependent_id},
        )
        return edge

    def remove_edge(self, edge_id: int) -> bool:
        """Delete an edge. Removing a missing edge is a no-op returning False."""
        edge = self.store.get_edge(edge_id)
        if edge is None:
            return False
        self.store.delete_edge(edge)
        logger.info("Dependency removed id=%s", edge_id)
        return True

    # ── Cycle detection ─────────────────────────────────────────────────

    def _depends_on(self, task_id):
        return [edge.blocking_task_id for edge in self.store.find_edges_by_source(task_id)]

    def find_cycle_path(self, dependent_id: int, blocking_id: int):
        """Return the cycle the edge dependent → blocking would close, or None.

        The returned path starts and ends on the same task, e.g. [A, B, A].
        A cycle already present below ``blocking`` is reported as well.
        """
        if self.store.find_edge(blocking_id, dependent_id) is not None:
            return [dependent_id, blocking_id, dependent_id]

        # Iterative DFS over depends-on edges. ``path`` mirrors the stack.
        path = [blocking_id]
        on_path = {blocking_id}
        visited = {blocking_id}
        stack = [iter(self._depends_on(blocking_id))]

        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                on_path.discard(path.pop())
                continue
            if nxt == dependent_id:
                return [dependent_id, *path, dependent_id]
            if nxt in on_path:
                return path[path.index(nxt):] + [nxt]
            if nxt in visited:
                continue
            visited.add(nxt)
            path.append(nxt)
            on_path.add(nxt)
            stack.append(iter(self._depends_on(nxt)))

        return None

    def would_create_cycle(self, dependent_id: int, blocking_id: int) -> bool:
        if dependent_id == blocking_id:
            return True
        return self.find_cycle_path(dependent_id, blocking_id) is not None

    # ── Queries ─────────────────────────────────────────────────────────

    def _require(self, task_id):
        task = self.store.find_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def blocking_info(self, task_id: int) -> dict:
        """Current blocking state of a task, computed from the store."""
        self._require(task_id)

        blocked_by = []
        for edge in self.store.find_edges_by_source(task_id):
            blocker = self.store.find_task(edge.blocking_task_id)
            if blocker is None or blocker.status == TERMINAL_COMPLETE_STATUS:
                continue
            blocked_by.append(_task_brief(blocker, edge))

        blocking = []
        for edge in self.store.find_edges_by_target(task_id):
            dependent = self.store.find_task(edge.dependent_task_id)
            if dependent is not None:
                blocking.append(_task_brief(dependent, edge))

        is_blocked = bool(blocked_by)
        reason = None
        if is_blocked:
            reason = "Waiting on: " + ", ".join(f"#{b['task_id']} {b['title']}" for b in blocked_by)
        return {
            "task_id": task_id,
            "is_blocked": is_blocked,
            "blocked_by": blocked_by,
            "blocking": blocking,
            "can_start": not is_blocked,
            "blocked_reason": reason,
        }

    def is_blocked(self, task_id: int) -> bool:
        return self.blocking_info(task_id)["is_blocked"]

    def dependencies_of(self, task_id: int) -> dict:
        """Every edge touching the task, in both directions, with all types."""
        self._require(task_id)
        depends_on = []
        for edge in self.store.find_edges_by_source(task_id):
            other = self.store.find_task(edge.blocking_task_id)
            depends_on.append({**edge.to_dict(), "task": _task_brief(other) if other else None})
        dependents = []
        for edge in self.store.find_edges_by_target(task_id):
            other = self.store.find_task(edge.dependent_task_id)
            dependents.append({**edge.to_dict(), "task": _task_brief(other) if other else None})
        return {"task_id": task_id, "depends_on": depends_on, "dependents": dependents}

    def subtask_summary(self, parent_task_id: int) -> dict:
        self._require(parent_task_id)
        subtasks = self.store.find_subtasks(parent_task_id)
        by_status = {}
        for sub in subtasks:
            by_status[sub.status] = by_status.get(sub.status, 0) + 1
        total = len(subtasks)
        completed = by_status.get(TERMINAL_COMPLETE_STATUS, 0)
        return {
            "task_id": parent_task_id,
            "total": total,
            "completed": completed,
            "by_status": by_status,
            "completion_pct": round(completed / total * 100, 1) if total else 0.0,
        }
