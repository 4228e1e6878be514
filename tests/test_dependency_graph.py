"""
tests/test_dependency_graph.py — Dependency graph invariants.

Covers:
    1.  Self-dependency, missing task, duplicate edge, unknown type
    2.  Direct and transitive cycle rejection with the offending path
    3.  Diamond pattern accepted (valid DAG)
    4.  relates_to edges close cycles and block like blocks edges
    5.  Randomised insertion sequences keep the graph acyclic
    6.  Blocking info always reflects the current store (no staleness)
    7.  Edge removal is idempotent
    8.  HTTP round-trip: A depends on B, A cannot start until B completes

Unit tests run against an in-memory fake store; the HTTP tests use the
Flask test client.
"""

import random
from types import SimpleNamespace

import pytest

from taskflow.core.exceptions import (
    CycleDetectedError,
    DuplicateEdgeError,
    NotFoundError,
    SelfDependencyError,
    ValidationError,
)
from taskflow.models.audit import ActivityLog
from taskflow.services.dependency_graph import DependencyGraphManager


# ═════════════════════════════════════════════════════════════════════════════
# Fake store
# ═════════════════════════════════════════════════════════════════════════════


class FakeEdge(SimpleNamespace):
    def to_dict(self):
        return {
            "id": self.id,
            "dependent_task_id": self.dependent_task_id,
            "blocking_task_id": self.blocking_task_id,
            "type": self.type,
        }


class FakeStore:
    """Implements the slice of WorkflowStore the graph manager uses."""

    def __init__(self, n_tasks=0):
        self.tasks = {}
        self.edges = {}
        self._next_edge_id = 1
        self.source_queries = 0
        for i in range(1, n_tasks + 1):
            self.add_task(i)

    def add_task(self, task_id, status="draft", parent_task_id=None):
        self.tasks[task_id] = SimpleNamespace(
            id=task_id, title=f"Task {task_id}", status=status,
            assignee_id=None, parent_task_id=parent_task_id,
        )

    def find_task(self, task_id, for_update=False):
        return self.tasks.get(task_id)

    def find_subtasks(self, parent_task_id):
        return [t for t in self.tasks.values() if t.parent_task_id == parent_task_id]

    def find_edge(self, dependent_task_id, blocking_task_id):
        for edge in self.edges.values():
            if edge.dependent_task_id == dependent_task_id and edge.blocking_task_id == blocking_task_id:
                return edge
        return None

    def find_edges_by_source(self, task_id):
        self.source_queries += 1
        return [e for e in self.edges.values() if e.dependent_task_id == task_id]

    def find_edges_by_target(self, task_id):
        return [e for e in self.edges.values() if e.blocking_task_id == task_id]

    def get_edge(self, edge_id):
        return self.edges.get(edge_id)

    def create_edge(self, **fields):
        edge = FakeEdge(id=self._next_edge_id, **fields)
        self.edges[edge.id] = edge
        self._next_edge_id += 1
        return edge

    def delete_edge(self, edge):
        del self.edges[edge.id]


def _reachable(edges, start, goal):
    """Brute-force: is ``goal`` reachable from ``start`` over (dependent → blocking)?"""
    seen, frontier = {start}, [start]
    while frontier:
        node = frontier.pop()
        if node == goal:
            return True
        for d, b in edges:
            if d == node and b not in seen:
                seen.add(b)
                frontier.append(b)
    return False


def _topological_order(nodes, edges):
    """Kahn's algorithm; returns None if the graph has a cycle."""
    indegree = {n: 0 for n in nodes}
    for _d, b in edges:
        indegree[b] += 1
    ready = [n for n, deg in indegree.items() if deg == 0]
    order = []
    while ready:
        node = ready.pop()
        order.append(node)
        for d, b in edges:
            if d == node:
                indegree[b] -= 1
                if indegree[b] == 0:
                    ready.append(b)
    return order if len(order) == len(nodes) else None


# ═════════════════════════════════════════════════════════════════════════════
# Unit tests
# ═════════════════════════════════════════════════════════════════════════════


class TestAddEdge:
    def test_self_dependency_rejected(self):
        graph = DependencyGraphManager(FakeStore(1))
        with pytest.raises(SelfDependencyError):
            graph.add_edge(1, 1)

    def test_missing_task(self):
        graph = DependencyGraphManager(FakeStore(1))
        with pytest.raises(NotFoundError):
            graph.add_edge(1, 99)

    def test_unknown_type(self):
        graph = DependencyGraphManager(FakeStore(2))
        with pytest.raises(ValidationError):
            graph.add_edge(1, 2, "follows")

    def test_duplicate_edge(self):
        store = FakeStore(2)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2)
        with pytest.raises(DuplicateEdgeError):
            graph.add_edge(1, 2)
        assert len(store.edges) == 1

    def test_direct_reverse_edge_is_cycle(self):
        store = FakeStore(2)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2)
        with pytest.raises(CycleDetectedError) as exc:
            graph.add_edge(2, 1)
        assert exc.value.details["path"] == [2, 1, 2]
        assert len(store.edges) == 1

    def test_transitive_cycle_reports_path(self):
        store = FakeStore(3)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2)
        graph.add_edge(2, 3)
        with pytest.raises(CycleDetectedError) as exc:
            graph.add_edge(3, 1)
        assert exc.value.details["path"] == [3, 1, 2, 3]

    def test_long_chain_no_false_positive(self):
        store = FakeStore(30)
        graph = DependencyGraphManager(store)
        for i in range(1, 30):
            graph.add_edge(i, i + 1)
        # Shortcut edge along the chain direction is fine.
        graph.add_edge(1, 30)
        with pytest.raises(CycleDetectedError):
            graph.add_edge(30, 15)

    def test_diamond_is_not_a_cycle(self):
        store = FakeStore(4)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2)
        graph.add_edge(1, 3)
        graph.add_edge(2, 4)
        graph.add_edge(3, 4)
        assert len(store.edges) == 4

    def test_relates_to_participates_in_acyclicity(self):
        store = FakeStore(2)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2, "relates_to")
        with pytest.raises(CycleDetectedError):
            graph.add_edge(2, 1, "blocks")

    def test_existing_cycle_below_blocking_is_reported(self):
        store = FakeStore(3)
        # Corrupt graph written behind the manager's back.
        store.create_edge(dependent_task_id=1, blocking_task_id=2, type="blocks")
        store.create_edge(dependent_task_id=2, blocking_task_id=1, type="blocks")
        graph = DependencyGraphManager(store)
        with pytest.raises(CycleDetectedError) as exc:
            graph.add_edge(3, 1)
        assert exc.value.details["path"] == [1, 2, 1]

    def test_cycle_check_reads_store_every_time(self):
        store = FakeStore(3)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2)
        before = store.source_queries
        graph.add_edge(2, 3)
        assert store.source_queries > before


class TestRandomisedAcyclicity:
    @pytest.mark.parametrize("seed", [1, 7, 42, 2024])
    def test_accepted_edges_always_admit_topological_order(self, seed):
        rng = random.Random(seed)
        n = 12
        store = FakeStore(n)
        graph = DependencyGraphManager(store)
        accepted = []

        for _ in range(150):
            d, b = rng.randint(1, n), rng.randint(1, n)
            would_cycle = d == b or _reachable(accepted, b, d)
            duplicate = (d, b) in accepted
            try:
                graph.add_edge(d, b, rng.choice(["blocks", "relates_to"]))
            except (CycleDetectedError, SelfDependencyError):
                assert would_cycle
                continue
            except DuplicateEdgeError:
                assert duplicate
                continue
            assert not would_cycle and not duplicate
            accepted.append((d, b))

        assert accepted
        assert _topological_order(list(range(1, n + 1)), accepted) is not None


class TestCyclePath:
    def test_cycle_check_does_not_write(self):
        store = FakeStore(3)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2)
        graph.add_edge(2, 3)
        assert graph.would_create_cycle(3, 1)
        assert graph.would_create_cycle(2, 2)
        assert not graph.would_create_cycle(1, 3)
        assert len(store.edges) == 2

    def test_existing_cycle_below_blocking_is_reported(self):
        store = FakeStore(3)
        # Corrupt data written around the manager.
        store.create_edge(dependent_task_id=2, blocking_task_id=3, type="blocks")
        store.create_edge(dependent_task_id=3, blocking_task_id=2, type="blocks")
        graph = DependencyGraphManager(store)
        assert graph.find_cycle_path(1, 2) == [2, 3, 2]
        assert graph.find_cycle_path(1, 3) == [3, 2, 3]


class TestBlockingInfo:
    def test_blocked_until_blocker_completes(self):
        store = FakeStore(2)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2)

        info = graph.blocking_info(1)
        assert info["is_blocked"] is True
        assert info["can_start"] is False
        assert [b["task_id"] for b in info["blocked_by"]] == [2]
        assert "Task 2" in info["blocked_reason"]

        store.tasks[2].status = "completed"
        info = graph.blocking_info(1)
        assert info["is_blocked"] is False
        assert info["blocked_by"] == []
        assert info["blocked_reason"] is None

    def test_cancelled_blocker_still_blocks(self):
        store = FakeStore(2)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2)
        store.tasks[2].status = "cancelled"
        assert graph.is_blocked(1) is True

    def test_relates_to_blocks_like_blocks(self):
        store = FakeStore(2)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 2, "relates_to")
        info = graph.blocking_info(1)
        assert info["is_blocked"] is True
        assert info["can_start"] is False
        assert info["blocked_by"][0]["type"] == "relates_to"
        assert [b["task_id"] for b in graph.blocking_info(2)["blocking"]] == [1]

        store.tasks[2].status = "completed"
        assert graph.is_blocked(1) is False

    def test_blocking_lists_dependents(self):
        store = FakeStore(3)
        graph = DependencyGraphManager(store)
        graph.add_edge(1, 3)
        graph.add_edge(2, 3)
        info = graph.blocking_info(3)
        assert sorted(b["task_id"] for b in info["blocking"]) == [1, 2]

    def test_unknown_task(self):
        with pytest.raises(NotFoundError):
            DependencyGraphManager(FakeStore()).blocking_info(5)


class TestRemovalAndQueries:
    def test_remove_is_idempotent(self):
        store = FakeStore(2)
        graph = DependencyGraphManager(store)
        edge = graph.add_edge(1, 2)
        assert graph.remove_edge(edge.id) is True
        assert graph.remove_edge(edge.id) is False
        assert graph.is_blocked(1) is False

    def test_dependencies_of_lists_both_directions(self):
        store = FakeStore(3)
        graph = DependencyGraphManager(store)
        graph.add_edge(2, 1)
        graph.add_edge(3, 2, "relates_to")
        deps = graph.dependencies_of(2)
        assert [d["blocking_task_id"] for d in deps["depends_on"]] == [1]
        assert [d["dependent_task_id"] for d in deps["dependents"]] == [3]
        assert deps["dependents"][0]["type"] == "relates_to"

    def test_subtask_summary(self):
        store = FakeStore(1)
        store.add_task(2, status="completed", parent_task_id=1)
        store.add_task(3, status="in_progress", parent_task_id=1)
        store.add_task(4, status="completed", parent_task_id=1)
        store.add_task(5, status="draft", parent_task_id=1)
        summary = DependencyGraphManager(store).subtask_summary(1)
        assert summary["total"] == 4
        assert summary["completed"] == 2
        assert summary["completion_pct"] == 50.0
        assert summary["by_status"]["in_progress"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# HTTP round-trip
# ═════════════════════════════════════════════════════════════════════════════


def _task(client, headers, **kw):
    payload = {"title": "Task"}
    payload.update(kw)
    rv = client.post("/api/v1/tasks", json=payload, headers=headers)
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()


def _move(client, headers, task_id, status):
    return client.post(f"/api/v1/tasks/{task_id}/status", json={"status": status}, headers=headers)


class TestDependencyApi:
    def test_blocked_task_cannot_start_until_blocker_completes(self, client, users, as_actor):
        boss = as_actor(users["ceo"])
        a = _task(client, boss, title="A")
        b = _task(client, boss, title="B")

        rv = client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                         json={"blocking_task_id": b["id"]}, headers=boss)
        assert rv.status_code == 201

        assert _move(client, boss, a["id"], "assigned").status_code == 200
        rv = _move(client, boss, a["id"], "in_progress")
        assert rv.status_code == 409
        body = rv.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"]["blocked_by"] == [b["id"]]

        info = client.get(f"/api/v1/tasks/{a['id']}/blocking").get_json()
        assert info["is_blocked"] is True

        for status in ("assigned", "in_progress", "completed"):
            assert _move(client, boss, b["id"], status).status_code == 200

        info = client.get(f"/api/v1/tasks/{a['id']}/blocking").get_json()
        assert info["is_blocked"] is False
        assert _move(client, boss, a["id"], "in_progress").status_code == 200

    def test_relates_to_edge_gates_start(self, client, users, as_actor):
        boss = as_actor(users["ceo"])
        a = _task(client, boss, title="A")
        b = _task(client, boss, title="B")
        rv = client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                         json={"blocking_task_id": b["id"], "type": "relates_to"}, headers=boss)
        assert rv.status_code == 201

        info = client.get(f"/api/v1/tasks/{a['id']}/blocking").get_json()
        assert info["is_blocked"] is True
        assert info["can_start"] is False

        _move(client, boss, a["id"], "assigned")
        rv = _move(client, boss, a["id"], "in_progress")
        assert rv.status_code == 409
        assert rv.get_json()["details"]["blocked_by"] == [b["id"]]

    def test_cycle_returns_409_with_path(self, client, users, as_actor):
        boss = as_actor(users["ceo"])
        a = _task(client, boss, title="A")
        b = _task(client, boss, title="B")
        client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                    json={"blocking_task_id": b["id"]}, headers=boss)

        rv = client.post(f"/api/v1/tasks/{b['id']}/dependencies",
                         json={"blocking_task_id": a["id"]}, headers=boss)
        assert rv.status_code == 409
        body = rv.get_json()
        assert body["code"] == "ERR_CYCLE_DETECTED"
        assert body["details"]["path"] == [b["id"], a["id"], b["id"]]

    def test_self_and_duplicate_codes(self, client, users, as_actor):
        boss = as_actor(users["ceo"])
        a = _task(client, boss, title="A")
        b = _task(client, boss, title="B")

        rv = client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                         json={"blocking_task_id": a["id"]}, headers=boss)
        assert rv.get_json()["code"] == "ERR_SELF_DEPENDENCY"

        client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                    json={"blocking_task_id": b["id"]}, headers=boss)
        rv = client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                         json={"blocking_task_id": b["id"]}, headers=boss)
        assert rv.status_code == 409
        assert rv.get_json()["code"] == "ERR_DUPLICATE_EDGE"

    def test_unrelated_staff_cannot_add_dependency(self, client, users, make_user, as_actor):
        boss = as_actor(users["ceo"])
        a = _task(client, boss, title="A")
        b = _task(client, boss, title="B")
        outsider = make_user("staff")
        rv = client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                         json={"blocking_task_id": b["id"]}, headers=as_actor(outsider))
        assert rv.status_code == 403

    def test_delete_dependency_twice(self, client, users, as_actor):
        boss = as_actor(users["ceo"])
        a = _task(client, boss, title="A")
        b = _task(client, boss, title="B")
        edge = client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                           json={"blocking_task_id": b["id"]}, headers=boss).get_json()

        rv = client.delete(f"/api/v1/dependencies/{edge['id']}", headers=boss)
        assert rv.get_json() == {"removed": True}
        rv = client.delete(f"/api/v1/dependencies/{edge['id']}", headers=boss)
        assert rv.status_code == 200
        assert rv.get_json() == {"removed": False}

        removals = ActivityLog.query.filter_by(action="dependency.remove", entity_id=edge["id"]).all()
        assert len(removals) == 1
        assert removals[0].details["blocking_task_id"] == b["id"]

    def test_dependency_added_notifies_assignee(self, client, users, as_actor):
        boss = as_actor(users["ceo"])
        staff = users["staff"]
        a = _task(client, boss, title="A", assignee_id=staff.id)
        b = _task(client, boss, title="B")
        client.post(f"/api/v1/tasks/{a['id']}/dependencies",
                    json={"blocking_task_id": b["id"]}, headers=boss)

        items = client.get("/api/v1/notifications", headers=as_actor(staff)).get_json()["items"]
        assert "dependency_added" in {n["event_type"] for n in items}
