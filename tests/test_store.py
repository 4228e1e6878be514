"""
tests/test_store.py — run_in_transaction failure mapping and store backstops.

Covers:
    1.  Transient OperationalError retried with the configured backoff
    2.  Retries exhausted: serialization failure → Conflict, other → Unavailable
    3.  IntegrityError → Conflict (partial unique index, duplicate edge)
    4.  Domain errors roll back and propagate untouched
    5.  Activity rows only accept known entity types and actions
"""

from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from taskflow.core.exceptions import ConflictError, NotFoundError, UnavailableError
from taskflow.models import db
from taskflow.models.audit import ActivityLog, write_activity
from taskflow.models.sprint import Sprint
from taskflow.models.task import Task, TaskDependency
from taskflow.services.store import WorkflowStore, run_in_transaction


class _DriverError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


def _operational(sqlstate=None):
    return OperationalError("UPDATE tasks SET ...", {}, _DriverError("boom", sqlstate))


class _Flaky:
    """Callable failing ``failures`` times before succeeding."""

    def __init__(self, failures, sqlstate=None):
        self.failures = failures
        self.sqlstate = sqlstate
        self.calls = 0

    def __call__(self, store):
        self.calls += 1
        if self.calls <= self.failures:
            raise _operational(self.sqlstate)
        return "ok"


# ═════════════════════════════════════════════════════════════════════════════
# Retry
# ═════════════════════════════════════════════════════════════════════════════


class TestRetry:
    def test_transient_failure_is_retried(self):
        sleeps = []
        work = _Flaky(failures=2)
        assert run_in_transaction(work, backoff=[0.05, 0.2], sleep=sleeps.append) == "ok"
        assert work.calls == 3
        assert sleeps == [0.05, 0.2]

    def test_exhausted_retries_are_unavailable(self):
        sleeps = []
        work = _Flaky(failures=5)
        with pytest.raises(UnavailableError) as exc:
            run_in_transaction(work, backoff=[0.01, 0.02], sleep=sleeps.append)
        assert work.calls == 3
        assert exc.value.details == {"attempts": 3}
        assert exc.value.http_status == 503

    @pytest.mark.parametrize("sqlstate", ["40001", "40P01"])
    def test_exhausted_serialization_failure_is_conflict(self, sqlstate):
        work = _Flaky(failures=5, sqlstate=sqlstate)
        with pytest.raises(ConflictError):
            run_in_transaction(work, backoff=[0], sleep=lambda s: None)
        assert work.calls == 2

    def test_default_backoff_from_config(self, app):
        sleeps = []
        work = _Flaky(failures=2)
        run_in_transaction(work, sleep=sleeps.append)
        assert sleeps == app.config["STORE_RETRY_BACKOFF_SECONDS"]

    def test_domain_error_is_not_retried(self, project):
        calls = []

        def work(store):
            calls.append(1)
            store.create_task(project_id=project.id, title="half-written")
            raise NotFoundError("Task", 999)

        with pytest.raises(NotFoundError):
            run_in_transaction(work)
        assert calls == [1]
        assert Task.query.filter_by(title="half-written").count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Constraint backstops
# ═════════════════════════════════════════════════════════════════════════════


class TestBackstops:
    def test_second_active_sprint_violates_partial_index(self, project):
        def work(store):
            for name, start, end in (("A", date(2030, 1, 1), date(2030, 1, 10)),
                                     ("B", date(2030, 2, 1), date(2030, 2, 10))):
                store.create_sprint(project_id=project.id, name=name, status="active",
                                    start_date=start, end_date=end)

        with pytest.raises(ConflictError) as exc:
            run_in_transaction(work)
        assert exc.value.http_status == 409
        assert Sprint.query.count() == 0

    def test_duplicate_edge_violates_unique_constraint(self, project):
        a = Task(project_id=project.id, title="A")
        b = Task(project_id=project.id, title="B")
        db.session.add_all([a, b])
        db.session.commit()

        def work(store):
            store.create_edge(dependent_task_id=a.id, blocking_task_id=b.id, type="blocks")
            store.create_edge(dependent_task_id=a.id, blocking_task_id=b.id, type="blocks")

        with pytest.raises(ConflictError):
            run_in_transaction(work)
        assert TaskDependency.query.count() == 0

    def test_successful_work_is_committed(self, project):
        def work(store):
            return store.create_task(project_id=project.id, title="kept").id

        task_id = run_in_transaction(work)
        db.session.expire_all()
        assert WorkflowStore().find_task(task_id).title == "kept"


class TestStoreQueries:
    def test_overlap_is_inclusive_and_ignores_closed(self, project):
        db.session.add_all([
            Sprint(project_id=project.id, name="Open", status="planning",
                   start_date=date(2030, 1, 1), end_date=date(2030, 1, 14)),
            Sprint(project_id=project.id, name="Gone", status="cancelled",
                   start_date=date(2030, 2, 1), end_date=date(2030, 2, 14)),
        ])
        db.session.commit()
        store = WorkflowStore()
        assert store.find_overlapping_sprint(project.id, date(2030, 1, 14), date(2030, 1, 20)).name == "Open"
        assert store.find_overlapping_sprint(project.id, date(2030, 1, 15), date(2030, 1, 20)) is None
        assert store.find_overlapping_sprint(project.id, date(2030, 2, 1), date(2030, 2, 5)) is None

    def test_require_task_missing(self):
        with pytest.raises(NotFoundError):
            WorkflowStore().require_task(42)


class TestActivityLog:
    def test_known_action_is_written(self, project):
        log = write_activity(entity_type="task", entity_id=1, action="task.create", project_id=project.id)
        assert log.id is not None

    def test_unknown_action_rejected(self, project):
        with pytest.raises(ValueError, match="action"):
            write_activity(entity_type="task", entity_id=1, action="task.explode", project_id=project.id)
        assert db.session.query(ActivityLog).count() == 0

    def test_unknown_entity_type_rejected(self, project):
        with pytest.raises(ValueError, match="entity type"):
            write_activity(entity_type="comment", entity_id=1, action="task.create", project_id=project.id)
        assert db.session.query(ActivityLog).count() == 0
