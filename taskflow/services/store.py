"""Workflow store — SQLAlchemy adapter behind the engine's store interface.

Transaction policy: ``WorkflowStore`` methods use flush() for ID generation,
never commit(). ``run_in_transaction`` owns the commit, so an invariant
check and the write it guards always land in the same transaction.

Failure mapping at commit time:
    IntegrityError           → ConflictError (a concurrent request won the
                               race; unique / partial-unique / check
                               constraints are the backstop)
    OperationalError         → retried with bounded backoff
        serialization failure, retries exhausted → ConflictError
        anything else, retries exhausted         → UnavailableError
    WorkflowError            → rolled back and re-raised untouched
"""
import logging
import time

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from taskflow.core.exceptions import ConflictError, NotFoundError, UnavailableError
from taskflow.models import db
from taskflow.models.auth import User
from taskflow.models.project import Project
from taskflow.models.sprint import OPEN_SPRINT_STATUSES, Sprint
from taskflow.models.task import Task, TaskDependency

logger = logging.getLogger(__name__)

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_BACKOFF_SECONDS = [0.05, 0.2]   # sleep[0] after 1st fail, sleep[1] after 2nd

# SQLSTATEs for serialization_failure / deadlock_detected
_SERIALIZATION_SQLSTATES = {"40001", "40P01"}


def _config(key, default=None):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _is_serialization_failure(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in _SERIALIZATION_SQLSTATES


def run_in_transaction(work, *, session=None, isolation_level=None, backoff=None, sleep=time.sleep):
    """Run ``work(store)`` and commit, as one atomic check-then-write.

    ``work`` is re-invoked from scratch on a transient store failure, so it
    must re-read everything it validates. Domain errors raised by ``work``
    roll the transaction back and propagate unchanged.

    Args:
        work:            Callable receiving a ``WorkflowStore``.
        session:         SQLAlchemy session (defaults to ``db.session``).
        isolation_level: e.g. "SERIALIZABLE"; defaults to the
                         WORKFLOW_ISOLATION_LEVEL config key.
        backoff:         Sleep schedule between attempts; its length is the
                         number of retries. Defaults to
                         STORE_RETRY_BACKOFF_SECONDS.
        sleep:           Injected for tests.

    Returns:
        Whatever ``work`` returns.
    """
    session = session or db.session
    if isolation_level is None:
        isolation_level = _config("WORKFLOW_ISOLATION_LEVEL")
    if backoff is None:
        backoff = _config("STORE_RETRY_BACKOFF_SECONDS", _RETRY_BACKOFF_SECONDS)
    attempts = len(backoff) + 1

    for attempt in range(attempts):
        try:
            if isolation_level and not session.in_transaction():
                session.connection(execution_options={"isolation_level": isolation_level})
            result = work(WorkflowStore(session))
            session.commit()
            return result
        except IntegrityError as exc:
            session.rollback()
            logger.warning("Integrity error on commit: %s", exc.orig)
            raise ConflictError(
                "The change conflicts with a concurrent update; re-read and retry",
                {"constraint": str(exc.orig)[:200]},
            ) from exc
        except OperationalError as exc:
            session.rollback()
            serialization = _is_serialization_failure(exc)
            logger.warning(
                "Store operational error attempt=%d/%d serialization=%s error=%s",
                attempt + 1, attempts, serialization, str(exc.orig)[:200],
            )
            if attempt < attempts - 1:
                sleep_s = backoff[attempt]
                logger.info("Retrying transaction in %ss (attempt %d)", sleep_s, attempt + 2)
                sleep(sleep_s)
                continue
            if serialization:
                raise ConflictError(
                    "The change kept conflicting with concurrent updates",
                    {"attempts": attempts},
                ) from exc
            raise UnavailableError(
                "The task store is temporarily unavailable; try again later",
                {"attempts": attempts},
            ) from exc
        except Exception:
            session.rollback()
            raise


class WorkflowStore:
    """Plain-record access used by the workflow managers.

    ``for_update=True`` reads take a row lock on dialects that support it
    (PostgreSQL, MySQL) and refresh the identity-mapped instance; SQLite
    serialises writers on its own and ignores the clause.
    """

    def __init__(self, session=None):
        self.session = session or db.session

    def _one(self, stmt, for_update):
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    # ── Users / projects ────────────────────────────────────────────────

    def find_user(self, user_id):
        return self.session.get(User, user_id)

    def find_users_by_roles(self, roles):
        stmt = select(User).where(User.role.in_(list(roles)), User.is_active.is_(True)).order_by(User.id)
        return list(self.session.execute(stmt).scalars())

    def find_project(self, project_id):
        return self.session.get(Project, project_id)

    def lock_project(self, project_id):
        """Row-lock the project to serialise project-scoped invariant checks."""
        return self._one(select(Project).where(Project.id == project_id), for_update=True)

    # ── Tasks ───────────────────────────────────────────────────────────

    def find_task(self, task_id, *, for_update=False):
        return self._one(select(Task).where(Task.id == task_id), for_update)

    def require_task(self, task_id, *, for_update=False):
        task = self.find_task(task_id, for_update=for_update)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def find_tasks(self, task_ids, *, for_update=False):
        stmt = select(Task).where(Task.id.in_(list(task_ids))).order_by(Task.id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list(self.session.execute(stmt).scalars())

    def find_subtasks(self, parent_task_id):
        stmt = select(Task).where(Task.parent_task_id == parent_task_id).order_by(Task.id)
        return list(self.session.execute(stmt).scalars())

    def create_task(self, **fields):
        task = Task(**fields)
        self.session.add(task)
        self.session.flush()
        return task

    def update_task(self, task, **fields):
        for name, value in fields.items():
            setattr(task, name, value)
        self.session.flush()
        return task

    # ── Sprints ─────────────────────────────────────────────────────────

    def find_sprint(self, sprint_id, *, for_update=False):
        return self._one(select(Sprint).where(Sprint.id == sprint_id), for_update)

    def require_sprint(self, sprint_id, *, for_update=False):
        sprint = self.find_sprint(sprint_id, for_update=for_update)
        if sprint is None:
            raise NotFoundError("Sprint", sprint_id)
        return sprint

    def find_active_sprint(self, project_id, *, exclude_id=None):
        stmt = select(Sprint).where(Sprint.project_id == project_id, Sprint.status == "active")
        if exclude_id is not None:
            stmt = stmt.where(Sprint.id != exclude_id)
        return self.session.execute(stmt.limit(1)).scalar_one_or_none()

    def find_overlapping_sprint(self, project_id, start_date, end_date, *, exclude_id=None):
        """First planning/active sprint whose closed interval meets [start, end]."""
        stmt = select(Sprint).where(
            Sprint.project_id == project_id,
            Sprint.status.in_(OPEN_SPRINT_STATUSES),
            Sprint.start_date <= end_date,
            Sprint.end_date >= start_date,
        )
        if exclude_id is not None:
            stmt = stmt.where(Sprint.id != exclude_id)
        return self.session.execute(stmt.order_by(Sprint.start_date).limit(1)).scalar_one_or_none()

    def find_sprint_tasks(self, sprint_id, *, for_update=False):
        stmt = select(Task).where(Task.sprint_id == sprint_id).order_by(Task.id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list(self.session.execute(stmt).scalars())

    def create_sprint(self, **fields):
        sprint = Sprint(**fields)
        self.session.add(sprint)
        self.session.flush()
        return sprint

    def update_sprint(self, sprint, **fields):
        for name, value in fields.items():
            setattr(sprint, name, value)
        self.session.flush()
        return sprint

    # ── Dependency edges ────────────────────────────────────────────────
    # "source" is the dependent task: following source edges walks the
    # depends-on relation towards blocking tasks.

    def find_edges_by_source(self, task_id):
        stmt = (
            select(TaskDependency)
            .where(TaskDependency.dependent_task_id == task_id)
            .order_by(TaskDependency.id)
        )
        return list(self.session.execute(stmt).scalars())

    def find_edges_by_target(self, task_id):
        stmt = (
            select(TaskDependency)
            .where(TaskDependency.blocking_task_id == task_id)
            .order_by(TaskDependency.id)
        )
        return list(self.session.execute(stmt).scalars())

    def find_edge(self, dependent_task_id, blocking_task_id):
        stmt = select(TaskDependency).where(
            TaskDependency.dependent_task_id == dependent_task_id,
            TaskDependency.blocking_task_id == blocking_task_id,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_edge(self, edge_id):
        return self.session.get(TaskDependency, edge_id)

    def create_edge(self, **fields):
        edge = TaskDependency(**fields)
        self.session.add(edge)
        self.session.flush()
        return edge

    def delete_edge(self, edge):
        self.session.delete(edge)
        self.session.flush()
