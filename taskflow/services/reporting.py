"""
Sprint and task reporting. Read-only: nothing here writes to the store.

Burndown and cycle-time figures are replayed from ``task.status_change``
activity rows rather than from current task state, so they stay correct
for tasks that moved back and forth.
"""

from datetime import timedelta

from taskflow.core.exceptions import NotFoundError
from taskflow.models import db
from taskflow.models.audit import ActivityLog
from taskflow.models.sprint import Sprint
from taskflow.models.task import TERMINAL_COMPLETE_STATUS, Task


def _sprint_or_404(sprint_id):
    sprint = db.session.get(Sprint, sprint_id)
    if sprint is None:
        raise NotFoundError("Sprint", sprint_id)
    return sprint


def _status_history(task_ids):
    """task_id -> [(timestamp, new_status), ...] oldest first."""
    history = {tid: [] for tid in task_ids}
    if not task_ids:
        return history
    rows = (
        ActivityLog.query
        .filter(
            ActivityLog.entity_type == "task",
            ActivityLog.action == "task.status_change",
            ActivityLog.entity_id.in_(list(task_ids)),
        )
        .order_by(ActivityLog.timestamp, ActivityLog.id)
        .all()
    )
    for row in rows:
        history[row.entity_id].append((row.timestamp, row.new_value))
    return history


def _status_on(history, day, initial="draft"):
    status = initial
    for ts, new_status in history:
        if ts.date() > day:
            break
        status = new_status
    return status


def sprint_metrics(sprint_id: int) -> dict:
    """Task counts, story points and completion for the sprint's current members."""
    sprint = _sprint_or_404(sprint_id)
    tasks = Task.query.filter_by(sprint_id=sprint.id).all()

    by_status = {}
    for t in tasks:
        by_status[t.status] = by_status.get(t.status, 0) + 1

    total_points = sum(t.story_points or 0 for t in tasks)
    done_points = sum(t.story_points or 0 for t in tasks if t.status == TERMINAL_COMPLETE_STATUS)
    done_count = by_status.get(TERMINAL_COMPLETE_STATUS, 0)

    return {
        "sprint_id": sprint.id,
        "status": sprint.status,
        "task_count": len(tasks),
        "completed_count": done_count,
        "by_status": by_status,
        "total_points": total_points,
        "completed_points": done_points,
        "remaining_points": total_points - done_points,
        "capacity_points": sprint.capacity_points,
        "completion_pct": round(done_count / len(tasks) * 100, 1) if tasks else 0.0,
        "velocity": sprint.velocity if sprint.velocity is not None else done_points,
    }


def sprint_burndown(sprint_id: int) -> dict:
    """
    One point per calendar day from start_date to end_date inclusive.

    ``remaining`` is the story points of member tasks not yet completed by
    the end of that day; ``ideal`` falls linearly from the total to zero.
    """
    sprint = _sprint_or_404(sprint_id)
    tasks = Task.query.filter_by(sprint_id=sprint.id).all()
    history = _status_history([t.id for t in tasks])
    total = sum(t.story_points or 0 for t in tasks)

    days = (sprint.end_date - sprint.start_date).days
    points = []
    for i in range(days + 1):
        day = sprint.start_date + timedelta(days=i)
        remaining = sum(
            t.story_points or 0
            for t in tasks
            if _status_on(history[t.id], day) != TERMINAL_COMPLETE_STATUS
        )
        ideal = round(total * (1 - i / days), 2) if days else 0
        points.append({"date": day.isoformat(), "remaining": remaining, "ideal": ideal})

    return {"sprint_id": sprint.id, "total_points": total, "points": points}


def task_cycle_time(task_id: int) -> dict:
    """Hours from the first move to in_progress to the first completion."""
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)

    started = completed = None
    for ts, status in _status_history([task.id])[task.id]:
        if status == "in_progress" and started is None:
            started = ts
        if status == TERMINAL_COMPLETE_STATUS and completed is None:
            completed = ts

    hours = None
    if started is not None and completed is not None:
        hours = round((completed - started).total_seconds() / 3600, 2)
    return {
        "task_id": task.id,
        "started_at": started.isoformat() if started else None,
        "completed_at": completed.isoformat() if completed else None,
        "cycle_time_hours": hours,
    }


def project_velocity(project_id: int, limit: int = 5) -> dict:
    """Velocity of the last ``limit`` completed sprints and their average."""
    sprints = (
        Sprint.query
        .filter_by(project_id=project_id, status="completed")
        .order_by(Sprint.completed_at.desc(), Sprint.id.desc())
        .limit(limit)
        .all()
    )
    values = [s.velocity or 0 for s in sprints]
    return {
        "project_id": project_id,
        "sprints": [{"sprint_id": s.id, "name": s.name, "velocity": s.velocity or 0} for s in sprints],
        "average": round(sum(values) / len(values), 1) if values else 0.0,
    }
