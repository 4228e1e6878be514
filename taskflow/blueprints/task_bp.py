"""
Task Blueprint — task lifecycle and dependency graph.

Endpoints:
  Task:          GET/POST /tasks, GET /tasks/<id>
                 POST /tasks/<id>/status
                 POST /tasks/<id>/assign
                 POST /tasks/<id>/approve
                 POST /tasks/<id>/reject
  Dependencies:  GET/POST /tasks/<id>/dependencies, DELETE /dependencies/<id>
                 GET  /tasks/<id>/blocking
  Insight:       GET  /tasks/<id>/subtasks/summary
                 GET  /tasks/<id>/activity
                 GET  /tasks/<id>/cycle-time

Every mutation goes through TaskWorkflowCoordinator; domain errors are
rendered by the app-level WorkflowError handler.
"""

from flask import Blueprint, jsonify, request

from taskflow.blueprints import int_field, paginate_query
from taskflow.core.exceptions import NotFoundError, ValidationError
from taskflow.middleware.actor_context import current_actor
from taskflow.models import db
from taskflow.models.audit import ActivityLog
from taskflow.models.task import Task
from taskflow.services.reporting import task_cycle_time
from taskflow.services.task_workflow import TaskWorkflowCoordinator

task_bp = Blueprint("task", __name__, url_prefix="/api/v1")


def _json_body():
    return request.get_json(silent=True) or {}


def _get_task_or_404(task_id):
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    return task


# ═════════════════════════════════════════════════════════════════════════════
# Task CRUD + lifecycle
# ═════════════════════════════════════════════════════════════════════════════

@task_bp.route("/tasks", methods=["GET"])
def list_tasks():
    """List tasks, filtered by project_id, sprint_id, status or assignee_id."""
    q = Task.query
    for name in ("project_id", "sprint_id", "assignee_id"):
        value = request.args.get(name, type=int)
        if value is not None:
            q = q.filter(getattr(Task, name) == value)
    if request.args.get("backlog") == "true":
        q = q.filter(Task.sprint_id.is_(None))
    status = request.args.get("status")
    if status:
        q = q.filter_by(status=status)
    items, total = paginate_query(q.order_by(Task.id))
    return jsonify({"items": [t.to_dict() for t in items], "total": total})


@task_bp.route("/tasks", methods=["POST"])
def create_task():
    data = _json_body()
    payload = {
        "title": data.get("title"),
        "description": data.get("description"),
        "priority": data.get("priority"),
        "story_points": int_field(data, "story_points"),
        "project_id": int_field(data, "project_id"),
        "sprint_id": int_field(data, "sprint_id"),
        "parent_task_id": int_field(data, "parent_task_id"),
        "assignee_id": int_field(data, "assignee_id"),
    }
    task = TaskWorkflowCoordinator().create_task(current_actor(), payload)
    return jsonify(task.to_dict()), 201


@task_bp.route("/tasks/<int:task_id>", methods=["GET"])
def get_task(task_id):
    return jsonify(_get_task_or_404(task_id).to_dict())


@task_bp.route("/tasks/<int:task_id>/status", methods=["POST"])
def change_status(task_id):
    """Move a task along the status transition table.

    ``{"status": "rejected"}`` goes through the rejection flow and needs
    ``reason`` as well.
    """
    data = _json_body()
    target = (data.get("status") or "").strip()
    if not target:
        raise ValidationError("status is required", {"status": "required"})
    task = TaskWorkflowCoordinator().change_status(current_actor(), task_id, target, data.get("reason"))
    return jsonify(task.to_dict())


@task_bp.route("/tasks/<int:task_id>/assign", methods=["POST"])
def assign_task(task_id):
    assignee_id = int_field(_json_body(), "assignee_id", required=True)
    task = TaskWorkflowCoordinator().assign_task(current_actor(), task_id, assignee_id)
    return jsonify(task.to_dict())


@task_bp.route("/tasks/<int:task_id>/approve", methods=["POST"])
def approve_task(task_id):
    task = TaskWorkflowCoordinator().approve_task(current_actor(), task_id)
    return jsonify(task.to_dict())


@task_bp.route("/tasks/<int:task_id>/reject", methods=["POST"])
def reject_task(task_id):
    task = TaskWorkflowCoordinator().reject_task(current_actor(), task_id, _json_body().get("reason"))
    return jsonify(task.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# Dependencies
# ═════════════════════════════════════════════════════════════════════════════

@task_bp.route("/tasks/<int:task_id>/dependencies", methods=["GET"])
def list_dependencies(task_id):
    return jsonify(TaskWorkflowCoordinator().dependencies_of(task_id))


@task_bp.route("/tasks/<int:task_id>/dependencies", methods=["POST"])
def add_dependency(task_id):
    """Make this task depend on ``blocking_task_id``."""
    data = _json_body()
    blocking_id = int_field(data, "blocking_task_id", required=True)
    edge = TaskWorkflowCoordinator().add_dependency(
        current_actor(), task_id, blocking_id, data.get("type") or "blocks",
    )
    return jsonify(edge.to_dict()), 201


@task_bp.route("/dependencies/<int:edge_id>", methods=["DELETE"])
def remove_dependency(edge_id):
    removed = TaskWorkflowCoordinator().remove_dependency(current_actor(), edge_id)
    return jsonify({"removed": removed})


@task_bp.route("/tasks/<int:task_id>/blocking", methods=["GET"])
def blocking_info(task_id):
    return jsonify(TaskWorkflowCoordinator().blocking_info(task_id))


# ═════════════════════════════════════════════════════════════════════════════
# Insight
# ═════════════════════════════════════════════════════════════════════════════

@task_bp.route("/tasks/<int:task_id>/subtasks/summary", methods=["GET"])
def subtask_summary(task_id):
    return jsonify(TaskWorkflowCoordinator().subtask_summary(task_id))


@task_bp.route("/tasks/<int:task_id>/activity", methods=["GET"])
def task_activity(task_id):
    """Activity trail of one task, oldest first."""
    _get_task_or_404(task_id)
    q = ActivityLog.query.filter_by(entity_type="task", entity_id=task_id).order_by(
        ActivityLog.timestamp, ActivityLog.id,
    )
    items, total = paginate_query(q)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


@task_bp.route("/tasks/<int:task_id>/cycle-time", methods=["GET"])
def cycle_time(task_id):
    return jsonify(task_cycle_time(task_id))
