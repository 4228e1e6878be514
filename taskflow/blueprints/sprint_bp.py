"""
Sprint Blueprint — sprint lifecycle, membership and reporting.

Endpoints:
  Sprint:      GET/POST /projects/<id>/sprints
               GET/PUT  /sprints/<id>
               POST /sprints/<id>/start
               POST /sprints/<id>/complete     {"move_incomplete_to": <id>|null}
               POST /sprints/<id>/cancel
               POST /sprints/<id>/reopen
  Membership:  POST/DELETE /sprints/<id>/tasks  {"task_ids": [...]}
  Reporting:   GET /sprints/<id>/metrics
               GET /sprints/<id>/burndown
               GET /projects/<id>/velocity
"""

from flask import Blueprint, jsonify, request

from taskflow.blueprints import int_field
from taskflow.core.exceptions import NotFoundError
from taskflow.middleware.actor_context import current_actor
from taskflow.models import db
from taskflow.models.project import Project
from taskflow.models.sprint import Sprint
from taskflow.services.reporting import project_velocity, sprint_burndown, sprint_metrics
from taskflow.services.task_workflow import TaskWorkflowCoordinator
from taskflow.utils.helpers import parse_date_input, parse_id_list

sprint_bp = Blueprint("sprint", __name__, url_prefix="/api/v1")

_UPDATABLE = ("name", "goal", "start_date", "end_date", "capacity_points")


def _json_body():
    return request.get_json(silent=True) or {}


def _get_or_404(model, pk, label):
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(label, pk)
    return obj


def _change_dict(change):
    body = change.sprint.to_dict()
    body["moved_task_ids"] = change.moved_task_ids
    body["detached_task_ids"] = change.detached_task_ids
    return body


# ═════════════════════════════════════════════════════════════════════════════
# Sprint CRUD + lifecycle
# ═════════════════════════════════════════════════════════════════════════════

@sprint_bp.route("/projects/<int:project_id>/sprints", methods=["GET"])
def list_sprints(project_id):
    _get_or_404(Project, project_id, "Project")
    q = Sprint.query.filter_by(project_id=project_id)
    status = request.args.get("status")
    if status:
        q = q.filter_by(status=status)
    sprints = q.order_by(Sprint.start_date, Sprint.id).all()
    return jsonify({"items": [s.to_dict() for s in sprints], "total": len(sprints)})


@sprint_bp.route("/projects/<int:project_id>/sprints", methods=["POST"])
def create_sprint(project_id):
    data = _json_body()
    payload = {
        "name": data.get("name"),
        "goal": data.get("goal"),
        "start_date": parse_date_input(data.get("start_date"), "start_date"),
        "end_date": parse_date_input(data.get("end_date"), "end_date"),
        "capacity_points": int_field(data, "capacity_points"),
    }
    sprint = TaskWorkflowCoordinator().create_sprint(current_actor(), project_id, payload)
    return jsonify(sprint.to_dict()), 201


@sprint_bp.route("/sprints/<int:sprint_id>", methods=["GET"])
def get_sprint(sprint_id):
    sprint = _get_or_404(Sprint, sprint_id, "Sprint")
    return jsonify(sprint.to_dict(include_tasks=request.args.get("include_tasks") == "true"))


@sprint_bp.route("/sprints/<int:sprint_id>", methods=["PUT"])
def update_sprint(sprint_id):
    data = _json_body()
    changes = {}
    for f in _UPDATABLE:
        if f not in data:
            continue
        if f in ("start_date", "end_date"):
            changes[f] = parse_date_input(data[f], f)
        elif f == "capacity_points":
            changes[f] = int_field(data, f)
        else:
            changes[f] = data[f]
    sprint = TaskWorkflowCoordinator().update_sprint(current_actor(), sprint_id, changes)
    return jsonify(sprint.to_dict())


@sprint_bp.route("/sprints/<int:sprint_id>/start", methods=["POST"])
def start_sprint(sprint_id):
    sprint = TaskWorkflowCoordinator().start_sprint(current_actor(), sprint_id)
    return jsonify(sprint.to_dict())


@sprint_bp.route("/sprints/<int:sprint_id>/complete", methods=["POST"])
def complete_sprint(sprint_id):
    """Complete a sprint; unfinished tasks move to ``move_incomplete_to`` or the backlog."""
    target = int_field(_json_body(), "move_incomplete_to")
    change = TaskWorkflowCoordinator().complete_sprint(current_actor(), sprint_id, target)
    return jsonify(_change_dict(change))


@sprint_bp.route("/sprints/<int:sprint_id>/cancel", methods=["POST"])
def cancel_sprint(sprint_id):
    change = TaskWorkflowCoordinator().cancel_sprint(current_actor(), sprint_id)
    return jsonify(_change_dict(change))


@sprint_bp.route("/sprints/<int:sprint_id>/reopen", methods=["POST"])
def reopen_sprint(sprint_id):
    sprint = TaskWorkflowCoordinator().reopen_sprint(current_actor(), sprint_id)
    return jsonify(sprint.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# Membership
# ═════════════════════════════════════════════════════════════════════════════

@sprint_bp.route("/sprints/<int:sprint_id>/tasks", methods=["POST"])
def add_tasks(sprint_id):
    task_ids = parse_id_list(_json_body())
    change = TaskWorkflowCoordinator().add_tasks_to_sprint(current_actor(), sprint_id, task_ids)
    body = change.sprint.to_dict()
    body["added_task_ids"] = sorted(change.changes)
    return jsonify(body)


@sprint_bp.route("/sprints/<int:sprint_id>/tasks", methods=["DELETE"])
def remove_tasks(sprint_id):
    task_ids = parse_id_list(_json_body())
    change = TaskWorkflowCoordinator().remove_tasks_from_sprint(current_actor(), sprint_id, task_ids)
    return jsonify(_change_dict(change))


# ═════════════════════════════════════════════════════════════════════════════
# Reporting
# ═════════════════════════════════════════════════════════════════════════════

@sprint_bp.route("/sprints/<int:sprint_id>/metrics", methods=["GET"])
def metrics(sprint_id):
    return jsonify(sprint_metrics(sprint_id))


@sprint_bp.route("/sprints/<int:sprint_id>/burndown", methods=["GET"])
def burndown(sprint_id):
    return jsonify(sprint_burndown(sprint_id))


@sprint_bp.route("/projects/<int:project_id>/velocity", methods=["GET"])
def velocity(project_id):
    _get_or_404(Project, project_id, "Project")
    limit = request.args.get("limit", 5, type=int)
    return jsonify(project_velocity(project_id, limit=limit))
