"""
User Blueprint — role hierarchy and the caller's notifications.

Endpoints:
  GET  /users
  POST /users/<id>/role                 {"role": "admin"}
  GET  /notifications                   ?unread_only=true
  GET  /notifications/unread-count
  POST /notifications/<id>/read
  POST /notifications/read-all
"""

from flask import Blueprint, jsonify, request

from taskflow.blueprints import paginate_query
from taskflow.core.exceptions import NotFoundError, ValidationError
from taskflow.middleware.actor_context import current_actor
from taskflow.models.auth import User
from taskflow.services.notification import NotificationService
from taskflow.services.role_hierarchy import change_user_role

user_bp = Blueprint("user", __name__, url_prefix="/api/v1")


@user_bp.route("/users", methods=["GET"])
def list_users():
    q = User.query
    role = request.args.get("role")
    if role:
        q = q.filter_by(role=role)
    items, total = paginate_query(q.order_by(User.id))
    return jsonify({"items": [u.to_dict() for u in items], "total": total})


@user_bp.route("/users/<int:user_id>/role", methods=["POST"])
def change_role(user_id):
    data = request.get_json(silent=True) or {}
    role = (data.get("role") or "").strip().lower()
    if not role:
        raise ValidationError("role is required", {"role": "required"})
    user = change_user_role(current_actor(), user_id, role)
    return jsonify(user.to_dict())


# ── Notifications ────────────────────────────────────────────────────────

@user_bp.route("/notifications", methods=["GET"])
def list_notifications():
    actor = current_actor()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)
    items, total = NotificationService.list_for_recipient(
        actor.id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@user_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(current_actor().id)})


@user_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id, current_actor().id)
    if notif is None:
        raise NotFoundError("Notification", notification_id)
    return jsonify(notif.to_dict())


@user_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    return jsonify({"marked": NotificationService.mark_all_read(current_actor().id)})
