"""
Taskflow — Workflow Consistency Engine
Activity log model.

Models:
    - ActivityLog: immutable, append-only trail of every accepted mutation.

Reporting replays these rows (status_changed with old/new status and a
timestamp) to rebuild burndown and cycle-time figures, so each row must be
written inside the same transaction as the mutation it describes.
"""

import json
from datetime import UTC, datetime

from taskflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ACTIVITY_ENTITY_TYPES = {"task", "sprint", "dependency", "user"}

ACTIVITY_ACTIONS = {
    # Task lifecycle
    "task.create",
    "task.status_change",
    "task.assign",
    "task.approve",
    "task.reject",
    "task.sprint_change",
    # Dependency graph
    "dependency.add",
    "dependency.remove",
    # Sprint lifecycle
    "sprint.create",
    "sprint.update",
    "sprint.start",
    "sprint.complete",
    "sprint.cancel",
    "sprint.reopen",
    # Role hierarchy
    "user.role_change",
}


class ActivityLog(db.Model):
    """
    One row per accepted mutation.

    ``previous_value`` / ``new_value`` carry the scalar that changed (a
    status, a sprint id, a role); ``details_json`` carries anything else.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        db.Index("idx_activity_entity", "entity_type", "entity_id"),
        db.Index("idx_activity_project", "project_id"),
        db.Index("idx_activity_action", "action"),
        db.Index("idx_activity_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="task | sprint | dependency | user",
    )
    entity_id = db.Column(db.Integer, nullable=False)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="task.status_change | sprint.start | dependency.add | …",
    )
    actor_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    previous_value = db.Column(db.String(100), nullable=True)
    new_value = db.Column(db.String(100), nullable=True)
    details_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def details(self) -> dict:
        """Deserialise *details_json* to a Python dict."""
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "details": self.details,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_activity(
    *,
    entity_type: str,
    entity_id: int,
    action: str,
    actor_id: int | None = None,
    project_id: int | None = None,
    previous_value=None,
    new_value=None,
    details: dict | None = None,
    timestamp: datetime | None = None,
) -> ActivityLog:
    """
    Append a single activity row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) ActivityLog instance.

    Raises:
        ValueError: unknown ``entity_type`` or ``action``.
    """
    if entity_type not in ACTIVITY_ENTITY_TYPES:
        raise ValueError(f"Unknown activity entity type: {entity_type}")
    if action not in ACTIVITY_ACTIONS:
        raise ValueError(f"Unknown activity action: {action}")

    log = ActivityLog(
        project_id=project_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        previous_value=None if previous_value is None else str(previous_value),
        new_value=None if new_value is None else str(new_value),
        details_json=json.dumps(details or {}, default=str),
    )
    if timestamp is not None:
        log.timestamp = timestamp
    db.session.add(log)
    db.session.flush()
    return log
