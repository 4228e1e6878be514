"""
Taskflow — Workflow Consistency Engine
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

import json
from datetime import datetime, timezone

from taskflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_EVENT_TYPES = {
    "status_changed",
    "dependency_added",
    "task_assigned",
    "approval_required",
    "approved",
    "rejected",
    "sprint_started",
    "sprint_completed",
    "sprint_cancelled",
}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    event_type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="task | sprint")
    entity_id = db.Column(db.Integer, nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)
    payload_json = db.Column(db.Text, default="{}")

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    @property
    def payload(self) -> dict:
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "event_type": self.event_type,
            "title": self.title,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
