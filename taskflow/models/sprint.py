"""
Taskflow — Workflow Consistency Engine
Sprint domain model.

Lifecycle:
    planning → active | cancelled
    active   → completed | cancelled
    completed  (terminal)
    cancelled → planning   (reopen; policy flag SPRINT_ALLOW_REOPEN)
"""

from datetime import datetime, timezone

from taskflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

# Statuses that occupy a slot in the project's calendar.
OPEN_SPRINT_STATUSES = ("planning", "active")

CLOSED_SPRINT_STATUSES = ("completed", "cancelled")

SPRINT_TRANSITIONS = {
    "planning":  ["active", "cancelled"],
    "active":    ["completed", "cancelled"],
    "completed": [],
    "cancelled": ["planning"],
}


class Sprint(db.Model):
    """
    Time-boxed iteration inside a project.

    Tasks point at the sprint (``Task.sprint_id``), never the other way
    round: completing or cancelling a sprint detaches or moves its tasks.
    """

    __tablename__ = "sprints"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(100), nullable=False, comment="e.g. Sprint 1, Iteration 2.3")
    goal = db.Column(db.Text, default="", comment="Sprint goal / objective")
    status = db.Column(
        db.String(30), nullable=False, default="planning",
        comment="planning | active | completed | cancelled",
    )
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    capacity_points = db.Column(
        db.Integer, nullable=True,
        comment="Planned capacity in story points",
    )
    velocity = db.Column(
        db.Integer, nullable=True,
        comment="Completed story points, set at sprint close",
    )
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships
    tasks = db.relationship("Task", backref="sprint", lazy="dynamic")

    # ── Constraints ──────────────────────────────────────────────────────
    # At most one ACTIVE sprint per project, enforced by the database as
    # the backstop for concurrent start requests.
    __table_args__ = (
        db.Index(
            "uq_sprints_one_active_per_project",
            "project_id",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
        db.CheckConstraint("start_date < end_date", name="ck_sprint_date_order"),
    )

    def to_dict(self, include_tasks=False):
        result = {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "goal": self.goal,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "capacity_points": self.capacity_points,
            "velocity": self.velocity,
            "created_by_id": self.created_by_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_tasks:
            result["tasks"] = [t.to_dict() for t in self.tasks]
        return result

    def __repr__(self):
        return f"<Sprint {self.id}: {self.name} [{self.status}]>"
