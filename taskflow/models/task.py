"""
Taskflow — Workflow Consistency Engine
Task domain models.

Models:
    - Task: unit of work with a status state machine and approval flags
    - TaskDependency: directed "dependent is blocked by blocking" edge

Architecture:
    Project ──1:N──▶ Task        (nullable: personal tasks have no project)
    Sprint  ──1:N──▶ Task        (nullable: sprint_id NULL means backlog)
    Task    ──1:N──▶ Task        (parent_task_id, subtask containment)
    Task    ──N:M──▶ Task        (via TaskDependency, must stay acyclic)

Lifecycle states:
    Task: draft → assigned → in_progress → review → completed
          (paused, rejected and cancelled side branches, see
          DEFAULT_STATUS_TRANSITIONS)
"""

from datetime import datetime, timezone

from taskflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = {
    "draft", "assigned", "in_progress", "paused",
    "review", "completed", "rejected", "cancelled",
}

# The only status that unblocks dependents. cancelled / rejected do not.
TERMINAL_COMPLETE_STATUS = "completed"

TASK_PRIORITIES = {"low", "medium", "high"}

DEPENDENCY_TYPES = {"blocks", "relates_to"}

# Operators can replace this through the TASK_STATUS_TRANSITIONS config key.
DEFAULT_STATUS_TRANSITIONS = {
    "draft":       ["assigned", "rejected", "cancelled"],
    "assigned":    ["in_progress", "rejected", "cancelled"],
    "in_progress": ["assigned", "paused", "review", "completed", "cancelled"],
    "paused":      ["assigned", "in_progress", "rejected", "cancelled"],
    "review":      ["in_progress", "completed", "rejected"],
    "completed":   [],
    "rejected":    ["draft"],
    "cancelled":   [],
}


class Task(db.Model):
    """
    Work item protected by the workflow engine.

    ``sprint_id`` non-null implies ``sprint.project_id == project_id``;
    the sprint lifecycle service is the only writer of that column.
    """

    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    sprint_id = db.Column(
        db.Integer, db.ForeignKey("sprints.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    parent_task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(30), nullable=False, default="draft",
        comment="draft | assigned | in_progress | paused | review | completed | rejected | cancelled",
    )
    priority = db.Column(db.String(20), default="medium", comment="low | medium | high")
    story_points = db.Column(db.Integer, nullable=True, comment="Fibonacci: 1,2,3,5,8,13,21")

    creator_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assignee_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    # ── Approval
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    approved_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    rejection_reason = db.Column(db.Text, nullable=True, comment="Set only while status = rejected")

    # ── Audit
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Relationships
    subtasks = db.relationship(
        "Task", backref=db.backref("parent", remote_side=[id]), lazy="dynamic",
    )

    __table_args__ = (
        db.Index("ix_tasks_project_sprint", "project_id", "sprint_id"),
    )

    @property
    def is_approved(self):
        return self.approved_by_id is not None

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "sprint_id": self.sprint_id,
            "parent_task_id": self.parent_task_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "story_points": self.story_points,
            "creator_id": self.creator_id,
            "assignee_id": self.assignee_id,
            "requires_approval": self.requires_approval,
            "approved_by_id": self.approved_by_id,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<Task {self.id}: [{self.status}] {self.title[:30]}>"


class TaskDependency(db.Model):
    """
    Directed edge: ``dependent_task`` is blocked until ``blocking_task``
    reaches the terminal-complete status.

    Edges are inserted after a cycle check and deleted individually; they
    are never updated in place. The unique and check constraints are the
    store-level backstop for races that slip past the application check.
    """

    __tablename__ = "task_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    dependent_task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    blocking_task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    type = db.Column(db.String(20), nullable=False, default="blocks", comment="blocks | relates_to")
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint(
            "dependent_task_id", "blocking_task_id",
            name="uq_task_dependency_pair",
        ),
        db.CheckConstraint(
            "dependent_task_id != blocking_task_id",
            name="ck_task_dependency_no_self_loop",
        ),
    )

    dependent_task = db.relationship("Task", foreign_keys=[dependent_task_id])
    blocking_task = db.relationship("Task", foreign_keys=[blocking_task_id])

    def to_dict(self):
        return {
            "id": self.id,
            "dependent_task_id": self.dependent_task_id,
            "blocking_task_id": self.blocking_task_id,
            "type": self.type,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TaskDependency {self.dependent_task_id} → {self.blocking_task_id} ({self.type})>"
