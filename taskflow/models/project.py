"""
Project model.

Parent of sprints and (optionally) of tasks. The engine locks the project
row to serialise project-scoped invariants such as the single active sprint.
"""

from datetime import datetime, timezone

from taskflow.models import db


class Project(db.Model):
    """Container for sprints and project tasks."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(20), unique=True, nullable=False, comment="Short key, e.g. OPS")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    sprints = db.relationship("Sprint", backref="project", lazy="dynamic", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.key}>"
