"""
Auth models — users and their organisation roles.

Authentication itself happens upstream; these rows exist so the engine can
decide approval requirements (who created a task for whom) and so the role
hierarchy has something to promote or demote.
"""

from datetime import datetime, timezone

from taskflow.models import db

# ── Roles ────────────────────────────────────────────────────────────────
# Highest authority first.
USER_ROLES = ("super_admin", "ceo", "hoo", "hr", "admin", "staff")

# Roles that may approve, reject and act on any task.
ELEVATED_ROLES = ("super_admin", "ceo", "hoo", "hr")

# Elevated roles plus admin: may assign tasks and manage sprints.
MANAGER_ROLES = ELEVATED_ROLES + ("admin",)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    role = db.Column(
        db.String(30), nullable=False, default="staff",
        comment="super_admin | ceo | hoo | hr | admin | staff",
    )
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
