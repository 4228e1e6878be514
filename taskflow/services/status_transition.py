"""
Task status transitions and actor authority.

Two checks guard every status change:
  (a) the (current, target) edge exists in the transition table
  (b) the actor is the creator, the assignee, or holds an elevated role

(a) is checked first, so a caller who asks for an impossible edge learns
that before learning whether they would have been allowed to take it.

The table is data: operators replace it through the TASK_STATUS_TRANSITIONS
config key without touching this module.

Usage:
    from taskflow.services.status_transition import StatusTransitionValidator

    validator = StatusTransitionValidator.from_config(current_app.config)
    validator.validate(task.status, "in_progress",
                       actor_role="staff", is_creator=False, is_assignee=True)
"""

from taskflow.core.exceptions import ForbiddenError, InvalidTransitionError, ValidationError
from taskflow.models.auth import ELEVATED_ROLES
from taskflow.models.task import DEFAULT_STATUS_TRANSITIONS


class AuthorityTable:
    """Directed relation "key may act upon each of these keys".

    Used for the status graph (status → reachable statuses) and for the role
    hierarchy (role → roles it may manage).
    """

    def __init__(self, mapping: dict, name: str = "authority"):
        self.name = name
        self._edges = {key: frozenset(values) for key, values in mapping.items()}

    def allows(self, source, target) -> bool:
        return target in self._edges.get(source, frozenset())

    def targets(self, source) -> frozenset:
        return self._edges.get(source, frozenset())

    def keys(self) -> set:
        return set(self._edges)

    def require(self, source, target, error_factory):
        """Raise ``error_factory()`` unless ``source`` may act upon ``target``."""
        if not self.allows(source, target):
            raise error_factory()

    def as_dict(self) -> dict:
        return {key: sorted(values) for key, values in self._edges.items()}

    def __contains__(self, key):
        return key in self._edges


class StatusTransitionValidator:
    """Answers "may this actor move the task from current to target"."""

    def __init__(self, transitions=None, elevated_roles=None):
        table = AuthorityTable(transitions or DEFAULT_STATUS_TRANSITIONS, name="task_status")
        unknown = {
            target
            for source in table.keys()
            for target in table.targets(source)
            if target not in table
        }
        if unknown:
            raise ValueError(f"Transition table references undeclared statuses: {sorted(unknown)}")
        self.table = table
        self.elevated_roles = frozenset(elevated_roles or ELEVATED_ROLES)

    @classmethod
    def from_config(cls, config):
        return cls(
            transitions=config.get("TASK_STATUS_TRANSITIONS"),
            elevated_roles=config.get("ELEVATED_ROLES"),
        )

    @property
    def statuses(self) -> set:
        return self.table.keys()

    def can_transition(self, current: str, target: str) -> bool:
        return self.table.allows(current, target)

    def allowed_targets(self, current: str) -> list:
        return sorted(self.table.targets(current))

    def is_terminal(self, status: str) -> bool:
        return not self.table.targets(status)

    def is_elevated(self, role: str | None) -> bool:
        return role in self.elevated_roles

    def authorize(self, actor_role: str | None, is_creator: bool, is_assignee: bool) -> bool:
        return bool(is_creator or is_assignee or self.is_elevated(actor_role))

    def validate(self, current: str, target: str, *, actor_role, is_creator=False, is_assignee=False):
        """Raise unless the transition is both permitted and authorised."""
        if target not in self.table:
            raise ValidationError(
                f"Unknown task status: {target}",
                {"status": target, "allowed": sorted(self.statuses)},
            )
        if not self.can_transition(current, target):
            raise InvalidTransitionError(
                "task", current, target, allowed=self.table.targets(current),
            )
        if not self.authorize(actor_role, is_creator, is_assignee):
            raise ForbiddenError(
                "Only the creator, the assignee or an elevated role may change this task's status",
                {"current": current, "target": target},
            )
