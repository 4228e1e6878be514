"""
Sprint lifecycle — planning, start, completion, cancellation, reopen.

Invariants held here (each checked and written in the caller's transaction):
  - planning/active sprints of one project never overlap (closed intervals)
  - at most one active sprint per project (project row lock + partial
    unique index as backstop)
  - a completed or cancelled sprint owns no incomplete tasks
  - task membership of a closed sprint never changes

Usage:
    from taskflow.services.sprint_lifecycle import SprintLifecycleManager

    manager = SprintLifecycleManager(store, allow_reopen=True)
    change = manager.complete(sprint_id, move_incomplete_to=next_sprint_id)
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from taskflow.core.exceptions import (
    ActiveSprintExistsError,
    InvalidDateRangeError,
    InvalidTransitionError,
    NotFoundError,
    OverlappingSprintError,
    SprintClosedError,
    ValidationError,
)
from taskflow.models.sprint import CLOSED_SPRINT_STATUSES, SPRINT_TRANSITIONS
from taskflow.models.task import TERMINAL_COMPLETE_STATUS

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("name", "goal", "start_date", "end_date", "capacity_points")


@dataclass
class SprintChange:
    """Outcome of a lifecycle operation, consumed by the coordinator."""

    sprint: object
    previous_status: str | None = None
    moved_task_ids: list = field(default_factory=list)
    detached_task_ids: list = field(default_factory=list)
    target_sprint_id: int | None = None
    changes: dict = field(default_factory=dict)


def _now():
    return datetime.now(timezone.utc)


class SprintLifecycleManager:
    def __init__(self, store, *, allow_reopen=True, allow_past_dates=False, today=date.today):
        self.store = store
        self.allow_reopen = allow_reopen
        self.allow_past_dates = allow_past_dates
        self.today = today

    @classmethod
    def from_config(cls, store, config):
        return cls(
            store,
            allow_reopen=config.get("SPRINT_ALLOW_REOPEN", True),
            allow_past_dates=config.get("SPRINT_ALLOW_PAST_DATES", False),
        )

    # ── Helpers ─────────────────────────────────────────────────────────

    def allowed_targets(self, status):
        targets = set(SPRINT_TRANSITIONS.get(status, ()))
        if status == "cancelled" and not self.allow_reopen:
            targets.discard("planning")
        return targets

    def _require_transition(self, sprint, target, reason=None):
        allowed = self.allowed_targets(sprint.status)
        if target not in allowed:
            raise InvalidTransitionError("sprint", sprint.status, target, reason=reason, allowed=allowed)

    def _load(self, sprint_id):
        sprint = self.store.find_sprint(sprint_id, for_update=True)
        if sprint is None:
            raise NotFoundError("Sprint", sprint_id)
        return sprint

    def validate_dates(self, project_id, start_date, end_date, *, exclude_id=None):
        """Raise InvalidDateRange / OverlappingSprint for a proposed window."""
        if start_date is None or end_date is None:
            raise InvalidDateRangeError(
                "start_date and end_date are required",
                {"start_date": str(start_date), "end_date": str(end_date)},
            )
        if start_date >= end_date:
            raise InvalidDateRangeError(
                "End date must be after start date",
                {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )
        if not self.allow_past_dates and end_date <= self.today():
            raise InvalidDateRangeError(
                "End date must be in the future",
                {"end_date": end_date.isoformat(), "today": self.today().isoformat()},
            )
        other = self.store.find_overlapping_sprint(
            project_id, start_date, end_date, exclude_id=exclude_id,
        )
        if other is not None:
            raise OverlappingSprintError(other.name, other.id)

    # ── Create / update ─────────────────────────────────────────────────

    def create(self, project_id, *, name, start_date, end_date, goal="", capacity_points=None, created_by_id=None):
        name = (name or "").strip()
        if not name:
            raise ValidationError("Sprint name is required", {"name": "required"})
        if capacity_points is not None and capacity_points < 0:
            raise ValidationError("capacity_points must be >= 0", {"capacity_points": capacity_points})

        # Serialises overlap checks of concurrent creations in one project.
        if self.store.lock_project(project_id) is None:
            raise NotFoundError("Project", project_id)
        self.validate_dates(project_id, start_date, end_date)

        sprint = self.store.create_sprint(
            project_id=project_id,
            name=name,
            goal=goal or "",
            status="planning",
            start_date=start_date,
            end_date=end_date,
            capacity_points=capacity_points,
            created_by_id=created_by_id,
        )
        logger.info(
            "Sprint created id=%s project=%s %s..%s",
            sprint.id, project_id, start_date, end_date,
            extra={"sprint_id": sprint.id, "project_id": project_id},
        )
        return SprintChange(sprint=sprint)

    def update(self, sprint_id, data: dict):
        """Change name/goal/dates/capacity; dates of closed sprints are frozen."""
        sprint = self._load(sprint_id)
        unknown = set(data) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {sorted(unknown)}",
                {"allowed": list(_UPDATABLE_FIELDS)},
            )

        changes = {}
        for name in _UPDATABLE_FIELDS:
            if name in data and data[name] != getattr(sprint, name):
                changes[name] = data[name]

        if "name" in changes:
            changes["name"] = (changes["name"] or "").strip()
            if not changes["name"]:
                raise ValidationError("Sprint name is required", {"name": "required"})
        if changes.get("capacity_points") is not None and changes["capacity_points"] < 0:
            raise ValidationError("capacity_points must be >= 0", {"capacity_points": changes["capacity_points"]})

        if "start_date" in changes or "end_date" in changes:
            if sprint.status in CLOSED_SPRINT_STATUSES:
                raise SprintClosedError(sprint.id, sprint.status)
            self.store.lock_project(sprint.project_id)
            self.validate_dates(
                sprint.project_id,
                changes.get("start_date", sprint.start_date),
                changes.get("end_date", sprint.end_date),
                exclude_id=sprint.id,
            )

        previous = {name: getattr(sprint, name) for name in changes}
        if changes:
            self.store.update_sprint(sprint, **changes)
        return SprintChange(
            sprint=sprint,
            previous_status=sprint.status,
            changes={name: {"from": previous[name], "to": value} for name, value in changes.items()},
        )

    # ── Transitions ─────────────────────────────────────────────────────

    def start(self, sprint_id):
        # Project lock first: every start in this project queues here.
        unlocked = self.store.find_sprint(sprint_id)
        if unlocked is None:
            raise NotFoundError("Sprint", sprint_id)
        self.store.lock_project(unlocked.project_id)
        sprint = self._load(sprint_id)

        self._require_transition(sprint, "active")
        active = self.store.find_active_sprint(sprint.project_id, exclude_id=sprint.id)
        if active is not None:
            raise ActiveSprintExistsError(sprint.project_id, active.id)

        previous = sprint.status
        self.store.update_sprint(sprint, status="active", started_at=_now())
        logger.info("Sprint started id=%s", sprint.id, extra={"sprint_id": sprint.id})
        return SprintChange(sprint=sprint, previous_status=previous)

    def complete(self, sprint_id, move_incomplete_to=None):
        """Close an active sprint; unfinished tasks move on or go to the backlog."""
        sprint = self._load(sprint_id)
        self._require_transition(sprint, "completed")

        target = None
        if move_incomplete_to is not None:
            if move_incomplete_to == sprint.id:
                raise ValidationError(
                    "Cannot move incomplete tasks into the sprint being completed",
                    {"move_incomplete_to": move_incomplete_to},
                )
            target = self.store.find_sprint(move_incomplete_to, for_update=True)
            if target is None:
                raise NotFoundError("Sprint", move_incomplete_to)
            if target.project_id != sprint.project_id:
                raise ValidationError(
                    "Target sprint belongs to another project",
                    {"move_incomplete_to": move_incomplete_to},
                )
            if target.status != "planning":
                raise SprintClosedError(target.id, target.status)

        tasks = self.store.find_sprint_tasks(sprint.id, for_update=True)
        velocity = 0
        moved, detached = [], []
        for task in tasks:
            if task.status == TERMINAL_COMPLETE_STATUS:
                velocity += task.story_points or 0
                continue
            if target is not None:
                self.store.update_task(task, sprint_id=target.id)
                moved.append(task.id)
            else:
                self.store.update_task(task, sprint_id=None)
                detached.append(task.id)

        previous = sprint.status
        self.store.update_sprint(sprint, status="completed", completed_at=_now(), velocity=velocity)
        logger.info(
            "Sprint completed id=%s velocity=%s moved=%d detached=%d",
            sprint.id, velocity, len(moved), len(detached),
            extra={"sprint_id": sprint.id},
        )
        return SprintChange(
            sprint=sprint,
            previous_status=previous,
            moved_task_ids=moved,
            detached_task_ids=detached,
            target_sprint_id=target.id if target is not None else None,
        )

    def cancel(self, sprint_id):
        """Cancel a planning/active sprint and detach every task it holds."""
        sprint = self._load(sprint_id)
        self._require_transition(sprint, "cancelled")

        detached = []
        for task in self.store.find_sprint_tasks(sprint.id, for_update=True):
            self.store.update_task(task, sprint_id=None)
            detached.append(task.id)

        previous = sprint.status
        self.store.update_sprint(sprint, status="cancelled", cancelled_at=_now())
        logger.info(
            "Sprint cancelled id=%s detached=%d", sprint.id, len(detached),
            extra={"sprint_id": sprint.id},
        )
        return SprintChange(sprint=sprint, previous_status=previous, detached_task_ids=detached)

    def reopen(self, sprint_id):
        sprint = self._load(sprint_id)
        reason = None if self.allow_reopen else "reopening cancelled sprints is disabled"
        self._require_transition(sprint, "planning", reason=reason)

        self.store.lock_project(sprint.project_id)
        self.validate_dates(sprint.project_id, sprint.start_date, sprint.end_date, exclude_id=sprint.id)

        previous = sprint.status
        self.store.update_sprint(sprint, status="planning", cancelled_at=None)
        logger.info("Sprint reopened id=%s", sprint.id, extra={"sprint_id": sprint.id})
        return SprintChange(sprint=sprint, previous_status=previous)

    # ── Membership ──────────────────────────────────────────────────────

    def _load_open(self, sprint_id):
        sprint = self._load(sprint_id)
        if sprint.status in CLOSED_SPRINT_STATUSES:
            raise SprintClosedError(sprint.id, sprint.status)
        return sprint

    def add_tasks(self, sprint_id, task_ids):
        """Attach tasks of the sprint's project; returns {task_id: previous_sprint_id}."""
        sprint = self._load_open(sprint_id)
        wanted = list(dict.fromkeys(task_ids))
        tasks = self.store.find_tasks(wanted, for_update=True)
        found = {t.id for t in tasks}
        missing = [tid for tid in wanted if tid not in found]
        if missing:
            raise NotFoundError("Task", missing[0])

        foreign = [t.id for t in tasks if t.project_id != sprint.project_id]
        if foreign:
            raise ValidationError(
                "Tasks must belong to the sprint's project",
                {"task_ids": foreign, "project_id": sprint.project_id},
            )

        moved = {}
        for task in tasks:
            if task.sprint_id == sprint.id:
                continue
            if task.sprint_id is not None:
                current = self.store.find_sprint(task.sprint_id)
                if current is not None and current.status in CLOSED_SPRINT_STATUSES:
                    raise SprintClosedError(current.id, current.status)
            moved[task.id] = task.sprint_id
            self.store.update_task(task, sprint_id=sprint.id)
        return SprintChange(sprint=sprint, previous_status=sprint.status, changes=moved)

    def remove_tasks(self, sprint_id, task_ids):
        """Detach tasks currently in this sprint; others are left untouched."""
        sprint = self._load_open(sprint_id)
        detached = []
        for task in self.store.find_tasks(list(dict.fromkeys(task_ids)), for_update=True):
            if task.sprint_id != sprint.id:
                continue
            self.store.update_task(task, sprint_id=None)
            detached.append(task.id)
        return SprintChange(sprint=sprint, previous_status=sprint.status, detached_task_ids=detached)
