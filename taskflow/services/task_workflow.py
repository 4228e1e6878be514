"""
Task Workflow Coordinator — the single entry point for workflow mutations.

Every public mutation:
  1. runs its checks and writes through ``run_in_transaction`` (atomic,
     retried on transient store failures)
  2. appends one activity row per changed entity inside that transaction
  3. collects domain events and dispatches them only after commit

Managers (status validator, dependency graph, sprint lifecycle) are built
per call around the transaction's store; nothing here keeps state between
requests.

Usage:
    from taskflow.services.task_workflow import TaskWorkflowCoordinator

    flow = TaskWorkflowCoordinator()
    task = flow.change_status(actor, task_id=4, target="in_progress")
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from taskflow.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    SprintClosedError,
    ValidationError,
)
from taskflow.models.audit import write_activity
from taskflow.models.auth import MANAGER_ROLES
from taskflow.models.sprint import CLOSED_SPRINT_STATUSES
from taskflow.models.task import TASK_PRIORITIES, TERMINAL_COMPLETE_STATUS
from taskflow.services.dependency_graph import DependencyGraphManager
from taskflow.services.notification import DomainEvent, NotificationService
from taskflow.services.sprint_lifecycle import SprintLifecycleManager
from taskflow.services.status_transition import StatusTransitionValidator
from taskflow.services.store import WorkflowStore, run_in_transaction

logger = logging.getLogger(__name__)


def requires_approval(creator_role, assignee_role) -> bool:
    """An admin handing work to staff needs an elevated sign-off."""
    return creator_role == "admin" and assignee_role == "staff"


def _recipients(*ids):
    return tuple(i for i in dict.fromkeys(ids) if i is not None)


class TaskWorkflowCoordinator:
    def __init__(self, config=None, notifier=NotificationService, transaction=run_in_transaction):
        self.config = config if config is not None else current_app.config
        self.validator = StatusTransitionValidator.from_config(self.config)
        self.notifier = notifier
        self._transaction = transaction
        self.enforce_dependency_gate = self.config.get("ENFORCE_DEPENDENCY_GATE", True)
        self.manager_roles = frozenset(self.config.get("SPRINT_MANAGER_ROLES") or MANAGER_ROLES)

    # ── Plumbing ────────────────────────────────────────────────────────

    def _execute(self, work):
        events = []

        def attempt(store):
            events.clear()
            return work(store, events)

        result = self._transaction(attempt)
        if events:
            self.notifier.dispatch(list(events))
        return result

    def _sprints(self, store):
        return SprintLifecycleManager.from_config(store, self.config)

    def _can_manage(self, actor, task) -> bool:
        return actor.id in (task.creator_id, task.assignee_id) or actor.role in self.manager_roles

    def _require_elevated(self, actor, action):
        if not self.validator.is_elevated(actor.role):
            raise ForbiddenError(f"Only elevated roles may {action} tasks", {"role": actor.role})

    def _require_sprint_manager(self, actor):
        if actor.role not in self.manager_roles:
            raise ForbiddenError("Sprint changes need an elevated or admin role", {"role": actor.role})

    def _record_status(self, store, task, target, actor, events, **extra):
        previous = task.status
        fields = {"status": target, **extra}
        if previous == "rejected" and target != "rejected":
            fields["rejection_reason"] = None
        if target == TERMINAL_COMPLETE_STATUS:
            fields["completed_at"] = datetime.now(timezone.utc)
        store.update_task(task, **fields)
        write_activity(
            entity_type="task",
            entity_id=task.id,
            action="task.status_change",
            actor_id=actor.id,
            project_id=task.project_id,
            previous_value=previous,
            new_value=target,
        )
        events.append(DomainEvent(
            "status_changed", actor.id, task_id=task.id, sprint_id=task.sprint_id,
            payload={"from": previous, "to": target},
            recipients=_recipients(task.assignee_id, task.creator_id),
            title=f"Task #{task.id} moved to {target}",
        ))
        logger.info(
            "Task %s status %s -> %s by %s", task.id, previous, target, actor.id,
            extra={"task_id": task.id, "actor_id": actor.id},
        )

    def _log_sprint_moves(self, actor, sprint, moves):
        """One task.sprint_change row per moved task: {task_id: (from, to)}."""
        for task_id, (old, new) in moves.items():
            write_activity(
                entity_type="task",
                entity_id=task_id,
                action="task.sprint_change",
                actor_id=actor.id,
                project_id=sprint.project_id,
                previous_value=old,
                new_value=new,
            )

    # ── Task creation & status ──────────────────────────────────────────

    def create_task(self, actor, data: dict):
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", {"title": "required"})
        priority = data.get("priority") or "medium"
        if priority not in TASK_PRIORITIES:
            raise ValidationError(
                f"Unknown priority: {priority}", {"priority": priority, "allowed": sorted(TASK_PRIORITIES)},
            )
        story_points = data.get("story_points")
        if story_points is not None and (not isinstance(story_points, int) or story_points < 0):
            raise ValidationError("story_points must be a non-negative integer", {"story_points": story_points})

        def work(store, events):
            project_id = data.get("project_id")
            if project_id is not None and store.find_project(project_id) is None:
                raise NotFoundError("Project", project_id)

            assignee = None
            if data.get("assignee_id") is not None:
                assignee = store.find_user(data["assignee_id"])
                if assignee is None:
                    raise NotFoundError("User", data["assignee_id"])

            parent_id = data.get("parent_task_id")
            if parent_id is not None:
                parent = store.require_task(parent_id)
                if parent.project_id != project_id:
                    raise ValidationError(
                        "A subtask must live in its parent's project",
                        {"parent_task_id": parent_id, "project_id": project_id},
                    )

            sprint_id = data.get("sprint_id")
            if sprint_id is not None:
                sprint = store.require_sprint(sprint_id, for_update=True)
                if sprint.status in CLOSED_SPRINT_STATUSES:
                    raise SprintClosedError(sprint.id, sprint.status)
                if sprint.project_id != project_id:
                    raise ValidationError(
                        "Task and sprint must belong to the same project",
                        {"sprint_id": sprint_id, "project_id": project_id},
                    )

            needs_approval = requires_approval(actor.role, assignee.role if assignee else None)
            auto_approve = self.validator.is_elevated(actor.role)

            task = store.create_task(
                title=title,
                description=data.get("description") or "",
                project_id=project_id,
                sprint_id=sprint_id,
                parent_task_id=parent_id,
                priority=priority,
                story_points=story_points,
                status="draft",
                creator_id=actor.id,
                assignee_id=assignee.id if assignee else None,
                requires_approval=needs_approval,
                approved_by_id=actor.id if auto_approve else None,
            )
            write_activity(
                entity_type="task",
                entity_id=task.id,
                action="task.create",
                actor_id=actor.id,
                project_id=project_id,
                new_value=task.status,
                details={"title": title, "assignee_id": task.assignee_id, "requires_approval": needs_approval},
            )

            if assignee is not None and assignee.id != actor.id:
                events.append(DomainEvent(
                    "task_assigned", actor.id, task_id=task.id, sprint_id=sprint_id,
                    recipients=(assignee.id,), title=f"You were assigned: {title}",
                ))
            if needs_approval and not auto_approve:
                approvers = store.find_users_by_roles(self.validator.elevated_roles)
                events.append(DomainEvent(
                    "approval_required", actor.id, task_id=task.id, sprint_id=sprint_id,
                    recipients=_recipients(*(u.id for u in approvers)),
                    title=f"Approval required: {title}",
                ))
            logger.info(
                "Task created id=%s project=%s approval=%s", task.id, project_id, needs_approval,
                extra={"task_id": task.id, "project_id": project_id, "actor_id": actor.id},
            )
            return task

        return self._execute(work)

    def change_status(self, actor, task_id: int, target: str, reason: str | None = None):
        if target == "rejected":
            # Rejection keeps its own gate: elevated role and a reason.
            return self.reject_task(actor, task_id, reason)

        def work(store, events):
            task = store.require_task(task_id, for_update=True)
            current = task.status
            self.validator.validate(
                current, target,
                actor_role=actor.role,
                is_creator=task.creator_id == actor.id,
                is_assignee=task.assignee_id == actor.id,
            )
            if target == "in_progress" and self.enforce_dependency_gate:
                info = DependencyGraphManager(store).blocking_info(task.id)
                if info["is_blocked"]:
                    raise InvalidTransitionError(
                        "task", current, target,
                        reason="blocked by unfinished dependencies",
                        allowed=self.validator.allowed_targets(current),
                        details={"blocked_by": [b["task_id"] for b in info["blocked_by"]]},
                    )
            if target == TERMINAL_COMPLETE_STATUS and task.requires_approval and not task.is_approved:
                raise InvalidTransitionError(
                    "task", current, target,
                    reason="approval pending",
                    allowed=self.validator.allowed_targets(current),
                )
            self._record_status(store, task, target, actor, events)
            return task

        return self._execute(work)

    # ── Assignment & approval ───────────────────────────────────────────

    def assign_task(self, actor, task_id: int, assignee_id: int):
        def work(store, events):
            task = store.require_task(task_id, for_update=True)
            if task.creator_id != actor.id and actor.role not in self.manager_roles:
                raise ForbiddenError(
                    "Only the creator or a manager role may assign this task", {"task_id": task_id},
                )
            assignee = store.find_user(assignee_id)
            if assignee is None:
                raise NotFoundError("User", assignee_id)
            if not assignee.is_active:
                raise ValidationError("Cannot assign to an inactive user", {"assignee_id": assignee_id})

            moves_status = task.status != "assigned"
            if moves_status and not self.validator.can_transition(task.status, "assigned"):
                raise InvalidTransitionError(
                    "task", task.status, "assigned", allowed=self.validator.allowed_targets(task.status),
                )

            previous_assignee = task.assignee_id
            store.update_task(task, assignee_id=assignee.id)
            write_activity(
                entity_type="task",
                entity_id=task.id,
                action="task.assign",
                actor_id=actor.id,
                project_id=task.project_id,
                previous_value=previous_assignee,
                new_value=assignee.id,
            )
            if moves_status:
                self._record_status(store, task, "assigned", actor, events)
            events.append(DomainEvent(
                "task_assigned", actor.id, task_id=task.id, sprint_id=task.sprint_id,
                payload={"previous_assignee_id": previous_assignee},
                recipients=(assignee.id,), title=f"You were assigned: {task.title}",
            ))
            return task

        return self._execute(work)

    def approve_task(self, actor, task_id: int):
        self._require_elevated(actor, "approve")

        def work(store, events):
            task = store.require_task(task_id, for_update=True)
            if not task.requires_approval:
                raise InvalidTransitionError("task", task.status, "approved", reason="task does not require approval")
            if task.is_approved:
                raise InvalidTransitionError("task", task.status, "approved", reason="task is already approved")

            store.update_task(task, approved_by_id=actor.id)
            write_activity(
                entity_type="task",
                entity_id=task.id,
                action="task.approve",
                actor_id=actor.id,
                project_id=task.project_id,
                new_value=actor.id,
            )
            events.append(DomainEvent(
                "approved", actor.id, task_id=task.id, sprint_id=task.sprint_id,
                recipients=_recipients(task.assignee_id, task.creator_id),
                title=f"Task approved: {task.title}",
            ))
            if task.status == "review" and self.validator.can_transition("review", TERMINAL_COMPLETE_STATUS):
                self._record_status(store, task, TERMINAL_COMPLETE_STATUS, actor, events)
            return task

        return self._execute(work)

    def reject_task(self, actor, task_id: int, reason: str):
        self._require_elevated(actor, "reject")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required", {"reason": "required"})

        def work(store, events):
            task = store.require_task(task_id, for_update=True)
            if not self.validator.can_transition(task.status, "rejected"):
                raise InvalidTransitionError(
                    "task", task.status, "rejected", allowed=self.validator.allowed_targets(task.status),
                )
            self._record_status(store, task, "rejected", actor, events, rejection_reason=reason)
            write_activity(
                entity_type="task",
                entity_id=task.id,
                action="task.reject",
                actor_id=actor.id,
                project_id=task.project_id,
                details={"reason": reason},
            )
            events.append(DomainEvent(
                "rejected", actor.id, task_id=task.id, sprint_id=task.sprint_id,
                payload={"reason": reason},
                recipients=_recipients(task.assignee_id, task.creator_id),
                title=f"Task rejected: {task.title}",
            ))
            return task

        return self._execute(work)

    # ── Dependencies ────────────────────────────────────────────────────

    def add_dependency(self, actor, dependent_id: int, blocking_id: int, dep_type: str = "blocks"):
        def work(store, events):
            dependent = store.find_task(dependent_id)
            if dependent is not None and not self._can_manage(actor, dependent):
                raise ForbiddenError("Not allowed to change this task's dependencies", {"task_id": dependent_id})

            edge = DependencyGraphManager(store).add_edge(
                dependent_id, blocking_id, dep_type, created_by_id=actor.id,
            )
            write_activity(
                entity_type="dependency",
                entity_id=edge.id,
                action="dependency.add",
                actor_id=actor.id,
                project_id=dependent.project_id,
                details=edge.to_dict(),
            )
            events.append(DomainEvent(
                "dependency_added", actor.id, task_id=dependent_id,
                payload={"blocking_task_id": blocking_id, "type": dep_type},
                recipients=_recipients(dependent.assignee_id),
                title=f"Task #{dependent_id} now depends on #{blocking_id}",
            ))
            return edge

        return self._execute(work)

    def remove_dependency(self, actor, edge_id: int) -> bool:
        def work(store, events):
            edge = store.get_edge(edge_id)
            if edge is None:
                return False
            dependent = store.find_task(edge.dependent_task_id)
            if dependent is not None and not self._can_manage(actor, dependent):
                raise ForbiddenError(
                    "Not allowed to change this task's dependencies", {"task_id": edge.dependent_task_id},
                )
            snapshot = edge.to_dict()
            removed = DependencyGraphManager(store).remove_edge(edge_id)
            write_activity(
                entity_type="dependency",
                entity_id=edge_id,
                action="dependency.remove",
                actor_id=actor.id,
                project_id=dependent.project_id if dependent is not None else None,
                details=snapshot,
            )
            return removed

        return self._execute(work)

    # Read-only queries skip the transaction runner.

    def blocking_info(self, task_id: int) -> dict:
        return DependencyGraphManager(WorkflowStore()).blocking_info(task_id)

    def dependencies_of(self, task_id: int) -> dict:
        return DependencyGraphManager(WorkflowStore()).dependencies_of(task_id)

    def subtask_summary(self, task_id: int) -> dict:
        return DependencyGraphManager(WorkflowStore()).subtask_summary(task_id)

    # ── Sprints ─────────────────────────────────────────────────────────

    def _sprint_activity(self, actor, sprint, action, previous=None, new=None, details=None):
        write_activity(
            entity_type="sprint",
            entity_id=sprint.id,
            action=action,
            actor_id=actor.id,
            project_id=sprint.project_id,
            previous_value=previous,
            new_value=new,
            details=details,
        )

    def create_sprint(self, actor, project_id: int, data: dict):
        self._require_sprint_manager(actor)

        def work(store, events):
            change = self._sprints(store).create(
                project_id,
                name=data.get("name"),
                start_date=data.get("start_date"),
                end_date=data.get("end_date"),
                goal=data.get("goal") or "",
                capacity_points=data.get("capacity_points"),
                created_by_id=actor.id,
            )
            sprint = change.sprint
            self._sprint_activity(
                actor, sprint, "sprint.create", new=sprint.status,
                details={"start_date": sprint.start_date, "end_date": sprint.end_date},
            )
            return sprint

        return self._execute(work)

    def update_sprint(self, actor, sprint_id: int, data: dict):
        self._require_sprint_manager(actor)

        def work(store, events):
            change = self._sprints(store).update(sprint_id, data)
            if change.changes:
                self._sprint_activity(actor, change.sprint, "sprint.update", details=change.changes)
            return change.sprint

        return self._execute(work)

    def start_sprint(self, actor, sprint_id: int):
        self._require_sprint_manager(actor)

        def work(store, events):
            change = self._sprints(store).start(sprint_id)
            sprint = change.sprint
            self._sprint_activity(actor, sprint, "sprint.start", change.previous_status, sprint.status)
            members = store.find_sprint_tasks(sprint.id)
            events.append(DomainEvent(
                "sprint_started", actor.id, sprint_id=sprint.id,
                recipients=_recipients(*(t.assignee_id for t in members)),
                title=f"Sprint started: {sprint.name}",
            ))
            return sprint

        return self._execute(work)

    def complete_sprint(self, actor, sprint_id: int, move_incomplete_to: int | None = None):
        self._require_sprint_manager(actor)

        def work(store, events):
            members = store.find_sprint_tasks(sprint_id)
            change = self._sprints(store).complete(sprint_id, move_incomplete_to)
            sprint = change.sprint
            moves = {tid: (sprint.id, change.target_sprint_id) for tid in change.moved_task_ids}
            moves.update({tid: (sprint.id, None) for tid in change.detached_task_ids})
            self._log_sprint_moves(actor, sprint, moves)
            self._sprint_activity(
                actor, sprint, "sprint.complete", change.previous_status, sprint.status,
                details={
                    "velocity": sprint.velocity,
                    "moved_task_ids": change.moved_task_ids,
                    "detached_task_ids": change.detached_task_ids,
                    "move_incomplete_to": change.target_sprint_id,
                },
            )
            events.append(DomainEvent(
                "sprint_completed", actor.id, sprint_id=sprint.id,
                payload={"velocity": sprint.velocity},
                recipients=_recipients(*(t.assignee_id for t in members)),
                title=f"Sprint completed: {sprint.name}",
            ))
            return change

        return self._execute(work)

    def cancel_sprint(self, actor, sprint_id: int):
        self._require_sprint_manager(actor)

        def work(store, events):
            members = store.find_sprint_tasks(sprint_id)
            change = self._sprints(store).cancel(sprint_id)
            sprint = change.sprint
            self._log_sprint_moves(actor, sprint, {tid: (sprint.id, None) for tid in change.detached_task_ids})
            self._sprint_activity(
                actor, sprint, "sprint.cancel", change.previous_status, sprint.status,
                details={"detached_task_ids": change.detached_task_ids},
            )
            events.append(DomainEvent(
                "sprint_cancelled", actor.id, sprint_id=sprint.id,
                recipients=_recipients(*(t.assignee_id for t in members)),
                title=f"Sprint cancelled: {sprint.name}",
            ))
            return change

        return self._execute(work)

    def reopen_sprint(self, actor, sprint_id: int):
        self._require_sprint_manager(actor)

        def work(store, events):
            change = self._sprints(store).reopen(sprint_id)
            self._sprint_activity(actor, change.sprint, "sprint.reopen", change.previous_status, change.sprint.status)
            return change.sprint

        return self._execute(work)

    def add_tasks_to_sprint(self, actor, sprint_id: int, task_ids):
        self._require_sprint_manager(actor)

        def work(store, events):
            change = self._sprints(store).add_tasks(sprint_id, task_ids)
            sprint = change.sprint
            self._log_sprint_moves(actor, sprint, {tid: (old, sprint.id) for tid, old in change.changes.items()})
            return change

        return self._execute(work)

    def remove_tasks_from_sprint(self, actor, sprint_id: int, task_ids):
        self._require_sprint_manager(actor)

        def work(store, events):
            change = self._sprints(store).remove_tasks(sprint_id, task_ids)
            sprint = change.sprint
            self._log_sprint_moves(actor, sprint, {tid: (sprint.id, None) for tid in change.detached_task_ids})
            return change

        return self._execute(work)
