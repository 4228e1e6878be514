"""
Workflow exception hierarchy.

Every service raises one of these types; the application registers a
single handler against ``WorkflowError`` and renders ``code`` and
``http_status`` through ``api_error``. Codes are stable: clients branch on
them, so never rename one.

All kinds except ``Unavailable`` describe a request that was invalid for
the current state. The engine never retries them; the caller decides
(e.g. re-pick dates after ``OverlappingSprintError``).

Usage:
    from taskflow.core.exceptions import NotFoundError, CycleDetectedError

    raise NotFoundError(resource="Task", resource_id=42)
    raise CycleDetectedError(dependent_id=1, blocking_id=2)
"""

from taskflow.utils.errors import E


class WorkflowError(Exception):
    """Base class for every expected, caller-recoverable failure.

    Args:
        message: Human-readable explanation.
        details: Optional structured payload for API responses.
    """

    code = E.INTERNAL
    http_status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(WorkflowError):
    """Raised when a task, sprint, edge, user or project does not exist.

    Args:
        resource: Human-readable model name (e.g. "Task", "Sprint").
        resource_id: The PK that was looked up.
    """

    code = E.NOT_FOUND
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, {"resource": resource, "resource_id": resource_id})


class UnauthorizedError(WorkflowError):
    """Raised when a mutating request arrives without a resolved actor."""

    code = E.UNAUTHORIZED
    http_status = 401


class ForbiddenError(WorkflowError):
    """Raised when the actor lacks authority for the operation."""

    code = E.FORBIDDEN
    http_status = 403


class ValidationError(WorkflowError):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422. ``details`` holds a field-level breakdown.
    """

    code = E.VALIDATION_INVALID
    http_status = 422


class InvalidTransitionError(WorkflowError):
    """Raised when a task or sprint status edge is not permitted.

    Args:
        entity: "task" or "sprint".
        current: Status the entity is in.
        target: Status that was requested.
        reason: Optional extra explanation (e.g. blocked by dependencies).
        allowed: Statuses reachable from ``current`` in one step.
    """

    code = E.INVALID_TRANSITION
    http_status = 409

    def __init__(
        self,
        entity: str,
        current: str,
        target: str,
        reason: str | None = None,
        allowed=None,
        details: dict | None = None,
    ) -> None:
        self.entity = entity
        self.current_status = current
        self.target_status = target
        msg = f"Invalid {entity} transition: {current} → {target}"
        if reason:
            msg += f" ({reason})"
        payload = {
            "current": current,
            "target": target,
            "allowed": sorted(allowed) if allowed is not None else None,
        }
        payload.update(details or {})
        super().__init__(msg, payload)


class SelfDependencyError(WorkflowError):
    """Raised when a task is asked to depend on itself."""

    code = E.SELF_DEPENDENCY
    http_status = 409

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} cannot depend on itself", {"task_id": task_id})


class DuplicateEdgeError(WorkflowError):
    """Raised when the (dependent, blocking) pair already has an edge."""

    code = E.DUPLICATE_EDGE
    http_status = 409

    def __init__(self, dependent_id: int, blocking_id: int) -> None:
        super().__init__(
            f"Task {dependent_id} already depends on task {blocking_id}",
            {"dependent_task_id": dependent_id, "blocking_task_id": blocking_id},
        )


class CycleDetectedError(WorkflowError):
    """Raised when inserting an edge would close a cycle in the graph."""

    code = E.CYCLE_DETECTED
    http_status = 409

    def __init__(self, dependent_id: int, blocking_id: int, path: list | None = None) -> None:
        super().__init__(
            f"Dependency {dependent_id} → {blocking_id} would create a circular dependency chain",
            {"dependent_task_id": dependent_id, "blocking_task_id": blocking_id, "path": path or []},
        )


class OverlappingSprintError(WorkflowError):
    """Raised when sprint dates intersect another planning/active sprint."""

    code = E.OVERLAPPING_SPRINT
    http_status = 409

    def __init__(self, sprint_name: str, sprint_id: int) -> None:
        super().__init__(
            f"Sprint dates overlap with existing sprint: {sprint_name}",
            {"overlapping_sprint_id": sprint_id},
        )


class ActiveSprintExistsError(WorkflowError):
    """Raised when starting a sprint while another one of the project is active."""

    code = E.ACTIVE_SPRINT_EXISTS
    http_status = 409

    def __init__(self, project_id: int, active_sprint_id: int | None = None) -> None:
        super().__init__(
            "There is already an active sprint in this project",
            {"project_id": project_id, "active_sprint_id": active_sprint_id},
        )


class SprintClosedError(WorkflowError):
    """Raised when changing task membership of a completed/cancelled sprint."""

    code = E.SPRINT_CLOSED
    http_status = 409

    def __init__(self, sprint_id: int, status: str) -> None:
        super().__init__(
            f"Sprint {sprint_id} is {status}; its tasks can no longer change",
            {"sprint_id": sprint_id, "status": status},
        )


class InvalidDateRangeError(WorkflowError):
    """Raised when sprint dates are out of order or already in the past."""

    code = E.INVALID_DATE_RANGE
    http_status = 422


class ConflictError(WorkflowError):
    """Raised when the store rejects a write that raced a concurrent request.

    Maps to HTTP 409. The caller may re-read and try again.
    """

    code = E.CONFLICT
    http_status = 409


class UnavailableError(WorkflowError):
    """Raised when the store stays unreachable after bounded retries.

    Maps to HTTP 503: try again later.
    """

    code = E.UNAVAILABLE
    http_status = 503
