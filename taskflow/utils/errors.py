"""Standardised API error responses.

Usage
-----
    from taskflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Task not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")
    return api_error(E.CYCLE_DETECTED, "Cycle", details={"path": [1, 2, 1]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for every code
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    INVALID_DATE_RANGE = "ERR_INVALID_DATE_RANGE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Workflow state – HTTP 409
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    SELF_DEPENDENCY = "ERR_SELF_DEPENDENCY"
    DUPLICATE_EDGE = "ERR_DUPLICATE_EDGE"
    CYCLE_DETECTED = "ERR_CYCLE_DETECTED"
    OVERLAPPING_SPRINT = "ERR_OVERLAPPING_SPRINT"
    ACTIVE_SPRINT_EXISTS = "ERR_ACTIVE_SPRINT_EXISTS"
    SPRINT_CLOSED = "ERR_SPRINT_CLOSED"
    CONFLICT = "ERR_CONFLICT"

    # Permissions – HTTP 401 / 403
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500 / 503
    UNAVAILABLE = "ERR_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.INVALID_DATE_RANGE: 422,
    E.NOT_FOUND: 404,
    E.INVALID_TRANSITION: 409,
    E.SELF_DEPENDENCY: 409,
    E.DUPLICATE_EDGE: 409,
    E.CYCLE_DETECTED: 409,
    E.OVERLAPPING_SPRINT: 409,
    E.ACTIVE_SPRINT_EXISTS: 409,
    E.SPRINT_CLOSED: 409,
    E.CONFLICT: 409,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.UNAVAILABLE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (blocking task ids, cycle path, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(app):
    """Render every ``WorkflowError`` and the common HTTP errors as JSON."""
    import logging

    from taskflow.core.exceptions import WorkflowError

    logger = logging.getLogger(__name__)

    @app.errorhandler(WorkflowError)
    def _workflow_error(e):
        if e.http_status >= 500:
            logger.error("Workflow error %s: %s", e.code, e)
        return api_error(e.code, str(e), status=e.http_status, details=e.details)

    @app.errorhandler(404)
    def _not_found(e):
        from flask import request
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
