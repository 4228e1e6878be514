"""
Actor Context Middleware — resolves the calling user for API requests.

Authentication happens upstream (gateway / SSO). It forwards the caller as
two headers:
    X-Actor-Id:   integer user id
    X-Actor-Role: one of super_admin | ceo | hoo | hr | admin | staff

Reads pass through without an actor; a mutating request without a valid
pair is answered with 401 before reaching the route handler.

Chain order:
  timing.py  →  actor_context.py  →  route handler
"""

import logging

from flask import g, request

from taskflow.core.actor import Actor
from taskflow.core.exceptions import UnauthorizedError
from taskflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
)

_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _parse_actor():
    raw_id = request.headers.get("X-Actor-Id")
    raw_role = request.headers.get("X-Actor-Role")
    if not raw_id or not raw_role:
        return None
    try:
        return Actor(id=int(raw_id), role=raw_role.strip().lower())
    except ValueError:
        logger.warning("Rejected actor headers id=%r role=%r", raw_id, raw_role)
        return None


def current_actor() -> Actor:
    """Actor of the current request; raises UnauthorizedError when absent."""
    actor = getattr(g, "actor", None)
    if actor is None:
        raise UnauthorizedError("X-Actor-Id and X-Actor-Role headers are required")
    return actor


def init_actor_context(app):
    """Register actor resolution as a before_request hook."""

    @app.before_request
    def _actor_context():
        g.actor = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in ACTOR_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        g.actor = _parse_actor()
        if g.actor is None and request.method in _MUTATING_METHODS:
            return api_error(E.UNAUTHORIZED, "X-Actor-Id and X-Actor-Role headers are required")
        return None
