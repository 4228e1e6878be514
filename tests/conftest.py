"""
Shared pytest fixtures for the Taskflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / users: User factory and one user per role
    - project: Pre-created Project entity
    - as_actor: X-Actor-* header builder
"""

import pytest

from taskflow import create_app
from taskflow.models import db as _db
from taskflow.models.auth import USER_ROLES, User
from taskflow.models.project import Project


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Factory: make_user("staff", name="Sam") -> committed User."""
    counter = {"n": 0}

    def _make(role="staff", **kw):
        counter["n"] += 1
        user = User(
            name=kw.pop("name", f"{role} user {counter['n']}"),
            email=kw.pop("email", f"{role}{counter['n']}@example.test"),
            role=role,
            **kw,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def users(make_user):
    """One committed user per role, keyed by role name."""
    return {role: make_user(role) for role in USER_ROLES}


@pytest.fixture()
def project():
    proj = Project(key="OPS", name="Operations")
    _db.session.add(proj)
    _db.session.commit()
    return proj


@pytest.fixture()
def as_actor():
    """Header builder: client.post(url, headers=as_actor(user))."""

    def _headers(user):
        return {"X-Actor-Id": str(user.id), "X-Actor-Role": user.role}

    return _headers
