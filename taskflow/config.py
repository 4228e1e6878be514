"""
Taskflow — Workflow Consistency Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Workflow policy keys (all environments):
    TASK_STATUS_TRANSITIONS      replacement transition table (None = default)
    ELEVATED_ROLES               roles that approve/reject and act on any task
    SPRINT_MANAGER_ROLES         roles that may change sprints and assign tasks
    SPRINT_ALLOW_REOPEN          cancelled → planning permitted
    SPRINT_ALLOW_PAST_DATES      accept sprints whose end date already passed
    ENFORCE_DEPENDENCY_GATE      blocked tasks cannot move to in_progress
    WORKFLOW_ISOLATION_LEVEL     per-transaction isolation (None = driver default)
    STORE_RETRY_BACKOFF_SECONDS  sleep schedule for transient store failures
"""

import json
import os

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'taskflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_bool(name, default):
    return os.getenv(name, "true" if default else "false").lower() == "true"


def _env_backoff(default):
    raw = os.getenv("STORE_RETRY_BACKOFF_SECONDS")
    return [float(v) for v in raw.split(",") if v.strip()] if raw else default


def _env_json(name):
    raw = os.getenv(name)
    return json.loads(raw) if raw else None


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Workflow policy
    TASK_STATUS_TRANSITIONS = _env_json("TASK_STATUS_TRANSITIONS")
    ELEVATED_ROLES = ("super_admin", "ceo", "hoo", "hr")
    SPRINT_MANAGER_ROLES = ("super_admin", "ceo", "hoo", "hr", "admin")
    SPRINT_ALLOW_REOPEN = _env_bool("SPRINT_ALLOW_REOPEN", True)
    SPRINT_ALLOW_PAST_DATES = _env_bool("SPRINT_ALLOW_PAST_DATES", False)
    ENFORCE_DEPENDENCY_GATE = _env_bool("ENFORCE_DEPENDENCY_GATE", True)

    # Store
    WORKFLOW_ISOLATION_LEVEL = os.getenv("WORKFLOW_ISOLATION_LEVEL") or None
    STORE_RETRY_BACKOFF_SECONDS = _env_backoff([0.05, 0.2])


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WORKFLOW_ISOLATION_LEVEL = None
    STORE_RETRY_BACKOFF_SECONDS = [0, 0]


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Cycle checks read many edge rows; SERIALIZABLE makes concurrent inserts safe.
    WORKFLOW_ISOLATION_LEVEL = os.getenv("WORKFLOW_ISOLATION_LEVEL", "SERIALIZABLE")

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
