"""
Taskflow — Workflow Consistency Engine
Shared SQLAlchemy handle.

Every model module imports ``db`` from here; the application factory
binds it to the Flask app with ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
