"""
Production Workflow & Billing
SQLAlchemy extension instance and shared column helpers.

Every model module imports ``db`` from here; ``create_app`` binds it via
``db.init_app(app)``.
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def new_uuid() -> str:
    """Generate a new UUID4 string for primary keys."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
