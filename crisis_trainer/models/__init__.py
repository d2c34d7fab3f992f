"""
Crisis Trainer — SQLAlchemy models.

The shared ``db`` handle lives here so every model module and service can do
``from crisis_trainer.models import db`` without importing the app factory.
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def new_id() -> str:
    """Primary keys are UUID4 strings."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
