"""Shared utility functions used by services and blueprints.

get_or_404:    primary-key lookup raising NotFoundError
parse_date:    lenient ISO date parsing (None on bad input)
json_body:     request JSON as a dict, never None
require_str:   required non-empty string field
"""
import logging
import uuid
from datetime import date, datetime

from flask import request

from crisis_trainer.core.exceptions import NotFoundError, ValidationError
from crisis_trainer.models import db

logger = logging.getLogger(__name__)


def is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError.

    Malformed ids are reported exactly like missing rows.
    """
    label = label or model.__name__
    if not pk or not is_uuid(pk):
        raise NotFoundError(label, pk)
    obj = db.session.get(model, str(pk))
    if obj is None:
        raise NotFoundError(label, pk)
    return obj


def parse_date(value):
    """Parse a date string (YYYY-MM-DD or full ISO datetime) to a date object.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except (ValueError, TypeError):
        return None


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_str(data: dict, field: str, max_length: int | None = None) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Field '{field}' is required.", details={field: "required"})
    value = value.strip()
    if max_length and len(value) > max_length:
        raise ValidationError(
            f"Field '{field}' exceeds {max_length} characters.",
            details={field: f"max {max_length} characters"},
        )
    return value
