"""
User service — provisioning, profile edits, delete guard and partner get-or-create.

Business rules:
    - Counselors read and edit only their own profile and never change a role.
    - A user with assignments or sessions cannot be deleted; the error
      carries both counts.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from crisis_trainer.auth import ensure_can_access
from crisis_trainer.core.exceptions import ConflictError, UnauthorizedError, ValidationError
from crisis_trainer.models import db
from crisis_trainer.models.account import ROLE_COUNSELOR, VALID_ROLES, Account, User
from crisis_trainer.models.scenario import Assignment
from crisis_trainer.models.session import Session
from crisis_trainer.utils.helpers import get_or_404, require_str

logger = logging.getLogger(__name__)


def list_users(role: str | None = None) -> list[User]:
    q = User.query.order_by(User.display_name)
    if role:
        if role not in VALID_ROLES:
            raise ValidationError(f"Invalid role '{role}'.", details={"role": sorted(VALID_ROLES)})
        q = q.filter_by(role=role)
    return q.all()


def create_user(data: dict) -> User:
    """Create a user.

    Raises:
        ValidationError: missing display_name or unknown role/account.
        ConflictError: external_id already taken.
    """
    display_name = require_str(data, "display_name", max_length=255)
    role = data.get("role") or ROLE_COUNSELOR
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role '{role}'.", details={"role": sorted(VALID_ROLES)})

    external_id = (data.get("external_id") or "").strip() or None
    account_id = data.get("account_id")
    if account_id:
        get_or_404(Account, account_id)

    if external_id and User.query.filter_by(external_id=external_id).first():
        raise ConflictError(f"User with external_id={external_id!r} already exists")

    user = User(
        display_name=display_name,
        role=role,
        email=(data.get("email") or None),
        external_id=external_id,
        account_id=account_id,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"User with external_id={external_id!r} already exists")

    logger.info("User created", extra={"user_id": user.id, "event_type": "user_created"})
    return user


def get_user(requester: User, user_id: str) -> User:
    """A user's profile; counselors may only read their own."""
    ensure_can_access(requester, user_id, "view this user")
    return get_or_404(User, user_id)


def update_user(requester: User, user_id: str, data: dict) -> User:
    """Update display name, email or role.

    Raises:
        UnauthorizedError: a counselor editing someone else or changing a role.
        ValidationError: blank display name or unknown role.
    """
    ensure_can_access(requester, user_id, "update this user")
    user = get_or_404(User, user_id)

    if "display_name" in data:
        user.display_name = require_str(data, "display_name", max_length=255)
    if "email" in data:
        user.email = (data.get("email") or "").strip() or None
    if "role" in data and data.get("role") != user.role:
        if not requester.is_supervisor:
            raise UnauthorizedError("Not allowed to change roles", status=403)
        role = data.get("role")
        if role not in VALID_ROLES:
            raise ValidationError(f"Invalid role '{role}'.", details={"role": sorted(VALID_ROLES)})
        user.role = role

    db.session.commit()
    logger.info("User updated", extra={"user_id": user.id, "event_type": "user_updated"})
    return user


def delete_user(user_id: str) -> None:
    """Delete a user that has no training history.

    Raises:
        ConflictError: with ``assignment_count`` and ``session_count`` in details.
    """
    user = get_or_404(User, user_id)
    assignment_count = Assignment.query.filter_by(counselor_id=user.id).count()
    session_count = Session.query.filter_by(user_id=user.id).count()
    if assignment_count or session_count:
        raise ConflictError(
            "User has training history and cannot be deleted",
            details={"assignment_count": assignment_count, "session_count": session_count},
        )

    db.session.delete(user)
    db.session.commit()
    logger.info("User deleted", extra={"user_id": user_id, "event_type": "user_deleted"})


def _display_name_from_external_id(external_id: str) -> str:
    return " ".join(part.capitalize() for part in external_id.replace("_", "-").split("-") if part)


def get_or_create_external_user(external_id: str) -> User:
    """Map a partner's user id to a counselor, creating it on first sight.

    Concurrent first calls race on the unique external_id; the loser
    re-reads the winner's row.
    """
    external_id = (external_id or "").strip()
    if not external_id:
        raise ValidationError("Field 'user_external_id' is required.", details={"user_external_id": "required"})

    user = User.query.filter_by(external_id=external_id).first()
    if user is not None:
        return user

    user = User(
        external_id=external_id,
        display_name=_display_name_from_external_id(external_id) or external_id,
        role=ROLE_COUNSELOR,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        user = User.query.filter_by(external_id=external_id).one()
    else:
        logger.info("External user provisioned", extra={"user_id": user.id, "event_type": "external_user_created"})
    return user
