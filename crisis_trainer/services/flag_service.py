"""
Flag service — user feedback and the supervisor review queue.

Severity rules for user feedback (applied at write time):
    ai_guidance_concern     → always critical, whatever was requested
    voice_technical_issue   → warning unless another severity is requested
    user_feedback           → info unless another severity is requested
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import case

from crisis_trainer.auth import ensure_can_access
from crisis_trainer.core.exceptions import ConflictError, ValidationError
from crisis_trainer.middleware.rate_limiter import session_limits
from crisis_trainer.models import db, utcnow
from crisis_trainer.models.account import User
from crisis_trainer.models.evaluation import (
    CATEGORY_AI_GUIDANCE_CONCERN,
    CATEGORY_USER_FEEDBACK,
    CATEGORY_VOICE_TECHNICAL_ISSUE,
    FLAG_DISMISSED,
    FLAG_PENDING,
    FLAG_REVIEWED,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_RANK,
    SEVERITY_WARNING,
    SOURCE_USER_FEEDBACK,
    VALID_FEEDBACK_CATEGORIES,
    VALID_FLAG_STATUSES,
    VALID_SEVERITIES,
    SessionFlag,
)
from crisis_trainer.models.session import Session
from crisis_trainer.utils.helpers import get_or_404, require_str

logger = logging.getLogger(__name__)

MAX_FEEDBACK_LENGTH = 5000
LIST_LIMIT = 50


def feedback_severity(category: str, requested: str | None) -> str:
    if category == CATEGORY_AI_GUIDANCE_CONCERN:
        return SEVERITY_CRITICAL
    if requested:
        return requested
    if category == CATEGORY_VOICE_TECHNICAL_ISSUE:
        return SEVERITY_WARNING
    return SEVERITY_INFO


def submit_feedback(session_id: str, user: User, data: dict) -> SessionFlag:
    """Record a counselor's report about a session.

    Raises:
        NotFoundError, UnauthorizedError, ValidationError, RateLimitedError
    """
    session = get_or_404(Session, session_id)
    ensure_can_access(user, session.owner_id, "flag this session")

    category = data.get("category") or CATEGORY_USER_FEEDBACK
    if category not in VALID_FEEDBACK_CATEGORIES:
        raise ValidationError(
            f"Invalid category '{category}'.", details={"category": sorted(VALID_FEEDBACK_CATEGORIES)},
        )
    requested = data.get("severity") or None
    if requested is not None and requested not in VALID_SEVERITIES:
        raise ValidationError(f"Invalid severity '{requested}'.", details={"severity": sorted(VALID_SEVERITIES)})
    details = require_str(data, "details", max_length=MAX_FEEDBACK_LENGTH)

    session_limits.check("feedback", session.id, current_app.config["FEEDBACK_RATE_LIMIT"])

    severity = feedback_severity(category, requested)
    flag = SessionFlag(
        session_id=session.id,
        category=category,
        severity=severity,
        source=SOURCE_USER_FEEDBACK,
        details=details,
        flag_metadata={"submitted_by": user.id, "requested_severity": requested},
    )
    db.session.add(flag)
    db.session.commit()

    log = logger.warning if severity == SEVERITY_CRITICAL else logger.info
    log(
        "User feedback flag %s/%s", category, severity,
        extra={"session_id": session.id, "event_type": "feedback_flag"},
    )
    return flag


def list_flags(status: str | None = None, severity: str | None = None,
               session_id: str | None = None, limit: int = LIST_LIMIT) -> list[SessionFlag]:
    """Review queue: critical first, then warning, then info; newest first within a severity."""
    q = SessionFlag.query
    if status:
        if status not in VALID_FLAG_STATUSES:
            raise ValidationError(f"Invalid status '{status}'.", details={"status": sorted(VALID_FLAG_STATUSES)})
        q = q.filter(SessionFlag.status == status)
    if severity:
        if severity not in VALID_SEVERITIES:
            raise ValidationError(f"Invalid severity '{severity}'.", details={"severity": sorted(VALID_SEVERITIES)})
        q = q.filter(SessionFlag.severity == severity)
    if session_id:
        q = q.filter(SessionFlag.session_id == session_id)

    rank = case(SEVERITY_RANK, value=SessionFlag.severity, else_=0)
    return (
        q.order_by(rank.desc(), SessionFlag.created_at.desc())
        .limit(max(1, min(limit, LIST_LIMIT)))
        .all()
    )


def resolve_flag(flag_id: str, reviewer: User, data: dict) -> SessionFlag:
    """pending → reviewed | dismissed."""
    flag = get_or_404(SessionFlag, flag_id, label="Flag")
    new_status = data.get("status")
    if new_status not in (FLAG_REVIEWED, FLAG_DISMISSED):
        raise ValidationError(
            "Field 'status' must be 'reviewed' or 'dismissed'.",
            details={"status": [FLAG_REVIEWED, FLAG_DISMISSED]},
        )
    if flag.status != FLAG_PENDING:
        raise ConflictError(f"Flag is already {flag.status}")

    metadata = dict(flag.flag_metadata or {})
    metadata["reviewed_by"] = reviewer.id
    if data.get("note"):
        metadata["review_note"] = str(data["note"])[:MAX_FEEDBACK_LENGTH]

    flag.status = new_status
    flag.flag_metadata = metadata
    flag.updated_at = utcnow()
    db.session.commit()
    logger.info(
        "Flag %s marked %s", flag.id, new_status,
        extra={"session_id": flag.session_id, "event_type": "flag_resolved"},
    )
    return flag
