"""
Document review service — score a counselor's call documentation.

After a session has been graded the counselor may upload the PDF notes
they wrote for the call.  The model compares the notes with the graded
transcript and returns three 0-100 scores, a list of gaps and a narrative.

Order of checks for ``create_review``:
    1. session exists                        → NOT_FOUND
    2. caller may access it                  → UNAUTHORIZED (403)
    3. the session has been evaluated        → CONFLICT
    4. no review exists yet                  → CONFLICT (existing_id)
    5. the upload is a readable PDF          → VALIDATION_ERROR
    6. at least 3 transcript turns           → VALIDATION_ERROR

One review per session: the unique ``session_id`` decides concurrent
uploads and the loser reports CONFLICT with the winner's id.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from crisis_trainer.ai.gateway import get_gateway
from crisis_trainer.ai.output_parser import parse_json_object
from crisis_trainer.ai.prompt_registry import get_registry
from crisis_trainer.core.exceptions import ConflictError, NotFoundError, UpstreamError, ValidationError
from crisis_trainer.models import db
from crisis_trainer.models.account import User
from crisis_trainer.models.evaluation import DocumentReview
from crisis_trainer.services.account_service import read_document_upload
from crisis_trainer.services.session_service import (
    format_transcript,
    get_session_for,
    graded_evaluation,
)

logger = logging.getLogger(__name__)

MAX_REVIEW_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_DOCUMENT_CHARS = 30000
MIN_TURNS_FOR_REVIEW = 3
SCORE_FIELDS = ("transcript_accuracy", "guidelines_compliance", "overall_score")


def _parse_review(content: str) -> dict:
    """Validate the reviewer's JSON.

    Raises:
        ValueError: missing or out-of-range fields.
    """
    data = parse_json_object(content)
    parsed = {}
    for name in SCORE_FIELDS:
        value = data.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
            raise ValueError(f"'{name}' must be a number between 0 and 100")
        parsed[name] = int(round(value))

    gaps = data.get("specific_gaps") or []
    if not isinstance(gaps, list):
        raise ValueError("'specific_gaps' must be a list")
    parsed["specific_gaps"] = [g.strip() for g in gaps if isinstance(g, str) and g.strip()]

    narrative = data.get("narrative")
    if not isinstance(narrative, str) or not narrative.strip():
        raise ValueError("'narrative' is required")
    parsed["review_text"] = narrative.strip()
    return parsed


def create_review(user: User, session_id: str, file_storage) -> DocumentReview:
    """Review uploaded call documentation against a graded session.

    Raises:
        NotFoundError, UnauthorizedError, ConflictError, ValidationError,
        UpstreamError
    """
    session = get_session_for(user, session_id, "review documentation for this session")

    if graded_evaluation(session) is None:
        raise ConflictError("Session must be evaluated before document review")
    existing = DocumentReview.query.filter_by(session_id=session.id).first()
    if existing is not None:
        raise ConflictError("Document review already exists for this session", existing_id=existing.id)

    filename, text = read_document_upload(file_storage, max_bytes=MAX_REVIEW_UPLOAD_BYTES)

    turns = session.current_turns()
    if len(turns) < MIN_TURNS_FOR_REVIEW:
        raise ValidationError(
            "Session transcript is too short for a document review.",
            details={"turns": len(turns), "required": MIN_TURNS_FOR_REVIEW},
        )

    scenario = session.assignment.scenario if session.assignment is not None else session.scenario
    messages = get_registry().render(
        "document_reviewer",
        scenario_prompt=scenario.prompt if scenario else "",
        transcript=format_transcript(turns),
        documentation=text[:MAX_DOCUMENT_CHARS],
    )
    result = get_gateway().chat(
        messages,
        model=current_app.config["EVALUATOR_MODEL"],
        purpose="document_review",
        temperature=0.3,
    )
    try:
        parsed = _parse_review(result["content"])
    except ValueError as e:
        logger.warning("Document reviewer output unusable: %s", e, extra={"session_id": session.id})
        raise UpstreamError("Document reviewer returned an unusable response")

    review = DocumentReview(session_id=session.id, file_name=filename, **parsed)
    db.session.add(review)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = DocumentReview.query.filter_by(session_id=session_id).first()
        raise ConflictError("Document review already exists for this session",
                            existing_id=winner.id if winner else None)

    logger.info(
        "Document review stored: overall=%d gaps=%d", review.overall_score, len(review.specific_gaps),
        extra={"session_id": session_id, "event_type": "document_reviewed"},
    )
    return review


def get_review(user: User, session_id: str) -> DocumentReview:
    session = get_session_for(user, session_id, "view this document review")
    review = DocumentReview.query.filter_by(session_id=session.id).first()
    if review is None:
        raise NotFoundError("DocumentReview", session_id)
    return review
