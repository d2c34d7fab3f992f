"""
Session lifecycle service.

Lifecycle:
    active → ended.  A session row is inserted already active (chat start or
    the voice agent's create callback).  Voice retries on the same
    assignment reuse the row and bump ``current_attempt``.

Idempotent transcript persistence:
    ``replace_transcript`` deletes every turn stored for (session, attempt)
    and inserts the full batch in one transaction, so replaying the same
    batch leaves the same rows.  When the stored attempt already holds more
    turns than the incoming batch the stored copy wins: the client fast path
    and the agent's shutdown flush may both persist, and the longer one is
    the complete conversation.

Ownership:
    A session tied to an assignment may only be started by that
    assignment's counselor.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from crisis_trainer.ai.gateway import get_gateway
from crisis_trainer.ai.prompt_registry import get_registry
from crisis_trainer.auth import ensure_can_access
from crisis_trainer.core.exceptions import (
    ConflictError,
    TooEarlyError,
    UnauthorizedError,
    ValidationError,
)
from crisis_trainer.models import db, utcnow
from crisis_trainer.models.account import User
from crisis_trainer.models.evaluation import Evaluation, SessionFlag
from crisis_trainer.models.scenario import (
    ASSIGNMENT_COMPLETED,
    ASSIGNMENT_IN_PROGRESS,
    Assignment,
    Scenario,
)
from crisis_trainer.models.session import (
    SESSION_ACTIVE,
    SESSION_ENDED,
    VALID_TURN_ROLES,
    Session,
    TranscriptTurn,
)
from crisis_trainer.services.assignment_service import mark_status
from crisis_trainer.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

MAX_TURNS_PER_BATCH = 500
MAX_TURN_LENGTH = 50000
MAX_MESSAGE_LENGTH = 5000
OPENING_CUE = "[The counselor has answered the call. Begin speaking as the caller.]"
SPEAKER_LABELS = {"user": "Counselor", "assistant": "Caller"}


# ── Start ────────────────────────────────────────────────────────────────────


def start_session(
    user: User,
    *,
    assignment_id: str | None = None,
    scenario_id: str | None = None,
    model_type: str = "chat",
) -> tuple[Session, bool]:
    """Create (or, for a retried assignment, reopen) a practice session.

    Args:
        user: The counselor practising.  Must own the assignment.
        assignment_id: Assignment to practise; omit for free practice.
        scenario_id: Optional scenario for free practice.
        model_type: "chat" or "phone".

    Returns:
        (session, is_retry)

    Raises:
        UnauthorizedError: the user does not own the assignment (403).
        ConflictError: the assignment is already completed.
    """
    if assignment_id:
        assignment = get_or_404(Assignment, assignment_id)
        if assignment.counselor_id != user.id:
            logger.warning(
                "User %s tried to start a session on assignment %s owned by %s",
                user.id, assignment.id, assignment.counselor_id,
                extra={"event_type": "ownership_denied"},
            )
            raise UnauthorizedError("User does not own this assignment", status=403)
        if assignment.status == ASSIGNMENT_COMPLETED:
            raise ConflictError("Cannot start a session for a completed assignment")

        if assignment.session is not None:
            session = assignment.session
            session.current_attempt += 1
            session.model_type = model_type
            session.status = SESSION_ACTIVE
            session.ended_at = None
            db.session.commit()
            logger.info(
                "Session retry attempt %d", session.current_attempt,
                extra={"session_id": session.id, "attempt": session.current_attempt},
            )
            return session, True

        session = Session(
            assignment_id=assignment.id,
            user_id=user.id,
            scenario_id=assignment.scenario_id,
            model_type=model_type,
            status=SESSION_ACTIVE,
        )
        db.session.add(session)
        mark_status(assignment, ASSIGNMENT_IN_PROGRESS)
        try:
            db.session.commit()
        except IntegrityError:
            # Another start for this assignment won the unique assignment_id slot
            db.session.rollback()
            existing = Session.query.filter_by(assignment_id=assignment_id).first()
            raise ConflictError("A session already exists for this assignment",
                                existing_id=existing.id if existing else None)
    else:
        if scenario_id:
            get_or_404(Scenario, scenario_id)
        session = Session(
            user_id=user.id,
            scenario_id=scenario_id,
            model_type=model_type,
            status=SESSION_ACTIVE,
        )
        db.session.add(session)
        db.session.commit()

    logger.info(
        "Session started (%s)", model_type,
        extra={"session_id": session.id, "assignment_id": assignment_id, "event_type": "session_started"},
    )
    return session, False


def start_voice_session(data: dict) -> tuple[Session, bool]:
    """Internal callback from the voice agent once it has joined the call.

    Body is tagged: {"type": "assignment", "assignment_id", "user_id"} or
    {"type": "free_practice", "user_id", "scenario_id"?}.
    """
    kind = data.get("type")
    if kind not in ("assignment", "free_practice"):
        raise ValidationError("Field 'type' must be 'assignment' or 'free_practice'.",
                              details={"type": ["assignment", "free_practice"]})
    user = get_or_404(User, data.get("user_id"))
    if kind == "assignment":
        if not data.get("assignment_id"):
            raise ValidationError("Field 'assignment_id' is required.", details={"assignment_id": "required"})
        return start_session(user, assignment_id=data["assignment_id"], model_type="phone")
    return start_session(user, scenario_id=data.get("scenario_id"), model_type="phone")


def start_chat_session(user: User, assignment_id: str | None = None,
                       scenario_id: str | None = None) -> tuple[Session, bool]:
    """Start a text-chat session and store the simulated caller's opening line as turn 0."""
    session, is_retry = start_session(
        user, assignment_id=assignment_id, scenario_id=scenario_id, model_type="chat",
    )
    if not session.current_turns():
        opening = _caller_reply(session, [])
        db.session.add(TranscriptTurn(
            session_id=session.id,
            role="assistant",
            content=opening,
            turn_index=0,
            attempt_number=session.current_attempt,
        ))
        db.session.commit()
    return session, is_retry


# ── Access helpers ───────────────────────────────────────────────────────────


def get_session_for(user: User, session_id: str, action: str = "access this session") -> Session:
    session = get_or_404(Session, session_id)
    ensure_can_access(user, session.owner_id, action)
    return session


def session_detail(session: Session, include_flags: bool = False) -> dict:
    data = session.to_dict(include_transcript=True)
    data["evaluation"] = (
        session.assignment.evaluation.to_dict()
        if session.assignment is not None and session.assignment.evaluation is not None
        else session.evaluation.to_dict() if session.evaluation is not None else None
    )
    data["recording"] = session.recording.to_dict() if session.recording is not None else None
    if include_flags:
        data["flags"] = [
            f.to_dict() for f in SessionFlag.query.filter_by(session_id=session.id)
            .order_by(SessionFlag.created_at).all()
        ]
    return data


# ── Transcript ───────────────────────────────────────────────────────────────


def _validate_turns(turns, default_attempt: int) -> tuple[int, list[dict]]:
    if not isinstance(turns, list) or not turns:
        raise ValidationError("Field 'turns' must be a non-empty list.", details={"turns": "required"})
    if len(turns) > MAX_TURNS_PER_BATCH:
        raise ValidationError(f"At most {MAX_TURNS_PER_BATCH} turns per batch.")

    cleaned = []
    attempts = set()
    for pos, turn in enumerate(turns):
        if not isinstance(turn, dict):
            raise ValidationError(f"Turn {pos} must be an object.")
        role = turn.get("role")
        content = turn.get("content")
        index = turn.get("turn_index")
        if role not in VALID_TURN_ROLES:
            raise ValidationError(f"Turn {pos} has invalid role.", details={"role": sorted(VALID_TURN_ROLES)})
        if not isinstance(content, str) or not content.strip() or len(content) > MAX_TURN_LENGTH:
            raise ValidationError(f"Turn {pos} content must be 1-{MAX_TURN_LENGTH} characters.")
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise ValidationError(f"Turn {pos} needs a non-negative integer turn_index.")
        attempt = turn.get("attempt_number", default_attempt)
        if not isinstance(attempt, int) or isinstance(attempt, bool) or attempt < 1:
            raise ValidationError(f"Turn {pos} has an invalid attempt_number.")
        attempts.add(attempt)
        cleaned.append({"role": role, "content": content, "turn_index": index})

    if len(attempts) > 1:
        raise ValidationError("All turns in a batch must belong to the same attempt.")

    cleaned.sort(key=lambda t: t["turn_index"])
    if [t["turn_index"] for t in cleaned] != list(range(len(cleaned))):
        raise ValidationError("Turn indices must be contiguous starting at 0.",
                              details={"turn_index": "0..n-1 without gaps or duplicates"})
    return attempts.pop(), cleaned


def graded_evaluation(session: Session) -> Evaluation | None:
    """Evaluation holding this session's parent, if it has been graded."""
    if session.assignment_id is not None:
        return Evaluation.query.filter_by(assignment_id=session.assignment_id).first()
    return Evaluation.query.filter_by(session_id=session.id).first()


def replace_transcript(session_id: str, turns, attempt_number: int | None = None) -> dict:
    """Persist a full transcript batch for one attempt (delete-then-insert).

    Returns:
        {"session_id", "attempt", "saved", "replaced"}

    Raises:
        ConflictError: the session has already been graded; the graded
                       turns are frozen.
    """
    session = get_or_404(Session, session_id)
    attempt, cleaned = _validate_turns(turns, attempt_number or session.current_attempt)

    evaluation = graded_evaluation(session)
    if evaluation is not None:
        logger.warning(
            "Rejected transcript write after evaluation",
            extra={"session_id": session.id, "attempt": attempt, "event_type": "transcript_frozen"},
        )
        raise ConflictError("Session has already been evaluated", existing_id=evaluation.id)

    existing_q = TranscriptTurn.query.filter_by(session_id=session.id, attempt_number=attempt)
    existing_count = existing_q.count()
    if existing_count > len(cleaned):
        logger.info(
            "Kept stored transcript (%d turns) over shorter batch (%d turns)", existing_count, len(cleaned),
            extra={"session_id": session.id, "attempt": attempt},
        )
        return {"session_id": session.id, "attempt": attempt, "saved": existing_count, "replaced": False}

    existing_q.delete(synchronize_session=False)
    db.session.add_all([
        TranscriptTurn(
            session_id=session.id,
            role=t["role"],
            content=t["content"],
            turn_index=t["turn_index"],
            attempt_number=attempt,
        )
        for t in cleaned
    ])
    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent replace for the same attempt committed first
        db.session.rollback()
        raise TooEarlyError("Transcript is being written by another request", retry_after=1)
    logger.info(
        "Transcript persisted: %d turns", len(cleaned),
        extra={"session_id": session.id, "attempt": attempt, "event_type": "transcript_persisted"},
    )
    return {"session_id": session.id, "attempt": attempt, "saved": len(cleaned), "replaced": True}


def persist_client_transcript(user: User, session_id: str, turns, attempt_number: int | None = None) -> dict:
    """Client fast path: the owner saves the transcript while the session is live."""
    session = get_session_for(user, session_id, "write this transcript")
    if not session.is_active:
        raise ConflictError("Session has ended")
    return replace_transcript(session.id, turns, attempt_number)


def format_transcript(turns: list[TranscriptTurn]) -> str:
    return "\n".join(f"{SPEAKER_LABELS.get(t.role, t.role)}: {t.content}" for t in turns)


# ── Chat exchange ────────────────────────────────────────────────────────────


def _scenario_for(session: Session) -> Scenario | None:
    if session.assignment is not None:
        return session.assignment.scenario
    return session.scenario


def _caller_reply(session: Session, history: list[TranscriptTurn]) -> str:
    scenario = _scenario_for(session)
    messages = get_registry().render(
        "caller_simulator",
        scenario_prompt=scenario.prompt if scenario else "You are someone having a hard day who called for support.",
    )
    if not history:
        messages.append({"role": "user", "content": OPENING_CUE})
    for turn in history:
        messages.append({"role": turn.role, "content": turn.content})
    result = get_gateway().chat(
        messages,
        model=current_app.config["SIMULATOR_MODEL"],
        purpose="simulation",
        temperature=0.8,
        max_tokens=300,
    )
    return result["content"].strip()


def send_message(user: User, session_id: str, content) -> list[TranscriptTurn]:
    """Append the counselor's message and the simulated caller's reply.

    Nothing is stored if the simulator call fails.
    """
    session = get_session_for(user, session_id, "send messages in this session")
    if not session.is_active:
        raise ConflictError("Session has ended")
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Field 'content' is required.", details={"content": "required"})
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters.")

    history = session.current_turns()
    counselor_turn = TranscriptTurn(
        session_id=session.id,
        role="user",
        content=content.strip(),
        turn_index=len(history),
        attempt_number=session.current_attempt,
    )
    reply = _caller_reply(session, history + [counselor_turn])
    caller_turn = TranscriptTurn(
        session_id=session.id,
        role="assistant",
        content=reply,
        turn_index=len(history) + 1,
        attempt_number=session.current_attempt,
    )
    db.session.add_all([counselor_turn, caller_turn])
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise TooEarlyError("Another message is still being processed", retry_after=1)
    return [counselor_turn, caller_turn]


def end_session(session: Session) -> Session:
    """active → ended.  Ending an ended session is a no-op."""
    if session.status != SESSION_ENDED:
        session.status = SESSION_ENDED
        session.ended_at = utcnow()
        db.session.commit()
        logger.info("Session ended", extra={"session_id": session.id, "event_type": "session_ended"})
    return session
