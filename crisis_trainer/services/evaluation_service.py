"""
Evaluation pipeline — grade a practice session exactly once.

Order of checks for ``evaluate_session``:
    1. session exists                           → NOT_FOUND
    2. caller may access it                     → UNAUTHORIZED (403)
    3. rolling-hour trigger window per session  → RATE_LIMITED
    4. an Evaluation already holds the parent   → CONFLICT (existing_id)
    5. fewer than 2 turns in the current attempt → TOO_EARLY (transcript
       persistence may still be in flight)

Then: build the grading prompt → LLM (retrieval first when the scenario's
account has a vector store) → parse feedback, score, grade and ``## Flags``
→ one transaction inserting the Evaluation and its flags, ending the
session and completing the assignment.

Idempotency is first-writer-wins.  Two concurrent requests both pass the
pre-check; the unique parent column rejects the second insert and the
loser reports CONFLICT with the winner's id instead of a server error.

After commit the secondary analysis pass is handed to the task runner.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from crisis_trainer.ai.gateway import get_gateway
from crisis_trainer.ai.output_parser import ParsedEvaluation, parse_evaluation
from crisis_trainer.ai.prompt_registry import get_registry
from crisis_trainer.ai.task_runner import task_runner
from crisis_trainer.auth import ensure_can_access
from crisis_trainer.core.exceptions import ConflictError, TooEarlyError, UpstreamError
from crisis_trainer.middleware.rate_limiter import session_limits
from crisis_trainer.models import db, utcnow
from crisis_trainer.models.account import User
from crisis_trainer.models.evaluation import (
    SOURCE_EVALUATION,
    AssignmentEvaluation,
    Evaluation,
    EvaluationParent,
    SessionEvaluation,
    SessionFlag,
)
from crisis_trainer.models.scenario import ASSIGNMENT_COMPLETED
from crisis_trainer.models.session import SESSION_ENDED, Session
from crisis_trainer.services import analysis_service
from crisis_trainer.services.assignment_service import mark_status
from crisis_trainer.services.session_service import format_transcript
from crisis_trainer.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

MIN_TURNS_FOR_EVALUATION = 2


def evaluation_parent(session: Session) -> EvaluationParent:
    """Assignment sessions are graded against the assignment, free practice against the session."""
    if session.assignment_id is not None:
        return AssignmentEvaluation(session.assignment_id)
    return SessionEvaluation(session.id)


def _parent_filter(parent: EvaluationParent) -> dict:
    if isinstance(parent, AssignmentEvaluation):
        return {"assignment_id": parent.assignment_id}
    return {"session_id": parent.session_id}


def _find_existing_evaluation(parent: EvaluationParent) -> Evaluation | None:
    return Evaluation.query.filter_by(**_parent_filter(parent)).first()


def get_evaluation_for_session(session: Session) -> Evaluation | None:
    return _find_existing_evaluation(evaluation_parent(session))


def evaluate_session(session_id: str, requester: User | None = None) -> Evaluation:
    """Grade the current attempt of a session.

    Args:
        session_id: Session to grade.
        requester: End user asking for feedback; None for partner and
                   internal callers, whose access is checked upstream.

    Raises:
        NotFoundError, UnauthorizedError, RateLimitedError, ConflictError,
        TooEarlyError, UpstreamError
    """
    session = get_or_404(Session, session_id)
    if requester is not None:
        ensure_can_access(requester, session.owner_id, "evaluate this session")

    session_limits.check("evaluate", session.id, current_app.config["EVALUATION_RATE_LIMIT"])

    parent = evaluation_parent(session)
    existing = _find_existing_evaluation(parent)
    if existing is not None:
        raise ConflictError("Evaluation already exists", existing_id=existing.id)

    turns = session.current_turns()
    if len(turns) < MIN_TURNS_FOR_EVALUATION:
        raise TooEarlyError(
            "Transcript is not ready yet",
            details={"turns": len(turns), "required": MIN_TURNS_FOR_EVALUATION},
        )

    scenario = session.assignment.scenario if session.assignment is not None else session.scenario
    vector_store_id = scenario.account.vector_store_id if scenario and scenario.account else None
    messages = get_registry().render(
        "evaluator",
        scenario_title=scenario.title if scenario else "Free practice",
        scenario_description=(scenario.description or "") if scenario else "",
        evaluator_context=(scenario.evaluator_context or "") if scenario else "",
        transcript=format_transcript(turns),
    )
    model = current_app.config["EVALUATOR_MODEL"]
    result = get_gateway().chat(
        messages,
        model=model,
        purpose="evaluation",
        vector_store_id=vector_store_id,
        temperature=0.2,
    )

    try:
        parsed = parse_evaluation(result["content"])
    except ValueError as e:
        logger.warning("Evaluator output unusable: %s", e, extra={"session_id": session.id})
        raise UpstreamError("Evaluator returned no usable feedback")

    evaluation = _persist(session, parent, parsed, result)

    logger.info(
        "Session evaluated: grade=%s score=%s flags=%d retrieval=%s",
        evaluation.grade, evaluation.overall_score, len(parsed.flags), evaluation.used_retrieval,
        extra={"session_id": session_id, "assignment_id": evaluation.assignment_id,
               "event_type": "session_evaluated"},
    )
    task_runner.submit(f"analysis:{session_id}", analysis_service.analyze_session, session_id)
    return evaluation


def _persist(session: Session, parent: EvaluationParent, parsed: ParsedEvaluation, result: dict) -> Evaluation:
    """Evaluation, flags, session end and assignment completion in one commit."""
    session_id = session.id
    evaluation = Evaluation.for_parent(
        parent,
        overall_score=parsed.score,
        grade=parsed.grade,
        feedback=parsed.feedback,
        raw_response=result["content"],
        used_retrieval=bool(result.get("used_retrieval")),
        model=result.get("model"),
    )
    db.session.add(evaluation)
    for flag in parsed.flags:
        db.session.add(SessionFlag(
            session_id=session_id,
            category=flag["category"],
            severity=flag["severity"],
            source=SOURCE_EVALUATION,
            details=flag["details"],
        ))

    if session.status != SESSION_ENDED:
        session.status = SESSION_ENDED
        session.ended_at = utcnow()
    if session.assignment is not None and session.assignment.status != ASSIGNMENT_COMPLETED:
        mark_status(session.assignment, ASSIGNMENT_COMPLETED)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = Evaluation.query.filter_by(**_parent_filter(parent)).first()
        logger.info(
            "Lost evaluation race; returning existing evaluation",
            extra={"session_id": session_id, "event_type": "evaluation_conflict"},
        )
        raise ConflictError("Evaluation already exists", existing_id=winner.id if winner else None)
    return evaluation


def get_evaluation(evaluation_id: str, requester: User) -> dict:
    """Evaluation by id with its scenario; visible to the graded counselor and supervisors."""
    evaluation = get_or_404(Evaluation, evaluation_id)
    if evaluation.assignment is not None:
        owner_id = evaluation.assignment.counselor_id
        scenario = evaluation.assignment.scenario
    else:
        owner_id = evaluation.session.owner_id
        scenario = evaluation.session.scenario
    ensure_can_access(requester, owner_id, "view this evaluation")

    data = evaluation.to_dict()
    data["scenario"] = {"id": scenario.id, "title": scenario.title} if scenario is not None else None
    return data
